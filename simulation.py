from datetime import date, datetime, time

from clock import FrozenClock
from core import create_core
from domain import (
    LeaveDecision,
    LeaveSession,
    LeaveType,
    ScheduleSpec,
    SlotFullError,
    SlotUnavailableError,
    TimeWindow,
)

DOCTOR_NAMES = {"d1": "Dr. Sayan", "d2": "Dr. Srikrishna", "d3": "Dr. Tanaya"}


def run_simulation() -> None:
    """
    Simulate two OPD days with three doctors.

    Demonstrates:
    - Slot capacity limits and dense token numbers.
    - Live queue position with a late check-in.
    - A full-day leave approval cancelling booked and queued patients.
    - A half-day leave that only touches the morning session.
    """
    clock = FrozenClock(datetime(2025, 7, 15, 8, 0))
    core = create_core(clock=clock, doctor_name=lambda d: DOCTOR_NAMES.get(d, d))

    day1, day2 = date(2025, 7, 15), date(2025, 7, 16)
    spec = ScheduleSpec(
        working_hours=TimeWindow(time(9, 0), time(18, 0)),
        break_window=TimeWindow(time(13, 0), time(14, 0)),
        slot_duration=30,
        max_patients_per_slot=2,
    )
    for doctor_id in DOCTOR_NAMES:
        for day in (day1, day2):
            core.schedules.set_schedule(doctor_id, day, spec)

    print("Slots for Dr. Sayan:", [s.label for s in core.schedules.list_slots("d1", day1)][:4], "...")

    a1 = core.appointments.book("alice", "d2", day1, "09:00")
    a2 = core.appointments.book("bob", "d2", day1, "09:00")
    try:
        core.appointments.book("charlie", "d2", day1, "09:00")
    except SlotFullError as exc:
        print("Charlie rejected:", exc)
    a3 = core.appointments.book("charlie", "d2", day1, "09:30")
    print("Tokens:", a1.token_number, a2.token_number, a3.token_number)

    core.appointments.check_in(a3.id)
    pos = core.queue.position("d2", day1, a3.id)
    print(f"Charlie checked in early: rank {pos.rank}, wait {pos.wait_label}")

    core.appointments.check_in(a1.id)
    clock.advance(12)
    core.appointments.complete(a1.id, "Follow up in two weeks")
    pos = core.queue.position("d2", day1, a3.id)
    print(f"After Alice: Charlie rank {pos.rank}, wait {pos.wait_label}")

    t1 = core.appointments.book("priya", "d1", day1, "09:00")
    t2 = core.appointments.book("rahul", "d1", day1, "09:30")
    core.appointments.check_in(t2.id)
    leave = core.leaves.submit("d1", LeaveType.FULL_DAY, day1, day1, reason="conference")
    core.leaves.decide(leave.id, LeaveDecision.APPROVE, "Approved")
    print("\nFull-day leave for", DOCTOR_NAMES["d1"])
    print("  Schedule available:", core.schedules.get_schedule("d1", day1).is_available)
    for appt in (t1, t2):
        print(f"  #{appt.token_number} {appt.patient_id} status={appt.status.value}")

    m1 = core.appointments.book("sam", "d3", day2, "10:00")
    m2 = core.appointments.book("tina", "d3", day2, "15:00")
    half = core.leaves.submit(
        "d3", LeaveType.HALF_DAY, day2, day2, LeaveSession.MORNING, "personal"
    )
    core.leaves.decide(half.id, LeaveDecision.APPROVE)
    print("\nHalf-day morning leave for", DOCTOR_NAMES["d3"])
    for appt in (m1, m2):
        print(f"  {appt.slot.label} {appt.patient_id} status={appt.status.value}")
    try:
        core.appointments.book("uma", "d3", day2, "11:00")
    except SlotUnavailableError as exc:
        print("  Morning booking rejected:", exc.reason)

    print("\nNotifications:")
    for intent in core.outbox.drain():
        print(f"  -> {intent.recipient}: {intent.kind} {intent.payload}")


if __name__ == "__main__":
    run_simulation()
