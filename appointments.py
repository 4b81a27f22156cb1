from __future__ import annotations

import logging
import threading
import uuid
from collections import deque
from dataclasses import replace
from datetime import date, datetime, time, timedelta
from typing import Deque, Dict, Iterable, List, Optional, Tuple, Union

import config
from clock import Clock, SystemClock
from domain import (
    LIVE_STATUSES,
    Actor,
    Appointment,
    AppointmentStatus,
    ConsultationType,
    InvalidStateError,
    NotFoundError,
    NotificationIntent,
    ScheduleRecord,
    SlotFullError,
    SlotUnavailableError,
    TimeSlot,
    parse_clock,
)
from locks import KeyedLocks
from notifications import (
    APPOINTMENT_BOOKED,
    APPOINTMENT_CANCELLED,
    APPOINTMENT_MISSED,
    APPOINTMENT_RESCHEDULED,
    NotificationOutbox,
    NotificationSink,
)
from schedule import ScheduleStore, generate_slots
from tokens import TokenAllocator

logger = logging.getLogger(__name__)

SlotStart = Union[time, str]

RESCHEDULED_REASON = "rescheduled"

# operation -> (legal source statuses, target status)
TRANSITIONS = {
    "check_in": (frozenset({AppointmentStatus.BOOKED}), AppointmentStatus.IN_QUEUE),
    "complete": (frozenset({AppointmentStatus.IN_QUEUE}), AppointmentStatus.CONSULTED),
    "cancel": (LIVE_STATUSES, AppointmentStatus.CANCELLED),
    "mark_missed": (LIVE_STATUSES, AppointmentStatus.MISSED),
}


def generate_id(prefix: str) -> str:
    return f"{prefix}_{uuid.uuid4().hex[:8]}"


def _as_clock(slot_start: SlotStart) -> time:
    if isinstance(slot_start, str):
        return parse_clock(slot_start)
    return slot_start


class AppointmentEngine:
    """
    Owns appointments and every change to their status.

    Responsibilities:
    - Books into a published slot, enforcing per-slot capacity.
    - Draws tokens from the TokenAllocator inside the same critical section
      as the capacity check, so successful bookings get dense tokens.
    - Runs the booked -> in_queue -> consulted state machine, plus
      cancellation and no-show marking.
    - Keeps a moving average of consultation length per doctor.
    """

    def __init__(
        self,
        schedules: ScheduleStore,
        tokens: TokenAllocator,
        locks: Optional[KeyedLocks] = None,
        sink: Optional[NotificationSink] = None,
        clock: Optional[Clock] = None,
    ) -> None:
        self.schedules = schedules
        self.tokens = tokens
        self.locks = locks if locks is not None else schedules.locks
        self.sink = sink if sink is not None else NotificationOutbox()
        self.clock = clock or SystemClock()
        self._lock = threading.Lock()
        self.appointments: Dict[str, Appointment] = {}
        self._durations: Dict[str, Deque[float]] = {}
        self._last_completed: Dict[Tuple[str, date], datetime] = {}

    def reset(self) -> None:
        with self._lock:
            self.appointments.clear()
            self._durations.clear()
            self._last_completed.clear()

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def get(self, appointment_id: str) -> Appointment:
        with self._lock:
            appointment = self.appointments.get(appointment_id)
        if appointment is None:
            raise NotFoundError(f"Appointment {appointment_id} not found")
        return appointment

    def _snapshot(self) -> List[Appointment]:
        with self._lock:
            return list(self.appointments.values())

    def list_for_doctor(
        self,
        doctor_id: str,
        day: date,
        statuses: Optional[Iterable[AppointmentStatus]] = None,
    ) -> List[Appointment]:
        wanted = frozenset(statuses) if statuses is not None else None
        found = [
            a
            for a in self._snapshot()
            if a.doctor_id == doctor_id
            and a.date == day
            and (wanted is None or a.status in wanted)
        ]
        return sorted(found, key=lambda a: a.token_number)

    def list_for_patient(self, patient_id: str) -> List[Appointment]:
        found = [a for a in self._snapshot() if a.patient_id == patient_id]
        return sorted(found, key=lambda a: (a.date, a.slot.start, a.token_number))

    def occupancy(self, doctor_id: str, day: date, slot_start: SlotStart) -> int:
        start = _as_clock(slot_start)
        return sum(
            1
            for a in self.list_for_doctor(doctor_id, day, LIVE_STATUSES)
            if a.slot.start == start
        )

    def slot_occupancy(self, doctor_id: str, day: date) -> Dict[time, int]:
        """Live bookings per slot start."""
        counts: Dict[time, int] = {}
        for a in self.list_for_doctor(doctor_id, day, LIVE_STATUSES):
            counts[a.slot.start] = counts.get(a.slot.start, 0) + 1
        return counts

    def average_consultation_minutes(self, doctor_id: str) -> float:
        with self._lock:
            samples = list(self._durations.get(doctor_id, ()))
        if not samples:
            return config.DEFAULT_CONSULTATION_MINUTES
        return sum(samples) / len(samples)

    # ------------------------------------------------------------------
    # Booking
    # ------------------------------------------------------------------

    def _validate_slot(
        self,
        doctor_id: str,
        day: date,
        slot_start: time,
        ignore_id: Optional[str] = None,
    ) -> Tuple[ScheduleRecord, TimeSlot]:
        """Availability, existence and capacity checks. Caller holds the lock."""
        record = self.schedules.get_schedule(doctor_id, day)
        if record.is_default:
            raise SlotUnavailableError(
                f"Doctor {doctor_id} has no schedule published for {day}",
                SlotUnavailableError.NO_SUCH_SLOT,
            )
        if not record.is_available:
            raise SlotUnavailableError(
                f"Doctor {doctor_id} is not available on {day}: {record.leave_reason}",
                SlotUnavailableError.DOCTOR_UNAVAILABLE,
            )

        # Slots inside half-day leave exist in the working day but are not bookable.
        unblocked = replace(record, blocked_windows=[])
        slot = next((s for s in generate_slots(unblocked) if s.start == slot_start), None)
        if slot is None:
            raise SlotUnavailableError(
                f"No slot starting at {slot_start:%H:%M} for doctor {doctor_id} on {day}",
                SlotUnavailableError.NO_SUCH_SLOT,
            )
        if any(slot.overlaps(window) for window in record.blocked_windows):
            raise SlotUnavailableError(
                f"Doctor {doctor_id} is on leave during {slot.label} on {day}",
                SlotUnavailableError.DOCTOR_UNAVAILABLE,
            )

        taken = sum(
            1
            for a in self.list_for_doctor(doctor_id, day, LIVE_STATUSES)
            if a.slot.start == slot.start and a.id != ignore_id
        )
        if taken >= record.max_patients_per_slot:
            raise SlotFullError(
                f"Slot {slot.label} for doctor {doctor_id} on {day} is full "
                f"({taken}/{record.max_patients_per_slot})"
            )
        return record, slot

    def _insert(
        self,
        patient_id: str,
        doctor_id: str,
        day: date,
        slot: TimeSlot,
        consultation_type: ConsultationType,
    ) -> Appointment:
        appointment = Appointment(
            id=generate_id("appt"),
            doctor_id=doctor_id,
            patient_id=patient_id,
            date=day,
            slot=slot,
            token_number=self.tokens.allocate(doctor_id, day),
            consultation_type=consultation_type,
            created_at=self.clock.now(),
        )
        with self._lock:
            self.appointments[appointment.id] = appointment
        return appointment

    def book(
        self,
        patient_id: str,
        doctor_id: str,
        day: date,
        slot_start: SlotStart,
        consultation_type: ConsultationType = ConsultationType.OPD,
    ) -> Appointment:
        start = _as_clock(slot_start)
        with self.locks.hold(doctor_id, day):
            _, slot = self._validate_slot(doctor_id, day, start)
            appointment = self._insert(patient_id, doctor_id, day, slot, consultation_type)

        logger.info(
            "Booked %s doctor=%s date=%s slot=%s token=%d",
            appointment.id,
            doctor_id,
            day,
            slot.label,
            appointment.token_number,
        )
        self._notify(
            appointment,
            APPOINTMENT_BOOKED,
            slot=slot.label,
            token_number=appointment.token_number,
        )
        return appointment

    # ------------------------------------------------------------------
    # Status transitions
    # ------------------------------------------------------------------

    def _transition(self, appointment: Appointment, operation: str) -> None:
        """Apply a state-machine step. Caller holds the appointment's lock."""
        allowed, target = TRANSITIONS[operation]
        if appointment.status not in allowed:
            raise InvalidStateError(
                f"Cannot {operation} appointment {appointment.id} "
                f"from status '{appointment.status.value}'"
            )
        logger.info(
            "Appointment %s %s -> %s",
            appointment.id,
            appointment.status.value,
            target.value,
        )
        appointment.status = target

    def check_in(self, appointment_id: str) -> Appointment:
        appointment = self.get(appointment_id)
        with self.locks.hold(appointment.doctor_id, appointment.date):
            self._transition(appointment, "check_in")
            appointment.checked_in_at = self.clock.now()
        return appointment

    def complete(self, appointment_id: str, outcome: Optional[str] = None) -> Appointment:
        appointment = self.get(appointment_id)
        with self.locks.hold(appointment.doctor_id, appointment.date):
            self._transition(appointment, "complete")
            now = self.clock.now()
            appointment.completed_at = now
            appointment.outcome = outcome
            self._record_duration(appointment, now)
        return appointment

    def _record_duration(self, appointment: Appointment, finished: datetime) -> None:
        # A consultation starts once the patient is checked in and the doctor
        # has finished with the previous patient.
        key = (appointment.doctor_id, appointment.date)
        with self._lock:
            started = appointment.checked_in_at or finished
            previous = self._last_completed.get(key)
            if previous is not None and previous > started:
                started = previous
            self._last_completed[key] = finished
            minutes = max((finished - started).total_seconds() / 60.0, 0.0)
            samples = self._durations.setdefault(
                appointment.doctor_id, deque(maxlen=config.CONSULTATION_AVG_WINDOW)
            )
            samples.append(minutes)

    def cancel(
        self,
        appointment_id: str,
        reason: Optional[str] = None,
        actor: Actor = Actor.PATIENT,
    ) -> Appointment:
        """Cancel a live appointment. Cancelling twice is a no-op."""
        appointment = self.get(appointment_id)
        with self.locks.hold(appointment.doctor_id, appointment.date):
            if appointment.status == AppointmentStatus.CANCELLED:
                return appointment
            self._transition(appointment, "cancel")
            appointment.cancellation_reason = reason
            appointment.cancelled_by = actor

        # Leave cascades announce their own cancellations.
        if actor != Actor.SYSTEM:
            self._notify(appointment, APPOINTMENT_CANCELLED, reason=reason)
        return appointment

    def mark_missed(self, appointment_id: str) -> Appointment:
        appointment = self.get(appointment_id)
        with self.locks.hold(appointment.doctor_id, appointment.date):
            self._transition(appointment, "mark_missed")
        self._notify(appointment, APPOINTMENT_MISSED)
        return appointment

    def sweep_missed(self, grace_minutes: Optional[int] = None) -> List[Appointment]:
        """Mark every live appointment whose slot ended more than grace ago.

        Meant for an external scheduler; nothing in the core calls it.
        """
        grace = timedelta(
            minutes=config.MISSED_GRACE_MINUTES if grace_minutes is None else grace_minutes
        )
        now = self.clock.now()
        missed = []
        for appointment in self._snapshot():
            if not appointment.is_live:
                continue
            if datetime.combine(appointment.date, appointment.slot.end) + grace >= now:
                continue
            try:
                missed.append(self.mark_missed(appointment.id))
            except InvalidStateError:
                # Checked out or cancelled since the snapshot was taken.
                logger.debug("Skipping %s, no longer live", appointment.id)
        if missed:
            logger.info("No-show sweep marked %d appointments missed", len(missed))
        return missed

    # ------------------------------------------------------------------
    # Rescheduling
    # ------------------------------------------------------------------

    def reassign(
        self,
        appointment_id: str,
        new_date: date,
        new_slot_start: SlotStart,
        actor: Actor = Actor.PATIENT,
    ) -> Appointment:
        """Move a live appointment to another slot.

        On the same date the appointment keeps its token. On another date it
        is cancelled and replaced by a fresh booking; the two records point
        at each other. Returns the appointment that now holds the booking.
        """
        current = self.get(appointment_id)
        start = _as_clock(new_slot_start)
        doctor_id = current.doctor_id

        with self.locks.hold_many(doctor_id, [current.date, new_date]):
            if not current.is_live:
                raise InvalidStateError(
                    f"Cannot reassign appointment {current.id} "
                    f"from status '{current.status.value}'"
                )

            if new_date == current.date:
                _, slot = self._validate_slot(doctor_id, new_date, start, ignore_id=current.id)
                previous_label = current.slot.label
                current.slot = slot
                result = current
                logger.info(
                    "Moved %s from %s to %s on %s",
                    current.id,
                    previous_label,
                    slot.label,
                    new_date,
                )
            else:
                _, slot = self._validate_slot(doctor_id, new_date, start)
                self._transition(current, "cancel")
                current.cancellation_reason = RESCHEDULED_REASON
                current.cancelled_by = actor
                result = self._insert(
                    current.patient_id,
                    doctor_id,
                    new_date,
                    slot,
                    current.consultation_type,
                )
                result.rescheduled_from = current.id
                current.rescheduled_to = result.id
                logger.info(
                    "Rescheduled %s to %s date=%s slot=%s token=%d",
                    current.id,
                    result.id,
                    new_date,
                    slot.label,
                    result.token_number,
                )

        self._notify(
            result,
            APPOINTMENT_RESCHEDULED,
            slot=result.slot.label,
            token_number=result.token_number,
            previous_appointment_id=current.id if result is not current else None,
        )
        return result

    # ------------------------------------------------------------------

    def _notify(self, appointment: Appointment, kind: str, **extra) -> None:
        payload = {
            "appointment_id": appointment.id,
            "doctor_id": appointment.doctor_id,
            "date": appointment.date.isoformat(),
        }
        payload.update(extra)
        self.sink.emit(
            NotificationIntent(recipient=appointment.patient_id, kind=kind, payload=payload)
        )
