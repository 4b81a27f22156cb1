from __future__ import annotations

from dataclasses import dataclass
from typing import Callable, Optional

from appointments import AppointmentEngine
from clock import Clock, SystemClock
from leave import LeaveRequestManager
from locks import KeyedLocks
from notifications import NotificationOutbox, NotificationSink
from queue_position import QueuePositionService
from reconciler import AppointmentReconciler
from schedule import ScheduleStore
from tokens import TokenAllocator


@dataclass
class OPDCore:
    """Every component of the scheduling core, wired to shared locks and clock."""

    clock: Clock
    locks: KeyedLocks
    outbox: NotificationSink
    schedules: ScheduleStore
    tokens: TokenAllocator
    appointments: AppointmentEngine
    reconciler: AppointmentReconciler
    leaves: LeaveRequestManager
    queue: QueuePositionService

    def reset(self) -> None:
        self.schedules.reset()
        self.tokens.reset()
        self.appointments.reset()
        self.leaves.reset()
        if isinstance(self.outbox, NotificationOutbox):
            self.outbox.reset()


def create_core(
    clock: Optional[Clock] = None,
    sink: Optional[NotificationSink] = None,
    doctor_name: Optional[Callable[[str], str]] = None,
    lock_timeout: Optional[float] = None,
) -> OPDCore:
    clock = clock or SystemClock()
    outbox = sink if sink is not None else NotificationOutbox()
    locks = KeyedLocks(timeout=lock_timeout)
    schedules = ScheduleStore(now=clock.now, locks=locks)
    tokens = TokenAllocator()
    appointments = AppointmentEngine(schedules, tokens, locks, outbox, clock)
    schedules.live_occupancy = appointments.slot_occupancy
    reconciler = AppointmentReconciler(appointments, schedules, outbox, doctor_name)
    leaves = LeaveRequestManager(schedules, reconciler, locks, clock)
    return OPDCore(
        clock=clock,
        locks=locks,
        outbox=outbox,
        schedules=schedules,
        tokens=tokens,
        appointments=appointments,
        reconciler=reconciler,
        leaves=leaves,
        queue=QueuePositionService(appointments),
    )
