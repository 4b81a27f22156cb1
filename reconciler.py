from __future__ import annotations

import logging
import threading
from datetime import date
from typing import Callable, Iterable, List, Optional

import config
from appointments import AppointmentEngine
from domain import (
    LIVE_STATUSES,
    Actor,
    Appointment,
    AppointmentStatus,
    LeaveSession,
    NotificationIntent,
    ReconciliationIncomplete,
    ValidationError,
)
from notifications import APPOINTMENT_CANCELLED_DUE_TO_LEAVE, NotificationSink
from schedule import ScheduleStore, date_range

logger = logging.getLogger(__name__)


class AppointmentReconciler:
    """
    Cancels appointments that fall inside newly approved leave.

    Every cancellation goes through AppointmentEngine.cancel. A run first
    cancels, then announces every leave cancellation in range that has not
    been announced yet, so a batch that failed halfway converges on the
    same end state when retried and no patient is left uninformed.
    """

    def __init__(
        self,
        engine: AppointmentEngine,
        schedules: ScheduleStore,
        sink: NotificationSink,
        doctor_name: Optional[Callable[[str], str]] = None,
    ) -> None:
        self.engine = engine
        self.schedules = schedules
        self.sink = sink
        self.doctor_name = doctor_name or str
        self._lock = threading.Lock()

    def _in_scope(
        self,
        doctor_id: str,
        start: date,
        end: date,
        session: Optional[LeaveSession],
        statuses: Iterable[AppointmentStatus],
    ) -> List[Appointment]:
        if end < start:
            raise ValidationError("End date must not be before start date")

        found = []
        for day in date_range(start, end):
            candidates = self.engine.list_for_doctor(doctor_id, day, statuses)
            if session is None:
                found.extend(candidates)
                continue
            window = self.schedules.session_window(doctor_id, day, session)
            if window is None:
                continue
            found.extend(a for a in candidates if a.slot.overlaps(window))
        return found

    def affected(
        self,
        doctor_id: str,
        start: date,
        end: date,
        session: Optional[LeaveSession] = None,
    ) -> List[Appointment]:
        """Live appointments the leave would cancel."""
        return self._in_scope(doctor_id, start, end, session, LIVE_STATUSES)

    def _unannounced(
        self,
        doctor_id: str,
        start: date,
        end: date,
        session: Optional[LeaveSession],
    ) -> List[Appointment]:
        cancelled = self._in_scope(
            doctor_id, start, end, session, [AppointmentStatus.CANCELLED]
        )
        with self._lock:
            return [
                a
                for a in cancelled
                if a.cancelled_by == Actor.SYSTEM
                and a.cancellation_reason == config.LEAVE_CANCELLATION_REASON
                and not a.leave_notified
            ]

    def _announce(self, appointment: Appointment) -> None:
        self.sink.emit(
            NotificationIntent(
                recipient=appointment.patient_id,
                kind=APPOINTMENT_CANCELLED_DUE_TO_LEAVE,
                payload={
                    "appointment_id": appointment.id,
                    "doctor_name": self.doctor_name(appointment.doctor_id),
                    "date": appointment.date.isoformat(),
                },
            )
        )
        with self._lock:
            appointment.leave_notified = True

    def reconcile(
        self,
        doctor_id: str,
        start: date,
        end: date,
        session: Optional[LeaveSession] = None,
    ) -> List[Appointment]:
        """Cancel and announce every appointment inside the leave.

        Returns the appointments cancelled by this run; a repeated run after
        success cancels nothing and announces nothing.
        """
        targets = self.affected(doctor_id, start, end, session)
        cancelled = []
        try:
            for appointment in targets:
                self.engine.cancel(
                    appointment.id,
                    reason=config.LEAVE_CANCELLATION_REASON,
                    actor=Actor.SYSTEM,
                )
                cancelled.append(appointment)
            for appointment in self._unannounced(doctor_id, start, end, session):
                self._announce(appointment)
        except Exception as exc:
            logger.warning(
                "Reconciliation for doctor=%s %s..%s failed after %d cancellations: %s",
                doctor_id,
                start,
                end,
                len(cancelled),
                exc,
            )
            raise ReconciliationIncomplete(
                f"Reconciliation for doctor {doctor_id} from {start} to {end} "
                f"did not finish: {exc}"
            ) from exc

        logger.info(
            "Reconciled doctor=%s %s..%s session=%s cancelled=%d",
            doctor_id,
            start,
            end,
            session.value if session else "full_day",
            len(cancelled),
        )
        return cancelled
