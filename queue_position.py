from __future__ import annotations

from datetime import date
from typing import Dict, List, Optional

from appointments import AppointmentEngine
from domain import (
    LIVE_STATUSES,
    Appointment,
    AppointmentStatus,
    InvalidStateError,
    QueuePosition,
    ValidationError,
)


class QueuePositionService:
    """
    Read-only queue views derived from the appointment engine.

    Queue order is token order, not check-in order, so a patient who checks
    in late keeps their place and does not push anyone back.
    """

    def __init__(self, engine: AppointmentEngine) -> None:
        self.engine = engine

    def doctor_queue(self, doctor_id: str, day: date) -> List[Appointment]:
        return self.engine.list_for_doctor(doctor_id, day, LIVE_STATUSES)

    def position(self, doctor_id: str, day: date, appointment_id: str) -> QueuePosition:
        """Rank, patients ahead and an estimated wait.

        The wait is patients ahead times the doctor's recent average
        consultation length: a heuristic for display, not a guarantee.
        """
        appointment = self.engine.get(appointment_id)
        if appointment.doctor_id != doctor_id or appointment.date != day:
            raise ValidationError(
                f"Appointment {appointment_id} is not with doctor {doctor_id} on {day}"
            )
        if not appointment.is_live:
            raise InvalidStateError(
                f"Appointment {appointment_id} is {appointment.status.value}, not in the queue"
            )

        queue = self.doctor_queue(doctor_id, day)
        ahead = sum(1 for a in queue if a.token_number < appointment.token_number)
        average = self.engine.average_consultation_minutes(doctor_id)
        return QueuePosition(
            appointment_id=appointment_id,
            rank=ahead + 1,
            total_ahead=ahead,
            estimated_wait_minutes=ahead * average,
        )

    def next_patient(self, doctor_id: str, day: date) -> Optional[Appointment]:
        """Lowest token already checked in, else the lowest token still booked."""
        queue = self.doctor_queue(doctor_id, day)
        for appointment in queue:
            if appointment.status == AppointmentStatus.IN_QUEUE:
                return appointment
        return queue[0] if queue else None

    def statistics(self, doctor_id: str, day: date) -> Dict[str, int]:
        counts = {status.value: 0 for status in AppointmentStatus}
        appointments = self.engine.list_for_doctor(doctor_id, day)
        for appointment in appointments:
            counts[appointment.status.value] += 1
        counts["total"] = len(appointments)
        return counts
