from __future__ import annotations

from dataclasses import dataclass, field
from datetime import date, datetime, time
from enum import Enum
from typing import Any, Dict, List, Optional


class AppointmentStatus(str, Enum):
    BOOKED = "booked"
    IN_QUEUE = "in_queue"
    CONSULTED = "consulted"
    CANCELLED = "cancelled"
    MISSED = "missed"


LIVE_STATUSES = frozenset({AppointmentStatus.BOOKED, AppointmentStatus.IN_QUEUE})


class ConsultationType(str, Enum):
    OPD = "opd"
    VIDEO = "video"


class LeaveType(str, Enum):
    FULL_DAY = "full_day"
    HALF_DAY = "half_day"


class LeaveSession(str, Enum):
    MORNING = "morning"
    AFTERNOON = "afternoon"


class LeaveStatus(str, Enum):
    PENDING = "pending"
    APPROVED = "approved"
    REJECTED = "rejected"
    CANCELLED = "cancelled"


class LeaveDecision(str, Enum):
    APPROVE = "approve"
    REJECT = "reject"


class Actor(str, Enum):
    PATIENT = "patient"
    DOCTOR = "doctor"
    ADMIN = "admin"
    SYSTEM = "system"


# ---------------------------------------------------------------------------
# Errors
# ---------------------------------------------------------------------------


class CoreError(Exception):
    """Base class for every error the scheduling core reports to callers."""

    kind = "core_error"

    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.message = message

    def to_dict(self) -> Dict[str, str]:
        return {"kind": self.kind, "message": self.message}


class ValidationError(CoreError):
    """Malformed input; the caller must fix it and resubmit."""

    kind = "validation_error"


class InvalidStateError(CoreError):
    """The requested transition is not legal from the current state."""

    kind = "invalid_state"


class NotFoundError(CoreError):
    kind = "not_found"


class SlotUnavailableError(CoreError):
    """Booking rejected because the doctor is away or the slot does not exist."""

    kind = "slot_unavailable"

    DOCTOR_UNAVAILABLE = "doctor_unavailable"
    NO_SUCH_SLOT = "no_such_slot"

    def __init__(self, message: str, reason: str) -> None:
        super().__init__(message)
        self.reason = reason

    def to_dict(self) -> Dict[str, str]:
        data = super().to_dict()
        data["reason"] = self.reason
        return data


class SlotFullError(CoreError):
    kind = "slot_full"


class ConcurrencyConflict(CoreError):
    """Lost a race for a (doctor, date) key; safe to retry the operation once."""

    kind = "concurrency_conflict"


class ReconciliationIncomplete(CoreError):
    """A leave approval's cascade did not finish; retry reconciliation."""

    kind = "reconciliation_incomplete"


# ---------------------------------------------------------------------------
# Value objects
# ---------------------------------------------------------------------------


def parse_clock(value: str) -> time:
    """Parse ``"HH:MM"`` into a :class:`datetime.time`."""
    try:
        hours, minutes = value.strip().split(":")
        return time(int(hours), int(minutes))
    except ValueError as exc:
        raise ValidationError(f"Invalid clock time '{value}', expected HH:MM") from exc


@dataclass(frozen=True)
class TimeWindow:
    """Half-open clock interval ``[start, end)`` within a single day."""

    start: time
    end: time

    @classmethod
    def parse(cls, value: str) -> "TimeWindow":
        try:
            start, end = value.split("-")
        except ValueError as exc:
            raise ValidationError(
                f"Invalid window '{value}', expected HH:MM-HH:MM"
            ) from exc
        return cls(parse_clock(start), parse_clock(end))

    @property
    def label(self) -> str:
        return f"{self.start:%H:%M}-{self.end:%H:%M}"

    @property
    def minutes(self) -> int:
        return (self.end.hour * 60 + self.end.minute) - (
            self.start.hour * 60 + self.start.minute
        )

    def overlaps(self, other: "TimeWindow") -> bool:
        return self.start < other.end and other.start < self.end

    def contains(self, other: "TimeWindow") -> bool:
        return self.start <= other.start and other.end <= self.end


# Slots are generated windows; the alias keeps signatures readable.
TimeSlot = TimeWindow


@dataclass
class ScheduleSpec:
    """Doctor-supplied availability for one date, validated by the store."""

    is_available: bool = True
    working_hours: Optional[TimeWindow] = None
    break_window: Optional[TimeWindow] = None
    slot_duration: int = 30
    max_patients_per_slot: int = 1
    leave_reason: Optional[str] = None
    notes: str = ""


@dataclass
class ScheduleRecord:
    doctor_id: str
    date: date
    is_available: bool
    working_hours: Optional[TimeWindow]
    break_window: Optional[TimeWindow]
    slot_duration: int
    max_patients_per_slot: int
    leave_reason: Optional[str] = None
    notes: str = ""
    blocked_windows: List[TimeWindow] = field(default_factory=list)
    version: int = 1
    created_at: Optional[datetime] = None
    is_default: bool = False


@dataclass
class LeaveRequest:
    id: str
    doctor_id: str
    leave_type: LeaveType
    start_date: date
    end_date: date
    session: Optional[LeaveSession]
    reason: str
    status: LeaveStatus = LeaveStatus.PENDING
    admin_comment: Optional[str] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None
    decided_at: Optional[datetime] = None
    reconciliation_pending: bool = False


@dataclass
class Appointment:
    id: str
    doctor_id: str
    patient_id: str
    date: date
    slot: TimeSlot
    token_number: int
    status: AppointmentStatus = AppointmentStatus.BOOKED
    consultation_type: ConsultationType = ConsultationType.OPD
    cancellation_reason: Optional[str] = None
    cancelled_by: Optional[Actor] = None
    outcome: Optional[str] = None
    created_at: Optional[datetime] = None
    checked_in_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    rescheduled_from: Optional[str] = None
    rescheduled_to: Optional[str] = None
    leave_notified: bool = False

    @property
    def is_live(self) -> bool:
        return self.status in LIVE_STATUSES


@dataclass(frozen=True)
class NotificationIntent:
    recipient: str
    kind: str
    payload: Dict[str, Any]


@dataclass
class QueuePosition:
    """Where an appointment stands in its doctor's queue.

    ``estimated_wait_minutes`` is a heuristic: patients ahead multiplied by
    the doctor's recent average consultation length. It is not a promise.
    """

    appointment_id: str
    rank: int
    total_ahead: int
    estimated_wait_minutes: float

    @property
    def wait_label(self) -> str:
        if self.total_ahead == 0:
            return "Next in line"
        return f"~{round(self.estimated_wait_minutes)} min"
