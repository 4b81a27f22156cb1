from __future__ import annotations

import logging
import threading
from dataclasses import replace
from datetime import date, datetime, time, timedelta
from typing import Callable, Dict, List, Optional, Tuple

import config
from domain import (
    LeaveSession,
    ScheduleRecord,
    ScheduleSpec,
    TimeSlot,
    TimeWindow,
    ValidationError,
)
from locks import KeyedLocks

logger = logging.getLogger(__name__)

NO_SCHEDULE_REASON = "No schedule published"


def _minutes(value) -> int:
    return value.hour * 60 + value.minute


def _clock(minutes: int):
    return datetime.min.replace(hour=minutes // 60, minute=minutes % 60).time()


def date_range(start: date, end: date) -> List[date]:
    return [start + timedelta(days=i) for i in range((end - start).days + 1)]


def validate_spec(spec: ScheduleSpec) -> None:
    if spec.slot_duration <= 0:
        raise ValidationError("Slot duration must be greater than zero minutes")
    if spec.max_patients_per_slot < 1:
        raise ValidationError("Max patients per slot must be at least 1")

    if not spec.is_available:
        if not (spec.leave_reason and spec.leave_reason.strip()):
            raise ValidationError("A leave reason is required when unavailable")
        return

    if spec.leave_reason:
        raise ValidationError("A leave reason is only allowed when unavailable")
    if spec.working_hours is None:
        raise ValidationError("Working hours are required when available")
    hours = spec.working_hours
    if hours.start >= hours.end:
        raise ValidationError("Working hours must start before they end")
    if spec.break_window is not None:
        brk = spec.break_window
        if brk.start >= brk.end:
            raise ValidationError("Break must start before it ends")
        if not hours.contains(brk):
            raise ValidationError(
                f"Break {brk.label} must lie within working hours {hours.label}"
            )


class ScheduleStore:
    """
    Per-doctor, per-date availability.

    Each (doctor, date) has at most one active record. Edits supersede the
    active record; superseded records are kept as history, never deleted.
    """

    def __init__(
        self,
        now: Optional[Callable[[], datetime]] = None,
        locks: Optional[KeyedLocks] = None,
    ) -> None:
        self._now = now or datetime.now
        self.locks = locks if locks is not None else KeyedLocks()
        # Live bookings per slot start for a (doctor, date); wired by the core.
        self.live_occupancy: Optional[Callable[[str, date], Dict[time, int]]] = None
        self._lock = threading.Lock()
        self._active: Dict[Tuple[str, date], ScheduleRecord] = {}
        self._history: Dict[Tuple[str, date], List[ScheduleRecord]] = {}

    def reset(self) -> None:
        with self._lock:
            self._active.clear()
            self._history.clear()

    def _supersede(self, record: ScheduleRecord) -> ScheduleRecord:
        key = (record.doctor_id, record.date)
        with self._lock:
            previous = self._active.get(key)
            if previous is not None:
                self._history.setdefault(key, []).append(previous)
            record.version = previous.version + 1 if previous is not None else 1
            record.created_at = self._now()
            self._active[key] = record
        return record

    def _check_capacity(self, doctor_id: str, day: date, spec: ScheduleSpec) -> None:
        if self.live_occupancy is None or not spec.is_available:
            return
        busiest = max(self.live_occupancy(doctor_id, day).values(), default=0)
        if busiest > spec.max_patients_per_slot:
            raise ValidationError(
                f"A slot for doctor {doctor_id} on {day} already holds {busiest} live "
                f"appointments; capacity cannot drop to {spec.max_patients_per_slot}"
            )

    def set_schedule(self, doctor_id: str, day: date, spec: ScheduleSpec) -> ScheduleRecord:
        """Publish or edit a doctor's day.

        Runs under the (doctor, date) lock that bookings hold, and refuses to
        lower capacity below a slot's current live bookings.
        """
        validate_spec(spec)
        record = ScheduleRecord(
            doctor_id=doctor_id,
            date=day,
            is_available=spec.is_available,
            working_hours=spec.working_hours,
            break_window=spec.break_window,
            slot_duration=spec.slot_duration,
            max_patients_per_slot=spec.max_patients_per_slot,
            leave_reason=spec.leave_reason if not spec.is_available else None,
            notes=spec.notes,
        )
        with self.locks.hold(doctor_id, day):
            self._check_capacity(doctor_id, day, spec)
            record = self._supersede(record)
        logger.info(
            "Schedule set doctor=%s date=%s available=%s version=%d",
            doctor_id,
            day,
            record.is_available,
            record.version,
        )
        return record

    def get_schedule(self, doctor_id: str, day: date) -> ScheduleRecord:
        with self._lock:
            record = self._active.get((doctor_id, day))
        if record is None:
            return self.default_unavailable(doctor_id, day)
        return record

    @staticmethod
    def default_unavailable(doctor_id: str, day: date) -> ScheduleRecord:
        """Sentinel for a date with no published schedule. Never bookable."""
        return ScheduleRecord(
            doctor_id=doctor_id,
            date=day,
            is_available=False,
            working_hours=None,
            break_window=None,
            slot_duration=config.DEFAULT_SLOT_DURATION,
            max_patients_per_slot=config.DEFAULT_MAX_PATIENTS_PER_SLOT,
            leave_reason=NO_SCHEDULE_REASON,
            version=0,
            is_default=True,
        )

    def history(self, doctor_id: str, day: date) -> List[ScheduleRecord]:
        with self._lock:
            return list(self._history.get((doctor_id, day), []))

    def list_schedules(self, doctor_id: str, start: date, end: date) -> List[ScheduleRecord]:
        if end < start:
            raise ValidationError("End date must not be before start date")
        return [self.get_schedule(doctor_id, day) for day in date_range(start, end)]

    def list_slots(self, doctor_id: str, day: date) -> List[TimeSlot]:
        return generate_slots(self.get_schedule(doctor_id, day))

    def session_window(
        self, doctor_id: str, day: date, session: LeaveSession
    ) -> Optional[TimeWindow]:
        """Clock window of a half-day session on this doctor's day.

        Resolved against the stored working hours: the morning runs from the
        start of work to the break (or the midday boundary), the afternoon
        from the end of the break (or the boundary) to the end of work.
        Returns None when the session does not intersect working hours.
        """
        morning = TimeWindow.parse(config.MORNING_SESSION)
        afternoon = TimeWindow.parse(config.AFTERNOON_SESSION)
        record = self.get_schedule(doctor_id, day)
        hours = record.working_hours
        if hours is None:
            return morning if session == LeaveSession.MORNING else afternoon

        brk = record.break_window
        if session == LeaveSession.MORNING:
            start = hours.start
            end = min(brk.start if brk else morning.end, hours.end)
        else:
            start = max(brk.end if brk else morning.end, hours.start)
            end = hours.end
        if start >= end:
            return None
        return TimeWindow(start, end)

    def mark_unavailable(
        self,
        doctor_id: str,
        start: date,
        end: date,
        reason: str,
        session: Optional[LeaveSession] = None,
    ) -> List[ScheduleRecord]:
        """Record approved leave for every date in ``[start, end]``.

        Without a session the whole day becomes unavailable. With a session
        only that session's window is blocked and the rest of the day stays
        bookable.
        """
        if end < start:
            raise ValidationError("End date must not be before start date")
        if not (reason and reason.strip()):
            raise ValidationError("A leave reason is required")

        days = date_range(start, end)
        updated = []
        with self.locks.hold_many(doctor_id, days):
            for day in days:
                current = self.get_schedule(doctor_id, day)
                if session is not None and current.is_available:
                    window = self.session_window(doctor_id, day, session)
                    blocked = list(current.blocked_windows)
                    if window is not None and window not in blocked:
                        blocked.append(window)
                    record = replace(
                        current,
                        blocked_windows=blocked,
                        notes=_append_note(current.notes, f"{session.value} leave: {reason}"),
                        is_default=False,
                    )
                else:
                    # Capacity and duration survive only as history.
                    record = replace(
                        current,
                        is_available=False,
                        leave_reason=reason,
                        blocked_windows=[],
                        is_default=False,
                    )
                updated.append(self._supersede(record))
                logger.info(
                    "Marked unavailable doctor=%s date=%s session=%s",
                    doctor_id,
                    day,
                    session.value if session else "full_day",
                )
        return updated


def _append_note(notes: str, extra: str) -> str:
    return f"{notes}\n{extra}" if notes else extra


def generate_slots(record: ScheduleRecord) -> List[TimeSlot]:
    """Ordered bookable slots for a record; empty when the doctor is away."""
    if not record.is_available or record.working_hours is None:
        return []

    excluded = list(record.blocked_windows)
    if record.break_window is not None:
        excluded.append(record.break_window)

    slots = []
    cursor = _minutes(record.working_hours.start)
    end = _minutes(record.working_hours.end)
    while cursor + record.slot_duration <= end:
        slot = TimeWindow(_clock(cursor), _clock(cursor + record.slot_duration))
        if not any(slot.overlaps(window) for window in excluded):
            slots.append(slot)
        cursor += record.slot_duration
    logger.debug(
        "Generated %d slots doctor=%s date=%s", len(slots), record.doctor_id, record.date
    )
    return slots
