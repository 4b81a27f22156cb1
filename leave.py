from __future__ import annotations

import logging
import threading
from contextlib import contextmanager
from datetime import date
from typing import Dict, Iterator, List, Optional, Union

from appointments import generate_id
from clock import Clock, SystemClock
from domain import (
    InvalidStateError,
    LeaveDecision,
    LeaveRequest,
    LeaveSession,
    LeaveStatus,
    LeaveType,
    NotFoundError,
    ReconciliationIncomplete,
    ValidationError,
)
from locks import KeyedLocks
from reconciler import AppointmentReconciler
from schedule import ScheduleStore, date_range

logger = logging.getLogger(__name__)


def _coerce(enum_cls, value, field_name: str):
    if value is None or isinstance(value, enum_cls):
        return value
    try:
        return enum_cls(value)
    except ValueError as exc:
        allowed = ", ".join(m.value for m in enum_cls)
        raise ValidationError(f"Invalid {field_name} '{value}', expected one of: {allowed}") from exc


class LeaveRequestManager:
    """
    Leave requests and their approval cascade.

    pending -> approved | rejected | cancelled, all terminal. Approval marks
    the doctor's schedule unavailable and reconciles existing appointments
    while holding the (doctor, date) locks of every affected day, and only
    then records the request as approved. When reconciliation fails the
    request stays pending with ``reconciliation_pending`` set until
    ``retry_reconciliation`` finishes the job.
    """

    def __init__(
        self,
        schedules: ScheduleStore,
        reconciler: AppointmentReconciler,
        locks: Optional[KeyedLocks] = None,
        clock: Optional[Clock] = None,
    ) -> None:
        self.schedules = schedules
        self.reconciler = reconciler
        self.locks = locks if locks is not None else schedules.locks
        self.clock = clock or SystemClock()
        self._lock = threading.Lock()
        self._request_locks: Dict[str, threading.Lock] = {}
        self.requests: Dict[str, LeaveRequest] = {}

    def reset(self) -> None:
        with self._lock:
            self.requests.clear()
            self._request_locks.clear()

    @contextmanager
    def _exclusive(self, request_id: str) -> Iterator[LeaveRequest]:
        # Decided requests never change again, so their lock is dropped.
        request = self.get(request_id)
        with self._lock:
            lock = self._request_locks.setdefault(request_id, threading.Lock())
        try:
            with lock:
                yield request
        finally:
            if request.status != LeaveStatus.PENDING:
                with self._lock:
                    self._request_locks.pop(request_id, None)

    def get(self, request_id: str) -> LeaveRequest:
        with self._lock:
            request = self.requests.get(request_id)
        if request is None:
            raise NotFoundError(f"Leave request {request_id} not found")
        return request

    def list_requests(
        self,
        doctor_id: Optional[str] = None,
        status: Optional[Union[LeaveStatus, str]] = None,
    ) -> List[LeaveRequest]:
        status = _coerce(LeaveStatus, status, "status")
        with self._lock:
            found = [
                r
                for r in self.requests.values()
                if (doctor_id is None or r.doctor_id == doctor_id)
                and (status is None or r.status == status)
            ]
        # Newest first; insertion order breaks timestamp ties.
        ordered = sorted(enumerate(found), key=lambda pair: (pair[1].created_at, pair[0]))
        return [r for _, r in reversed(ordered)]

    def submit(
        self,
        doctor_id: str,
        leave_type: Union[LeaveType, str],
        start_date: date,
        end_date: Optional[date] = None,
        session: Optional[Union[LeaveSession, str]] = None,
        reason: str = "",
    ) -> LeaveRequest:
        leave_type = _coerce(LeaveType, leave_type, "leave type")
        session = _coerce(LeaveSession, session, "session")
        if end_date is None:
            end_date = start_date

        if leave_type == LeaveType.FULL_DAY:
            if end_date < start_date:
                raise ValidationError("Leave end date must not be before its start date")
            session = None
        else:
            if start_date != end_date:
                raise ValidationError("Half-day leave must start and end on the same date")
            if session is None:
                raise ValidationError("Half-day leave needs a morning or afternoon session")

        now = self.clock.now()
        request = LeaveRequest(
            id=generate_id("leave"),
            doctor_id=doctor_id,
            leave_type=leave_type,
            start_date=start_date,
            end_date=end_date,
            session=session,
            reason=(reason or "").strip(),
            created_at=now,
            updated_at=now,
        )
        with self._lock:
            self.requests[request.id] = request
        logger.info(
            "Leave request %s submitted doctor=%s %s %s..%s",
            request.id,
            doctor_id,
            leave_type.value,
            start_date,
            end_date,
        )
        return request

    def cancel(self, request_id: str, requester: str) -> LeaveRequest:
        with self._exclusive(request_id) as request:
            if request.doctor_id != requester:
                raise ValidationError(
                    f"Leave request {request_id} belongs to another doctor"
                )
            if request.status != LeaveStatus.PENDING or request.reconciliation_pending:
                raise InvalidStateError(
                    f"Leave request {request_id} can no longer be cancelled "
                    f"(status '{request.status.value}')"
                )
            request.status = LeaveStatus.CANCELLED
            request.updated_at = self.clock.now()
        logger.info("Leave request %s cancelled by %s", request_id, requester)
        return request

    def decide(
        self,
        request_id: str,
        decision: Union[LeaveDecision, str],
        admin_comment: Optional[str] = None,
    ) -> LeaveRequest:
        decision = _coerce(LeaveDecision, decision, "decision")
        with self._exclusive(request_id) as request:
            if request.status != LeaveStatus.PENDING:
                raise InvalidStateError(
                    f"Leave request {request_id} was already {request.status.value}"
                )

            if decision == LeaveDecision.REJECT:
                if request.reconciliation_pending:
                    raise InvalidStateError(
                        f"Leave request {request_id} is mid-approval and cannot be rejected"
                    )
                now = self.clock.now()
                request.status = LeaveStatus.REJECTED
                request.admin_comment = admin_comment
                request.decided_at = now
                request.updated_at = now
                logger.info("Leave request %s rejected", request_id)
                return request

            if admin_comment is not None:
                request.admin_comment = admin_comment
            self._approve(request)
        return request

    def retry_reconciliation(self, request_id: str) -> LeaveRequest:
        with self._exclusive(request_id) as request:
            if request.status != LeaveStatus.PENDING or not request.reconciliation_pending:
                raise InvalidStateError(
                    f"Leave request {request_id} has no outstanding reconciliation"
                )
            self._approve(request)
        return request

    def _approve(self, request: LeaveRequest) -> None:
        """Mark the schedule, reconcile, then approve. Caller holds the request."""
        days = date_range(request.start_date, request.end_date)
        with self.locks.hold_many(request.doctor_id, days):
            if not request.reconciliation_pending:
                self.schedules.mark_unavailable(
                    request.doctor_id,
                    request.start_date,
                    request.end_date,
                    request.reason or f"{request.leave_type.value} leave",
                    request.session,
                )
                request.reconciliation_pending = True

            try:
                self.reconciler.reconcile(
                    request.doctor_id,
                    request.start_date,
                    request.end_date,
                    request.session,
                )
            except ReconciliationIncomplete:
                request.updated_at = self.clock.now()
                logger.warning(
                    "Leave request %s stays pending until reconciliation is retried",
                    request.id,
                )
                raise

            now = self.clock.now()
            request.status = LeaveStatus.APPROVED
            request.reconciliation_pending = False
            request.decided_at = now
            request.updated_at = now
        logger.info("Leave request %s approved", request.id)
