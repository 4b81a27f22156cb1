import logging
from datetime import date, datetime, time
from typing import Dict, List, Optional

from fastapi import FastAPI, Request
from fastapi.openapi.docs import get_swagger_ui_html
from fastapi.responses import HTMLResponse, JSONResponse
from pydantic import BaseModel, Field

import config
from core import create_core
from domain import (
    Actor,
    Appointment,
    AppointmentStatus,
    ConcurrencyConflict,
    ConsultationType,
    CoreError,
    InvalidStateError,
    LeaveDecision,
    LeaveRequest,
    LeaveSession,
    LeaveStatus,
    LeaveType,
    NotFoundError,
    ReconciliationIncomplete,
    ScheduleRecord,
    ScheduleSpec,
    SlotFullError,
    SlotUnavailableError,
    TimeWindow,
    ValidationError,
)

logging.basicConfig(
    level=config.LOG_LEVEL,
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
logger = logging.getLogger(__name__)

app = FastAPI(title="OPD Scheduling Core", docs_url=None)
core = create_core()

ERROR_STATUS = {
    ValidationError: 422,
    NotFoundError: 404,
    InvalidStateError: 409,
    SlotUnavailableError: 409,
    SlotFullError: 409,
    ConcurrencyConflict: 503,
    ReconciliationIncomplete: 503,
}


@app.exception_handler(CoreError)
async def core_error_handler(request: Request, exc: CoreError) -> JSONResponse:
    status_code = ERROR_STATUS.get(type(exc), 400)
    if status_code >= 500:
        logger.warning("%s %s failed: %s", request.method, request.url.path, exc.message)
    return JSONResponse(status_code=status_code, content=exc.to_dict())


# ---------------------------------------------------------------------------
# Request / response models
# ---------------------------------------------------------------------------


class Window(BaseModel):
    start: time
    end: time


class ScheduleRequest(BaseModel):
    is_available: bool = True
    working_hours: Optional[Window] = None
    break_window: Optional[Window] = None
    slot_duration: int = config.DEFAULT_SLOT_DURATION
    max_patients_per_slot: int = config.DEFAULT_MAX_PATIENTS_PER_SLOT
    leave_reason: Optional[str] = None
    notes: str = ""


class ScheduleResponse(BaseModel):
    doctor_id: str
    date: date
    is_available: bool
    working_hours: Optional[Window]
    break_window: Optional[Window]
    slot_duration: int
    max_patients_per_slot: int
    leave_reason: Optional[str]
    notes: str
    blocked_windows: List[Window]
    version: int
    is_default: bool


class SlotResponse(BaseModel):
    label: str
    start: time
    end: time
    booked: int
    capacity: int


class SubmitLeaveRequest(BaseModel):
    doctor_id: str
    leave_type: LeaveType
    start_date: date
    end_date: Optional[date] = None
    session: Optional[LeaveSession] = None
    reason: str = ""


class CancelLeaveRequest(BaseModel):
    requester: str


class DecisionRequest(BaseModel):
    admin_comment: Optional[str] = None


class LeaveResponse(BaseModel):
    id: str
    doctor_id: str
    leave_type: LeaveType
    start_date: date
    end_date: date
    session: Optional[LeaveSession]
    reason: str
    status: LeaveStatus
    admin_comment: Optional[str]
    created_at: Optional[datetime]
    decided_at: Optional[datetime]
    reconciliation_pending: bool


class BookRequest(BaseModel):
    patient_id: str
    doctor_id: str
    date: date
    slot_start: time
    consultation_type: ConsultationType = ConsultationType.OPD


class CompleteRequest(BaseModel):
    outcome: Optional[str] = None


class CancelAppointmentRequest(BaseModel):
    reason: Optional[str] = None
    actor: Actor = Actor.PATIENT


class ReassignRequest(BaseModel):
    date: date
    slot_start: time
    actor: Actor = Actor.PATIENT


class SweepRequest(BaseModel):
    grace_minutes: Optional[int] = Field(default=None, ge=0)


class AppointmentResponse(BaseModel):
    id: str
    doctor_id: str
    patient_id: str
    date: date
    slot: str
    token_number: int
    status: AppointmentStatus
    consultation_type: ConsultationType
    cancellation_reason: Optional[str]
    cancelled_by: Optional[Actor]
    outcome: Optional[str]
    rescheduled_from: Optional[str]
    rescheduled_to: Optional[str]


class QueuePositionResponse(BaseModel):
    appointment_id: str
    rank: int
    total_ahead: int
    estimated_wait_minutes: float
    wait_label: str


class NotificationResponse(BaseModel):
    recipient: str
    kind: str
    payload: Dict[str, object]


def to_window(window: Optional[TimeWindow]) -> Optional[Window]:
    if window is None:
        return None
    return Window(start=window.start, end=window.end)


def from_window(window: Optional[Window]) -> Optional[TimeWindow]:
    if window is None:
        return None
    return TimeWindow(window.start, window.end)


def to_schedule_response(record: ScheduleRecord) -> ScheduleResponse:
    return ScheduleResponse(
        doctor_id=record.doctor_id,
        date=record.date,
        is_available=record.is_available,
        working_hours=to_window(record.working_hours),
        break_window=to_window(record.break_window),
        slot_duration=record.slot_duration,
        max_patients_per_slot=record.max_patients_per_slot,
        leave_reason=record.leave_reason,
        notes=record.notes,
        blocked_windows=[to_window(w) for w in record.blocked_windows],
        version=record.version,
        is_default=record.is_default,
    )


def to_leave_response(request: LeaveRequest) -> LeaveResponse:
    return LeaveResponse(
        id=request.id,
        doctor_id=request.doctor_id,
        leave_type=request.leave_type,
        start_date=request.start_date,
        end_date=request.end_date,
        session=request.session,
        reason=request.reason,
        status=request.status,
        admin_comment=request.admin_comment,
        created_at=request.created_at,
        decided_at=request.decided_at,
        reconciliation_pending=request.reconciliation_pending,
    )


def to_appointment_response(a: Appointment) -> AppointmentResponse:
    return AppointmentResponse(
        id=a.id,
        doctor_id=a.doctor_id,
        patient_id=a.patient_id,
        date=a.date,
        slot=a.slot.label,
        token_number=a.token_number,
        status=a.status,
        consultation_type=a.consultation_type,
        cancellation_reason=a.cancellation_reason,
        cancelled_by=a.cancelled_by,
        outcome=a.outcome,
        rescheduled_from=a.rescheduled_from,
        rescheduled_to=a.rescheduled_to,
    )


# ---------------------------------------------------------------------------
# Schedules
# ---------------------------------------------------------------------------


@app.put("/doctors/{doctor_id}/schedules/{day}", response_model=ScheduleResponse)
def set_schedule(doctor_id: str, day: date, body: ScheduleRequest) -> ScheduleResponse:
    spec = ScheduleSpec(
        is_available=body.is_available,
        working_hours=from_window(body.working_hours),
        break_window=from_window(body.break_window),
        slot_duration=body.slot_duration,
        max_patients_per_slot=body.max_patients_per_slot,
        leave_reason=body.leave_reason,
        notes=body.notes,
    )
    return to_schedule_response(core.schedules.set_schedule(doctor_id, day, spec))


@app.get("/doctors/{doctor_id}/schedules", response_model=List[ScheduleResponse])
def list_schedules(doctor_id: str, start: date, end: date) -> List[ScheduleResponse]:
    records = core.schedules.list_schedules(doctor_id, start, end)
    return [to_schedule_response(r) for r in records]


@app.get("/doctors/{doctor_id}/schedules/{day}", response_model=ScheduleResponse)
def get_schedule(doctor_id: str, day: date) -> ScheduleResponse:
    return to_schedule_response(core.schedules.get_schedule(doctor_id, day))


@app.get("/doctors/{doctor_id}/schedules/{day}/slots", response_model=List[SlotResponse])
def list_slots(doctor_id: str, day: date) -> List[SlotResponse]:
    record = core.schedules.get_schedule(doctor_id, day)
    return [
        SlotResponse(
            label=slot.label,
            start=slot.start,
            end=slot.end,
            booked=core.appointments.occupancy(doctor_id, day, slot.start),
            capacity=record.max_patients_per_slot,
        )
        for slot in core.schedules.list_slots(doctor_id, day)
    ]


@app.get("/doctors/{doctor_id}/schedules/{day}/next-token")
def peek_token(doctor_id: str, day: date) -> dict:
    return {"next_token": core.tokens.peek(doctor_id, day)}


# ---------------------------------------------------------------------------
# Leave requests
# ---------------------------------------------------------------------------


@app.post("/leave-requests", response_model=LeaveResponse, status_code=201)
def submit_leave(body: SubmitLeaveRequest) -> LeaveResponse:
    request = core.leaves.submit(
        doctor_id=body.doctor_id,
        leave_type=body.leave_type,
        start_date=body.start_date,
        end_date=body.end_date,
        session=body.session,
        reason=body.reason,
    )
    return to_leave_response(request)


@app.get("/leave-requests", response_model=List[LeaveResponse])
def list_leaves(
    doctor_id: Optional[str] = None, status: Optional[LeaveStatus] = None
) -> List[LeaveResponse]:
    return [to_leave_response(r) for r in core.leaves.list_requests(doctor_id, status)]


@app.get("/leave-requests/{request_id}", response_model=LeaveResponse)
def get_leave(request_id: str) -> LeaveResponse:
    return to_leave_response(core.leaves.get(request_id))


@app.post("/leave-requests/{request_id}/cancel", response_model=LeaveResponse)
def cancel_leave(request_id: str, body: CancelLeaveRequest) -> LeaveResponse:
    return to_leave_response(core.leaves.cancel(request_id, body.requester))


@app.post("/leave-requests/{request_id}/approve", response_model=LeaveResponse)
def approve_leave(request_id: str, body: DecisionRequest) -> LeaveResponse:
    request = core.leaves.decide(request_id, LeaveDecision.APPROVE, body.admin_comment)
    return to_leave_response(request)


@app.post("/leave-requests/{request_id}/reject", response_model=LeaveResponse)
def reject_leave(request_id: str, body: DecisionRequest) -> LeaveResponse:
    request = core.leaves.decide(request_id, LeaveDecision.REJECT, body.admin_comment)
    return to_leave_response(request)


@app.post("/leave-requests/{request_id}/retry", response_model=LeaveResponse)
def retry_leave(request_id: str) -> LeaveResponse:
    return to_leave_response(core.leaves.retry_reconciliation(request_id))


# ---------------------------------------------------------------------------
# Appointments
# ---------------------------------------------------------------------------


@app.post("/appointments/book", response_model=AppointmentResponse, status_code=201)
def book_appointment(body: BookRequest) -> AppointmentResponse:
    appointment = core.appointments.book(
        patient_id=body.patient_id,
        doctor_id=body.doctor_id,
        day=body.date,
        slot_start=body.slot_start,
        consultation_type=body.consultation_type,
    )
    return to_appointment_response(appointment)


@app.post("/appointments/sweep-missed", response_model=List[AppointmentResponse])
def sweep_missed(body: SweepRequest) -> List[AppointmentResponse]:
    missed = core.appointments.sweep_missed(body.grace_minutes)
    return [to_appointment_response(a) for a in missed]


@app.get("/appointments/{appointment_id}", response_model=AppointmentResponse)
def get_appointment(appointment_id: str) -> AppointmentResponse:
    return to_appointment_response(core.appointments.get(appointment_id))


@app.post("/appointments/{appointment_id}/check-in", response_model=AppointmentResponse)
def check_in(appointment_id: str) -> AppointmentResponse:
    return to_appointment_response(core.appointments.check_in(appointment_id))


@app.post("/appointments/{appointment_id}/complete", response_model=AppointmentResponse)
def complete(appointment_id: str, body: CompleteRequest) -> AppointmentResponse:
    return to_appointment_response(core.appointments.complete(appointment_id, body.outcome))


@app.post("/appointments/{appointment_id}/cancel", response_model=AppointmentResponse)
def cancel_appointment(appointment_id: str, body: CancelAppointmentRequest) -> AppointmentResponse:
    appointment = core.appointments.cancel(appointment_id, body.reason, body.actor)
    return to_appointment_response(appointment)


@app.post("/appointments/{appointment_id}/missed", response_model=AppointmentResponse)
def mark_missed(appointment_id: str) -> AppointmentResponse:
    return to_appointment_response(core.appointments.mark_missed(appointment_id))


@app.post("/appointments/{appointment_id}/reassign", response_model=AppointmentResponse)
def reassign(appointment_id: str, body: ReassignRequest) -> AppointmentResponse:
    appointment = core.appointments.reassign(
        appointment_id, body.date, body.slot_start, body.actor
    )
    return to_appointment_response(appointment)


@app.get("/patients/{patient_id}/appointments", response_model=List[AppointmentResponse])
def patient_appointments(patient_id: str) -> List[AppointmentResponse]:
    return [to_appointment_response(a) for a in core.appointments.list_for_patient(patient_id)]


@app.get("/doctors/{doctor_id}/appointments/{day}", response_model=List[AppointmentResponse])
def doctor_appointments(
    doctor_id: str, day: date, status: Optional[AppointmentStatus] = None
) -> List[AppointmentResponse]:
    statuses = [status] if status is not None else None
    appointments = core.appointments.list_for_doctor(doctor_id, day, statuses)
    return [to_appointment_response(a) for a in appointments]


# ---------------------------------------------------------------------------
# Queue
# ---------------------------------------------------------------------------


@app.get("/doctors/{doctor_id}/queue/{day}", response_model=List[AppointmentResponse])
def doctor_queue(doctor_id: str, day: date) -> List[AppointmentResponse]:
    return [to_appointment_response(a) for a in core.queue.doctor_queue(doctor_id, day)]


@app.get("/doctors/{doctor_id}/queue/{day}/next", response_model=Optional[AppointmentResponse])
def next_patient(doctor_id: str, day: date) -> Optional[AppointmentResponse]:
    appointment = core.queue.next_patient(doctor_id, day)
    return to_appointment_response(appointment) if appointment else None


@app.get("/doctors/{doctor_id}/queue/{day}/statistics")
def queue_statistics(doctor_id: str, day: date) -> Dict[str, int]:
    return core.queue.statistics(doctor_id, day)


@app.get(
    "/doctors/{doctor_id}/queue/{day}/position/{appointment_id}",
    response_model=QueuePositionResponse,
)
def queue_position(doctor_id: str, day: date, appointment_id: str) -> QueuePositionResponse:
    position = core.queue.position(doctor_id, day, appointment_id)
    return QueuePositionResponse(
        appointment_id=position.appointment_id,
        rank=position.rank,
        total_ahead=position.total_ahead,
        estimated_wait_minutes=position.estimated_wait_minutes,
        wait_label=position.wait_label,
    )


# ---------------------------------------------------------------------------
# Notifications and housekeeping
# ---------------------------------------------------------------------------


@app.get("/notifications", response_model=List[NotificationResponse])
def pending_notifications(recipient: Optional[str] = None) -> List[NotificationResponse]:
    return [
        NotificationResponse(recipient=i.recipient, kind=i.kind, payload=i.payload)
        for i in core.outbox.pending(recipient)
    ]


@app.post("/notifications/drain", response_model=List[NotificationResponse])
def drain_notifications() -> List[NotificationResponse]:
    """Hand every queued intent to the caller and clear the outbox."""
    return [
        NotificationResponse(recipient=i.recipient, kind=i.kind, payload=i.payload)
        for i in core.outbox.drain()
    ]


@app.post("/admin/reset")
def reset_all() -> dict:
    """Reset in-memory data (useful during development / simulation)."""
    core.reset()
    return {"detail": "State cleared"}


@app.get("/health")
def health() -> dict:
    return {"status": "ok"}


@app.get("/docs", include_in_schema=False)
async def custom_swagger_ui() -> object:
    """API explorer for the OPD scheduling endpoints, titled after the service."""
    resp = get_swagger_ui_html(
        openapi_url=app.openapi_url,
        title="OPD Scheduling Core",
    )
    html = resp.body.decode("utf-8")
    css = """
<style>
  .swagger-ui .info .title small { display: none !important; }
  .swagger-ui .info .title .version-stamp { display: none !important; }
</style>
""".strip()
    html = html.replace("</head>", f"{css}</head>", 1)
    headers = dict(resp.headers)
    headers.pop("content-length", None)
    return HTMLResponse(html, status_code=resp.status_code, headers=headers)
