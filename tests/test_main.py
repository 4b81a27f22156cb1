"""HTTP tests for the FastAPI app."""

import pytest
from fastapi.testclient import TestClient

import main

DAY = "2031-03-10"
NEXT_DAY = "2031-03-11"

STANDARD_DAY = {
    "working_hours": {"start": "09:00", "end": "18:00"},
    "break_window": {"start": "13:00", "end": "14:00"},
    "slot_duration": 30,
    "max_patients_per_slot": 2,
}


@pytest.fixture
def client():
    main.core.reset()
    with TestClient(main.app) as client:
        yield client
    main.core.reset()


@pytest.fixture
def published(client):
    for day in (DAY, NEXT_DAY):
        response = client.put(f"/doctors/d1/schedules/{day}", json=STANDARD_DAY)
        assert response.status_code == 200
    return client


def book(client, patient_id, slot_start="09:00", day=DAY, doctor_id="d1"):
    return client.post(
        "/appointments/book",
        json={
            "patient_id": patient_id,
            "doctor_id": doctor_id,
            "date": day,
            "slot_start": slot_start,
        },
    )


class TestHousekeeping:
    def test_health(self, client):
        assert client.get("/health").json() == {"status": "ok"}

    def test_docs_page_is_served(self, client):
        response = client.get("/docs")

        assert response.status_code == 200
        assert "OPD Scheduling Core" in response.text

    def test_reset_clears_state(self, published):
        book(published, "p1")

        assert published.post("/admin/reset").status_code == 200
        assert published.get(f"/doctors/d1/schedules/{DAY}").json()["is_default"] is True


class TestScheduleEndpoints:
    def test_put_then_get(self, published):
        body = published.get(f"/doctors/d1/schedules/{DAY}").json()

        assert body["is_available"] is True
        assert body["version"] == 1
        assert body["working_hours"] == {"start": "09:00:00", "end": "18:00:00"}

    def test_unpublished_date_is_unavailable(self, client):
        body = client.get(f"/doctors/d9/schedules/{DAY}").json()

        assert body["is_available"] is False
        assert body["is_default"] is True

    def test_invalid_schedule_is_422(self, client):
        response = client.put(
            f"/doctors/d1/schedules/{DAY}",
            json={**STANDARD_DAY, "break_window": {"start": "08:00", "end": "09:30"}},
        )

        assert response.status_code == 422
        assert response.json()["kind"] == "validation_error"

    def test_capacity_below_live_bookings_is_422(self, published):
        book(published, "p1")
        book(published, "p2")

        response = published.put(
            f"/doctors/d1/schedules/{DAY}", json={**STANDARD_DAY, "max_patients_per_slot": 1}
        )

        assert response.status_code == 422
        assert response.json()["kind"] == "validation_error"

    def test_slots_report_occupancy(self, published):
        book(published, "p1")

        slots = published.get(f"/doctors/d1/schedules/{DAY}/slots").json()

        assert len(slots) == 16
        assert slots[0] == {
            "label": "09:00-09:30",
            "start": "09:00:00",
            "end": "09:30:00",
            "booked": 1,
            "capacity": 2,
        }

    def test_list_range(self, published):
        records = published.get(
            "/doctors/d1/schedules", params={"start": DAY, "end": NEXT_DAY}
        ).json()

        assert [r["date"] for r in records] == [DAY, NEXT_DAY]

    def test_next_token(self, published):
        book(published, "p1")

        assert published.get(f"/doctors/d1/schedules/{DAY}/next-token").json() == {
            "next_token": 2
        }


class TestAppointmentEndpoints:
    def test_book_returns_201_with_token(self, published):
        response = book(published, "p1")

        assert response.status_code == 201
        body = response.json()
        assert body["token_number"] == 1
        assert body["status"] == "booked"
        assert body["slot"] == "09:00-09:30"

    def test_full_slot_is_409(self, published):
        book(published, "p1")
        book(published, "p2")

        response = book(published, "p3")

        assert response.status_code == 409
        assert response.json()["kind"] == "slot_full"

    def test_unknown_slot_is_409_with_reason(self, published):
        response = book(published, "p1", slot_start="13:00")

        assert response.status_code == 409
        assert response.json()["kind"] == "slot_unavailable"
        assert response.json()["reason"] == "no_such_slot"

    def test_unknown_appointment_is_404(self, client):
        response = client.get("/appointments/appt_missing")

        assert response.status_code == 404
        assert response.json()["kind"] == "not_found"

    def test_lifecycle(self, published):
        appt_id = book(published, "p1").json()["id"]

        assert published.post(f"/appointments/{appt_id}/check-in").json()["status"] == "in_queue"
        done = published.post(
            f"/appointments/{appt_id}/complete", json={"outcome": "prescribed rest"}
        ).json()
        assert done["status"] == "consulted"
        assert done["outcome"] == "prescribed rest"

    def test_illegal_transition_is_409(self, published):
        appt_id = book(published, "p1").json()["id"]

        response = published.post(f"/appointments/{appt_id}/complete", json={})

        assert response.status_code == 409
        assert response.json()["kind"] == "invalid_state"

    def test_cancel_and_patient_history(self, published):
        appt_id = book(published, "p1").json()["id"]

        cancelled = published.post(
            f"/appointments/{appt_id}/cancel", json={"reason": "travel"}
        ).json()
        history = published.get("/patients/p1/appointments").json()

        assert cancelled["cancelled_by"] == "patient"
        assert [a["id"] for a in history] == [appt_id]

    def test_reassign_to_other_day(self, published):
        appt_id = book(published, "p1").json()["id"]

        moved = published.post(
            f"/appointments/{appt_id}/reassign",
            json={"date": NEXT_DAY, "slot_start": "10:00"},
        ).json()

        assert moved["rescheduled_from"] == appt_id
        assert moved["date"] == NEXT_DAY
        assert published.get(f"/appointments/{appt_id}").json()["status"] == "cancelled"

    def test_doctor_listing_filters_status(self, published):
        first = book(published, "p1").json()["id"]
        book(published, "p2", slot_start="09:30")
        published.post(f"/appointments/{first}/check-in")

        listed = published.get(
            f"/doctors/d1/appointments/{DAY}", params={"status": "in_queue"}
        ).json()

        assert [a["id"] for a in listed] == [first]


class TestLeaveEndpoints:
    def submit(self, client, **overrides):
        body = {"doctor_id": "d1", "leave_type": "full_day", "start_date": DAY}
        body.update(overrides)
        return client.post("/leave-requests", json=body)

    def test_submit_is_pending(self, client):
        response = self.submit(client, reason="conference")

        assert response.status_code == 201
        assert response.json()["status"] == "pending"
        assert response.json()["end_date"] == DAY

    def test_half_day_without_session_is_422(self, client):
        response = self.submit(client, leave_type="half_day")

        assert response.status_code == 422

    def test_approval_cancels_bookings_and_blocks_new_ones(self, published):
        appt_id = book(published, "p1").json()["id"]
        published.post("/notifications/drain")
        leave_id = self.submit(published, reason="conference").json()["id"]

        approved = published.post(f"/leave-requests/{leave_id}/approve", json={})

        assert approved.json()["status"] == "approved"
        appt = published.get(f"/appointments/{appt_id}").json()
        assert appt["status"] == "cancelled"
        assert appt["cancelled_by"] == "system"
        retry = book(published, "p2")
        assert retry.status_code == 409
        assert retry.json()["reason"] == "doctor_unavailable"
        [intent] = published.post("/notifications/drain").json()
        assert intent["recipient"] == "p1"
        assert intent["kind"] == "appointment_cancelled_due_to_leave"

    def test_cancel_by_other_doctor_is_422(self, client):
        leave_id = self.submit(client).json()["id"]

        response = client.post(f"/leave-requests/{leave_id}/cancel", json={"requester": "d2"})

        assert response.status_code == 422

    def test_decided_request_cannot_be_rejected(self, client):
        leave_id = self.submit(client).json()["id"]
        client.post(f"/leave-requests/{leave_id}/reject", json={"admin_comment": "busy"})

        response = client.post(f"/leave-requests/{leave_id}/reject", json={})

        assert response.status_code == 409

    def test_list_by_status(self, client):
        first = self.submit(client).json()["id"]
        self.submit(client, start_date=NEXT_DAY)
        client.post(f"/leave-requests/{first}/reject", json={})

        pending = client.get("/leave-requests", params={"status": "pending"}).json()

        assert len(pending) == 1
        assert pending[0]["start_date"] == NEXT_DAY


class TestQueueEndpoints:
    def test_position_and_statistics(self, published):
        ids = [book(published, f"p{i}", slot_start=s).json()["id"]
               for i, s in enumerate(["09:00", "09:00", "09:30"], start=1)]

        position = published.get(f"/doctors/d1/queue/{DAY}/position/{ids[2]}").json()
        stats = published.get(f"/doctors/d1/queue/{DAY}/statistics").json()

        assert position["rank"] == 3
        assert position["total_ahead"] == 2
        assert position["wait_label"] == "~20 min"
        assert stats["booked"] == 3
        assert stats["total"] == 3

    def test_next_patient(self, published):
        first = book(published, "p1").json()["id"]

        assert published.get(f"/doctors/d1/queue/{DAY}/next").json()["id"] == first

    def test_position_for_wrong_doctor_is_422(self, published):
        appt_id = book(published, "p1").json()["id"]

        response = published.get(f"/doctors/d2/queue/{DAY}/position/{appt_id}")

        assert response.status_code == 422


class TestNotificationEndpoints:
    def test_pending_filters_by_recipient_and_drain_empties(self, published):
        book(published, "p1")
        book(published, "p2")

        only_p1 = published.get("/notifications", params={"recipient": "p1"}).json()
        drained = published.post("/notifications/drain").json()

        assert [n["recipient"] for n in only_p1] == ["p1"]
        assert only_p1[0]["kind"] == "appointment_booked"
        assert len(drained) == 2
        assert published.get("/notifications").json() == []
