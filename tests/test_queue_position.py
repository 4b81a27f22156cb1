"""Tests for queue position and queue views."""

import pytest

from conftest import DAY, NEXT_DAY
from domain import AppointmentStatus, InvalidStateError, QueuePosition, ValidationError


@pytest.fixture
def queue(published):
    """Four patients booked for d1 on DAY, tokens 1-4."""
    appts = [
        published.appointments.book(f"p{i}", "d1", DAY, slot)
        for i, slot in enumerate(["09:00", "09:00", "09:30", "10:00"], start=1)
    ]
    return published, appts


class TestPosition:
    def test_rank_follows_token_order(self, queue):
        core, appts = queue

        ranks = [core.queue.position("d1", DAY, a.id).rank for a in appts]

        assert ranks == [1, 2, 3, 4]

    def test_wait_uses_default_average(self, queue):
        core, appts = queue

        pos = core.queue.position("d1", DAY, appts[2].id)

        assert pos.total_ahead == 2
        assert pos.estimated_wait_minutes == 20
        assert pos.wait_label == "~20 min"

    def test_first_in_line(self, queue):
        core, appts = queue

        assert core.queue.position("d1", DAY, appts[0].id).wait_label == "Next in line"

    def test_late_check_in_does_not_change_rank(self, queue):
        core, appts = queue
        before = core.queue.position("d1", DAY, appts[1].id).rank

        core.appointments.check_in(appts[3].id)
        core.appointments.check_in(appts[2].id)

        assert core.queue.position("d1", DAY, appts[1].id).rank == before == 2
        assert core.queue.position("d1", DAY, appts[3].id).rank == 4

    def test_rank_drops_when_someone_ahead_leaves(self, queue, clock):
        core, appts = queue
        core.appointments.check_in(appts[0].id)
        clock.advance(6)
        core.appointments.complete(appts[0].id)
        core.appointments.cancel(appts[1].id, "sick")

        pos = core.queue.position("d1", DAY, appts[3].id)

        assert pos.rank == 2
        assert pos.estimated_wait_minutes == 6

    def test_terminal_appointment_has_no_position(self, queue):
        core, appts = queue
        core.appointments.mark_missed(appts[0].id)

        with pytest.raises(InvalidStateError):
            core.queue.position("d1", DAY, appts[0].id)

    def test_wrong_doctor_or_date(self, queue):
        core, appts = queue

        with pytest.raises(ValidationError):
            core.queue.position("d2", DAY, appts[0].id)
        with pytest.raises(ValidationError):
            core.queue.position("d1", NEXT_DAY, appts[0].id)


class TestQueueViews:
    def test_doctor_queue_lists_live_in_token_order(self, queue):
        core, appts = queue
        core.appointments.cancel(appts[1].id, "sick")

        assert [a.token_number for a in core.queue.doctor_queue("d1", DAY)] == [1, 3, 4]

    def test_next_patient_prefers_checked_in(self, queue):
        core, appts = queue
        core.appointments.check_in(appts[2].id)

        assert core.queue.next_patient("d1", DAY) is appts[2]

    def test_next_patient_falls_back_to_lowest_token(self, queue):
        core, appts = queue

        assert core.queue.next_patient("d1", DAY) is appts[0]

    def test_next_patient_empty_queue(self, published):
        assert published.queue.next_patient("d1", DAY) is None

    def test_statistics(self, queue):
        core, appts = queue
        core.appointments.check_in(appts[0].id)
        core.appointments.complete(appts[0].id)
        core.appointments.check_in(appts[1].id)
        core.appointments.cancel(appts[2].id, "sick")

        stats = core.queue.statistics("d1", DAY)

        assert stats == {
            AppointmentStatus.BOOKED.value: 1,
            AppointmentStatus.IN_QUEUE.value: 1,
            AppointmentStatus.CONSULTED.value: 1,
            AppointmentStatus.CANCELLED.value: 1,
            AppointmentStatus.MISSED.value: 0,
            "total": 4,
        }


class TestQueuePositionValue:
    def test_wait_label_rounds(self):
        pos = QueuePosition("appt_x", rank=3, total_ahead=2, estimated_wait_minutes=13.4)

        assert pos.wait_label == "~13 min"
