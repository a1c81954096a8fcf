"""Tests for staff queue actions."""
from datetime import datetime

import pytest

import admin_queue
import store
from errors import Conflict, EmptyQueue, NothingServing
from models import AppointmentStatus, TicketKind, WalkInStatus

NOW = datetime(2025, 6, 9, 10, 0)


@pytest.fixture
def queue(session, user, other_user, book):
    """An arrived 10:00 appointment followed by two walk-ins."""
    appointment = book(datetime(2025, 6, 9, 10, 0))
    store.update_status(session, TicketKind.appointment, appointment.id, AppointmentStatus.arrived, NOW)
    first = store.create_walk_in(session, other_user.id, datetime(2025, 6, 9, 10, 5))
    second = store.create_walk_in(session, user.id, datetime(2025, 6, 9, 10, 6))
    return appointment, first, second


class TestCallNext:

    def test_serves_head_and_promotes_next(self, session, queue):
        appointment, first, second = queue
        before = admin_queue.load_queue(session, NOW)

        result = admin_queue.call_next(session, NOW)

        assert result.served.id == appointment.id
        assert len(result.queue) == len(before) - 1
        assert result.now_serving.id == before[1].id == first.id
        assert store.require_ticket(session, TicketKind.appointment, appointment.id).status == AppointmentStatus.served

    def test_drains_queue(self, session, queue):
        for _ in range(3):
            admin_queue.call_next(session, NOW)
        with pytest.raises(EmptyQueue, match="No patients in queue"):
            admin_queue.call_next(session, NOW)

    def test_expected_ticket_guards_retry(self, session, queue):
        appointment, first, _ = queue
        admin_queue.call_next(session, NOW, expected_ticket_id=appointment.id)
        with pytest.raises(Conflict, match="has changed"):
            admin_queue.call_next(session, NOW, expected_ticket_id=appointment.id)
        assert store.require_ticket(session, TicketKind.walk_in, first.id).status == WalkInStatus.waiting

    def test_expected_ticket_accepts_code(self, session, queue):
        appointment, _, _ = queue
        result = admin_queue.call_next(session, NOW, expected_ticket_id=appointment.ticket_code)
        assert result.served.id == appointment.id


class TestMarkServed:

    def test_marks_head_served(self, session, queue):
        appointment, first, _ = queue
        result = admin_queue.mark_served(session, NOW)
        assert result.served.id == appointment.id
        assert result.now_serving.id == first.id

    def test_nothing_serving(self, session):
        with pytest.raises(NothingServing) as exc_info:
            admin_queue.mark_served(session, NOW)
        assert exc_info.value.status_code == 409


class TestTransitions:

    def test_mark_arrived_queues_booked_appointment(self, session, book):
        appointment = book(datetime(2025, 6, 9, 10, 30))
        updated = admin_queue.mark_arrived(session, TicketKind.appointment, appointment.id, NOW)
        assert updated.status == AppointmentStatus.arrived
        assert [e.id for e in admin_queue.load_queue(session, NOW)] == [appointment.id]

    def test_mark_arrived_twice_conflicts(self, session, book):
        appointment = book(datetime(2025, 6, 9, 10, 30))
        admin_queue.mark_arrived(session, TicketKind.appointment, appointment.id, NOW)
        with pytest.raises(Conflict, match="already marked as arrived"):
            admin_queue.mark_arrived(session, TicketKind.appointment, appointment.id, NOW)

    def test_converted_appointment_cannot_arrive(self, session, book):
        appointment = book(datetime(2025, 6, 9, 10, 30))
        store.update_status(session, TicketKind.appointment, appointment.id,
                            AppointmentStatus.converted_to_walkin, NOW)
        with pytest.raises(Conflict, match="Cannot mark converted_to_walkin"):
            admin_queue.mark_arrived(session, TicketKind.appointment, appointment.id, NOW)

    def test_no_show_and_requeue(self, session, queue):
        _, first, _ = queue
        admin_queue.mark_no_show(session, TicketKind.walk_in, first.id, NOW)
        assert first.id not in [e.id for e in admin_queue.load_queue(session, NOW)]
        requeued = admin_queue.mark_arrived(session, TicketKind.walk_in, first.id, NOW)
        assert requeued.status == WalkInStatus.waiting
        assert first.id in [e.id for e in admin_queue.load_queue(session, NOW)]

    def test_cancel(self, session, queue):
        appointment, _, second = queue
        admin_queue.cancel(session, TicketKind.appointment, appointment.id, NOW)
        admin_queue.cancel(session, TicketKind.walk_in, second.id, NOW)
        assert len(admin_queue.load_queue(session, NOW)) == 1

    def test_served_ticket_cannot_be_cancelled(self, session, queue):
        appointment, _, _ = queue
        admin_queue.call_next(session, NOW)
        with pytest.raises(Conflict, match="Cannot mark served appointment as cancelled"):
            admin_queue.cancel(session, TicketKind.appointment, appointment.id, NOW)

    def test_waiting_walk_in_cannot_be_marked_arrived(self, session, queue):
        _, first, _ = queue
        with pytest.raises(Conflict, match="already marked as arrived"):
            admin_queue.mark_arrived(session, TicketKind.walk_in, first.id, NOW)


class TestTodayOnly:

    def test_other_days_stay_out_of_the_queue(self, session, book, other_user):
        leftover = book(datetime(2025, 6, 6, 16, 45))
        store.update_status(session, TicketKind.appointment, leftover.id, AppointmentStatus.arrived,
                            datetime(2025, 6, 6, 16, 40))
        walk_in = store.create_walk_in(session, other_user.id, datetime(2025, 6, 9, 9, 5))
        next_week = book(datetime(2025, 6, 16, 10, 0))
        admin_queue.mark_arrived(session, TicketKind.appointment, next_week.id, NOW)

        assert [e.id for e in admin_queue.load_queue(session, NOW)] == [walk_in.id]

        result = admin_queue.call_next(session, NOW)
        assert result.served.id == walk_in.id
        assert store.require_ticket(session, TicketKind.appointment, leftover.id).status == AppointmentStatus.arrived

    def test_yesterdays_walk_in_is_left_out(self, session, user):
        store.create_walk_in(session, user.id, datetime(2025, 6, 8, 16, 50))
        with pytest.raises(EmptyQueue):
            admin_queue.call_next(session, NOW)
