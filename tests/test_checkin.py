"""Tests for appointment check-in."""
from datetime import datetime
from unittest.mock import patch

import pytest
from sqlmodel import select

import checkin
import store
from checkin import CheckInOutcome
from errors import Conflict, ContactMismatch, Expired, Internal, NotFound
from models import Appointment, AppointmentStatus, TicketKind, WalkIn, WalkInStatus

from conftest import NOW

SLOT = datetime(2025, 6, 9, 10, 15)
PHONE = "+15550001111"


def at(hour, minute):
    return datetime(2025, 6, 9, hour, minute)


class TestClassify:

    @pytest.mark.parametrize("now, expected", [
        (at(9, 0), CheckInOutcome.on_time),
        (at(10, 5), CheckInOutcome.on_time),
        (at(10, 30), CheckInOutcome.on_time),
        (at(10, 31), CheckInOutcome.late_walk_in),
        (at(11, 15), CheckInOutcome.late_walk_in),
        (at(11, 16), CheckInOutcome.expired),
    ])
    def test_timing_bands(self, now, expected):
        appointment = Appointment(ticket_code="A-X", user_id="u", date=SLOT.date(), scheduled_time=SLOT,
                                  status=AppointmentStatus.booked)
        assert checkin.classify(appointment, now) == expected

    @pytest.mark.parametrize("status, expected", [
        (AppointmentStatus.arrived, CheckInOutcome.already_arrived),
        (AppointmentStatus.served, CheckInOutcome.not_checkable),
        (AppointmentStatus.cancelled, CheckInOutcome.not_checkable),
        (AppointmentStatus.converted_to_walkin, CheckInOutcome.not_checkable),
        (AppointmentStatus.no_show, CheckInOutcome.on_time),
    ])
    def test_status_decides_first(self, status, expected):
        appointment = Appointment(ticket_code="A-X", user_id="u", date=SLOT.date(), scheduled_time=SLOT,
                                  status=status)
        assert checkin.classify(appointment, at(10, 0)) == expected


class TestCheckIn:

    def test_on_time(self, session, book):
        appointment = book(SLOT)
        result = checkin.check_in(session, appointment.ticket_code, PHONE, None, at(10, 5))
        assert result.outcome == CheckInOutcome.on_time
        assert result.appointment.status == AppointmentStatus.arrived
        assert result.walk_in is None

    def test_is_idempotent(self, session, book):
        appointment = book(SLOT)
        checkin.check_in(session, appointment.ticket_code, PHONE, None, at(10, 5))
        first = checkin.check_in(session, appointment.ticket_code, PHONE, None, at(10, 6))
        second = checkin.check_in(session, appointment.ticket_code, PHONE, None, at(10, 50))
        assert first.outcome == CheckInOutcome.already_arrived
        assert second.outcome == CheckInOutcome.already_arrived
        assert session.exec(select(WalkIn)).all() == []

    def test_late_arrival_becomes_walk_in(self, session, book):
        appointment = book(SLOT)
        result = checkin.check_in(session, appointment.ticket_code, PHONE, None, at(10, 35))

        assert result.outcome == CheckInOutcome.late_walk_in
        assert result.minutes_late == 20
        walk_ins = session.exec(select(WalkIn)).all()
        assert len(walk_ins) == 1
        assert walk_ins[0].status == WalkInStatus.waiting
        assert walk_ins[0].check_in_time == at(10, 35)
        assert walk_ins[0].original_appointment_id == appointment.id
        assert walk_ins[0].user_id == appointment.user_id
        stored = store.require_ticket(session, TicketKind.appointment, appointment.id)
        assert stored.status == AppointmentStatus.converted_to_walkin

    def test_conversion_happens_once(self, session, book):
        appointment = book(SLOT)
        checkin.check_in(session, appointment.ticket_code, PHONE, None, at(10, 35))
        with pytest.raises(Conflict, match="converted_to_walkin"):
            checkin.check_in(session, appointment.ticket_code, PHONE, None, at(10, 36))
        assert len(session.exec(select(WalkIn)).all()) == 1

    def test_expired(self, session, book):
        appointment = book(SLOT)
        with pytest.raises(Expired):
            checkin.check_in(session, appointment.ticket_code, PHONE, None, at(11, 30))
        assert store.require_ticket(session, TicketKind.appointment, appointment.id).status == AppointmentStatus.booked

    def test_unknown_code(self, session):
        with pytest.raises(NotFound):
            checkin.check_in(session, "A-NOPE", PHONE, None, at(10, 0))

    def test_contact_mismatch(self, session, book):
        appointment = book(SLOT)
        with pytest.raises(ContactMismatch) as exc_info:
            checkin.check_in(session, appointment.ticket_code, "+15559999999", None, at(10, 0))
        assert exc_info.value.status_code == 403

    def test_email_contact_matches(self, session):
        user = store.upsert_user(session, "Ann", None, "ann@clinicmail.org", NOW)
        appointment = store.create_appointment(session, user.id, SLOT, NOW)
        result = checkin.check_in(session, appointment.ticket_code, None, "ANN@clinicmail.org", at(10, 0))
        assert result.outcome == CheckInOutcome.on_time

    def test_cancelled_is_refused(self, session, book):
        appointment = book(SLOT)
        store.update_status(session, TicketKind.appointment, appointment.id, AppointmentStatus.cancelled, NOW)
        with pytest.raises(Conflict, match="cancelled"):
            checkin.check_in(session, appointment.ticket_code, PHONE, None, at(10, 0))


class TestConversionFailure:

    def test_second_write_failure_rolls_back_and_reports(self, session, book, caplog):
        appointment = book(SLOT)
        with patch.object(store, "update_status", side_effect=Internal("Failed to update ticket status")):
            with pytest.raises(Internal) as exc_info:
                checkin.check_in(session, appointment.ticket_code, PHONE, None, at(10, 35))

        assert exc_info.value.details["appointment_id"] == appointment.id
        assert exc_info.value.details["walk_in_ticket"].startswith("W-")
        assert "needs reconciliation" in caplog.text

    def test_walk_in_insert_failure_reports_for_reconciliation(self, session, book, caplog,
                                                               failing_walk_in_flush):
        appointment = book(SLOT)
        with pytest.raises(Internal) as exc_info:
            checkin.check_in(session, appointment.ticket_code, PHONE, None, at(10, 35))

        assert exc_info.value.details["appointment_id"] == appointment.id
        assert exc_info.value.details["walk_in_ticket"] is None
        assert "needs reconciliation" in caplog.text
        stored = store.require_ticket(session, TicketKind.appointment, appointment.id)
        assert stored.status == AppointmentStatus.booked

    def test_lost_race_discards_walk_in(self, session, book):
        appointment = book(SLOT)
        with patch.object(store, "update_status", side_effect=Conflict("Ticket is arrived")):
            with pytest.raises(Conflict):
                checkin.convert_to_walk_in(session, appointment, at(10, 35))
        assert session.exec(select(WalkIn)).all() == []
