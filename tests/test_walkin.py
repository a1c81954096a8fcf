"""Tests for walk-in registration and slot claiming."""
from datetime import datetime
from unittest.mock import patch

from sqlmodel import select

import store
import walkin
from errors import Conflict
from models import AppointmentStatus, TicketKind, WalkIn, WalkInStatus
from walkin import ClaimOutcome

NOW = datetime(2025, 6, 9, 10, 0)


class TestClaim:

    def test_claims_unclaimed_slot_in_window(self, session, book, other_user):
        slot = book(datetime(2025, 6, 9, 10, 15))
        result = walkin.claim(session, other_user, NOW)

        assert result.outcome == ClaimOutcome.slot_claimed
        assert result.appointment.id == slot.id
        assert result.appointment.status == AppointmentStatus.arrived
        assert result.appointment.user_id == other_user.id
        assert session.exec(select(WalkIn)).all() == []

    def test_takes_earliest_candidate(self, session, book, other_user):
        book(datetime(2025, 6, 9, 10, 15))
        early = book(datetime(2025, 6, 9, 9, 45))
        result = walkin.claim(session, other_user, NOW)
        assert result.appointment.id == early.id

    def test_window_is_fifteen_minutes_either_side(self, session, book, other_user):
        book(datetime(2025, 6, 9, 10, 30))
        book(datetime(2025, 6, 9, 9, 30))
        result = walkin.claim(session, other_user, NOW)
        assert result.outcome == ClaimOutcome.walk_in_created
        assert result.window_start == datetime(2025, 6, 9, 9, 45)
        assert result.window_end == datetime(2025, 6, 9, 10, 15)

    def test_arrived_slots_are_not_claimed(self, session, book, other_user):
        slot = book(datetime(2025, 6, 9, 10, 0))
        store.update_status(session, TicketKind.appointment, slot.id, AppointmentStatus.arrived, NOW)
        result = walkin.claim(session, other_user, NOW)
        assert result.outcome == ClaimOutcome.walk_in_created

    def test_creates_walk_in_when_nothing_free(self, session, other_user):
        result = walkin.claim(session, other_user, NOW)
        assert result.outcome == ClaimOutcome.walk_in_created
        assert result.walk_in.status == WalkInStatus.waiting
        assert result.walk_in.check_in_time == NOW
        assert result.walk_in.ticket_code.startswith("W-")

    def test_lost_race_falls_back_to_walk_in(self, session, book, other_user):
        slot = book(datetime(2025, 6, 9, 10, 15))
        with patch.object(store, "update_status", side_effect=Conflict("Ticket is arrived")):
            result = walkin.claim(session, other_user, NOW)

        assert result.outcome == ClaimOutcome.walk_in_created
        assert store.require_ticket(session, TicketKind.appointment, slot.id).user_id != other_user.id
        assert len(session.exec(select(WalkIn)).all()) == 1
