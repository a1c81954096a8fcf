"""Appointment check-in.

``classify`` decides what a check-in at ``now`` means for an appointment:

* already arrived: nothing to do, the patient is in the queue;
* cancelled, served or already converted: refused;
* more than an hour late: expired, the patient must rebook;
* from any time early up to 15 minutes late: on time, the appointment
  joins the queue at its scheduled time;
* between 15 and 60 minutes late: the appointment is given up and the
  patient joins the queue as a walk-in at the check-in time.

``check_in`` verifies the caller's contact details against the booking
owner before classifying and then applies the outcome.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from enum import Enum
from typing import Optional

from sqlmodel import Session

import config
import store
from errors import Conflict, ContactMismatch, Expired, Internal, NotFound
from models import Appointment, AppointmentStatus, TicketKind, User, WalkIn

logger = logging.getLogger(__name__)

NOT_CHECKABLE = (
    AppointmentStatus.cancelled,
    AppointmentStatus.served,
    AppointmentStatus.converted_to_walkin,
)
# Statuses a check-in may move away from.
CHECKABLE = (AppointmentStatus.booked, AppointmentStatus.no_show)


class CheckInOutcome(str, Enum):
    on_time = "on_time"
    late_walk_in = "late_walk_in"
    expired = "expired"
    already_arrived = "already_arrived"
    not_checkable = "not_checkable"


@dataclass
class CheckInResult:
    outcome: CheckInOutcome
    appointment: Appointment
    walk_in: Optional[WalkIn] = None
    minutes_late: float = 0.0


def minutes_until(scheduled: datetime, now: datetime) -> float:
    return (scheduled - now) / timedelta(minutes=1)


def classify(appointment: Appointment, now: datetime) -> CheckInOutcome:
    if appointment.status == AppointmentStatus.arrived:
        return CheckInOutcome.already_arrived
    if appointment.status in NOT_CHECKABLE:
        return CheckInOutcome.not_checkable

    delta = minutes_until(appointment.scheduled_time, now)
    if delta < -config.EXPIRY_MINUTES:
        return CheckInOutcome.expired
    if delta >= -config.ON_TIME_WINDOW_MINUTES:
        return CheckInOutcome.on_time
    return CheckInOutcome.late_walk_in


def contact_matches(user: User, phone: Optional[str], email: Optional[str]) -> bool:
    phone = store.normalize_phone(phone)
    email = store.normalize_email(email)
    if phone and user.phone and phone == store.normalize_phone(user.phone):
        return True
    if email and user.email and email == store.normalize_email(user.email):
        return True
    return False


def convert_to_walk_in(session: Session, appointment: Appointment, now: datetime) -> WalkIn:
    """Replace a late appointment by a walk-in, both in one transaction."""
    walk_in = None
    try:
        walk_in = store.create_walk_in(
            session, appointment.user_id, now,
            original_appointment_id=appointment.id, commit_now=False,
        )
        store.update_status(
            session, TicketKind.appointment, appointment.id,
            AppointmentStatus.converted_to_walkin, now,
            expected=CHECKABLE, commit_now=False,
        )
        store.commit(session, "convert late appointment to walk-in")
    except Conflict:
        # Someone else moved the appointment first; drop our walk-in.
        session.rollback()
        raise
    except Internal as exc:
        details = {
            "appointment_id": appointment.id,
            "appointment_ticket": appointment.ticket_code,
            "walk_in_ticket": walk_in.ticket_code if walk_in is not None else None,
        }
        session.rollback()
        logger.error("Late check-in conversion failed, needs reconciliation: %s", details)
        raise Internal("Failed to convert late check-in to a walk-in", details) from exc

    session.refresh(walk_in)
    logger.info("Appointment %s converted to walk-in %s", appointment.ticket_code, walk_in.ticket_code)
    return walk_in


def check_in(session: Session, ticket_code: str, phone: Optional[str], email: Optional[str],
             now: datetime) -> CheckInResult:
    appointment = store.get_appointment_by_code(session, ticket_code)
    if appointment is None:
        raise NotFound("Appointment not found", {"ticket_code": ticket_code})

    user = session.get(User, appointment.user_id)
    if user is None or not contact_matches(user, phone, email):
        logger.warning("Contact mismatch on check-in for %s", appointment.ticket_code)
        raise ContactMismatch(
            "Contact information does not match our records",
            {"hint": "Please provide the phone number or email used when booking"},
        )

    outcome = classify(appointment, now)
    late_by = max(0.0, -minutes_until(appointment.scheduled_time, now))

    if outcome == CheckInOutcome.already_arrived:
        return CheckInResult(outcome, appointment)

    if outcome == CheckInOutcome.not_checkable:
        raise Conflict(
            f"Cannot check in - appointment is {appointment.status.value}",
            {"ticket_code": appointment.ticket_code, "status": appointment.status.value},
        )

    if outcome == CheckInOutcome.expired:
        raise Expired(
            "Appointment time has passed. Please book a new appointment",
            {"scheduled_time": appointment.scheduled_time.isoformat(), "current_time": now.isoformat()},
        )

    if outcome == CheckInOutcome.on_time:
        try:
            appointment = store.update_status(
                session, TicketKind.appointment, appointment.id,
                AppointmentStatus.arrived, now, expected=CHECKABLE,
            )
        except Conflict:
            current = store.require_ticket(session, TicketKind.appointment, appointment.id)
            if current.status == AppointmentStatus.arrived:
                return CheckInResult(CheckInOutcome.already_arrived, current)
            raise
        logger.info("Appointment %s checked in on time", appointment.ticket_code)
        return CheckInResult(outcome, appointment, minutes_late=late_by)

    walk_in = convert_to_walk_in(session, appointment, now)
    return CheckInResult(outcome, appointment, walk_in=walk_in, minutes_late=late_by)
