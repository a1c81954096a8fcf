"""Walk-in registration.

A walk-in first tries to take over a booked appointment whose holder has
not shown up: any ``booked`` appointment scheduled within 15 minutes
either side of now.  The earliest such slot is reassigned to the walk-in
patient and marked arrived.  The reassignment only succeeds while the slot
is still ``booked``; if a concurrent request got there first, or no slot
is free, the patient gets a plain walk-in ticket instead.
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
from errors import Conflict
from models import Appointment, AppointmentStatus, TicketKind, User, WalkIn

logger = logging.getLogger(__name__)


class ClaimOutcome(str, Enum):
    slot_claimed = "slot_claimed"
    walk_in_created = "walk_in_created"


@dataclass
class ClaimResult:
    outcome: ClaimOutcome
    appointment: Optional[Appointment] = None
    walk_in: Optional[WalkIn] = None
    window_start: Optional[datetime] = None
    window_end: Optional[datetime] = None


def claim_window(now: datetime):
    window = timedelta(minutes=config.CLAIM_WINDOW_MINUTES)
    return now - window, now + window


def claim(session: Session, user: User, now: datetime) -> ClaimResult:
    start, end = claim_window(now)
    candidates = store.list_booked_between(session, start, end)

    if candidates:
        slot = candidates[0]
        previous_owner = slot.user_id
        try:
            appointment = store.update_status(
                session, TicketKind.appointment, slot.id, AppointmentStatus.arrived, now,
                expected=(AppointmentStatus.booked,),
                values={"user_id": user.id},
                detail=f"claimed by walk-in user {user.id} from user {previous_owner}",
            )
        except Conflict:
            logger.info("Slot %s was taken concurrently, creating a walk-in", slot.ticket_code)
        else:
            logger.info("Walk-in user %s claimed slot %s at %s", user.id, appointment.ticket_code,
                        appointment.scheduled_time.isoformat())
            return ClaimResult(ClaimOutcome.slot_claimed, appointment=appointment,
                               window_start=start, window_end=end)

    walk_in = store.create_walk_in(session, user.id, now)
    logger.info("Walk-in ticket %s created for user %s", walk_in.ticket_code, user.id)
    return ClaimResult(ClaimOutcome.walk_in_created, walk_in=walk_in, window_start=start, window_end=end)
