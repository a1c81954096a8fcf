"""Staff actions on the queue.

The ticket at the head of the projected queue is the one being served;
there is no separate serving status.  Serving a ticket therefore means
marking the head ``served`` and letting the next projection promote the
ticket behind it.

Every write names the status the ticket is expected to hold, so two staff
members pressing "call next" at the same moment cannot both serve the same
ticket: the second update finds the row already served and fails with
:class:`errors.Conflict`.  Without a target id, ``call_next`` and
``mark_served`` are still not safe to retry blindly; pass
``expected_ticket_id`` to refuse when the head has moved on.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Dict, List, Optional, Sequence, Type

from sqlmodel import Session

import store
from errors import Conflict, EmptyQueue, NothingServing, QueueError
from models import AppointmentStatus, TicketKind, WalkInStatus
from queue_view import QueueEntry, project

logger = logging.getLogger(__name__)

LABELS = {TicketKind.appointment: "appointment", TicketKind.walk_in: "walk-in"}

QUEUED_STATUS = {
    TicketKind.appointment: AppointmentStatus.arrived,
    TicketKind.walk_in: WalkInStatus.waiting,
}
SERVED_STATUS = {
    TicketKind.appointment: AppointmentStatus.served,
    TicketKind.walk_in: WalkInStatus.served,
}
NO_SHOW_STATUS = {
    TicketKind.appointment: AppointmentStatus.no_show,
    TicketKind.walk_in: WalkInStatus.no_show,
}
CANCELLED_STATUS = {
    TicketKind.appointment: AppointmentStatus.cancelled,
    TicketKind.walk_in: WalkInStatus.cancelled,
}

# Statuses each action may move a ticket out of.
ARRIVE_FROM: Dict[TicketKind, Sequence] = {
    TicketKind.appointment: (AppointmentStatus.booked, AppointmentStatus.no_show),
    TicketKind.walk_in: (WalkInStatus.no_show,),
}
NO_SHOW_FROM: Dict[TicketKind, Sequence] = {
    TicketKind.appointment: (AppointmentStatus.booked, AppointmentStatus.arrived),
    TicketKind.walk_in: (WalkInStatus.waiting,),
}
CANCEL_FROM: Dict[TicketKind, Sequence] = {
    TicketKind.appointment: (AppointmentStatus.booked, AppointmentStatus.arrived,
                             AppointmentStatus.no_show),
    TicketKind.walk_in: (WalkInStatus.waiting, WalkInStatus.no_show),
}


@dataclass
class ServeResult:
    served: QueueEntry
    queue: List[QueueEntry]

    @property
    def now_serving(self) -> Optional[QueueEntry]:
        return self.queue[0] if self.queue else None


def load_queue(session: Session, now: datetime) -> List[QueueEntry]:
    """Today's queue: arrivals and walk-ins from other days are left out."""
    day = now.date()
    appointments = store.list_by_status(session, TicketKind.appointment, [AppointmentStatus.arrived], day)
    walk_ins = store.list_by_status(session, TicketKind.walk_in, [WalkInStatus.waiting], day)
    return project(appointments, walk_ins)


def _transition(session: Session, kind: TicketKind, ticket_id: str, target, allowed: Sequence,
                verb: str, now: datetime):
    ticket = store.require_ticket(session, kind, ticket_id)
    label = LABELS[kind]
    if ticket.status == target:
        raise Conflict(
            f"{label.capitalize()} is already marked as {verb}",
            {"ticket_id": ticket.id, "ticket_code": ticket.ticket_code, "status": ticket.status.value},
        )
    if ticket.status not in allowed:
        raise Conflict(
            f"Cannot mark {ticket.status.value} {label} as {verb}",
            {"ticket_id": ticket.id, "ticket_code": ticket.ticket_code, "status": ticket.status.value},
        )
    ticket = store.update_status(session, kind, ticket.id, target, now, expected=allowed)
    logger.info("Staff marked %s %s as %s", label, ticket.ticket_code, verb)
    return ticket


def mark_arrived(session: Session, kind: TicketKind, ticket_id: str, now: datetime):
    """Put a ticket (back) into the queue.

    Appointments go from booked or no-show to arrived.  Walk-ins are
    queued on creation, so only a no-show walk-in can be re-queued.
    """
    return _transition(session, kind, ticket_id, QUEUED_STATUS[kind], ARRIVE_FROM[kind], "arrived", now)


def mark_no_show(session: Session, kind: TicketKind, ticket_id: str, now: datetime):
    return _transition(session, kind, ticket_id, NO_SHOW_STATUS[kind], NO_SHOW_FROM[kind], "no-show", now)


def cancel(session: Session, kind: TicketKind, ticket_id: str, now: datetime):
    return _transition(session, kind, ticket_id, CANCELLED_STATUS[kind], CANCEL_FROM[kind], "cancelled", now)


def _serve_head(session: Session, now: datetime, expected_ticket_id: Optional[str],
                when_empty: Type[QueueError], empty_message: str, action: str) -> ServeResult:
    entries = load_queue(session, now)
    if not entries:
        raise when_empty(empty_message, {"total_waiting": 0})

    head = entries[0]
    if expected_ticket_id and expected_ticket_id not in (head.id, head.ticket_code):
        raise Conflict(
            "The ticket being served has changed; refresh the queue",
            {"expected": expected_ticket_id, "now_serving": head.ticket_code},
        )

    store.update_status(
        session, head.kind, head.id, SERVED_STATUS[head.kind], now,
        expected=(QUEUED_STATUS[head.kind],), detail=action,
    )
    logger.info("Staff %s: %s %s served", action, LABELS[head.kind], head.ticket_code)
    return ServeResult(served=head, queue=load_queue(session, now))


def call_next(session: Session, now: datetime, expected_ticket_id: Optional[str] = None) -> ServeResult:
    """Serve the head of the queue; the ticket behind it becomes now serving."""
    return _serve_head(session, now, expected_ticket_id, EmptyQueue,
                       "No patients in queue to serve", "call_next")


def mark_served(session: Session, now: datetime, expected_ticket_id: Optional[str] = None) -> ServeResult:
    """Mark the ticket being served as done without touching the rest of the queue."""
    return _serve_head(session, now, expected_ticket_id, NothingServing,
                       "No patient currently being served", "mark_served")
