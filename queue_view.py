"""The current queue, derived from ticket statuses.

Nothing here touches the database.  ``project`` takes freshly read
appointments and walk-ins and returns the merged queue ordered by queue
time (scheduled time for appointments, check-in time for walk-ins).  The
head of the queue is the ticket being served now.
"""

from __future__ import annotations

from datetime import datetime
from typing import Any, Dict, Iterable, List, Mapping, NamedTuple, Optional

import config
from models import Appointment, AppointmentStatus, TicketKind, WalkIn, WalkInStatus

QUEUED_APPOINTMENT_STATUSES = (AppointmentStatus.arrived,)
QUEUED_WALK_IN_STATUSES = (WalkInStatus.waiting,)


class QueueEntry(NamedTuple):
    kind: TicketKind
    id: str
    ticket_code: str
    queue_time: datetime
    status: str
    created_at: datetime
    user_id: str
    original_appointment_id: Optional[str] = None

    def sort_key(self):
        return (self.queue_time, self.created_at, self.id)


def _value(status) -> str:
    return getattr(status, "value", status)


def _from_appointment(appointment: Appointment) -> QueueEntry:
    return QueueEntry(
        kind=TicketKind.appointment,
        id=appointment.id,
        ticket_code=appointment.ticket_code,
        queue_time=appointment.scheduled_time,
        status=_value(appointment.status),
        created_at=appointment.created_at,
        user_id=appointment.user_id,
    )


def _from_walk_in(walk_in: WalkIn) -> QueueEntry:
    return QueueEntry(
        kind=TicketKind.walk_in,
        id=walk_in.id,
        ticket_code=walk_in.ticket_code,
        queue_time=walk_in.check_in_time,
        status=_value(walk_in.status),
        created_at=walk_in.created_at,
        user_id=walk_in.user_id,
        original_appointment_id=walk_in.original_appointment_id,
    )


def project(appointments: Iterable[Appointment], walk_ins: Iterable[WalkIn]) -> List[QueueEntry]:
    """Merge arrived appointments and waiting walk-ins into one ordered queue."""
    entries = [_from_appointment(a) for a in appointments if a.status in QUEUED_APPOINTMENT_STATUSES]
    entries += [_from_walk_in(w) for w in walk_ins if w.status in QUEUED_WALK_IN_STATUSES]
    entries.sort(key=QueueEntry.sort_key)
    return entries


def format_wait(minutes: int) -> str:
    if minutes < 60:
        return f"Approximately {minutes} minutes"
    hours, rest = divmod(minutes, 60)
    unit = "hour" if hours == 1 else "hours"
    if rest:
        return f"Approximately {hours} {unit} and {rest} minutes"
    return f"Approximately {hours} {unit}"


def estimate_wait(position: int, minutes_per_ticket: int = config.MINUTES_PER_TICKET) -> str:
    """Wait text for the 0-based ``position`` in the queue."""
    if position == 0:
        return "Now serving"
    if position == 1:
        return "Next in line"
    return format_wait(position * minutes_per_ticket)


def entry_dict(entry: QueueEntry, position: int, minutes_per_ticket: int,
               names: Optional[Mapping[str, str]] = None) -> Dict[str, Any]:
    return {
        "type": entry.kind.value,
        "id": entry.id,
        "ticket_code": entry.ticket_code,
        "name": (names or {}).get(entry.user_id),
        "queue_time": entry.queue_time.isoformat(),
        "status": entry.status,
        "original_appointment_id": entry.original_appointment_id,
        "position": position + 1,
        "estimated_wait": estimate_wait(position, minutes_per_ticket),
        "is_now_serving": position == 0,
        "is_next": position == 1,
    }


def snapshot(entries: List[QueueEntry], now: datetime,
             minutes_per_ticket: int = config.MINUTES_PER_TICKET,
             names: Optional[Mapping[str, str]] = None) -> Dict[str, Any]:
    """Board view of a projected queue."""
    current = [entry_dict(e, i, minutes_per_ticket, names) for i, e in enumerate(entries)]
    total = len(entries)
    return {
        "now_serving": current[0] if current else None,
        "current": current,
        "total_in_queue": total,
        "total_waiting": max(0, total - 1),
        "appointments_in_queue": sum(1 for e in entries if e.kind == TicketKind.appointment),
        "walk_ins_in_queue": sum(1 for e in entries if e.kind == TicketKind.walk_in),
        "estimated_wait": estimate_wait(total - 1, minutes_per_ticket) if total else "No wait",
        "last_updated": now.isoformat(),
    }
