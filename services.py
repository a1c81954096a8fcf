"""Queue operations exposed to the HTTP layer.

Each function takes a SQLModel session and the current time, runs one
logical request against the ticket store and returns a plain dict ready
to be sent as JSON.  Refusals are raised as :mod:`errors` exceptions.

Redis is optional and used for two things only: per-contact rate limits on
the public endpoints and publishing the fresh queue after every change so
status boards can refresh.
"""

from __future__ import annotations

import json
import logging
from datetime import datetime, time, timedelta
from typing import Any, Dict, Iterable, List, Optional

import redis
from sqlmodel import Session, select

import admin_queue
import checkin
import config
import slots
import store
import walkin
from errors import Conflict, Unauthorized, ValidationError
from models import Appointment, BusinessHours, TicketKind, User, WalkIn
from queue_view import QueueEntry, snapshot

logger = logging.getLogger(__name__)

_redis_client = None


def get_redis() -> Optional[redis.Redis]:
    """Get Redis client if configured."""
    global _redis_client
    if not config.REDIS_URL:
        return None

    if _redis_client is None:
        try:
            client = redis.from_url(config.REDIS_URL, decode_responses=True)
            client.ping()
        except redis.RedisError as e:
            logger.warning("Redis connection failed: %s", e)
            return None
        _redis_client = client

    return _redis_client


def check_rate_limit(key: str, action: str, limit: int, window: int) -> bool:
    """Fixed-window limiter. Returns True if allowed, False if rate limited."""
    redis_client = get_redis()
    if not redis_client or not key:
        return True

    try:
        redis_key = f"rate_limit:{action}:{key}"
        current = redis_client.get(redis_key)
        if current is None:
            redis_client.setex(redis_key, window, 1)
            return True
        if int(current) < limit:
            redis_client.incr(redis_key)
            return True
        return False
    except (redis.RedisError, ValueError, TypeError) as e:
        logger.warning("Redis rate limit error: %s", e)
        return True


def publish_queue_update(queue: Dict[str, Any]) -> None:
    """Publish the fresh queue on the board channel."""
    redis_client = get_redis()
    if not redis_client:
        return
    try:
        redis_client.publish(config.QUEUE_CHANNEL, json.dumps({
            "type": "queue_update",
            "data": queue,
        }))
    except redis.RedisError as e:
        logger.warning("Redis publish error: %s", e)


# ===== SERIALIZATION =====

def user_dict(user: Optional[User]) -> Optional[Dict[str, Any]]:
    if user is None:
        return None
    return {"id": user.id, "name": user.name, "phone": user.phone, "email": user.email}


def appointment_dict(appointment: Appointment) -> Dict[str, Any]:
    return {
        "id": appointment.id,
        "ticket_code": appointment.ticket_code,
        "date": appointment.date.isoformat(),
        "scheduled_time": appointment.scheduled_time.isoformat(),
        "status": appointment.status.value,
        "user_id": appointment.user_id,
        "updated_at": appointment.updated_at.isoformat(),
    }


def walk_in_dict(walk_in: WalkIn) -> Dict[str, Any]:
    return {
        "id": walk_in.id,
        "ticket_code": walk_in.ticket_code,
        "check_in_time": walk_in.check_in_time.isoformat(),
        "status": walk_in.status.value,
        "user_id": walk_in.user_id,
        "original_appointment_id": walk_in.original_appointment_id,
        "updated_at": walk_in.updated_at.isoformat(),
    }


def ticket_dict(kind: TicketKind, ticket) -> Dict[str, Any]:
    if kind == TicketKind.appointment:
        return appointment_dict(ticket)
    return walk_in_dict(ticket)


def hours_dict(hours: BusinessHours) -> Dict[str, Any]:
    def fmt(value: Optional[time]) -> Optional[str]:
        return value.strftime("%H:%M:%S") if value else None

    return {
        "day_of_week": hours.day_of_week,
        "is_open": hours.is_open,
        "open_time": fmt(hours.open_time),
        "close_time": fmt(hours.close_time),
        "break_start": fmt(hours.break_start),
        "break_end": fmt(hours.break_end),
        "slot_duration": hours.slot_duration,
    }


def _names(session: Session, entries: Iterable[QueueEntry]) -> Dict[str, str]:
    ids = {e.user_id for e in entries}
    if not ids:
        return {}
    users = session.exec(select(User).where(User.id.in_(ids))).all()
    return {u.id: u.name for u in users}


def _position_of(queue: Dict[str, Any], ticket_id: str) -> Optional[Dict[str, Any]]:
    for entry in queue["current"]:
        if entry["id"] == ticket_id:
            return {"position": entry["position"], "estimated_wait": entry["estimated_wait"]}
    return None


# ===== QUEUE =====

def build_queue(session: Session, now: datetime, entries: Optional[List[QueueEntry]] = None) -> Dict[str, Any]:
    if entries is None:
        entries = admin_queue.load_queue(session, now)
    settings = store.get_settings(session)
    return snapshot(entries, now, settings.minutes_per_ticket, _names(session, entries))


def today_stats(session: Session, now: datetime) -> Dict[str, int]:
    """Tickets created today and how many of them were served."""
    start = datetime.combine(now.date(), time.min)
    end = start + timedelta(days=1)
    total = served = 0
    for kind in (TicketKind.appointment, TicketKind.walk_in):
        counts = store.count_by_status(session, kind, start, end)
        total += sum(counts.values())
        served += counts.get("served", 0)
    return {"total_today": total, "served_today": served}


def get_queue(session: Session, now: datetime, include_stats: bool = False) -> Dict[str, Any]:
    queue = build_queue(session, now)
    if include_stats:
        queue["stats"] = today_stats(session, now)
    return queue


def _after_change(session: Session, now: datetime, entries: Optional[List[QueueEntry]] = None) -> Dict[str, Any]:
    queue = build_queue(session, now, entries)
    publish_queue_update(queue)
    return queue


# ===== PUBLIC OPERATIONS =====

def book_appointment(session: Session, name: str, phone: Optional[str], email: Optional[str],
                     date_str: str, time_str: str, now: datetime) -> Dict[str, Any]:
    day = slots.parse_date(date_str)
    hours = store.get_business_hours(session, slots.day_of_week(day))
    scheduled = slots.validate_slot(date_str, time_str, hours, now)

    if store.find_active_appointment_at(session, scheduled) is not None:
        logger.warning("Booking refused, slot %s already taken", scheduled.isoformat())
        raise Conflict("This time slot is already booked", {"requested_time": scheduled.isoformat()})

    user = store.upsert_user(session, name, phone, email, now)
    appointment = store.create_appointment(session, user.id, scheduled, now)
    logger.info("Appointment %s booked for %s", appointment.ticket_code, scheduled.isoformat())

    return {
        "success": True,
        "message": "Appointment booked successfully",
        "appointment": appointment_dict(appointment),
        "user": user_dict(user),
        "instructions": {
            "check_in": "Please arrive up to 15 minutes before your appointment time",
            "late": "Arrivals more than 15 minutes late are moved to the walk-in queue",
            "contact": "Keep your ticket code for check-in",
        },
    }


def available_slots(session: Session, date_str: str, now: datetime) -> Dict[str, Any]:
    day = slots.parse_date(date_str)
    hours = store.get_business_hours(session, slots.day_of_week(day))
    taken = store.list_active_times_on(session, day)
    return {"success": True, "date": day.isoformat(), "slots": slots.available_slots(hours, day, taken, now)}


def check_in(session: Session, ticket_code: str, phone: Optional[str], email: Optional[str],
             now: datetime) -> Dict[str, Any]:
    result = checkin.check_in(session, ticket_code, phone, email, now)
    appointment = result.appointment
    body: Dict[str, Any] = {
        "success": True,
        "check_in_type": result.outcome.value,
        "appointment": appointment_dict(appointment),
        "timing": {
            "scheduled_time": appointment.scheduled_time.isoformat(),
            "check_in_time": now.isoformat(),
            "minutes_late": int(result.minutes_late),
        },
    }

    if result.outcome == checkin.CheckInOutcome.already_arrived:
        body["message"] = "Already checked in"
        body["queue"] = build_queue(session, now)
        body["your_place"] = _position_of(body["queue"], appointment.id)
        return body

    queue = _after_change(session, now)
    body["queue"] = queue
    if result.walk_in is not None:
        body["message"] = "Late arrival - converted to walk-in"
        body["walk_in"] = walk_in_dict(result.walk_in)
        body["your_place"] = _position_of(queue, result.walk_in.id)
    else:
        body["message"] = "Checked in successfully"
        body["your_place"] = _position_of(queue, appointment.id)
    return body


def register_walk_in(session: Session, name: str, phone: Optional[str], email: Optional[str],
                     now: datetime) -> Dict[str, Any]:
    hours = store.get_business_hours(session, slots.day_of_week(now.date()))
    if not slots.is_open_at(hours, now):
        raise ValidationError("Walk-ins are only accepted during business hours",
                              {"current_time": now.isoformat()})

    user = store.upsert_user(session, name, phone, email, now)
    result = walkin.claim(session, user, now)
    queue = _after_change(session, now)

    body: Dict[str, Any] = {
        "success": True,
        "type": result.outcome.value,
        "user": user_dict(user),
        "queue": queue,
        "search_window": {
            "start": result.window_start.isoformat(),
            "end": result.window_end.isoformat(),
        },
    }
    if result.appointment is not None:
        body["message"] = "Appointment slot claimed successfully"
        body["appointment"] = appointment_dict(result.appointment)
        body["your_place"] = _position_of(queue, result.appointment.id)
    else:
        body["message"] = "Added to walk-in queue"
        body["walk_in"] = walk_in_dict(result.walk_in)
        body["your_place"] = _position_of(queue, result.walk_in.id)
    return body


# ===== ADMIN OPERATIONS =====

def verify_admin(session: Session, passcode: Optional[str]) -> None:
    settings = store.get_settings(session)
    if not passcode or passcode != settings.admin_passcode:
        logger.warning("Rejected admin request with invalid passcode")
        raise Unauthorized("Invalid passcode")


ACTIONS = {
    "arrive": admin_queue.mark_arrived,
    "no_show": admin_queue.mark_no_show,
    "cancel": admin_queue.cancel,
}


def admin_action(session: Session, action: str, kind: TicketKind, ticket_id: str,
                 now: datetime) -> Dict[str, Any]:
    handler = ACTIONS.get(action)
    if handler is None:
        raise ValidationError("Invalid action", {"valid_actions": sorted(ACTIONS)})
    ticket = handler(session, kind, ticket_id, now)
    return {
        "success": True,
        "message": f"{admin_queue.LABELS[kind].capitalize()} {ticket.ticket_code} is now {ticket.status.value}",
        "ticket": ticket_dict(kind, ticket),
        "queue": _after_change(session, now),
    }


def _serve_response(session: Session, result: admin_queue.ServeResult, now: datetime,
                    message: str) -> Dict[str, Any]:
    queue = _after_change(session, now, result.queue)
    served = result.served
    return {
        "success": True,
        "message": message,
        "served": {"type": served.kind.value, "id": served.id, "ticket_code": served.ticket_code},
        "queue": queue,
    }


def admin_call_next(session: Session, now: datetime, expected_ticket_id: Optional[str] = None) -> Dict[str, Any]:
    result = admin_queue.call_next(session, now, expected_ticket_id)
    if result.now_serving is not None:
        message = f"{result.served.ticket_code} served. Now serving {result.now_serving.ticket_code}."
    else:
        message = f"{result.served.ticket_code} served. Queue is now empty."
    return _serve_response(session, result, now, message)


def admin_mark_served(session: Session, now: datetime, expected_ticket_id: Optional[str] = None) -> Dict[str, Any]:
    result = admin_queue.mark_served(session, now, expected_ticket_id)
    return _serve_response(session, result, now, f"{result.served.ticket_code} marked as served.")


def get_business_hours(session: Session) -> Dict[str, Any]:
    return {"success": True, "business_hours": [hours_dict(h) for h in store.list_business_hours(session)]}


def update_business_hours(session: Session, entries: Iterable[Dict[str, Any]], now: datetime) -> Dict[str, Any]:
    rows = []
    for entry in entries:
        row = BusinessHours(**entry)
        if not row.is_open:
            row.open_time = row.close_time = row.break_start = row.break_end = None
        rows.append(row)
    slots.check_business_hours(rows)
    saved = store.save_business_hours(session, rows, now)
    logger.info("Business hours updated for days %s", [r.day_of_week for r in rows])
    return {"success": True, "message": "Business hours saved successfully",
            "business_hours": [hours_dict(h) for h in saved]}


def day_schedule(session: Session, date_str: Optional[str], now: datetime) -> Dict[str, Any]:
    day = slots.parse_date(date_str) if date_str else now.date()
    appointments, walk_ins = store.list_for_day(session, day)

    def counts(tickets) -> Dict[str, int]:
        result: Dict[str, int] = {}
        for ticket in tickets:
            result[ticket.status.value] = result.get(ticket.status.value, 0) + 1
        return result

    return {
        "success": True,
        "date": day.isoformat(),
        "appointments": [appointment_dict(a) for a in appointments],
        "walk_ins": [walk_in_dict(w) for w in walk_ins],
        "stats": {
            "appointments": {"total": len(appointments), **counts(appointments)},
            "walk_ins": {"total": len(walk_ins), **counts(walk_ins)},
        },
    }


def search_users(session: Session, query: str, now: datetime) -> Dict[str, Any]:
    users = store.search_users(session, query)
    since = now - timedelta(days=30)
    found = []
    for user in users:
        appointments, walk_ins = store.list_for_user(session, user.id, since)
        found.append({
            **user_dict(user),
            "appointments": [appointment_dict(a) for a in appointments],
            "walk_ins": [walk_in_dict(w) for w in walk_ins],
        })
    return {"success": True, "message": f"Found {len(found)} user(s) matching your search", "users": found}


def get_queue_analytics(session: Session, now: datetime, days: int = 7) -> Dict[str, Any]:
    """Status breakdown and rates over the last ``days`` days."""
    since = datetime.combine(now.date() - timedelta(days=days), time.min)
    appointments = store.count_by_status(session, TicketKind.appointment, since)
    walk_ins = store.count_by_status(session, TicketKind.walk_in, since)

    total = sum(appointments.values()) + sum(walk_ins.values())
    served = appointments.get("served", 0) + walk_ins.get("served", 0)
    no_shows = appointments.get("no_show", 0) + walk_ins.get("no_show", 0)
    conversions = appointments.get("converted_to_walkin", 0)

    def rate(count: int) -> float:
        return round(count / total * 100, 1) if total else 0.0

    return {
        "days_analyzed": days,
        "total_tickets": total,
        "appointments": appointments,
        "walk_ins": walk_ins,
        "served_rate": rate(served),
        "no_show_rate": rate(no_shows),
        "late_conversions": conversions,
    }


def health(session: Session) -> Dict[str, Any]:
    settings = store.get_settings(session)
    return {
        "status": "healthy",
        "database": "connected",
        "redis": "connected" if get_redis() else "unavailable",
        "clinic_name": settings.clinic_name,
    }
