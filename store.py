"""Ticket store: persistence helpers over SQLModel sessions.

This module owns the tables defined in :mod:`models` and exposes only
create, read, filtered list and update-by-id operations.  It knows nothing
about queue rules; callers decide which transitions are legal and pass the
statuses they expect the row to still hold.  A status update that finds the
row in any other state changes nothing and raises :class:`errors.Conflict`,
which is how concurrent staff actions and slot claims are serialised.

All functions accept a :class:`sqlmodel.Session`.  Writes commit
immediately unless ``commit_now=False`` is passed, in which case the caller
owns the transaction.
"""

from __future__ import annotations

import logging
import secrets
from contextlib import contextmanager
from datetime import date, datetime, time, timedelta
from typing import Dict, Iterable, Iterator, List, Optional, Sequence, Type, Union

from sqlalchemy import func, or_, update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.pool import StaticPool
from sqlmodel import Session, SQLModel, create_engine, select

import config
from errors import Conflict, Internal, NotFound, ValidationError
from models import (
    ACTIVE_APPOINTMENT_STATUSES,
    Appointment,
    AppointmentStatus,
    BusinessHours,
    Settings,
    TicketEvent,
    TicketKind,
    User,
    WalkIn,
    WalkInStatus,
)

logger = logging.getLogger(__name__)

Ticket = Union[Appointment, WalkIn]
TicketStatus = Union[AppointmentStatus, WalkInStatus]

MODELS: Dict[TicketKind, Type[SQLModel]] = {
    TicketKind.appointment: Appointment,
    TicketKind.walk_in: WalkIn,
}

CODE_PREFIXES = {TicketKind.appointment: "A", TicketKind.walk_in: "W"}
# No 0/O or 1/I/L so codes can be read off the status board.
CODE_ALPHABET = "23456789ABCDEFGHJKMNPQRSTUVWXYZ"
CODE_LENGTH = 8

_engine = None


def make_engine(url: str, **kwargs):
    """Build an engine for ``url``.

    SQLite connections are shared across FastAPI's worker threads, and an
    in-memory database needs a single static connection to survive.
    """
    if url.startswith("sqlite"):
        kwargs.setdefault("connect_args", {"check_same_thread": False})
        if url in ("sqlite://", "sqlite:///:memory:"):
            kwargs.setdefault("poolclass", StaticPool)
    return create_engine(url, **kwargs)


def get_engine():
    global _engine
    if _engine is None:
        _engine = make_engine(config.DATABASE_URL)
    return _engine


def get_session() -> Iterator[Session]:
    """FastAPI dependency: one session per request, closed afterwards."""
    with Session(get_engine()) as session:
        yield session


def init_db(engine) -> None:
    """Create tables if they do not exist and seed default rows."""
    SQLModel.metadata.create_all(engine)
    with Session(engine) as session:
        if session.get(Settings, 1) is None:
            session.add(Settings(id=1, clinic_name=config.CLINIC_NAME,
                                 minutes_per_ticket=config.MINUTES_PER_TICKET))
        existing = {row.day_of_week for row in session.exec(select(BusinessHours)).all()}
        for day in range(7):
            if day in existing:
                continue
            weekday = 1 <= day <= 5
            session.add(
                BusinessHours(
                    day_of_week=day,
                    is_open=weekday,
                    open_time=time(9, 0) if weekday else None,
                    close_time=time(17, 0) if weekday else None,
                    slot_duration=config.DEFAULT_SLOT_MINUTES,
                )
            )
        session.commit()


@contextmanager
def storage_errors(session: Session, what: str) -> Iterator[None]:
    """Roll back and map storage failures to :class:`Conflict` or :class:`Internal`."""
    try:
        yield
    except IntegrityError as exc:
        session.rollback()
        logger.warning("Integrity violation while trying to %s: %s", what, exc.orig)
        raise Conflict(f"Failed to {what}: it conflicts with an existing record") from exc
    except SQLAlchemyError as exc:
        session.rollback()
        logger.exception("Storage failure while trying to %s", what)
        raise Internal(f"Failed to {what}") from exc


def commit(session: Session, what: str) -> None:
    with storage_errors(session, what):
        session.commit()


def flush(session: Session, what: str) -> None:
    with storage_errors(session, what):
        session.flush()


# ===== SETTINGS =====

def get_settings(session: Session) -> Settings:
    settings = session.get(Settings, 1)
    if settings is None:
        settings = Settings(id=1, clinic_name=config.CLINIC_NAME)
        session.add(settings)
        commit(session, "create settings")
        session.refresh(settings)
    return settings


def set_admin_pass(session: Session, passcode: str) -> None:
    settings = get_settings(session)
    settings.admin_passcode = passcode
    session.add(settings)
    commit(session, "update admin passcode")


# ===== BUSINESS HOURS =====

def get_business_hours(session: Session, day_of_week: int) -> Optional[BusinessHours]:
    return session.get(BusinessHours, day_of_week)


def list_business_hours(session: Session) -> List[BusinessHours]:
    return list(session.exec(select(BusinessHours).order_by(BusinessHours.day_of_week)).all())


def save_business_hours(session: Session, rows: Iterable[BusinessHours], now: datetime) -> List[BusinessHours]:
    for row in rows:
        current = session.get(BusinessHours, row.day_of_week)
        if current is None:
            current = BusinessHours(day_of_week=row.day_of_week)
        current.is_open = row.is_open
        current.open_time = row.open_time
        current.close_time = row.close_time
        current.break_start = row.break_start
        current.break_end = row.break_end
        current.slot_duration = row.slot_duration
        current.updated_at = now
        session.add(current)
    commit(session, "save business hours")
    return list_business_hours(session)


# ===== USERS =====

def normalize_phone(phone: Optional[str]) -> Optional[str]:
    if phone is None:
        return None
    phone = "".join(phone.split())
    return phone or None


def normalize_email(email: Optional[str]) -> Optional[str]:
    if email is None:
        return None
    email = email.strip().lower()
    return email or None


def find_user_by_contact(session: Session, phone: Optional[str], email: Optional[str]) -> Optional[User]:
    """Return the user matching ``phone`` first, then ``email``."""
    phone = normalize_phone(phone)
    email = normalize_email(email)
    if phone:
        user = session.exec(select(User).where(User.phone == phone).order_by(User.created_at)).first()
        if user:
            return user
    if email:
        return session.exec(select(User).where(User.email == email).order_by(User.created_at)).first()
    return None


def upsert_user(session: Session, name: str, phone: Optional[str], email: Optional[str],
                now: datetime, commit_now: bool = True) -> User:
    """Create a user or refresh the one matching the given contact."""
    phone = normalize_phone(phone)
    email = normalize_email(email)
    if not phone and not email:
        raise ValidationError("Either phone or email must be provided")
    user = find_user_by_contact(session, phone, email)
    if user is None:
        user = User(name=name.strip(), phone=phone, email=email, created_at=now, updated_at=now)
    else:
        user.name = name.strip() or user.name
        user.phone = phone or user.phone
        user.email = email or user.email
        user.updated_at = now
    session.add(user)
    if commit_now:
        commit(session, "save user")
        session.refresh(user)
    else:
        flush(session, "save user")
    return user


def search_users(session: Session, query: str, limit: int = 10) -> List[User]:
    """Exact phone/email match first, otherwise a partial match."""
    query = query.strip()
    exact = session.exec(
        select(User)
        .where(or_(User.phone == normalize_phone(query), User.email == normalize_email(query)))
        .order_by(User.created_at.desc())
    ).all()
    if exact:
        return list(exact)
    pattern = f"%{query.lower()}%"
    return list(
        session.exec(
            select(User)
            .where(or_(User.phone.like(pattern), func.lower(User.email).like(pattern)))
            .order_by(User.created_at.desc())
            .limit(limit)
        ).all()
    )


# ===== TICKETS =====

def generate_ticket_code(kind: TicketKind) -> str:
    body = "".join(secrets.choice(CODE_ALPHABET) for _ in range(CODE_LENGTH))
    return f"{CODE_PREFIXES[kind]}-{body}"


def _unused_code(session: Session, kind: TicketKind) -> str:
    model = MODELS[kind]
    while True:
        code = generate_ticket_code(kind)
        if session.exec(select(model.id).where(model.ticket_code == code)).first() is None:
            return code


def record_event(session: Session, kind: TicketKind, ticket_id: str, event_type: str,
                 at: datetime, detail: Optional[str] = None) -> None:
    session.add(TicketEvent(ticket_kind=kind, ticket_id=ticket_id, event_type=event_type,
                            detail=detail, at=at))


def create_appointment(session: Session, user_id: str, scheduled_time: datetime,
                       now: datetime) -> Appointment:
    """Insert a ``booked`` appointment.

    The partial unique index on active slots turns a concurrent double
    booking into :class:`Conflict`.
    """
    appointment = Appointment(
        ticket_code=_unused_code(session, TicketKind.appointment),
        user_id=user_id,
        date=scheduled_time.date(),
        scheduled_time=scheduled_time,
        status=AppointmentStatus.booked,
        created_at=now,
        updated_at=now,
    )
    session.add(appointment)
    record_event(session, TicketKind.appointment, appointment.id, "booked", now)
    try:
        commit(session, "create appointment")
    except Conflict as exc:
        raise Conflict(
            "This time slot is already booked",
            {"requested_time": scheduled_time.isoformat()},
        ) from exc
    session.refresh(appointment)
    return appointment


def create_walk_in(session: Session, user_id: str, now: datetime,
                   original_appointment_id: Optional[str] = None,
                   commit_now: bool = True) -> WalkIn:
    walk_in = WalkIn(
        ticket_code=_unused_code(session, TicketKind.walk_in),
        user_id=user_id,
        check_in_time=now,
        status=WalkInStatus.waiting,
        original_appointment_id=original_appointment_id,
        created_at=now,
        updated_at=now,
    )
    session.add(walk_in)
    flush(session, "create walk-in")
    detail = f"converted from appointment {original_appointment_id}" if original_appointment_id else None
    record_event(session, TicketKind.walk_in, walk_in.id, "waiting", now, detail)
    if commit_now:
        commit(session, "create walk-in")
        session.refresh(walk_in)
    return walk_in


def get_by_id(session: Session, kind: TicketKind, ticket_id: str) -> Optional[Ticket]:
    return session.get(MODELS[kind], ticket_id, populate_existing=True)


def require_ticket(session: Session, kind: TicketKind, ticket_id: str) -> Ticket:
    ticket = get_by_id(session, kind, ticket_id)
    if ticket is None:
        label = "Appointment" if kind == TicketKind.appointment else "Walk-in"
        raise NotFound(f"{label} not found", {"ticket_id": ticket_id, "kind": kind.value})
    return ticket


def get_appointment_by_code(session: Session, ticket_code: str) -> Optional[Appointment]:
    return session.exec(
        select(Appointment).where(Appointment.ticket_code == ticket_code.strip().upper())
    ).first()


def list_by_status(session: Session, kind: TicketKind, statuses: Sequence[TicketStatus],
                   day: Optional[date] = None) -> List[Ticket]:
    """Tickets holding one of ``statuses``, optionally limited to one day's queue times."""
    model = MODELS[kind]
    order = model.scheduled_time if kind == TicketKind.appointment else model.check_in_time
    stmt = select(model).where(model.status.in_(list(statuses)))
    if day is not None:
        if kind == TicketKind.appointment:
            stmt = stmt.where(model.date == day)
        else:
            start = datetime.combine(day, time.min)
            stmt = stmt.where(order >= start).where(order < start + timedelta(days=1))
    stmt = stmt.order_by(order, model.created_at, model.id)
    return list(session.exec(stmt).all())


def find_active_appointment_at(session: Session, scheduled_time: datetime) -> Optional[Appointment]:
    return session.exec(
        select(Appointment)
        .where(Appointment.scheduled_time == scheduled_time)
        .where(Appointment.status.in_(list(ACTIVE_APPOINTMENT_STATUSES)))
    ).first()


def list_active_times_on(session: Session, day: date) -> List[datetime]:
    return list(
        session.exec(
            select(Appointment.scheduled_time)
            .where(Appointment.date == day)
            .where(Appointment.status.in_(list(ACTIVE_APPOINTMENT_STATUSES)))
        ).all()
    )


def list_booked_between(session: Session, start: datetime, end: datetime) -> List[Appointment]:
    """Unclaimed (``booked``) appointments with ``start <= scheduled_time <= end``."""
    return list(
        session.exec(
            select(Appointment)
            .where(Appointment.status == AppointmentStatus.booked)
            .where(Appointment.scheduled_time >= start)
            .where(Appointment.scheduled_time <= end)
            .order_by(Appointment.scheduled_time, Appointment.created_at)
        ).all()
    )


def list_for_day(session: Session, day: date):
    start = datetime.combine(day, time.min)
    end = start + timedelta(days=1)
    appointments = session.exec(
        select(Appointment).where(Appointment.date == day).order_by(Appointment.scheduled_time)
    ).all()
    walk_ins = session.exec(
        select(WalkIn)
        .where(WalkIn.check_in_time >= start)
        .where(WalkIn.check_in_time < end)
        .order_by(WalkIn.check_in_time)
    ).all()
    return list(appointments), list(walk_ins)


def list_for_user(session: Session, user_id: str, since: datetime, limit: int = 5):
    appointments = session.exec(
        select(Appointment)
        .where(Appointment.user_id == user_id)
        .where(Appointment.scheduled_time >= since)
        .order_by(Appointment.scheduled_time.desc())
        .limit(limit)
    ).all()
    walk_ins = session.exec(
        select(WalkIn)
        .where(WalkIn.user_id == user_id)
        .where(WalkIn.check_in_time >= since)
        .order_by(WalkIn.check_in_time.desc())
        .limit(limit)
    ).all()
    return list(appointments), list(walk_ins)


def count_by_status(session: Session, kind: TicketKind, since: datetime,
                    until: Optional[datetime] = None) -> Dict[str, int]:
    model = MODELS[kind]
    stmt = select(model.status, func.count()).where(model.created_at >= since)
    if until is not None:
        stmt = stmt.where(model.created_at < until)
    rows = session.exec(stmt.group_by(model.status)).all()
    return {getattr(status, "value", status): count for status, count in rows}


def update_status(session: Session, kind: TicketKind, ticket_id: str, new_status: TicketStatus,
                  now: datetime, expected: Optional[Sequence[TicketStatus]] = None,
                  values: Optional[dict] = None, detail: Optional[str] = None,
                  commit_now: bool = True) -> Ticket:
    """Set ``status`` on one ticket.

    With ``expected`` the update only applies while the row still holds one
    of those statuses.  A zero-row update raises :class:`Conflict`, or
    :class:`NotFound` when the row does not exist at all.
    """
    model = MODELS[kind]
    stmt = update(model).where(model.id == ticket_id)
    if expected is not None:
        stmt = stmt.where(model.status.in_(list(expected)))
    stmt = stmt.values(status=new_status, updated_at=now, **(values or {}))
    # Plain UPDATE so rowcount is exact; the row is re-read below.
    stmt = stmt.execution_options(synchronize_session=False)
    try:
        result = session.exec(stmt)
    except SQLAlchemyError as exc:
        session.rollback()
        logger.exception("Status update failed for %s %s", kind.value, ticket_id)
        raise Internal("Failed to update ticket status") from exc

    if result.rowcount == 0:
        current = get_by_id(session, kind, ticket_id)
        if current is None:
            raise NotFound("Ticket not found", {"ticket_id": ticket_id, "kind": kind.value})
        raise Conflict(
            f"Ticket {current.ticket_code} is {current.status.value}",
            {"ticket_id": ticket_id, "status": current.status.value},
        )

    record_event(session, kind, ticket_id, getattr(new_status, "value", new_status), now, detail)
    if commit_now:
        commit(session, "update ticket status")
    return require_ticket(session, kind, ticket_id)
