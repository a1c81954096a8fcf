"""Database models for the clinic queue.

We use SQLModel to define the schema.  The database stores users, the two
ticket kinds (scheduled appointments and unscheduled walk-ins), the weekly
business hours, clinic-level settings and an audit trail of ticket events.

There is deliberately no queue table: the queue is recomputed from the
ticket statuses on every read (see ``queue_view.project``).
"""

from __future__ import annotations

import uuid
from datetime import date as DateType
from datetime import datetime, time
from enum import Enum
from typing import Optional

from sqlalchemy import Index, text
from sqlmodel import Field, SQLModel


def new_id() -> str:
    return str(uuid.uuid4())


class TicketKind(str, Enum):
    appointment = "appointment"
    walk_in = "walk_in"


class AppointmentStatus(str, Enum):
    """Possible statuses for an appointment."""

    booked = "booked"
    arrived = "arrived"
    served = "served"
    no_show = "no_show"
    cancelled = "cancelled"
    converted_to_walkin = "converted_to_walkin"


class WalkInStatus(str, Enum):
    """Possible statuses for a walk-in.

    ``waiting`` is the only queued state; the head of the queue is the
    ticket being attended, so there is no separate serving status.
    """

    waiting = "waiting"
    served = "served"
    no_show = "no_show"
    cancelled = "cancelled"


# Statuses that hold a place in the appointment book.
ACTIVE_APPOINTMENT_STATUSES = (AppointmentStatus.booked, AppointmentStatus.arrived)


class User(SQLModel, table=True):
    __tablename__ = "users"

    id: str = Field(default_factory=new_id, primary_key=True)
    name: str
    phone: Optional[str] = Field(default=None, index=True)
    email: Optional[str] = Field(default=None, index=True)
    created_at: datetime = Field(default_factory=datetime.now)
    updated_at: datetime = Field(default_factory=datetime.now)


class Appointment(SQLModel, table=True):
    __tablename__ = "appointments"
    __table_args__ = (
        # At most one booked/arrived appointment per instant.
        Index(
            "uq_appointments_active_slot",
            "scheduled_time",
            unique=True,
            sqlite_where=text("status IN ('booked', 'arrived')"),
            postgresql_where=text("status IN ('booked', 'arrived')"),
        ),
    )

    id: str = Field(default_factory=new_id, primary_key=True)
    ticket_code: str = Field(index=True, unique=True)
    user_id: str = Field(foreign_key="users.id", index=True)
    date: DateType = Field(index=True)
    scheduled_time: datetime = Field(index=True)
    status: AppointmentStatus = Field(default=AppointmentStatus.booked, index=True)
    created_at: datetime = Field(default_factory=datetime.now)
    updated_at: datetime = Field(default_factory=datetime.now)


class WalkIn(SQLModel, table=True):
    __tablename__ = "walk_ins"

    id: str = Field(default_factory=new_id, primary_key=True)
    ticket_code: str = Field(index=True, unique=True)
    user_id: str = Field(foreign_key="users.id", index=True)
    check_in_time: datetime = Field(index=True)
    status: WalkInStatus = Field(default=WalkInStatus.waiting, index=True)
    original_appointment_id: Optional[str] = Field(
        default=None, foreign_key="appointments.id", index=True
    )
    created_at: datetime = Field(default_factory=datetime.now)
    updated_at: datetime = Field(default_factory=datetime.now)


class BusinessHours(SQLModel, table=True):
    """Opening hours for one weekday (0 = Sunday ... 6 = Saturday)."""

    __tablename__ = "business_hours"

    day_of_week: int = Field(primary_key=True)
    is_open: bool = Field(default=True)
    open_time: Optional[time] = None
    close_time: Optional[time] = None
    break_start: Optional[time] = None
    break_end: Optional[time] = None
    slot_duration: int = Field(default=15)
    updated_at: datetime = Field(default_factory=datetime.now)


class TicketEvent(SQLModel, table=True):
    __tablename__ = "ticket_events"

    id: Optional[int] = Field(default=None, primary_key=True)
    ticket_kind: TicketKind
    ticket_id: str = Field(index=True)
    event_type: str
    detail: Optional[str] = None
    at: datetime = Field(default_factory=datetime.now)


class Settings(SQLModel, table=True):
    __tablename__ = "settings"

    id: Optional[int] = Field(default=1, primary_key=True)
    clinic_name: str = Field(default="Clinic Queue")
    admin_passcode: str = Field(default="demo")
    minutes_per_ticket: int = Field(default=15)
