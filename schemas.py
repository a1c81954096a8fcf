"""Pydantic schemas for requests.

We define only request bodies here.  Responses are returned as plain dicts
built by the service layer.
"""

from datetime import time
from typing import List, Literal, Optional

from pydantic import BaseModel, EmailStr, Field, field_validator, model_validator

from models import TicketKind


class ContactDetails(BaseModel):
    phone: Optional[str] = Field(default=None, max_length=30)
    email: Optional[EmailStr] = None

    @field_validator("phone", "email", mode="before")
    @classmethod
    def blank_to_none(cls, value):
        if isinstance(value, str) and not value.strip():
            return None
        return value

    @model_validator(mode="after")
    def require_contact(self):
        if not self.phone and not self.email:
            raise ValueError("Either phone or email must be provided")
        return self


class BookingRequest(ContactDetails):
    name: str = Field(min_length=1, max_length=100)
    date: str = Field(pattern=r"^\d{4}-\d{2}-\d{2}$", description="YYYY-MM-DD")
    time: str = Field(pattern=r"^\d{2}:\d{2}$", description="HH:MM")


class CheckInRequest(ContactDetails):
    ticket_code: str = Field(min_length=1, max_length=40)


class WalkInRequest(ContactDetails):
    name: str = Field(min_length=1, max_length=100)


class ActionRequest(BaseModel):
    passcode: str
    action: Literal["arrive", "no_show", "cancel"]
    ticket_id: str
    kind: TicketKind
    note: Optional[str] = None


class ServeRequest(BaseModel):
    passcode: str
    expected_ticket_id: Optional[str] = None


class BusinessHoursEntry(BaseModel):
    day_of_week: int = Field(ge=0, le=6)
    is_open: bool
    open_time: Optional[time] = None
    close_time: Optional[time] = None
    break_start: Optional[time] = None
    break_end: Optional[time] = None
    slot_duration: int = 15


class BusinessHoursUpdate(BaseModel):
    passcode: str
    business_hours: List[BusinessHoursEntry]


class SearchUserRequest(BaseModel):
    passcode: str
    query: str = Field(min_length=1, max_length=100)
