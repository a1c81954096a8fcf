"""FastAPI application for the clinic appointment and walk-in queue.

Public endpoints let patients book a slot, check in for it and register as
a walk-in; the queue itself is readable by anyone so it can be shown on a
status board.  Staff endpoints under ``/admin`` require the passcode stored
in settings.  All refusals are raised as :class:`errors.QueueError` and
turned into JSON by a single exception handler.
"""

from __future__ import annotations

import logging
import sys
from datetime import datetime
from typing import Any, Dict, Optional

from fastapi import Depends, FastAPI, HTTPException, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from sqlmodel import Session

import config
import services
import store
from errors import QueueError
from schemas import (
    ActionRequest,
    BookingRequest,
    BusinessHoursUpdate,
    CheckInRequest,
    SearchUserRequest,
    ServeRequest,
    WalkInRequest,
)

logging.basicConfig(
    level=getattr(logging, config.LOG_LEVEL.upper(), logging.INFO),
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s',
    handlers=[logging.StreamHandler(sys.stdout)],
)
logger = logging.getLogger(__name__)

app = FastAPI(title="Clinic Appointment Queue")

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.on_event("startup")
def on_startup() -> None:
    logger.info("Starting clinic queue with database %s", config.DATABASE_URL.split("@")[-1])
    engine = store.get_engine()
    store.init_db(engine)
    if config.ADMIN_PASS:
        with Session(engine) as session:
            store.set_admin_pass(session, config.ADMIN_PASS)


@app.exception_handler(QueueError)
async def queue_error_handler(request: Request, exc: QueueError) -> JSONResponse:
    if exc.status_code >= 500:
        logger.error("%s %s failed: %s %s", request.method, request.url.path, exc.message, exc.details)
    else:
        logger.info("%s %s refused (%s): %s", request.method, request.url.path, exc.kind, exc.message)
    return JSONResponse(status_code=exc.status_code, content=exc.to_dict())


def get_now() -> datetime:
    """Current local wall-clock time; overridden in tests."""
    return datetime.now()


def require_rate_limit(contact: Optional[str], action: str, limit: tuple) -> None:
    requests, window = limit
    if not services.check_rate_limit(contact or "", action, requests, window):
        logger.warning("Rate limit hit for %s on %s", contact, action)
        raise HTTPException(status_code=429, detail="Too many requests. Please wait a few minutes before trying again.")


@app.get("/")
def root() -> Dict[str, Any]:
    return {"message": "Clinic Appointment Queue API", "status": "running"}


@app.get("/health")
def health(session: Session = Depends(store.get_session)) -> Dict[str, Any]:
    return services.health(session)


# ===== PUBLIC =====

@app.get("/api/available-slots")
def available_slots(date: str, session: Session = Depends(store.get_session),
                    now: datetime = Depends(get_now)) -> Dict[str, Any]:
    return services.available_slots(session, date, now)


@app.post("/api/book", status_code=201)
def book(request: BookingRequest, session: Session = Depends(store.get_session),
         now: datetime = Depends(get_now)) -> Dict[str, Any]:
    require_rate_limit(request.phone or request.email, "book", config.BOOKING_RATE_LIMIT)
    return services.book_appointment(session, request.name, request.phone, request.email,
                                     request.date, request.time, now)


@app.post("/api/check-in")
def check_in(request: CheckInRequest, session: Session = Depends(store.get_session),
             now: datetime = Depends(get_now)) -> Dict[str, Any]:
    require_rate_limit(request.phone or request.email, "check_in", config.CHECKIN_RATE_LIMIT)
    return services.check_in(session, request.ticket_code, request.phone, request.email, now)


@app.post("/api/walk-in")
def walk_in(request: WalkInRequest, session: Session = Depends(store.get_session),
            now: datetime = Depends(get_now)) -> Dict[str, Any]:
    require_rate_limit(request.phone or request.email, "walk_in", config.WALKIN_RATE_LIMIT)
    return services.register_walk_in(session, request.name, request.phone, request.email, now)


@app.get("/api/queue")
def queue(stats: bool = False, session: Session = Depends(store.get_session),
          now: datetime = Depends(get_now)) -> Dict[str, Any]:
    return services.get_queue(session, now, include_stats=stats)


# ===== ADMIN =====

@app.get("/admin/queue")
def admin_queue(passcode: str, session: Session = Depends(store.get_session),
                now: datetime = Depends(get_now)) -> Dict[str, Any]:
    services.verify_admin(session, passcode)
    return services.get_queue(session, now, include_stats=True)


@app.post("/admin/action")
def admin_action(request: ActionRequest, session: Session = Depends(store.get_session),
                 now: datetime = Depends(get_now)) -> Dict[str, Any]:
    """Mark a ticket arrived, no-show or cancelled and return the new queue."""
    services.verify_admin(session, request.passcode)
    if request.note:
        logger.info("Admin %s on %s %s: %s", request.action, request.kind.value, request.ticket_id, request.note)
    return services.admin_action(session, request.action, request.kind, request.ticket_id, now)


@app.post("/admin/call-next")
def admin_call_next(request: ServeRequest, session: Session = Depends(store.get_session),
                    now: datetime = Depends(get_now)) -> Dict[str, Any]:
    services.verify_admin(session, request.passcode)
    return services.admin_call_next(session, now, request.expected_ticket_id)


@app.post("/admin/mark-served")
def admin_mark_served(request: ServeRequest, session: Session = Depends(store.get_session),
                      now: datetime = Depends(get_now)) -> Dict[str, Any]:
    services.verify_admin(session, request.passcode)
    return services.admin_mark_served(session, now, request.expected_ticket_id)


@app.get("/admin/appointments")
def admin_appointments(passcode: str, date: Optional[str] = None,
                       session: Session = Depends(store.get_session),
                       now: datetime = Depends(get_now)) -> Dict[str, Any]:
    services.verify_admin(session, passcode)
    return services.day_schedule(session, date, now)


@app.get("/admin/business-hours")
def admin_business_hours(passcode: str, session: Session = Depends(store.get_session)) -> Dict[str, Any]:
    services.verify_admin(session, passcode)
    return services.get_business_hours(session)


@app.put("/admin/business-hours")
def admin_update_business_hours(request: BusinessHoursUpdate, session: Session = Depends(store.get_session),
                                now: datetime = Depends(get_now)) -> Dict[str, Any]:
    services.verify_admin(session, request.passcode)
    entries = [entry.model_dump() for entry in request.business_hours]
    return services.update_business_hours(session, entries, now)


@app.post("/admin/search-user")
def admin_search_user(request: SearchUserRequest, session: Session = Depends(store.get_session),
                      now: datetime = Depends(get_now)) -> Dict[str, Any]:
    services.verify_admin(session, request.passcode)
    return services.search_users(session, request.query, now)


@app.get("/admin/analytics")
def admin_analytics(passcode: str, days: int = 7, session: Session = Depends(store.get_session),
                    now: datetime = Depends(get_now)) -> Dict[str, Any]:
    """Status breakdown and rates for the admin dashboard."""
    services.verify_admin(session, passcode)
    if days < 1 or days > 365:
        raise HTTPException(status_code=400, detail="days must be between 1 and 365")
    return services.get_queue_analytics(session, now, days)


if __name__ == "__main__":
    import uvicorn

    uvicorn.run("main:app", host="0.0.0.0", port=config.PORT)
