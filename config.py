"""Runtime configuration for the clinic queue.

Everything is read from environment variables at import time.  We do not
rely on python-dotenv; set variables in the shell or the process manager.
"""

from __future__ import annotations

import os

PROJECT_DIR = os.path.dirname(os.path.abspath(__file__))
DEFAULT_DB_FILENAME = os.path.join(PROJECT_DIR, "queue.db")


def _database_url() -> str:
    url = os.getenv("DATABASE_URL")
    if not url:
        return f"sqlite:///{DEFAULT_DB_FILENAME}"
    # Heroku/Railway style URLs still use the old scheme name.
    if url.startswith("postgres://"):
        return "postgresql://" + url[len("postgres://"):]
    if "://" not in url:
        # A bare path means a SQLite file.
        return f"sqlite:///{url}"
    return url


DATABASE_URL = _database_url()
REDIS_URL = os.getenv("REDIS_URL")
ADMIN_PASS = os.getenv("ADMIN_PASS")
CLINIC_NAME = os.getenv("CLINIC_NAME", "Clinic Queue")
MINUTES_PER_TICKET = int(os.getenv("MINUTES_PER_TICKET", "15"))
LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO")
PORT = int(os.getenv("PORT", "8000"))

# Booking and check-in policy, in minutes.
BOOKING_BUFFER_MINUTES = 15
ON_TIME_WINDOW_MINUTES = 15
EXPIRY_MINUTES = 60
CLAIM_WINDOW_MINUTES = 15

DEFAULT_SLOT_MINUTES = 15
MIN_SLOT_MINUTES = 5
MAX_SLOT_MINUTES = 120

# Rate limits for public endpoints: (requests, window seconds).
BOOKING_RATE_LIMIT = (5, 300)
CHECKIN_RATE_LIMIT = (10, 300)
WALKIN_RATE_LIMIT = (5, 300)

QUEUE_CHANNEL = "clinic:queue"
