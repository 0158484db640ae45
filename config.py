"""Runtime configuration read from environment variables.

Values are read once at import time.  Defaults are suitable for running the
service locally against a SQLite file next to this module.
"""

from __future__ import annotations

import os

PROJECT_DIR = os.path.dirname(os.path.abspath(__file__))
DEFAULT_DB_FILENAME = os.path.join(PROJECT_DIR, "queue.db")

DATABASE_URL = os.getenv("DATABASE_URL", f"sqlite:///{DEFAULT_DB_FILENAME}")
REDIS_URL = os.getenv("REDIS_URL")
ADMIN_PASS = os.getenv("ADMIN_PASS")
CLINIC_NAME = os.getenv("CLINIC_NAME")

# Seconds between polls of the public board; also the board cache TTL.
POLL_INTERVAL_SECONDS = int(os.getenv("POLL_INTERVAL_SECONDS", 20))

# When true, proceed and set-in-charge commit all their writes at once.
ATOMIC_UPDATES = os.getenv("ATOMIC_UPDATES", "false").lower() in ("1", "true", "yes")

LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO").upper()
PORT = int(os.getenv("PORT", 8000))

# Public booking rate limit: bookings per client per window (seconds).
BOOKING_RATE_LIMIT = 10
BOOKING_RATE_WINDOW = 300
