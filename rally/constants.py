"""
rally.constants — Shared Constants & Helpers
=============================================

Single source of truth for engine defaults and time handling.
Import from here instead of re-declaring numbers in services and routes.
"""

from __future__ import annotations

import re
from datetime import UTC, datetime, timedelta

# ---------------------------------------------------------------------------
# Lifecycle scheduling defaults
# ---------------------------------------------------------------------------
DEFAULT_POLL_INTERVAL = timedelta(hours=1)
DEFAULT_GRACE_PERIOD = timedelta(minutes=15)

# ---------------------------------------------------------------------------
# Job queue defaults (3 attempts, exponential backoff from 2 s,
# keep the last 100 completed / 500 failed job records)
# ---------------------------------------------------------------------------
DEFAULT_MAX_ATTEMPTS = 3
DEFAULT_BACKOFF_BASE = timedelta(seconds=2)
DEFAULT_JOB_TIMEOUT = timedelta(seconds=30)
DEFAULT_RETAIN_COMPLETED = 100
DEFAULT_RETAIN_FAILED = 500

# Lifecycle jobs are keyed per challenge so re-enqueues coalesce.
JOB_KEY_PREFIX = "challenge:"

RANK_BADGES: list[str] = ["\U0001f947", "\U0001f948", "\U0001f949"]  # 🥇🥈🥉

# ---------------------------------------------------------------------------
# Challenge vocabulary
# ---------------------------------------------------------------------------
# Types are an open tag ("reading-count", "service-hours", …), not an enum.
CHALLENGE_TYPE_PATTERN = re.compile(r"^[a-z0-9][a-z0-9_-]{0,63}$")
MAX_NAME_LENGTH = 200
MAX_NOTE_LENGTH = 2000


# ---------------------------------------------------------------------------
# Time helpers
# ---------------------------------------------------------------------------
def utcnow() -> datetime:
    """Timezone-aware "now" in UTC.  The default clock everywhere."""
    return datetime.now(UTC)


def ensure_utc(value: datetime) -> datetime:
    """Treat naive datetimes as UTC and convert aware ones to UTC.

    SQLite drops tzinfo on the way back out, so every comparison in the
    engine goes through this first.
    """
    if value.tzinfo is None:
        return value.replace(tzinfo=UTC)
    return value.astimezone(UTC)


def job_key_for(challenge_id: int) -> str:
    """Logical queue key for a challenge's lifecycle jobs."""
    return f"{JOB_KEY_PREFIX}{challenge_id}"
