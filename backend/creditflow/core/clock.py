"""Time helpers.

Timestamps are stored as naive UTC so that SQLite and Postgres compare them
the same way.
"""

from datetime import datetime, timezone
from typing import Callable

Clock = Callable[[], datetime]


def utcnow() -> datetime:
    """Current time as naive UTC."""
    return datetime.now(timezone.utc).replace(tzinfo=None)
