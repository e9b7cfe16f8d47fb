from datetime import datetime, timezone
from typing import Callable

# Zero-argument callable returning a naive UTC datetime
Clock = Callable[[], datetime]


def utcnow() -> datetime:
    """Naive UTC now, matching how timestamps are stored."""
    return datetime.now(timezone.utc).replace(tzinfo=None)
