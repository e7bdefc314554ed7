# Utilities Module
import re
from datetime import datetime, timezone


def utcnow() -> datetime:
    """Timezone-aware current time."""
    return datetime.now(timezone.utc)


def to_iso(value: datetime) -> str:
    return value.astimezone(timezone.utc).isoformat()


def alphanumeric(value: str) -> str:
    """Strip everything except ASCII letters and digits."""
    return re.sub(r"[^A-Za-z0-9]", "", value)


__all__ = [
    "alphanumeric",
    "to_iso",
    "utcnow",
]
