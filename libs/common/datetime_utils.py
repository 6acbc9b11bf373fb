"""UTC helpers shared by the billing models and services.

Renewal and grace deadlines are compared against "now" on every scheduler
pass, so every timestamp must carry tzinfo before it is compared.
"""

from datetime import datetime, timezone
from typing import Optional


def utc_now() -> datetime:
    """Timezone-aware current time; the default for every timestamp column."""
    return datetime.now(timezone.utc)


def ensure_utc(value: Optional[datetime]) -> Optional[datetime]:
    """Attach UTC to naive datetimes read back from the database.

    SQLite drops tzinfo even on ``timezone=True`` columns. Values are always
    written in UTC, so a naive value is UTC.
    """
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def isoformat_utc(value: Optional[datetime]) -> Optional[str]:
    """ISO-8601 string for audit metadata and alert payloads."""
    value = ensure_utc(value)
    return value.isoformat() if value else None
