"""
UTC time helpers.

Timestamps are stored as fixed-width ISO-8601 text so that string comparison
in SQL matches chronological order on both Postgres and SQLite.
"""
from __future__ import annotations

from datetime import datetime, timezone
from typing import Optional

_DB_FORMAT = "%Y-%m-%dT%H:%M:%S.%f"


def utcnow() -> datetime:
    """Naive UTC now (all stored timestamps are naive UTC)."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def to_db(dt: Optional[datetime]) -> Optional[str]:
    if dt is None:
        return None
    if dt.tzinfo is not None:
        dt = dt.astimezone(timezone.utc).replace(tzinfo=None)
    return dt.strftime(_DB_FORMAT)


def from_db(value) -> Optional[datetime]:
    if value is None or value == "":
        return None
    dt = value if isinstance(value, datetime) else datetime.fromisoformat(str(value))
    if dt.tzinfo is not None:
        dt = dt.astimezone(timezone.utc).replace(tzinfo=None)
    return dt


__all__ = ["utcnow", "to_db", "from_db"]
