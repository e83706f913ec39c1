"""
Read side of login sessions.

Sessions are issued by the account service and identified by the
`session_id` cookie. The search API validates them here and slides their
inactivity timeout; `create_session` exists for seeding and tests.
"""
from __future__ import annotations

import secrets
from contextlib import closing
from datetime import datetime, timedelta
from typing import Dict, Optional, Sequence

from core.clock import from_db, to_db, utcnow
from core.db.base import Database

SESSION_TIMEOUT_MINUTES = 30  # inactivity timeout


def _expiry(now: datetime) -> str:
    return to_db(now + timedelta(minutes=SESSION_TIMEOUT_MINUTES))


def _write(db: Database, sql: str, params: Sequence) -> None:
    with db.transaction() as conn:
        cur = conn.cursor()
        cur.execute(sql, params)


def create_session(db: Database, user_id: int, *, now: Optional[datetime] = None) -> str:
    token = secrets.token_urlsafe(32)
    now = now or utcnow()
    _write(
        db,
        "INSERT INTO sessions (id, user_id, created_at, last_seen_at, expires_at) VALUES (?, ?, ?, ?, ?)",
        (token, user_id, to_db(now), to_db(now), _expiry(now)),
    )
    return token


def delete_session(db: Database, session_id: str) -> None:
    if session_id:
        _write(db, "DELETE FROM sessions WHERE id = ?", (session_id,))


def get_session(db: Database, session_id: str, *, now: Optional[datetime] = None) -> Optional[Dict]:
    """The session row, or None when unknown or expired (expired rows are removed)."""
    if not session_id:
        return None

    with closing(db.connect()) as conn:
        cur = conn.cursor()
        cur.execute("SELECT id, user_id, expires_at FROM sessions WHERE id = ?", (session_id,))
        row = cur.fetchone()
    if row is None:
        return None

    try:
        expires_at = from_db(row["expires_at"])
    except ValueError:
        expires_at = None
    if expires_at is None or expires_at < (now or utcnow()):
        delete_session(db, session_id)
        return None
    return row


def touch_session(db: Database, session_id: str, *, now: Optional[datetime] = None) -> None:
    """Slide the inactivity timeout forward."""
    if not session_id:
        return
    now = now or utcnow()
    _write(
        db,
        "UPDATE sessions SET last_seen_at = ?, expires_at = ? WHERE id = ?",
        (to_db(now), _expiry(now), session_id),
    )


__all__ = [
    "SESSION_TIMEOUT_MINUTES",
    "create_session",
    "delete_session",
    "get_session",
    "touch_session",
]
