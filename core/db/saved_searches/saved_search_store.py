"""
Saved search registry.

Owners create, list, toggle and delete their saved searches. The alert matcher
is the only writer of the watermark (`last_notified_at`) and of the match
lease columns.
"""
from __future__ import annotations

import json
import logging
from contextlib import closing
from datetime import datetime, timedelta
from typing import List, Optional

from core.clock import to_db, utcnow
from core.db.base import Database
from core.errors import Forbidden, NotFound, ValidationError
from core.models import SAVED_SEARCH_NAME_MAX, QueryDescriptor, SavedSearch

log = logging.getLogger(__name__)

_COLUMNS = """
    ss.id, ss.user_id, ss.name, ss.filters, ss.notification_enabled, ss.is_active,
    ss.last_notified_at, ss.created_at, ss.lease_owner, ss.lease_expires_at
"""


def create_saved_search(
    db: Database,
    *,
    user_id: int,
    name: str,
    descriptor: QueryDescriptor,
    notify: bool = True,
    watermark: Optional[datetime] = None,
) -> int:
    """Store a saved search and return its id. Duplicate filters are allowed."""
    name = (name or "").strip()
    if not name:
        raise ValidationError("name", "Name is required")
    if len(name) > SAVED_SEARCH_NAME_MAX:
        raise ValidationError("name", f"Name must be at most {SAVED_SEARCH_NAME_MAX} characters")

    now = to_db(utcnow())
    with db.transaction() as conn:
        cur = conn.cursor()
        cur.execute(
            """
            INSERT INTO saved_searches
              (user_id, name, filters, filter_key, notification_enabled, is_active,
               last_notified_at, created_at, updated_at)
            VALUES (?, ?, ?, ?, ?, 1, ?, ?, ?)
            RETURNING id
            """,
            (
                user_id,
                name,
                json.dumps(descriptor.filter_dict(), sort_keys=True),
                descriptor.filter_key(),
                int(bool(notify)),
                to_db(watermark),
                now,
                now,
            ),
        )
        saved_search_id = int(cur.fetchone()["id"])

    log.info("Saved search created", extra={"user_id": user_id, "saved_search_id": saved_search_id})
    return saved_search_id


def list_saved_searches(db: Database, *, user_id: int) -> List[SavedSearch]:
    """Active saved searches of one owner, newest first."""
    with closing(db.connect()) as conn:
        cur = conn.cursor()
        cur.execute(
            f"""
            SELECT {_COLUMNS}
            FROM saved_searches ss
            WHERE ss.user_id = ? AND ss.is_active = 1
            ORDER BY ss.created_at DESC, ss.id DESC
            """,
            (user_id,),
        )
        rows = cur.fetchall()
    return [SavedSearch.from_row(r) for r in rows]


def get_saved_search(db: Database, saved_search_id: int) -> Optional[SavedSearch]:
    with closing(db.connect()) as conn:
        cur = conn.cursor()
        cur.execute(f"SELECT {_COLUMNS} FROM saved_searches ss WHERE ss.id = ?", (saved_search_id,))
        row = cur.fetchone()
    return SavedSearch.from_row(row) if row else None


def _require_owner(db: Database, user_id: int, saved_search_id: int) -> SavedSearch:
    saved = get_saved_search(db, saved_search_id)
    if saved is None or not saved.is_active:
        raise NotFound("Saved search not found")
    if saved.user_id != int(user_id):
        raise Forbidden("Saved search belongs to another user")
    return saved


def delete_saved_search(db: Database, *, user_id: int, saved_search_id: int) -> None:
    """Soft delete; queued notifications for it are skipped by the dispatcher."""
    _require_owner(db, user_id, saved_search_id)

    with db.transaction() as conn:
        cur = conn.cursor()
        cur.execute(
            """
            UPDATE saved_searches
            SET is_active = 0, notification_enabled = 0, updated_at = ?
            WHERE id = ? AND user_id = ?
            """,
            (to_db(utcnow()), saved_search_id, user_id),
        )
    log.info("Saved search deleted", extra={"user_id": user_id, "saved_search_id": saved_search_id})


def set_notifications(db: Database, *, user_id: int, saved_search_id: int, enabled: bool) -> SavedSearch:
    _require_owner(db, user_id, saved_search_id)
    _update_notifications(db, saved_search_id, enabled)
    return get_saved_search(db, saved_search_id)


def disable_notifications(db: Database, saved_search_id: int) -> bool:
    """Unsubscribe without an owner check (the caller verified a signed token)."""
    return _update_notifications(db, saved_search_id, False)


def _update_notifications(db: Database, saved_search_id: int, enabled: bool) -> bool:
    with db.transaction() as conn:
        cur = conn.cursor()
        cur.execute(
            "UPDATE saved_searches SET notification_enabled = ?, updated_at = ? WHERE id = ? AND is_active = 1",
            (int(bool(enabled)), to_db(utcnow()), saved_search_id),
        )
        updated = cur.rowcount
    return updated > 0


def advance_watermark(db: Database, saved_search_id: int, timestamp: datetime) -> bool:
    """
    Move `last_notified_at` forward to `timestamp`.

    A timestamp at or before the current watermark is rejected: the row is left
    unchanged and False is returned.
    """
    ts = to_db(timestamp)
    with db.transaction() as conn:
        cur = conn.cursor()
        cur.execute(
            """
            UPDATE saved_searches
            SET last_notified_at = ?, updated_at = ?
            WHERE id = ? AND (last_notified_at IS NULL OR last_notified_at < ?)
            """,
            (ts, to_db(utcnow()), saved_search_id, ts),
        )
        moved = cur.rowcount > 0

    if not moved:
        log.warning(
            "Watermark not advanced (not newer than current value)",
            extra={"saved_search_id": saved_search_id, "timestamp": ts},
        )
    return moved


def acquire_match_lease(
    db: Database,
    saved_search_id: int,
    *,
    owner: str,
    now: datetime,
    lease_seconds: int,
) -> Optional[SavedSearch]:
    """
    Take the per-saved-search match lease. Returns the fresh row when the
    lease was taken, None when another matcher holds an unexpired lease.
    """
    with db.transaction() as conn:
        cur = conn.cursor()
        cur.execute(
            """
            UPDATE saved_searches
            SET lease_owner = ?, lease_expires_at = ?
            WHERE id = ? AND is_active = 1
              AND (lease_owner IS NULL OR lease_expires_at IS NULL OR lease_expires_at < ?)
            """,
            (owner, to_db(now + timedelta(seconds=lease_seconds)), saved_search_id, to_db(now)),
        )
        taken = cur.rowcount > 0
    if not taken:
        return None
    return get_saved_search(db, saved_search_id)


def complete_match_pass(db: Database, saved_search_id: int, *, owner: str, watermark: datetime) -> bool:
    """
    Advance the watermark (never backwards) and release the lease in one
    statement. Returns False if the lease was lost in the meantime.
    """
    ts = to_db(watermark)
    with db.transaction() as conn:
        cur = conn.cursor()
        cur.execute(
            """
            UPDATE saved_searches
            SET last_notified_at = CASE
                  WHEN last_notified_at IS NULL OR last_notified_at < ? THEN ?
                  ELSE last_notified_at
                END,
                lease_owner = NULL,
                lease_expires_at = NULL,
                updated_at = ?
            WHERE id = ? AND lease_owner = ?
            """,
            (ts, ts, to_db(utcnow()), saved_search_id, owner),
        )
        held = cur.rowcount > 0
    return held


def release_match_lease(db: Database, saved_search_id: int, *, owner: str) -> None:
    with db.transaction() as conn:
        cur = conn.cursor()
        cur.execute(
            """
            UPDATE saved_searches
            SET lease_owner = NULL, lease_expires_at = NULL
            WHERE id = ? AND lease_owner = ?
            """,
            (saved_search_id, owner),
        )


def get_due_saved_searches(
    db: Database,
    *,
    now: datetime,
    min_interval_seconds: int = 0,
    limit: Optional[int] = None,
) -> List[SavedSearch]:
    """
    Saved searches with alerts on, not deleted, whose owner is active.
    Never-evaluated searches come first, then the oldest watermark.
    """
    sql = f"""
        SELECT {_COLUMNS}
        FROM saved_searches ss
        JOIN users u ON u.id = ss.user_id
        WHERE ss.is_active = 1
          AND ss.notification_enabled = 1
          AND u.status = 'active'
    """
    params: list = []
    if min_interval_seconds > 0:
        sql += " AND (ss.last_notified_at IS NULL OR ss.last_notified_at < ?)"
        params.append(to_db(now - timedelta(seconds=min_interval_seconds)))
    sql += " ORDER BY CASE WHEN ss.last_notified_at IS NULL THEN 0 ELSE 1 END, ss.last_notified_at, ss.id"
    if limit is not None:
        sql += " LIMIT ?"
        params.append(int(limit))

    with closing(db.connect()) as conn:
        cur = conn.cursor()
        cur.execute(sql, params)
        rows = cur.fetchall()
    return [SavedSearch.from_row(r) for r in rows]


def count_alert_enabled_searches(db: Database) -> int:
    with closing(db.connect()) as conn:
        cur = conn.cursor()
        cur.execute(
            """
            SELECT COUNT(*) AS count
            FROM saved_searches ss
            JOIN users u ON u.id = ss.user_id
            WHERE ss.is_active = 1 AND ss.notification_enabled = 1 AND u.status = 'active'
            """
        )
        row = cur.fetchone()
    return int(row["count"]) if row else 0


__all__ = [
    "create_saved_search",
    "list_saved_searches",
    "get_saved_search",
    "delete_saved_search",
    "set_notifications",
    "disable_notifications",
    "advance_watermark",
    "acquire_match_lease",
    "complete_match_pass",
    "release_match_lease",
    "get_due_saved_searches",
    "count_alert_enabled_searches",
]
