"""
Notification queue store.

One row per (saved search, listing) notification. Rows move
pending -> sending -> sent | pending (retry) | failed. A partial unique index
keeps at most one non-failed row per pair, so enqueueing is idempotent.
"""
from __future__ import annotations

import logging
from contextlib import closing
from datetime import datetime, timedelta
from typing import Dict, Iterable, List, Optional, Tuple

from core.clock import to_db
from core.db.base import Database
from core.models import (
    QUEUE_FAILED,
    QUEUE_PENDING,
    QUEUE_SENDING,
    QUEUE_SENT,
    QUEUE_STATUSES,
    AlertQueueItem,
)

log = logging.getLogger(__name__)

_ERROR_MAX = 500


def _clip(error: Optional[str]) -> Optional[str]:
    if error is None:
        return None
    return f"{error}".strip()[:_ERROR_MAX]


def enqueue_alert_items(
    db: Database,
    *,
    saved_search_id: int,
    user_id: int,
    listing_ids: Iterable[int],
    now: datetime,
    max_attempts: int = 3,
) -> List[int]:
    """
    Insert pending rows for every listing not already queued for this saved
    search. All rows go in one transaction.

    Returns the listing ids that were newly inserted.
    """
    ids = [int(i) for i in listing_ids if i is not None]
    if not ids:
        return []

    ts = to_db(now)
    inserted: List[int] = []
    with db.transaction() as conn:
        cur = conn.cursor()
        for listing_id in ids:
            cur.execute(
                """
                INSERT INTO alert_queue
                  (saved_search_id, user_id, listing_id, status, attempts, max_attempts,
                   next_attempt_at, created_at)
                VALUES (?, ?, ?, 'pending', 0, ?, ?, ?)
                ON CONFLICT DO NOTHING
                RETURNING id
                """,
                (saved_search_id, user_id, listing_id, int(max_attempts), ts, ts),
            )
            if cur.fetchone() is not None:
                inserted.append(listing_id)
    return inserted


def list_due_item_ids(db: Database, *, now: datetime, limit: int) -> List[int]:
    """Pending rows whose retry time has come, oldest first."""
    with closing(db.connect()) as conn:
        cur = conn.cursor()
        cur.execute(
            """
            SELECT id FROM alert_queue
            WHERE status = 'pending' AND next_attempt_at <= ?
            ORDER BY created_at ASC, id ASC
            LIMIT ?
            """,
            (to_db(now), int(limit)),
        )
        rows = cur.fetchall()
    return [int(r["id"]) for r in rows]


def count_due_items(db: Database, *, now: datetime) -> int:
    with closing(db.connect()) as conn:
        cur = conn.cursor()
        cur.execute(
            "SELECT COUNT(*) AS count FROM alert_queue WHERE status = 'pending' AND next_attempt_at <= ?",
            (to_db(now),),
        )
        row = cur.fetchone()
    return int(row["count"]) if row else 0


def get_item(db: Database, item_id: int) -> Optional[AlertQueueItem]:
    with closing(db.connect()) as conn:
        cur = conn.cursor()
        cur.execute("SELECT * FROM alert_queue WHERE id = ?", (item_id,))
        row = cur.fetchone()
    return AlertQueueItem.from_row(row) if row else None


def claim_item(db: Database, item_id: int, *, worker_id: str, now: datetime) -> Optional[AlertQueueItem]:
    """
    Move one pending row to `sending` and count the attempt.

    The conditional UPDATE is the claim: of two workers racing for the same
    row exactly one sees rowcount == 1. Returns None for the loser.
    """
    with db.transaction() as conn:
        cur = conn.cursor()
        cur.execute(
            """
            UPDATE alert_queue
            SET status = 'sending', attempts = attempts + 1, claimed_at = ?, claimed_by = ?
            WHERE id = ? AND status = 'pending'
            """,
            (to_db(now), worker_id, item_id),
        )
        won = cur.rowcount == 1
    if not won:
        return None
    return get_item(db, item_id)


def _finish(db: Database, sql: str, params: Tuple) -> bool:
    with db.transaction() as conn:
        cur = conn.cursor()
        cur.execute(sql, params)
        updated = cur.rowcount > 0
    return updated


def mark_item_sent(db: Database, item_id: int, *, now: datetime, note: Optional[str] = None) -> bool:
    return _finish(
        db,
        """
        UPDATE alert_queue
        SET status = 'sent', sent_at = ?, last_error = ?, claimed_by = NULL
        WHERE id = ? AND status = 'sending'
        """,
        (to_db(now), _clip(note), item_id),
    )


def mark_item_retry(db: Database, item_id: int, *, next_attempt_at: datetime, error: str) -> bool:
    return _finish(
        db,
        """
        UPDATE alert_queue
        SET status = 'pending', next_attempt_at = ?, last_error = ?, claimed_at = NULL, claimed_by = NULL
        WHERE id = ? AND status = 'sending'
        """,
        (to_db(next_attempt_at), _clip(error), item_id),
    )


def mark_item_failed(db: Database, item_id: int, *, error: str) -> bool:
    return _finish(
        db,
        """
        UPDATE alert_queue
        SET status = 'failed', last_error = ?, claimed_by = NULL
        WHERE id = ? AND status = 'sending'
        """,
        (_clip(error), item_id),
    )


def requeue_stale_items(db: Database, *, now: datetime, stale_after_seconds: int) -> Tuple[int, int]:
    """
    Recover rows left in `sending` by a crashed worker.

    Rows with attempts left go back to pending (due now); the rest are failed.
    Returns (requeued, failed).
    """
    cutoff = to_db(now - timedelta(seconds=stale_after_seconds))
    with db.transaction() as conn:
        cur = conn.cursor()
        cur.execute(
            """
            UPDATE alert_queue
            SET status = 'failed', last_error = 'stale claim; attempts exhausted', claimed_by = NULL
            WHERE status = 'sending' AND claimed_at < ? AND attempts >= max_attempts
            """,
            (cutoff,),
        )
        failed = cur.rowcount
        cur.execute(
            """
            UPDATE alert_queue
            SET status = 'pending', next_attempt_at = ?, last_error = 'stale claim requeued',
                claimed_at = NULL, claimed_by = NULL
            WHERE status = 'sending' AND claimed_at < ?
            """,
            (to_db(now), cutoff),
        )
        requeued = cur.rowcount

    if requeued or failed:
        log.warning("Recovered stale alert items", extra={"requeued": requeued, "failed": failed})
    return requeued, failed


def retry_failed_item(db: Database, item_id: int, *, now: datetime) -> bool:
    """
    Put a failed row back to pending with a fresh attempt budget.

    Refused (False) when the row is not failed or another live row already
    covers the same (saved search, listing) pair.
    """
    return _finish(
        db,
        """
        UPDATE alert_queue
        SET status = 'pending', attempts = 0, next_attempt_at = ?, last_error = NULL,
            claimed_at = NULL, claimed_by = NULL
        WHERE id = ? AND status = 'failed'
          AND NOT EXISTS (
            SELECT 1 FROM alert_queue other
            WHERE other.saved_search_id = alert_queue.saved_search_id
              AND other.listing_id = alert_queue.listing_id
              AND other.status <> 'failed'
              AND other.id <> alert_queue.id
          )
        """,
        (to_db(now), item_id),
    )


def get_queue_counts(db: Database) -> Dict[str, int]:
    with closing(db.connect()) as conn:
        cur = conn.cursor()
        cur.execute("SELECT status, COUNT(*) AS count FROM alert_queue GROUP BY status")
        rows = cur.fetchall()

    counts = {status: 0 for status in QUEUE_STATUSES}
    for r in rows:
        counts[r["status"]] = int(r["count"])
    return counts


def count_old_items(db: Database, *, older_than_days: int, now: datetime) -> int:
    """Rows `cleanup_old_items` would delete (dry-run)."""
    cutoff = to_db(now - timedelta(days=older_than_days))
    with closing(db.connect()) as conn:
        cur = conn.cursor()
        cur.execute(
            """
            SELECT COUNT(*) AS count FROM alert_queue
            WHERE status IN ('sent', 'failed') AND COALESCE(sent_at, created_at) < ?
            """,
            (cutoff,),
        )
        row = cur.fetchone()
    return int(row["count"]) if row else 0


def cleanup_old_items(db: Database, *, older_than_days: int, now: datetime) -> int:
    """Delete sent and failed rows older than the cutoff. Pending rows are never touched."""
    cutoff = to_db(now - timedelta(days=older_than_days))
    with db.transaction() as conn:
        cur = conn.cursor()
        cur.execute(
            """
            DELETE FROM alert_queue
            WHERE status IN ('sent', 'failed') AND COALESCE(sent_at, created_at) < ?
            """,
            (cutoff,),
        )
        deleted = cur.rowcount
    log.info("Old alert items deleted", extra={"deleted": deleted, "older_than_days": older_than_days})
    return deleted


def get_alert_stats(db: Database, *, now: datetime) -> Dict:
    """Operator summary used by `--stats`."""
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
        active_searches = int(cur.fetchone()["count"])

        cur.execute(
            """
            SELECT status, COUNT(*) AS count FROM alert_queue
            WHERE created_at >= ?
            GROUP BY status
            """,
            (to_db(now - timedelta(hours=24)),),
        )
        last_24h = {status: 0 for status in QUEUE_STATUSES}
        for r in cur.fetchall():
            last_24h[r["status"]] = int(r["count"])

        cur.execute(
            "SELECT COUNT(*) AS count FROM alert_queue WHERE status = 'failed' AND created_at >= ?",
            (to_db(now - timedelta(days=7)),),
        )
        failed_7d = int(cur.fetchone()["count"])

        cur.execute(
            """
            SELECT ss.id, ss.name, u.username, u.email, COUNT(q.id) AS notifications
            FROM saved_searches ss
            JOIN users u ON u.id = ss.user_id
            LEFT JOIN alert_queue q ON q.saved_search_id = ss.id AND q.created_at >= ?
            WHERE ss.is_active = 1 AND ss.notification_enabled = 1
            GROUP BY ss.id, ss.name, u.username, u.email
            ORDER BY notifications DESC, ss.id
            LIMIT 5
            """,
            (to_db(now - timedelta(days=30)),),
        )
        top_searches = cur.fetchall()

    return {
        "active_alert_searches": active_searches,
        "queue": get_queue_counts(db),
        "last_24h": last_24h,
        "failed_last_7d": failed_7d,
        "top_searches": top_searches,
    }


__all__ = [
    "QUEUE_PENDING",
    "QUEUE_SENDING",
    "QUEUE_SENT",
    "QUEUE_FAILED",
    "enqueue_alert_items",
    "list_due_item_ids",
    "count_due_items",
    "get_item",
    "claim_item",
    "mark_item_sent",
    "mark_item_retry",
    "mark_item_failed",
    "requeue_stale_items",
    "retry_failed_item",
    "get_queue_counts",
    "count_old_items",
    "cleanup_old_items",
    "get_alert_stats",
]
