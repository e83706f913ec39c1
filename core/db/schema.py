"""
Schema helpers for Postgres and SQLite.
"""
from __future__ import annotations

from core.db.base import POSTGRES, SQLITE, Database
from core.db.functions import POSTGRES_FUNCTIONS

_TYPES = {
    POSTGRES: {"pk": "SERIAL PRIMARY KEY", "float": "DOUBLE PRECISION"},
    SQLITE: {"pk": "INTEGER PRIMARY KEY AUTOINCREMENT", "float": "REAL"},
}

_TABLES = [
    """
    CREATE TABLE IF NOT EXISTS users(
        id {pk},
        email TEXT NOT NULL UNIQUE,
        username TEXT,
        status TEXT NOT NULL DEFAULT 'active',
        created_at TEXT
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS sessions(
        id TEXT PRIMARY KEY,
        user_id INTEGER NOT NULL,
        created_at TEXT NOT NULL,
        last_seen_at TEXT NOT NULL,
        expires_at TEXT NOT NULL,
        FOREIGN KEY(user_id) REFERENCES users(id)
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS categories(
        id {pk},
        name TEXT NOT NULL,
        slug TEXT NOT NULL UNIQUE,
        is_active INTEGER NOT NULL DEFAULT 1,
        sort_order INTEGER NOT NULL DEFAULT 0
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS listings(
        id {pk},
        user_id INTEGER,
        title TEXT NOT NULL,
        description TEXT NOT NULL DEFAULT '',
        price {float} NOT NULL DEFAULT 0,
        currency TEXT NOT NULL DEFAULT 'EUR',
        condition_type TEXT,
        status TEXT NOT NULL DEFAULT 'active',
        category_id INTEGER,
        location TEXT,
        latitude {float},
        longitude {float},
        created_at TEXT NOT NULL,
        is_featured INTEGER NOT NULL DEFAULT 0,
        favorites_count INTEGER NOT NULL DEFAULT 0
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS saved_searches(
        id {pk},
        user_id INTEGER NOT NULL,
        name TEXT NOT NULL,
        filters TEXT NOT NULL,
        filter_key TEXT NOT NULL,
        notification_enabled INTEGER NOT NULL DEFAULT 1,
        is_active INTEGER NOT NULL DEFAULT 1,
        last_notified_at TEXT,
        lease_owner TEXT,
        lease_expires_at TEXT,
        created_at TEXT NOT NULL,
        updated_at TEXT,
        FOREIGN KEY(user_id) REFERENCES users(id) ON DELETE CASCADE
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS alert_queue(
        id {pk},
        saved_search_id INTEGER NOT NULL,
        user_id INTEGER NOT NULL,
        listing_id INTEGER NOT NULL,
        status TEXT NOT NULL DEFAULT 'pending',
        attempts INTEGER NOT NULL DEFAULT 0,
        max_attempts INTEGER NOT NULL DEFAULT 3,
        next_attempt_at TEXT NOT NULL,
        claimed_at TEXT,
        claimed_by TEXT,
        created_at TEXT NOT NULL,
        sent_at TEXT,
        last_error TEXT,
        FOREIGN KEY(saved_search_id) REFERENCES saved_searches(id) ON DELETE CASCADE,
        FOREIGN KEY(user_id) REFERENCES users(id) ON DELETE CASCADE
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS search_analytics(
        id {pk},
        query TEXT NOT NULL DEFAULT '',
        filters TEXT,
        results_count INTEGER NOT NULL DEFAULT 0,
        search_time_ms {float},
        created_at TEXT NOT NULL
    )
    """,
]

_INDEXES = [
    "CREATE INDEX IF NOT EXISTS idx_listings_status_created ON listings(status, created_at)",
    "CREATE INDEX IF NOT EXISTS idx_listings_category ON listings(category_id)",
    "CREATE INDEX IF NOT EXISTS idx_listings_price ON listings(price)",
    "CREATE INDEX IF NOT EXISTS idx_saved_searches_user ON saved_searches(user_id)",
    "CREATE INDEX IF NOT EXISTS idx_alert_queue_due ON alert_queue(status, next_attempt_at)",
    "CREATE INDEX IF NOT EXISTS idx_alert_queue_saved_search ON alert_queue(saved_search_id)",
    # at most one live (non-failed) notification per (saved search, listing)
    """
    CREATE UNIQUE INDEX IF NOT EXISTS uq_alert_queue_live_pair
    ON alert_queue(saved_search_id, listing_id)
    WHERE status <> 'failed'
    """,
    "CREATE INDEX IF NOT EXISTS idx_search_analytics_query ON search_analytics(query)",
    "CREATE INDEX IF NOT EXISTS idx_search_analytics_created ON search_analytics(created_at)",
]


def init_db(db: Database) -> None:
    """Create all tables and indexes if they don't exist."""
    types = _TYPES[db.dialect]
    with db.transaction() as conn:
        cur = conn.cursor()

        if db.dialect == SQLITE:
            cur.execute("PRAGMA journal_mode=WAL")

        for ddl in _TABLES:
            cur.execute(ddl.format(**types))
        for ddl in _INDEXES:
            cur.execute(ddl)
        if db.dialect == POSTGRES:
            for ddl in POSTGRES_FUNCTIONS:
                cur.execute(ddl)



__all__ = ["init_db"]
