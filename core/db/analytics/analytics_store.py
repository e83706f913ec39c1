"""
Search analytics: one row per non-empty search, aggregated into popular
searches and query completions.
"""
from __future__ import annotations

import json
from contextlib import closing
from datetime import datetime, timedelta
from typing import Dict, List, Optional

from core.clock import to_db, utcnow
from core.db.base import Database
from core.db.listings.listings_store import escape_like


def track_search(
    db: Database,
    *,
    query: str,
    filters: Dict,
    results_count: int,
    search_time_ms: float,
    now: Optional[datetime] = None,
) -> None:
    with db.transaction() as conn:
        cur = conn.cursor()
        cur.execute(
            """
            INSERT INTO search_analytics (query, filters, results_count, search_time_ms, created_at)
            VALUES (?, ?, ?, ?, ?)
            """,
            (
                query,
                json.dumps(filters, sort_keys=True, default=str),
                int(results_count),
                float(search_time_ms),
                to_db(now or utcnow()),
            ),
        )


def get_popular_searches(db: Database, *, limit: int = 10, days: int = 7, now: Optional[datetime] = None) -> List[Dict]:
    """Most frequent queries that returned results, as [{"query", "count"}]."""
    since = to_db((now or utcnow()) - timedelta(days=days))
    with closing(db.connect()) as conn:
        cur = conn.cursor()
        cur.execute(
            """
            SELECT query, COUNT(*) AS count
            FROM search_analytics
            WHERE created_at >= ? AND query <> '' AND results_count > 0
            GROUP BY query
            ORDER BY count DESC, query
            LIMIT ?
            """,
            (since, int(limit)),
        )
        rows = cur.fetchall()
    return [{"query": r["query"], "count": int(r["count"])} for r in rows]


def suggest_popular_queries(
    db: Database, prefix: str, *, limit: int, days: int = 30, now: Optional[datetime] = None
) -> List[str]:
    since = to_db((now or utcnow()) - timedelta(days=days))
    with closing(db.connect()) as conn:
        cur = conn.cursor()
        cur.execute(
            """
            SELECT query, COUNT(*) AS count
            FROM search_analytics
            WHERE created_at >= ? AND query LIKE ? ESCAPE '\\' AND results_count > 0
            GROUP BY query
            ORDER BY count DESC, query
            LIMIT ?
            """,
            (since, f"{escape_like(prefix.lower())}%", int(limit)),
        )
        rows = cur.fetchall()
    return [r["query"] for r in rows]


__all__ = ["track_search", "get_popular_searches", "suggest_popular_queries"]
