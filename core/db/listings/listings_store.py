"""
Read side of the listing store (plus an insert helper for seeding and tests).

Listings are owned by the marketplace CRUD code; the search core only reads
them. WHERE clauses passed in here are built by `core.search.engine` from a
fixed set of fragments; user input only ever travels as parameters.
"""
from __future__ import annotations

from contextlib import closing
from datetime import datetime
from typing import Dict, List, Optional, Sequence

from core.clock import to_db, utcnow
from core.db.base import Database
from core.models import Listing

LISTING_COLUMNS = """
    id, title, description, price, currency, condition_type, status, category_id,
    location, latitude, longitude, created_at, is_featured, favorites_count
"""

ORDER_BY = {
    "newest": "created_at DESC, id DESC",
    "price_asc": "price ASC, id DESC",
    "price_desc": "price DESC, id DESC",
    "popular": "favorites_count DESC, id DESC",
    "created_asc": "created_at ASC, id ASC",
    "id_desc": "id DESC",
}


def escape_like(value: str) -> str:
    return value.replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_")


def insert_listing(
    db: Database,
    *,
    title: str,
    description: str = "",
    price: float = 0.0,
    currency: str = "EUR",
    condition: Optional[str] = None,
    status: str = "active",
    category_id: Optional[int] = None,
    location: Optional[str] = None,
    latitude: Optional[float] = None,
    longitude: Optional[float] = None,
    created_at: Optional[datetime] = None,
    is_featured: bool = False,
    favorites_count: int = 0,
    user_id: Optional[int] = None,
) -> int:
    with db.transaction() as conn:
        cur = conn.cursor()
        cur.execute(
            """
            INSERT INTO listings
              (user_id, title, description, price, currency, condition_type, status, category_id,
               location, latitude, longitude, created_at, is_featured, favorites_count)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            RETURNING id
            """,
            (
                user_id,
                title,
                description,
                float(price),
                currency,
                condition,
                status,
                category_id,
                location,
                latitude,
                longitude,
                to_db(created_at or utcnow()),
                int(bool(is_featured)),
                int(favorites_count),
            ),
        )
        listing_id = int(cur.fetchone()["id"])
    return listing_id


def set_listing_status(db: Database, listing_id: int, status: str) -> None:
    with db.transaction() as conn:
        cur = conn.cursor()
        cur.execute("UPDATE listings SET status = ? WHERE id = ?", (status, listing_id))


def get_listing(db: Database, listing_id: int) -> Optional[Listing]:
    with closing(db.connect()) as conn:
        cur = conn.cursor()
        cur.execute(f"SELECT {LISTING_COLUMNS} FROM listings WHERE id = ?", (listing_id,))
        row = cur.fetchone()
    return Listing.from_row(row) if row else None


def count_listings(db: Database, where: str, params: Sequence) -> int:
    with closing(db.connect()) as conn:
        cur = conn.cursor()
        cur.execute(f"SELECT COUNT(*) AS count FROM listings WHERE {where}", params)
        row = cur.fetchone()
    return int(row["count"]) if row else 0


def fetch_listings(
    db: Database,
    where: str,
    params: Sequence,
    *,
    order: str = "newest",
    order_sql: Optional[str] = None,
    order_params: Sequence = (),
    limit: Optional[int] = None,
    offset: int = 0,
) -> List[Listing]:
    """`order_sql` (with its own parameters) replaces the named `order` when given."""
    sql = f"SELECT {LISTING_COLUMNS} FROM listings WHERE {where} ORDER BY {order_sql or ORDER_BY[order]}"
    args = list(params) + list(order_params)
    if limit is not None:
        sql += " LIMIT ? OFFSET ?"
        args.extend([int(limit), int(offset)])

    with closing(db.connect()) as conn:
        cur = conn.cursor()
        cur.execute(sql, args)
        rows = cur.fetchall()
    return [Listing.from_row(r) for r in rows]


def count_term_documents(db: Database, terms: Sequence[str]) -> Dict[str, int]:
    """
    Document frequency per term over active listings, plus the corpus size
    under the key "" (used for IDF).
    """
    with closing(db.connect()) as conn:
        cur = conn.cursor()
        cur.execute("SELECT COUNT(*) AS count FROM listings WHERE status = 'active'")
        counts = {"": int(cur.fetchone()["count"])}
        for term in terms:
            pattern = f"%{escape_like(term)}%"
            cur.execute(
                """
                SELECT COUNT(*) AS count FROM listings
                WHERE status = 'active'
                  AND (lower(title) LIKE ? ESCAPE '\\' OR lower(description) LIKE ? ESCAPE '\\')
                """,
                (pattern, pattern),
            )
            counts[term] = int(cur.fetchone()["count"])
    return counts


def suggest_titles(db: Database, prefix: str, limit: int) -> List[str]:
    """Active listing titles containing `prefix`; titles starting with it first."""
    contains = f"%{escape_like(prefix.lower())}%"
    starts = f"{escape_like(prefix.lower())}%"
    with closing(db.connect()) as conn:
        cur = conn.cursor()
        cur.execute(
            """
            SELECT title, MIN(CASE WHEN lower(title) LIKE ? ESCAPE '\\' THEN 1 ELSE 2 END) AS title_rank,
                   MAX(favorites_count) AS favorites
            FROM listings
            WHERE status = 'active'
              AND (lower(title) LIKE ? ESCAPE '\\' OR lower(description) LIKE ? ESCAPE '\\')
            GROUP BY title
            ORDER BY title_rank, favorites DESC, title
            LIMIT ?
            """,
            (starts, contains, contains, int(limit)),
        )
        rows = cur.fetchall()
    return [r["title"] for r in rows]


def suggest_category_names(db: Database, prefix: str, limit: int) -> List[str]:
    contains = f"%{escape_like(prefix.lower())}%"
    starts = f"{escape_like(prefix.lower())}%"
    with closing(db.connect()) as conn:
        cur = conn.cursor()
        cur.execute(
            """
            SELECT name FROM categories
            WHERE is_active = 1 AND lower(name) LIKE ? ESCAPE '\\'
            ORDER BY CASE WHEN lower(name) LIKE ? ESCAPE '\\' THEN 1 ELSE 2 END, name
            LIMIT ?
            """,
            (contains, starts, int(limit)),
        )
        rows = cur.fetchall()
    return [r["name"] for r in rows]


def insert_category(db: Database, name: str, slug: str, sort_order: int = 0) -> int:
    with db.transaction() as conn:
        cur = conn.cursor()
        cur.execute(
            "INSERT INTO categories (name, slug, is_active, sort_order) VALUES (?, ?, 1, ?) RETURNING id",
            (name, slug, sort_order),
        )
        category_id = int(cur.fetchone()["id"])
    return category_id


def get_filter_facets(db: Database, *, min_location_count: int = 5) -> Dict:
    """Aggregates that populate the filter UI (category/condition counts etc.)."""
    with closing(db.connect()) as conn:
        cur = conn.cursor()

        cur.execute(
            """
            SELECT c.id, c.name, c.slug, COUNT(l.id) AS article_count
            FROM categories c
            LEFT JOIN listings l ON l.category_id = c.id AND l.status = 'active'
            WHERE c.is_active = 1
            GROUP BY c.id, c.name, c.slug, c.sort_order
            ORDER BY c.sort_order, c.name
            """
        )
        categories = cur.fetchall()

        cur.execute(
            """
            SELECT MIN(price) AS min_price, MAX(price) AS max_price, AVG(price) AS avg_price,
                   COUNT(*) AS total_articles
            FROM listings
            WHERE status = 'active' AND price > 0
            """
        )
        row = cur.fetchone() or {}
        price_range = {
            key: (None if row.get(key) is None else float(row[key]))
            for key in ("min_price", "max_price", "avg_price")
        }
        price_range["total_articles"] = int(row.get("total_articles") or 0)

        cur.execute(
            """
            SELECT condition_type, COUNT(*) AS count
            FROM listings
            WHERE status = 'active' AND condition_type IS NOT NULL
            GROUP BY condition_type
            """
        )
        conditions = cur.fetchall()

        cur.execute(
            """
            SELECT location, COUNT(*) AS count
            FROM listings
            WHERE status = 'active' AND location IS NOT NULL AND location <> ''
            GROUP BY location
            HAVING COUNT(*) >= ?
            ORDER BY count DESC, location
            LIMIT 20
            """,
            (int(min_location_count),),
        )
        locations = cur.fetchall()

    return {
        "categories": categories,
        "price_range": price_range,
        "conditions": conditions,
        "popular_locations": locations,
    }


__all__ = [
    "ORDER_BY",
    "escape_like",
    "insert_listing",
    "set_listing_status",
    "get_listing",
    "count_listings",
    "fetch_listings",
    "count_term_documents",
    "suggest_titles",
    "suggest_category_names",
    "insert_category",
    "get_filter_facets",
]
