"""
Scalar SQL functions available on every connection.

The search predicate and orderings call `haversine_km(...)` and
`listing_boost(...)` inside SQL, so the count query, the page query and the
alert matcher all agree on which listings match. Postgres gets them as SQL
functions from `init_db`; SQLite connections register the Python versions
below, which the ranker also calls directly.
"""
from __future__ import annotations

import math
from typing import Optional

from core.clock import from_db

EARTH_RADIUS_KM = 6371.0


def haversine_km(lat1, lng1, lat2, lng2) -> Optional[float]:
    if lat1 is None or lng1 is None or lat2 is None or lng2 is None:
        return None
    p1, p2 = math.radians(lat1), math.radians(lat2)
    dp = p2 - p1
    dl = math.radians(lng2 - lng1)
    a = math.sin(dp / 2) ** 2 + math.cos(p1) * math.cos(p2) * math.sin(dl / 2) ** 2
    return 2 * EARTH_RADIUS_KM * math.asin(min(1.0, math.sqrt(a)))


def boost_factor(
    is_featured,
    age_days: Optional[float],
    favorites: int,
    featured_w: float,
    recency_w: float,
    half_life_days: float,
    favorites_w: float,
    saturation: float,
) -> float:
    """1 + featured, recency and favorites boosts."""
    factor = 1.0
    if is_featured:
        factor += featured_w
    if age_days is not None and half_life_days > 0:
        factor += recency_w * 0.5 ** (max(0.0, age_days) / half_life_days)
    if favorites and favorites > 0 and saturation > 0:
        factor += favorites_w * min(1.0, math.log1p(favorites) / math.log1p(saturation))
    return factor


def listing_boost(
    is_featured,
    created_at,
    favorites,
    now,
    featured_w,
    recency_w,
    half_life_days,
    favorites_w,
    saturation,
) -> float:
    """SQL form of `boost_factor`; timestamps arrive as stored text."""
    created, current = from_db(created_at), from_db(now)
    age_days = None
    if created is not None and current is not None:
        age_days = (current - created).total_seconds() / 86400.0
    return boost_factor(
        is_featured, age_days, favorites or 0, featured_w, recency_w, half_life_days, favorites_w, saturation
    )


def register_sqlite_functions(conn) -> None:
    conn.create_function("haversine_km", 4, haversine_km, deterministic=True)
    conn.create_function("listing_boost", 9, listing_boost, deterministic=True)


POSTGRES_FUNCTIONS = [
    """
    CREATE OR REPLACE FUNCTION haversine_km(
        lat1 DOUBLE PRECISION, lng1 DOUBLE PRECISION, lat2 DOUBLE PRECISION, lng2 DOUBLE PRECISION
    ) RETURNS DOUBLE PRECISION AS $$
        SELECT 2 * 6371.0 * asin(LEAST(1.0, sqrt(
            power(sin(radians(lat2 - lat1) / 2), 2)
            + cos(radians(lat1)) * cos(radians(lat2)) * power(sin(radians(lng2 - lng1) / 2), 2)
        )))
    $$ LANGUAGE SQL IMMUTABLE
    """,
    """
    CREATE OR REPLACE FUNCTION listing_boost(
        featured INTEGER, created_at TEXT, favorites INTEGER, now_at TEXT,
        featured_w DOUBLE PRECISION, recency_w DOUBLE PRECISION, half_life_days DOUBLE PRECISION,
        favorites_w DOUBLE PRECISION, saturation DOUBLE PRECISION
    ) RETURNS DOUBLE PRECISION AS $$
        SELECT 1.0
            + CASE WHEN featured <> 0 THEN featured_w ELSE 0 END
            + CASE WHEN created_at IS NULL OR now_at IS NULL OR half_life_days <= 0 THEN 0
                   ELSE recency_w * power(0.5, GREATEST(0.0,
                        EXTRACT(EPOCH FROM (now_at::timestamp - created_at::timestamp))::double precision / 86400.0
                   ) / half_life_days) END
            + CASE WHEN favorites > 0 AND saturation > 0
                   THEN favorites_w * LEAST(1.0, ln(1.0 + favorites) / ln(1.0 + saturation))
                   ELSE 0 END
    $$ LANGUAGE SQL IMMUTABLE
    """,
]


__all__ = [
    "EARTH_RADIUS_KM",
    "POSTGRES_FUNCTIONS",
    "boost_factor",
    "haversine_km",
    "listing_boost",
    "register_sqlite_functions",
]
