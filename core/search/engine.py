"""
Search engine: relevance-ranked, geo-filtered, paginated listing search.

The filter predicate is SQL and shared by every path (count, fetch, alert
matching), so `total` always comes from a COUNT(*) over the same WHERE clause.
Geo radius and the boost multipliers are SQL functions (`core.db.functions`),
which lets browses, distance sorts and boost-only relevance page in SQL. Only
text relevance is scored in Python, over a batched scan of every match.

Every ordering breaks ties on listing id descending, so pages never overlap
or skip items between requests.
"""
from __future__ import annotations

import heapq
import logging
import math
import re
import time
from datetime import datetime
from typing import Callable, Iterator, List, Optional, Sequence, Tuple

from core.clock import to_db, utcnow
from core.config import Settings
from core.db.base import Database
from core.db.functions import EARTH_RADIUS_KM, boost_factor, haversine_km
from core.db.listings import ORDER_BY, count_listings, count_term_documents, escape_like, fetch_listings
from core.models import Listing, QueryDescriptor, ResultPage, SearchHit

log = logging.getLogger(__name__)

KM_PER_DEGREE_LAT = 111.045
MAX_TERMS = 10
MIN_TERM_LENGTH = 2
MIN_PREFIX_LENGTH = 3
BM25_K1 = 1.2

_WORD = re.compile(r"\w+", re.UNICODE)


def tokenize(q: str) -> List[str]:
    """Distinct query terms in order of appearance."""
    terms: List[str] = []
    for term in _WORD.findall(q or ""):
        if len(term) >= MIN_TERM_LENGTH and term not in terms:
            terms.append(term)
        if len(terms) == MAX_TERMS:
            break
    return terms


def bounding_box(lat: float, lng: float, radius_km: float) -> Tuple[Optional[Tuple[float, float]], Optional[Tuple[float, float]]]:
    """
    (lat_range, lng_range) enclosing the radius. A range is None when the box
    would cross a pole or the antimeridian; the haversine check still applies.
    """
    dlat = radius_km / KM_PER_DEGREE_LAT
    lat_min, lat_max = lat - dlat, lat + dlat
    if lat_min < -90 or lat_max > 90:
        return None, None
    dlng = radius_km / (KM_PER_DEGREE_LAT * math.cos(math.radians(lat)))
    lng_min, lng_max = lng - dlng, lng + dlng
    if lng_min < -180 or lng_max > 180:
        return (lat_min, lat_max), None
    return (lat_min, lat_max), (lng_min, lng_max)


def build_predicate(descriptor: QueryDescriptor, *, since: Optional[datetime] = None) -> Tuple[str, List]:
    """WHERE clause and parameters for everything the descriptor filters on."""
    clauses = ["status = 'active'"]
    params: List = []

    if descriptor.category_id is not None:
        clauses.append("category_id = ?")
        params.append(descriptor.category_id)
    if descriptor.min_price is not None:
        clauses.append("price >= ?")
        params.append(descriptor.min_price)
    if descriptor.max_price is not None:
        clauses.append("price <= ?")
        params.append(descriptor.max_price)
    if descriptor.conditions:
        clauses.append(f"condition_type IN ({', '.join('?' for _ in descriptor.conditions)})")
        params.extend(descriptor.conditions)
    if descriptor.date_from is not None:
        clauses.append("created_at >= ?")
        params.append(descriptor.date_from)
    if descriptor.date_to is not None:
        clauses.append("created_at <= ?")
        params.append(descriptor.date_to)
    if descriptor.featured is not None:
        clauses.append("is_featured = ?")
        params.append(1 if descriptor.featured else 0)
    if since is not None:
        clauses.append("created_at > ?")
        params.append(to_db(since))

    if descriptor.has_geo:
        clauses.append("latitude IS NOT NULL AND longitude IS NOT NULL")
        lat_range, lng_range = bounding_box(descriptor.lat, descriptor.lng, descriptor.radius_km)
        if lat_range is not None:
            clauses.append("latitude BETWEEN ? AND ?")
            params.extend(lat_range)
        if lng_range is not None:
            clauses.append("longitude BETWEEN ? AND ?")
            params.extend(lng_range)
        # the box only narrows the scan; the radius is exact
        clauses.append("haversine_km(?, ?, latitude, longitude) <= ?")
        params.extend([float(descriptor.lat), float(descriptor.lng), float(descriptor.radius_km)])
    elif descriptor.location:
        clauses.append("lower(location) LIKE ? ESCAPE '\\'")
        params.append(f"%{escape_like(descriptor.location)}%")

    terms = tokenize(descriptor.q)
    if terms:
        any_term = []
        for term in terms:
            any_term.append("lower(title) LIKE ? ESCAPE '\\' OR lower(description) LIKE ? ESCAPE '\\'")
            pattern = f"%{escape_like(term)}%"
            params.extend([pattern, pattern])
        clauses.append("(" + " OR ".join(any_term) + ")")

    return " AND ".join(clauses), params


def _word_patterns(terms: Sequence[str]) -> List[re.Pattern]:
    """Whole-word matches score extra; the last term also counts as a word prefix."""
    patterns = []
    for i, term in enumerate(terms):
        is_last = i == len(terms) - 1
        if is_last and len(term) >= MIN_PREFIX_LENGTH:
            patterns.append(re.compile(r"\b" + re.escape(term) + r"\w*"))
        else:
            patterns.append(re.compile(r"\b" + re.escape(term) + r"\b"))
    return patterns


class SearchEngine:
    def __init__(self, db: Database, settings: Settings, clock: Callable[[], datetime] = utcnow):
        self.db = db
        self.settings = settings
        self.clock = clock

    # -- scoring -----------------------------------------------------------

    def text_score(
        self,
        listing: Listing,
        terms: Sequence[str],
        patterns: Sequence[re.Pattern],
        idf: Sequence[float],
    ) -> float:
        title = listing.title.lower()
        description = (listing.description or "").lower()
        score = 0.0
        for term, pattern, weight in zip(terms, patterns, idf):
            in_title = title.count(term) + len(pattern.findall(title))
            in_description = description.count(term) + len(pattern.findall(description))
            tf = self.settings.search_title_weight * in_title + in_description
            if tf:
                score += weight * tf * (BM25_K1 + 1) / (tf + BM25_K1)
        return score

    def boost(self, listing: Listing, now: datetime) -> float:
        s = self.settings
        age_days = None
        if listing.created_at is not None:
            age_days = (now - listing.created_at).total_seconds() / 86400.0
        return boost_factor(
            listing.is_featured,
            age_days,
            listing.favorites_count,
            s.search_boost_featured,
            s.search_boost_recency,
            s.search_recency_half_life_days,
            s.search_boost_favorites,
            s.search_favorites_saturation,
        )

    def _idf(self, terms: Sequence[str]) -> List[float]:
        counts = count_term_documents(self.db, terms)
        total = counts.get("", 0)
        return [math.log(1 + (total - counts.get(t, 0) + 0.5) / (counts.get(t, 0) + 0.5)) for t in terms]

    def _distance(self, descriptor: QueryDescriptor, listing: Listing) -> Optional[float]:
        if not descriptor.has_geo:
            return None
        return haversine_km(descriptor.lat, descriptor.lng, listing.latitude, listing.longitude)

    # -- ordering ----------------------------------------------------------

    def ranks_in_python(self, descriptor: QueryDescriptor) -> bool:
        return descriptor.sort == "relevance" and bool(tokenize(descriptor.q))

    def order_clause(self, descriptor: QueryDescriptor) -> Tuple[str, List]:
        """ORDER BY for every sort that SQL can express, with its parameters."""
        if descriptor.sort == "distance":
            return "haversine_km(?, ?, latitude, longitude) ASC, id DESC", [
                float(descriptor.lat),
                float(descriptor.lng),
            ]
        if descriptor.sort == "relevance":
            s = self.settings
            return "listing_boost(is_featured, created_at, favorites_count, ?, ?, ?, ?, ?, ?) DESC, id DESC", [
                to_db(self.clock()),
                float(s.search_boost_featured),
                float(s.search_boost_recency),
                float(s.search_recency_half_life_days),
                float(s.search_boost_favorites),
                float(s.search_favorites_saturation),
            ]
        return ORDER_BY[descriptor.sort], []

    def _scan(self, where: str, params: Sequence) -> Iterator[Listing]:
        """Every listing matching `where`, fetched in id-descending batches."""
        batch = self.settings.search_scan_batch_size
        last_id = None
        while True:
            clause, args = where, list(params)
            if last_id is not None:
                clause = f"{where} AND id < ?"
                args.append(last_id)
            rows = fetch_listings(self.db, clause, args, order="id_desc", limit=batch)
            yield from rows
            if len(rows) < batch:
                return
            last_id = rows[-1].id
            log.debug("Search scan continuing", extra={"after_id": last_id, "batch": batch})

    def _rank_text(self, descriptor: QueryDescriptor, where: str, params: Sequence, keep: int) -> List[SearchHit]:
        """The best `keep` text matches, ordered by score then id descending."""
        terms = tokenize(descriptor.q)
        patterns = _word_patterns(terms)
        idf = self._idf(terms)
        now = self.clock()

        def hits() -> Iterator[SearchHit]:
            for listing in self._scan(where, params):
                text = self.text_score(listing, terms, patterns, idf)
                score = round(text * self.boost(listing, now), 9)
                yield SearchHit(listing=listing, score=score, distance_km=self._distance(descriptor, listing))

        return heapq.nsmallest(keep, hits(), key=lambda h: (-(h.score or 0.0), -h.listing.id))

    # -- public API --------------------------------------------------------

    def search(self, descriptor: QueryDescriptor) -> ResultPage:
        """
        Run one search. Zero matches is an empty page, not an error.
        StoreUnavailable propagates to the caller.
        """
        started = time.perf_counter()
        where, params = build_predicate(descriptor)
        total = count_listings(self.db, where, params)

        items: List[SearchHit] = []
        if total > descriptor.offset:
            if self.ranks_in_python(descriptor):
                ranked = self._rank_text(descriptor, where, params, descriptor.offset + descriptor.page_size)
                items = ranked[descriptor.offset:]
            else:
                order_sql, order_params = self.order_clause(descriptor)
                listings = fetch_listings(
                    self.db,
                    where,
                    params,
                    order_sql=order_sql,
                    order_params=order_params,
                    limit=descriptor.page_size,
                    offset=descriptor.offset,
                )
                items = [SearchHit(listing=l, distance_km=self._distance(descriptor, l)) for l in listings]

        took_ms = round((time.perf_counter() - started) * 1000, 2)
        return ResultPage(
            items=items,
            total=total,
            page=descriptor.page,
            page_size=descriptor.page_size,
            took_ms=took_ms,
        )

    def find_new_matches(self, descriptor: QueryDescriptor, *, since: Optional[datetime]) -> List[Listing]:
        """
        Active listings matching the descriptor created strictly after `since`,
        oldest first. Never cached, never paginated.
        """
        where, params = build_predicate(descriptor, since=since)
        return fetch_listings(self.db, where, params, order="created_asc")


__all__ = ["SearchEngine", "build_predicate", "haversine_km", "bounding_box", "tokenize", "EARTH_RADIUS_KM"]
