"""
Autocomplete, popular searches, filter facets and "did you mean" hints for
empty result pages. All of it is cached under its own TTL class.
"""
from __future__ import annotations

import hashlib
from typing import Dict, List

from core.db.analytics import get_popular_searches, suggest_popular_queries
from core.db.base import Database
from core.db.listings import get_filter_facets, suggest_category_names, suggest_titles
from core.search.cache import ResultCache
from core.search.engine import tokenize
from core.search.normalizer import normalize_text

MIN_SUGGEST_LENGTH = 2
DEFAULT_SUGGEST_LIMIT = 8
MAX_SUGGEST_LIMIT = 20
POPULAR_LIMIT = 5

SORT_OPTIONS = [
    {"value": "relevance", "label": "Relevance"},
    {"value": "newest", "label": "Newest first"},
    {"value": "price_asc", "label": "Price: low to high"},
    {"value": "price_desc", "label": "Price: high to low"},
    {"value": "distance", "label": "Distance"},
    {"value": "popular", "label": "Most popular"},
]


def _key(prefix: str, *parts) -> str:
    raw = "|".join(str(p) for p in parts)
    return f"{prefix}:{hashlib.md5(raw.encode('utf-8')).hexdigest()}"


class SuggestionService:
    def __init__(self, db: Database, cache: ResultCache, max_query_length: int = 200):
        self.db = db
        self.cache = cache
        self.max_query_length = max_query_length

    def popular_searches(self, limit: int = POPULAR_LIMIT) -> List[Dict]:
        return self.cache.cached_json(
            _key("popular", limit),
            "popular",
            lambda: get_popular_searches(self.db, limit=limit),
        )

    def suggest(self, q: str, limit: int = DEFAULT_SUGGEST_LIMIT) -> Dict:
        """Completions for a partial query plus the current popular searches."""
        limit = max(1, min(int(limit), MAX_SUGGEST_LIMIT))
        text = normalize_text(q, self.max_query_length)

        suggestions: List[str] = []
        if len(text) >= MIN_SUGGEST_LENGTH:
            suggestions = self.cache.cached_json(
                _key("suggest", text, limit),
                "suggestions",
                lambda: self._completions(text, limit),
            )
        return {"suggestions": suggestions, "popular_searches": self.popular_searches()}

    def _completions(self, text: str, limit: int) -> List[str]:
        found: List[str] = []
        seen = set()
        sources = (
            suggest_popular_queries(self.db, text, limit=limit),
            suggest_titles(self.db, text, limit),
            suggest_category_names(self.db, text, limit),
        )
        for source in sources:
            for value in source:
                folded = value.strip().lower()
                if folded and folded not in seen:
                    seen.add(folded)
                    found.append(value.strip())
                if len(found) >= limit:
                    return found
        return found

    def zero_result_suggestions(self, q: str, limit: int = 5) -> List[str]:
        """Titles close to the individual terms of a query that found nothing."""
        found: List[str] = []
        for term in tokenize(q):
            if len(term) < 3:
                continue
            for title in suggest_titles(self.db, term[:3], limit):
                if title not in found:
                    found.append(title)
            if len(found) >= limit:
                break
        return found[:limit]

    def filter_options(self) -> Dict:
        def compute() -> Dict:
            facets = get_filter_facets(self.db)
            facets["sort_options"] = SORT_OPTIONS
            return facets

        return self.cache.cached_json("facets:filters", "facets", compute)


__all__ = ["SuggestionService", "SORT_OPTIONS", "MAX_SUGGEST_LIMIT", "DEFAULT_SUGGEST_LIMIT"]
