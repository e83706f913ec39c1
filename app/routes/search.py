import logging

from fastapi import APIRouter, Query, Request

from app.security import client_key
from core.db.analytics import track_search
from core.errors import RateLimited, StoreUnavailable
from core.search import normalize_query

router = APIRouter(prefix="/api/v1/search", tags=["search"])
log = logging.getLogger(__name__)

_TRUTHY = ("1", "true", "yes")


def _check_rate_limit(request: Request, scope: str) -> None:
    if not request.app.state.rate_limiter.allow(client_key(request, scope)):
        raise RateLimited("Too many requests. Please try again later.")


@router.get("")
def search(request: Request):
    """
    Listing search. Query parameters are validated by the normalizer; `fresh=1`
    skips the result cache (the result is still stored).
    """
    _check_rate_limit(request, "search")
    state = request.app.state

    descriptor = normalize_query(request.query_params, settings=state.settings)
    fresh = (request.query_params.get("fresh") or "").lower() in _TRUTHY

    page = None if fresh else state.cache.get(descriptor)
    cached = page is not None
    if page is None:
        page = state.engine.search(descriptor)
        state.cache.put(descriptor, page)

    if descriptor.q:
        try:
            track_search(
                state.db,
                query=descriptor.q,
                filters=descriptor.filter_dict(),
                results_count=page.total,
                search_time_ms=page.took_ms,
            )
        except StoreUnavailable as e:
            log.warning("Search analytics not recorded", extra={"error": str(e)})

    body = {
        "articles": [hit.to_dict() for hit in page.items],
        "total": page.total,
        "page": page.page,
        "per_page": page.page_size,
        "total_pages": page.total_pages,
        "meta": {
            "query": descriptor.q,
            "search_time_ms": page.took_ms,
            "filters_applied": descriptor.applied_filters(),
            "has_next_page": page.has_next_page,
            "has_prev_page": page.page > 1,
            "sort": descriptor.sort,
            "cached": cached,
        },
    }

    if page.total == 0 and descriptor.q:
        body["suggestions"] = state.suggestions.zero_result_suggestions(descriptor.q)
        body["popular_searches"] = state.suggestions.popular_searches()

    return body


@router.get("/suggestions")
def suggestions(request: Request, q: str = Query("", max_length=200), limit: int = Query(8, ge=1, le=20)):
    _check_rate_limit(request, "suggestions")
    return request.app.state.suggestions.suggest(q, limit)


@router.get("/filters")
def filters(request: Request):
    return request.app.state.suggestions.filter_options()
