from core.db.analytics.analytics_store import (
    get_popular_searches,
    suggest_popular_queries,
    track_search,
)

__all__ = ["track_search", "get_popular_searches", "suggest_popular_queries"]
