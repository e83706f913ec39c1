from core.search.cache import MemoryLRUBackend, NullBackend, RedisBackend, ResultCache, build_cache
from core.search.engine import SearchEngine, build_predicate, haversine_km
from core.search.normalizer import normalize_query
from core.search.suggestions import SuggestionService

__all__ = [
    "normalize_query",
    "ResultCache",
    "MemoryLRUBackend",
    "RedisBackend",
    "NullBackend",
    "build_cache",
    "SearchEngine",
    "build_predicate",
    "haversine_km",
    "SuggestionService",
]
