"""
Error taxonomy shared by the search and alerting code.
"""
from __future__ import annotations


class SearchServiceError(Exception):
    """Base class for errors raised by this service."""

    code = "error"


class ValidationError(SearchServiceError):
    """Bad user input, rejected before it reaches the search engine."""

    code = "validation_error"

    def __init__(self, field: str, message: str):
        super().__init__(f"{field}: {message}")
        self.field = field
        self.message = message

    def to_dict(self) -> dict:
        return {"error": self.code, "field": self.field, "message": self.message}


class StoreUnavailable(SearchServiceError):
    """The database could not be reached. Retryable by the caller."""

    code = "store_unavailable"


class Unauthorized(SearchServiceError):
    """No valid session for an endpoint that needs an owner."""

    code = "unauthorized"


class RateLimited(SearchServiceError):
    code = "rate_limited"


class NotFound(SearchServiceError):
    code = "not_found"


class Forbidden(SearchServiceError):
    code = "forbidden"


class DeliveryFailure(SearchServiceError):
    """The mail transport did not accept a message (includes timeouts)."""

    code = "delivery_failure"


class CacheUnavailable(SearchServiceError):
    """Raised by cache backends; the result cache turns it into a miss."""

    code = "cache_unavailable"


__all__ = [
    "SearchServiceError",
    "ValidationError",
    "StoreUnavailable",
    "Unauthorized",
    "RateLimited",
    "NotFound",
    "Forbidden",
    "DeliveryFailure",
    "CacheUnavailable",
]
