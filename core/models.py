"""
Typed records for search and alerting.

Rows come out of the stores as dicts; everything past the store boundary works
with these records instead.
"""
from __future__ import annotations

import hashlib
import json
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, List, Optional, Tuple

from core.clock import from_db, to_db

SORT_MODES = ("relevance", "newest", "price_asc", "price_desc", "distance", "popular")
CONDITIONS = ("new", "like_new", "good", "fair", "poor")
LISTING_STATUSES = ("draft", "active", "sold", "expired", "suspended")

QUEUE_PENDING = "pending"
QUEUE_SENDING = "sending"
QUEUE_SENT = "sent"
QUEUE_FAILED = "failed"
QUEUE_STATUSES = (QUEUE_PENDING, QUEUE_SENDING, QUEUE_SENT, QUEUE_FAILED)

MAX_PAGE_SIZE = 50
SAVED_SEARCH_NAME_MAX = 100


@dataclass(frozen=True)
class QueryDescriptor:
    """
    Normalized, hashable search request.

    Build it with `core.search.normalizer.normalize_query`; the constructor only
    re-checks invariants that every descriptor must satisfy.
    """

    q: str = ""
    category_id: Optional[int] = None
    min_price: Optional[float] = None
    max_price: Optional[float] = None
    conditions: Tuple[str, ...] = ()
    location: Optional[str] = None
    lat: Optional[float] = None
    lng: Optional[float] = None
    radius_km: Optional[float] = None
    date_from: Optional[str] = None
    date_to: Optional[str] = None
    featured: Optional[bool] = None
    sort: str = "relevance"
    page: int = 1
    page_size: int = 20

    def __post_init__(self):
        if self.sort not in SORT_MODES:
            raise ValueError(f"unknown sort mode: {self.sort}")
        if self.page < 1:
            raise ValueError("page must be >= 1")
        if not 1 <= self.page_size <= MAX_PAGE_SIZE:
            raise ValueError(f"page_size must be between 1 and {MAX_PAGE_SIZE}")
        if tuple(sorted(set(self.conditions))) != tuple(self.conditions):
            object.__setattr__(self, "conditions", tuple(sorted(set(self.conditions))))
        if (self.lat is None) != (self.lng is None):
            raise ValueError("lat and lng must be given together")

    @property
    def has_geo(self) -> bool:
        return self.lat is not None and self.lng is not None and self.radius_km is not None

    @property
    def offset(self) -> int:
        return (self.page - 1) * self.page_size

    def to_dict(self) -> Dict[str, Any]:
        return {
            "q": self.q,
            "category_id": self.category_id,
            "min_price": self.min_price,
            "max_price": self.max_price,
            "conditions": list(self.conditions),
            "location": self.location,
            "lat": self.lat,
            "lng": self.lng,
            "radius_km": self.radius_km,
            "date_from": self.date_from,
            "date_to": self.date_to,
            "featured": self.featured,
            "sort": self.sort,
            "page": self.page,
            "page_size": self.page_size,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "QueryDescriptor":
        known = {k: v for k, v in data.items() if k in cls.__dataclass_fields__}
        known["conditions"] = tuple(known.get("conditions") or ())
        known["q"] = known.get("q") or ""
        return cls(**known)

    def filter_dict(self) -> Dict[str, Any]:
        """Everything that decides *which* listings match (no paging or order)."""
        data = self.to_dict()
        for key in ("sort", "page", "page_size"):
            data.pop(key)
        return data

    def applied_filters(self) -> List[str]:
        """Names of the filters that are actually set, for response metadata."""
        names = []
        for key, value in self.filter_dict().items():
            if key == "q":
                continue
            if value is None or value == [] or value == "":
                continue
            names.append(key)
        return names

    def cache_key(self) -> str:
        return _stable_hash(self.to_dict())

    def filter_key(self) -> str:
        return _stable_hash(self.filter_dict())


def _stable_hash(data: Dict[str, Any]) -> str:
    payload = json.dumps(data, sort_keys=True, separators=(",", ":"), default=str)
    return hashlib.sha256(payload.encode("utf-8")).hexdigest()


@dataclass(frozen=True)
class Listing:
    id: int
    title: str
    description: str = ""
    price: float = 0.0
    currency: str = "EUR"
    condition: Optional[str] = None
    status: str = "active"
    category_id: Optional[int] = None
    location: Optional[str] = None
    latitude: Optional[float] = None
    longitude: Optional[float] = None
    created_at: Optional[datetime] = None
    is_featured: bool = False
    favorites_count: int = 0

    def __post_init__(self):
        if self.status not in LISTING_STATUSES:
            raise ValueError(f"unknown listing status: {self.status}")

    @property
    def is_active(self) -> bool:
        return self.status == "active"

    @property
    def has_coordinates(self) -> bool:
        return self.latitude is not None and self.longitude is not None

    @classmethod
    def from_row(cls, row: Dict[str, Any]) -> "Listing":
        return cls(
            id=int(row["id"]),
            title=row.get("title") or "",
            description=row.get("description") or "",
            price=float(row.get("price") or 0),
            currency=row.get("currency") or "EUR",
            condition=row.get("condition_type"),
            status=row.get("status") or "active",
            category_id=row.get("category_id"),
            location=row.get("location"),
            latitude=None if row.get("latitude") is None else float(row["latitude"]),
            longitude=None if row.get("longitude") is None else float(row["longitude"]),
            created_at=from_db(row.get("created_at")),
            is_featured=bool(row.get("is_featured")),
            favorites_count=int(row.get("favorites_count") or 0),
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "title": self.title,
            "description": self.description,
            "price": self.price,
            "currency": self.currency,
            "condition": self.condition,
            "status": self.status,
            "category_id": self.category_id,
            "location": self.location,
            "latitude": self.latitude,
            "longitude": self.longitude,
            "created_at": to_db(self.created_at),
            "is_featured": self.is_featured,
            "favorites_count": self.favorites_count,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Listing":
        row = dict(data)
        row["condition_type"] = row.pop("condition", None)
        return cls.from_row(row)


@dataclass(frozen=True)
class SearchHit:
    listing: Listing
    score: Optional[float] = None
    distance_km: Optional[float] = None

    def to_dict(self) -> Dict[str, Any]:
        data = self.listing.to_dict()
        data["formatted_price"] = f"{self.listing.price:,.2f} {self.listing.currency}"
        data["distance_km"] = None if self.distance_km is None else round(self.distance_km, 3)
        if self.distance_km is not None:
            data["formatted_distance"] = f"{self.distance_km:.1f} km"
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "SearchHit":
        return cls(listing=Listing.from_dict(data), distance_km=data.get("distance_km"))


@dataclass(frozen=True)
class ResultPage:
    items: List[SearchHit] = field(default_factory=list)
    total: int = 0
    page: int = 1
    page_size: int = 20
    took_ms: float = 0.0

    @property
    def total_pages(self) -> int:
        if self.total <= 0:
            return 0
        return -(-self.total // self.page_size)

    @property
    def has_next_page(self) -> bool:
        return self.page * self.page_size < self.total

    @property
    def listing_ids(self) -> List[int]:
        return [hit.listing.id for hit in self.items]

    def to_dict(self) -> Dict[str, Any]:
        return {
            "items": [hit.to_dict() for hit in self.items],
            "total": self.total,
            "page": self.page,
            "page_size": self.page_size,
            "took_ms": self.took_ms,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ResultPage":
        return cls(
            items=[SearchHit.from_dict(item) for item in data.get("items") or []],
            total=int(data.get("total") or 0),
            page=int(data.get("page") or 1),
            page_size=int(data.get("page_size") or 20),
            took_ms=float(data.get("took_ms") or 0.0),
        )


@dataclass(frozen=True)
class SavedSearch:
    id: int
    user_id: int
    name: str
    descriptor: QueryDescriptor
    notification_enabled: bool = True
    is_active: bool = True
    last_notified_at: Optional[datetime] = None
    created_at: Optional[datetime] = None
    lease_owner: Optional[str] = None
    lease_expires_at: Optional[datetime] = None

    def __post_init__(self):
        name = (self.name or "").strip()
        if not 1 <= len(name) <= SAVED_SEARCH_NAME_MAX:
            raise ValueError(f"saved search name must be 1-{SAVED_SEARCH_NAME_MAX} characters")

    @classmethod
    def from_row(cls, row: Dict[str, Any]) -> "SavedSearch":
        raw = row.get("filters") or "{}"
        data = json.loads(raw) if isinstance(raw, str) else dict(raw)
        return cls(
            id=int(row["id"]),
            user_id=int(row["user_id"]),
            name=row.get("name") or "",
            descriptor=QueryDescriptor.from_dict(data),
            notification_enabled=bool(row.get("notification_enabled")),
            is_active=bool(row.get("is_active", 1)),
            last_notified_at=from_db(row.get("last_notified_at")),
            created_at=from_db(row.get("created_at")),
            lease_owner=row.get("lease_owner"),
            lease_expires_at=from_db(row.get("lease_expires_at")),
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "user_id": self.user_id,
            "name": self.name,
            "filters": self.descriptor.filter_dict(),
            "email_alerts": self.notification_enabled,
            "last_notified_at": to_db(self.last_notified_at),
            "created_at": to_db(self.created_at),
        }


@dataclass(frozen=True)
class AlertQueueItem:
    id: int
    saved_search_id: int
    user_id: int
    listing_id: int
    status: str = QUEUE_PENDING
    attempts: int = 0
    max_attempts: int = 3
    next_attempt_at: Optional[datetime] = None
    claimed_at: Optional[datetime] = None
    claimed_by: Optional[str] = None
    created_at: Optional[datetime] = None
    sent_at: Optional[datetime] = None
    last_error: Optional[str] = None

    def __post_init__(self):
        if self.status not in QUEUE_STATUSES:
            raise ValueError(f"unknown queue status: {self.status}")
        if self.attempts < 0 or self.max_attempts < 1:
            raise ValueError("attempts must be >= 0 and max_attempts >= 1")

    @property
    def attempts_exhausted(self) -> bool:
        return self.attempts >= self.max_attempts

    @classmethod
    def from_row(cls, row: Dict[str, Any]) -> "AlertQueueItem":
        return cls(
            id=int(row["id"]),
            saved_search_id=int(row["saved_search_id"]),
            user_id=int(row["user_id"]),
            listing_id=int(row["listing_id"]),
            status=row["status"],
            attempts=int(row.get("attempts") or 0),
            max_attempts=int(row.get("max_attempts") or 3),
            next_attempt_at=from_db(row.get("next_attempt_at")),
            claimed_at=from_db(row.get("claimed_at")),
            claimed_by=row.get("claimed_by"),
            created_at=from_db(row.get("created_at")),
            sent_at=from_db(row.get("sent_at")),
            last_error=row.get("last_error"),
        )


__all__ = [
    "SORT_MODES",
    "CONDITIONS",
    "LISTING_STATUSES",
    "QUEUE_PENDING",
    "QUEUE_SENDING",
    "QUEUE_SENT",
    "QUEUE_FAILED",
    "QUEUE_STATUSES",
    "MAX_PAGE_SIZE",
    "QueryDescriptor",
    "Listing",
    "SearchHit",
    "ResultPage",
    "SavedSearch",
    "AlertQueueItem",
]
