"""
Query normalizer: raw request parameters -> QueryDescriptor.

Every check that can reject user input lives here, so the engine only ever
sees well-formed descriptors. Unknown parameters are ignored.
"""
from __future__ import annotations

import re
from datetime import date, datetime, time
from typing import Any, List, Mapping, Optional

from core.clock import to_db
from core.config import Settings
from core.errors import ValidationError
from core.models import CONDITIONS, SORT_MODES, QueryDescriptor

_STRIP_CHARS = re.compile(r'[+\-><()~*"@]')
_SPACES = re.compile(r"\s+")

_TRUE = ("1", "true", "yes", "on")
_FALSE = ("0", "false", "no", "off")

LOCATION_MAX_LENGTH = 100
DEFAULT_RADIUS_KM = 10.0
MIN_RADIUS_KM = 1.0
MAX_RADIUS_KM = 100.0


def _values(params: Mapping[str, Any], key: str) -> List[str]:
    """All values for `key`, whether params is a multi-dict or a plain dict."""
    getlist = getattr(params, "getlist", None)
    if callable(getlist):
        raw = list(getlist(key))
    else:
        value = params.get(key)
        if value is None:
            raw = []
        elif isinstance(value, (list, tuple)):
            raw = list(value)
        else:
            raw = [value]
    return [str(v) for v in raw if v is not None]


def _first(params: Mapping[str, Any], key: str) -> Optional[str]:
    values = _values(params, key)
    if not values:
        return None
    value = values[0].strip()
    return value or None


def normalize_text(raw: Optional[str], max_length: int) -> str:
    if not raw:
        return ""
    text = _STRIP_CHARS.sub(" ", raw.lower())
    text = _SPACES.sub(" ", text).strip()
    return text[:max_length].strip()


def _int(params, key: str, *, default: Optional[int] = None, minimum: Optional[int] = None) -> Optional[int]:
    raw = _first(params, key)
    if raw is None:
        return default
    try:
        value = int(raw)
    except ValueError:
        raise ValidationError(key, "must be an integer")
    if minimum is not None and value < minimum:
        raise ValidationError(key, f"must be at least {minimum}")
    return value


def _float(params, key: str) -> Optional[float]:
    raw = _first(params, key)
    if raw is None:
        return None
    try:
        value = float(raw)
    except ValueError:
        raise ValidationError(key, "must be a number")
    if value != value or value in (float("inf"), float("-inf")):
        raise ValidationError(key, "must be a finite number")
    return value


def _price(params, key: str) -> Optional[float]:
    value = _float(params, key)
    if value is not None and value < 0:
        raise ValidationError(key, "must not be negative")
    return value


def _conditions(params) -> tuple:
    found = set()
    for key in ("condition", "condition[]"):
        for raw in _values(params, key):
            for part in raw.split(","):
                part = part.strip().lower()
                if not part:
                    continue
                if part not in CONDITIONS:
                    raise ValidationError("condition", f"unknown condition: {part}")
                found.add(part)
    return tuple(sorted(found))


def _featured(params) -> Optional[bool]:
    raw = _first(params, "featured")
    if raw is None:
        return None
    raw = raw.lower()
    if raw in _TRUE:
        return True
    if raw in _FALSE:
        return False
    raise ValidationError("featured", "must be one of 1, 0, true, false, yes, no")


def _parse_date(key: str, raw: Optional[str], *, end_of_day: bool) -> Optional[str]:
    if raw is None:
        return None
    try:
        if len(raw) == 10:
            day = date.fromisoformat(raw)
            value = datetime.combine(day, time.max if end_of_day else time.min)
        else:
            value = datetime.fromisoformat(raw.replace("Z", "+00:00"))
    except ValueError:
        raise ValidationError(key, "must be an ISO date (YYYY-MM-DD) or datetime")
    # aware values are converted to naive UTC
    return to_db(value)


def normalize_query(params: Mapping[str, Any], *, settings: Settings) -> QueryDescriptor:
    """
    Validate and canonicalize search parameters.

    Raises ValidationError naming the offending field. The returned descriptor
    is identical for semantically identical input regardless of parameter
    order, casing of the free text or repeated condition values.
    """
    q = normalize_text(_first(params, "q"), settings.search_max_query_length)

    page = _int(params, "page", default=1, minimum=1)
    per_page = _int(params, "per_page", default=settings.search_default_page_size, minimum=1)
    if per_page > settings.search_max_page_size:
        raise ValidationError("per_page", f"must be at most {settings.search_max_page_size}")

    sort = (_first(params, "sort") or "relevance").lower()
    if sort not in SORT_MODES:
        raise ValidationError("sort", f"must be one of {', '.join(SORT_MODES)}")

    category_id = _int(params, "category_id", minimum=1)

    min_price = _price(params, "min_price")
    max_price = _price(params, "max_price")
    if min_price is not None and max_price is not None and min_price > max_price:
        raise ValidationError("min_price", "must not be greater than max_price")

    lat = _float(params, "lat")
    lng = _float(params, "lng")
    if (lat is None) != (lng is None):
        raise ValidationError("lat" if lat is None else "lng", "lat and lng must be given together")
    if lat is not None and not -90 <= lat <= 90:
        raise ValidationError("lat", "must be between -90 and 90")
    if lng is not None and not -180 <= lng <= 180:
        raise ValidationError("lng", "must be between -180 and 180")

    radius = _float(params, "radius")
    if radius is not None:
        if lat is None:
            raise ValidationError("radius", "requires lat and lng")
        if not MIN_RADIUS_KM <= radius <= MAX_RADIUS_KM:
            raise ValidationError("radius", f"must be between {MIN_RADIUS_KM:g} and {MAX_RADIUS_KM:g} km")
    elif lat is not None:
        radius = DEFAULT_RADIUS_KM

    if sort == "distance" and lat is None:
        raise ValidationError("sort", "distance sort requires lat and lng")

    location = None
    if lat is None:
        location = normalize_text(_first(params, "location"), LOCATION_MAX_LENGTH) or None

    date_from = _parse_date("date_from", _first(params, "date_from"), end_of_day=False)
    date_to = _parse_date("date_to", _first(params, "date_to"), end_of_day=True)
    if date_from is not None and date_to is not None and date_from > date_to:
        raise ValidationError("date_from", "must not be after date_to")

    return QueryDescriptor(
        q=q,
        category_id=category_id,
        min_price=min_price,
        max_price=max_price,
        conditions=_conditions(params),
        location=location,
        lat=lat,
        lng=lng,
        radius_km=radius,
        date_from=date_from,
        date_to=date_to,
        featured=_featured(params),
        sort=sort,
        page=page,
        page_size=per_page,
    )


__all__ = ["normalize_query", "normalize_text"]
