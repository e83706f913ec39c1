import pytest
from starlette.datastructures import QueryParams

from core.config import Settings
from core.errors import ValidationError
from core.search.normalizer import DEFAULT_RADIUS_KM, normalize_query, normalize_text

SETTINGS = Settings()


def _norm(params):
    return normalize_query(params, settings=SETTINGS)


def test_defaults():
    d = _norm({})
    assert d.q == ""
    assert d.sort == "relevance"
    assert d.page == 1
    assert d.page_size == SETTINGS.search_default_page_size
    assert d.conditions == ()


def test_same_descriptor_regardless_of_order_and_case():
    a = _norm(QueryParams("q=iPhone&condition=good&condition=new&min_price=10"))
    b = _norm(QueryParams("min_price=10&condition=new&q=IPHONE&condition=good&condition=good"))
    assert a == b
    assert a.cache_key() == b.cache_key()


@pytest.mark.parametrize(
    "raw,expected",
    [
        ("  Hello   World ", "hello world"),
        ('iphone +pro -max "quoted"', "iphone pro max quoted"),
        ("a(b)c~d*e@f", "a b c d e f"),
        (None, ""),
    ],
)
def test_normalize_text(raw, expected):
    assert normalize_text(raw, 200) == expected


def test_overlong_query_is_truncated():
    d = _norm({"q": "x" * 500})
    assert len(d.q) == SETTINGS.search_max_query_length


def test_conditions_from_brackets_and_commas():
    d = _norm(QueryParams("condition[]=fair&condition=good,new"))
    assert d.conditions == ("fair", "good", "new")


@pytest.mark.parametrize(
    "params,field",
    [
        ({"page": "0"}, "page"),
        ({"page": "abc"}, "page"),
        ({"per_page": "51"}, "per_page"),
        ({"sort": "cheapest"}, "sort"),
        ({"min_price": "-1"}, "min_price"),
        ({"min_price": "100", "max_price": "50"}, "min_price"),
        ({"condition": "broken"}, "condition"),
        ({"lat": "46.0"}, "lng"),
        ({"lat": "91", "lng": "0"}, "lat"),
        ({"lat": "0", "lng": "181"}, "lng"),
        ({"lat": "46", "lng": "14", "radius": "0.5"}, "radius"),
        ({"radius": "5"}, "radius"),
        ({"sort": "distance"}, "sort"),
        ({"featured": "maybe"}, "featured"),
        ({"date_from": "yesterday"}, "date_from"),
        ({"date_from": "2024-05-02", "date_to": "2024-05-01"}, "date_from"),
        ({"category_id": "0"}, "category_id"),
    ],
)
def test_rejects_bad_input_naming_the_field(params, field):
    with pytest.raises(ValidationError) as exc:
        _norm(params)
    assert exc.value.field == field


def test_geo_defaults_radius_and_ignores_location():
    d = _norm({"lat": "46.05", "lng": "14.5", "location": "Ljubljana"})
    assert d.radius_km == DEFAULT_RADIUS_KM
    assert d.has_geo
    assert d.location is None


def test_location_used_without_coordinates():
    d = _norm({"location": "  Ljubljana "})
    assert d.location == "ljubljana"
    assert not d.has_geo


@pytest.mark.parametrize("raw,expected", [("1", True), ("yes", True), ("off", False), ("0", False)])
def test_featured_flag(raw, expected):
    assert _norm({"featured": raw}).featured is expected


def test_bare_date_to_covers_whole_day():
    d = _norm({"date_from": "2024-05-01", "date_to": "2024-05-01"})
    assert d.date_from == "2024-05-01T00:00:00.000000"
    assert d.date_to == "2024-05-01T23:59:59.999999"


def test_aware_datetime_converted_to_utc():
    d = _norm({"date_from": "2024-05-01T12:00:00+02:00"})
    assert d.date_from == "2024-05-01T10:00:00.000000"


def test_unknown_parameters_ignored():
    assert _norm({"utm_source": "mail", "q": "bike"}).q == "bike"


def test_filter_key_ignores_paging_and_sort():
    a = _norm({"q": "bike", "page": "1", "sort": "newest"})
    b = _norm({"q": "bike", "page": "3", "sort": "price_asc"})
    assert a.filter_key() == b.filter_key()
    assert a.cache_key() != b.cache_key()
