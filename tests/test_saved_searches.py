import logging
from datetime import datetime, timedelta

import pytest

from core.db.saved_searches import (
    acquire_match_lease,
    advance_watermark,
    complete_match_pass,
    count_alert_enabled_searches,
    create_saved_search,
    delete_saved_search,
    get_due_saved_searches,
    get_saved_search,
    list_saved_searches,
    release_match_lease,
    set_notifications,
)
from core.db.users import create_user, set_user_status
from core.errors import Forbidden, NotFound, ValidationError
from core.search import normalize_query

T0 = datetime(2024, 5, 1, 12, 0, 0)


@pytest.fixture
def descriptor(settings):
    return normalize_query({"q": "iPhone", "max_price": "800"}, settings=settings)


@pytest.fixture
def saved_id(db, user, descriptor):
    return create_saved_search(db, user_id=user["id"], name="Cheap iPhones", descriptor=descriptor)


def test_create_and_read_back(db, user, saved_id, descriptor):
    saved = get_saved_search(db, saved_id)
    assert saved.user_id == user["id"]
    assert saved.name == "Cheap iPhones"
    assert saved.descriptor.filter_dict() == descriptor.filter_dict()
    assert saved.notification_enabled
    assert saved.last_notified_at is None
    assert saved.to_dict()["filters"]["q"] == "iphone"


@pytest.mark.parametrize("name", ["", "   ", "x" * 101])
def test_name_must_be_1_to_100_chars(db, user, descriptor, name):
    with pytest.raises(ValidationError) as exc:
        create_saved_search(db, user_id=user["id"], name=name, descriptor=descriptor)
    assert exc.value.field == "name"


def test_duplicate_filters_allowed(db, user, descriptor, saved_id):
    create_saved_search(db, user_id=user["id"], name="Same again", descriptor=descriptor)
    assert len(list_saved_searches(db, user_id=user["id"])) == 2


def test_other_owner_is_forbidden(db, saved_id):
    intruder = create_user(db, "other@example.com")
    with pytest.raises(Forbidden):
        delete_saved_search(db, user_id=intruder, saved_search_id=saved_id)
    with pytest.raises(Forbidden):
        set_notifications(db, user_id=intruder, saved_search_id=saved_id, enabled=False)


def test_missing_or_deleted_is_not_found(db, user, saved_id):
    with pytest.raises(NotFound):
        delete_saved_search(db, user_id=user["id"], saved_search_id=9999)

    delete_saved_search(db, user_id=user["id"], saved_search_id=saved_id)
    assert list_saved_searches(db, user_id=user["id"]) == []
    with pytest.raises(NotFound):
        set_notifications(db, user_id=user["id"], saved_search_id=saved_id, enabled=True)


def test_toggle_notifications(db, user, saved_id):
    saved = set_notifications(db, user_id=user["id"], saved_search_id=saved_id, enabled=False)
    assert not saved.notification_enabled
    assert count_alert_enabled_searches(db) == 0


def test_watermark_only_moves_forward(db, saved_id, caplog):
    assert advance_watermark(db, saved_id, T0)
    assert advance_watermark(db, saved_id, T0 + timedelta(minutes=5))

    with caplog.at_level(logging.WARNING):
        assert not advance_watermark(db, saved_id, T0)
        assert not advance_watermark(db, saved_id, T0 + timedelta(minutes=5))

    assert get_saved_search(db, saved_id).last_notified_at == T0 + timedelta(minutes=5)
    assert any("Watermark not advanced" in r.getMessage() for r in caplog.records)


def test_lease_is_exclusive_until_expiry(db, saved_id):
    assert acquire_match_lease(db, saved_id, owner="a", now=T0, lease_seconds=60) is not None
    assert acquire_match_lease(db, saved_id, owner="b", now=T0 + timedelta(seconds=30), lease_seconds=60) is None
    # expired leases can be taken over
    taken = acquire_match_lease(db, saved_id, owner="b", now=T0 + timedelta(seconds=61), lease_seconds=60)
    assert taken.lease_owner == "b"

    # the old owner can no longer complete
    assert not complete_match_pass(db, saved_id, owner="a", watermark=T0)
    assert complete_match_pass(db, saved_id, owner="b", watermark=T0)

    saved = get_saved_search(db, saved_id)
    assert saved.lease_owner is None
    assert saved.last_notified_at == T0


def test_complete_match_pass_never_moves_back(db, saved_id):
    advance_watermark(db, saved_id, T0 + timedelta(hours=1))
    acquire_match_lease(db, saved_id, owner="a", now=T0, lease_seconds=60)
    assert complete_match_pass(db, saved_id, owner="a", watermark=T0)
    assert get_saved_search(db, saved_id).last_notified_at == T0 + timedelta(hours=1)


def test_release_keeps_watermark(db, saved_id):
    acquire_match_lease(db, saved_id, owner="a", now=T0, lease_seconds=60)
    release_match_lease(db, saved_id, owner="a")
    saved = get_saved_search(db, saved_id)
    assert saved.lease_owner is None
    assert saved.last_notified_at is None


def test_due_searches_skip_inactive_owners_and_disabled(db, user, descriptor, saved_id):
    other = create_user(db, "suspended@example.com")
    create_saved_search(db, user_id=other, name="Theirs", descriptor=descriptor)
    set_user_status(db, other, "suspended")
    create_saved_search(db, user_id=user["id"], name="Muted", descriptor=descriptor, notify=False)

    due = get_due_saved_searches(db, now=T0)
    assert [s.id for s in due] == [saved_id]


def test_due_order_and_min_interval(db, user, descriptor, saved_id):
    older = create_saved_search(db, user_id=user["id"], name="Older", descriptor=descriptor, watermark=T0)
    recent = create_saved_search(
        db, user_id=user["id"], name="Recent", descriptor=descriptor, watermark=T0 + timedelta(minutes=50)
    )

    now = T0 + timedelta(hours=1)
    assert [s.id for s in get_due_saved_searches(db, now=now)] == [saved_id, older, recent]
    assert [s.id for s in get_due_saved_searches(db, now=now, min_interval_seconds=1800)] == [saved_id, older]
    assert len(get_due_saved_searches(db, now=now, limit=1)) == 1
