import logging
import threading
from datetime import timedelta

import pytest

from core.alerts import AlertDispatcher, compute_backoff
from core.cancel import CancellationToken
from core.db.alerts import (
    claim_item,
    cleanup_old_items,
    count_old_items,
    enqueue_alert_items,
    get_item,
    get_queue_counts,
    list_due_item_ids,
    retry_failed_item,
)
from core.db.listings import set_listing_status
from core.db.saved_searches import create_saved_search, delete_saved_search, set_notifications
from core.db.users import create_user, set_user_status
from core.search import normalize_query


@pytest.fixture
def saved_id(db, user, settings, clock):
    descriptor = normalize_query({"q": "bike"}, settings=settings)
    return create_saved_search(db, user_id=user["id"], name="Bikes", descriptor=descriptor, watermark=clock())


@pytest.fixture
def enqueue(db, clock, user, saved_id):
    def _enqueue(listing_ids, *, saved_search_id=None, user_id=None, max_attempts=3):
        enqueue_alert_items(
            db,
            saved_search_id=saved_search_id or saved_id,
            user_id=user_id or user["id"],
            listing_ids=listing_ids,
            now=clock(),
            max_attempts=max_attempts,
        )
        return list_due_item_ids(db, now=clock(), limit=1000)

    return _enqueue


@pytest.fixture
def dispatcher(db, settings, clock, transport):
    return AlertDispatcher(db, transport, settings, clock=clock, worker_id="dispatcher-test")


@pytest.mark.parametrize(
    "attempts,expected",
    [(1, 60), (2, 120), (3, 240), (6, 1920), (7, 3600), (30, 3600)],
)
def test_backoff_doubles_and_caps(attempts, expected):
    assert compute_backoff(attempts, 60, 3600) == expected


def test_sends_and_marks_sent(db, dispatcher, transport, enqueue, make_listing):
    item_id = enqueue([make_listing("Road bike", price=900, description="Carbon frame")])[0]

    report = dispatcher.drain()

    assert report.processed == 1 and report.sent == 1
    item = get_item(db, item_id)
    assert item.status == "sent"
    assert item.attempts == 1
    assert item.sent_at is not None
    to, subject, body = transport.sent[0]
    assert to == "buyer@example.com"
    assert subject == 'New items found for "Bikes"'
    assert "Road bike" in body and "/unsubscribe?search=" in body


def test_enqueue_is_idempotent(db, enqueue, make_listing):
    listing = make_listing("Bike")
    enqueue([listing])
    enqueue([listing, listing])
    assert get_queue_counts(db)["pending"] == 1


def test_retries_with_backoff_then_fails(db, transport_cls, settings, clock, enqueue, make_listing, caplog):
    transport = transport_cls(fail_for={"buyer@example.com"})
    dispatcher = AlertDispatcher(db, transport, settings, clock=clock, worker_id="d")
    item_id = enqueue([make_listing("Bike")])[0]

    assert dispatcher.drain().retried == 1
    item = get_item(db, item_id)
    assert item.status == "pending"
    assert item.next_attempt_at == clock() + timedelta(seconds=60)
    assert "mailbox unavailable" in item.last_error

    # not due yet
    assert dispatcher.drain().processed == 0

    clock.advance(seconds=60)
    assert dispatcher.drain().retried == 1
    assert get_item(db, item_id).next_attempt_at == clock() + timedelta(seconds=120)

    clock.advance(seconds=120)
    with caplog.at_level(logging.ERROR):
        assert dispatcher.drain().failed == 1
    item = get_item(db, item_id)
    assert item.status == "failed"
    assert item.attempts == 3
    assert any("failed permanently" in r.getMessage() for r in caplog.records)
    assert transport.sent == []


def test_one_failure_does_not_abort_batch(db, transport_cls, settings, clock, user, enqueue, make_listing):
    other = create_user(db, "other@example.com")
    other_saved = create_saved_search(
        db,
        user_id=other,
        name="Bikes too",
        descriptor=normalize_query({"q": "bike"}, settings=settings),
    )
    listing = make_listing("Bike")
    enqueue([listing], saved_search_id=other_saved, user_id=other)
    enqueue([listing])

    transport = transport_cls(fail_for={"other@example.com"})
    report = AlertDispatcher(db, transport, settings, clock=clock).drain()

    assert report.processed == 2
    assert report.sent == 1
    assert report.retried == 1
    assert [to for to, _, _ in transport.sent] == ["buyer@example.com"]


def test_unexpected_error_is_retried(db, settings, clock, enqueue, make_listing, caplog):
    class Exploding:
        def send(self, to_email, subject, html_body):
            raise RuntimeError("template bug")

    item_id = enqueue([make_listing("Bike")])[0]
    with caplog.at_level(logging.ERROR):
        report = AlertDispatcher(db, Exploding(), settings, clock=clock).drain()
    assert report.retried == 1
    assert "RuntimeError" in get_item(db, item_id).last_error


def test_concurrent_dispatchers_never_double_send(db, transport_cls, settings, clock, enqueue, make_listing):
    ids = enqueue([make_listing(f"Bike {i}") for i in range(20)])
    assert len(ids) == 20

    transport = transport_cls()
    reports = []

    def work(worker_id):
        dispatcher = AlertDispatcher(db, transport, settings, clock=clock, worker_id=worker_id)
        reports.append(dispatcher.drain(batch_size=50))

    threads = [threading.Thread(target=work, args=(f"w{i}",)) for i in range(2)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    assert sum(r.sent for r in reports) == 20
    assert len(transport.sent) == 20
    assert len({body for _, _, body in transport.sent}) == 20
    assert get_queue_counts(db)["sent"] == 20


def test_claim_is_exclusive(db, clock, enqueue, make_listing):
    item_id = enqueue([make_listing("Bike")])[0]
    assert claim_item(db, item_id, worker_id="a", now=clock()) is not None
    assert claim_item(db, item_id, worker_id="b", now=clock()) is None


def test_stale_sending_items_recovered(db, settings, clock, dispatcher, transport, enqueue, make_listing):
    requeued_id = enqueue([make_listing("Bike")])[0]
    claim_item(db, requeued_id, worker_id="crashed", now=clock())

    clock.advance(seconds=settings.alert_sending_timeout_seconds + 1)
    report = dispatcher.drain()

    assert report.recovered == 1
    assert report.sent == 1
    assert get_item(db, requeued_id).attempts == 2


def test_stale_item_without_attempts_left_fails(db, settings, clock, dispatcher, enqueue, make_listing):
    item_id = enqueue([make_listing("Bike")], max_attempts=1)[0]
    claim_item(db, item_id, worker_id="crashed", now=clock())

    clock.advance(seconds=settings.alert_sending_timeout_seconds + 1)
    dispatcher.drain()
    assert get_item(db, item_id).status == "failed"


def test_cancelled_drain_leaves_items_pending(db, dispatcher, transport, enqueue, make_listing):
    enqueue([make_listing("Bike"), make_listing("Bike")])
    token = CancellationToken()
    token.cancel("SIGTERM")

    report = dispatcher.drain(token=token)

    assert report.cancelled
    assert report.processed == 0
    assert get_queue_counts(db)["pending"] == 2


def test_cancel_mid_batch_finishes_current_item(db, transport_cls, settings, clock, enqueue, make_listing):
    enqueue([make_listing("Bike"), make_listing("Bike"), make_listing("Bike")])
    token = CancellationToken()

    class CancelAfterFirst(transport_cls):
        def send(self, to_email, subject, html_body):
            super().send(to_email, subject, html_body)
            token.cancel("SIGINT")

    transport = CancelAfterFirst()
    report = AlertDispatcher(db, transport, settings, clock=clock).drain(token=token)

    assert report.sent == 1
    assert report.cancelled
    counts = get_queue_counts(db)
    assert counts["sent"] == 1 and counts["pending"] == 2 and counts["sending"] == 0


@pytest.mark.parametrize(
    "change,reason",
    [
        ("delete", "skipped: saved search deleted"),
        ("mute", "skipped: alerts disabled"),
        ("sold", "skipped: listing no longer active"),
        ("suspend", "skipped: owner inactive"),
    ],
)
def test_skips_are_recorded_without_sending(
    db, user, saved_id, dispatcher, transport, enqueue, make_listing, change, reason
):
    listing = make_listing("Bike")
    item_id = enqueue([listing])[0]

    if change == "delete":
        delete_saved_search(db, user_id=user["id"], saved_search_id=saved_id)
    elif change == "mute":
        set_notifications(db, user_id=user["id"], saved_search_id=saved_id, enabled=False)
    elif change == "sold":
        set_listing_status(db, listing, "sold")
    else:
        set_user_status(db, user["id"], "suspended")

    report = dispatcher.drain()

    assert report.skipped == 1
    assert transport.sent == []
    item = get_item(db, item_id)
    assert item.status == "sent"
    assert item.last_error == reason


def test_dry_run_lists_due_items_only(db, dispatcher, transport, enqueue, make_listing):
    ids = enqueue([make_listing("Bike")])
    report = dispatcher.drain(dry_run=True)
    assert report.planned == ids
    assert transport.sent == []
    assert get_queue_counts(db)["pending"] == 1


def test_run_loop_stops_when_budget_spent(db, dispatcher, transport, enqueue, make_listing):
    enqueue([make_listing("Bike")])
    report = dispatcher.run_loop(interval=0, max_runtime=0, token=CancellationToken())
    assert report.sent == 1
    assert not report.cancelled


def test_retry_failed_item(db, transport_cls, settings, clock, enqueue, make_listing):
    listing = make_listing("Bike")
    item_id = enqueue([listing], max_attempts=1)[0]
    AlertDispatcher(db, transport_cls(fail_for={"buyer@example.com"}), settings, clock=clock).drain()
    assert get_item(db, item_id).status == "failed"

    assert retry_failed_item(db, item_id, now=clock())
    item = get_item(db, item_id)
    assert item.status == "pending" and item.attempts == 0

    # not failed any more
    assert not retry_failed_item(db, item_id, now=clock())


def test_retry_refused_when_pair_requeued(db, transport_cls, settings, clock, enqueue, make_listing):
    listing = make_listing("Bike")
    item_id = enqueue([listing], max_attempts=1)[0]
    AlertDispatcher(db, transport_cls(fail_for={"buyer@example.com"}), settings, clock=clock).drain()

    # a failed pair may be enqueued again
    enqueue([listing])
    assert get_queue_counts(db)["pending"] == 1
    assert not retry_failed_item(db, item_id, now=clock())


def test_cleanup_removes_only_old_finished_items(db, dispatcher, clock, enqueue, make_listing):
    enqueue([make_listing("Bike")])
    dispatcher.drain()
    enqueue([make_listing("Bike")])

    clock.advance(days=31)
    assert count_old_items(db, older_than_days=30, now=clock()) == 1
    assert cleanup_old_items(db, older_than_days=30, now=clock()) == 1
    counts = get_queue_counts(db)
    assert counts["sent"] == 0 and counts["pending"] == 1
