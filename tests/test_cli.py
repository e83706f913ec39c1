import io
from datetime import timedelta

import pytest

from core.clock import to_db, utcnow
from core.db.alerts import enqueue_alert_items, get_item, get_queue_counts
from core.db.saved_searches import create_saved_search, get_saved_search
from core.errors import StoreUnavailable
from core.search import normalize_query
from worker import cli


@pytest.fixture
def saved_id(db, user, settings):
    descriptor = normalize_query({"q": "iphone", "max_price": "800"}, settings=settings)
    return create_saved_search(
        db, user_id=user["id"], name="iPhones", descriptor=descriptor, watermark=utcnow() - timedelta(hours=1)
    )


@pytest.fixture
def new_listing(make_listing):
    return make_listing("iPhone 13", price=750, created_at=utcnow() - timedelta(minutes=5))


def _run(argv, settings, transport=None):
    out = io.StringIO()
    code = cli.main(argv, settings=settings, transport=transport, out=out)
    return code, out.getvalue()


def test_alerts_dry_run_changes_nothing(db, settings, saved_id, new_listing):
    before = get_saved_search(db, saved_id).last_notified_at

    code, output = _run(["--alerts", "--dry-run"], settings)

    assert code == 0
    assert "DRY RUN MODE" in output
    assert "Would process 1 saved searches" in output
    assert "1 new listing(s)" in output
    assert get_queue_counts(db)["pending"] == 0
    assert get_saved_search(db, saved_id).last_notified_at == before


def test_alerts_matches_then_sends(db, settings, saved_id, new_listing, transport):
    code, output = _run(["--alerts"], settings, transport)

    assert code == 0
    assert "enqueued 1" in output
    assert "sent 1" in output
    assert "Duration:" in output
    assert len(transport.sent) == 1
    assert transport.sent[0][0] == "buyer@example.com"
    assert get_queue_counts(db)["sent"] == 1


def test_emails_mode_only_drains_the_queue(db, settings, user, saved_id, new_listing, transport):
    enqueue_alert_items(db, saved_search_id=saved_id, user_id=user["id"], listing_ids=[new_listing], now=utcnow())

    code, output = _run(["--emails", "--dry-run"], settings, transport)
    assert "Would process 1 emails" in output
    assert transport.sent == []

    code, output = _run(["--emails", "--limit", "10"], settings, transport)
    assert code == 0
    assert "sent 1" in output
    assert len(transport.sent) == 1
    # nothing new was matched
    assert "enqueued" not in output


def test_failed_deliveries_still_exit_zero(db, settings, saved_id, new_listing, transport_cls):
    code, output = _run([], settings, transport_cls(fail_for={"buyer@example.com"}))
    assert code == 0
    assert "retried 1" in output


def test_loop_with_runtime_budget(db, settings, saved_id, new_listing, transport):
    code, output = _run(["--loop", "--max-runtime", "0"], settings, transport)
    assert code == 0
    assert "enqueued 1" in output
    assert "emails sent 1" in output


def test_stats(db, settings, user, saved_id, new_listing):
    enqueue_alert_items(db, saved_search_id=saved_id, user_id=user["id"], listing_ids=[new_listing], now=utcnow())
    code, output = _run(["--stats"], settings)
    assert code == 0
    assert "Active searches with alerts: 1" in output
    assert "Pending alerts in queue: 1" in output
    assert '"iPhones" by buyer: 1 alerts' in output


def test_cleanup_dry_run_and_real(db, settings, user, saved_id, new_listing):
    old = utcnow() - timedelta(days=45)
    enqueue_alert_items(db, saved_search_id=saved_id, user_id=user["id"], listing_ids=[new_listing], now=old)
    db_conn = db.connect()
    db_conn.cursor().execute("UPDATE alert_queue SET status = 'sent', sent_at = ?", (to_db(old),))
    db_conn.commit()
    db_conn.close()

    code, output = _run(["--cleanup", "--dry-run"], settings)
    assert "Would delete 1 old alert records" in output
    assert get_queue_counts(db)["sent"] == 1

    code, output = _run(["--cleanup", "--days", "30"], settings)
    assert code == 0
    assert "Deleted 1 alert records older than 30 days" in output
    assert get_queue_counts(db)["sent"] == 0


def test_retry_failed(db, settings, user, saved_id, new_listing):
    enqueue_alert_items(db, saved_search_id=saved_id, user_id=user["id"], listing_ids=[new_listing], now=utcnow())
    conn = db.connect()
    conn.cursor().execute("UPDATE alert_queue SET status = 'failed', attempts = 3")
    conn.commit()
    conn.close()
    item_id = 1

    code, output = _run(["--retry-failed", str(item_id)], settings)
    assert code == 0
    assert get_item(db, item_id).status == "pending"

    # no longer failed: refused
    code, output = _run(["--retry-failed", str(item_id)], settings)
    assert code == 2
    assert "not retried" in output

    code, _ = _run(["--retry-failed", "999"], settings)
    assert code == 2


@pytest.mark.parametrize(
    "argv",
    [
        ["--stats", "--emails"],
        ["--days", "5"],
        ["--cleanup", "--days", "0"],
        ["--emails", "--limit", "0"],
        ["--stats", "--loop"],
        ["--loop", "--dry-run"],
    ],
)
def test_usage_errors_exit_2(settings, argv):
    with pytest.raises(SystemExit) as exc:
        cli.main(argv, settings=settings, out=io.StringIO())
    assert exc.value.code == 2


def test_store_unavailable_exits_1(settings, monkeypatch):
    def unavailable(*args, **kwargs):
        raise StoreUnavailable("connection refused")

    monkeypatch.setattr(cli, "init_db", unavailable)
    code, output = _run(["--stats"], settings)
    assert code == 1
    assert "connection refused" in output
