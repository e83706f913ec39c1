import asyncio
from datetime import timedelta

import worker.main as worker_main
from core.cancel import CancellationToken
from core.clock import utcnow
from core.db.alerts import get_queue_counts
from core.db.saved_searches import create_saved_search
from core.errors import StoreUnavailable
from core.search import normalize_query


def test_run_once_matches_then_sends(db, settings, user, make_listing, transport):
    create_saved_search(
        db,
        user_id=user["id"],
        name="Lamps",
        descriptor=normalize_query({"q": "lamp"}, settings=settings),
        watermark=utcnow() - timedelta(hours=1),
    )
    make_listing("Desk lamp", created_at=utcnow() - timedelta(minutes=1))

    code = asyncio.run(worker_main.main(settings, once=True, transport=transport))

    assert code == 0
    assert len(transport.sent) == 1
    assert transport.sent[0][1] == 'New items found for "Lamps"'
    assert get_queue_counts(db)["sent"] == 1


def test_cancelled_token_stops_before_first_cycle(db, settings, transport, monkeypatch):
    calls = []
    monkeypatch.setattr(worker_main, "run_once", lambda *a: calls.append(a))
    token = CancellationToken()
    token.cancel("SIGTERM")

    assert asyncio.run(worker_main.main(settings, token=token, transport=transport)) == 0
    assert calls == []


def test_store_outage_does_not_kill_the_loop(db, settings, transport, monkeypatch, caplog):
    token = CancellationToken()
    attempts = []

    def flaky(matcher, dispatcher, tok):
        attempts.append(1)
        if len(attempts) == 2:
            token.cancel("done")
        raise StoreUnavailable("connection refused")

    monkeypatch.setattr(worker_main, "run_once", flaky)
    fast = settings.with_overrides(worker_interval_seconds=0)

    assert asyncio.run(worker_main.main(fast, token=token, transport=transport)) == 0
    assert len(attempts) == 2
    assert any("Store unavailable" in r.getMessage() for r in caplog.records)
