from contextlib import closing
from datetime import timedelta

import pytest

from core.clock import to_db
from core.db.alerts import get_queue_counts
from core.db.functions import boost_factor, haversine_km
from core.db.listings import count_listings, set_listing_status
from core.db.saved_searches import list_saved_searches
from core.errors import StoreUnavailable


class BrokenConnection:
    """Connection whose every statement fails like a dropped server."""

    def __init__(self):
        self.closed = False
        self.rolled_back = False

    def cursor(self):
        return self

    def execute(self, sql, params=None):
        raise StoreUnavailable("server closed the connection unexpectedly")

    def commit(self):
        pass

    def rollback(self):
        self.rolled_back = True

    def close(self):
        self.closed = True


@pytest.fixture
def broken(db, monkeypatch):
    conn = BrokenConnection()
    monkeypatch.setattr(db, "connect", lambda: conn)
    return conn


@pytest.mark.parametrize(
    "call",
    [
        lambda db: count_listings(db, "status = 'active'", []),
        lambda db: get_queue_counts(db),
        lambda db: list_saved_searches(db, user_id=1),
    ],
)
def test_failed_reads_still_close_the_connection(db, broken, call):
    with pytest.raises(StoreUnavailable):
        call(db)
    assert broken.closed


def test_failed_writes_roll_back_and_close(db, broken):
    with pytest.raises(StoreUnavailable):
        set_listing_status(db, 1, "sold")
    assert broken.rolled_back
    assert broken.closed


def test_sql_functions_match_python(db, clock):
    created = clock() - timedelta(days=3)
    with closing(db.connect()) as conn:
        cur = conn.cursor()
        cur.execute(
            "SELECT haversine_km(?, ?, ?, ?) AS km, listing_boost(1, ?, 10, ?, 0.2, 0.3, 7.0, 0.15, 100) AS boost",
            (46.0569, 14.5058, 46.5547, 15.6459, to_db(created), to_db(clock())),
        )
        row = cur.fetchone()

    assert row["km"] == pytest.approx(haversine_km(46.0569, 14.5058, 46.5547, 15.6459))
    assert row["boost"] == pytest.approx(boost_factor(True, 3.0, 10, 0.2, 0.3, 7.0, 0.15, 100))
    assert haversine_km(None, 14.5, 46.0, 14.5) is None
