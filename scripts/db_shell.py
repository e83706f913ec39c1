"""
Quick helper to run a query against the configured database (DATABASE_URL,
Postgres or SQLite; defaults to the local SQLite file).

Usage:
  python scripts/db_shell.py                                              # list tables
  python scripts/db_shell.py "SELECT status, COUNT(*) FROM alert_queue GROUP BY status"
"""
from __future__ import annotations

import sys

from dotenv import load_dotenv

from core.config import Settings
from core.db import POSTGRES, Database
from core.errors import StoreUnavailable

_LIST_TABLES = {
    POSTGRES: "SELECT tablename AS name FROM pg_tables WHERE schemaname='public' ORDER BY tablename",
    "sqlite": "SELECT name FROM sqlite_master WHERE type='table' ORDER BY name",
}


def main() -> None:
    load_dotenv(override=True)
    settings = Settings.from_env()
    db = Database(settings.database_url)

    query = " ".join(sys.argv[1:]).strip() or _LIST_TABLES[db.dialect]
    print(f"Using DB: {db.dialect} ({settings.database_url.split('@')[-1]})", file=sys.stderr)

    conn = db.connect()
    try:
        cur = conn.cursor()
        cur.execute(query)
        if query.lstrip().lower().startswith(("select", "with", "pragma")):
            for row in cur.fetchall():
                print(row)
        else:
            conn.commit()
            print(f"OK ({cur.rowcount} row(s) affected)")
    except StoreUnavailable as exc:
        raise SystemExit(f"Database unavailable: {exc}") from exc
    finally:
        conn.close()


if __name__ == "__main__":
    main()
