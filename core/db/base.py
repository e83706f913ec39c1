"""
Low-level database helpers.

Postgres (psycopg) in production; SQLite for local runs and tests. Stores write
SQL with `?` placeholders and the cursor wrapper converts them for Postgres.
"""
from __future__ import annotations

import sqlite3
from contextlib import contextmanager
from typing import Iterable

try:
    import psycopg
    from psycopg.rows import dict_row
except Exception as exc:  # pragma: no cover - required dependency
    raise RuntimeError("psycopg is required for Postgres") from exc

from core.db.functions import register_sqlite_functions
from core.errors import StoreUnavailable

POSTGRES = "postgres"
SQLITE = "sqlite"

_DRIVER_ERRORS = (sqlite3.OperationalError, psycopg.OperationalError, psycopg.InterfaceError)


def _convert_qmarks(sql: str) -> str:
    if "?" not in sql:
        return sql
    return sql.replace("?", "%s")


class _CursorWrapper:
    def __init__(self, cursor, dialect: str):
        self._cursor = cursor
        self._dialect = dialect

    def execute(self, sql: str, params: Iterable | None = None):
        if self._dialect == POSTGRES:
            sql = _convert_qmarks(sql)
        try:
            if params is None:
                return self._cursor.execute(sql)
            return self._cursor.execute(sql, tuple(params))
        except _DRIVER_ERRORS as exc:
            raise StoreUnavailable(str(exc)) from exc

    def executemany(self, sql: str, seq_of_params: Iterable):
        if self._dialect == POSTGRES:
            sql = _convert_qmarks(sql)
        try:
            return self._cursor.executemany(sql, seq_of_params)
        except _DRIVER_ERRORS as exc:
            raise StoreUnavailable(str(exc)) from exc

    def fetchone(self):
        row = self._cursor.fetchone()
        return None if row is None else dict(row)

    def fetchall(self):
        return [dict(r) for r in self._cursor.fetchall()]

    def __iter__(self):
        return (dict(r) for r in self._cursor)

    @property
    def rowcount(self):
        return getattr(self._cursor, "rowcount", 0)

    @property
    def lastrowid(self):
        return getattr(self._cursor, "lastrowid", None)


class _ConnWrapper:
    def __init__(self, conn, dialect: str):
        self._conn = conn
        self.dialect = dialect

    def cursor(self):
        return _CursorWrapper(self._conn.cursor(), self.dialect)

    def commit(self):
        try:
            return self._conn.commit()
        except _DRIVER_ERRORS as exc:
            raise StoreUnavailable(str(exc)) from exc

    def rollback(self):
        try:
            return self._conn.rollback()
        except _DRIVER_ERRORS:
            # the connection is going away anyway
            return None

    def close(self):
        return self._conn.close()


class Database:
    """
    Connection factory bound to one DATABASE_URL.

    Every call to `connect()` opens a fresh connection, so one instance can be
    shared between threads (each worker thread gets its own connections).
    """

    def __init__(self, url: str):
        if url.startswith("postgres://") or url.startswith("postgresql://"):
            self.dialect = POSTGRES
            self._target = url
        elif url.startswith("sqlite:///"):
            self.dialect = SQLITE
            self._target = url[len("sqlite:///"):] or ":memory:"
        else:
            raise RuntimeError("DATABASE_URL must start with postgres://, postgresql:// or sqlite:///")
        self.url = url

    def connect(self) -> _ConnWrapper:
        try:
            if self.dialect == POSTGRES:
                conn = psycopg.connect(self._target, row_factory=dict_row, connect_timeout=10)
            else:
                conn = sqlite3.connect(self._target, timeout=30)
                conn.row_factory = sqlite3.Row
                register_sqlite_functions(conn)
        except _DRIVER_ERRORS as exc:
            raise StoreUnavailable(f"Database unavailable: {exc}") from exc
        return _ConnWrapper(conn, self.dialect)

    @contextmanager
    def transaction(self):
        """Yield a connection; commit on success, roll back on any error."""
        conn = self.connect()
        try:
            yield conn
            conn.commit()
        except BaseException:
            conn.rollback()
            raise
        finally:
            conn.close()


__all__ = ["Database", "POSTGRES", "SQLITE"]
