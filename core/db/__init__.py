"""
Database access: connection factory, schema, and per-area stores.
"""
from core.db.base import Database, POSTGRES, SQLITE
from core.db.schema import init_db

__all__ = ["Database", "POSTGRES", "SQLITE", "init_db"]
