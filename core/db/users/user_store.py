"""
Read side of the User/Auth collaborator.

Accounts are managed elsewhere; the search core only needs the owner's email
and whether the account is still active. `create_user` and `set_user_status`
exist for seeding and tests.
"""
from __future__ import annotations

from contextlib import closing
from typing import Dict, Optional

from core.clock import to_db, utcnow
from core.db.base import Database


def create_user(db: Database, email: str, username: Optional[str] = None, status: str = "active") -> int:
    with db.transaction() as conn:
        cur = conn.cursor()
        cur.execute(
            """
            INSERT INTO users (email, username, status, created_at)
            VALUES (?, ?, ?, ?)
            RETURNING id
            """,
            (email.strip().lower(), username, status, to_db(utcnow())),
        )
        row = cur.fetchone()
        user_id = int(row["id"]) if row else 0

    return user_id


def get_user_by_id(db: Database, user_id: int) -> Optional[Dict]:
    """Look up a user by numeric id. Returns dict or None."""
    with closing(db.connect()) as conn:
        cur = conn.cursor()

        cur.execute(
            """
            SELECT id, email, username, status, created_at
            FROM users
            WHERE id = ?
            """,
            (user_id,),
        )
        row = cur.fetchone()

    return dict(row) if row else None


def set_user_status(db: Database, user_id: int, status: str) -> None:
    with db.transaction() as conn:
        cur = conn.cursor()
        cur.execute("UPDATE users SET status = ? WHERE id = ?", (status, user_id))


__all__ = ["create_user", "get_user_by_id", "set_user_status"]
