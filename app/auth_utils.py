"""
Helpers for session cookies and current-user lookup.

Sessions are issued by the account service; this app only reads them.
"""
from __future__ import annotations

from typing import Dict, Optional, Tuple

from fastapi import Request

from core.db.users import delete_session, get_session, get_user_by_id, touch_session
from core.errors import Unauthorized

SESSION_COOKIE_NAME = "session_id"


def get_current_user(request: Request) -> Tuple[Optional[Dict], Optional[str]]:
    """
    Read session cookie and return (user_dict, session_token) or (None, None).
    Refreshes inactivity timeout when the session is valid.
    """
    token = request.cookies.get(SESSION_COOKIE_NAME)
    if not token:
        return None, None

    db = request.app.state.db
    session = get_session(db, token)
    if not session:
        return None, token

    user = get_user_by_id(db, session["user_id"])
    if not user:
        delete_session(db, token)
        return None, token

    # suspended or deleted owners lose their session
    if user.get("status") != "active":
        delete_session(db, token)
        return None, token

    touch_session(db, token)
    return user, token


def require_user(request: Request) -> Dict:
    """FastAPI dependency: the session user, or 401."""
    user, _ = get_current_user(request)
    if not user:
        raise Unauthorized("Login required")
    return user


__all__ = ["SESSION_COOKIE_NAME", "get_current_user", "require_user"]
