"""
Owner accounts and their login sessions, as seen by the search service.
"""
from core.db.users.sessions import (
    SESSION_TIMEOUT_MINUTES,
    create_session,
    delete_session,
    get_session,
    touch_session,
)
from core.db.users.user_store import create_user, get_user_by_id, set_user_status

__all__ = [
    "create_user",
    "get_user_by_id",
    "set_user_status",
    "SESSION_TIMEOUT_MINUTES",
    "create_session",
    "delete_session",
    "get_session",
    "touch_session",
]
