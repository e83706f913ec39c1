from typing import Any, Dict, Optional

from fastapi import APIRouter, Depends, Query, Request
from fastapi.responses import HTMLResponse
from pydantic import BaseModel, Field

from app.auth_utils import require_user
from core.alerts import verify_unsubscribe_token
from core.db.saved_searches import (
    create_saved_search,
    disable_notifications,
    delete_saved_search,
    get_saved_search,
    list_saved_searches,
    set_notifications,
)
from core.errors import Forbidden, NotFound
from core.models import SAVED_SEARCH_NAME_MAX
from core.search import normalize_query

router = APIRouter(prefix="/api/v1/search/saved", tags=["saved-searches"])
unsubscribe_router = APIRouter()


class SavedSearchIn(BaseModel):
    name: str = Field(..., min_length=1, max_length=SAVED_SEARCH_NAME_MAX)
    filters: Dict[str, Any] = Field(default_factory=dict)
    email_alerts: bool = True


class AlertToggleIn(BaseModel):
    enabled: Optional[bool] = None


@router.post("", status_code=201)
def create(request: Request, payload: SavedSearchIn, user: dict = Depends(require_user)):
    state = request.app.state
    # paging and sort are not part of a saved search
    filters = {k: v for k, v in payload.filters.items() if k not in ("page", "per_page", "sort")}
    descriptor = normalize_query(filters, settings=state.settings)

    saved_search_id = create_saved_search(
        state.db,
        user_id=int(user["id"]),
        name=payload.name,
        descriptor=descriptor,
        notify=payload.email_alerts,
    )
    return {"saved_search": get_saved_search(state.db, saved_search_id).to_dict()}


@router.get("")
def list_all(request: Request, user: dict = Depends(require_user)):
    searches = list_saved_searches(request.app.state.db, user_id=int(user["id"]))
    return {"saved_searches": [s.to_dict() for s in searches], "total": len(searches)}


@router.delete("/{saved_search_id}")
def delete(request: Request, saved_search_id: int, user: dict = Depends(require_user)):
    delete_saved_search(request.app.state.db, user_id=int(user["id"]), saved_search_id=saved_search_id)
    return {"deleted": True, "id": saved_search_id}


@router.post("/{saved_search_id}/alerts")
def toggle_alerts(
    request: Request,
    saved_search_id: int,
    payload: Optional[AlertToggleIn] = None,
    user: dict = Depends(require_user),
):
    """Set email alerts on/off; without a body the current value is flipped."""
    db = request.app.state.db
    enabled = payload.enabled if payload is not None else None
    if enabled is None:
        current = get_saved_search(db, saved_search_id)
        if current is None or not current.is_active:
            raise NotFound("Saved search not found")
        if current.user_id != int(user["id"]):
            raise Forbidden("Saved search belongs to another user")
        enabled = not current.notification_enabled

    saved = set_notifications(db, user_id=int(user["id"]), saved_search_id=saved_search_id, enabled=enabled)
    return {"saved_search": saved.to_dict()}


@unsubscribe_router.get("/unsubscribe", response_class=HTMLResponse)
def unsubscribe(request: Request, search: int = Query(...), token: str = Query("", max_length=128)):
    settings = request.app.state.settings
    if not verify_unsubscribe_token(search, token, settings.app_secret):
        raise Forbidden("Invalid unsubscribe link")

    disable_notifications(request.app.state.db, search)
    return HTMLResponse(
        content="""
        <html>
          <head><title>Unsubscribed</title></head>
          <body>
            <h1>Alerts turned off</h1>
            <p>You will no longer receive emails for this saved search.</p>
          </body>
        </html>
        """
    )
