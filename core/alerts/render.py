"""
Alert email rendering and signed unsubscribe links.
"""
from __future__ import annotations

import hashlib
import hmac
from html import escape
from typing import Tuple
from urllib.parse import urlencode

from core.config import Settings
from core.models import Listing, SavedSearch

DESCRIPTION_PREVIEW = 150


def unsubscribe_token(saved_search_id: int, secret: str) -> str:
    return hmac.new(secret.encode("utf-8"), f"unsubscribe:{int(saved_search_id)}".encode("utf-8"), hashlib.sha256).hexdigest()


def verify_unsubscribe_token(saved_search_id: int, token: str, secret: str) -> bool:
    return hmac.compare_digest(unsubscribe_token(saved_search_id, secret), token or "")


def unsubscribe_url(saved_search_id: int, settings: Settings) -> str:
    query = urlencode({"search": saved_search_id, "token": unsubscribe_token(saved_search_id, settings.app_secret)})
    return f"{settings.app_url}/unsubscribe?{query}"


def _preview(text: str) -> str:
    text = " ".join((text or "").split())
    if len(text) <= DESCRIPTION_PREVIEW:
        return text
    return text[:DESCRIPTION_PREVIEW].rstrip() + "..."


def render_alert(saved: SavedSearch, listing: Listing, settings: Settings) -> Tuple[str, str]:
    """Return (subject, html_body) for one matched listing."""
    subject = f'New items found for "{saved.name}"'
    listing_url = f"{settings.app_url}/articles/{listing.id}"
    price = f"{listing.price:,.2f} {listing.currency}"

    details = [f"<strong>{escape(price)}</strong>"]
    if listing.condition:
        details.append(escape(listing.condition.replace("_", " ")))
    if listing.location:
        details.append(escape(listing.location))

    body = f"""\
<html>
  <body>
    <p>A new listing matches your saved search <strong>{escape(saved.name)}</strong>.</p>
    <h3><a href="{escape(listing_url)}">{escape(listing.title)}</a></h3>
    <p>{" &middot; ".join(details)}</p>
    <p>{escape(_preview(listing.description))}</p>
    <hr>
    <p style="font-size:12px;color:#666">
      You receive this email because alerts are on for this saved search.
      <a href="{escape(unsubscribe_url(saved.id, settings))}">Unsubscribe</a>
    </p>
  </body>
</html>
"""
    return subject, body


__all__ = ["render_alert", "unsubscribe_token", "verify_unsubscribe_token", "unsubscribe_url"]
