from core.alerts.dispatcher import AlertDispatcher, DrainReport, compute_backoff
from core.alerts.matcher import AlertMatcher, MatchReport
from core.alerts.render import render_alert, unsubscribe_token, unsubscribe_url, verify_unsubscribe_token

__all__ = [
    "AlertMatcher",
    "MatchReport",
    "AlertDispatcher",
    "DrainReport",
    "compute_backoff",
    "render_alert",
    "unsubscribe_token",
    "unsubscribe_url",
    "verify_unsubscribe_token",
]
