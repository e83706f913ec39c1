from core.db.saved_searches.saved_search_store import (
    acquire_match_lease,
    advance_watermark,
    complete_match_pass,
    count_alert_enabled_searches,
    create_saved_search,
    delete_saved_search,
    disable_notifications,
    get_due_saved_searches,
    get_saved_search,
    list_saved_searches,
    release_match_lease,
    set_notifications,
)

__all__ = [
    "create_saved_search",
    "list_saved_searches",
    "get_saved_search",
    "delete_saved_search",
    "set_notifications",
    "disable_notifications",
    "advance_watermark",
    "acquire_match_lease",
    "complete_match_pass",
    "release_match_lease",
    "get_due_saved_searches",
    "count_alert_enabled_searches",
]
