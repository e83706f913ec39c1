"""
Notification queue.

The alert matcher enqueues (saved search, listing) pairs; the alert dispatcher
claims, delivers and finishes them. Deleting a saved search keeps its rows for
history; the dispatcher skips them.
"""
from core.db.alerts.queue_store import (
    claim_item,
    cleanup_old_items,
    count_old_items,
    count_due_items,
    enqueue_alert_items,
    get_alert_stats,
    get_item,
    get_queue_counts,
    list_due_item_ids,
    mark_item_failed,
    mark_item_retry,
    mark_item_sent,
    requeue_stale_items,
    retry_failed_item,
)

__all__ = [
    "enqueue_alert_items",
    "list_due_item_ids",
    "count_due_items",
    "get_item",
    "claim_item",
    "mark_item_sent",
    "mark_item_retry",
    "mark_item_failed",
    "requeue_stale_items",
    "retry_failed_item",
    "get_queue_counts",
    "count_old_items",
    "cleanup_old_items",
    "get_alert_stats",
]
