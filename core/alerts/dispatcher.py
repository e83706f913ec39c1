"""
Alert dispatcher: drains the notification queue.

Each item is claimed with a conditional UPDATE, so concurrent dispatchers
never send the same notification twice. One item's failure never aborts the
batch; only StoreUnavailable (the queue itself is gone) propagates.
"""
from __future__ import annotations

import logging
import time
from dataclasses import asdict, dataclass, field
from datetime import datetime, timedelta
from typing import Callable, Dict, List, Optional

from core.alerts.matcher import worker_identity
from core.alerts.render import render_alert
from core.cancel import CancellationToken, is_cancelled
from core.clock import utcnow
from core.config import Settings
from core.db.alerts import (
    claim_item,
    list_due_item_ids,
    mark_item_failed,
    mark_item_retry,
    mark_item_sent,
    requeue_stale_items,
)
from core.db.base import Database
from core.db.listings import get_listing
from core.db.saved_searches import get_saved_search
from core.db.users import get_user_by_id
from core.errors import DeliveryFailure, StoreUnavailable
from core.models import AlertQueueItem

log = logging.getLogger(__name__)


def compute_backoff(attempts: int, base_seconds: int, cap_seconds: int) -> int:
    """Delay before the next attempt after `attempts` failed tries: base * 2^(attempts-1), capped."""
    return int(min(cap_seconds, base_seconds * 2 ** max(0, attempts - 1)))


@dataclass
class DrainReport:
    processed: int = 0
    sent: int = 0
    retried: int = 0
    failed: int = 0
    skipped: int = 0
    errors: int = 0
    recovered: int = 0
    cancelled: bool = False
    dry_run: bool = False
    planned: List[int] = field(default_factory=list)

    def merge(self, other: "DrainReport") -> None:
        for name in ("processed", "sent", "retried", "failed", "skipped", "errors", "recovered"):
            setattr(self, name, getattr(self, name) + getattr(other, name))
        self.cancelled = self.cancelled or other.cancelled

    def to_dict(self) -> Dict:
        return asdict(self)


class AlertDispatcher:
    def __init__(
        self,
        db: Database,
        transport,
        settings: Settings,
        clock: Callable[[], datetime] = utcnow,
        worker_id: Optional[str] = None,
    ):
        self.db = db
        self.transport = transport
        self.settings = settings
        self.clock = clock
        self.worker_id = worker_id or worker_identity("dispatcher")

    def drain(
        self,
        batch_size: Optional[int] = None,
        token: Optional[CancellationToken] = None,
        dry_run: bool = False,
    ) -> DrainReport:
        batch_size = batch_size or self.settings.alert_batch_size
        report = DrainReport(dry_run=dry_run)

        if dry_run:
            report.planned = list_due_item_ids(self.db, now=self.clock(), limit=batch_size)
            return report

        requeued, failed = requeue_stale_items(
            self.db,
            now=self.clock(),
            stale_after_seconds=self.settings.alert_sending_timeout_seconds,
        )
        report.recovered = requeued + failed

        for item_id in list_due_item_ids(self.db, now=self.clock(), limit=batch_size):
            if is_cancelled(token):
                report.cancelled = True
                log.info("Drain cancelled", extra={"reason": token.reason})
                break

            item = claim_item(self.db, item_id, worker_id=self.worker_id, now=self.clock())
            if item is None:
                continue

            report.processed += 1
            try:
                self._deliver(item, report)
            except StoreUnavailable:
                raise
            except DeliveryFailure as exc:
                self._record_failure(item, exc, report)
            except Exception as exc:
                log.exception("Unexpected error delivering alert item", extra={"item_id": item.id})
                self._record_failure(item, exc, report)

        log.info("Drain complete", extra={k: v for k, v in report.to_dict().items() if k != "planned"})
        return report

    def _skip_reason(self, saved, listing, user) -> Optional[str]:
        if saved is None or not saved.is_active:
            return "skipped: saved search deleted"
        if not saved.notification_enabled:
            return "skipped: alerts disabled"
        if listing is None or not listing.is_active:
            return "skipped: listing no longer active"
        if user is None or user.get("status") != "active" or not user.get("email"):
            return "skipped: owner inactive"
        return None

    def _deliver(self, item: AlertQueueItem, report: DrainReport) -> None:
        saved = get_saved_search(self.db, item.saved_search_id)
        listing = get_listing(self.db, item.listing_id)
        user = get_user_by_id(self.db, item.user_id)

        reason = self._skip_reason(saved, listing, user)
        if reason:
            mark_item_sent(self.db, item.id, now=self.clock(), note=reason)
            report.skipped += 1
            log.info("Alert item skipped", extra={"item_id": item.id, "reason": reason})
            return

        subject, body = render_alert(saved, listing, self.settings)
        self.transport.send(user["email"], subject, body)

        mark_item_sent(self.db, item.id, now=self.clock())
        report.sent += 1

    def _record_failure(self, item: AlertQueueItem, exc: Exception, report: DrainReport) -> None:
        report.errors += 1
        error = f"{type(exc).__name__}: {exc}"
        if item.attempts_exhausted:
            mark_item_failed(self.db, item.id, error=error)
            report.failed += 1
            log.error(
                "Alert item failed permanently",
                extra={"item_id": item.id, "attempts": item.attempts, "error": error},
            )
            return

        delay = compute_backoff(
            item.attempts,
            self.settings.alert_backoff_base_seconds,
            self.settings.alert_backoff_cap_seconds,
        )
        mark_item_retry(self.db, item.id, next_attempt_at=self.clock() + timedelta(seconds=delay), error=error)
        report.retried += 1
        log.warning(
            "Alert item will be retried",
            extra={"item_id": item.id, "attempts": item.attempts, "delay_seconds": delay, "error": error},
        )

    def run_loop(
        self,
        batch_size: Optional[int] = None,
        interval: Optional[float] = None,
        max_runtime: Optional[float] = None,
        token: Optional[CancellationToken] = None,
        before_drain: Optional[Callable[[], None]] = None,
    ) -> DrainReport:
        """
        Drain, sleep, repeat until cancelled or the runtime budget is spent.
        The in-flight item is always finished before returning.
        """
        interval = self.settings.worker_interval_seconds if interval is None else interval
        started = time.monotonic()
        total = DrainReport()

        while not is_cancelled(token):
            if before_drain is not None:
                before_drain()
            total.merge(self.drain(batch_size, token=token))

            if max_runtime is not None and time.monotonic() - started >= max_runtime:
                log.info("Runtime budget spent", extra={"max_runtime": max_runtime})
                break
            pause = interval
            if max_runtime is not None:
                pause = min(pause, max(0.0, max_runtime - (time.monotonic() - started)))
            if token is not None:
                if token.wait(pause):
                    break
            else:
                time.sleep(pause)

        total.cancelled = is_cancelled(token)
        return total


__all__ = ["AlertDispatcher", "DrainReport", "compute_backoff"]
