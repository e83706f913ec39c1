"""
Alert matcher.

For each due saved search: take its lease, find listings created after the
watermark, enqueue them, and only then advance the watermark to the moment
the pass began. A crash between enqueue and advance means the next pass
re-evaluates the same window; enqueueing is idempotent so nothing is sent
twice and nothing is lost.
"""
from __future__ import annotations

import logging
import os
import socket
import uuid
from dataclasses import asdict, dataclass, field
from datetime import datetime, timedelta
from typing import Callable, Dict, List, Optional

from core.cancel import CancellationToken, is_cancelled
from core.clock import to_db, utcnow
from core.config import Settings
from core.db.alerts import enqueue_alert_items
from core.db.base import Database
from core.db.saved_searches import (
    acquire_match_lease,
    complete_match_pass,
    get_due_saved_searches,
    release_match_lease,
)
from core.errors import StoreUnavailable
from core.models import SavedSearch
from core.search.engine import SearchEngine

log = logging.getLogger(__name__)


def worker_identity(prefix: str) -> str:
    return f"{prefix}-{socket.gethostname()}-{os.getpid()}-{uuid.uuid4().hex[:8]}"


@dataclass
class MatchReport:
    evaluated: int = 0
    skipped: int = 0
    matched: int = 0
    enqueued: int = 0
    advanced: int = 0
    errors: int = 0
    cancelled: bool = False
    dry_run: bool = False
    planned: List[Dict] = field(default_factory=list)

    def to_dict(self) -> Dict:
        return asdict(self)


class AlertMatcher:
    def __init__(
        self,
        db: Database,
        engine: SearchEngine,
        settings: Settings,
        clock: Callable[[], datetime] = utcnow,
        owner: Optional[str] = None,
    ):
        self.db = db
        self.engine = engine
        self.settings = settings
        self.clock = clock
        self.owner = owner or worker_identity("matcher")

    def since_for(self, saved: SavedSearch) -> Optional[datetime]:
        """Lower bound (exclusive) on created_at for this saved search."""
        since = saved.last_notified_at or saved.created_at
        if since is not None and self.settings.alert_watermark_skew_seconds > 0:
            since -= timedelta(seconds=self.settings.alert_watermark_skew_seconds)
        return since

    def run(
        self,
        token: Optional[CancellationToken] = None,
        limit: Optional[int] = None,
        dry_run: bool = False,
    ) -> MatchReport:
        pass_start = self.clock()
        report = MatchReport(dry_run=dry_run)

        due = get_due_saved_searches(
            self.db,
            now=pass_start,
            min_interval_seconds=self.settings.alert_min_interval_seconds,
            limit=limit,
        )
        log.info("Match pass started", extra={"due": len(due), "dry_run": dry_run})

        for saved in due:
            if is_cancelled(token):
                report.cancelled = True
                log.info("Match pass cancelled", extra={"reason": token.reason})
                break
            try:
                if dry_run:
                    self._plan(saved, report)
                else:
                    self._match_one(saved, pass_start, report)
            except StoreUnavailable:
                raise
            except Exception:
                report.errors += 1
                log.exception("Saved search evaluation failed", extra={"saved_search_id": saved.id})

        log.info(
            "Match pass complete",
            extra={k: v for k, v in report.to_dict().items() if k != "planned"},
        )
        return report

    def _plan(self, saved: SavedSearch, report: MatchReport) -> None:
        matches = self.engine.find_new_matches(saved.descriptor, since=self.since_for(saved))
        report.evaluated += 1
        report.matched += len(matches)
        report.planned.append(
            {
                "saved_search_id": saved.id,
                "name": saved.name,
                "since": to_db(self.since_for(saved)),
                "listing_ids": [l.id for l in matches],
            }
        )

    def _match_one(self, saved: SavedSearch, pass_start: datetime, report: MatchReport) -> None:
        leased = acquire_match_lease(
            self.db,
            saved.id,
            owner=self.owner,
            now=self.clock(),
            lease_seconds=self.settings.alert_lease_seconds,
        )
        if leased is None:
            report.skipped += 1
            log.info("Saved search leased by another matcher", extra={"saved_search_id": saved.id})
            return

        try:
            # re-read after taking the lease: another matcher may have advanced it
            matches = self.engine.find_new_matches(leased.descriptor, since=self.since_for(leased))
            inserted = enqueue_alert_items(
                self.db,
                saved_search_id=leased.id,
                user_id=leased.user_id,
                listing_ids=[l.id for l in matches],
                now=self.clock(),
                max_attempts=self.settings.alert_max_attempts,
            )
        except Exception:
            self._release_quietly(leased.id)
            raise

        report.evaluated += 1
        report.matched += len(matches)
        report.enqueued += len(inserted)

        if complete_match_pass(self.db, leased.id, owner=self.owner, watermark=pass_start):
            report.advanced += 1
        else:
            log.warning("Match lease lost before watermark advance", extra={"saved_search_id": leased.id})

        if inserted:
            log.info(
                "Alert items enqueued",
                extra={"saved_search_id": leased.id, "matched": len(matches), "enqueued": len(inserted)},
            )

    def _release_quietly(self, saved_search_id: int) -> None:
        try:
            release_match_lease(self.db, saved_search_id, owner=self.owner)
        except StoreUnavailable:
            log.warning("Could not release match lease; it will expire", extra={"saved_search_id": saved_search_id})


__all__ = ["AlertMatcher", "MatchReport", "worker_identity"]
