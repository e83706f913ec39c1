import asyncio
import logging
import signal
from typing import Optional, Tuple

from dotenv import load_dotenv

from app.email_utils import build_transport
from core.alerts import AlertDispatcher, AlertMatcher, DrainReport, MatchReport
from core.cancel import CancellationToken
from core.config import Settings
from core.db import Database, init_db
from core.errors import StoreUnavailable
from core.search import SearchEngine

# Load `.env` for local/dev runs (override=True so updates take effect after restart).
load_dotenv(override=True)

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
)
log = logging.getLogger("worker")


def build_pipeline(settings: Settings, db: Database, transport=None) -> Tuple[AlertMatcher, AlertDispatcher]:
    engine = SearchEngine(db, settings)
    matcher = AlertMatcher(db, engine, settings)
    dispatcher = AlertDispatcher(db, transport or build_transport(settings), settings)
    return matcher, dispatcher


def run_once(
    matcher: AlertMatcher,
    dispatcher: AlertDispatcher,
    token: Optional[CancellationToken] = None,
) -> Tuple[MatchReport, DrainReport]:
    """
    One full cycle:
    - match every due saved search and enqueue new listings
    - drain one batch of the notification queue
    """
    matches = matcher.run(token=token)
    drained = DrainReport()
    if not token or not token.cancelled:
        drained = dispatcher.drain(token=token)
    return matches, drained


def install_signal_handlers(token: CancellationToken) -> None:
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, token.cancel, sig.name)
        except (NotImplementedError, RuntimeError):
            # not available on this platform / outside the main thread
            pass


async def main(
    settings: Optional[Settings] = None,
    *,
    once: bool = False,
    token: Optional[CancellationToken] = None,
    transport=None,
) -> int:
    settings = settings or Settings.from_env()
    logging.getLogger().setLevel(settings.log_level)

    db = Database(settings.database_url)
    init_db(db)
    matcher, dispatcher = build_pipeline(settings, db, transport)

    token = token or CancellationToken()
    install_signal_handlers(token)

    while not token.cancelled:
        try:
            await asyncio.to_thread(run_once, matcher, dispatcher, token)
        except StoreUnavailable as e:
            log.error("Store unavailable, will retry next cycle", extra={"error": str(e)})
        except Exception as e:
            log.exception("Error during run", extra={"error": str(e)})

        if once:
            break

        log.info("Sleeping", extra={"seconds": settings.worker_interval_seconds})
        await asyncio.to_thread(token.wait, settings.worker_interval_seconds)

    log.info("Worker stopped", extra={"reason": token.reason or "once"})
    return 0


if __name__ == "__main__":
    asyncio.run(main())
