import logging
from contextlib import asynccontextmanager
from typing import Optional

from dotenv import load_dotenv
from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse

from app.routes import saved_searches, search
from app.security import SlidingWindowLimiter
from core.config import Settings
from core.db import Database, init_db
from core.db.alerts import get_queue_counts
from core.errors import (
    Forbidden,
    NotFound,
    RateLimited,
    SearchServiceError,
    StoreUnavailable,
    Unauthorized,
    ValidationError,
)
from core.search import SearchEngine, SuggestionService, build_cache

# Ensure .env values are loaded even if uvicorn is launched without `dotenv run`.
# Use override=True so editing `.env` (and restarting uvicorn) reliably takes effect even if
# older values exist in the environment from a previous shell/session.
load_dotenv(override=True)

log = logging.getLogger(__name__)

STATUS_CODES = {
    ValidationError: 400,
    Unauthorized: 401,
    Forbidden: 403,
    NotFound: 404,
    RateLimited: 429,
    StoreUnavailable: 503,
}


def _status_for(exc: SearchServiceError) -> int:
    for cls, status in STATUS_CODES.items():
        if isinstance(exc, cls):
            return status
    return 500


async def add_security_headers(request: Request, call_next):
    response = await call_next(request)
    response.headers.setdefault("X-Content-Type-Options", "nosniff")
    response.headers.setdefault("X-Frame-Options", "SAMEORIGIN")
    response.headers.setdefault(
        "Content-Security-Policy",
        "default-src 'self'; img-src 'self' data:; style-src 'self' 'unsafe-inline'; script-src 'self'; "
        "font-src 'self' data:; connect-src 'self';",
    )
    return response


def create_app(settings: Optional[Settings] = None) -> FastAPI:
    settings = settings or Settings.from_env()
    db = Database(settings.database_url)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        init_db(db)
        yield

    app = FastAPI(title="Bazar search", lifespan=lifespan)

    cache = build_cache(settings)
    app.state.settings = settings
    app.state.db = db
    app.state.cache = cache
    app.state.engine = SearchEngine(db, settings)
    app.state.suggestions = SuggestionService(db, cache, settings.search_max_query_length)
    app.state.rate_limiter = SlidingWindowLimiter(settings.rate_limit_requests, settings.rate_limit_window_seconds)

    app.include_router(search.router)
    app.include_router(saved_searches.router)
    app.include_router(saved_searches.unsubscribe_router)

    @app.exception_handler(SearchServiceError)
    async def service_error(request: Request, exc: SearchServiceError):
        status = _status_for(exc)
        if isinstance(exc, ValidationError):
            body = exc.to_dict()
        else:
            body = {"error": exc.code, "field": None, "message": str(exc)}
        if status >= 500:
            log.error("Request failed", extra={"path": request.url.path, "error": str(exc)})
        return JSONResponse(body, status_code=status)

    @app.exception_handler(RequestValidationError)
    async def request_validation_error(request: Request, exc: RequestValidationError):
        errors = exc.errors()
        first = errors[0] if errors else {}
        loc = [str(part) for part in first.get("loc", ()) if part not in ("body", "query", "path")]
        return JSONResponse(
            {
                "error": ValidationError.code,
                "field": loc[-1] if loc else None,
                "message": first.get("msg", "Invalid request"),
            },
            status_code=400,
        )

    @app.get("/health")
    def health():
        """
        Basic health check for the app.
        """
        try:
            return {"status": "ok", "cache": cache.backend.name, "queue": get_queue_counts(db)}
        except StoreUnavailable as e:
            return JSONResponse({"status": "error", "detail": str(e)}, status_code=503)

    app.middleware("http")(add_security_headers)
    return app


app = create_app()
