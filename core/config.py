"""
Runtime configuration.

Entry points load `.env` (python-dotenv) and build one `Settings` object that
is handed to every component. Nothing below the entry points reads the
environment directly.
"""
from __future__ import annotations

import os
from dataclasses import dataclass, field, replace
from typing import Dict, Mapping, Optional

DEFAULT_DATABASE_URL = "sqlite:///bazar_search.db"


def _env_str(env: Mapping[str, str], key: str, default: str) -> str:
    value = env.get(key)
    if value is None or value.strip() == "":
        return default
    return value.strip()


def _env_int(env: Mapping[str, str], key: str, default: int) -> int:
    raw = env.get(key)
    if raw is None or raw.strip() == "":
        return default
    try:
        return int(raw)
    except ValueError as exc:
        raise RuntimeError(f"{key} must be an integer (got {raw!r})") from exc


def _env_float(env: Mapping[str, str], key: str, default: float) -> float:
    raw = env.get(key)
    if raw is None or raw.strip() == "":
        return default
    try:
        return float(raw)
    except ValueError as exc:
        raise RuntimeError(f"{key} must be a number (got {raw!r})") from exc


@dataclass(frozen=True)
class Settings:
    database_url: str = DEFAULT_DATABASE_URL
    app_url: str = "http://localhost:8000"
    app_secret: str = "change-me"
    log_level: str = "INFO"

    # cache
    cache_backend: str = "memory"  # memory | redis | none
    redis_url: str = "redis://localhost:6379/0"
    cache_max_entries: int = 1024
    cache_ttls: Dict[str, int] = field(
        default_factory=lambda: {
            "search": 300,
            "facets": 3600,
            "suggestions": 600,
            "popular": 86400,
        }
    )

    # search
    search_max_query_length: int = 200
    search_default_page_size: int = 20
    search_max_page_size: int = 50
    search_scan_batch_size: int = 1000
    search_title_weight: float = 2.0
    search_boost_featured: float = 0.2
    search_boost_recency: float = 0.3
    search_recency_half_life_days: float = 7.0
    search_boost_favorites: float = 0.15
    search_favorites_saturation: int = 100

    # alerts
    alert_max_attempts: int = 3
    alert_backoff_base_seconds: int = 60
    alert_backoff_cap_seconds: int = 3600
    alert_batch_size: int = 50
    alert_sending_timeout_seconds: int = 900
    alert_lease_seconds: int = 300
    alert_min_interval_seconds: int = 0
    alert_watermark_skew_seconds: int = 0
    worker_interval_seconds: int = 60

    # http
    rate_limit_requests: int = 120  # per client and window; 0 disables
    rate_limit_window_seconds: int = 60

    # mail
    mail_transport: str = "smtp"  # smtp | log
    smtp_server: str = "smtp.gmail.com"
    smtp_port: int = 587
    email_user: Optional[str] = None
    email_password: Optional[str] = None
    email_from: Optional[str] = None
    smtp_timeout_seconds: float = 30.0

    def ttl_for(self, ttl_class: str) -> int:
        try:
            return int(self.cache_ttls[ttl_class])
        except KeyError as exc:
            raise ValueError(f"Unknown cache TTL class: {ttl_class}") from exc

    def with_overrides(self, **changes) -> "Settings":
        return replace(self, **changes)

    @classmethod
    def from_env(cls, env: Optional[Mapping[str, str]] = None) -> "Settings":
        env = os.environ if env is None else env
        defaults = cls()

        database_url = _env_str(env, "DATABASE_URL", DEFAULT_DATABASE_URL)
        if not database_url.startswith(("postgres://", "postgresql://", "sqlite:///")):
            raise RuntimeError("DATABASE_URL must start with postgres://, postgresql:// or sqlite:///")

        cache_backend = _env_str(env, "CACHE_BACKEND", defaults.cache_backend).lower()
        if cache_backend not in ("memory", "redis", "none"):
            raise RuntimeError("CACHE_BACKEND must be one of: memory, redis, none")

        mail_transport = _env_str(env, "MAIL_TRANSPORT", defaults.mail_transport).lower()
        if mail_transport not in ("smtp", "log"):
            raise RuntimeError("MAIL_TRANSPORT must be one of: smtp, log")

        return cls(
            database_url=database_url,
            app_url=_env_str(env, "APP_URL", defaults.app_url).rstrip("/"),
            app_secret=_env_str(env, "APP_SECRET", defaults.app_secret),
            log_level=_env_str(env, "LOG_LEVEL", defaults.log_level).upper(),
            cache_backend=cache_backend,
            redis_url=_env_str(env, "REDIS_URL", defaults.redis_url),
            cache_max_entries=_env_int(env, "CACHE_MAX_ENTRIES", defaults.cache_max_entries),
            cache_ttls={
                "search": _env_int(env, "CACHE_TTL_SEARCH", 300),
                "facets": _env_int(env, "CACHE_TTL_FACETS", 3600),
                "suggestions": _env_int(env, "CACHE_TTL_SUGGESTIONS", 600),
                "popular": _env_int(env, "CACHE_TTL_POPULAR", 86400),
            },
            search_max_query_length=_env_int(env, "SEARCH_MAX_QUERY_LENGTH", defaults.search_max_query_length),
            search_default_page_size=_env_int(env, "SEARCH_DEFAULT_PAGE_SIZE", defaults.search_default_page_size),
            search_scan_batch_size=_env_int(env, "SEARCH_SCAN_BATCH_SIZE", defaults.search_scan_batch_size),
            search_title_weight=_env_float(env, "SEARCH_TITLE_WEIGHT", defaults.search_title_weight),
            search_boost_featured=_env_float(env, "SEARCH_BOOST_FEATURED", defaults.search_boost_featured),
            search_boost_recency=_env_float(env, "SEARCH_BOOST_RECENCY", defaults.search_boost_recency),
            search_recency_half_life_days=_env_float(
                env, "SEARCH_RECENCY_HALF_LIFE_DAYS", defaults.search_recency_half_life_days
            ),
            search_boost_favorites=_env_float(env, "SEARCH_BOOST_FAVORITES", defaults.search_boost_favorites),
            alert_max_attempts=_env_int(env, "ALERT_MAX_ATTEMPTS", defaults.alert_max_attempts),
            alert_backoff_base_seconds=_env_int(env, "ALERT_BACKOFF_BASE_SECONDS", defaults.alert_backoff_base_seconds),
            alert_backoff_cap_seconds=_env_int(env, "ALERT_BACKOFF_CAP_SECONDS", defaults.alert_backoff_cap_seconds),
            alert_batch_size=_env_int(env, "ALERT_BATCH_SIZE", defaults.alert_batch_size),
            alert_sending_timeout_seconds=_env_int(
                env, "ALERT_SENDING_TIMEOUT_SECONDS", defaults.alert_sending_timeout_seconds
            ),
            alert_lease_seconds=_env_int(env, "ALERT_LEASE_SECONDS", defaults.alert_lease_seconds),
            alert_min_interval_seconds=_env_int(env, "ALERT_MIN_INTERVAL_SECONDS", defaults.alert_min_interval_seconds),
            alert_watermark_skew_seconds=_env_int(
                env, "ALERT_WATERMARK_SKEW_SECONDS", defaults.alert_watermark_skew_seconds
            ),
            worker_interval_seconds=_env_int(env, "WORKER_INTERVAL_SECONDS", defaults.worker_interval_seconds),
            rate_limit_requests=_env_int(env, "RATE_LIMIT_REQUESTS", defaults.rate_limit_requests),
            rate_limit_window_seconds=_env_int(env, "RATE_LIMIT_WINDOW", defaults.rate_limit_window_seconds),
            mail_transport=mail_transport,
            smtp_server=_env_str(env, "SMTP_SERVER", defaults.smtp_server),
            smtp_port=_env_int(env, "SMTP_PORT", defaults.smtp_port),
            email_user=env.get("EMAIL_USER") or None,
            email_password=env.get("EMAIL_PASSWORD") or None,
            email_from=env.get("EMAIL_FROM") or None,
            smtp_timeout_seconds=_env_float(env, "SMTP_TIMEOUT_SECONDS", defaults.smtp_timeout_seconds),
        )


__all__ = ["Settings", "DEFAULT_DATABASE_URL"]
