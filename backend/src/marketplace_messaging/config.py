from __future__ import annotations

import os
from dataclasses import dataclass


def _as_bool(value: str | None, default: bool) -> bool:
    if value is None:
        return default
    normalized = value.strip().lower()
    if normalized in {"1", "true", "yes", "on"}:
        return True
    if normalized in {"0", "false", "no", "off"}:
        return False
    return default


def _as_int(value: str | None, default: int) -> int:
    if value is None:
        return default
    try:
        return int(value.strip())
    except ValueError:
        return default


def _as_float(value: str | None, default: float) -> float:
    if value is None:
        return default
    try:
        return float(value.strip())
    except ValueError:
        return default


def _as_csv_tuple(value: str | None) -> tuple[str, ...]:
    if value is None:
        return ()
    items = [item.strip() for item in value.split(",")]
    return tuple(item for item in items if item)


def _normalize_mode(value: str | None, *, default: str, allowed: set[str]) -> str:
    if value is None:
        return default
    normalized = value.strip().lower()
    return normalized if normalized in allowed else default


def _is_placeholder(value: str, *, defaults: set[str]) -> bool:
    normalized = value.strip()
    if not normalized:
        return True
    if normalized in defaults:
        return True
    lower = normalized.lower()
    return lower in {"change-me", "replace-me", "placeholder", "changeme"}


@dataclass(frozen=True)
class Settings:
    app_name: str = "Marketplace Messaging"
    api_prefix: str = "/api/v1"
    log_level: str = "INFO"
    messaging_store_backend: str = "inmemory"
    directory_backend: str = "inmemory"
    database_url: str = ""
    message_max_length: int = 2000
    conceal_missing_threads: bool = True
    message_rate_limit_max: int = 100
    message_rate_limit_window_seconds: int = 60
    thread_page_limit_max: int = 100
    # Real-time delivery to per-user socket channels.
    realtime_notifier_type: str = "stub"
    realtime_gateway_url: str = ""
    realtime_gateway_api_key: str = ""
    realtime_timeout_seconds: float = 2.0
    realtime_max_workers: int = 4
    realtime_max_pending: int = 1000
    realtime_event_names: tuple[str, ...] = ("receive_message", "receive-message")
    session_token_secret: str = "dev-session-secret"
    cors_allowed_origins: tuple[str, ...] = ("http://localhost:3000",)
    runtime_secret_guard_mode: str = "warn"

    @property
    def uses_sql_store(self) -> bool:
        return self.messaging_store_backend.strip().lower() == "postgres"


def get_settings() -> Settings:
    return Settings(
        app_name=os.getenv("MESSAGING_APP_NAME", "Marketplace Messaging"),
        api_prefix=os.getenv("MESSAGING_API_PREFIX", "/api/v1"),
        log_level=os.getenv("LOG_LEVEL", "INFO").strip().upper() or "INFO",
        messaging_store_backend=os.getenv("MESSAGING_STORE_BACKEND", "inmemory"),
        directory_backend=os.getenv("DIRECTORY_BACKEND", "inmemory"),
        database_url=os.getenv("DATABASE_URL", ""),
        message_max_length=_as_int(os.getenv("MESSAGE_MAX_LENGTH"), 2000),
        conceal_missing_threads=_as_bool(os.getenv("MESSAGING_CONCEAL_MISSING_THREADS"), True),
        message_rate_limit_max=_as_int(os.getenv("MESSAGE_RATE_LIMIT_MAX"), 100),
        message_rate_limit_window_seconds=_as_int(os.getenv("MESSAGE_RATE_LIMIT_WINDOW_SECONDS"), 60),
        thread_page_limit_max=_as_int(os.getenv("THREAD_PAGE_LIMIT_MAX"), 100),
        realtime_notifier_type=_normalize_mode(
            os.getenv("REALTIME_NOTIFIER_TYPE"),
            default="stub",
            allowed={"stub", "http", "disabled"},
        ),
        realtime_gateway_url=os.getenv("REALTIME_GATEWAY_URL", ""),
        realtime_gateway_api_key=os.getenv("REALTIME_GATEWAY_API_KEY", ""),
        realtime_timeout_seconds=_as_float(os.getenv("REALTIME_TIMEOUT_SECONDS"), 2.0),
        realtime_max_workers=max(1, _as_int(os.getenv("REALTIME_MAX_WORKERS"), 4)),
        realtime_max_pending=max(1, _as_int(os.getenv("REALTIME_MAX_PENDING"), 1000)),
        realtime_event_names=_as_csv_tuple(os.getenv("REALTIME_EVENT_NAMES"))
        or ("receive_message", "receive-message"),
        session_token_secret=os.getenv("SESSION_TOKEN_SECRET", "dev-session-secret"),
        cors_allowed_origins=_as_csv_tuple(os.getenv("CORS_ALLOWED_ORIGINS"))
        or ("http://localhost:3000",),
        runtime_secret_guard_mode=_normalize_mode(
            os.getenv("RUNTIME_SECRET_GUARD_MODE"),
            default="warn",
            allowed={"off", "warn", "enforce"},
        ),
    )


def runtime_secret_issues(settings: Settings) -> tuple[str, ...]:
    issues: list[str] = []
    if _is_placeholder(
        settings.session_token_secret,
        defaults={"dev-session-secret", "change-me-in-production"},
    ):
        issues.append("SESSION_TOKEN_SECRET is empty or uses a development placeholder")
    if settings.uses_sql_store and not settings.database_url.strip():
        issues.append("DATABASE_URL is required when MESSAGING_STORE_BACKEND=postgres")
    if settings.directory_backend.strip().lower() == "postgres" and not settings.database_url.strip():
        issues.append("DATABASE_URL is required when DIRECTORY_BACKEND=postgres")
    if settings.realtime_notifier_type == "http":
        if not settings.realtime_gateway_url.strip():
            issues.append("REALTIME_GATEWAY_URL is required when REALTIME_NOTIFIER_TYPE=http")
        if not settings.realtime_gateway_api_key.strip():
            issues.append("REALTIME_GATEWAY_API_KEY is required when REALTIME_NOTIFIER_TYPE=http")
    return tuple(issues)
