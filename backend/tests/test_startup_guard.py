from __future__ import annotations

import logging
import os

import pytest

from marketplace_messaging.config import Settings
from marketplace_messaging.main import create_app


def _set_env(overrides: dict[str, str | None]) -> dict[str, str | None]:
    previous: dict[str, str | None] = {}
    for key, value in overrides.items():
        previous[key] = os.environ.get(key)
        if value is None:
            os.environ.pop(key, None)
        else:
            os.environ[key] = value
    return previous


def _restore_env(previous: dict[str, str | None]) -> None:
    for key, value in previous.items():
        if value is None:
            os.environ.pop(key, None)
        else:
            os.environ[key] = value


def test_create_app_starts_with_production_secrets_in_enforce_mode() -> None:
    previous = _set_env(
        {
            "SESSION_TOKEN_SECRET": "prod-session-secret-001",
            "RUNTIME_SECRET_GUARD_MODE": "enforce",
            "REALTIME_NOTIFIER_TYPE": "stub",
            "MESSAGING_STORE_BACKEND": "inmemory",
            "DIRECTORY_BACKEND": "inmemory",
            "MESSAGING_APP_NAME": None,
        }
    )
    try:
        app = create_app()
        assert app.title == "Marketplace Messaging"
    finally:
        _restore_env(previous)


def test_create_app_blocks_placeholder_secret_in_enforce_mode() -> None:
    previous = _set_env(
        {
            "SESSION_TOKEN_SECRET": None,
            "RUNTIME_SECRET_GUARD_MODE": "enforce",
        }
    )
    try:
        with pytest.raises(RuntimeError) as exc_info:
            create_app()
        message = str(exc_info.value)
        assert "SESSION_TOKEN_SECRET is empty or uses a development placeholder" in message
        assert "Remediation" in message
    finally:
        _restore_env(previous)


def test_create_app_blocks_http_notifier_without_gateway() -> None:
    settings = Settings(
        session_token_secret="prod-session-secret-001",
        runtime_secret_guard_mode="enforce",
        realtime_notifier_type="http",
    )

    with pytest.raises(RuntimeError, match="REALTIME_GATEWAY_URL is required"):
        create_app(settings)


def test_create_app_only_warns_in_warn_mode(caplog: pytest.LogCaptureFixture) -> None:
    with caplog.at_level(logging.WARNING, logger="marketplace_messaging.main"):
        app = create_app(Settings(runtime_secret_guard_mode="warn"))

    assert app.title == "Marketplace Messaging"
    assert any("runtime secret guard warning" in record.getMessage() for record in caplog.records)
