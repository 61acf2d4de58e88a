from __future__ import annotations

import os

import pytest

from billing_notifications.main import create_app


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


def _base_runtime_secret_env() -> dict[str, str | None]:
    return {
        "SESSION_TOKEN_SECRET": "prod-session-secret-001",
        "RUNTIME_SECRET_GUARD_MODE": "enforce",
        "MAIL_PROVIDER": "stub",
        "DELIVERY_WEBHOOK_SIGNATURE_MODE": "log_only",
        "NOTIFICATION_STORE_BACKEND": None,
        "BILLING_STORE_BACKEND": None,
        "NOTIFY_APP_NAME": None,
    }


def test_create_app_starts_with_valid_secrets() -> None:
    previous = _set_env(_base_runtime_secret_env())
    try:
        app = create_app()
        assert app.title == "ZenBilling Notifications"
    finally:
        _restore_env(previous)


def test_create_app_blocks_on_placeholder_session_secret() -> None:
    previous = _set_env({**_base_runtime_secret_env(), "SESSION_TOKEN_SECRET": "change-me"})
    try:
        with pytest.raises(RuntimeError) as exc_info:
            create_app()
        assert "SESSION_TOKEN_SECRET" in str(exc_info.value)
    finally:
        _restore_env(previous)


def test_create_app_blocks_brevo_without_api_key() -> None:
    previous = _set_env({**_base_runtime_secret_env(), "MAIL_PROVIDER": "brevo", "BREVO_API_KEY": None})
    try:
        with pytest.raises(RuntimeError) as exc_info:
            create_app()
        message = str(exc_info.value)
        assert "BREVO_API_KEY is required" in message
        assert "MAIL_PROVIDER=stub" in message
    finally:
        _restore_env(previous)


def test_warn_mode_still_starts() -> None:
    previous = _set_env({**_base_runtime_secret_env(), "RUNTIME_SECRET_GUARD_MODE": "warn", "SESSION_TOKEN_SECRET": None})
    try:
        assert create_app().title == "ZenBilling Notifications"
    finally:
        _restore_env(previous)
