from __future__ import annotations

import os
from dataclasses import dataclass
from pathlib import Path


def _as_bool(value: str | None, default: bool) -> bool:
    if value is None:
        return default
    normalized = value.strip().lower()
    if normalized in {"1", "true", "yes", "on"}:
        return True
    if normalized in {"0", "false", "no", "off"}:
        return False
    return default


def _as_int(value: str | None, default: int, *, minimum: int = 0) -> int:
    if value is None:
        return default
    try:
        parsed = int(value.strip())
    except ValueError:
        return default
    return max(minimum, parsed)


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
    app_name: str = "ZenBilling Notifications"
    api_prefix: str = "/api/v1"
    log_level: str = "INFO"
    mail_provider: str = "stub"
    brevo_api_key: str = ""
    brevo_api_base_url: str = "https://api.brevo.com/v3"
    mail_timeout_seconds: int = 30
    mail_default_sender_name: str = "ZenBilling Notifications"
    mail_default_sender_email: str = "notifications@zenbilling.com"
    mail_fallback_sender_email: str = "noreply@zenbilling.com"
    mail_bulk_max_workers: int = 8
    mail_max_retries: int = 0
    pdf_resource_timeout_seconds: int = 30
    pdf_template_dir: str = ""
    pdf_locale: str = "fr_FR"
    notification_store_backend: str = "inmemory"
    billing_store_backend: str = "inmemory"
    database_url: str = ""
    session_token_secret: str = "dev-session-secret"
    session_token_ttl_minutes: int = 120
    delivery_webhook_signature_mode: str = "log_only"
    delivery_webhook_secret: str = ""
    delivery_webhook_max_age_seconds: int = 300
    runtime_secret_guard_mode: str = "warn"

    @property
    def template_dir(self) -> Path:
        if self.pdf_template_dir.strip():
            return Path(self.pdf_template_dir.strip())
        return Path(__file__).resolve().parent / "templates"


def get_settings() -> Settings:
    return Settings(
        app_name=os.getenv("NOTIFY_APP_NAME", "ZenBilling Notifications"),
        api_prefix=os.getenv("NOTIFY_API_PREFIX", "/api/v1"),
        log_level=os.getenv("LOG_LEVEL", "INFO"),
        mail_provider=_normalize_mode(
            os.getenv("MAIL_PROVIDER"),
            default="stub",
            allowed={"stub", "brevo"},
        ),
        brevo_api_key=os.getenv("BREVO_API_KEY", ""),
        brevo_api_base_url=os.getenv("BREVO_API_BASE_URL", "https://api.brevo.com/v3"),
        mail_timeout_seconds=_as_int(os.getenv("MAIL_TIMEOUT_SECONDS"), 30, minimum=1),
        mail_default_sender_name=os.getenv("MAIL_DEFAULT_SENDER_NAME", "ZenBilling Notifications"),
        mail_default_sender_email=os.getenv("MAIL_DEFAULT_SENDER_EMAIL", "notifications@zenbilling.com"),
        mail_fallback_sender_email=os.getenv("MAIL_FALLBACK_SENDER_EMAIL", "noreply@zenbilling.com"),
        mail_bulk_max_workers=_as_int(os.getenv("MAIL_BULK_MAX_WORKERS"), 8, minimum=1),
        mail_max_retries=_as_int(os.getenv("MAIL_MAX_RETRIES"), 0),
        pdf_resource_timeout_seconds=_as_int(os.getenv("PDF_RESOURCE_TIMEOUT_SECONDS"), 30, minimum=1),
        pdf_template_dir=os.getenv("PDF_TEMPLATE_DIR", ""),
        pdf_locale=os.getenv("PDF_LOCALE", "fr_FR"),
        notification_store_backend=os.getenv("NOTIFICATION_STORE_BACKEND", "inmemory"),
        billing_store_backend=os.getenv("BILLING_STORE_BACKEND", "inmemory"),
        database_url=os.getenv("DATABASE_URL", ""),
        session_token_secret=os.getenv("SESSION_TOKEN_SECRET", "dev-session-secret"),
        session_token_ttl_minutes=_as_int(os.getenv("SESSION_TOKEN_TTL_MINUTES"), 120, minimum=1),
        delivery_webhook_signature_mode=_normalize_mode(
            os.getenv("DELIVERY_WEBHOOK_SIGNATURE_MODE"),
            default="log_only",
            allowed={"off", "log_only", "enforce"},
        ),
        delivery_webhook_secret=os.getenv("DELIVERY_WEBHOOK_SECRET", ""),
        delivery_webhook_max_age_seconds=_as_int(os.getenv("DELIVERY_WEBHOOK_MAX_AGE_SECONDS"), 300),
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
    if settings.mail_provider == "brevo" and not settings.brevo_api_key.strip():
        issues.append("BREVO_API_KEY is required when MAIL_PROVIDER=brevo")
    if settings.delivery_webhook_signature_mode == "enforce" and not settings.delivery_webhook_secret.strip():
        issues.append("DELIVERY_WEBHOOK_SECRET is required when DELIVERY_WEBHOOK_SIGNATURE_MODE=enforce")
    for label, backend in (
        ("NOTIFICATION_STORE_BACKEND", settings.notification_store_backend),
        ("BILLING_STORE_BACKEND", settings.billing_store_backend),
    ):
        if backend.strip().lower() == "postgres" and not settings.database_url.strip():
            issues.append(f"DATABASE_URL is required when {label}=postgres")
    return tuple(issues)
