from __future__ import annotations

import hashlib
import hmac
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Mapping

from .config import Settings


@dataclass(frozen=True)
class WebhookSignatureVerification:
    verified: bool
    reason: str | None = None


def _normalize_signature(value: str | None) -> str | None:
    if value is None:
        return None
    normalized = value.strip()
    if not normalized:
        return None
    if normalized.startswith("sha256="):
        return normalized.removeprefix("sha256=").strip().lower()
    return normalized.lower()


def sign_delivery_webhook(*, secret: str, timestamp: int, body: bytes) -> str:
    signing_payload = f"{timestamp}.".encode("utf-8") + body
    return hmac.new(secret.encode("utf-8"), signing_payload, hashlib.sha256).hexdigest()


def verify_delivery_webhook_signature(
    *,
    settings: Settings,
    body: bytes,
    headers: Mapping[str, str],
    now: datetime | None = None,
) -> WebhookSignatureVerification:
    """Check ``X-Webhook-Signature`` (hex HMAC-SHA256 of ``"{timestamp}." + body``)."""
    if settings.delivery_webhook_signature_mode == "off":
        return WebhookSignatureVerification(verified=True)

    secret = settings.delivery_webhook_secret.strip()
    if not secret:
        return WebhookSignatureVerification(verified=False, reason="webhook_secret_missing")

    timestamp_text = headers.get("X-Webhook-Timestamp")
    signature_text = headers.get("X-Webhook-Signature")
    if not timestamp_text:
        return WebhookSignatureVerification(verified=False, reason="timestamp_missing")
    if not signature_text:
        return WebhookSignatureVerification(verified=False, reason="signature_missing")

    try:
        timestamp = int(timestamp_text)
    except ValueError:
        return WebhookSignatureVerification(verified=False, reason="timestamp_invalid")

    current_time = now or datetime.now(timezone.utc)
    max_age = max(0, settings.delivery_webhook_max_age_seconds)
    if abs(int(current_time.timestamp()) - timestamp) > max_age:
        return WebhookSignatureVerification(verified=False, reason="timestamp_out_of_window")

    normalized_signature = _normalize_signature(signature_text)
    if normalized_signature is None:
        return WebhookSignatureVerification(verified=False, reason="signature_invalid")

    expected_signature = sign_delivery_webhook(secret=secret, timestamp=timestamp, body=body)
    if not hmac.compare_digest(normalized_signature, expected_signature):
        return WebhookSignatureVerification(verified=False, reason="signature_mismatch")

    return WebhookSignatureVerification(verified=True)
