from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Iterable, Literal

from .models import BrevoWebhookEvent, DeliveryEvent, NotificationStatus, WebhookIngestResponse
from .notification_store import NotificationRepository

logger = logging.getLogger(__name__)

ApplyOutcome = Literal["applied", "duplicate", "stale", "discarded"]

# ``None`` marks informational provider events that never change a status.
BREVO_EVENT_MAP: dict[str, DeliveryEvent | None] = {
    "delivered": "delivered",
    "opened": "opened",
    "unique_opened": "opened",
    "proxy_open": "opened",
    "click": "clicked",
    "hard_bounce": "bounced",
    "soft_bounce": "bounced",
    "blocked": "bounced",
    "invalid_email": "bounced",
    "spam": "bounced",
    "error": "failed",
    "request": None,
    "deferred": None,
}

# Statuses each event may advance from; engagement only moves forward,
# ``bounced``/``failed`` divert from any live status and are terminal.
_LIVE_STATUSES: tuple[NotificationStatus, ...] = ("pending", "sent", "delivered", "opened", "clicked")

_ALLOWED_FROM: dict[DeliveryEvent, tuple[NotificationStatus, ...]] = {
    "delivered": ("pending", "sent"),
    "opened": ("pending", "sent", "delivered"),
    "clicked": ("pending", "sent", "delivered", "opened"),
    "bounced": _LIVE_STATUSES,
    "failed": _LIVE_STATUSES,
}


def _event_time(event: BrevoWebhookEvent) -> datetime:
    if event.ts_event is not None:
        return datetime.fromtimestamp(event.ts_event, tz=timezone.utc)
    if event.date:
        try:
            parsed = datetime.fromisoformat(event.date)
        except ValueError:
            logger.debug("Unparseable event date %r, using receive time", event.date)
        else:
            return parsed if parsed.tzinfo else parsed.replace(tzinfo=timezone.utc)
    return datetime.now(timezone.utc)


class LifecycleTracker:
    """Advances notification statuses from provider delivery events."""

    def __init__(self, *, repository: NotificationRepository) -> None:
        self._repository = repository

    def apply(self, message_id: str, event: DeliveryEvent, *, occurred_at: datetime | None = None) -> ApplyOutcome:
        record = self._repository.find_by_external_id(message_id)
        if record is None:
            logger.warning("Discarding %s event for unknown message id %s", event, message_id)
            return "discarded"

        if not self._repository.record_event(
            record.notification_id,
            event,
            occurred_at=occurred_at or datetime.now(timezone.utc),
        ):
            logger.info("Ignoring duplicate %s event for notification %s", event, record.notification_id)
            return "duplicate"

        if self._repository.advance_status(record.notification_id, event, allowed_from=_ALLOWED_FROM[event]):
            logger.info("Notification %s moved from %s to %s", record.notification_id, record.status, event)
            return "applied"
        logger.info(
            "Notification %s kept status %s on late %s event",
            record.notification_id,
            record.status,
            event,
        )
        return "stale"

    def ingest(self, events: Iterable[BrevoWebhookEvent]) -> WebhookIngestResponse:
        accepted = 0
        ignored = 0
        discarded = 0
        for event in events:
            name = event.event.strip().lower()
            if name not in BREVO_EVENT_MAP:
                logger.warning("Discarding unknown provider event %r", event.event)
                discarded += 1
                continue
            mapped = BREVO_EVENT_MAP[name]
            if mapped is None:
                ignored += 1
                continue
            if not event.message_id:
                logger.warning("Discarding %s event without message id", name)
                discarded += 1
                continue
            try:
                outcome = self.apply(event.message_id, mapped, occurred_at=_event_time(event))
            except Exception:  # noqa: BLE001
                logger.exception("Failed to apply %s event for message id %s", name, event.message_id)
                discarded += 1
                continue
            if outcome == "discarded":
                discarded += 1
            else:
                accepted += 1
        return WebhookIngestResponse(accepted=accepted, ignored=ignored, discarded=discarded)
