from __future__ import annotations

from datetime import datetime, timezone

from billing_notifications.lifecycle import LifecycleTracker
from billing_notifications.models import BrevoWebhookEvent
from billing_notifications.notification_store import InMemoryNotificationRepository


def _make_sent_notification(repository: InMemoryNotificationRepository, message_id: str = "<msg-1@relay>") -> str:
    record = repository.create(
        type="custom",
        user_id="user-001",
        company_id="company-001",
        sender_name="ZenBilling Notifications",
        sender_email="notifications@zenbilling.com",
        recipient_email="client@example.com",
        subject="Bonjour",
        html_content="<p>Bonjour</p>",
    )
    repository.update(
        record.notification_id,
        status="sent",
        sent_at=datetime(2024, 3, 1, tzinfo=timezone.utc),
        external_id=message_id,
    )
    return record.notification_id


def _event(name: str, message_id: str | None = "<msg-1@relay>") -> BrevoWebhookEvent:
    payload = {"event": name, "email": "client@example.com", "ts_event": 1709294400}
    if message_id is not None:
        payload["message-id"] = message_id
    return BrevoWebhookEvent.model_validate(payload)


def test_events_advance_status_forward() -> None:
    repository = InMemoryNotificationRepository()
    notification_id = _make_sent_notification(repository)
    tracker = LifecycleTracker(repository=repository)

    assert tracker.apply("<msg-1@relay>", "delivered") == "applied"
    assert tracker.apply("<msg-1@relay>", "opened") == "applied"
    assert tracker.apply("<msg-1@relay>", "clicked") == "applied"

    assert repository.get(notification_id).status == "clicked"


def test_replayed_event_does_not_change_stats() -> None:
    repository = InMemoryNotificationRepository()
    _make_sent_notification(repository)
    tracker = LifecycleTracker(repository=repository)

    tracker.apply("<msg-1@relay>", "delivered")
    once = repository.count_by_status()
    assert tracker.apply("<msg-1@relay>", "delivered") == "duplicate"

    assert repository.count_by_status() == once == {"delivered": 1}


def test_late_event_does_not_move_status_backwards() -> None:
    repository = InMemoryNotificationRepository()
    notification_id = _make_sent_notification(repository)
    tracker = LifecycleTracker(repository=repository)

    tracker.apply("<msg-1@relay>", "opened")

    assert tracker.apply("<msg-1@relay>", "delivered") == "stale"
    assert repository.get(notification_id).status == "opened"


def test_bounced_is_terminal() -> None:
    repository = InMemoryNotificationRepository()
    notification_id = _make_sent_notification(repository)
    tracker = LifecycleTracker(repository=repository)

    tracker.apply("<msg-1@relay>", "bounced")

    assert tracker.apply("<msg-1@relay>", "opened") == "stale"
    assert repository.get(notification_id).status == "bounced"


def test_unknown_message_id_is_discarded() -> None:
    repository = InMemoryNotificationRepository()
    tracker = LifecycleTracker(repository=repository)

    assert tracker.apply("<unknown@relay>", "delivered") == "discarded"


def test_ingest_maps_brevo_event_names() -> None:
    repository = InMemoryNotificationRepository()
    notification_id = _make_sent_notification(repository)
    tracker = LifecycleTracker(repository=repository)

    result = tracker.ingest(
        [
            _event("request"),
            _event("delivered"),
            _event("unique_opened"),
            _event("click"),
            _event("click"),
            _event("deferred"),
            _event("list_addition"),
            _event("delivered", message_id="<unknown@relay>"),
            _event("opened", message_id=None),
        ]
    )

    assert result.model_dump() == {"accepted": 4, "ignored": 2, "discarded": 3}
    assert repository.get(notification_id).status == "clicked"


def test_ingest_hard_bounce() -> None:
    repository = InMemoryNotificationRepository()
    notification_id = _make_sent_notification(repository)
    tracker = LifecycleTracker(repository=repository)

    tracker.ingest([_event("hard_bounce")])

    assert repository.get(notification_id).status == "bounced"


def test_bounce_after_open_diverts_to_bounced() -> None:
    repository = InMemoryNotificationRepository()
    notification_id = _make_sent_notification(repository)
    tracker = LifecycleTracker(repository=repository)

    tracker.apply("<msg-1@relay>", "opened")

    assert tracker.apply("<msg-1@relay>", "bounced") == "applied"
    assert repository.get(notification_id).status == "bounced"
    assert tracker.apply("<msg-1@relay>", "clicked") == "stale"


def test_failure_after_delivery_diverts_to_failed() -> None:
    repository = InMemoryNotificationRepository()
    notification_id = _make_sent_notification(repository)
    tracker = LifecycleTracker(repository=repository)

    tracker.apply("<msg-1@relay>", "delivered")

    assert tracker.apply("<msg-1@relay>", "failed") == "applied"
    assert repository.get(notification_id).status == "failed"
    assert tracker.apply("<msg-1@relay>", "bounced") == "stale"


def test_bounce_after_click_via_webhook() -> None:
    repository = InMemoryNotificationRepository()
    notification_id = _make_sent_notification(repository)
    tracker = LifecycleTracker(repository=repository)

    result = tracker.ingest([_event("click"), _event("spam")])

    assert result.accepted == 2
    assert repository.get(notification_id).status == "bounced"
