from __future__ import annotations

from datetime import datetime, timedelta, timezone
from pathlib import Path

import pytest

from billing_notifications.errors import NotFoundError
from billing_notifications.models import HistoryFilter
from billing_notifications.notification_store import (
    InMemoryNotificationRepository,
    NotificationRepository,
    SqlAlchemyNotificationRepository,
    create_notification_repository,
)


@pytest.fixture(params=["inmemory", "sqlite"])
def repository(request, tmp_path: Path) -> NotificationRepository:
    if request.param == "sqlite":
        return SqlAlchemyNotificationRepository(f"sqlite:///{tmp_path / 'notifications.db'}")
    return InMemoryNotificationRepository()


def _make_fields(**overrides) -> dict:
    fields = {
        "type": "custom",
        "user_id": "user-001",
        "company_id": "company-001",
        "sender_name": "ZenBilling Notifications",
        "sender_email": "notifications@zenbilling.com",
        "recipient_email": "client@example.com",
        "subject": "Bonjour",
        "html_content": "<p>Bonjour</p>",
    }
    fields.update(overrides)
    return fields


def test_create_defaults_to_pending(repository: NotificationRepository) -> None:
    record = repository.create(**_make_fields(metadata='{"source": "test"}'))

    stored = repository.get(record.notification_id)
    assert stored is not None
    assert stored.status == "pending"
    assert stored.priority == 5
    assert stored.sent_at is None
    assert stored.external_id is None
    assert stored.metadata == '{"source": "test"}'
    assert stored.created_at.tzinfo is not None


def test_create_rejects_invoice_and_quote_link(repository: NotificationRepository) -> None:
    with pytest.raises(ValueError):
        repository.create(**_make_fields(invoice_id="inv-001", quote_id="quote-001"))


def test_update_marks_sent_and_indexes_external_id(repository: NotificationRepository) -> None:
    record = repository.create(**_make_fields())
    sent_at = datetime(2024, 3, 1, 12, 0, tzinfo=timezone.utc)

    updated = repository.update(record.notification_id, status="sent", sent_at=sent_at, external_id="msg-1")

    assert updated.status == "sent"
    assert updated.sent_at == sent_at
    found = repository.find_by_external_id("msg-1")
    assert found is not None
    assert found.notification_id == record.notification_id
    assert repository.find_by_external_id("msg-unknown") is None


def test_update_rejects_immutable_fields(repository: NotificationRepository) -> None:
    record = repository.create(**_make_fields())

    with pytest.raises(ValueError):
        repository.update(record.notification_id, recipient_email="other@example.com")


def test_update_missing_notification(repository: NotificationRepository) -> None:
    with pytest.raises(NotFoundError):
        repository.update("missing", status="sent")


def test_advance_status_respects_allowed_sources(repository: NotificationRepository) -> None:
    record = repository.create(**_make_fields())

    assert repository.advance_status(record.notification_id, "delivered", allowed_from=("sent",)) is False
    assert repository.advance_status(record.notification_id, "delivered", allowed_from=("pending", "sent")) is True
    assert repository.get(record.notification_id).status == "delivered"
    assert repository.advance_status("missing", "delivered", allowed_from=("pending",)) is False


def test_record_event_is_idempotent(repository: NotificationRepository) -> None:
    record = repository.create(**_make_fields())
    occurred_at = datetime(2024, 3, 1, tzinfo=timezone.utc)

    assert repository.record_event(record.notification_id, "opened", occurred_at=occurred_at) is True
    assert repository.record_event(record.notification_id, "opened", occurred_at=occurred_at) is False
    assert repository.record_event(record.notification_id, "clicked", occurred_at=occurred_at) is True


def test_count_by_status_scopes_by_company_and_dates(repository: NotificationRepository) -> None:
    first = repository.create(**_make_fields())
    repository.create(**_make_fields())
    repository.create(**_make_fields(company_id="company-002"))
    repository.update(first.notification_id, status="sent")

    assert repository.count_by_status(company_id="company-001") == {"pending": 1, "sent": 1}
    assert sum(repository.count_by_status().values()) == 3

    future = datetime.now(timezone.utc) + timedelta(days=1)
    assert repository.count_by_status(start_date=future) == {}
    assert sum(repository.count_by_status(end_date=future).values()) == 3


def test_list_page_is_newest_first_and_filtered(repository: NotificationRepository) -> None:
    for index in range(25):
        repository.create(**_make_fields(subject=f"Relance {index}"))
    repository.create(**_make_fields(type="invoice_sent", invoice_id="inv-001"))

    rows, total = repository.list_page(HistoryFilter(type="custom", page=2, limit=10))

    assert total == 25
    assert len(rows) == 10
    assert all(row.type == "custom" for row in rows)
    created = [row.created_at for row in rows]
    assert created == sorted(created, reverse=True)

    last_rows, _ = repository.list_page(HistoryFilter(type="custom", page=3, limit=10))
    assert len(last_rows) == 5


def test_list_page_filters_by_recipient(repository: NotificationRepository) -> None:
    repository.create(**_make_fields(recipient_email="other@example.com"))
    repository.create(**_make_fields())

    rows, total = repository.list_page(HistoryFilter(recipient_email="other@example.com"))

    assert total == 1
    assert rows[0].recipient_email == "other@example.com"


def test_factory_rejects_unknown_backend() -> None:
    with pytest.raises(RuntimeError):
        create_notification_repository(backend="redis", database_url="")
    with pytest.raises(RuntimeError):
        create_notification_repository(backend="postgres", database_url="")
