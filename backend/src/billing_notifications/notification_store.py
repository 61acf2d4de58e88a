from __future__ import annotations

import uuid
from dataclasses import dataclass, replace
from datetime import datetime, timezone
from threading import Lock
from typing import Any, Iterable, Protocol

from sqlalchemy import DateTime, Integer, String, Text, UniqueConstraint, create_engine, func, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, sessionmaker

from .errors import NotFoundError
from .models import DEFAULT_PRIORITY, HistoryFilter, NotificationStatus, NotificationType


def _now_utc() -> datetime:
    return datetime.now(timezone.utc)


def _coerce_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def _coerce_optional_utc(value: datetime | None) -> datetime | None:
    return _coerce_utc(value) if value is not None else None


@dataclass
class NotificationRecord:
    notification_id: str
    type: NotificationType
    status: NotificationStatus
    user_id: str
    company_id: str
    sender_name: str
    sender_email: str
    recipient_email: str
    subject: str
    html_content: str
    created_at: datetime
    updated_at: datetime
    recipient_name: str | None = None
    customer_id: str | None = None
    invoice_id: str | None = None
    quote_id: str | None = None
    text_content: str | None = None
    variables: str | None = None
    metadata: str | None = None
    priority: int = DEFAULT_PRIORITY
    scheduled_at: datetime | None = None
    sent_at: datetime | None = None
    external_id: str | None = None


_MUTABLE_FIELDS = frozenset(
    {"status", "sent_at", "external_id", "html_content", "text_content", "metadata", "scheduled_at"}
)


class NotificationRepository(Protocol):
    def reset(self) -> None: ...

    def create(self, **fields: Any) -> NotificationRecord: ...

    def get(self, notification_id: str) -> NotificationRecord | None: ...

    def update(self, notification_id: str, **changes: Any) -> NotificationRecord: ...

    def advance_status(
        self,
        notification_id: str,
        new_status: NotificationStatus,
        *,
        allowed_from: Iterable[NotificationStatus],
    ) -> bool: ...

    def find_by_external_id(self, external_id: str) -> NotificationRecord | None: ...

    def record_event(self, notification_id: str, event: str, *, occurred_at: datetime) -> bool: ...

    def count_by_status(
        self,
        *,
        company_id: str | None = None,
        start_date: datetime | None = None,
        end_date: datetime | None = None,
    ) -> dict[str, int]: ...

    def list_page(self, criteria: HistoryFilter) -> tuple[list[NotificationRecord], int]: ...


def _new_record(fields: dict[str, Any]) -> NotificationRecord:
    if fields.get("invoice_id") and fields.get("quote_id"):
        raise ValueError("a notification links to an invoice or a quote, not both")
    now = _now_utc()
    payload = dict(fields)
    payload.setdefault("status", "pending")
    payload.setdefault("priority", DEFAULT_PRIORITY)
    return NotificationRecord(
        notification_id=str(uuid.uuid4()),
        created_at=now,
        updated_at=now,
        **payload,
    )


def _check_changes(changes: dict[str, Any]) -> None:
    unknown = set(changes) - _MUTABLE_FIELDS
    if unknown:
        raise ValueError(f"notification fields are immutable: {', '.join(sorted(unknown))}")


def _matches(record: NotificationRecord, criteria: HistoryFilter) -> bool:
    if criteria.type and record.type != criteria.type:
        return False
    if criteria.status and record.status != criteria.status:
        return False
    if criteria.user_id and record.user_id != criteria.user_id:
        return False
    if criteria.company_id and record.company_id != criteria.company_id:
        return False
    if criteria.recipient_email and record.recipient_email != criteria.recipient_email:
        return False
    if criteria.start_date and record.created_at < _coerce_utc(criteria.start_date):
        return False
    if criteria.end_date and record.created_at > _coerce_utc(criteria.end_date):
        return False
    return True


class InMemoryNotificationRepository:
    def __init__(self) -> None:
        self._lock = Lock()
        self._records: dict[str, NotificationRecord] = {}
        self._external_index: dict[str, str] = {}
        self._events: set[tuple[str, str]] = set()

    def reset(self) -> None:
        with self._lock:
            self._records.clear()
            self._external_index.clear()
            self._events.clear()

    def create(self, **fields: Any) -> NotificationRecord:
        record = _new_record(fields)
        with self._lock:
            self._records[record.notification_id] = record
            return replace(record)

    def get(self, notification_id: str) -> NotificationRecord | None:
        with self._lock:
            record = self._records.get(notification_id)
            return replace(record) if record is not None else None

    def update(self, notification_id: str, **changes: Any) -> NotificationRecord:
        _check_changes(changes)
        with self._lock:
            record = self._records.get(notification_id)
            if record is None:
                raise NotFoundError(f"notification not found: {notification_id}")
            for key, value in changes.items():
                setattr(record, key, value)
            record.updated_at = _now_utc()
            if record.external_id:
                self._external_index[record.external_id] = notification_id
            return replace(record)

    def advance_status(
        self,
        notification_id: str,
        new_status: NotificationStatus,
        *,
        allowed_from: Iterable[NotificationStatus],
    ) -> bool:
        allowed = set(allowed_from)
        with self._lock:
            record = self._records.get(notification_id)
            if record is None or record.status not in allowed:
                return False
            record.status = new_status
            record.updated_at = _now_utc()
            return True

    def find_by_external_id(self, external_id: str) -> NotificationRecord | None:
        with self._lock:
            notification_id = self._external_index.get(external_id)
            if notification_id is None:
                return None
            return replace(self._records[notification_id])

    def record_event(self, notification_id: str, event: str, *, occurred_at: datetime) -> bool:
        key = (notification_id, event)
        with self._lock:
            if key in self._events:
                return False
            self._events.add(key)
            return True

    def count_by_status(
        self,
        *,
        company_id: str | None = None,
        start_date: datetime | None = None,
        end_date: datetime | None = None,
    ) -> dict[str, int]:
        criteria = HistoryFilter(company_id=company_id, start_date=start_date, end_date=end_date)
        counts: dict[str, int] = {}
        with self._lock:
            for record in self._records.values():
                if _matches(record, criteria):
                    counts[record.status] = counts.get(record.status, 0) + 1
        return counts

    def list_page(self, criteria: HistoryFilter) -> tuple[list[NotificationRecord], int]:
        with self._lock:
            matching = [record for record in self._records.values() if _matches(record, criteria)]
        matching.sort(key=lambda item: item.created_at, reverse=True)
        offset = (criteria.page - 1) * criteria.limit
        page = matching[offset : offset + criteria.limit]
        return [replace(record) for record in page], len(matching)


class NotificationStoreBase(DeclarativeBase):
    pass


class _EmailNotificationRow(NotificationStoreBase):
    __tablename__ = "email_notifications"

    notification_id: Mapped[str] = mapped_column(String(36), primary_key=True)
    type: Mapped[str] = mapped_column(String(32), nullable=False, index=True)
    status: Mapped[str] = mapped_column(String(16), nullable=False, index=True)
    user_id: Mapped[str] = mapped_column(String(128), nullable=False, index=True)
    company_id: Mapped[str] = mapped_column(String(128), nullable=False, index=True)
    customer_id: Mapped[str | None] = mapped_column(String(128), nullable=True)
    invoice_id: Mapped[str | None] = mapped_column(String(128), nullable=True)
    quote_id: Mapped[str | None] = mapped_column(String(128), nullable=True)
    sender_name: Mapped[str] = mapped_column(String(256), nullable=False)
    sender_email: Mapped[str] = mapped_column(String(320), nullable=False)
    recipient_name: Mapped[str | None] = mapped_column(String(256), nullable=True)
    recipient_email: Mapped[str] = mapped_column(String(320), nullable=False, index=True)
    subject: Mapped[str] = mapped_column(String(998), nullable=False)
    html_content: Mapped[str] = mapped_column(Text, nullable=False)
    text_content: Mapped[str | None] = mapped_column(Text, nullable=True)
    variables_json: Mapped[str | None] = mapped_column("variables", Text, nullable=True)
    metadata_json: Mapped[str | None] = mapped_column("metadata", Text, nullable=True)
    priority: Mapped[int] = mapped_column(Integer, nullable=False, default=DEFAULT_PRIORITY)
    scheduled_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    sent_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    external_id: Mapped[str | None] = mapped_column(String(256), nullable=True, unique=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, index=True)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)


class _DeliveryEventRow(NotificationStoreBase):
    __tablename__ = "notification_delivery_events"
    __table_args__ = (UniqueConstraint("notification_id", "event", name="uq_notification_delivery_event"),)

    event_row_id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    notification_id: Mapped[str] = mapped_column(String(36), nullable=False, index=True)
    event: Mapped[str] = mapped_column(String(16), nullable=False)
    occurred_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)


_ROW_ATTR = {"variables": "variables_json", "metadata": "metadata_json"}


def _row_to_record(row: _EmailNotificationRow) -> NotificationRecord:
    return NotificationRecord(
        notification_id=row.notification_id,
        type=row.type,  # type: ignore[arg-type]
        status=row.status,  # type: ignore[arg-type]
        user_id=row.user_id,
        company_id=row.company_id,
        customer_id=row.customer_id,
        invoice_id=row.invoice_id,
        quote_id=row.quote_id,
        sender_name=row.sender_name,
        sender_email=row.sender_email,
        recipient_name=row.recipient_name,
        recipient_email=row.recipient_email,
        subject=row.subject,
        html_content=row.html_content,
        text_content=row.text_content,
        variables=row.variables_json,
        metadata=row.metadata_json,
        priority=row.priority,
        scheduled_at=_coerce_optional_utc(row.scheduled_at),
        sent_at=_coerce_optional_utc(row.sent_at),
        external_id=row.external_id,
        created_at=_coerce_utc(row.created_at),
        updated_at=_coerce_utc(row.updated_at),
    )


class SqlAlchemyNotificationRepository:
    def __init__(self, database_url: str) -> None:
        if not database_url:
            raise RuntimeError("DATABASE_URL is required for NOTIFICATION_STORE_BACKEND=postgres")
        self._engine = create_engine(database_url, future=True, pool_pre_ping=True)
        self._session_factory = sessionmaker(self._engine, expire_on_commit=False, future=True)
        if database_url.startswith("sqlite"):
            NotificationStoreBase.metadata.create_all(self._engine)

    def _session(self):
        return self._session_factory()

    def _where(self, criteria: HistoryFilter) -> list:
        clauses = []
        if criteria.type:
            clauses.append(_EmailNotificationRow.type == criteria.type)
        if criteria.status:
            clauses.append(_EmailNotificationRow.status == criteria.status)
        if criteria.user_id:
            clauses.append(_EmailNotificationRow.user_id == criteria.user_id)
        if criteria.company_id:
            clauses.append(_EmailNotificationRow.company_id == criteria.company_id)
        if criteria.recipient_email:
            clauses.append(_EmailNotificationRow.recipient_email == criteria.recipient_email)
        if criteria.start_date:
            clauses.append(_EmailNotificationRow.created_at >= _coerce_utc(criteria.start_date))
        if criteria.end_date:
            clauses.append(_EmailNotificationRow.created_at <= _coerce_utc(criteria.end_date))
        return clauses

    def reset(self) -> None:
        with self._session() as session:
            with session.begin():
                session.query(_DeliveryEventRow).delete()
                session.query(_EmailNotificationRow).delete()

    def create(self, **fields: Any) -> NotificationRecord:
        record = _new_record(fields)
        with self._session() as session:
            with session.begin():
                session.add(
                    _EmailNotificationRow(
                        notification_id=record.notification_id,
                        type=record.type,
                        status=record.status,
                        user_id=record.user_id,
                        company_id=record.company_id,
                        customer_id=record.customer_id,
                        invoice_id=record.invoice_id,
                        quote_id=record.quote_id,
                        sender_name=record.sender_name,
                        sender_email=record.sender_email,
                        recipient_name=record.recipient_name,
                        recipient_email=record.recipient_email,
                        subject=record.subject,
                        html_content=record.html_content,
                        text_content=record.text_content,
                        variables_json=record.variables,
                        metadata_json=record.metadata,
                        priority=record.priority,
                        scheduled_at=record.scheduled_at,
                        sent_at=None,
                        external_id=None,
                        created_at=record.created_at,
                        updated_at=record.updated_at,
                    )
                )
        return record

    def get(self, notification_id: str) -> NotificationRecord | None:
        with self._session() as session:
            row = session.get(_EmailNotificationRow, notification_id)
            return _row_to_record(row) if row is not None else None

    def update(self, notification_id: str, **changes: Any) -> NotificationRecord:
        _check_changes(changes)
        with self._session() as session:
            with session.begin():
                row = session.get(_EmailNotificationRow, notification_id)
                if row is None:
                    raise NotFoundError(f"notification not found: {notification_id}")
                for key, value in changes.items():
                    setattr(row, _ROW_ATTR.get(key, key), value)
                row.updated_at = _now_utc()
            return _row_to_record(row)

    def advance_status(
        self,
        notification_id: str,
        new_status: NotificationStatus,
        *,
        allowed_from: Iterable[NotificationStatus],
    ) -> bool:
        allowed = list(allowed_from)
        if not allowed:
            return False
        with self._session() as session:
            with session.begin():
                result = session.execute(
                    update(_EmailNotificationRow)
                    .where(
                        _EmailNotificationRow.notification_id == notification_id,
                        _EmailNotificationRow.status.in_(allowed),
                    )
                    .values(status=new_status, updated_at=_now_utc())
                )
            return result.rowcount == 1

    def find_by_external_id(self, external_id: str) -> NotificationRecord | None:
        with self._session() as session:
            row = session.execute(
                select(_EmailNotificationRow).where(_EmailNotificationRow.external_id == external_id)
            ).scalar_one_or_none()
            return _row_to_record(row) if row is not None else None

    def record_event(self, notification_id: str, event: str, *, occurred_at: datetime) -> bool:
        try:
            with self._session() as session:
                with session.begin():
                    session.add(
                        _DeliveryEventRow(
                            notification_id=notification_id,
                            event=event,
                            occurred_at=_coerce_utc(occurred_at),
                            created_at=_now_utc(),
                        )
                    )
        except IntegrityError:
            return False
        return True

    def count_by_status(
        self,
        *,
        company_id: str | None = None,
        start_date: datetime | None = None,
        end_date: datetime | None = None,
    ) -> dict[str, int]:
        criteria = HistoryFilter(company_id=company_id, start_date=start_date, end_date=end_date)
        with self._session() as session:
            rows = session.execute(
                select(_EmailNotificationRow.status, func.count(_EmailNotificationRow.notification_id))
                .where(*self._where(criteria))
                .group_by(_EmailNotificationRow.status)
            ).all()
        return {status: int(total) for status, total in rows}

    def list_page(self, criteria: HistoryFilter) -> tuple[list[NotificationRecord], int]:
        clauses = self._where(criteria)
        offset = (criteria.page - 1) * criteria.limit
        with self._session() as session:
            total = session.execute(
                select(func.count(_EmailNotificationRow.notification_id)).where(*clauses)
            ).scalar_one()
            rows = session.execute(
                select(_EmailNotificationRow)
                .where(*clauses)
                .order_by(_EmailNotificationRow.created_at.desc())
                .offset(offset)
                .limit(criteria.limit)
            ).scalars()
            return [_row_to_record(row) for row in rows], int(total)


def create_notification_repository(*, backend: str, database_url: str) -> NotificationRepository:
    normalized = backend.strip().lower()
    if normalized == "postgres":
        return SqlAlchemyNotificationRepository(database_url)
    if normalized == "inmemory":
        return InMemoryNotificationRepository()
    raise RuntimeError(f"unsupported NOTIFICATION_STORE_BACKEND: {backend}")
