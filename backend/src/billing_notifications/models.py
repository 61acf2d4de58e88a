from __future__ import annotations

from datetime import datetime, timezone
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field, field_validator

NotificationType = Literal[
    "custom",
    "invoice_sent",
    "quote_sent",
    "payment_reminder",
    "payment_received",
    "welcome",
    "password_reset",
]
NotificationStatus = Literal["pending", "sent", "delivered", "opened", "clicked", "bounced", "failed"]
DeliveryEvent = Literal["delivered", "opened", "clicked", "bounced", "failed"]

NOTIFICATION_TYPES: tuple[NotificationType, ...] = (
    "custom",
    "invoice_sent",
    "quote_sent",
    "payment_reminder",
    "payment_received",
    "welcome",
    "password_reset",
)
NOTIFICATION_STATUSES: tuple[NotificationStatus, ...] = (
    "pending",
    "sent",
    "delivered",
    "opened",
    "clicked",
    "bounced",
    "failed",
)
DEFAULT_PRIORITY = 5


def _now_utc() -> datetime:
    return datetime.now(timezone.utc)


class EmailRecipient(BaseModel):
    email: str = Field(min_length=3, max_length=320)
    name: str | None = Field(default=None, max_length=256)

    @field_validator("email")
    @classmethod
    def _normalize_email(cls, value: str) -> str:
        normalized = value.strip()
        if "@" not in normalized:
            raise ValueError("email must contain '@'")
        return normalized


class EmailSender(BaseModel):
    name: str = Field(min_length=1, max_length=256)
    email: str = Field(min_length=3, max_length=320)


class EmailAttachment(BaseModel):
    """Binary attachment; ``str`` content is taken as already base64-encoded."""

    filename: str = Field(min_length=1, max_length=256)
    content: bytes | str
    content_type: str = "application/octet-stream"


class SendEmailRequest(BaseModel):
    to: list[EmailRecipient] = Field(default_factory=list)
    cc: list[EmailRecipient] | None = None
    bcc: list[EmailRecipient] | None = None
    subject: str = ""
    html_content: str | None = None
    text_content: str | None = None
    sender: EmailSender | None = None
    attachments: list[EmailAttachment] | None = None
    template_id: int | None = Field(default=None, ge=1)
    template_variables: dict[str, Any] | None = None
    priority: int = Field(default=DEFAULT_PRIORITY, ge=1, le=10)
    scheduled_at: datetime | None = None
    metadata: dict[str, Any] | None = None


class SendBulkEmailRequest(BaseModel):
    emails: list[SendEmailRequest] = Field(default_factory=list)


class InvoiceEmailOptions(BaseModel):
    include_payment_link: bool = False
    custom_message: str | None = Field(default=None, max_length=5000)
    scheduled_at: datetime | None = None


class QuoteEmailOptions(BaseModel):
    custom_message: str | None = Field(default=None, max_length=5000)
    scheduled_at: datetime | None = None


class BulkDocumentEmailRequest(BaseModel):
    document_ids: list[str] = Field(min_length=1, max_length=500)
    custom_message: str | None = Field(default=None, max_length=5000)
    include_payment_link: bool = False
    scheduled_at: datetime | None = None

    @field_validator("document_ids")
    @classmethod
    def _normalize_document_ids(cls, value: list[str]) -> list[str]:
        normalized: list[str] = []
        seen: set[str] = set()
        for raw_id in value:
            document_id = str(raw_id).strip()
            if not document_id:
                raise ValueError("document_ids entries cannot be blank")
            if document_id in seen:
                raise ValueError("document_ids entries must be unique")
            seen.add(document_id)
            normalized.append(document_id)
        return normalized


class NotificationResponse(BaseModel):
    notification_id: str
    status: NotificationStatus
    message: str
    sent_at: datetime | None = None
    external_id: str | None = None


class BulkDispatchOutcome(BaseModel):
    succeeded: int = 0
    failed: int = 0
    total: int = 0


class NotificationStats(BaseModel):
    total: int = 0
    pending: int = 0
    sent: int = 0
    delivered: int = 0
    opened: int = 0
    clicked: int = 0
    bounced: int = 0
    failed: int = 0


class HistoryFilter(BaseModel):
    type: NotificationType | None = None
    status: NotificationStatus | None = None
    user_id: str | None = None
    company_id: str | None = None
    recipient_email: str | None = None
    start_date: datetime | None = None
    end_date: datetime | None = None
    page: int = Field(default=1, ge=1)
    limit: int = Field(default=20, ge=1, le=100)


class NotificationDetail(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    notification_id: str
    type: NotificationType
    status: NotificationStatus
    user_id: str
    company_id: str
    customer_id: str | None = None
    invoice_id: str | None = None
    quote_id: str | None = None
    sender_name: str
    sender_email: str
    recipient_name: str | None = None
    recipient_email: str
    subject: str
    html_content: str
    text_content: str | None = None
    variables: str | None = None
    metadata: str | None = None
    priority: int = DEFAULT_PRIORITY
    scheduled_at: datetime | None = None
    sent_at: datetime | None = None
    external_id: str | None = None
    created_at: datetime
    updated_at: datetime


class Pagination(BaseModel):
    page: int
    limit: int
    total: int
    pages: int


class NotificationHistory(BaseModel):
    notifications: list[NotificationDetail]
    pagination: Pagination


class BrevoWebhookEvent(BaseModel):
    model_config = ConfigDict(extra="allow", populate_by_name=True)

    event: str
    email: str | None = None
    message_id: str | None = Field(default=None, alias="message-id")
    event_id: int | str | None = Field(default=None, alias="id")
    date: str | None = None
    ts_event: int | None = None
    reason: str | None = None


class WebhookIngestResponse(BaseModel):
    accepted: int = 0
    ignored: int = 0
    discarded: int = 0


class ApiEnvelope(BaseModel):
    success: bool
    message: str
    data: Any | None = None
    errors: list[dict[str, str]] | None = None
    timestamp: datetime = Field(default_factory=_now_utc)
