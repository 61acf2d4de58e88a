"""Notification dispatch orchestration.

Every dispatch follows the same order: validate, persist a ``pending``
notification, call the provider, then promote the record to ``sent``.  A
failed provider call propagates to the caller and leaves the record pending.
"""
from __future__ import annotations

import json
import logging
import math
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Sequence

from .billing_store import BillingRepository
from .documents import DocumentKind
from .errors import DispatchError, DispatchValidationError, InvalidStateError, NotFoundError
from .mailer import DeliveryAdapter
from .models import (
    NOTIFICATION_STATUSES,
    BulkDispatchOutcome,
    BulkDocumentEmailRequest,
    EmailAttachment,
    EmailRecipient,
    EmailSender,
    HistoryFilter,
    InvoiceEmailOptions,
    NotificationDetail,
    NotificationHistory,
    NotificationResponse,
    NotificationStats,
    NotificationType,
    Pagination,
    QuoteEmailOptions,
    SendEmailRequest,
)
from .notification_store import NotificationRecord, NotificationRepository
from .pdf_renderer import DOCUMENT_LABELS, DocumentRenderer

logger = logging.getLogger(__name__)

# Business status a document must hold for a confirmed send to advance it.
_ADVANCE_FROM_STATUS: dict[str, str] = {
    "invoice": "pending",
    "quote": "draft",
}

_NOTIFICATION_TYPE: dict[str, NotificationType] = {
    "invoice": "invoice_sent",
    "quote": "quote_sent",
}

_SUCCESS_MESSAGES: dict[str, str] = {
    "invoice": "Facture envoyée par email avec succès",
    "quote": "Devis envoyé par email avec succès",
}


def _now_utc() -> datetime:
    return datetime.now(timezone.utc)


def _dump_json(value: dict[str, Any] | None) -> str | None:
    if value is None:
        return None
    return json.dumps(value, default=str, ensure_ascii=False)


@dataclass(frozen=True)
class CallerIdentity:
    user_id: str
    company_id: str | None = None


def validate_send_request(request: SendEmailRequest, *, prefix: str = "") -> list[dict[str, str]]:
    """Return every shape violation of *request* as ``{field, message}`` items."""
    errors: list[dict[str, str]] = []
    if not request.to:
        errors.append({"field": f"{prefix}to", "message": "Au moins un destinataire est requis"})
    if not request.subject.strip():
        errors.append({"field": f"{prefix}subject", "message": "Le sujet est requis"})
    if not (request.html_content or request.text_content):
        errors.append({"field": f"{prefix}content", "message": "Le contenu HTML ou texte est requis"})
    return errors


class NotificationService:
    def __init__(
        self,
        *,
        notifications: NotificationRepository,
        billing: BillingRepository,
        renderer: DocumentRenderer,
        adapter: DeliveryAdapter,
        fallback_sender_email: str = "noreply@zenbilling.com",
    ) -> None:
        self._notifications = notifications
        self._billing = billing
        self._renderer = renderer
        self._adapter = adapter
        self._fallback_sender_email = fallback_sender_email

    def _mark_sent(self, record: NotificationRecord, message_id: str) -> NotificationRecord:
        updated = self._notifications.update(
            record.notification_id,
            status="sent",
            sent_at=_now_utc(),
            external_id=message_id,
        )
        logger.info("Notification %s marked sent with message id %s", record.notification_id, message_id)
        return updated

    def send_email(self, caller: CallerIdentity, request: SendEmailRequest) -> NotificationResponse:
        errors = validate_send_request(request)
        if errors:
            raise DispatchValidationError(errors)

        sender = request.sender or self._adapter.default_sender
        primary = request.to[0]
        record = self._notifications.create(
            type="custom",
            user_id=caller.user_id,
            company_id=caller.company_id or "",
            sender_name=sender.name,
            sender_email=sender.email,
            recipient_name=primary.name,
            recipient_email=primary.email,
            subject=request.subject,
            html_content=request.html_content or "",
            text_content=request.text_content,
            variables=_dump_json(request.template_variables),
            metadata=_dump_json(request.metadata),
            priority=request.priority,
            scheduled_at=request.scheduled_at,
        )
        logger.info("Created pending notification %s for user %s", record.notification_id, caller.user_id)

        try:
            message_id = self._adapter.send_request(request)
        except DispatchError:
            logger.error("Notification %s left pending after failed send", record.notification_id)
            raise

        sent = self._mark_sent(record, message_id)
        return NotificationResponse(
            notification_id=sent.notification_id,
            status=sent.status,
            message="Email envoyé avec succès",
            sent_at=sent.sent_at,
            external_id=sent.external_id,
        )

    def send_bulk_emails(self, caller: CallerIdentity, requests: Sequence[SendEmailRequest]) -> BulkDispatchOutcome:
        if not requests:
            raise DispatchValidationError([{"field": "emails", "message": "Au moins un email est requis"}])
        errors: list[dict[str, str]] = []
        for index, request in enumerate(requests):
            errors.extend(validate_send_request(request, prefix=f"emails[{index}]."))
        if errors:
            raise DispatchValidationError(errors)
        return self._adapter.fan_out(
            requests,
            lambda request: self.send_email(caller, request),
            label="email send",
        )

    def _send_document_email(
        self,
        caller: CallerIdentity,
        kind: DocumentKind,
        document_id: str,
        *,
        custom_message: str | None,
        metadata: dict[str, Any],
        scheduled_at: datetime | None,
    ) -> NotificationResponse:
        if not caller.company_id:
            raise InvalidStateError("Aucune entreprise associée à l'utilisateur")
        label = DOCUMENT_LABELS[kind]

        document = self._billing.get_document(kind, document_id, company_id=caller.company_id)
        if document is None:
            logger.warning("%s %s not found for company %s", kind, document_id, caller.company_id)
            raise NotFoundError(f"{label} non trouvé(e)")
        customer_email = (document.customer.email or "").strip()
        if not customer_email:
            raise InvalidStateError("Le client n'a pas d'adresse email")
        user = self._billing.get_user(caller.user_id)
        if user is None:
            raise NotFoundError("Utilisateur non trouvé")

        sender = EmailSender(name=user.full_name, email=user.email or self._fallback_sender_email)
        company_name = user.company.name if user.company is not None else user.full_name
        recipient = EmailRecipient(email=customer_email, name=document.customer.display_name or None)
        subject = f"{label} {document.document_number}"
        html_content = self._renderer.render_email_body(
            document,
            sender_name=user.full_name,
            company_name=company_name,
            custom_message=custom_message,
        )

        record = self._notifications.create(
            type=_NOTIFICATION_TYPE[kind],
            user_id=caller.user_id,
            company_id=caller.company_id,
            customer_id=document.customer.customer_id,
            invoice_id=document.document_id if kind == "invoice" else None,
            quote_id=document.document_id if kind == "quote" else None,
            sender_name=sender.name,
            sender_email=sender.email,
            recipient_name=recipient.name,
            recipient_email=recipient.email,
            subject=subject,
            html_content=html_content,
            metadata=_dump_json(metadata),
            scheduled_at=scheduled_at,
        )
        logger.info(
            "Created pending notification %s for %s %s",
            record.notification_id,
            kind,
            document.document_id,
        )

        try:
            rendered = self._renderer.render_document(document)
            message_id = self._adapter.send_with_attachments(
                [recipient],
                subject,
                html_content,
                [
                    EmailAttachment(
                        filename=rendered.filename,
                        content=rendered.content,
                        content_type=rendered.content_type,
                    )
                ],
                sender=sender,
            )
        except DispatchError:
            logger.error("Notification %s left pending after failed %s dispatch", record.notification_id, kind)
            raise

        sent = self._mark_sent(record, message_id)
        if document.status == _ADVANCE_FROM_STATUS[kind]:
            self._billing.set_document_status(kind, document.document_id, "sent")
            logger.info("%s %s advanced from %s to sent", kind, document.document_id, document.status)

        return NotificationResponse(
            notification_id=sent.notification_id,
            status=sent.status,
            message=_SUCCESS_MESSAGES[kind],
            sent_at=sent.sent_at,
            external_id=sent.external_id,
        )

    def send_invoice_email(
        self,
        caller: CallerIdentity,
        invoice_id: str,
        options: InvoiceEmailOptions | None = None,
    ) -> NotificationResponse:
        options = options or InvoiceEmailOptions()
        return self._send_document_email(
            caller,
            "invoice",
            invoice_id,
            custom_message=options.custom_message,
            metadata={
                "includePaymentLink": options.include_payment_link,
                "customMessage": options.custom_message,
            },
            scheduled_at=options.scheduled_at,
        )

    def send_quote_email(
        self,
        caller: CallerIdentity,
        quote_id: str,
        options: QuoteEmailOptions | None = None,
    ) -> NotificationResponse:
        options = options or QuoteEmailOptions()
        return self._send_document_email(
            caller,
            "quote",
            quote_id,
            custom_message=options.custom_message,
            metadata={"customMessage": options.custom_message},
            scheduled_at=options.scheduled_at,
        )

    def send_bulk_invoice_emails(self, caller: CallerIdentity, request: BulkDocumentEmailRequest) -> BulkDispatchOutcome:
        options = InvoiceEmailOptions(
            include_payment_link=request.include_payment_link,
            custom_message=request.custom_message,
            scheduled_at=request.scheduled_at,
        )
        return self._adapter.fan_out(
            request.document_ids,
            lambda invoice_id: self.send_invoice_email(caller, invoice_id, options),
            label="invoice dispatch",
        )

    def send_bulk_quote_emails(self, caller: CallerIdentity, request: BulkDocumentEmailRequest) -> BulkDispatchOutcome:
        options = QuoteEmailOptions(custom_message=request.custom_message, scheduled_at=request.scheduled_at)
        return self._adapter.fan_out(
            request.document_ids,
            lambda quote_id: self.send_quote_email(caller, quote_id, options),
            label="quote dispatch",
        )

    def get_stats(
        self,
        company_id: str | None = None,
        start_date: datetime | None = None,
        end_date: datetime | None = None,
    ) -> NotificationStats:
        counts = self._notifications.count_by_status(
            company_id=company_id,
            start_date=start_date,
            end_date=end_date,
        )
        tally = {status: counts.get(status, 0) for status in NOTIFICATION_STATUSES}
        return NotificationStats(total=sum(tally.values()), **tally)

    def get_history(self, criteria: HistoryFilter) -> NotificationHistory:
        rows, total = self._notifications.list_page(criteria)
        return NotificationHistory(
            notifications=[NotificationDetail.model_validate(row) for row in rows],
            pagination=Pagination(
                page=criteria.page,
                limit=criteria.limit,
                total=total,
                pages=math.ceil(total / criteria.limit),
            ),
        )

    def get_notification(self, caller: CallerIdentity, notification_id: str) -> NotificationDetail:
        record = self._notifications.get(notification_id)
        if record is None:
            raise NotFoundError("Notification non trouvée")
        if caller.company_id:
            visible = record.company_id == caller.company_id
        else:
            visible = record.user_id == caller.user_id
        if not visible:
            raise NotFoundError("Notification non trouvée")
        return NotificationDetail.model_validate(record)
