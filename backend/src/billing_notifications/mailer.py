from __future__ import annotations

import base64
import http.client
import json
import logging
import socket
import time
import urllib.error
import urllib.request
import uuid
from concurrent.futures import ThreadPoolExecutor, as_completed
from dataclasses import dataclass, field
from threading import Lock
from typing import Any, Callable, Iterable, Protocol, Sequence, TypeVar

from .errors import DeliveryFailedError, DispatchError
from .models import BulkDispatchOutcome, EmailAttachment, EmailRecipient, EmailSender, SendEmailRequest

logger = logging.getLogger(__name__)

T = TypeVar("T")

_TRANSIENT_HTTP_CODES = frozenset({408, 429, 500, 502, 503, 504})


@dataclass(frozen=True)
class OutboundEmail:
    to: tuple[EmailRecipient, ...]
    sender: EmailSender
    idempotency_key: str
    subject: str | None = None
    html_content: str | None = None
    text_content: str | None = None
    cc: tuple[EmailRecipient, ...] = ()
    bcc: tuple[EmailRecipient, ...] = ()
    template_id: int | None = None
    params: dict[str, Any] = field(default_factory=dict)
    attachments: tuple[dict[str, str], ...] = ()


class ProviderError(Exception):
    """Raised by provider clients when a send is rejected or cannot be completed."""

    def __init__(self, error_code: str, message: str, *, transient: bool = False) -> None:
        super().__init__(message)
        self.error_code = error_code
        self.message = message
        self.transient = transient


class MailProvider(Protocol):
    supports_idempotency_key: bool

    def send_transactional(self, message: OutboundEmail) -> str: ...


def _recipient_payload(recipients: Iterable[EmailRecipient]) -> list[dict[str, str]]:
    payload: list[dict[str, str]] = []
    for recipient in recipients:
        item = {"email": recipient.email}
        if recipient.name:
            item["name"] = recipient.name
        payload.append(item)
    return payload


def encode_attachment(attachment: EmailAttachment) -> dict[str, str]:
    content = attachment.content
    if isinstance(content, bytes):
        encoded = base64.b64encode(content).decode("ascii")
    else:
        encoded = content
    return {"name": attachment.filename, "content": encoded}


class StubMailProvider:
    """In-process provider for local runs and tests.

    Recipients whose address contains ``fail`` are rejected so callers can
    exercise the failure path without a network.
    """

    def __init__(self, *, supports_idempotency_key: bool = False) -> None:
        self.supports_idempotency_key = supports_idempotency_key
        self._lock = Lock()
        self.sent: list[OutboundEmail] = []

    def send_transactional(self, message: OutboundEmail) -> str:
        if any("fail" in recipient.email.lower() for recipient in message.to):
            raise ProviderError("stub_delivery_failed", "Stub provider forced failure for recipient")
        with self._lock:
            self.sent.append(message)
        return f"<stub-{uuid.uuid4().hex}@smtp-relay.local>"


class BrevoMailProvider:
    """Brevo transactional email client (``POST /smtp/email``)."""

    supports_idempotency_key = False

    def __init__(self, *, api_key: str, base_url: str = "https://api.brevo.com/v3", timeout_seconds: int = 30) -> None:
        stripped_url = base_url.strip().rstrip("/")
        stripped_key = api_key.strip()
        if not stripped_url:
            raise ValueError("base_url must not be empty")
        if not stripped_key:
            raise ValueError("api_key must not be empty")
        self._base_url = stripped_url
        self._api_key = stripped_key
        self._timeout_seconds = timeout_seconds

    def _body(self, message: OutboundEmail) -> dict[str, Any]:
        body: dict[str, Any] = {
            "sender": {"name": message.sender.name, "email": message.sender.email},
            "to": _recipient_payload(message.to),
        }
        if message.cc:
            body["cc"] = _recipient_payload(message.cc)
        if message.bcc:
            body["bcc"] = _recipient_payload(message.bcc)
        if message.template_id is not None:
            body["templateId"] = message.template_id
            body["params"] = message.params
        else:
            body["subject"] = message.subject
            body["htmlContent"] = message.html_content
            if message.text_content:
                body["textContent"] = message.text_content
        if message.attachments:
            body["attachment"] = list(message.attachments)
        return body

    def send_transactional(self, message: OutboundEmail) -> str:
        response = self._post("/smtp/email", self._body(message))
        message_id = response.get("messageId")
        if not message_id:
            message_ids = response.get("messageIds") or []
            message_id = message_ids[0] if message_ids else None
        if not message_id:
            raise ProviderError("missing_message_id", "Provider response carried no messageId")
        return str(message_id)

    def _post(self, path: str, body: dict[str, Any]) -> dict[str, Any]:
        url = f"{self._base_url}{path}"
        data = json.dumps(body).encode("utf-8")
        request = urllib.request.Request(
            url,
            data=data,
            headers={
                "api-key": self._api_key,
                "Accept": "application/json",
                "Content-Type": "application/json",
            },
            method="POST",
        )
        try:
            with urllib.request.urlopen(request, timeout=self._timeout_seconds) as response:
                return json.loads(response.read().decode("utf-8"))  # type: ignore[no-any-return]
        except urllib.error.HTTPError as exc:
            raise ProviderError(
                error_code=f"http_{exc.code}",
                message=f"HTTP {exc.code}: {exc.reason}",
                transient=exc.code in _TRANSIENT_HTTP_CODES,
            ) from exc
        except urllib.error.URLError as exc:
            raise ProviderError(
                error_code="connection_error",
                message=f"Connection error: {exc.reason}",
                transient=True,
            ) from exc
        except (socket.timeout, TimeoutError) as exc:
            raise ProviderError(
                error_code="timeout",
                message=f"Request timed out: {exc}",
                transient=True,
            ) from exc
        except (http.client.HTTPException, OSError) as exc:
            raise ProviderError(
                error_code="connection_error",
                message=f"Connection dropped: {exc!r}",
                transient=True,
            ) from exc
        except ValueError as exc:
            raise ProviderError(
                error_code="invalid_response",
                message=f"Provider response is not JSON: {exc}",
            ) from exc


class DeliveryAdapter:
    """Sends plain, templated and attachment emails through one provider call.

    Every provider failure surfaces as ``DeliveryFailedError``.  A send is
    retried only when ``max_retries`` is set and the provider deduplicates on
    the idempotency key carried by every attempt of the same logical send.
    """

    def __init__(
        self,
        *,
        provider: MailProvider,
        default_sender: EmailSender,
        max_workers: int = 8,
        max_retries: int = 0,
        retry_backoff_seconds: float = 0.5,
    ) -> None:
        self._provider = provider
        self._default_sender = default_sender
        self._max_workers = max(1, max_workers)
        self._max_retries = max(0, max_retries)
        self._retry_backoff_seconds = retry_backoff_seconds

    @property
    def default_sender(self) -> EmailSender:
        return self._default_sender

    def _deliver(self, message: OutboundEmail, *, description: str) -> str:
        recipients = [recipient.email for recipient in message.to]
        attempts = 1 + (self._max_retries if self._provider.supports_idempotency_key else 0)
        last_error: ProviderError | None = None
        for attempt in range(1, attempts + 1):
            try:
                message_id = self._provider.send_transactional(message)
            except ProviderError as exc:
                last_error = exc
                logger.warning(
                    "Provider rejected %s to %s (attempt %d/%d): %s",
                    description,
                    recipients,
                    attempt,
                    attempts,
                    exc.message,
                )
                if not exc.transient or attempt == attempts:
                    break
                time.sleep(self._retry_backoff_seconds * (2 ** (attempt - 1)))
                continue
            logger.info("Sent %s to %s, message id %s", description, recipients, message_id)
            return message_id

        logger.error("Delivery failed for %s to %s", description, recipients)
        raise DeliveryFailedError(
            f"Échec de l'envoi de l'{description}",
            error_code=last_error.error_code if last_error else None,
        )

    def _message(
        self,
        to: Sequence[EmailRecipient],
        *,
        sender: EmailSender | None,
        cc: Sequence[EmailRecipient] | None,
        bcc: Sequence[EmailRecipient] | None,
        **fields: Any,
    ) -> OutboundEmail:
        return OutboundEmail(
            to=tuple(to),
            sender=sender or self._default_sender,
            cc=tuple(cc or ()),
            bcc=tuple(bcc or ()),
            idempotency_key=uuid.uuid4().hex,
            **fields,
        )

    def send_plain(
        self,
        to: Sequence[EmailRecipient],
        subject: str,
        html_content: str,
        text_content: str | None = None,
        sender: EmailSender | None = None,
        cc: Sequence[EmailRecipient] | None = None,
        bcc: Sequence[EmailRecipient] | None = None,
    ) -> str:
        message = self._message(
            to,
            sender=sender,
            cc=cc,
            bcc=bcc,
            subject=subject,
            html_content=html_content,
            text_content=text_content,
        )
        return self._deliver(message, description="email")

    def send_templated(
        self,
        to: Sequence[EmailRecipient],
        template_id: int,
        variables: dict[str, Any],
        sender: EmailSender | None = None,
        cc: Sequence[EmailRecipient] | None = None,
        bcc: Sequence[EmailRecipient] | None = None,
    ) -> str:
        message = self._message(
            to,
            sender=sender,
            cc=cc,
            bcc=bcc,
            template_id=template_id,
            params=dict(variables),
        )
        return self._deliver(message, description="email avec template")

    def send_with_attachments(
        self,
        to: Sequence[EmailRecipient],
        subject: str,
        html_content: str,
        attachments: Sequence[EmailAttachment],
        text_content: str | None = None,
        sender: EmailSender | None = None,
        cc: Sequence[EmailRecipient] | None = None,
        bcc: Sequence[EmailRecipient] | None = None,
    ) -> str:
        message = self._message(
            to,
            sender=sender,
            cc=cc,
            bcc=bcc,
            subject=subject,
            html_content=html_content,
            text_content=text_content,
            attachments=tuple(encode_attachment(attachment) for attachment in attachments),
        )
        return self._deliver(message, description="email avec pièces jointes")

    def send_request(self, request: SendEmailRequest) -> str:
        """Pick the send shape from the populated fields of *request*."""
        if request.template_id is not None:
            return self.send_templated(
                request.to,
                request.template_id,
                request.template_variables or {},
                request.sender,
                request.cc,
                request.bcc,
            )
        if request.attachments:
            return self.send_with_attachments(
                request.to,
                request.subject,
                request.html_content or "",
                request.attachments,
                request.text_content,
                request.sender,
                request.cc,
                request.bcc,
            )
        return self.send_plain(
            request.to,
            request.subject,
            request.html_content or "",
            request.text_content,
            request.sender,
            request.cc,
            request.bcc,
        )

    def fan_out(self, items: Sequence[T], handler: Callable[[T], object], *, label: str) -> BulkDispatchOutcome:
        """Run *handler* for every item on a bounded pool and count outcomes.

        A failing item is logged and counted; it never cancels its siblings.
        """
        total = len(items)
        if total == 0:
            return BulkDispatchOutcome(succeeded=0, failed=0, total=0)
        logger.info("Starting bulk %s for %d items", label, total)
        succeeded = 0
        failed = 0
        with ThreadPoolExecutor(max_workers=min(self._max_workers, total)) as executor:
            futures = {executor.submit(handler, item): index for index, item in enumerate(items)}
            for future in as_completed(futures):
                index = futures[future]
                try:
                    future.result()
                except DispatchError as exc:
                    failed += 1
                    logger.error("Bulk %s item %d failed (%s): %s", label, index, exc.kind, exc.message)
                except Exception as exc:  # noqa: BLE001
                    failed += 1
                    logger.exception("Bulk %s item %d failed unexpectedly: %s", label, index, exc)
                else:
                    succeeded += 1
        logger.info("Bulk %s finished: %d succeeded, %d failed of %d", label, succeeded, failed, total)
        return BulkDispatchOutcome(succeeded=succeeded, failed=failed, total=total)

    def send_bulk(self, requests: Sequence[SendEmailRequest]) -> BulkDispatchOutcome:
        return self.fan_out(requests, self.send_request, label="email send")


def create_mail_provider(
    *,
    provider: str,
    api_key: str,
    base_url: str,
    timeout_seconds: int,
) -> MailProvider:
    normalized = provider.strip().lower()
    if normalized == "brevo":
        return BrevoMailProvider(api_key=api_key, base_url=base_url, timeout_seconds=timeout_seconds)
    if normalized == "stub":
        return StubMailProvider()
    raise RuntimeError(f"unsupported MAIL_PROVIDER: {provider}")
