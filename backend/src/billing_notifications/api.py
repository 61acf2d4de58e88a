from __future__ import annotations

import json
import logging
from datetime import datetime
from typing import Any

from fastapi import APIRouter, HTTPException, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from pydantic import ValidationError
from starlette.concurrency import run_in_threadpool
from starlette.exceptions import HTTPException as StarletteHTTPException

from .billing_store import BillingRepository, create_billing_repository
from .config import Settings, get_settings
from .errors import DispatchError, NotFoundError
from .lifecycle import LifecycleTracker
from .mailer import DeliveryAdapter, MailProvider, create_mail_provider
from .models import (
    ApiEnvelope,
    BrevoWebhookEvent,
    BulkDocumentEmailRequest,
    EmailSender,
    HistoryFilter,
    InvoiceEmailOptions,
    NotificationStatus,
    NotificationType,
    QuoteEmailOptions,
    SendBulkEmailRequest,
    SendEmailRequest,
    WebhookIngestResponse,
)
from .notification_store import NotificationRepository, create_notification_repository
from .orchestrator import CallerIdentity, NotificationService
from .pdf_renderer import DocumentRenderer, PdfEngine, WeasyPrintEngine
from .session_tokens import SessionTokenCodec, SessionTokenError
from .webhook_security import verify_delivery_webhook_signature

logger = logging.getLogger(__name__)

_settings = get_settings()
router = APIRouter(prefix=f"{_settings.api_prefix}/notifications", tags=["notifications"])


def _create_adapter(settings: Settings, provider: MailProvider) -> DeliveryAdapter:
    return DeliveryAdapter(
        provider=provider,
        default_sender=EmailSender(
            name=settings.mail_default_sender_name,
            email=settings.mail_default_sender_email,
        ),
        max_workers=settings.mail_bulk_max_workers,
        max_retries=settings.mail_max_retries,
    )


def build_notification_service(
    settings: Settings,
    *,
    notifications: NotificationRepository,
    billing: BillingRepository,
    provider: MailProvider,
    engine: PdfEngine,
) -> NotificationService:
    renderer = DocumentRenderer(
        repository=billing,
        engine=engine,
        template_dir=settings.template_dir,
        locale=settings.pdf_locale,
    )
    return NotificationService(
        notifications=notifications,
        billing=billing,
        renderer=renderer,
        adapter=_create_adapter(settings, provider),
        fallback_sender_email=settings.mail_fallback_sender_email,
    )


notification_repo: NotificationRepository = create_notification_repository(
    backend=_settings.notification_store_backend,
    database_url=_settings.database_url,
)
billing_repo: BillingRepository = create_billing_repository(
    backend=_settings.billing_store_backend,
    database_url=_settings.database_url,
)
mail_provider: MailProvider = create_mail_provider(
    provider=_settings.mail_provider,
    api_key=_settings.brevo_api_key,
    base_url=_settings.brevo_api_base_url,
    timeout_seconds=_settings.mail_timeout_seconds,
)
notification_service = build_notification_service(
    _settings,
    notifications=notification_repo,
    billing=billing_repo,
    provider=mail_provider,
    engine=WeasyPrintEngine(resource_timeout_seconds=_settings.pdf_resource_timeout_seconds),
)
lifecycle_tracker = LifecycleTracker(repository=notification_repo)


def reset_runtime_state_for_tests() -> None:
    notification_repo.reset()
    billing_repo.reset()


# ---------------------------------------------------------------------------
# Envelopes and error mapping
# ---------------------------------------------------------------------------


def _ok(message: str, data: Any = None) -> ApiEnvelope:
    if hasattr(data, "model_dump"):
        data = data.model_dump(mode="json")
    return ApiEnvelope(success=True, message=message, data=data)


def _failure(status_code: int, message: str, errors: list[dict[str, str]] | None = None) -> JSONResponse:
    envelope = ApiEnvelope(success=False, message=message, errors=errors)
    return JSONResponse(status_code=status_code, content=envelope.model_dump(mode="json", exclude_none=True))


def _format_location(location: tuple[Any, ...]) -> str:
    parts = list(location)
    if parts and parts[0] in {"body", "query", "path", "header"}:
        parts = parts[1:]
    field = ""
    for part in parts:
        if isinstance(part, int):
            field += f"[{part}]"
        else:
            field += f".{part}" if field else str(part)
    return field or "body"


async def dispatch_error_handler(request: Request, exc: DispatchError) -> JSONResponse:
    if exc.status_code >= 500:
        logger.error("%s %s failed (%s): %s", request.method, request.url.path, exc.kind, exc.message)
    return _failure(exc.status_code, exc.message, getattr(exc, "errors", None))


async def request_validation_error_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    errors = [
        {"field": _format_location(tuple(error.get("loc", ()))), "message": str(error.get("msg", ""))}
        for error in exc.errors()
    ]
    return _failure(400, "Erreur de validation", errors)


async def http_error_handler(request: Request, exc: StarletteHTTPException) -> JSONResponse:
    return _failure(exc.status_code, str(exc.detail))


async def unhandled_error_handler(request: Request, exc: Exception) -> JSONResponse:
    logger.exception("Unhandled error on %s %s", request.method, request.url.path)
    return _failure(500, "Erreur interne du serveur")


# ---------------------------------------------------------------------------
# Caller identity
# ---------------------------------------------------------------------------


def _require_caller(request: Request) -> CallerIdentity:
    token = request.headers.get("Authorization", "").removeprefix("Bearer ")
    if not token:
        raise HTTPException(401, "Token d'authentification requis")
    try:
        codec = SessionTokenCodec(_settings.session_token_secret, ttl_minutes=_settings.session_token_ttl_minutes)
        payload = codec.resolve(token)
    except SessionTokenError as exc:
        raise HTTPException(401, str(exc)) from exc
    return CallerIdentity(user_id=payload.user_id, company_id=payload.company_id)


def _require_company(request: Request) -> CallerIdentity:
    caller = _require_caller(request)
    if not caller.company_id:
        raise HTTPException(401, "Aucune entreprise associée à l'utilisateur")
    return caller


# ---------------------------------------------------------------------------
# Dispatch
# ---------------------------------------------------------------------------


@router.post("/send", response_model=ApiEnvelope)
def send_email(payload: SendEmailRequest, request: Request) -> ApiEnvelope:
    caller = _require_caller(request)
    result = notification_service.send_email(caller, payload)
    return _ok("Email envoyé avec succès", result)


@router.post("/send-bulk", response_model=ApiEnvelope)
def send_bulk_emails(payload: SendBulkEmailRequest, request: Request) -> ApiEnvelope:
    caller = _require_caller(request)
    result = notification_service.send_bulk_emails(caller, payload.emails)
    return _ok(f"{result.succeeded} emails envoyés avec succès sur {result.total}", result)


@router.post("/invoice/send-bulk", response_model=ApiEnvelope)
def send_bulk_invoice_emails(payload: BulkDocumentEmailRequest, request: Request) -> ApiEnvelope:
    caller = _require_company(request)
    result = notification_service.send_bulk_invoice_emails(caller, payload)
    return _ok(f"{result.succeeded} factures envoyées avec succès sur {result.total}", result)


@router.post("/quote/send-bulk", response_model=ApiEnvelope)
def send_bulk_quote_emails(payload: BulkDocumentEmailRequest, request: Request) -> ApiEnvelope:
    caller = _require_company(request)
    result = notification_service.send_bulk_quote_emails(caller, payload)
    return _ok(f"{result.succeeded} devis envoyés avec succès sur {result.total}", result)


@router.post("/invoice/{invoice_id}/send", response_model=ApiEnvelope)
def send_invoice_email(
    invoice_id: str,
    request: Request,
    payload: InvoiceEmailOptions | None = None,
) -> ApiEnvelope:
    caller = _require_company(request)
    result = notification_service.send_invoice_email(caller, invoice_id, payload)
    return _ok(result.message, result)


@router.post("/quote/{quote_id}/send", response_model=ApiEnvelope)
def send_quote_email(
    quote_id: str,
    request: Request,
    payload: QuoteEmailOptions | None = None,
) -> ApiEnvelope:
    caller = _require_company(request)
    result = notification_service.send_quote_email(caller, quote_id, payload)
    return _ok(result.message, result)


# ---------------------------------------------------------------------------
# Delivery webhook
# ---------------------------------------------------------------------------


def _parse_webhook_events(body: bytes) -> tuple[list[BrevoWebhookEvent], int]:
    try:
        decoded = json.loads(body.decode("utf-8")) if body else []
    except ValueError:
        logger.warning("Delivery webhook body is not JSON")
        return [], 1
    items = decoded if isinstance(decoded, list) else [decoded]
    events: list[BrevoWebhookEvent] = []
    malformed = 0
    for item in items:
        try:
            events.append(BrevoWebhookEvent.model_validate(item))
        except ValidationError:
            malformed += 1
    if malformed:
        logger.warning("Discarded %d malformed delivery webhook events", malformed)
    return events, malformed


@router.post("/webhooks/brevo", response_model=ApiEnvelope)
async def receive_delivery_webhook(request: Request) -> ApiEnvelope:
    body = await request.body()
    verification = verify_delivery_webhook_signature(settings=_settings, body=body, headers=request.headers)
    if not verification.verified:
        logger.warning("Delivery webhook signature rejected: %s", verification.reason)
        if _settings.delivery_webhook_signature_mode == "enforce":
            raise HTTPException(401, "Signature du webhook invalide")

    events, malformed = _parse_webhook_events(body)
    result: WebhookIngestResponse = await run_in_threadpool(lifecycle_tracker.ingest, events)
    result.discarded += malformed
    return _ok("Webhook traité", result)


# ---------------------------------------------------------------------------
# Reads
# ---------------------------------------------------------------------------


@router.get("/stats", response_model=ApiEnvelope)
def get_stats(
    request: Request,
    company_id: str | None = None,
    start_date: datetime | None = None,
    end_date: datetime | None = None,
) -> ApiEnvelope:
    caller = _require_company(request)
    if company_id and company_id != caller.company_id:
        raise NotFoundError("Entreprise non trouvée")
    stats = notification_service.get_stats(caller.company_id, start_date, end_date)
    return _ok("Statistiques récupérées avec succès", stats)


@router.get("/history", response_model=ApiEnvelope)
def get_history(
    request: Request,
    type: NotificationType | None = None,
    status: NotificationStatus | None = None,
    user_id: str | None = None,
    recipient_email: str | None = None,
    start_date: datetime | None = None,
    end_date: datetime | None = None,
    page: int = 1,
    limit: int = 20,
) -> ApiEnvelope:
    caller = _require_caller(request)
    try:
        criteria = HistoryFilter(
            type=type,
            status=status,
            user_id=user_id if caller.company_id else caller.user_id,
            company_id=caller.company_id,
            recipient_email=recipient_email,
            start_date=start_date,
            end_date=end_date,
            page=page,
            limit=limit,
        )
    except ValidationError as exc:
        raise RequestValidationError(exc.errors()) from exc
    history = notification_service.get_history(criteria)
    return _ok("Historique récupéré avec succès", history)


@router.get("/{notification_id}", response_model=ApiEnvelope)
def get_notification(notification_id: str, request: Request) -> ApiEnvelope:
    caller = _require_caller(request)
    detail = notification_service.get_notification(caller, notification_id)
    return _ok("Notification récupérée avec succès", detail)
