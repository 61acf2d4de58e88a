"""Invoice and quote PDF rendering.

A billing document is bound into an HTML template (Jinja2) and rasterized
by an HTML-to-PDF engine (WeasyPrint in production).  Formatting helpers are
handed to each render call as a plain table instead of being registered on
the template environment, so concurrent renders never share mutable state.

Monetary values stay ``Decimal`` from the record to the rendered string.
"""
from __future__ import annotations

import functools
import logging
from dataclasses import dataclass
from datetime import date, datetime
from decimal import Decimal
from pathlib import Path
from typing import Any, Callable, Mapping, Protocol

from jinja2 import Environment, FileSystemLoader, StrictUndefined, TemplateError, select_autoescape

from .billing_store import BillingRepository
from .documents import (
    CENTS,
    HUNDRED,
    BillingDocument,
    DocumentKind,
    LineItem,
    as_decimal,
    quantize_cents,
    vat_rate_to_percent,
)
from .errors import NotFoundError, RenderError

logger = logging.getLogger(__name__)

PDF_CONTENT_TYPE = "application/pdf"

_TEMPLATE_NAMES: dict[str, str] = {
    "invoice": "invoice.html",
    "quote": "quote.html",
}

DOCUMENT_LABELS: dict[str, str] = {
    "invoice": "Facture",
    "quote": "Devis",
}


@dataclass(frozen=True)
class _LocaleFormat:
    date_pattern: str
    group_separator: str
    decimal_separator: str


_LOCALE_FORMATS: dict[str, _LocaleFormat] = {
    "fr_FR": _LocaleFormat("%d/%m/%Y", "\u202f", ","),
    "en_GB": _LocaleFormat("%d/%m/%Y", ",", "."),
    "en_US": _LocaleFormat("%m/%d/%Y", ",", "."),
}


def _locale_format(locale: str) -> _LocaleFormat:
    try:
        return _LOCALE_FORMATS[locale]
    except KeyError:
        raise ValueError(f"unsupported locale: {locale!r}") from None


def format_date(value: date | datetime | None, locale: str = "fr_FR") -> str:
    if value is None:
        return ""
    return value.strftime(_locale_format(locale).date_pattern)


def format_price(value: Decimal | int | float | str | None, locale: str = "fr_FR") -> str:
    if value is None:
        return ""
    amount = quantize_cents(as_decimal(value))
    conventions = _locale_format(locale)
    integral, _, fraction = f"{amount:,.2f}".partition(".")
    integral = integral.replace(",", conventions.group_separator)
    return f"{integral}{conventions.decimal_separator}{fraction}"


def format_percent(value: Decimal, locale: str = "fr_FR") -> str:
    return format_price(value, locale)


def format_quantity(value: Decimal | int | float | str, locale: str = "fr_FR") -> str:
    normalized = format(as_decimal(value).normalize(), "f")
    if "." in normalized:
        normalized = normalized.rstrip("0").rstrip(".")
    return normalized.replace(".", _locale_format(locale).decimal_separator)


def is_not_empty(value: Any) -> bool:
    return value is not None and value != "" and value != [] and value is not False


def is_not_null(value: Any) -> bool:
    return value is not None


def build_helpers(locale: str) -> dict[str, Callable[..., Any]]:
    """Return the helper table passed to a single template render."""
    _locale_format(locale)
    return {
        "format_date": lambda value: format_date(value, locale),
        "format_price": lambda value: format_price(value, locale),
        "format_percent": lambda value: format_percent(value, locale),
        "format_quantity": lambda value: format_quantity(value, locale),
        "is_not_empty": is_not_empty,
        "is_not_null": is_not_null,
    }


@dataclass(frozen=True)
class RenderedLine:
    name: str
    description: str
    unit: str
    quantity: Decimal
    unit_price_excluding_tax: Decimal
    vat_rate: Decimal
    total_excluding_tax: Decimal
    tax: Decimal


@dataclass(frozen=True)
class DocumentTotals:
    amount_excluding_tax: Decimal
    tax: Decimal
    amount_including_tax: Decimal


@dataclass(frozen=True)
class RenderedDocument:
    """PDF produced for one dispatch; the caller owns and discards it."""

    kind: DocumentKind
    document_number: str
    filename: str
    content: bytes
    content_type: str = PDF_CONTENT_TYPE


def compute_line(item: LineItem) -> RenderedLine:
    quantity = as_decimal(item.quantity)
    unit_price = as_decimal(item.unit_price_excluding_tax)
    vat_percent = vat_rate_to_percent(item.vat_rate)
    line_total = quantity * unit_price
    return RenderedLine(
        name=item.resolved_name,
        description=item.resolved_description,
        unit=item.resolved_unit,
        quantity=quantity,
        unit_price_excluding_tax=unit_price,
        vat_rate=vat_percent,
        total_excluding_tax=line_total,
        tax=quantize_cents(line_total * vat_percent / HUNDRED),
    )


def compute_totals(lines: list[RenderedLine]) -> DocumentTotals:
    subtotal = quantize_cents(sum((line.total_excluding_tax for line in lines), Decimal("0")))
    tax = sum((line.tax for line in lines), Decimal("0"))
    return DocumentTotals(
        amount_excluding_tax=subtotal,
        tax=tax,
        amount_including_tax=subtotal + tax,
    )


def totals_match(document: BillingDocument, totals: DocumentTotals) -> bool:
    """True when the recomputed grand total is within one cent of the stored one."""
    return abs(totals.amount_including_tax - document.amount_including_tax) <= CENTS


class PdfEngine(Protocol):
    def render_pdf(self, html: str, *, base_url: str | None = None) -> bytes: ...


class WeasyPrintEngine:
    """Headless HTML-to-PDF engine.

    Page size, footer and page counters are declared by the template's
    ``@page`` rules.  Every external resource fetch is bounded by
    ``resource_timeout_seconds`` so a stalled stylesheet or image cannot hang
    the dispatch.
    """

    def __init__(self, *, resource_timeout_seconds: int = 30) -> None:
        self._resource_timeout_seconds = resource_timeout_seconds

    def url_fetcher(self) -> Callable[..., Any]:
        from weasyprint import urls

        # Current releases ship a configurable fetcher class, older ones a function.
        fetcher_class = getattr(urls, "URLFetcher", None)
        if fetcher_class is not None:
            return fetcher_class(timeout=self._resource_timeout_seconds)
        return functools.partial(urls.default_url_fetcher, timeout=self._resource_timeout_seconds)

    def render_pdf(self, html: str, *, base_url: str | None = None) -> bytes:
        import weasyprint

        return weasyprint.HTML(string=html, base_url=base_url, url_fetcher=self.url_fetcher()).write_pdf()


class DocumentRenderer:
    def __init__(
        self,
        *,
        repository: BillingRepository,
        engine: PdfEngine,
        template_dir: str | Path,
        locale: str = "fr_FR",
    ) -> None:
        self._repository = repository
        self._engine = engine
        self._template_dir = Path(template_dir)
        self._locale = locale
        self._environment = Environment(
            loader=FileSystemLoader(str(self._template_dir)),
            autoescape=select_autoescape(["html"]),
            undefined=StrictUndefined,
            trim_blocks=True,
            lstrip_blocks=True,
        )

    def build_context(self, document: BillingDocument) -> dict[str, Any]:
        lines = [compute_line(item) for item in document.items]
        totals = compute_totals(lines)
        if not totals_match(document, totals):
            logger.warning(
                "Recomputed total %s differs from stored total %s for %s %s",
                totals.amount_including_tax,
                document.amount_including_tax,
                document.kind,
                document.document_id,
            )
        customer = document.customer
        business = customer.business
        return {
            "kind": document.kind,
            "label": DOCUMENT_LABELS[document.kind],
            "document": document,
            "company": document.company,
            "customer": customer,
            "customer_name": customer.display_name,
            "customer_tva_applicable": business.tva_applicable if business else None,
            "customer_tva_intra": business.tva_intra if business else None,
            "items": lines,
            "totals": DocumentTotals(
                amount_excluding_tax=document.amount_excluding_tax,
                tax=document.tax,
                amount_including_tax=document.amount_including_tax,
            ),
            "computed_totals": totals,
        }

    def render_template(self, template_name: str, **context: Any) -> str:
        try:
            template = self._environment.get_template(template_name)
            return template.render(**context)
        except TemplateError as exc:
            raise RenderError(f"template {template_name} failed: {exc}") from exc
        except OSError as exc:
            raise RenderError(f"template {template_name} is unreadable: {exc}") from exc

    def render_html(self, document: BillingDocument, *, helpers: Mapping[str, Callable[..., Any]] | None = None) -> str:
        try:
            context = self.build_context(document)
        except ValueError as exc:
            raise RenderError(f"cannot bind {document.kind} {document.document_id}: {exc}") from exc
        return self.render_template(
            _TEMPLATE_NAMES[document.kind],
            **context,
            h=helpers or build_helpers(self._locale),
        )

    def render_email_body(
        self,
        document: BillingDocument,
        *,
        sender_name: str,
        company_name: str,
        custom_message: str | None = None,
    ) -> str:
        return self.render_template(
            "document_email.html",
            label=DOCUMENT_LABELS[document.kind],
            document_number=document.document_number,
            customer_name=document.customer.display_name,
            custom_message=custom_message,
            sender_name=sender_name,
            company_name=company_name,
        )

    def render_document(self, document: BillingDocument) -> RenderedDocument:
        logger.info("Rendering %s %s", document.kind, document.document_id)
        html = self.render_html(document)
        try:
            content = self._engine.render_pdf(html, base_url=str(self._template_dir))
        except Exception as exc:
            logger.error("PDF engine failed for %s %s: %s", document.kind, document.document_id, exc)
            raise RenderError(f"PDF generation failed for {document.kind} {document.document_number}") from exc
        logger.info("Rendered %s %s (%d bytes)", document.kind, document.document_id, len(content))
        return RenderedDocument(
            kind=document.kind,
            document_number=document.document_number,
            filename=document.filename,
            content=content,
        )

    def render(self, kind: DocumentKind, document_id: str, *, company_id: str | None = None) -> RenderedDocument:
        document = self._repository.get_document(kind, document_id, company_id=company_id)
        if document is None:
            logger.warning("%s %s not found for rendering", kind, document_id)
            raise NotFoundError(f"{DOCUMENT_LABELS[kind]} non trouvé(e): {document_id}")
        return self.render_document(document)
