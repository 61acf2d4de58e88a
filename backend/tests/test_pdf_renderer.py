from __future__ import annotations

import sys
import types
from dataclasses import replace
from datetime import date
from decimal import Decimal
from pathlib import Path

import pytest

from billing_notifications.config import Settings
from billing_notifications.documents import LineItem, document_filename, vat_rate_to_percent
from billing_notifications.errors import NotFoundError, RenderError
from billing_notifications.pdf_renderer import (
    DocumentRenderer,
    WeasyPrintEngine,
    build_helpers,
    compute_line,
    compute_totals,
    format_date,
    format_price,
    format_quantity,
    totals_match,
)

from conftest import FakePdfEngine, make_document


def _make_renderer(repository, engine=None, template_dir: Path | None = None) -> DocumentRenderer:
    return DocumentRenderer(
        repository=repository,
        engine=engine or FakePdfEngine(),
        template_dir=template_dir or Settings().template_dir,
    )


@pytest.mark.parametrize(
    ("vat_rate", "expected"),
    [
        ("ZERO", Decimal("0.0")),
        ("REDUCED_1", Decimal("2.1")),
        ("REDUCED_2", Decimal("5.5")),
        ("REDUCED_3", Decimal("10.0")),
        ("STANDARD", Decimal("20.0")),
    ],
)
def test_vat_rate_mapping_is_exact(vat_rate: str, expected: Decimal) -> None:
    assert vat_rate_to_percent(vat_rate) == expected


def test_unknown_vat_rate_is_rejected() -> None:
    with pytest.raises(ValueError):
        vat_rate_to_percent("SUPER_REDUCED")


def test_line_total_is_decimal_exact() -> None:
    line = compute_line(
        LineItem(quantity=Decimal("3"), unit_price_excluding_tax=Decimal("0.10"), vat_rate="STANDARD", name="Vis")
    )

    assert line.total_excluding_tax == Decimal("0.30")
    assert line.tax == Decimal("0.06")


def test_line_resolves_catalog_product_fields() -> None:
    document = make_document()

    first, second = (compute_line(item) for item in document.items)

    assert (first.name, first.description, first.unit) == ("Audit", "Audit de site", "jour")
    assert (second.name, second.description, second.unit) == ("Livre blanc", "", "unite")


def test_totals_match_persisted_grand_total() -> None:
    document = make_document()

    totals = compute_totals([compute_line(item) for item in document.items])

    assert totals.amount_excluding_tax == Decimal("349.99")
    assert totals.tax == Decimal("62.75")
    assert totals.amount_including_tax == Decimal("412.74")
    assert totals_match(document, totals)


def test_totals_mismatch_beyond_one_cent_is_detected() -> None:
    document = replace(make_document(), amount_including_tax=Decimal("412.76"))

    totals = compute_totals([compute_line(item) for item in document.items])

    assert not totals_match(document, totals)


def test_french_formatting_helpers() -> None:
    assert format_price(Decimal("1234.5")) == "1\u202f234,50"
    assert format_price(Decimal("0.005")) == "0,01"
    assert format_date(date(2024, 3, 1)) == "01/03/2024"
    assert format_quantity(Decimal("1.500")) == "1,5"
    assert format_quantity(Decimal("10")) == "10"
    assert format_price(Decimal("1234.5"), "en_US") == "1,234.50"


def test_unsupported_locale_is_rejected() -> None:
    with pytest.raises(ValueError):
        build_helpers("xx_XX")


def test_document_filename_convention() -> None:
    assert document_filename("invoice", "INV-2024-001") == "invoice-INV-2024-001.pdf"
    assert document_filename("quote", "DEV-2024-001") == "devis-DEV-2024-001.pdf"


def test_render_html_binds_document(billing_repo) -> None:
    renderer = _make_renderer(billing_repo)
    document = billing_repo.get_document("invoice", "inv-001")

    html = renderer.render_html(document)

    assert "FACTURE" in html
    assert "INV-2024-001" in html
    assert "Client SARL" in html
    assert "TVA Intracommunautaire : FR98765432109" in html
    assert "300,00 €" in html
    assert "412,74 €" in html
    assert "5,50 %" in html
    assert "SIRET: 12345678900011" in html
    assert "counter(pages)" in html
    assert "31/03/2024" in html


def test_render_html_shows_vat_exemption_for_non_vat_company(billing_repo) -> None:
    renderer = _make_renderer(billing_repo)
    document = billing_repo.get_document("invoice", "inv-001")
    exempt = replace(document, company=replace(document.company, tva_applicable=False, siret=None))

    html = renderer.render_html(exempt)

    assert "TVA non applicable, art. 293 B du CGI" in html
    assert "SIRET: N/A" in html


def test_render_quote_uses_quote_template(billing_repo) -> None:
    renderer = _make_renderer(billing_repo)

    html = renderer.render_html(billing_repo.get_document("quote", "quote-001"))

    assert "DEVIS" in html
    assert "Valable jusqu" in html
    assert "Bon pour accord" in html


def test_render_individual_customer_name(billing_repo) -> None:
    renderer = _make_renderer(billing_repo)

    html = renderer.render_html(billing_repo.get_document("invoice", "inv-002"))

    assert "Jean Martin" in html


def test_render_returns_pdf_with_filename(billing_repo) -> None:
    engine = FakePdfEngine()
    renderer = _make_renderer(billing_repo, engine)

    rendered = renderer.render("invoice", "inv-001", company_id="company-001")

    assert rendered.content.startswith(b"%PDF")
    assert rendered.filename == "invoice-INV-2024-001.pdf"
    assert rendered.content_type == "application/pdf"
    assert len(engine.rendered) == 1


def test_render_missing_document_raises_not_found(billing_repo) -> None:
    renderer = _make_renderer(billing_repo)

    with pytest.raises(NotFoundError):
        renderer.render("invoice", "missing")
    with pytest.raises(NotFoundError):
        renderer.render("invoice", "inv-900", company_id="company-001")


def test_engine_failure_raises_render_error(billing_repo) -> None:
    renderer = _make_renderer(billing_repo, FakePdfEngine(fail=True))

    with pytest.raises(RenderError):
        renderer.render("invoice", "inv-001")


def test_unreadable_template_raises_render_error(billing_repo, tmp_path: Path) -> None:
    renderer = _make_renderer(billing_repo, template_dir=tmp_path)

    with pytest.raises(RenderError):
        renderer.render("invoice", "inv-001")


def test_unknown_vat_rate_in_document_raises_render_error(billing_repo) -> None:
    renderer = _make_renderer(billing_repo)
    document = make_document(
        items=(LineItem(quantity=Decimal("1"), unit_price_excluding_tax=Decimal("10"), vat_rate="BOGUS", name="x"),)
    )

    with pytest.raises(RenderError):
        renderer.render_document(document)


def test_email_body_includes_custom_message(billing_repo) -> None:
    renderer = _make_renderer(billing_repo)
    document = billing_repo.get_document("invoice", "inv-001")

    body = renderer.render_email_body(
        document,
        sender_name="Marie Durand",
        company_name="Atelier Durand",
        custom_message="Merci!",
    )

    assert "Facture INV-2024-001" in body
    assert "Bonjour Client SARL" in body
    assert "votre facture n° INV-2024-001" in body
    assert "Message personnalisé" in body
    assert "Merci!" in body
    assert "Marie Durand" in body


def test_email_body_escapes_custom_message(billing_repo) -> None:
    renderer = _make_renderer(billing_repo)
    document = billing_repo.get_document("quote", "quote-001")

    body = renderer.render_email_body(
        document,
        sender_name="Marie Durand",
        company_name="Atelier Durand",
        custom_message="<script>alert(1)</script>",
    )

    assert "<script>" not in body
    assert "&lt;script&gt;" in body


def test_weasyprint_engine_produces_pdf(billing_repo) -> None:
    pytest.importorskip("weasyprint")
    renderer = _make_renderer(billing_repo, WeasyPrintEngine(resource_timeout_seconds=5))

    rendered = renderer.render("invoice", "inv-001")

    assert rendered.content.startswith(b"%PDF")


def _install_weasyprint(monkeypatch, urls: types.ModuleType) -> list[dict]:
    calls: list[dict] = []

    class _HTML:
        def __init__(self, **kwargs) -> None:
            calls.append(kwargs)

        def write_pdf(self) -> bytes:
            return b"%PDF-1.7 recorded"

    package = types.ModuleType("weasyprint")
    package.HTML = _HTML
    package.urls = urls
    monkeypatch.setitem(sys.modules, "weasyprint", package)
    monkeypatch.setitem(sys.modules, "weasyprint.urls", urls)
    return calls


def test_weasyprint_engine_bounds_resource_fetches(monkeypatch) -> None:
    class _URLFetcher:
        def __init__(self, *, timeout: int) -> None:
            self.timeout = timeout

    urls = types.ModuleType("weasyprint.urls")
    urls.URLFetcher = _URLFetcher
    calls = _install_weasyprint(monkeypatch, urls)

    content = WeasyPrintEngine(resource_timeout_seconds=7).render_pdf("<p>Facture</p>", base_url="/templates")

    assert content == b"%PDF-1.7 recorded"
    assert calls[0]["base_url"] == "/templates"
    assert isinstance(calls[0]["url_fetcher"], _URLFetcher)
    assert calls[0]["url_fetcher"].timeout == 7


def test_weasyprint_engine_bounds_fetches_with_function_fetcher(monkeypatch) -> None:
    fetched: list[tuple[str, int]] = []

    def _default_url_fetcher(url: str, timeout: int = 10) -> dict:
        fetched.append((url, timeout))
        return {"string": b"body { margin: 0 }", "mime_type": "text/css"}

    urls = types.ModuleType("weasyprint.urls")
    urls.default_url_fetcher = _default_url_fetcher
    _install_weasyprint(monkeypatch, urls)

    fetcher = WeasyPrintEngine(resource_timeout_seconds=7).url_fetcher()
    result = fetcher("https://cdn.example.com/invoice.css")

    assert fetched == [("https://cdn.example.com/invoice.css", 7)]
    assert result["mime_type"] == "text/css"
