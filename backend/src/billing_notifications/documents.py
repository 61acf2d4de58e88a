"""Billing records read by the notification pipeline.

These mirror the rows owned by the billing application (companies, customers,
catalog products, invoices, quotes and their line items).  The pipeline only
reads them, except for the business status advance performed after a
confirmed delivery.
"""
from __future__ import annotations

from dataclasses import dataclass, field
from datetime import date
from decimal import ROUND_HALF_UP, Decimal
from typing import Literal

VatRate = Literal["ZERO", "REDUCED_1", "REDUCED_2", "REDUCED_3", "STANDARD"]
DocumentKind = Literal["invoice", "quote"]
InvoiceStatus = Literal["pending", "sent", "paid", "cancelled", "late"]
QuoteStatus = Literal["draft", "sent", "accepted", "rejected", "expired"]

CENTS = Decimal("0.01")
HUNDRED = Decimal("100")

VAT_RATE_PERCENT: dict[str, Decimal] = {
    "ZERO": Decimal("0.0"),
    "REDUCED_1": Decimal("2.1"),
    "REDUCED_2": Decimal("5.5"),
    "REDUCED_3": Decimal("10.0"),
    "STANDARD": Decimal("20.0"),
}

DOCUMENT_FILENAME_PREFIX: dict[str, str] = {
    "invoice": "invoice",
    "quote": "devis",
}


def vat_rate_to_percent(vat_rate: str) -> Decimal:
    """Return the exact percentage for a categorical VAT rate.

    Unknown categories raise ``ValueError``; there is no default rate.
    """
    try:
        return VAT_RATE_PERCENT[vat_rate]
    except KeyError:
        raise ValueError(f"unknown VAT rate: {vat_rate!r}") from None


def as_decimal(value: Decimal | int | float | str) -> Decimal:
    if isinstance(value, Decimal):
        return value
    return Decimal(str(value))


def quantize_cents(value: Decimal) -> Decimal:
    return value.quantize(CENTS, rounding=ROUND_HALF_UP)


def document_filename(kind: DocumentKind, document_number: str) -> str:
    return f"{DOCUMENT_FILENAME_PREFIX[kind]}-{document_number}.pdf"


@dataclass(frozen=True)
class Company:
    company_id: str
    name: str
    address: str = ""
    postal_code: str = ""
    city: str = ""
    country: str = ""
    email: str | None = None
    phone: str | None = None
    siret: str | None = None
    tva_intra: str | None = None
    tva_applicable: bool = True


@dataclass(frozen=True)
class BusinessCustomer:
    name: str
    siret: str | None = None
    tva_intra: str | None = None
    tva_applicable: bool = False


@dataclass(frozen=True)
class IndividualCustomer:
    first_name: str
    last_name: str


@dataclass(frozen=True)
class Customer:
    customer_id: str
    company_id: str
    email: str | None = None
    phone: str | None = None
    address: str = ""
    postal_code: str = ""
    city: str = ""
    country: str = ""
    business: BusinessCustomer | None = None
    individual: IndividualCustomer | None = None

    @property
    def display_name(self) -> str:
        if self.business is not None:
            return self.business.name
        if self.individual is not None:
            return f"{self.individual.first_name} {self.individual.last_name}"
        return ""


@dataclass(frozen=True)
class Product:
    product_id: str
    name: str
    description: str | None = None
    unit: str = "unite"


@dataclass(frozen=True)
class LineItem:
    quantity: Decimal
    unit_price_excluding_tax: Decimal
    vat_rate: str
    product: Product | None = None
    name: str | None = None
    description: str | None = None
    unit: str | None = None

    @property
    def resolved_name(self) -> str:
        if self.product is not None:
            return self.product.name
        return self.name or ""

    @property
    def resolved_description(self) -> str:
        if self.product is not None:
            return self.product.description or ""
        return self.description or ""

    @property
    def resolved_unit(self) -> str:
        if self.product is not None:
            return self.product.unit
        return self.unit or ""


@dataclass(frozen=True)
class User:
    user_id: str
    first_name: str
    last_name: str
    email: str | None = None
    company: Company | None = None

    @property
    def full_name(self) -> str:
        return f"{self.first_name} {self.last_name}"


@dataclass(frozen=True)
class BillingDocument:
    kind: DocumentKind
    document_id: str
    document_number: str
    company_id: str
    user_id: str
    status: str
    issue_date: date
    due_date: date
    amount_excluding_tax: Decimal
    tax: Decimal
    amount_including_tax: Decimal
    company: Company
    customer: Customer
    items: tuple[LineItem, ...] = field(default_factory=tuple)
    conditions: str | None = None
    late_payment_penalty: str | None = None

    @property
    def filename(self) -> str:
        return document_filename(self.kind, self.document_number)
