from __future__ import annotations

from datetime import date
from decimal import Decimal

import pytest

from billing_notifications.billing_store import InMemoryBillingRepository
from billing_notifications.documents import (
    BillingDocument,
    BusinessCustomer,
    Company,
    Customer,
    IndividualCustomer,
    LineItem,
    Product,
    User,
)


class FakePdfEngine:
    def __init__(self, *, fail: bool = False) -> None:
        self.fail = fail
        self.rendered: list[str] = []

    def render_pdf(self, html: str, *, base_url: str | None = None) -> bytes:
        if self.fail:
            raise OSError("engine crashed")
        self.rendered.append(html)
        return b"%PDF-1.7 fake document"


def make_company(company_id: str = "company-001") -> Company:
    return Company(
        company_id=company_id,
        name="Atelier Durand",
        address="12 rue des Lilas",
        postal_code="75011",
        city="Paris",
        country="France",
        email="contact@atelier-durand.fr",
        siret="12345678900011",
        tva_intra="FR12345678901",
    )


def make_customer(
    *,
    customer_id: str = "customer-001",
    email: str | None = "client@example.com",
    company_id: str = "company-001",
) -> Customer:
    return Customer(
        customer_id=customer_id,
        company_id=company_id,
        email=email,
        address="4 avenue Foch",
        postal_code="69006",
        city="Lyon",
        country="France",
        business=BusinessCustomer(
            name="Client SARL",
            siret="98765432100022",
            tva_intra="FR98765432109",
            tva_applicable=True,
        ),
    )


def make_items() -> tuple[LineItem, ...]:
    return (
        LineItem(
            quantity=Decimal("2"),
            unit_price_excluding_tax=Decimal("150.00"),
            vat_rate="STANDARD",
            product=Product(product_id="product-001", name="Audit", description="Audit de site", unit="jour"),
        ),
        LineItem(
            quantity=Decimal("1"),
            unit_price_excluding_tax=Decimal("49.99"),
            vat_rate="REDUCED_2",
            name="Livre blanc",
            unit="unite",
        ),
    )


def make_document(
    *,
    kind: str = "invoice",
    document_id: str = "inv-001",
    document_number: str = "INV-2024-001",
    status: str = "pending",
    customer: Customer | None = None,
    company_id: str = "company-001",
    items: tuple[LineItem, ...] | None = None,
) -> BillingDocument:
    return BillingDocument(
        kind=kind,  # type: ignore[arg-type]
        document_id=document_id,
        document_number=document_number,
        company_id=company_id,
        user_id="user-001",
        status=status,
        issue_date=date(2024, 3, 1),
        due_date=date(2024, 3, 31),
        amount_excluding_tax=Decimal("349.99"),
        tax=Decimal("62.75"),
        amount_including_tax=Decimal("412.74"),
        company=make_company(company_id),
        customer=customer or make_customer(company_id=company_id),
        items=make_items() if items is None else items,
        conditions="Paiement à 30 jours",
        late_payment_penalty="3 fois le taux légal",
    )


def make_user(*, email: str | None = "marie@atelier-durand.fr") -> User:
    return User(
        user_id="user-001",
        first_name="Marie",
        last_name="Durand",
        email=email,
        company=make_company(),
    )


def seed_billing(repository) -> None:
    repository.save_user(make_user())
    repository.save_document(make_document())
    repository.save_document(
        make_document(
            kind="quote",
            document_id="quote-001",
            document_number="DEV-2024-001",
            status="draft",
        )
    )
    repository.save_document(
        make_document(
            document_id="inv-002",
            document_number="INV-2024-002",
            customer=Customer(
                customer_id="customer-002",
                company_id="company-001",
                individual=IndividualCustomer(first_name="Jean", last_name="Martin"),
            ),
        )
    )
    repository.save_document(
        make_document(
            document_id="inv-900",
            document_number="INV-2024-900",
            company_id="company-999",
            customer=make_customer(customer_id="customer-900", company_id="company-999"),
        )
    )


@pytest.fixture
def billing_repo() -> InMemoryBillingRepository:
    repository = InMemoryBillingRepository()
    seed_billing(repository)
    return repository


@pytest.fixture
def fake_engine() -> FakePdfEngine:
    return FakePdfEngine()
