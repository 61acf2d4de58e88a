#!/usr/bin/env python3
"""Seed a demo company, user, invoice and quote into the billing store."""

from __future__ import annotations

import argparse
import sys
from datetime import date, timedelta
from decimal import Decimal
from pathlib import Path

ROOT_DIR = Path(__file__).resolve().parents[1]
BACKEND_SRC = ROOT_DIR / "backend" / "src"
if str(BACKEND_SRC) not in sys.path:
    sys.path.insert(0, str(BACKEND_SRC))

from billing_notifications.billing_store import SqlAlchemyBillingRepository
from billing_notifications.config import get_settings
from billing_notifications.documents import (
    BillingDocument,
    BusinessCustomer,
    Company,
    Customer,
    LineItem,
    Product,
    User,
)
from billing_notifications.pdf_renderer import compute_line, compute_totals
from billing_notifications.session_tokens import SessionTokenCodec

# ---------------------------------------------------------------------------
# Config
# ---------------------------------------------------------------------------
DATABASE_URL_DEFAULT = f"sqlite:///{ROOT_DIR / 'data' / 'billing-demo.db'}"
COMPANY_ID = "company-demo"
USER_ID = "user-demo"
SENDER_EMAIL = "facturation@atelier-demo.fr"
CUSTOMER_EMAIL = "client@example.com"
DUE_DAYS = 30


def parse_args() -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Seed demo billing documents for local email dispatch.")
    parser.add_argument("--database-url", default=DATABASE_URL_DEFAULT, help="SQLAlchemy URL of the billing store")
    parser.add_argument("--company-id", default=COMPANY_ID)
    parser.add_argument("--user-id", default=USER_ID)
    parser.add_argument("--sender-email", default=SENDER_EMAIL)
    parser.add_argument("--customer-email", default=CUSTOMER_EMAIL)
    parser.add_argument("--due-days", type=int, default=DUE_DAYS)
    return parser.parse_args()


def build_document(
    *,
    kind: str,
    document_id: str,
    document_number: str,
    status: str,
    company: Company,
    customer: Customer,
    user_id: str,
    items: tuple[LineItem, ...],
    due_days: int,
) -> BillingDocument:
    totals = compute_totals([compute_line(item) for item in items])
    issued = date.today()
    return BillingDocument(
        kind=kind,  # type: ignore[arg-type]
        document_id=document_id,
        document_number=document_number,
        company_id=company.company_id,
        user_id=user_id,
        status=status,
        issue_date=issued,
        due_date=issued + timedelta(days=due_days),
        amount_excluding_tax=totals.amount_excluding_tax,
        tax=totals.tax,
        amount_including_tax=totals.amount_including_tax,
        company=company,
        customer=customer,
        items=items,
        conditions=f"Paiement à {due_days} jours",
        late_payment_penalty="3 fois le taux d'intérêt légal",
    )


# ---------------------------------------------------------------------------
# Main
# ---------------------------------------------------------------------------
def main() -> None:
    args = parse_args()
    if args.database_url.startswith("sqlite:///"):
        Path(args.database_url.removeprefix("sqlite:///")).parent.mkdir(parents=True, exist_ok=True)

    print("=" * 60)
    print("Seeding demo billing data")
    print("=" * 60)

    repository = SqlAlchemyBillingRepository(args.database_url)
    company = Company(
        company_id=args.company_id,
        name="Atelier Démo",
        address="8 rue du Faubourg",
        postal_code="75010",
        city="Paris",
        country="France",
        email=args.sender_email,
        siret="11122233300044",
        tva_intra="FR11111222333",
    )
    customer = Customer(
        customer_id=f"{args.company_id}-customer-001",
        company_id=args.company_id,
        email=args.customer_email,
        address="3 quai Saint-Vincent",
        postal_code="69001",
        city="Lyon",
        country="France",
        business=BusinessCustomer(name="Client Démo SAS", siret="44455566600077", tva_applicable=True),
    )
    items = (
        LineItem(
            quantity=Decimal("3"),
            unit_price_excluding_tax=Decimal("420.00"),
            vat_rate="STANDARD",
            product=Product(product_id="product-demo-001", name="Développement", unit="jour"),
        ),
        LineItem(
            quantity=Decimal("1"),
            unit_price_excluding_tax=Decimal("35.00"),
            vat_rate="REDUCED_1",
            name="Frais de déplacement",
            unit="forfait",
        ),
    )

    print("\n[1/3] Saving user...")
    repository.save_user(
        User(
            user_id=args.user_id,
            first_name="Camille",
            last_name="Démo",
            email=args.sender_email,
            company=company,
        )
    )

    print("\n[2/3] Saving invoice and quote...")
    invoice = build_document(
        kind="invoice",
        document_id=f"{args.company_id}-inv-001",
        document_number="FAC-DEMO-001",
        status="pending",
        company=company,
        customer=customer,
        user_id=args.user_id,
        items=items,
        due_days=args.due_days,
    )
    quote = build_document(
        kind="quote",
        document_id=f"{args.company_id}-quote-001",
        document_number="DEV-DEMO-001",
        status="draft",
        company=company,
        customer=customer,
        user_id=args.user_id,
        items=items[:1],
        due_days=args.due_days,
    )
    for document in (invoice, quote):
        repository.save_document(document)
        print(f"  {document.kind:8s} {document.document_id:30s} {document.amount_including_tax:>10} EUR")

    print("\n[3/3] Issuing session token...")
    settings = get_settings()
    codec = SessionTokenCodec(settings.session_token_secret, ttl_minutes=settings.session_token_ttl_minutes)
    token = codec.issue(args.user_id, args.company_id)

    print("\n" + "=" * 60)
    print("Start the API with BILLING_STORE_BACKEND=postgres and")
    print(f"DATABASE_URL={args.database_url}")
    print(f"then send requests with: Authorization: Bearer {token}")
    print("=" * 60)


if __name__ == "__main__":
    main()
