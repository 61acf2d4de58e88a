from __future__ import annotations

from dataclasses import replace
from datetime import date, datetime, timezone
from decimal import Decimal
from threading import Lock
from typing import Protocol

from sqlalchemy import Boolean, Date, DateTime, ForeignKey, Integer, Numeric, String, Text, create_engine, delete, select
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, sessionmaker

from .documents import (
    BillingDocument,
    BusinessCustomer,
    Company,
    Customer,
    DocumentKind,
    IndividualCustomer,
    LineItem,
    Product,
    User,
)


def _now_utc() -> datetime:
    return datetime.now(timezone.utc)


class BillingRepository(Protocol):
    def reset(self) -> None: ...

    def get_document(
        self,
        kind: DocumentKind,
        document_id: str,
        *,
        company_id: str | None = None,
    ) -> BillingDocument | None: ...

    def set_document_status(self, kind: DocumentKind, document_id: str, status: str) -> None: ...

    def get_user(self, user_id: str) -> User | None: ...

    def save_document(self, document: BillingDocument) -> None: ...

    def save_user(self, user: User) -> None: ...


class InMemoryBillingRepository:
    def __init__(self) -> None:
        self._lock = Lock()
        self._documents: dict[tuple[str, str], BillingDocument] = {}
        self._users: dict[str, User] = {}

    def reset(self) -> None:
        with self._lock:
            self._documents.clear()
            self._users.clear()

    def get_document(
        self,
        kind: DocumentKind,
        document_id: str,
        *,
        company_id: str | None = None,
    ) -> BillingDocument | None:
        with self._lock:
            document = self._documents.get((kind, document_id))
        if document is None:
            return None
        if company_id is not None and document.company_id != company_id:
            return None
        return document

    def set_document_status(self, kind: DocumentKind, document_id: str, status: str) -> None:
        with self._lock:
            key = (kind, document_id)
            document = self._documents.get(key)
            if document is not None:
                self._documents[key] = replace(document, status=status)

    def get_user(self, user_id: str) -> User | None:
        with self._lock:
            return self._users.get(user_id)

    def save_document(self, document: BillingDocument) -> None:
        with self._lock:
            self._documents[(document.kind, document.document_id)] = document

    def save_user(self, user: User) -> None:
        with self._lock:
            self._users[user.user_id] = user


class BillingStoreBase(DeclarativeBase):
    pass


class _CompanyRow(BillingStoreBase):
    __tablename__ = "companies"

    company_id: Mapped[str] = mapped_column(String(128), primary_key=True)
    name: Mapped[str] = mapped_column(String(256), nullable=False)
    address: Mapped[str] = mapped_column(String(512), nullable=False, default="")
    postal_code: Mapped[str] = mapped_column(String(16), nullable=False, default="")
    city: Mapped[str] = mapped_column(String(128), nullable=False, default="")
    country: Mapped[str] = mapped_column(String(128), nullable=False, default="")
    email: Mapped[str | None] = mapped_column(String(320), nullable=True)
    phone: Mapped[str | None] = mapped_column(String(64), nullable=True)
    siret: Mapped[str | None] = mapped_column(String(32), nullable=True)
    tva_intra: Mapped[str | None] = mapped_column(String(32), nullable=True)
    tva_applicable: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)


class _CustomerRow(BillingStoreBase):
    __tablename__ = "customers"

    customer_id: Mapped[str] = mapped_column(String(128), primary_key=True)
    company_id: Mapped[str] = mapped_column(String(128), ForeignKey("companies.company_id"), nullable=False, index=True)
    customer_type: Mapped[str] = mapped_column(String(16), nullable=False)
    email: Mapped[str | None] = mapped_column(String(320), nullable=True)
    phone: Mapped[str | None] = mapped_column(String(64), nullable=True)
    address: Mapped[str] = mapped_column(String(512), nullable=False, default="")
    postal_code: Mapped[str] = mapped_column(String(16), nullable=False, default="")
    city: Mapped[str] = mapped_column(String(128), nullable=False, default="")
    country: Mapped[str] = mapped_column(String(128), nullable=False, default="")
    business_name: Mapped[str | None] = mapped_column(String(256), nullable=True)
    business_siret: Mapped[str | None] = mapped_column(String(32), nullable=True)
    business_tva_intra: Mapped[str | None] = mapped_column(String(32), nullable=True)
    business_tva_applicable: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    first_name: Mapped[str | None] = mapped_column(String(128), nullable=True)
    last_name: Mapped[str | None] = mapped_column(String(128), nullable=True)


class _ProductRow(BillingStoreBase):
    __tablename__ = "products"

    product_id: Mapped[str] = mapped_column(String(128), primary_key=True)
    name: Mapped[str] = mapped_column(String(256), nullable=False)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    unit: Mapped[str] = mapped_column(String(16), nullable=False, default="unite")


class _UserRow(BillingStoreBase):
    __tablename__ = "users"

    user_id: Mapped[str] = mapped_column(String(128), primary_key=True)
    first_name: Mapped[str] = mapped_column(String(128), nullable=False)
    last_name: Mapped[str] = mapped_column(String(128), nullable=False)
    email: Mapped[str | None] = mapped_column(String(320), nullable=True)
    company_id: Mapped[str | None] = mapped_column(String(128), ForeignKey("companies.company_id"), nullable=True)


class _DocumentColumns:
    document_number: Mapped[str] = mapped_column(String(64), nullable=False)
    company_id: Mapped[str] = mapped_column(String(128), ForeignKey("companies.company_id"), nullable=False, index=True)
    customer_id: Mapped[str] = mapped_column(String(128), ForeignKey("customers.customer_id"), nullable=False)
    user_id: Mapped[str] = mapped_column(String(128), nullable=False)
    status: Mapped[str] = mapped_column(String(16), nullable=False)
    issue_date: Mapped[date] = mapped_column(Date, nullable=False)
    due_date: Mapped[date] = mapped_column(Date, nullable=False)
    amount_excluding_tax: Mapped[Decimal] = mapped_column(Numeric(12, 2), nullable=False)
    tax: Mapped[Decimal] = mapped_column(Numeric(12, 2), nullable=False)
    amount_including_tax: Mapped[Decimal] = mapped_column(Numeric(12, 2), nullable=False)
    conditions: Mapped[str | None] = mapped_column(Text, nullable=True)
    late_payment_penalty: Mapped[str | None] = mapped_column(Text, nullable=True)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)


class _InvoiceRow(_DocumentColumns, BillingStoreBase):
    __tablename__ = "invoices"

    document_id: Mapped[str] = mapped_column("invoice_id", String(128), primary_key=True)


class _QuoteRow(_DocumentColumns, BillingStoreBase):
    __tablename__ = "quotes"

    document_id: Mapped[str] = mapped_column("quote_id", String(128), primary_key=True)


class _DocumentItemRow(BillingStoreBase):
    __tablename__ = "document_items"

    item_id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    document_kind: Mapped[str] = mapped_column(String(16), nullable=False)
    document_id: Mapped[str] = mapped_column(String(128), nullable=False, index=True)
    position: Mapped[int] = mapped_column(Integer, nullable=False)
    product_id: Mapped[str | None] = mapped_column(String(128), ForeignKey("products.product_id"), nullable=True)
    name: Mapped[str | None] = mapped_column(String(256), nullable=True)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    unit: Mapped[str | None] = mapped_column(String(16), nullable=True)
    quantity: Mapped[Decimal] = mapped_column(Numeric(12, 3), nullable=False)
    unit_price_excluding_tax: Mapped[Decimal] = mapped_column(Numeric(12, 2), nullable=False)
    vat_rate: Mapped[str] = mapped_column(String(16), nullable=False)


_DOCUMENT_ROWS: dict[str, type[_InvoiceRow] | type[_QuoteRow]] = {
    "invoice": _InvoiceRow,
    "quote": _QuoteRow,
}


def _company_from_row(row: _CompanyRow) -> Company:
    return Company(
        company_id=row.company_id,
        name=row.name,
        address=row.address,
        postal_code=row.postal_code,
        city=row.city,
        country=row.country,
        email=row.email,
        phone=row.phone,
        siret=row.siret,
        tva_intra=row.tva_intra,
        tva_applicable=row.tva_applicable,
    )


def _customer_from_row(row: _CustomerRow) -> Customer:
    business = None
    individual = None
    if row.customer_type == "business":
        business = BusinessCustomer(
            name=row.business_name or "",
            siret=row.business_siret,
            tva_intra=row.business_tva_intra,
            tva_applicable=row.business_tva_applicable,
        )
    else:
        individual = IndividualCustomer(first_name=row.first_name or "", last_name=row.last_name or "")
    return Customer(
        customer_id=row.customer_id,
        company_id=row.company_id,
        email=row.email,
        phone=row.phone,
        address=row.address,
        postal_code=row.postal_code,
        city=row.city,
        country=row.country,
        business=business,
        individual=individual,
    )


class SqlAlchemyBillingRepository:
    def __init__(self, database_url: str) -> None:
        if not database_url:
            raise RuntimeError("DATABASE_URL is required for BILLING_STORE_BACKEND=postgres")
        self._engine = create_engine(database_url, future=True, pool_pre_ping=True)
        self._session_factory = sessionmaker(self._engine, expire_on_commit=False, future=True)
        if database_url.startswith("sqlite"):
            BillingStoreBase.metadata.create_all(self._engine)

    def _session(self):
        return self._session_factory()

    def reset(self) -> None:
        with self._session() as session:
            with session.begin():
                session.execute(delete(_DocumentItemRow))
                session.execute(delete(_InvoiceRow))
                session.execute(delete(_QuoteRow))
                session.execute(delete(_UserRow))
                session.execute(delete(_CustomerRow))
                session.execute(delete(_ProductRow))
                session.execute(delete(_CompanyRow))

    def get_document(
        self,
        kind: DocumentKind,
        document_id: str,
        *,
        company_id: str | None = None,
    ) -> BillingDocument | None:
        row_type = _DOCUMENT_ROWS[kind]
        with self._session() as session:
            row = session.get(row_type, document_id)
            if row is None:
                return None
            if company_id is not None and row.company_id != company_id:
                return None
            company_row = session.get(_CompanyRow, row.company_id)
            customer_row = session.get(_CustomerRow, row.customer_id)
            if company_row is None or customer_row is None:
                return None
            item_rows = session.execute(
                select(_DocumentItemRow)
                .where(
                    _DocumentItemRow.document_kind == kind,
                    _DocumentItemRow.document_id == document_id,
                )
                .order_by(_DocumentItemRow.position.asc())
            ).scalars()
            items: list[LineItem] = []
            for item_row in item_rows:
                product = None
                if item_row.product_id is not None:
                    product_row = session.get(_ProductRow, item_row.product_id)
                    if product_row is not None:
                        product = Product(
                            product_id=product_row.product_id,
                            name=product_row.name,
                            description=product_row.description,
                            unit=product_row.unit,
                        )
                items.append(
                    LineItem(
                        quantity=Decimal(item_row.quantity),
                        unit_price_excluding_tax=Decimal(item_row.unit_price_excluding_tax),
                        vat_rate=item_row.vat_rate,
                        product=product,
                        name=item_row.name,
                        description=item_row.description,
                        unit=item_row.unit,
                    )
                )
            return BillingDocument(
                kind=kind,
                document_id=row.document_id,
                document_number=row.document_number,
                company_id=row.company_id,
                user_id=row.user_id,
                status=row.status,
                issue_date=row.issue_date,
                due_date=row.due_date,
                amount_excluding_tax=Decimal(row.amount_excluding_tax),
                tax=Decimal(row.tax),
                amount_including_tax=Decimal(row.amount_including_tax),
                company=_company_from_row(company_row),
                customer=_customer_from_row(customer_row),
                items=tuple(items),
                conditions=row.conditions,
                late_payment_penalty=row.late_payment_penalty,
            )

    def set_document_status(self, kind: DocumentKind, document_id: str, status: str) -> None:
        row_type = _DOCUMENT_ROWS[kind]
        with self._session() as session:
            with session.begin():
                row = session.get(row_type, document_id)
                if row is not None:
                    row.status = status
                    row.updated_at = _now_utc()

    def get_user(self, user_id: str) -> User | None:
        with self._session() as session:
            row = session.get(_UserRow, user_id)
            if row is None:
                return None
            company = None
            if row.company_id is not None:
                company_row = session.get(_CompanyRow, row.company_id)
                if company_row is not None:
                    company = _company_from_row(company_row)
            return User(
                user_id=row.user_id,
                first_name=row.first_name,
                last_name=row.last_name,
                email=row.email,
                company=company,
            )

    def _merge_company(self, session, company: Company) -> None:
        session.merge(
            _CompanyRow(
                company_id=company.company_id,
                name=company.name,
                address=company.address,
                postal_code=company.postal_code,
                city=company.city,
                country=company.country,
                email=company.email,
                phone=company.phone,
                siret=company.siret,
                tva_intra=company.tva_intra,
                tva_applicable=company.tva_applicable,
            )
        )

    def save_document(self, document: BillingDocument) -> None:
        row_type = _DOCUMENT_ROWS[document.kind]
        customer = document.customer
        with self._session() as session:
            with session.begin():
                self._merge_company(session, document.company)
                session.merge(
                    _CustomerRow(
                        customer_id=customer.customer_id,
                        company_id=customer.company_id,
                        customer_type="business" if customer.business is not None else "individual",
                        email=customer.email,
                        phone=customer.phone,
                        address=customer.address,
                        postal_code=customer.postal_code,
                        city=customer.city,
                        country=customer.country,
                        business_name=customer.business.name if customer.business else None,
                        business_siret=customer.business.siret if customer.business else None,
                        business_tva_intra=customer.business.tva_intra if customer.business else None,
                        business_tva_applicable=customer.business.tva_applicable if customer.business else False,
                        first_name=customer.individual.first_name if customer.individual else None,
                        last_name=customer.individual.last_name if customer.individual else None,
                    )
                )
                session.flush()
                session.merge(
                    row_type(
                        document_id=document.document_id,
                        document_number=document.document_number,
                        company_id=document.company_id,
                        customer_id=customer.customer_id,
                        user_id=document.user_id,
                        status=document.status,
                        issue_date=document.issue_date,
                        due_date=document.due_date,
                        amount_excluding_tax=document.amount_excluding_tax,
                        tax=document.tax,
                        amount_including_tax=document.amount_including_tax,
                        conditions=document.conditions,
                        late_payment_penalty=document.late_payment_penalty,
                        updated_at=_now_utc(),
                    )
                )
                session.execute(
                    delete(_DocumentItemRow).where(
                        _DocumentItemRow.document_kind == document.kind,
                        _DocumentItemRow.document_id == document.document_id,
                    )
                )
                for position, item in enumerate(document.items):
                    if item.product is not None:
                        session.merge(
                            _ProductRow(
                                product_id=item.product.product_id,
                                name=item.product.name,
                                description=item.product.description,
                                unit=item.product.unit,
                            )
                        )
                        session.flush()
                    session.add(
                        _DocumentItemRow(
                            document_kind=document.kind,
                            document_id=document.document_id,
                            position=position,
                            product_id=item.product.product_id if item.product else None,
                            name=item.name,
                            description=item.description,
                            unit=item.unit,
                            quantity=item.quantity,
                            unit_price_excluding_tax=item.unit_price_excluding_tax,
                            vat_rate=item.vat_rate,
                        )
                    )

    def save_user(self, user: User) -> None:
        with self._session() as session:
            with session.begin():
                if user.company is not None:
                    self._merge_company(session, user.company)
                    session.flush()
                session.merge(
                    _UserRow(
                        user_id=user.user_id,
                        first_name=user.first_name,
                        last_name=user.last_name,
                        email=user.email,
                        company_id=user.company.company_id if user.company else None,
                    )
                )


def create_billing_repository(*, backend: str, database_url: str) -> BillingRepository:
    normalized = backend.strip().lower()
    if normalized == "postgres":
        return SqlAlchemyBillingRepository(database_url)
    if normalized == "inmemory":
        return InMemoryBillingRepository()
    raise RuntimeError(f"unsupported BILLING_STORE_BACKEND: {backend}")
