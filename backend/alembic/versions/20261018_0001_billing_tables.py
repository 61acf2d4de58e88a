"""Create billing record tables read by the notification pipeline."""

from __future__ import annotations

from alembic import op
import sqlalchemy as sa

# revision identifiers, used by Alembic.
revision = "20261018_0001"
down_revision = None
branch_labels = None
depends_on = None


def _document_columns(id_column: str) -> list[sa.Column]:
    return [
        sa.Column(id_column, sa.String(length=128), nullable=False),
        sa.Column("document_number", sa.String(length=64), nullable=False),
        sa.Column("company_id", sa.String(length=128), nullable=False),
        sa.Column("customer_id", sa.String(length=128), nullable=False),
        sa.Column("user_id", sa.String(length=128), nullable=False),
        sa.Column("status", sa.String(length=16), nullable=False),
        sa.Column("issue_date", sa.Date(), nullable=False),
        sa.Column("due_date", sa.Date(), nullable=False),
        sa.Column("amount_excluding_tax", sa.Numeric(12, 2), nullable=False),
        sa.Column("tax", sa.Numeric(12, 2), nullable=False),
        sa.Column("amount_including_tax", sa.Numeric(12, 2), nullable=False),
        sa.Column("conditions", sa.Text(), nullable=True),
        sa.Column("late_payment_penalty", sa.Text(), nullable=True),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.ForeignKeyConstraint(["company_id"], ["companies.company_id"]),
        sa.ForeignKeyConstraint(["customer_id"], ["customers.customer_id"]),
        sa.PrimaryKeyConstraint(id_column),
    ]


def upgrade() -> None:
    op.create_table(
        "companies",
        sa.Column("company_id", sa.String(length=128), nullable=False),
        sa.Column("name", sa.String(length=256), nullable=False),
        sa.Column("address", sa.String(length=512), nullable=False),
        sa.Column("postal_code", sa.String(length=16), nullable=False),
        sa.Column("city", sa.String(length=128), nullable=False),
        sa.Column("country", sa.String(length=128), nullable=False),
        sa.Column("email", sa.String(length=320), nullable=True),
        sa.Column("phone", sa.String(length=64), nullable=True),
        sa.Column("siret", sa.String(length=32), nullable=True),
        sa.Column("tva_intra", sa.String(length=32), nullable=True),
        sa.Column("tva_applicable", sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.PrimaryKeyConstraint("company_id"),
    )

    op.create_table(
        "customers",
        sa.Column("customer_id", sa.String(length=128), nullable=False),
        sa.Column("company_id", sa.String(length=128), nullable=False),
        sa.Column("customer_type", sa.String(length=16), nullable=False),
        sa.Column("email", sa.String(length=320), nullable=True),
        sa.Column("phone", sa.String(length=64), nullable=True),
        sa.Column("address", sa.String(length=512), nullable=False),
        sa.Column("postal_code", sa.String(length=16), nullable=False),
        sa.Column("city", sa.String(length=128), nullable=False),
        sa.Column("country", sa.String(length=128), nullable=False),
        sa.Column("business_name", sa.String(length=256), nullable=True),
        sa.Column("business_siret", sa.String(length=32), nullable=True),
        sa.Column("business_tva_intra", sa.String(length=32), nullable=True),
        sa.Column("business_tva_applicable", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("first_name", sa.String(length=128), nullable=True),
        sa.Column("last_name", sa.String(length=128), nullable=True),
        sa.ForeignKeyConstraint(["company_id"], ["companies.company_id"]),
        sa.PrimaryKeyConstraint("customer_id"),
    )
    op.create_index("ix_customers_company_id", "customers", ["company_id"], unique=False)

    op.create_table(
        "products",
        sa.Column("product_id", sa.String(length=128), nullable=False),
        sa.Column("name", sa.String(length=256), nullable=False),
        sa.Column("description", sa.Text(), nullable=True),
        sa.Column("unit", sa.String(length=16), nullable=False, server_default="unite"),
        sa.PrimaryKeyConstraint("product_id"),
    )

    op.create_table(
        "users",
        sa.Column("user_id", sa.String(length=128), nullable=False),
        sa.Column("first_name", sa.String(length=128), nullable=False),
        sa.Column("last_name", sa.String(length=128), nullable=False),
        sa.Column("email", sa.String(length=320), nullable=True),
        sa.Column("company_id", sa.String(length=128), nullable=True),
        sa.ForeignKeyConstraint(["company_id"], ["companies.company_id"]),
        sa.PrimaryKeyConstraint("user_id"),
    )

    op.create_table("invoices", *_document_columns("invoice_id"))
    op.create_index("ix_invoices_company_id", "invoices", ["company_id"], unique=False)
    op.create_table("quotes", *_document_columns("quote_id"))
    op.create_index("ix_quotes_company_id", "quotes", ["company_id"], unique=False)

    op.create_table(
        "document_items",
        sa.Column("item_id", sa.Integer(), autoincrement=True, nullable=False),
        sa.Column("document_kind", sa.String(length=16), nullable=False),
        sa.Column("document_id", sa.String(length=128), nullable=False),
        sa.Column("position", sa.Integer(), nullable=False),
        sa.Column("product_id", sa.String(length=128), nullable=True),
        sa.Column("name", sa.String(length=256), nullable=True),
        sa.Column("description", sa.Text(), nullable=True),
        sa.Column("unit", sa.String(length=16), nullable=True),
        sa.Column("quantity", sa.Numeric(12, 3), nullable=False),
        sa.Column("unit_price_excluding_tax", sa.Numeric(12, 2), nullable=False),
        sa.Column("vat_rate", sa.String(length=16), nullable=False),
        sa.ForeignKeyConstraint(["product_id"], ["products.product_id"]),
        sa.PrimaryKeyConstraint("item_id"),
    )
    op.create_index("ix_document_items_document_id", "document_items", ["document_id"], unique=False)


def downgrade() -> None:
    op.drop_index("ix_document_items_document_id", table_name="document_items")
    op.drop_table("document_items")
    op.drop_index("ix_quotes_company_id", table_name="quotes")
    op.drop_table("quotes")
    op.drop_index("ix_invoices_company_id", table_name="invoices")
    op.drop_table("invoices")
    op.drop_table("users")
    op.drop_table("products")
    op.drop_index("ix_customers_company_id", table_name="customers")
    op.drop_table("customers")
    op.drop_table("companies")
