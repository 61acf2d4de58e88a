"""Create email notification and delivery event tables."""

from __future__ import annotations

from alembic import op
import sqlalchemy as sa

# revision identifiers, used by Alembic.
revision = "20261018_0002"
down_revision = "20261018_0001"
branch_labels = None
depends_on = None


def upgrade() -> None:
    op.create_table(
        "email_notifications",
        sa.Column("notification_id", sa.String(length=36), nullable=False),
        sa.Column("type", sa.String(length=32), nullable=False),
        sa.Column("status", sa.String(length=16), nullable=False),
        sa.Column("user_id", sa.String(length=128), nullable=False),
        sa.Column("company_id", sa.String(length=128), nullable=False),
        sa.Column("customer_id", sa.String(length=128), nullable=True),
        sa.Column("invoice_id", sa.String(length=128), nullable=True),
        sa.Column("quote_id", sa.String(length=128), nullable=True),
        sa.Column("sender_name", sa.String(length=256), nullable=False),
        sa.Column("sender_email", sa.String(length=320), nullable=False),
        sa.Column("recipient_name", sa.String(length=256), nullable=True),
        sa.Column("recipient_email", sa.String(length=320), nullable=False),
        sa.Column("subject", sa.String(length=998), nullable=False),
        sa.Column("html_content", sa.Text(), nullable=False),
        sa.Column("text_content", sa.Text(), nullable=True),
        sa.Column("variables", sa.Text(), nullable=True),
        sa.Column("metadata", sa.Text(), nullable=True),
        sa.Column("priority", sa.Integer(), nullable=False, server_default="5"),
        sa.Column("scheduled_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("sent_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("external_id", sa.String(length=256), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("notification_id"),
        sa.UniqueConstraint("external_id"),
        sa.CheckConstraint(
            "invoice_id IS NULL OR quote_id IS NULL",
            name="ck_email_notifications_single_document",
        ),
    )
    for column in ("type", "status", "user_id", "company_id", "recipient_email", "created_at"):
        op.create_index(f"ix_email_notifications_{column}", "email_notifications", [column], unique=False)

    op.create_table(
        "notification_delivery_events",
        sa.Column("event_row_id", sa.Integer(), autoincrement=True, nullable=False),
        sa.Column("notification_id", sa.String(length=36), nullable=False),
        sa.Column("event", sa.String(length=16), nullable=False),
        sa.Column("occurred_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("event_row_id"),
        sa.UniqueConstraint("notification_id", "event", name="uq_notification_delivery_event"),
    )
    op.create_index(
        "ix_notification_delivery_events_notification_id",
        "notification_delivery_events",
        ["notification_id"],
        unique=False,
    )


def downgrade() -> None:
    op.drop_index("ix_notification_delivery_events_notification_id", table_name="notification_delivery_events")
    op.drop_table("notification_delivery_events")
    for column in ("type", "status", "user_id", "company_id", "recipient_email", "created_at"):
        op.drop_index(f"ix_email_notifications_{column}", table_name="email_notifications")
    op.drop_table("email_notifications")
