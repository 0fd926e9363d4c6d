"""subscription core tables

Revision ID: 20261018_0001_subscription_core
Revises:
Create Date: 2026-10-18 09:00:00.000000
"""
from alembic import op
import sqlalchemy as sa

# Revision identifiers, used by Alembic.
revision = "20261018_0001_subscription_core"
down_revision = None
branch_labels = None
depends_on = None


def upgrade():
    op.create_table(
        "subscriptions",
        sa.Column("id", sa.String(36), primary_key=True, nullable=False),
        sa.Column("user_id", sa.String(64), nullable=False),
        sa.Column("email_account_id", sa.String(64), nullable=True),
        sa.Column("service_name", sa.String(256), nullable=False, server_default=""),
        sa.Column("price", sa.Numeric(12, 2), nullable=False),
        sa.Column("currency", sa.String(3), nullable=False, server_default="USD"),
        sa.Column("billing_cycle", sa.String(16), nullable=False),
        sa.Column("next_renewal_date", sa.Date(), nullable=True),
        sa.Column("category", sa.String(128), nullable=False, server_default=""),
        sa.Column("status", sa.String(16), nullable=False),
        sa.Column("extraction_confidence", sa.Float(), nullable=False, server_default="1.0"),
        sa.Column("requires_review", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("cancellation_link", sa.String(1024), nullable=True),
        sa.Column("last_activity_email_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("cancelled_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.text("CURRENT_TIMESTAMP")),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.text("CURRENT_TIMESTAMP")),
        sa.Column("version", sa.Integer(), nullable=False, server_default="1"),
    )
    op.create_index("ix_subscriptions_user_id", "subscriptions", ["user_id"])
    op.create_index("ix_subscriptions_email_account_id", "subscriptions", ["email_account_id"])
    op.create_index("ix_subscriptions_status", "subscriptions", ["status"])
    op.create_index("ix_subscriptions_user_account", "subscriptions", ["user_id", "email_account_id"])

    op.create_table(
        "subscription_history",
        sa.Column("id", sa.String(36), primary_key=True, nullable=False),
        sa.Column("subscription_id", sa.String(36), nullable=False),
        sa.Column("changed_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("change_type", sa.String(32), nullable=False),
        sa.Column("old_value", sa.Text(), nullable=False, server_default=""),
        sa.Column("new_value", sa.Text(), nullable=False, server_default=""),
        sa.Column("source_email_id", sa.String(128), nullable=True),
        sa.Column("seq", sa.Integer(), nullable=False, server_default="0"),
        sa.ForeignKeyConstraint(["subscription_id"], ["subscriptions.id"], name="fk_history_subscription"),
    )
    op.create_index("ix_subscription_history_subscription_id", "subscription_history", ["subscription_id"])

    op.create_table(
        "alerts",
        sa.Column("id", sa.String(36), primary_key=True, nullable=False),
        sa.Column("user_id", sa.String(64), nullable=False),
        sa.Column("subscription_id", sa.String(36), nullable=False),
        sa.Column("type", sa.String(32), nullable=False),
        sa.Column("message", sa.Text(), nullable=False, server_default=""),
        sa.Column("data", sa.JSON(), nullable=False),
        sa.Column("cycle_key", sa.String(128), nullable=False, server_default=""),
        sa.Column("delivery_mode", sa.String(16), nullable=False, server_default="immediate"),
        sa.Column("scheduled_for", sa.DateTime(timezone=True), nullable=False),
        sa.Column("sent_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("status", sa.String(16), nullable=False),
        sa.Column("retry_count", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.text("CURRENT_TIMESTAMP")),
        sa.ForeignKeyConstraint(["subscription_id"], ["subscriptions.id"], name="fk_alerts_subscription"),
    )
    op.create_index("ix_alerts_user_id", "alerts", ["user_id"])
    op.create_index("ix_alerts_scheduled_for", "alerts", ["scheduled_for"])
    op.create_index("ix_alerts_status", "alerts", ["status"])
    op.create_index("ix_alerts_subscription_type", "alerts", ["subscription_id", "type"])

    op.create_table(
        "user_preferences",
        sa.Column("user_id", sa.String(64), primary_key=True, nullable=False),
        sa.Column("enable_renewal_alerts", sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column("enable_price_change_alerts", sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column("enable_trial_ending_alerts", sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column("enable_unused_subscription_alerts", sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column("use_daily_digest", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("timezone", sa.String(64), nullable=False, server_default="UTC"),
        sa.Column("preferred_currency", sa.String(3), nullable=False, server_default="USD"),
    )


def downgrade():
    op.drop_table("user_preferences")
    op.drop_index("ix_alerts_subscription_type", table_name="alerts")
    op.drop_index("ix_alerts_status", table_name="alerts")
    op.drop_index("ix_alerts_scheduled_for", table_name="alerts")
    op.drop_index("ix_alerts_user_id", table_name="alerts")
    op.drop_table("alerts")
    op.drop_index("ix_subscription_history_subscription_id", table_name="subscription_history")
    op.drop_table("subscription_history")
    op.drop_index("ix_subscriptions_user_account", table_name="subscriptions")
    op.drop_index("ix_subscriptions_status", table_name="subscriptions")
    op.drop_index("ix_subscriptions_email_account_id", table_name="subscriptions")
    op.drop_index("ix_subscriptions_user_id", table_name="subscriptions")
    op.drop_table("subscriptions")
