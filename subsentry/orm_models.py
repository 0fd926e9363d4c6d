from datetime import datetime, date
from decimal import Decimal

from sqlalchemy import (
    String,
    Integer,
    Float,
    Date,
    DateTime,
    Text,
    Numeric,
    ForeignKey,
    Boolean,
    Index,
    JSON,
    func,
    false as sa_false,
)
from sqlalchemy.orm import Mapped, mapped_column

from subsentry.db import Base


class SubscriptionORM(Base):
    __tablename__ = "subscriptions"
    id: Mapped[str] = mapped_column(String(36), primary_key=True)
    user_id: Mapped[str] = mapped_column(String(64), index=True, nullable=False)
    # NULL for manually entered subscriptions
    email_account_id: Mapped[str | None] = mapped_column(
        String(64), index=True, nullable=True
    )
    service_name: Mapped[str] = mapped_column(String(256), nullable=False, default="")
    price: Mapped[Decimal] = mapped_column(Numeric(12, 2), nullable=False)
    currency: Mapped[str] = mapped_column(String(3), nullable=False, default="USD")
    billing_cycle: Mapped[str] = mapped_column(
        String(16), nullable=False
    )  # Weekly|Monthly|Quarterly|Annual|Unknown
    next_renewal_date: Mapped[date | None] = mapped_column(Date, nullable=True)
    category: Mapped[str] = mapped_column(String(128), nullable=False, default="")
    status: Mapped[str] = mapped_column(String(16), index=True, nullable=False)
    extraction_confidence: Mapped[float] = mapped_column(Float, nullable=False, default=1.0)
    requires_review: Mapped[bool] = mapped_column(
        Boolean, nullable=False, server_default=sa_false()
    )
    cancellation_link: Mapped[str | None] = mapped_column(String(1024), nullable=True)
    last_activity_email_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    cancelled_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now()
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now()
    )
    version: Mapped[int] = mapped_column(Integer, nullable=False, default=1)

    __mapper_args__ = {"version_id_col": version}


Index("ix_subscriptions_user_account", SubscriptionORM.user_id, SubscriptionORM.email_account_id)


class SubscriptionHistoryORM(Base):
    """Append-only audit trail; rows are never updated or deleted."""

    __tablename__ = "subscription_history"
    id: Mapped[str] = mapped_column(String(36), primary_key=True)
    subscription_id: Mapped[str] = mapped_column(
        String(36), ForeignKey("subscriptions.id"), index=True, nullable=False
    )
    changed_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    change_type: Mapped[str] = mapped_column(
        String(32), nullable=False
    )  # PriceChange|RenewalDateUpdate|StatusChange
    old_value: Mapped[str] = mapped_column(Text, nullable=False, default="")
    new_value: Mapped[str] = mapped_column(Text, nullable=False, default="")
    source_email_id: Mapped[str | None] = mapped_column(String(128), nullable=True)
    # Tie-breaker for identical changed_at values
    seq: Mapped[int] = mapped_column(Integer, nullable=False, default=0)


class AlertORM(Base):
    __tablename__ = "alerts"
    id: Mapped[str] = mapped_column(String(36), primary_key=True)
    user_id: Mapped[str] = mapped_column(String(64), index=True, nullable=False)
    subscription_id: Mapped[str] = mapped_column(
        String(36), ForeignKey("subscriptions.id"), nullable=False
    )
    type: Mapped[str] = mapped_column(String(32), nullable=False)
    message: Mapped[str] = mapped_column(Text, nullable=False, default="")
    data: Mapped[dict] = mapped_column(JSON, nullable=False, default=dict)
    cycle_key: Mapped[str] = mapped_column(String(128), nullable=False, default="")
    delivery_mode: Mapped[str] = mapped_column(String(16), nullable=False, default="immediate")
    scheduled_for: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), index=True, nullable=False
    )
    sent_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    status: Mapped[str] = mapped_column(String(16), index=True, nullable=False)
    retry_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now()
    )


Index("ix_alerts_subscription_type", AlertORM.subscription_id, AlertORM.type)


class UserPreferencesORM(Base):
    __tablename__ = "user_preferences"
    user_id: Mapped[str] = mapped_column(String(64), primary_key=True)
    enable_renewal_alerts: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    enable_price_change_alerts: Mapped[bool] = mapped_column(
        Boolean, nullable=False, default=True
    )
    enable_trial_ending_alerts: Mapped[bool] = mapped_column(
        Boolean, nullable=False, default=True
    )
    enable_unused_subscription_alerts: Mapped[bool] = mapped_column(
        Boolean, nullable=False, default=True
    )
    use_daily_digest: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    timezone: Mapped[str] = mapped_column(String(64), nullable=False, default="UTC")
    preferred_currency: Mapped[str] = mapped_column(String(3), nullable=False, default="USD")
