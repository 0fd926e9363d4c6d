"""
SQL stores: Session-backed implementations of the store Protocols.

One store instance wraps one Session and is not shared across threads; job
workers open their own (see ``subsentry.services.wiring``).
"""

from __future__ import annotations

from contextlib import contextmanager
from datetime import datetime
from decimal import Decimal
from typing import Iterator, List, Optional

from sqlalchemy import func, select
from sqlalchemy.orm import Session
from sqlalchemy.orm.exc import StaleDataError

from subsentry.errors import ConcurrencyError, NotFoundError
from subsentry.models.domain import (
    Alert,
    AlertStatus,
    AlertType,
    BillingCycle,
    ChangeType,
    DeliveryMode,
    Subscription,
    SubscriptionHistory,
    SubscriptionStatus,
    UserPreferences,
)
from subsentry.orm_models import (
    AlertORM,
    SubscriptionHistoryORM,
    SubscriptionORM,
    UserPreferencesORM,
)
from subsentry.utils.time import ensure_utc, utc_now

_SUB_FIELDS = (
    "user_id",
    "email_account_id",
    "service_name",
    "currency",
    "next_renewal_date",
    "category",
    "extraction_confidence",
    "requires_review",
    "cancellation_link",
    "last_activity_email_at",
    "cancelled_at",
    "created_at",
    "updated_at",
)


def _opt_utc(dt: Optional[datetime]) -> Optional[datetime]:
    return ensure_utc(dt) if dt is not None else None


def _to_subscription(row: SubscriptionORM) -> Subscription:
    return Subscription(
        id=row.id,
        user_id=row.user_id,
        email_account_id=row.email_account_id,
        service_name=row.service_name or "",
        price=Decimal(row.price),
        currency=row.currency,
        billing_cycle=BillingCycle(row.billing_cycle),
        next_renewal_date=row.next_renewal_date,
        category=row.category or "",
        status=SubscriptionStatus(row.status),
        extraction_confidence=row.extraction_confidence,
        requires_review=bool(row.requires_review),
        cancellation_link=row.cancellation_link,
        last_activity_email_at=_opt_utc(row.last_activity_email_at),
        cancelled_at=_opt_utc(row.cancelled_at),
        created_at=_opt_utc(row.created_at),
        updated_at=_opt_utc(row.updated_at),
        version=row.version,
    )


def _apply_subscription(row: SubscriptionORM, sub: Subscription) -> None:
    for name in _SUB_FIELDS:
        setattr(row, name, getattr(sub, name))
    row.price = sub.price
    row.billing_cycle = sub.billing_cycle.value
    row.status = sub.status.value


def _to_history(row: SubscriptionHistoryORM) -> SubscriptionHistory:
    return SubscriptionHistory(
        id=row.id,
        subscription_id=row.subscription_id,
        change_type=ChangeType(row.change_type),
        old_value=row.old_value,
        new_value=row.new_value,
        changed_at=ensure_utc(row.changed_at),
        source_email_id=row.source_email_id,
    )


def _to_alert(row: AlertORM) -> Alert:
    return Alert(
        id=row.id,
        user_id=row.user_id,
        subscription_id=row.subscription_id,
        type=AlertType(row.type),
        message=row.message,
        data=dict(row.data or {}),
        cycle_key=row.cycle_key or "",
        delivery_mode=DeliveryMode(row.delivery_mode),
        scheduled_for=ensure_utc(row.scheduled_for),
        sent_at=_opt_utc(row.sent_at),
        status=AlertStatus(row.status),
        retry_count=row.retry_count,
        created_at=_opt_utc(row.created_at),
    )


def _apply_alert(row: AlertORM, alert: Alert) -> None:
    row.user_id = alert.user_id
    row.subscription_id = alert.subscription_id
    row.type = alert.type.value
    row.message = alert.message
    row.data = dict(alert.data)
    row.cycle_key = alert.cycle_key
    row.delivery_mode = alert.delivery_mode.value
    row.scheduled_for = alert.scheduled_for
    row.sent_at = alert.sent_at
    row.status = alert.status.value
    row.retry_count = alert.retry_count
    if alert.created_at is not None:
        row.created_at = alert.created_at


class _SessionUnitOfWork:
    """Commit-per-call outside ``atomic()``, one commit for the whole block inside it."""

    def __init__(self, db: Session):
        self.db = db
        self._depth = 0

    def _write_done(self) -> None:
        if self._depth:
            self.db.flush()
        else:
            self.db.commit()

    @contextmanager
    def atomic(self) -> Iterator[None]:
        self._depth += 1
        try:
            yield
        except BaseException:
            self._depth -= 1
            if self._depth == 0:
                self.db.rollback()
            raise
        else:
            self._depth -= 1
            if self._depth == 0:
                self.db.commit()


class SqlSubscriptionStore(_SessionUnitOfWork):
    def get_by_user(self, user_id: str) -> List[Subscription]:
        rows = self.db.scalars(
            select(SubscriptionORM).where(SubscriptionORM.user_id == user_id)
        ).all()
        return [_to_subscription(r) for r in rows]

    def get_by_id(self, subscription_id: str) -> Optional[Subscription]:
        row = self.db.get(SubscriptionORM, subscription_id)
        return _to_subscription(row) if row else None

    def get_by_email_account(self, email_account_id: str) -> List[Subscription]:
        rows = self.db.scalars(
            select(SubscriptionORM).where(
                SubscriptionORM.email_account_id == email_account_id
            )
        ).all()
        return [_to_subscription(r) for r in rows]

    def get_user_ids(self) -> List[str]:
        return list(
            self.db.scalars(
                select(SubscriptionORM.user_id).distinct().order_by(SubscriptionORM.user_id)
            ).all()
        )

    def create(self, subscription: Subscription) -> Subscription:
        now = utc_now()
        subscription.created_at = subscription.created_at or now
        subscription.updated_at = subscription.updated_at or subscription.created_at
        row = SubscriptionORM(id=subscription.id)
        _apply_subscription(row, subscription)
        self.db.add(row)
        self._write_done()
        subscription.version = row.version
        return _to_subscription(row)

    def update(self, subscription: Subscription) -> None:
        row = self.db.get(SubscriptionORM, subscription.id)
        if row is None:
            raise NotFoundError("subscription not found", subscription_id=subscription.id)
        if row.version != subscription.version:
            raise ConcurrencyError(
                "subscription was modified concurrently", subscription_id=subscription.id
            )
        _apply_subscription(row, subscription)
        try:
            self._write_done()
        except StaleDataError as e:
            self.db.rollback()
            raise ConcurrencyError(
                "subscription was modified concurrently", subscription_id=subscription.id
            ) from e
        subscription.version = row.version

    def append_history(self, entry: SubscriptionHistory) -> None:
        seq = self.db.scalar(
            select(func.coalesce(func.max(SubscriptionHistoryORM.seq), 0)).where(
                SubscriptionHistoryORM.subscription_id == entry.subscription_id
            )
        )
        self.db.add(
            SubscriptionHistoryORM(
                id=entry.id,
                subscription_id=entry.subscription_id,
                changed_at=entry.changed_at,
                change_type=entry.change_type.value,
                old_value=entry.old_value,
                new_value=entry.new_value,
                source_email_id=entry.source_email_id,
                seq=(seq or 0) + 1,
            )
        )
        self._write_done()

    def get_history(self, subscription_id: str) -> List[SubscriptionHistory]:
        rows = self.db.scalars(
            select(SubscriptionHistoryORM)
            .where(SubscriptionHistoryORM.subscription_id == subscription_id)
            .order_by(SubscriptionHistoryORM.changed_at.asc(), SubscriptionHistoryORM.seq.asc())
        ).all()
        return [_to_history(r) for r in rows]


class SqlAlertStore(_SessionUnitOfWork):
    def find_active(self, subscription_id: str, alert_type: AlertType) -> Optional[Alert]:
        row = self.db.scalars(
            select(AlertORM)
            .where(
                AlertORM.subscription_id == subscription_id,
                AlertORM.type == alert_type.value,
                AlertORM.status != AlertStatus.DISMISSED.value,
            )
            .order_by(AlertORM.created_at.desc(), AlertORM.scheduled_for.desc())
            .limit(1)
        ).first()
        return _to_alert(row) if row else None

    def get_by_id(self, alert_id: str) -> Optional[Alert]:
        row = self.db.get(AlertORM, alert_id)
        return _to_alert(row) if row else None

    def get_by_user(self, user_id: str) -> List[Alert]:
        rows = self.db.scalars(select(AlertORM).where(AlertORM.user_id == user_id)).all()
        return [_to_alert(r) for r in rows]

    def create(self, alert: Alert) -> Alert:
        alert.created_at = alert.created_at or utc_now()
        row = AlertORM(id=alert.id)
        _apply_alert(row, alert)
        self.db.add(row)
        self._write_done()
        return _to_alert(row)

    def update(self, alert: Alert) -> None:
        row = self.db.get(AlertORM, alert.id)
        if row is None:
            raise NotFoundError("alert not found", alert_id=alert.id)
        _apply_alert(row, alert)
        self._write_done()

    def get_pending(self, as_of: datetime) -> List[Alert]:
        rows = self.db.scalars(
            select(AlertORM)
            .where(
                AlertORM.status.in_(
                    [AlertStatus.PENDING.value, AlertStatus.SNOOZED.value]
                ),
                AlertORM.scheduled_for <= as_of,
            )
            .order_by(AlertORM.scheduled_for.asc())
        ).all()
        return [_to_alert(r) for r in rows]


class SqlPreferences:
    def __init__(self, db: Session):
        self.db = db

    def get_preferences(self, user_id: str) -> UserPreferences:
        row = self.db.get(UserPreferencesORM, user_id)
        if row is None:
            return UserPreferences(user_id=user_id)
        return UserPreferences(
            user_id=row.user_id,
            enable_renewal_alerts=row.enable_renewal_alerts,
            enable_price_change_alerts=row.enable_price_change_alerts,
            enable_trial_ending_alerts=row.enable_trial_ending_alerts,
            enable_unused_subscription_alerts=row.enable_unused_subscription_alerts,
            use_daily_digest=row.use_daily_digest,
            timezone=row.timezone,
            preferred_currency=row.preferred_currency,
        )

    def save(self, prefs: UserPreferences) -> None:
        row = self.db.get(UserPreferencesORM, prefs.user_id) or UserPreferencesORM(
            user_id=prefs.user_id
        )
        row.enable_renewal_alerts = prefs.enable_renewal_alerts
        row.enable_price_change_alerts = prefs.enable_price_change_alerts
        row.enable_trial_ending_alerts = prefs.enable_trial_ending_alerts
        row.enable_unused_subscription_alerts = prefs.enable_unused_subscription_alerts
        row.use_daily_digest = prefs.use_daily_digest
        row.timezone = prefs.timezone
        row.preferred_currency = prefs.preferred_currency
        self.db.add(row)
        self.db.commit()
