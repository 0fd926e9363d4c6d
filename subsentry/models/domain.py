"""Domain records handed between services and stores.

Plain dataclasses: stores copy them in and out, services never hold on to a
store's internal object. The SQLAlchemy tables in ``subsentry.orm_models``
mirror these fields one to one.
"""

from __future__ import annotations

import enum
import uuid
from dataclasses import dataclass, field
from datetime import date, datetime
from decimal import Decimal
from typing import Any, Dict, Optional


def new_id() -> str:
    return str(uuid.uuid4())


class BillingCycle(str, enum.Enum):
    WEEKLY = "Weekly"
    MONTHLY = "Monthly"
    QUARTERLY = "Quarterly"
    ANNUAL = "Annual"
    UNKNOWN = "Unknown"


class SubscriptionStatus(str, enum.Enum):
    ACTIVE = "Active"
    CANCELLED = "Cancelled"
    ARCHIVED = "Archived"
    PENDING_REVIEW = "PendingReview"
    TRIAL_ACTIVE = "TrialActive"


class ChangeType(str, enum.Enum):
    PRICE_CHANGE = "PriceChange"
    RENEWAL_DATE_UPDATE = "RenewalDateUpdate"
    STATUS_CHANGE = "StatusChange"


class AlertType(str, enum.Enum):
    RENEWAL_UPCOMING_7_DAYS = "RenewalUpcoming7Days"
    RENEWAL_UPCOMING_3_DAYS = "RenewalUpcoming3Days"
    PRICE_INCREASE = "PriceIncrease"
    TRIAL_ENDING = "TrialEnding"
    UNUSED_SUBSCRIPTION = "UnusedSubscription"


class AlertStatus(str, enum.Enum):
    PENDING = "Pending"
    SENT = "Sent"
    FAILED = "Failed"
    SNOOZED = "Snoozed"
    DISMISSED = "Dismissed"  # terminal


class DeliveryMode(str, enum.Enum):
    IMMEDIATE = "immediate"
    DIGEST = "digest"


# Allowed explicit transitions; Archived is terminal.
STATUS_TRANSITIONS: Dict[SubscriptionStatus, frozenset] = {
    SubscriptionStatus.PENDING_REVIEW: frozenset(
        {SubscriptionStatus.ACTIVE, SubscriptionStatus.ARCHIVED}
    ),
    SubscriptionStatus.TRIAL_ACTIVE: frozenset(
        {SubscriptionStatus.ACTIVE, SubscriptionStatus.ARCHIVED}
    ),
    SubscriptionStatus.ACTIVE: frozenset(
        {SubscriptionStatus.CANCELLED, SubscriptionStatus.ARCHIVED}
    ),
    SubscriptionStatus.CANCELLED: frozenset({SubscriptionStatus.ARCHIVED}),
    SubscriptionStatus.ARCHIVED: frozenset(),
}

# Statuses the alert evaluators and spending totals consider "live".
LIVE_STATUSES = frozenset({SubscriptionStatus.ACTIVE, SubscriptionStatus.TRIAL_ACTIVE})


def can_transition(old: SubscriptionStatus, new: SubscriptionStatus) -> bool:
    return new in STATUS_TRANSITIONS.get(old, frozenset())


@dataclass
class Subscription:
    user_id: str
    service_name: str
    price: Decimal
    currency: str = "USD"
    billing_cycle: BillingCycle = BillingCycle.MONTHLY
    id: str = field(default_factory=new_id)
    email_account_id: Optional[str] = None
    next_renewal_date: Optional[date] = None
    category: str = ""
    status: SubscriptionStatus = SubscriptionStatus.ACTIVE
    extraction_confidence: float = 1.0
    requires_review: bool = False
    cancellation_link: Optional[str] = None
    last_activity_email_at: Optional[datetime] = None
    cancelled_at: Optional[datetime] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None
    # Optimistic-concurrency token, bumped by the store on every update
    version: int = 0


@dataclass
class SubscriptionHistory:
    subscription_id: str
    change_type: ChangeType
    old_value: str
    new_value: str
    changed_at: datetime
    source_email_id: Optional[str] = None
    id: str = field(default_factory=new_id)


@dataclass
class Alert:
    user_id: str
    subscription_id: str
    type: AlertType
    message: str
    scheduled_for: datetime
    status: AlertStatus = AlertStatus.PENDING
    sent_at: Optional[datetime] = None
    retry_count: int = 0
    data: Dict[str, Any] = field(default_factory=dict)
    # Identifies the condition instance (renewal date, history entry, ...)
    cycle_key: str = ""
    delivery_mode: DeliveryMode = DeliveryMode.IMMEDIATE
    created_at: Optional[datetime] = None
    id: str = field(default_factory=new_id)


@dataclass
class UserPreferences:
    """Read-only input owned by the user-settings collaborator."""

    user_id: str = ""
    enable_renewal_alerts: bool = True
    enable_price_change_alerts: bool = True
    enable_trial_ending_alerts: bool = True
    enable_unused_subscription_alerts: bool = True
    use_daily_digest: bool = False
    timezone: str = "UTC"
    preferred_currency: str = "USD"

    def allows(self, alert_type: AlertType) -> bool:
        if alert_type in (
            AlertType.RENEWAL_UPCOMING_7_DAYS,
            AlertType.RENEWAL_UPCOMING_3_DAYS,
        ):
            return self.enable_renewal_alerts
        if alert_type == AlertType.PRICE_INCREASE:
            return self.enable_price_change_alerts
        if alert_type == AlertType.TRIAL_ENDING:
            return self.enable_trial_ending_alerts
        if alert_type == AlertType.UNUSED_SUBSCRIPTION:
            return self.enable_unused_subscription_alerts
        return False
