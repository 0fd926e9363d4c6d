"""
Public import surface for domain records.

Usage:
    from subsentry.models import Subscription, Alert, AlertType, SubscriptionStatus
"""

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
    can_transition,
)
from subsentry.models.alert_content import (
    AlertContent,
    PriceIncreaseContent,
    RenewalContent,
    TrialEndingContent,
    UnusedContent,
)

__all__ = [
    "Alert",
    "AlertStatus",
    "AlertType",
    "BillingCycle",
    "ChangeType",
    "DeliveryMode",
    "Subscription",
    "SubscriptionHistory",
    "SubscriptionStatus",
    "UserPreferences",
    "can_transition",
    "AlertContent",
    "PriceIncreaseContent",
    "RenewalContent",
    "TrialEndingContent",
    "UnusedContent",
]
