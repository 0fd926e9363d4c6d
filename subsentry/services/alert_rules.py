"""
Alert rule evaluators.

Each evaluator is a pure function of ``(subscriptions, history_by_subscription,
today, settings)`` and proposes AlertCandidates. Nothing here reads a store,
looks at preferences or checks for duplicates; that is the scheduler's job.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import date
from decimal import Decimal, ROUND_HALF_UP
from typing import Callable, Dict, Iterable, List, Mapping, Optional, Sequence

from dateutil.relativedelta import relativedelta

from subsentry.config import Settings
from subsentry.models.alert_content import (
    AlertContent,
    PriceIncreaseContent,
    RenewalContent,
    TrialEndingContent,
    UnusedContent,
)
from subsentry.models.domain import (
    LIVE_STATUSES,
    AlertType,
    ChangeType,
    Subscription,
    SubscriptionHistory,
    SubscriptionStatus,
)
from subsentry.services.normalization import normalize_to_monthly

_CENT = Decimal("0.01")

HistoryMap = Mapping[str, Sequence[SubscriptionHistory]]


@dataclass(frozen=True)
class AlertCandidate:
    user_id: str
    subscription_id: str
    alert_type: AlertType
    content: AlertContent
    target_date: date
    # Identifies the condition instance; a Sent alert only blocks its own key
    cycle_key: str

    @property
    def message(self) -> str:
        return self.content.render()


def _renewal_type(days_until: int, mode: str) -> Optional[AlertType]:
    if mode == "catch_up":
        if 3 < days_until <= 7:
            return AlertType.RENEWAL_UPCOMING_7_DAYS
        if 0 <= days_until <= 3:
            return AlertType.RENEWAL_UPCOMING_3_DAYS
        return None
    if days_until == 7:
        return AlertType.RENEWAL_UPCOMING_7_DAYS
    if days_until == 3:
        return AlertType.RENEWAL_UPCOMING_3_DAYS
    return None


def evaluate_renewals(
    subscriptions: Iterable[Subscription],
    history: HistoryMap,
    today: date,
    settings: Settings,
) -> List[AlertCandidate]:
    """RenewalUpcoming7Days / RenewalUpcoming3Days for live subscriptions.

    Trials inside the last three days are left to :func:`evaluate_trial_endings`.
    """
    out: List[AlertCandidate] = []
    for sub in subscriptions:
        if sub.status not in LIVE_STATUSES or sub.next_renewal_date is None:
            continue
        days_until = (sub.next_renewal_date - today).days
        if sub.status == SubscriptionStatus.TRIAL_ACTIVE and days_until <= 3:
            continue
        alert_type = _renewal_type(days_until, settings.RENEWAL_WINDOW_MODE)
        if alert_type is None:
            continue
        out.append(
            AlertCandidate(
                user_id=sub.user_id,
                subscription_id=sub.id,
                alert_type=alert_type,
                content=RenewalContent(
                    service_name=sub.service_name,
                    renewal_date=sub.next_renewal_date,
                    days_until=days_until,
                    price=sub.price,
                    currency=sub.currency,
                ),
                target_date=today,
                cycle_key=sub.next_renewal_date.isoformat(),
            )
        )
    return out


def evaluate_trial_endings(
    subscriptions: Iterable[Subscription],
    history: HistoryMap,
    today: date,
    settings: Settings,
) -> List[AlertCandidate]:
    out: List[AlertCandidate] = []
    for sub in subscriptions:
        if sub.status != SubscriptionStatus.TRIAL_ACTIVE or sub.next_renewal_date is None:
            continue
        days_until = (sub.next_renewal_date - today).days
        if not 0 <= days_until <= 3:
            continue
        out.append(
            AlertCandidate(
                user_id=sub.user_id,
                subscription_id=sub.id,
                alert_type=AlertType.TRIAL_ENDING,
                content=TrialEndingContent(
                    service_name=sub.service_name,
                    trial_end_date=sub.next_renewal_date,
                    days_until=days_until,
                    post_trial_price=sub.price,
                    currency=sub.currency,
                    billing_cycle=sub.billing_cycle.value,
                ),
                target_date=today,
                cycle_key=sub.next_renewal_date.isoformat(),
            )
        )
    return out


def pct_change(old: Decimal, new: Decimal) -> Optional[Decimal]:
    """Percentage change rounded to 2 places; None when ``old`` is zero."""
    if old == 0:
        return None
    return ((new - old) / old * 100).quantize(_CENT, rounding=ROUND_HALF_UP)


def evaluate_price_increases(
    subscriptions: Iterable[Subscription],
    history: HistoryMap,
    today: date,
    settings: Settings,
) -> List[AlertCandidate]:
    """Only the newest PriceChange entry per subscription is considered."""
    out: List[AlertCandidate] = []
    for sub in subscriptions:
        if sub.status in (SubscriptionStatus.ARCHIVED, SubscriptionStatus.CANCELLED):
            continue
        changes = [
            h for h in history.get(sub.id, ()) if h.change_type == ChangeType.PRICE_CHANGE
        ]
        if not changes:
            continue
        latest = changes[-1]
        old, new = Decimal(latest.old_value), Decimal(latest.new_value)
        if new <= old:
            continue
        out.append(
            AlertCandidate(
                user_id=sub.user_id,
                subscription_id=sub.id,
                alert_type=AlertType.PRICE_INCREASE,
                content=PriceIncreaseContent(
                    service_name=sub.service_name,
                    old_price=old,
                    new_price=new,
                    pct_change=pct_change(old, new),
                    currency=sub.currency,
                    history_id=latest.id,
                ),
                target_date=today,
                cycle_key=latest.id,
            )
        )
    return out


def evaluate_unused(
    subscriptions: Iterable[Subscription],
    history: HistoryMap,
    today: date,
    settings: Settings,
) -> List[AlertCandidate]:
    """Active subscriptions with no activity email for UNUSED_AFTER_MONTHS.

    A subscription that never had one counts from its creation.
    """
    cutoff = today - relativedelta(months=settings.UNUSED_AFTER_MONTHS)
    out: List[AlertCandidate] = []
    for sub in subscriptions:
        if sub.status != SubscriptionStatus.ACTIVE:
            continue
        if sub.last_activity_email_at is not None:
            marker, key_prefix = sub.last_activity_email_at.date(), "activity"
        elif sub.created_at is not None:
            marker, key_prefix = sub.created_at.date(), "created"
        else:
            continue
        if marker >= cutoff:
            continue
        gap = relativedelta(today, marker)
        months = gap.years * 12 + gap.months
        savings = (normalize_to_monthly(sub.price, sub.billing_cycle) * months).quantize(
            _CENT, rounding=ROUND_HALF_UP
        )
        out.append(
            AlertCandidate(
                user_id=sub.user_id,
                subscription_id=sub.id,
                alert_type=AlertType.UNUSED_SUBSCRIPTION,
                content=UnusedContent(
                    service_name=sub.service_name,
                    last_activity=(
                        sub.last_activity_email_at.date()
                        if sub.last_activity_email_at
                        else None
                    ),
                    months_unused=months,
                    potential_savings=savings,
                    currency=sub.currency,
                ),
                target_date=today,
                cycle_key=f"{key_prefix}:{marker.isoformat()}",
            )
        )
    return out


Evaluator = Callable[[Iterable[Subscription], HistoryMap, date, Settings], List[AlertCandidate]]

ALL_EVALUATORS: tuple = (
    evaluate_renewals,
    evaluate_trial_endings,
    evaluate_price_increases,
    evaluate_unused,
)


def evaluate_all(
    subscriptions: Sequence[Subscription],
    history: Dict[str, List[SubscriptionHistory]],
    today: date,
    settings: Settings,
) -> List[AlertCandidate]:
    out: List[AlertCandidate] = []
    for evaluator in ALL_EVALUATORS:
        out.extend(evaluator(subscriptions, history, today, settings))
    return out
