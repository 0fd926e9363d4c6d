"""Per-type alert payloads.

One small dataclass per alert family instead of a single record with many
optional fields. ``render()`` produces the message text stored on the Alert,
``as_data()`` the JSON payload the delivery side templates from.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import date
from decimal import Decimal
from typing import Any, Dict, Literal, Optional, Union


def _money(currency: str, amount: Decimal) -> str:
    return f"{currency} {amount:.2f}"


def _days_phrase(days: int) -> str:
    if days == 0:
        return "today"
    return f"in {days} day{'' if days == 1 else 's'}"


@dataclass(frozen=True)
class RenewalContent:
    service_name: str
    renewal_date: date
    days_until: int
    price: Decimal
    currency: str
    kind: Literal["renewal"] = "renewal"

    def render(self) -> str:
        return (
            f"{self.service_name} renews {_days_phrase(self.days_until)} "
            f"({self.renewal_date.isoformat()}). "
            f"Amount: {_money(self.currency, self.price)}"
        )

    def as_data(self) -> Dict[str, Any]:
        return {
            "kind": self.kind,
            "service_name": self.service_name,
            "renewal_date": self.renewal_date.isoformat(),
            "days_until": self.days_until,
            "price": str(self.price),
            "currency": self.currency,
        }


@dataclass(frozen=True)
class TrialEndingContent:
    service_name: str
    trial_end_date: date
    days_until: int
    post_trial_price: Decimal
    currency: str
    billing_cycle: str
    kind: Literal["trial_ending"] = "trial_ending"

    def render(self) -> str:
        when = "TODAY" if self.days_until == 0 else _days_phrase(self.days_until)
        return (
            f"Trial for {self.service_name} ends {when} "
            f"({self.trial_end_date.isoformat()}). "
            f"Full price: {_money(self.currency, self.post_trial_price)}/{self.billing_cycle}"
        )

    def as_data(self) -> Dict[str, Any]:
        return {
            "kind": self.kind,
            "service_name": self.service_name,
            "trial_end_date": self.trial_end_date.isoformat(),
            "days_until": self.days_until,
            "post_trial_price": str(self.post_trial_price),
            "currency": self.currency,
            "billing_cycle": self.billing_cycle,
        }


@dataclass(frozen=True)
class PriceIncreaseContent:
    service_name: str
    old_price: Decimal
    new_price: Decimal
    pct_change: Optional[Decimal]  # None when the old price was zero
    currency: str
    history_id: str
    kind: Literal["price_increase"] = "price_increase"

    def render(self) -> str:
        pct = f" (+{self.pct_change}%)" if self.pct_change is not None else ""
        return (
            f"Price increased for {self.service_name}: "
            f"{_money(self.currency, self.old_price)} -> "
            f"{_money(self.currency, self.new_price)}{pct}"
        )

    def as_data(self) -> Dict[str, Any]:
        return {
            "kind": self.kind,
            "service_name": self.service_name,
            "old_price": str(self.old_price),
            "new_price": str(self.new_price),
            "pct_change": str(self.pct_change) if self.pct_change is not None else None,
            "currency": self.currency,
            "history_id": self.history_id,
        }


@dataclass(frozen=True)
class UnusedContent:
    service_name: str
    last_activity: Optional[date]  # None: never seen any activity email
    months_unused: int
    potential_savings: Decimal
    currency: str
    kind: Literal["unused"] = "unused"

    def render(self) -> str:
        return (
            f"{self.service_name} appears unused for {self.months_unused} months. "
            f"Potential savings: {_money(self.currency, self.potential_savings)}. "
            "Consider cancelling?"
        )

    def as_data(self) -> Dict[str, Any]:
        return {
            "kind": self.kind,
            "service_name": self.service_name,
            "last_activity": self.last_activity.isoformat() if self.last_activity else None,
            "months_unused": self.months_unused,
            "potential_savings": str(self.potential_savings),
            "currency": self.currency,
        }


AlertContent = Union[RenewalContent, TrialEndingContent, PriceIncreaseContent, UnusedContent]
