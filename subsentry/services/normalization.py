"""Billing-cycle normalization and service-name similarity."""

from __future__ import annotations

from decimal import Decimal
from typing import Optional

from subsentry.models.domain import BillingCycle
from subsentry.utils.text import normalize_service_name

__all__ = [
    "WEEKS_PER_MONTH",
    "normalize_to_monthly",
    "normalize_service_name",
    "levenshtein_distance",
    "similarity_score",
]

WEEKS_PER_MONTH = Decimal("4.33")


def normalize_to_monthly(price: Decimal, billing_cycle: BillingCycle) -> Decimal:
    """Monthly-equivalent of ``price``.

    Unknown cycles return the price unchanged, so totals that include them are
    approximate.
    """
    price = Decimal(price)
    if billing_cycle == BillingCycle.ANNUAL:
        return price / 12
    if billing_cycle == BillingCycle.QUARTERLY:
        return price / 3
    if billing_cycle == BillingCycle.WEEKLY:
        return price * WEEKS_PER_MONTH
    return price


def levenshtein_distance(a: str, b: str) -> int:
    if a == b:
        return 0
    if not a:
        return len(b)
    if not b:
        return len(a)
    # two-row DP; iterate over the shorter string in the inner loop
    if len(a) < len(b):
        a, b = b, a
    prev = list(range(len(b) + 1))
    for i, ca in enumerate(a, start=1):
        cur = [i]
        for j, cb in enumerate(b, start=1):
            cost = 0 if ca == cb else 1
            cur.append(min(prev[j] + 1, cur[j - 1] + 1, prev[j - 1] + cost))
        prev = cur
    return prev[-1]


def similarity_score(a: Optional[str], b: Optional[str]) -> float:
    """Case-insensitive ``1 - distance / max(len)`` in [0.0, 1.0].

    Surrounding whitespace is ignored. Two empty names are identical; one empty
    name never matches anything.
    """
    a = (a or "").strip().lower()
    b = (b or "").strip().lower()
    if not a and not b:
        return 1.0
    if not a or not b:
        return 0.0
    if a == b:
        return 1.0
    return 1.0 - levenshtein_distance(a, b) / max(len(a), len(b))
