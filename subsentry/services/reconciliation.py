"""
Subscription reconciliation: decide whether a sighted subscription is new, a
duplicate of one we already track, or too uncertain to trust without review.

Every mutation of price, renewal date or status on an existing record writes a
SubscriptionHistory row first and the subscription itself last, inside one
``store.atomic()`` block, so a cancelled or failed call leaves nothing behind.
"""

from __future__ import annotations

import enum
import logging
import re
from contextlib import ExitStack
from dataclasses import dataclass, field, replace
from datetime import date, datetime, timedelta, timezone
from decimal import Decimal, InvalidOperation, ROUND_HALF_UP
from typing import Dict, List, Optional

from subsentry.config import Settings, settings as default_settings
from subsentry.errors import InvalidStateError, NotFoundError, ValidationError
from subsentry.models.domain import (
    LIVE_STATUSES,
    BillingCycle,
    ChangeType,
    Subscription,
    SubscriptionHistory,
    SubscriptionStatus,
    can_transition,
)
from subsentry.repositories.base import SubscriptionStore
from subsentry.schemas.extraction import ExtractionResult
from subsentry.services import metrics
from subsentry.services.normalization import normalize_to_monthly, similarity_score
from subsentry.utils.cancel import CancelToken, check
from subsentry.utils.locks import UserLockRegistry, default_registry
from subsentry.utils.text import clean_display
from subsentry.utils.time import Clock, utc_now

logger = logging.getLogger(__name__)

_CURRENCY_RE = re.compile(r"^[A-Za-z]{3}$")
_CENT = Decimal("0.01")

# Statuses a candidate may assert about itself (from an email or manual entry).
_ASSERTABLE = frozenset(
    {
        SubscriptionStatus.ACTIVE,
        SubscriptionStatus.TRIAL_ACTIVE,
        SubscriptionStatus.CANCELLED,
    }
)

_EMAIL_TYPE_STATUS = {
    "trial_confirmation": SubscriptionStatus.TRIAL_ACTIVE,
    "cancellation_confirmation": SubscriptionStatus.CANCELLED,
}


class ReconcileEffect(str, enum.Enum):
    CREATED = "created"
    MERGED = "merged"
    REVIEWED = "reviewed"  # created, but parked in PendingReview


@dataclass
class SubscriptionCandidate:
    service_name: str
    price: Decimal
    currency: str = "USD"
    billing_cycle: BillingCycle = BillingCycle.MONTHLY
    next_renewal_date: Optional[date] = None
    category: str = ""
    cancellation_link: Optional[str] = None
    email_account_id: Optional[str] = None
    source_email_id: Optional[str] = None
    extraction_confidence: float = 1.0  # manual entries are fully trusted
    status: Optional[SubscriptionStatus] = None
    warnings: List[str] = field(default_factory=list)

    @classmethod
    def from_extraction(
        cls,
        result: ExtractionResult,
        *,
        email_account_id: Optional[str],
        source_email_id: Optional[str],
    ) -> "SubscriptionCandidate":
        return cls(
            service_name=result.service_name,
            price=result.price,
            currency=result.currency,
            billing_cycle=result.billing_cycle,
            next_renewal_date=result.next_renewal_date,
            category=result.category,
            cancellation_link=result.cancellation_link,
            email_account_id=email_account_id,
            source_email_id=source_email_id,
            extraction_confidence=result.confidence_score,
            status=_EMAIL_TYPE_STATUS.get(result.email_type or ""),
            warnings=list(result.warnings),
        )


@dataclass
class ReconcileResult:
    subscription: Subscription
    effect: ReconcileEffect
    history: List[SubscriptionHistory] = field(default_factory=list)


def _round2(x: Decimal) -> Decimal:
    return x.quantize(_CENT, rounding=ROUND_HALF_UP)


def _to_price(value) -> Decimal:
    if value is None:
        raise ValidationError("price is required")
    try:
        price = Decimal(str(value))
    except (InvalidOperation, ValueError) as e:
        raise ValidationError(f"price is not a number: {value!r}") from e
    if not price.is_finite():
        raise ValidationError(f"price is not a number: {value!r}")
    if price < 0:
        raise ValidationError("price must not be negative", price=price)
    return _round2(price)


def _to_currency(value: Optional[str]) -> str:
    if not value or not _CURRENCY_RE.match(value.strip()):
        raise ValidationError("currency must be a 3-letter ISO code", currency=value)
    return value.strip().upper()


def _date_str(d: Optional[date]) -> str:
    return d.isoformat() if d else ""


class ReconciliationEngine:
    def __init__(
        self,
        store: SubscriptionStore,
        *,
        clock: Clock = utc_now,
        settings: Settings = default_settings,
        locks: Optional[UserLockRegistry] = None,
    ):
        self.store = store
        self._clock = clock
        self._settings = settings
        self._locks = locks or default_registry

    @property
    def clock(self) -> Clock:
        return self._clock

    @property
    def settings(self) -> Settings:
        return self._settings

    # ------------------------------------------------------------------ #
    # Reconciliation
    # ------------------------------------------------------------------ #
    def reconcile(
        self,
        user_id: str,
        candidate: SubscriptionCandidate,
        cancel: Optional[CancelToken] = None,
    ) -> ReconcileResult:
        """Create, merge or park ``candidate`` for ``user_id``.

        Raises ValidationError for malformed commercial fields before touching
        the store, and NotFoundError if the merge target vanished between the
        duplicate search and the write (retry as a fresh call).
        """
        candidate = self._validated(candidate)
        with self._locks.hold(user_id):
            check(cancel)
            existing = self.store.get_by_user(user_id)
            match = self._find_duplicate(candidate, existing)
            if match is None:
                return self._create(user_id, candidate, cancel)
            return self._merge(match, candidate, cancel)

    def reconcile_extraction(
        self,
        user_id: str,
        extraction: ExtractionResult,
        *,
        email_account_id: Optional[str],
        source_email_id: Optional[str],
        cancel: Optional[CancelToken] = None,
    ) -> ReconcileResult:
        candidate = SubscriptionCandidate.from_extraction(
            extraction,
            email_account_id=email_account_id,
            source_email_id=source_email_id,
        )
        return self.reconcile(user_id, candidate, cancel=cancel)

    def _validated(self, candidate: SubscriptionCandidate) -> SubscriptionCandidate:
        confidence = candidate.extraction_confidence
        if confidence is None or not 0.0 <= float(confidence) <= 1.0:
            raise ValidationError(
                "extraction confidence must be within [0, 1]", confidence=confidence
            )
        if candidate.status is not None and candidate.status not in _ASSERTABLE:
            raise ValidationError(
                "candidate status must be Active, TrialActive or Cancelled",
                status=candidate.status,
            )
        return replace(
            candidate,
            service_name=clean_display(candidate.service_name),
            price=_to_price(candidate.price),
            currency=_to_currency(candidate.currency),
            category=clean_display(candidate.category),
            extraction_confidence=float(confidence),
        )

    def _find_duplicate(
        self, candidate: SubscriptionCandidate, existing: List[Subscription]
    ) -> Optional[Subscription]:
        # Unnamed candidates never merge; there is nothing to compare.
        if not candidate.service_name:
            return None
        threshold = self._settings.FUZZY_MATCH_THRESHOLD
        best: Optional[Subscription] = None
        best_key = None
        for sub in existing:
            if sub.status == SubscriptionStatus.ARCHIVED:
                continue
            if sub.email_account_id != candidate.email_account_id:
                continue
            score = similarity_score(sub.service_name, candidate.service_name)
            if score < threshold:
                continue
            # highest score wins; ties go to the most recently updated record
            key = (score, sub.updated_at or datetime.min.replace(tzinfo=timezone.utc))
            if best_key is None or _later(key, best_key):
                best, best_key = sub, key
        return best

    def _create(
        self,
        user_id: str,
        candidate: SubscriptionCandidate,
        cancel: Optional[CancelToken],
    ) -> ReconcileResult:
        now = self._clock()
        confidence = candidate.extraction_confidence
        status = candidate.status or SubscriptionStatus.ACTIVE
        needs_review = (
            confidence < self._settings.AUTO_ACTIVATE_CONFIDENCE
            or candidate.billing_cycle == BillingCycle.UNKNOWN
            or not candidate.service_name
        )
        if needs_review:
            status = SubscriptionStatus.PENDING_REVIEW

        sub = Subscription(
            user_id=user_id,
            email_account_id=candidate.email_account_id,
            service_name=candidate.service_name,
            price=candidate.price,
            currency=candidate.currency,
            billing_cycle=candidate.billing_cycle,
            next_renewal_date=candidate.next_renewal_date,
            category=candidate.category,
            status=status,
            extraction_confidence=confidence,
            requires_review=needs_review,
            cancellation_link=candidate.cancellation_link,
            cancelled_at=now if status == SubscriptionStatus.CANCELLED else None,
            created_at=now,
            updated_at=now,
        )
        check(cancel)
        created = self.store.create(sub)

        effect = ReconcileEffect.REVIEWED if needs_review else ReconcileEffect.CREATED
        metrics.RECONCILE_TOTAL.labels(effect=effect.value).inc()
        if confidence < self._settings.REVIEW_CONFIDENCE_FLOOR:
            metrics.LOW_CONFIDENCE_TOTAL.inc()
            logger.warning(
                "reconcile: low-confidence candidate queued for manual triage",
                extra={
                    "user_id": user_id,
                    "subscription_id": created.id,
                    "service_name": candidate.service_name,
                    "confidence": confidence,
                    "source_email_id": candidate.source_email_id,
                    "warnings": candidate.warnings,
                },
            )
        logger.info(
            "reconcile: %s %s",
            effect.value,
            candidate.service_name or "<unnamed>",
            extra={"user_id": user_id, "subscription_id": created.id, "status": status.value},
        )
        return ReconcileResult(subscription=created, effect=effect)

    def _merge(
        self,
        existing: Subscription,
        candidate: SubscriptionCandidate,
        cancel: Optional[CancelToken],
    ) -> ReconcileResult:
        now = self._clock()
        src = candidate.source_email_id
        merged = replace(existing)
        changes: List[SubscriptionHistory] = []

        if candidate.price != existing.price:
            changes.append(
                self._entry(existing.id, ChangeType.PRICE_CHANGE, str(existing.price), str(candidate.price), now, src)
            )
            merged.price = candidate.price

        if (
            candidate.next_renewal_date is not None
            and candidate.next_renewal_date != existing.next_renewal_date
        ):
            changes.append(
                self._entry(
                    existing.id,
                    ChangeType.RENEWAL_DATE_UPDATE,
                    _date_str(existing.next_renewal_date),
                    _date_str(candidate.next_renewal_date),
                    now,
                    src,
                )
            )
            merged.next_renewal_date = candidate.next_renewal_date

        wanted = candidate.status
        if wanted is not None and wanted != existing.status:
            trusted = candidate.extraction_confidence >= self._settings.AUTO_ACTIVATE_CONFIDENCE
            if trusted and can_transition(existing.status, wanted):
                changes.append(
                    self._entry(existing.id, ChangeType.STATUS_CHANGE, existing.status.value, wanted.value, now, src)
                )
                self._set_status(merged, wanted, now)
            else:
                logger.warning(
                    "reconcile: ignored status %s -> %s during merge",
                    existing.status.value,
                    wanted.value,
                    extra={
                        "subscription_id": existing.id,
                        "confidence": candidate.extraction_confidence,
                        "source_email_id": src,
                    },
                )

        # Descriptive fields: existing value wins unless it is empty/unknown
        if not merged.service_name:
            merged.service_name = candidate.service_name
        if not merged.category:
            merged.category = candidate.category
        if not merged.currency:
            merged.currency = candidate.currency
        if merged.billing_cycle == BillingCycle.UNKNOWN:
            merged.billing_cycle = candidate.billing_cycle
        if not merged.cancellation_link:
            merged.cancellation_link = candidate.cancellation_link
        merged.extraction_confidence = max(
            existing.extraction_confidence, candidate.extraction_confidence
        )
        if src:
            merged.last_activity_email_at = now
        merged.updated_at = now

        self._write(merged, changes, cancel)
        metrics.RECONCILE_TOTAL.labels(effect=ReconcileEffect.MERGED.value).inc()
        logger.info(
            "reconcile: merged into %s (%d change(s))",
            existing.service_name,
            len(changes),
            extra={"user_id": existing.user_id, "subscription_id": existing.id},
        )
        return ReconcileResult(subscription=merged, effect=ReconcileEffect.MERGED, history=changes)

    # ------------------------------------------------------------------ #
    # Audited single-field operations
    # ------------------------------------------------------------------ #
    def update_status(
        self,
        subscription_id: str,
        new_status: SubscriptionStatus,
        source_email_id: Optional[str] = None,
        cancel: Optional[CancelToken] = None,
    ) -> Subscription:
        """Move a subscription along the status state machine.

        Same-status calls return immediately without a history row. Leaving
        PendingReview for Active needs a known billing cycle, as in ``approve``.
        """
        new_status = SubscriptionStatus(new_status)
        with self._hold_for(subscription_id, cancel) as sub:
            if sub.status == new_status:
                return sub
            if not can_transition(sub.status, new_status):
                raise InvalidStateError(
                    f"cannot move subscription from {sub.status.value} to {new_status.value}",
                    subscription_id=subscription_id,
                )
            if (
                sub.status == SubscriptionStatus.PENDING_REVIEW
                and new_status == SubscriptionStatus.ACTIVE
                and sub.billing_cycle == BillingCycle.UNKNOWN
            ):
                raise ValidationError(
                    "billing cycle must be known before activation",
                    subscription_id=subscription_id,
                )
            return self._change_status(sub, new_status, source_email_id, cancel)

    def update_price(
        self,
        subscription_id: str,
        new_price: Decimal,
        source_email_id: Optional[str] = None,
        cancel: Optional[CancelToken] = None,
    ) -> Subscription:
        price = _to_price(new_price)
        with self._hold_for(subscription_id, cancel) as sub:
            if sub.price == price:
                return sub
            self._reject_archived(sub)
            now = self._clock()
            entry = self._entry(sub.id, ChangeType.PRICE_CHANGE, str(sub.price), str(price), now, source_email_id)
            updated = replace(sub, price=price, updated_at=now)
            self._write(updated, [entry], cancel)
            return updated

    def update_renewal_date(
        self,
        subscription_id: str,
        new_date: Optional[date],
        source_email_id: Optional[str] = None,
        cancel: Optional[CancelToken] = None,
    ) -> Subscription:
        with self._hold_for(subscription_id, cancel) as sub:
            if sub.next_renewal_date == new_date:
                return sub
            self._reject_archived(sub)
            now = self._clock()
            entry = self._entry(
                sub.id,
                ChangeType.RENEWAL_DATE_UPDATE,
                _date_str(sub.next_renewal_date),
                _date_str(new_date),
                now,
                source_email_id,
            )
            updated = replace(sub, next_renewal_date=new_date, updated_at=now)
            self._write(updated, [entry], cancel)
            return updated

    def approve(
        self,
        subscription_id: str,
        billing_cycle: Optional[BillingCycle] = None,
        cancel: Optional[CancelToken] = None,
    ) -> Subscription:
        """Confirm a parked subscription (PendingReview -> Active).

        Also clears a review flag raised on an already Active record.
        """
        with self._hold_for(subscription_id, cancel) as sub:
            if sub.status == SubscriptionStatus.ACTIVE and sub.requires_review:
                updated = replace(sub, requires_review=False, updated_at=self._clock())
                self._write(updated, [], cancel)
                return updated
            if sub.status != SubscriptionStatus.PENDING_REVIEW:
                raise InvalidStateError(
                    f"only PendingReview subscriptions can be approved (is {sub.status.value})",
                    subscription_id=subscription_id,
                )
            if billing_cycle is not None:
                sub = replace(sub, billing_cycle=BillingCycle(billing_cycle))
            if sub.billing_cycle == BillingCycle.UNKNOWN:
                raise ValidationError(
                    "billing cycle must be known before approval",
                    subscription_id=subscription_id,
                )
            return self._change_status(sub, SubscriptionStatus.ACTIVE, None, cancel)

    def reject(self, subscription_id: str, cancel: Optional[CancelToken] = None) -> Subscription:
        with self._hold_for(subscription_id, cancel) as sub:
            if sub.status != SubscriptionStatus.PENDING_REVIEW:
                raise InvalidStateError(
                    f"only PendingReview subscriptions can be rejected (is {sub.status.value})",
                    subscription_id=subscription_id,
                )
            return self._change_status(sub, SubscriptionStatus.ARCHIVED, None, cancel)

    def archive(self, subscription_id: str, cancel: Optional[CancelToken] = None) -> Subscription:
        return self.update_status(subscription_id, SubscriptionStatus.ARCHIVED, cancel=cancel)

    def flag_for_review(
        self, subscription_id: str, cancel: Optional[CancelToken] = None
    ) -> Subscription:
        """Raise ``requires_review`` without changing status (no history row)."""
        with self._hold_for(subscription_id, cancel) as sub:
            self._reject_archived(sub)
            if sub.requires_review:
                return sub
            updated = replace(sub, requires_review=True, updated_at=self._clock())
            self._write(updated, [], cancel)
            return updated

    def archive_by_email_account(
        self, email_account_id: str, cancel: Optional[CancelToken] = None
    ) -> int:
        """Archive every live subscription on a disconnected account.

        One StatusChange history row per subscription; all-or-nothing.
        """
        if not email_account_id:
            raise ValidationError("email account id is required")
        check(cancel)
        subs = self.store.get_by_email_account(email_account_id)
        users = sorted({s.user_id for s in subs})
        archived = 0
        with ExitStack() as stack:
            for user_id in users:
                stack.enter_context(self._locks.hold(user_id))
            with self.store.atomic():
                for sub in self.store.get_by_email_account(email_account_id):
                    if sub.status == SubscriptionStatus.ARCHIVED:
                        continue
                    now = self._clock()
                    entry = self._entry(
                        sub.id,
                        ChangeType.STATUS_CHANGE,
                        sub.status.value,
                        SubscriptionStatus.ARCHIVED.value,
                        now,
                        None,
                    )
                    updated = replace(sub, updated_at=now)
                    self._set_status(updated, SubscriptionStatus.ARCHIVED, now)
                    self._write(updated, [entry], cancel)
                    archived += 1
        logger.info(
            "archive_by_email_account: archived %d subscription(s)",
            archived,
            extra={"email_account_id": email_account_id},
        )
        return archived

    # ------------------------------------------------------------------ #
    # Reads
    # ------------------------------------------------------------------ #
    def get(self, subscription_id: str) -> Subscription:
        sub = self.store.get_by_id(subscription_id)
        if sub is None:
            raise NotFoundError("subscription not found", subscription_id=subscription_id)
        return sub

    def history(self, subscription_id: str) -> List[SubscriptionHistory]:
        self.get(subscription_id)
        return self.store.get_history(subscription_id)

    def list_for_user(
        self,
        user_id: str,
        status: Optional[SubscriptionStatus] = None,
        category: Optional[str] = None,
    ) -> List[Subscription]:
        subs = self.store.get_by_user(user_id)
        if status is not None:
            subs = [s for s in subs if s.status == status]
        if category:
            subs = [s for s in subs if s.category == category]
        return sorted(subs, key=lambda s: (s.service_name.lower(), s.id))

    def pending_review(self, user_id: str) -> List[Subscription]:
        return [s for s in self.list_for_user(user_id) if s.requires_review]

    def upcoming_renewals(self, user_id: str, days_ahead: int = 7) -> List[Subscription]:
        today = self._clock().date()
        horizon = today + timedelta(days=days_ahead)
        subs = [
            s
            for s in self.store.get_by_user(user_id)
            if s.status in LIVE_STATUSES
            and s.next_renewal_date is not None
            and today <= s.next_renewal_date <= horizon
        ]
        return sorted(subs, key=lambda s: s.next_renewal_date)

    def monthly_spending(self, user_id: str) -> Decimal:
        """Monthly-equivalent total of Active subscriptions (approximate for Unknown cycles)."""
        total = sum(
            (
                normalize_to_monthly(s.price, s.billing_cycle)
                for s in self.store.get_by_user(user_id)
                if s.status == SubscriptionStatus.ACTIVE
            ),
            Decimal("0"),
        )
        return _round2(total)

    def spending_by_category(self, user_id: str) -> Dict[str, Decimal]:
        out: Dict[str, Decimal] = {}
        for s in self.store.get_by_user(user_id):
            if s.status != SubscriptionStatus.ACTIVE:
                continue
            key = s.category or "Uncategorized"
            out[key] = out.get(key, Decimal("0")) + normalize_to_monthly(s.price, s.billing_cycle)
        return {k: _round2(v) for k, v in sorted(out.items())}

    # ------------------------------------------------------------------ #
    # Internals
    # ------------------------------------------------------------------ #
    def _hold_for(self, subscription_id: str, cancel: Optional[CancelToken]):
        return _SubscriptionLock(self, subscription_id, cancel)

    def _change_status(
        self,
        sub: Subscription,
        new_status: SubscriptionStatus,
        source_email_id: Optional[str],
        cancel: Optional[CancelToken],
    ) -> Subscription:
        now = self._clock()
        entry = self._entry(
            sub.id, ChangeType.STATUS_CHANGE, sub.status.value, new_status.value, now, source_email_id
        )
        updated = replace(sub, updated_at=now)
        self._set_status(updated, new_status, now)
        self._write(updated, [entry], cancel)
        logger.info(
            "status: %s -> %s",
            sub.status.value,
            new_status.value,
            extra={"user_id": sub.user_id, "subscription_id": sub.id},
        )
        return updated

    @staticmethod
    def _set_status(sub: Subscription, new_status: SubscriptionStatus, now: datetime) -> None:
        sub.status = new_status
        if new_status == SubscriptionStatus.CANCELLED:
            sub.cancelled_at = now
        if new_status == SubscriptionStatus.PENDING_REVIEW:
            sub.requires_review = True
        elif new_status in (SubscriptionStatus.ACTIVE, SubscriptionStatus.ARCHIVED):
            sub.requires_review = False

    @staticmethod
    def _reject_archived(sub: Subscription) -> None:
        if sub.status == SubscriptionStatus.ARCHIVED:
            raise InvalidStateError(
                "archived subscriptions cannot be modified", subscription_id=sub.id
            )

    @staticmethod
    def _entry(
        subscription_id: str,
        change_type: ChangeType,
        old: str,
        new: str,
        now: datetime,
        source_email_id: Optional[str],
    ) -> SubscriptionHistory:
        return SubscriptionHistory(
            subscription_id=subscription_id,
            change_type=change_type,
            old_value=old,
            new_value=new,
            changed_at=now,
            source_email_id=source_email_id,
        )

    def _write(
        self,
        sub: Subscription,
        entries: List[SubscriptionHistory],
        cancel: Optional[CancelToken],
    ) -> None:
        # history first, subscription last: a crash before the final write is a no-op
        with self.store.atomic():
            for entry in entries:
                check(cancel)
                self.store.append_history(entry)
                metrics.HISTORY_ENTRIES.labels(change_type=entry.change_type.value).inc()
            check(cancel)
            self.store.update(sub)


class _SubscriptionLock:
    """Fetch a subscription, then re-read it under its owner's lock."""

    def __init__(self, engine: ReconciliationEngine, subscription_id: str, cancel):
        self._engine = engine
        self._id = subscription_id
        self._cancel = cancel
        self._ctx = None

    def __enter__(self) -> Subscription:
        check(self._cancel)
        first = self._engine.get(self._id)
        self._ctx = self._engine._locks.hold(first.user_id)
        self._ctx.__enter__()
        try:
            check(self._cancel)
            return self._engine.get(self._id)
        except BaseException:
            self._ctx.__exit__(None, None, None)
            self._ctx = None
            raise

    def __exit__(self, *exc):
        if self._ctx is not None:
            return self._ctx.__exit__(*exc)
        return False


def _later(a, b) -> bool:
    """Compare (score, updated_at) keys tolerating naive/aware timestamps."""
    if a[0] != b[0]:
        return a[0] > b[0]
    ta, tb = a[1], b[1]
    if (ta.tzinfo is None) != (tb.tzinfo is None):
        ta, tb = ta.replace(tzinfo=None), tb.replace(tzinfo=None)
    return ta > tb
