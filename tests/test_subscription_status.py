"""
Status state machine and the explicit single-field operations.
"""

from decimal import Decimal

import pytest

from subsentry.errors import InvalidStateError, NotFoundError, ValidationError
from subsentry.models.domain import (
    BillingCycle,
    ChangeType,
    SubscriptionStatus as S,
    can_transition,
)
from subsentry.services.reconciliation import SubscriptionCandidate


def _make(engine, user="u1", name="Netflix", confidence=1.0, account="acct-1", **kw):
    return engine.reconcile(
        user,
        SubscriptionCandidate(
            service_name=name,
            price=Decimal("9.99"),
            email_account_id=account,
            extraction_confidence=confidence,
            **kw,
        ),
    ).subscription


class TestTransitions:
    @pytest.mark.parametrize(
        "old,new",
        [
            (S.PENDING_REVIEW, S.ACTIVE),
            (S.PENDING_REVIEW, S.ARCHIVED),
            (S.TRIAL_ACTIVE, S.ACTIVE),
            (S.TRIAL_ACTIVE, S.ARCHIVED),
            (S.ACTIVE, S.CANCELLED),
            (S.ACTIVE, S.ARCHIVED),
            (S.CANCELLED, S.ARCHIVED),
        ],
    )
    def test_allowed(self, old, new):
        assert can_transition(old, new)

    @pytest.mark.parametrize(
        "old,new",
        [
            (S.ARCHIVED, S.ACTIVE),
            (S.ARCHIVED, S.PENDING_REVIEW),
            (S.CANCELLED, S.ACTIVE),
            (S.ACTIVE, S.TRIAL_ACTIVE),
            (S.ACTIVE, S.PENDING_REVIEW),
        ],
    )
    def test_forbidden(self, old, new):
        assert not can_transition(old, new)


class TestUpdateStatus:
    def test_writes_history_then_mutates(self, engine, sub_store):
        sub = _make(engine)
        out = engine.update_status(sub.id, S.CANCELLED, source_email_id="m-1")
        assert out.status == S.CANCELLED
        assert out.cancelled_at is not None
        [entry] = sub_store.get_history(sub.id)
        assert entry.change_type == ChangeType.STATUS_CHANGE
        assert (entry.old_value, entry.new_value, entry.source_email_id) == ("Active", "Cancelled", "m-1")

    def test_same_status_is_silent_noop(self, engine, sub_store):
        sub = _make(engine)
        engine.update_status(sub.id, S.ACTIVE)
        assert sub_store.get_history(sub.id) == []

    def test_archived_is_terminal(self, engine):
        sub = _make(engine)
        engine.archive(sub.id)
        with pytest.raises(InvalidStateError):
            engine.update_status(sub.id, S.ACTIVE)

    def test_missing_subscription(self, engine):
        with pytest.raises(NotFoundError):
            engine.update_status("nope", S.ARCHIVED)

    def test_unknown_cycle_cannot_leave_review_for_active(self, engine, sub_store):
        sub = _make(engine, name="Gym", billing_cycle=BillingCycle.UNKNOWN)
        assert sub.status == S.PENDING_REVIEW
        with pytest.raises(ValidationError):
            engine.update_status(sub.id, S.ACTIVE)
        out = sub_store.get_by_id(sub.id)
        assert out.status == S.PENDING_REVIEW
        assert out.requires_review is True
        assert sub_store.get_history(sub.id) == []

        engine.approve(sub.id, billing_cycle=BillingCycle.MONTHLY)
        assert sub_store.get_by_id(sub.id).status == S.ACTIVE

    def test_unknown_cycle_can_still_be_archived_from_review(self, engine):
        sub = _make(engine, billing_cycle=BillingCycle.UNKNOWN)
        assert engine.update_status(sub.id, S.ARCHIVED).status == S.ARCHIVED


class TestUpdatePrice:
    def test_price_change_history(self, engine, sub_store):
        sub = _make(engine)
        engine.update_price(sub.id, Decimal("14.99"), source_email_id="m-7")
        [entry] = sub_store.get_history(sub.id)
        assert (entry.old_value, entry.new_value) == ("9.99", "14.99")
        assert sub_store.get_by_id(sub.id).price == Decimal("14.99")

    def test_same_price_noop(self, engine, sub_store):
        sub = _make(engine)
        engine.update_price(sub.id, Decimal("9.990"))
        assert sub_store.get_history(sub.id) == []

    def test_negative_price_rejected(self, engine):
        sub = _make(engine)
        with pytest.raises(ValidationError):
            engine.update_price(sub.id, Decimal("-5"))

    def test_archived_price_rejected(self, engine):
        sub = _make(engine)
        engine.archive(sub.id)
        with pytest.raises(InvalidStateError):
            engine.update_price(sub.id, Decimal("1.00"))


class TestReview:
    def test_approve(self, engine, sub_store):
        sub = _make(engine, confidence=0.7)
        out = engine.approve(sub.id)
        assert out.status == S.ACTIVE
        assert out.requires_review is False
        [entry] = sub_store.get_history(sub.id)
        assert (entry.old_value, entry.new_value) == ("PendingReview", "Active")

    def test_approve_requires_known_cycle(self, engine):
        sub = _make(engine, billing_cycle=BillingCycle.UNKNOWN)
        with pytest.raises(ValidationError):
            engine.approve(sub.id)
        out = engine.approve(sub.id, billing_cycle=BillingCycle.ANNUAL)
        assert out.billing_cycle == BillingCycle.ANNUAL
        assert out.status == S.ACTIVE

    def test_approve_clears_flag_on_active(self, engine):
        sub = _make(engine)
        engine.flag_for_review(sub.id)
        out = engine.approve(sub.id)
        assert out.status == S.ACTIVE
        assert out.requires_review is False

    def test_approve_active_without_flag_is_invalid(self, engine):
        sub = _make(engine)
        with pytest.raises(InvalidStateError):
            engine.approve(sub.id)

    def test_reject(self, engine):
        sub = _make(engine, confidence=0.5)
        out = engine.reject(sub.id)
        assert out.status == S.ARCHIVED
        assert out.requires_review is False

    def test_reject_only_from_pending(self, engine):
        sub = _make(engine)
        with pytest.raises(InvalidStateError):
            engine.reject(sub.id)

    def test_flag_archived_rejected(self, engine, sub_store):
        sub = _make(engine)
        engine.archive(sub.id)
        with pytest.raises(InvalidStateError):
            engine.flag_for_review(sub.id)
        assert sub_store.get_by_id(sub.id).requires_review is False


class TestArchiveByEmailAccount:
    def test_archives_every_live_subscription(self, engine, sub_store):
        a = _make(engine, name="Netflix")
        b = _make(engine, name="Spotify", confidence=0.7)
        other = _make(engine, name="Hulu", account="acct-2")
        engine.archive(_make(engine, name="Zoom").id)

        assert engine.archive_by_email_account("acct-1") == 2
        for sub_id in (a.id, b.id):
            assert sub_store.get_by_id(sub_id).status == S.ARCHIVED
            [entry] = sub_store.get_history(sub_id)
            assert entry.new_value == "Archived"
        assert sub_store.get_by_id(other.id).status == S.ACTIVE

    def test_unknown_account_archives_nothing(self, engine):
        assert engine.archive_by_email_account("acct-none") == 0
