from datetime import date, datetime, timedelta, timezone
from decimal import Decimal

import pytest
from dateutil.relativedelta import relativedelta

from subsentry.models.alert_content import PriceIncreaseContent
from subsentry.models.domain import (
    AlertType,
    BillingCycle,
    ChangeType,
    Subscription,
    SubscriptionHistory,
    SubscriptionStatus,
)
from subsentry.services.alert_rules import (
    ALL_EVALUATORS,
    evaluate_price_increases,
    evaluate_renewals,
    evaluate_trial_endings,
    evaluate_unused,
    pct_change,
)

TODAY = date(2026, 10, 18)
NOW = datetime(2026, 10, 18, 12, 0, tzinfo=timezone.utc)


def sub(days=None, status=SubscriptionStatus.ACTIVE, **kw):
    kw.setdefault("created_at", NOW)
    return Subscription(
        user_id="u1",
        service_name=kw.pop("service_name", "Netflix"),
        price=kw.pop("price", Decimal("15.99")),
        next_renewal_date=TODAY + timedelta(days=days) if days is not None else None,
        status=status,
        **kw,
    )


def price_change(subscription_id, old, new, minutes=0):
    return SubscriptionHistory(
        subscription_id=subscription_id,
        change_type=ChangeType.PRICE_CHANGE,
        old_value=old,
        new_value=new,
        changed_at=NOW + timedelta(minutes=minutes),
    )


class TestRenewalWindow:
    def test_seven_days(self, test_settings):
        s = sub(7)
        [c] = evaluate_renewals([s], {}, TODAY, test_settings)
        assert c.alert_type == AlertType.RENEWAL_UPCOMING_7_DAYS
        assert c.cycle_key == s.next_renewal_date.isoformat()
        assert "Netflix renews in 7 days" in c.message

    def test_three_days(self, test_settings):
        [c] = evaluate_renewals([sub(3)], {}, TODAY, test_settings)
        assert c.alert_type == AlertType.RENEWAL_UPCOMING_3_DAYS

    @pytest.mark.parametrize("days", [-1, 0, 1, 2, 4, 5, 6, 8, 30])
    def test_exact_mode_ignores_other_days(self, test_settings, days):
        assert evaluate_renewals([sub(days)], {}, TODAY, test_settings) == []

    @pytest.mark.parametrize(
        "days,expected",
        [
            (7, AlertType.RENEWAL_UPCOMING_7_DAYS),
            (5, AlertType.RENEWAL_UPCOMING_7_DAYS),
            (4, AlertType.RENEWAL_UPCOMING_7_DAYS),
            (3, AlertType.RENEWAL_UPCOMING_3_DAYS),
            (0, AlertType.RENEWAL_UPCOMING_3_DAYS),
        ],
    )
    def test_catch_up_mode(self, test_settings, days, expected):
        test_settings.RENEWAL_WINDOW_MODE = "catch_up"
        [c] = evaluate_renewals([sub(days)], {}, TODAY, test_settings)
        assert c.alert_type == expected

    @pytest.mark.parametrize(
        "status", [SubscriptionStatus.CANCELLED, SubscriptionStatus.PENDING_REVIEW, SubscriptionStatus.ARCHIVED]
    )
    def test_only_live_subscriptions(self, test_settings, status):
        assert evaluate_renewals([sub(7, status=status)], {}, TODAY, test_settings) == []

    def test_no_renewal_date(self, test_settings):
        assert evaluate_renewals([sub(None)], {}, TODAY, test_settings) == []

    def test_trial_seven_days_is_a_renewal(self, test_settings):
        [c] = evaluate_renewals([sub(7, status=SubscriptionStatus.TRIAL_ACTIVE)], {}, TODAY, test_settings)
        assert c.alert_type == AlertType.RENEWAL_UPCOMING_7_DAYS

    def test_trial_three_days_left_to_trial_rule(self, test_settings):
        assert evaluate_renewals([sub(3, status=SubscriptionStatus.TRIAL_ACTIVE)], {}, TODAY, test_settings) == []


class TestTrialEnding:
    @pytest.mark.parametrize("days", [0, 1, 2, 3])
    def test_last_three_days(self, test_settings, days):
        s = sub(days, status=SubscriptionStatus.TRIAL_ACTIVE, billing_cycle=BillingCycle.MONTHLY)
        [c] = evaluate_trial_endings([s], {}, TODAY, test_settings)
        assert c.alert_type == AlertType.TRIAL_ENDING
        assert s.next_renewal_date.isoformat() in c.message
        assert "USD 15.99/Monthly" in c.message

    def test_today_is_shouted(self, test_settings):
        [c] = evaluate_trial_endings([sub(0, status=SubscriptionStatus.TRIAL_ACTIVE)], {}, TODAY, test_settings)
        assert "ends TODAY" in c.message

    @pytest.mark.parametrize("days", [-1, 4, 7])
    def test_outside_window(self, test_settings, days):
        assert evaluate_trial_endings([sub(days, status=SubscriptionStatus.TRIAL_ACTIVE)], {}, TODAY, test_settings) == []

    def test_active_subscriptions_ignored(self, test_settings):
        assert evaluate_trial_endings([sub(2)], {}, TODAY, test_settings) == []


class TestPriceIncrease:
    def test_increase_payload(self, test_settings):
        s = sub(None, price=Decimal("14.99"))
        entry = price_change(s.id, "9.99", "14.99")
        [c] = evaluate_price_increases([s], {s.id: [entry]}, TODAY, test_settings)
        assert c.alert_type == AlertType.PRICE_INCREASE
        assert c.cycle_key == entry.id
        assert isinstance(c.content, PriceIncreaseContent)
        data = c.content.as_data()
        assert data["old_price"] == "9.99"
        assert data["new_price"] == "14.99"
        assert Decimal(data["pct_change"]) == Decimal("50.05")
        assert "+50.05%" in c.message

    def test_only_latest_change_counts(self, test_settings):
        s = sub(None)
        history = [price_change(s.id, "9.99", "14.99"), price_change(s.id, "14.99", "12.99", minutes=5)]
        assert evaluate_price_increases([s], {s.id: history}, TODAY, test_settings) == []

    def test_latest_increase_after_decrease(self, test_settings):
        s = sub(None)
        history = [price_change(s.id, "14.99", "9.99"), price_change(s.id, "9.99", "11.99", minutes=5)]
        [c] = evaluate_price_increases([s], {s.id: history}, TODAY, test_settings)
        assert c.content.old_price == Decimal("9.99")

    def test_other_history_ignored(self, test_settings):
        s = sub(None)
        entry = SubscriptionHistory(
            subscription_id=s.id,
            change_type=ChangeType.STATUS_CHANGE,
            old_value="PendingReview",
            new_value="Active",
            changed_at=NOW,
        )
        assert evaluate_price_increases([s], {s.id: [entry]}, TODAY, test_settings) == []

    def test_cancelled_subscription_ignored(self, test_settings):
        s = sub(None, status=SubscriptionStatus.CANCELLED)
        entry = price_change(s.id, "9.99", "14.99")
        assert evaluate_price_increases([s], {s.id: [entry]}, TODAY, test_settings) == []

    def test_pct_change_from_zero(self):
        assert pct_change(Decimal("0"), Decimal("5")) is None
        assert pct_change(Decimal("10"), Decimal("15")) == Decimal("50.00")


class TestUnused:
    def test_seven_months_idle(self, test_settings):
        last = NOW - relativedelta(months=7)
        s = sub(None, last_activity_email_at=last, created_at=NOW - relativedelta(years=2))
        [c] = evaluate_unused([s], {}, TODAY, test_settings)
        assert c.alert_type == AlertType.UNUSED_SUBSCRIPTION
        assert c.content.months_unused == 7
        assert c.content.potential_savings == Decimal("111.93")
        assert c.cycle_key == f"activity:{last.date().isoformat()}"

    def test_recent_activity(self, test_settings):
        s = sub(None, last_activity_email_at=NOW - relativedelta(months=5))
        assert evaluate_unused([s], {}, TODAY, test_settings) == []

    def test_never_active_counts_from_creation(self, test_settings):
        s = sub(None, created_at=NOW - relativedelta(months=8))
        [c] = evaluate_unused([s], {}, TODAY, test_settings)
        assert c.content.last_activity is None
        assert c.cycle_key.startswith("created:")

    def test_never_active_but_new(self, test_settings):
        s = sub(None, created_at=NOW - relativedelta(months=2))
        assert evaluate_unused([s], {}, TODAY, test_settings) == []

    def test_only_active(self, test_settings):
        s = sub(None, status=SubscriptionStatus.TRIAL_ACTIVE, created_at=NOW - relativedelta(years=1))
        assert evaluate_unused([s], {}, TODAY, test_settings) == []


def test_evaluators_are_independent(test_settings):
    s = sub(7, last_activity_email_at=NOW - relativedelta(months=9))
    entry = price_change(s.id, "9.99", "15.99")
    kinds = set()
    for evaluator in reversed(ALL_EVALUATORS):
        kinds |= {c.alert_type for c in evaluator([s], {s.id: [entry]}, TODAY, test_settings)}
    assert kinds == {
        AlertType.RENEWAL_UPCOMING_7_DAYS,
        AlertType.PRICE_INCREASE,
        AlertType.UNUSED_SUBSCRIPTION,
    }
