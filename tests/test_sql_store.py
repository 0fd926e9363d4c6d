from datetime import date, timedelta
from decimal import Decimal

import pytest

from subsentry.errors import ConcurrencyError, NotFoundError
from subsentry.models.domain import (
    Alert,
    AlertStatus,
    AlertType,
    ChangeType,
    Subscription,
    SubscriptionHistory,
    SubscriptionStatus,
    UserPreferences,
)
from subsentry.repositories.sql import SqlAlertStore, SqlPreferences, SqlSubscriptionStore
from subsentry.services.reconciliation import SubscriptionCandidate
from subsentry.services.wiring import for_session

pytestmark = pytest.mark.sql


@pytest.fixture
def subs(db_session):
    return SqlSubscriptionStore(db_session)


@pytest.fixture
def alerts(db_session):
    return SqlAlertStore(db_session)


def _sub(clock, **kw):
    return Subscription(
        user_id=kw.pop("user_id", "u1"),
        service_name=kw.pop("service_name", "Netflix"),
        price=kw.pop("price", Decimal("15.99")),
        created_at=clock(),
        **kw,
    )


class TestSubscriptionStore:
    def test_round_trip(self, subs, clock):
        created = subs.create(
            _sub(clock, next_renewal_date=date(2026, 11, 1), email_account_id="acct-1")
        )
        got = subs.get_by_id(created.id)
        assert got.service_name == "Netflix"
        assert got.price == Decimal("15.99")
        assert got.next_renewal_date == date(2026, 11, 1)
        assert got.status == SubscriptionStatus.ACTIVE
        assert got.created_at == clock()
        assert got.version == 1
        assert [s.id for s in subs.get_by_user("u1")] == [created.id]
        assert [s.id for s in subs.get_by_email_account("acct-1")] == [created.id]

    def test_missing(self, subs):
        assert subs.get_by_id("nope") is None
        with pytest.raises(NotFoundError):
            subs.update(Subscription(user_id="u1", service_name="x", price=Decimal("1"), id="nope"))

    def test_user_ids_are_distinct(self, subs, clock):
        subs.create(_sub(clock, user_id="u2"))
        subs.create(_sub(clock, user_id="u1"))
        subs.create(_sub(clock, user_id="u1", service_name="Hulu"))
        assert subs.get_user_ids() == ["u1", "u2"]

    def test_update_bumps_version(self, subs, clock):
        created = subs.create(_sub(clock))
        created.price = Decimal("17.99")
        subs.update(created)
        assert created.version == 2
        assert subs.get_by_id(created.id).price == Decimal("17.99")

    def test_stale_update_conflicts(self, subs, clock):
        created = subs.create(_sub(clock))
        first = subs.get_by_id(created.id)
        second = subs.get_by_id(created.id)
        first.category = "Streaming"
        subs.update(first)
        second.category = "Video"
        with pytest.raises(ConcurrencyError):
            subs.update(second)
        assert subs.get_by_id(created.id).category == "Streaming"

    def test_atomic_rolls_back(self, subs, clock):
        sub = _sub(clock)
        with pytest.raises(RuntimeError):
            with subs.atomic():
                subs.create(sub)
                subs.append_history(
                    SubscriptionHistory(
                        subscription_id=sub.id,
                        change_type=ChangeType.STATUS_CHANGE,
                        old_value="",
                        new_value="Active",
                        changed_at=clock(),
                    )
                )
                raise RuntimeError("boom")
        assert subs.get_by_id(sub.id) is None
        assert subs.get_history(sub.id) == []

    def test_history_keeps_insertion_order_for_same_timestamp(self, subs, clock):
        created = subs.create(_sub(clock))
        for old, new in [("9.99", "12.99"), ("12.99", "10.99"), ("10.99", "11.99")]:
            subs.append_history(
                SubscriptionHistory(
                    subscription_id=created.id,
                    change_type=ChangeType.PRICE_CHANGE,
                    old_value=old,
                    new_value=new,
                    changed_at=clock(),
                )
            )
        assert [h.new_value for h in subs.get_history(created.id)] == ["12.99", "10.99", "11.99"]


class TestAlertStore:
    def _alert(self, sub_id, clock, **kw):
        return Alert(
            user_id="u1",
            subscription_id=sub_id,
            type=kw.pop("type", AlertType.RENEWAL_UPCOMING_7_DAYS),
            message="Netflix renews in 7 days",
            scheduled_for=kw.pop("scheduled_for", clock()),
            created_at=kw.pop("created_at", clock()),
            **kw,
        )

    def test_round_trip_and_pending(self, subs, alerts, clock):
        sub = subs.create(_sub(clock))
        alert = alerts.create(self._alert(sub.id, clock, data={"days_until": 7}, cycle_key="2026-10-25"))
        later = alerts.create(self._alert(sub.id, clock, scheduled_for=clock() + timedelta(days=1)))

        got = alerts.get_by_id(alert.id)
        assert got.data == {"days_until": 7}
        assert got.cycle_key == "2026-10-25"
        assert got.scheduled_for == clock()
        assert [a.id for a in alerts.get_pending(clock())] == [alert.id]
        assert {a.id for a in alerts.get_by_user("u1")} == {alert.id, later.id}

    def test_find_active_skips_dismissed(self, subs, alerts, clock):
        sub = subs.create(_sub(clock))
        old = alerts.create(self._alert(sub.id, clock, status=AlertStatus.DISMISSED))
        assert alerts.find_active(sub.id, AlertType.RENEWAL_UPCOMING_7_DAYS) is None
        live = alerts.create(self._alert(sub.id, clock, created_at=clock() + timedelta(minutes=1)))
        assert alerts.find_active(sub.id, AlertType.RENEWAL_UPCOMING_7_DAYS).id == live.id
        assert alerts.find_active(sub.id, AlertType.PRICE_INCREASE) is None
        assert old.id != live.id

    def test_update(self, subs, alerts, clock):
        sub = subs.create(_sub(clock))
        alert = alerts.create(self._alert(sub.id, clock))
        alert.status = AlertStatus.SENT
        alert.sent_at = clock()
        alert.data = {"note": "x"}
        alerts.update(alert)
        got = alerts.get_by_id(alert.id)
        assert got.status == AlertStatus.SENT
        assert got.sent_at == clock()
        assert got.data == {"note": "x"}


class TestPreferences:
    def test_defaults_for_unknown_user(self, db_session):
        prefs = SqlPreferences(db_session).get_preferences("u9")
        assert prefs.user_id == "u9"
        assert prefs.enable_renewal_alerts is True
        assert prefs.timezone == "UTC"

    def test_save_and_load(self, db_session):
        store = SqlPreferences(db_session)
        store.save(UserPreferences(user_id="u1", timezone="Europe/Berlin", enable_price_change_alerts=False))
        got = store.get_preferences("u1")
        assert got.timezone == "Europe/Berlin"
        assert got.enable_price_change_alerts is False


class TestServicesOnSql:
    def test_reconcile_then_alert(self, db_session, clock, test_settings, locks):
        services = for_session(db_session, clock=clock, settings=test_settings, locks=locks)
        first = services.engine.reconcile(
            "u1",
            SubscriptionCandidate(
                service_name="Netflix",
                price=Decimal("9.99"),
                next_renewal_date=clock().date() + timedelta(days=7),
                email_account_id="acct-1",
            ),
        )
        merged = services.engine.reconcile(
            "u1",
            SubscriptionCandidate(
                service_name="NETFLIX",
                price=Decimal("14.99"),
                next_renewal_date=clock().date() + timedelta(days=7),
                email_account_id="acct-1",
                source_email_id="m-2",
            ),
        )
        assert merged.subscription.id == first.subscription.id
        [entry] = services.engine.history(first.subscription.id)
        assert (entry.change_type, entry.old_value, entry.new_value) == (
            ChangeType.PRICE_CHANGE,
            "9.99",
            "14.99",
        )

        summary = services.scheduler.generate_alerts("u1")
        assert {a.type for a in summary.alerts} == {
            AlertType.RENEWAL_UPCOMING_7_DAYS,
            AlertType.PRICE_INCREASE,
        }
        assert services.scheduler.generate_alerts("u1").created == 0

        renewal = next(a for a in summary.alerts if a.type == AlertType.RENEWAL_UPCOMING_7_DAYS)
        snoozed = services.scheduler.snooze_alert(renewal.id, hours=3)
        assert services.scheduler.get_alert(renewal.id).scheduled_for == snoozed.scheduled_for
        assert services.scheduler.get_alert(renewal.id).status == AlertStatus.SNOOZED
