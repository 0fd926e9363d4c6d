"""
In-process stores. Used by tests, the CLI's dry runs, and any deployment that
wants the engine without a database.

All state sits behind one re-entrant lock per store; objects are copied on the
way in and out so callers cannot mutate stored rows behind the store's back.
"""

from __future__ import annotations

import copy
import threading
from contextlib import contextmanager
from datetime import datetime
from typing import Dict, Iterator, List, Optional

from subsentry.errors import ConcurrencyError, NotFoundError
from subsentry.models.domain import (
    Alert,
    AlertStatus,
    AlertType,
    Subscription,
    SubscriptionHistory,
    UserPreferences,
)
from subsentry.utils.time import utc_now

_DUE_STATUSES = (AlertStatus.PENDING, AlertStatus.SNOOZED)


class InMemorySubscriptionStore:
    def __init__(self) -> None:
        self._subs: Dict[str, Subscription] = {}
        self._history: Dict[str, List[SubscriptionHistory]] = {}
        self._lock = threading.RLock()

    def get_by_user(self, user_id: str) -> List[Subscription]:
        with self._lock:
            return [copy.copy(s) for s in self._subs.values() if s.user_id == user_id]

    def get_by_id(self, subscription_id: str) -> Optional[Subscription]:
        with self._lock:
            s = self._subs.get(subscription_id)
            return copy.copy(s) if s else None

    def get_by_email_account(self, email_account_id: str) -> List[Subscription]:
        with self._lock:
            return [
                copy.copy(s)
                for s in self._subs.values()
                if s.email_account_id == email_account_id
            ]

    def get_user_ids(self) -> List[str]:
        with self._lock:
            return sorted({s.user_id for s in self._subs.values()})

    def create(self, subscription: Subscription) -> Subscription:
        with self._lock:
            now = utc_now()
            subscription.created_at = subscription.created_at or now
            subscription.updated_at = subscription.updated_at or subscription.created_at
            subscription.version = 1
            self._subs[subscription.id] = copy.copy(subscription)
            return copy.copy(subscription)

    def update(self, subscription: Subscription) -> None:
        with self._lock:
            current = self._subs.get(subscription.id)
            if current is None:
                raise NotFoundError(
                    "subscription not found", subscription_id=subscription.id
                )
            if current.version != subscription.version:
                raise ConcurrencyError(
                    "subscription was modified concurrently",
                    subscription_id=subscription.id,
                )
            subscription.version += 1
            self._subs[subscription.id] = copy.copy(subscription)

    def append_history(self, entry: SubscriptionHistory) -> None:
        with self._lock:
            rows = self._history.setdefault(entry.subscription_id, [])
            rows.append(copy.copy(entry))
            # stable sort keeps insertion order for identical timestamps
            rows.sort(key=lambda h: h.changed_at)

    def get_history(self, subscription_id: str) -> List[SubscriptionHistory]:
        with self._lock:
            return [copy.copy(h) for h in self._history.get(subscription_id, [])]

    @contextmanager
    def atomic(self) -> Iterator[None]:
        with self._lock:
            snapshot = (copy.deepcopy(self._subs), copy.deepcopy(self._history))
            try:
                yield
            except BaseException:
                self._subs, self._history = snapshot
                raise


class InMemoryAlertStore:
    def __init__(self) -> None:
        self._alerts: Dict[str, Alert] = {}
        self._lock = threading.RLock()

    def find_active(self, subscription_id: str, alert_type: AlertType) -> Optional[Alert]:
        with self._lock:
            rows = [
                a
                for a in self._alerts.values()
                if a.subscription_id == subscription_id
                and a.type == alert_type
                and a.status != AlertStatus.DISMISSED
            ]
            if not rows:
                return None
            rows.sort(key=lambda a: (a.created_at or a.scheduled_for), reverse=True)
            return copy.deepcopy(rows[0])

    def get_by_id(self, alert_id: str) -> Optional[Alert]:
        with self._lock:
            a = self._alerts.get(alert_id)
            return copy.deepcopy(a) if a else None

    def get_by_user(self, user_id: str) -> List[Alert]:
        with self._lock:
            return [copy.deepcopy(a) for a in self._alerts.values() if a.user_id == user_id]

    def create(self, alert: Alert) -> Alert:
        with self._lock:
            alert.created_at = alert.created_at or utc_now()
            self._alerts[alert.id] = copy.deepcopy(alert)
            return copy.deepcopy(alert)

    def update(self, alert: Alert) -> None:
        with self._lock:
            if alert.id not in self._alerts:
                raise NotFoundError("alert not found", alert_id=alert.id)
            self._alerts[alert.id] = copy.deepcopy(alert)

    def get_pending(self, as_of: datetime) -> List[Alert]:
        with self._lock:
            due = [
                copy.deepcopy(a)
                for a in self._alerts.values()
                if a.status in _DUE_STATUSES and a.scheduled_for <= as_of
            ]
            return sorted(due, key=lambda a: a.scheduled_for)

    @contextmanager
    def atomic(self) -> Iterator[None]:
        with self._lock:
            snapshot = copy.deepcopy(self._alerts)
            try:
                yield
            except BaseException:
                self._alerts = snapshot
                raise


class StaticPreferences:
    """Preference lookup backed by a dict; unknown users get the defaults."""

    def __init__(self, prefs: Optional[Dict[str, UserPreferences]] = None) -> None:
        self._prefs = dict(prefs or {})
        self._lock = threading.Lock()

    def set(self, prefs: UserPreferences) -> None:
        with self._lock:
            self._prefs[prefs.user_id] = prefs

    def get_preferences(self, user_id: str) -> UserPreferences:
        with self._lock:
            p = self._prefs.get(user_id)
            return copy.copy(p) if p else UserPreferences(user_id=user_id)
