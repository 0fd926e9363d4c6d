"""
Alert scheduler / deduplicator.

Runs every evaluator for one user, filters candidates through the user's
preferences and the (subscription, type) dedup rule, and persists the rest as
Pending alerts. Also owns the alert lifecycle calls made by users (snooze,
dismiss) and by the delivery side (mark sent / failed).
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass, field, replace
from datetime import datetime, timedelta
from typing import Dict, List, Optional, Set, Tuple

from subsentry.config import Settings, settings as default_settings
from subsentry.errors import InvalidStateError, NotFoundError, ValidationError
from subsentry.models.domain import (
    Alert,
    AlertStatus,
    AlertType,
    DeliveryMode,
    SubscriptionHistory,
    UserPreferences,
)
from subsentry.repositories.base import AlertStore, PreferencesLookup, SubscriptionStore
from subsentry.services import metrics
from subsentry.services.alert_rules import AlertCandidate, evaluate_all
from subsentry.utils.cancel import CancelToken, check
from subsentry.utils.locks import UserLockRegistry, default_registry
from subsentry.utils.time import Clock, local_send_time, utc_now

logger = logging.getLogger(__name__)

# Not yet delivered; these block a candidate for the same condition instance.
_UNDELIVERED = (AlertStatus.PENDING, AlertStatus.SNOOZED, AlertStatus.FAILED)
_SNOOZABLE = (AlertStatus.PENDING, AlertStatus.FAILED)


@dataclass
class AlertGenerationSummary:
    created: int = 0
    skipped_duplicate: int = 0
    skipped_by_preference: int = 0
    alerts: List[Alert] = field(default_factory=list)

    def as_dict(self) -> Dict[str, int]:
        return {
            "created": self.created,
            "skipped_duplicate": self.skipped_duplicate,
            "skipped_by_preference": self.skipped_by_preference,
        }


class AlertScheduler:
    def __init__(
        self,
        subscriptions: SubscriptionStore,
        alerts: AlertStore,
        preferences: PreferencesLookup,
        *,
        clock: Clock = utc_now,
        settings: Settings = default_settings,
        locks: Optional[UserLockRegistry] = None,
    ):
        self.subscriptions = subscriptions
        self.alerts = alerts
        self.preferences = preferences
        self._clock = clock
        self._settings = settings
        self._locks = locks or default_registry

    def generate_alerts(
        self, user_id: str, cancel: Optional[CancelToken] = None
    ) -> AlertGenerationSummary:
        """Evaluate every rule for ``user_id`` and persist new Pending alerts.

        Idempotent: a second call with no state change in between creates
        nothing, because every candidate hits the dedup rule.
        """
        started = time.perf_counter()
        summary = AlertGenerationSummary()
        with self._locks.hold(user_id):
            check(cancel)
            subs = self.subscriptions.get_by_user(user_id)
            history: Dict[str, List[SubscriptionHistory]] = {}
            for sub in subs:
                check(cancel)
                history[sub.id] = self.subscriptions.get_history(sub.id)
            check(cancel)
            prefs = self.preferences.get_preferences(user_id)
            check(cancel)
            dismissed = self._user_dismissed(user_id)

            now = self._clock()
            for candidate in evaluate_all(subs, history, now.date(), self._settings):
                if not prefs.allows(candidate.alert_type):
                    summary.skipped_by_preference += 1
                    metrics.ALERTS_SKIPPED.labels(reason="preference").inc()
                    logger.debug(
                        "alerts: %s disabled by preference",
                        candidate.alert_type.value,
                        extra={"user_id": user_id, "subscription_id": candidate.subscription_id},
                    )
                    continue
                if (candidate.subscription_id, candidate.alert_type, candidate.cycle_key) in dismissed:
                    summary.skipped_duplicate += 1
                    metrics.ALERTS_SKIPPED.labels(reason="duplicate").inc()
                    continue
                check(cancel)
                existing = self.alerts.find_active(candidate.subscription_id, candidate.alert_type)
                if existing is not None and self._blocks(existing, candidate, now):
                    summary.skipped_duplicate += 1
                    metrics.ALERTS_SKIPPED.labels(reason="duplicate").inc()
                    logger.debug(
                        "alerts: duplicate %s suppressed",
                        candidate.alert_type.value,
                        extra={"user_id": user_id, "alert_id": existing.id},
                    )
                    continue
                created = self._persist(candidate, existing, prefs, now, cancel)
                summary.created += 1
                summary.alerts.append(created)

        metrics.ALERT_GENERATION_SECONDS.observe(time.perf_counter() - started)
        return summary

    def _user_dismissed(self, user_id: str) -> Set[Tuple[str, AlertType, str]]:
        """Condition instances the user dismissed; they stay quiet until re-armed."""
        return {
            (a.subscription_id, a.type, a.cycle_key)
            for a in self.alerts.get_by_user(user_id)
            if a.status == AlertStatus.DISMISSED and "superseded_by" not in a.data
        }

    def _blocks(self, existing: Alert, candidate: AlertCandidate, now: datetime) -> bool:
        if existing.cycle_key != candidate.cycle_key:
            # the condition re-armed (new renewal, new price change, ...)
            return False
        if existing.status in _UNDELIVERED:
            return True
        if existing.status == AlertStatus.SENT:
            if candidate.alert_type == AlertType.UNUSED_SUBSCRIPTION and existing.sent_at:
                realert_at = existing.sent_at + timedelta(days=self._settings.UNUSED_REALERT_DAYS)
                return now < realert_at
            return True
        return False

    def _scheduled_for(
        self, candidate: AlertCandidate, prefs: UserPreferences, now: datetime
    ) -> datetime:
        if candidate.alert_type == AlertType.PRICE_INCREASE:
            return now
        return local_send_time(
            candidate.target_date, self._settings.ALERT_SEND_HOUR, prefs.timezone
        )

    def _persist(
        self,
        candidate: AlertCandidate,
        superseded: Optional[Alert],
        prefs: UserPreferences,
        now: datetime,
        cancel: Optional[CancelToken],
    ) -> Alert:
        alert = Alert(
            user_id=candidate.user_id,
            subscription_id=candidate.subscription_id,
            type=candidate.alert_type,
            message=candidate.message,
            data=candidate.content.as_data(),
            cycle_key=candidate.cycle_key,
            scheduled_for=self._scheduled_for(candidate, prefs, now),
            delivery_mode=DeliveryMode.DIGEST if prefs.use_daily_digest else DeliveryMode.IMMEDIATE,
            status=AlertStatus.PENDING,
            created_at=now,
        )
        with self.alerts.atomic():
            if superseded is not None:
                # keep one non-dismissed alert per (subscription, type)
                check(cancel)
                self.alerts.update(
                    replace(
                        superseded,
                        status=AlertStatus.DISMISSED,
                        data={**superseded.data, "superseded_by": alert.id},
                    )
                )
            check(cancel)
            created = self.alerts.create(alert)
        metrics.ALERTS_CREATED.labels(type=created.type.value).inc()
        logger.info(
            "alerts: created %s",
            created.type.value,
            extra={
                "user_id": created.user_id,
                "subscription_id": created.subscription_id,
                "alert_id": created.id,
                "scheduled_for": created.scheduled_for.isoformat(),
            },
        )
        return created

    # ------------------------------------------------------------------ #
    # Lifecycle
    # ------------------------------------------------------------------ #
    def _get(self, alert_id: str) -> Alert:
        alert = self.alerts.get_by_id(alert_id)
        if alert is None:
            raise NotFoundError("alert not found", alert_id=alert_id)
        return alert

    def _transition(self, alert_id: str, apply, cancel: Optional[CancelToken]) -> Alert:
        check(cancel)
        owner = self._get(alert_id).user_id
        with self._locks.hold(owner):
            check(cancel)
            alert = self._get(alert_id)
            updated = apply(alert)
            if updated is alert:
                return alert
            check(cancel)
            self.alerts.update(updated)
            return updated

    def snooze_alert(
        self,
        alert_id: str,
        hours: Optional[int] = None,
        cancel: Optional[CancelToken] = None,
    ) -> Alert:
        """Push a Pending/Failed alert forward by ``hours`` from its current slot."""
        hours = self._settings.SNOOZE_HOURS_DEFAULT if hours is None else hours
        if hours <= 0:
            raise ValidationError("snooze hours must be positive", hours=hours)

        def apply(alert: Alert) -> Alert:
            if alert.status not in _SNOOZABLE:
                raise InvalidStateError(
                    f"cannot snooze a {alert.status.value} alert", alert_id=alert.id
                )
            return replace(
                alert,
                status=AlertStatus.SNOOZED,
                scheduled_for=alert.scheduled_for + timedelta(hours=hours),
            )

        return self._transition(alert_id, apply, cancel)

    def dismiss_alert(self, alert_id: str, cancel: Optional[CancelToken] = None) -> Alert:
        def apply(alert: Alert) -> Alert:
            if alert.status == AlertStatus.DISMISSED:
                return alert
            return replace(alert, status=AlertStatus.DISMISSED)

        return self._transition(alert_id, apply, cancel)

    def mark_sent(self, alert_id: str, cancel: Optional[CancelToken] = None) -> Alert:
        def apply(alert: Alert) -> Alert:
            if alert.status == AlertStatus.SENT:
                return alert
            if alert.status == AlertStatus.DISMISSED:
                raise InvalidStateError("alert was dismissed", alert_id=alert.id)
            return replace(alert, status=AlertStatus.SENT, sent_at=self._clock())

        return self._transition(alert_id, apply, cancel)

    def mark_failed(self, alert_id: str, cancel: Optional[CancelToken] = None) -> Alert:
        """Record a delivery failure. Re-enqueueing is the delivery side's call."""

        def apply(alert: Alert) -> Alert:
            if alert.status in (AlertStatus.SENT, AlertStatus.DISMISSED):
                raise InvalidStateError(
                    f"cannot fail a {alert.status.value} alert", alert_id=alert.id
                )
            return replace(alert, status=AlertStatus.FAILED, retry_count=alert.retry_count + 1)

        return self._transition(alert_id, apply, cancel)

    # ------------------------------------------------------------------ #
    # Reads
    # ------------------------------------------------------------------ #
    def get_alert(self, alert_id: str) -> Alert:
        return self._get(alert_id)

    def pending_alerts(self, as_of: Optional[datetime] = None) -> List[Alert]:
        return self.alerts.get_pending(as_of or self._clock())

    def user_alerts(
        self,
        user_id: str,
        status: Optional[AlertStatus] = None,
        alert_type: Optional[AlertType] = None,
    ) -> List[Alert]:
        rows = self.alerts.get_by_user(user_id)
        if status is not None:
            rows = [a for a in rows if a.status == status]
        if alert_type is not None:
            rows = [a for a in rows if a.type == alert_type]
        return sorted(rows, key=lambda a: (a.scheduled_for, a.id))
