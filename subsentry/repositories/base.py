"""
Persistence contracts the services depend on.

Two implementations ship with the package: ``memory`` (thread-safe, in-process)
and ``sql`` (SQLAlchemy Session). Services only ever see these Protocols.
"""

from __future__ import annotations

from datetime import datetime
from typing import ContextManager, List, Optional, Protocol

from subsentry.models.domain import (
    Alert,
    AlertType,
    Subscription,
    SubscriptionHistory,
    UserPreferences,
)


class SubscriptionStore(Protocol):
    def get_by_user(self, user_id: str) -> List[Subscription]: ...

    def get_by_id(self, subscription_id: str) -> Optional[Subscription]: ...

    def get_by_email_account(self, email_account_id: str) -> List[Subscription]: ...

    def get_user_ids(self) -> List[str]: ...

    def create(self, subscription: Subscription) -> Subscription: ...

    def update(self, subscription: Subscription) -> None:
        """Persist changes; raises NotFoundError / ConcurrencyError."""
        ...

    def append_history(self, entry: SubscriptionHistory) -> None: ...

    def get_history(self, subscription_id: str) -> List[SubscriptionHistory]:
        """Entries ordered by ``changed_at`` ascending."""
        ...

    def atomic(self) -> ContextManager[None]:
        """All writes inside the block land together or not at all."""
        ...


class AlertStore(Protocol):
    def find_active(self, subscription_id: str, alert_type: AlertType) -> Optional[Alert]:
        """Most recent non-dismissed alert for the pair, if any."""
        ...

    def get_by_id(self, alert_id: str) -> Optional[Alert]: ...

    def get_by_user(self, user_id: str) -> List[Alert]: ...

    def create(self, alert: Alert) -> Alert: ...

    def update(self, alert: Alert) -> None: ...

    def get_pending(self, as_of: datetime) -> List[Alert]:
        """Pending or Snoozed alerts scheduled at or before ``as_of``."""
        ...

    def atomic(self) -> ContextManager[None]: ...


class PreferencesLookup(Protocol):
    def get_preferences(self, user_id: str) -> UserPreferences: ...
