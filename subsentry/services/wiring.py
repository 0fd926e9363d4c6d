"""
Service construction.

Jobs fan out across threads and a SQLAlchemy Session must not be shared
between them, so jobs take a *factory*: a zero-arg callable returning a
context manager that yields a ready ``Services`` bundle. The SQL factory opens
a fresh Session per call; the memory factory hands back the same shared,
thread-safe stores every time.
"""

from __future__ import annotations

from contextlib import contextmanager
from dataclasses import dataclass
from typing import Callable, ContextManager, Iterator, Optional

from sqlalchemy.orm import Session

from subsentry.config import Settings, settings as default_settings
from subsentry.repositories.base import AlertStore, PreferencesLookup, SubscriptionStore
from subsentry.repositories.memory import (
    InMemoryAlertStore,
    InMemorySubscriptionStore,
    StaticPreferences,
)
from subsentry.repositories.sql import SqlAlertStore, SqlPreferences, SqlSubscriptionStore
from subsentry.services.alert_scheduler import AlertScheduler
from subsentry.services.reconciliation import ReconciliationEngine
from subsentry.utils.locks import UserLockRegistry
from subsentry.utils.time import Clock, utc_now


@dataclass
class Services:
    engine: ReconciliationEngine
    scheduler: AlertScheduler

    @property
    def subscriptions(self) -> SubscriptionStore:
        return self.engine.store


ServiceFactory = Callable[[], ContextManager[Services]]


def build_services(
    subscriptions: SubscriptionStore,
    alerts: AlertStore,
    preferences: PreferencesLookup,
    *,
    clock: Clock = utc_now,
    settings: Settings = default_settings,
    locks: Optional[UserLockRegistry] = None,
) -> Services:
    return Services(
        engine=ReconciliationEngine(subscriptions, clock=clock, settings=settings, locks=locks),
        scheduler=AlertScheduler(
            subscriptions, alerts, preferences, clock=clock, settings=settings, locks=locks
        ),
    )


def for_session(db: Session, **kwargs) -> Services:
    return build_services(
        SqlSubscriptionStore(db), SqlAlertStore(db), SqlPreferences(db), **kwargs
    )


def sql_services(session_factory: Optional[Callable[[], Session]] = None, **kwargs) -> ServiceFactory:
    if session_factory is None:
        from subsentry.db import SessionLocal

        session_factory = SessionLocal

    @contextmanager
    def open_services() -> Iterator[Services]:
        db = session_factory()
        try:
            yield for_session(db, **kwargs)
        finally:
            db.close()

    return open_services


def memory_services(
    subscriptions: Optional[InMemorySubscriptionStore] = None,
    alerts: Optional[InMemoryAlertStore] = None,
    preferences: Optional[PreferencesLookup] = None,
    **kwargs,
) -> ServiceFactory:
    shared = build_services(
        subscriptions or InMemorySubscriptionStore(),
        alerts or InMemoryAlertStore(),
        preferences or StaticPreferences(),
        **kwargs,
    )

    @contextmanager
    def open_services() -> Iterator[Services]:
        yield shared

    return open_services
