import os

# Keep the module-level engine off disk before anything imports subsentry.db
os.environ.setdefault("DATABASE_URL", "sqlite:///:memory:")
os.environ.setdefault("LOG_JSON", "0")

from datetime import datetime, timedelta, timezone

import pytest
from sqlalchemy.orm import sessionmaker

from subsentry.config import Settings
from subsentry.db import init_db, make_engine
from subsentry.repositories.memory import (
    InMemoryAlertStore,
    InMemorySubscriptionStore,
    StaticPreferences,
)
from subsentry.services.alert_scheduler import AlertScheduler
from subsentry.services.reconciliation import ReconciliationEngine
from subsentry.utils.locks import UserLockRegistry

FIXED_NOW = datetime(2026, 10, 18, 12, 0, tzinfo=timezone.utc)


class FakeClock:
    def __init__(self, now: datetime = FIXED_NOW):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now = self.now + timedelta(**kwargs)
        return self.now


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def test_settings():
    # explicit values win over any .env / environment on the test machine
    return Settings(
        _env_file=None,
        FUZZY_MATCH_THRESHOLD=0.85,
        AUTO_ACTIVATE_CONFIDENCE=0.85,
        REVIEW_CONFIDENCE_FLOOR=0.60,
        ALERT_SEND_HOUR=9,
        UNUSED_AFTER_MONTHS=6,
        UNUSED_REALERT_DAYS=30,
        SNOOZE_HOURS_DEFAULT=24,
        RENEWAL_WINDOW_MODE="exact",
        WORKER_POOL_SIZE=4,
        OVERDUE_RENEWAL_DAYS=7,
    )


@pytest.fixture
def locks():
    return UserLockRegistry()


@pytest.fixture
def sub_store():
    return InMemorySubscriptionStore()


@pytest.fixture
def alert_store():
    return InMemoryAlertStore()


@pytest.fixture
def prefs():
    return StaticPreferences()


@pytest.fixture
def engine(sub_store, clock, test_settings, locks):
    return ReconciliationEngine(sub_store, clock=clock, settings=test_settings, locks=locks)


@pytest.fixture
def scheduler(sub_store, alert_store, prefs, clock, test_settings, locks):
    return AlertScheduler(
        sub_store, alert_store, prefs, clock=clock, settings=test_settings, locks=locks
    )


@pytest.fixture
def sql_engine():
    eng = make_engine("sqlite:///:memory:")
    init_db(bind=eng)
    yield eng
    eng.dispose()


@pytest.fixture
def session_factory(sql_engine):
    return sessionmaker(bind=sql_engine, autoflush=False, autocommit=False, future=True)


@pytest.fixture
def db_session(session_factory):
    db = session_factory()
    try:
        yield db
    finally:
        db.close()
