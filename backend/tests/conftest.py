"""Shared fixtures: a fresh SQLite store per test and an in-memory provider."""
from __future__ import annotations

import os
import sys
from pathlib import Path
from typing import Iterator

import pytest

ROOT = Path(__file__).resolve().parents[2]
if str(ROOT) not in sys.path:  # pragma: no cover - test bootstrap code
    sys.path.insert(0, str(ROOT))

os.environ.setdefault("WOLFSYNC_SECRET_KEY", "test-secret")

from backend.tests.fakes import FakeBackgroundScheduler, FakeRemoteClient
from backend.wolfsync.database import Base, apply_schema_upgrades, build_engine, build_session_factory
from backend.wolfsync.models import Account, Calendar, utcnow
from backend.wolfsync.security import reset_cipher_cache
from backend.wolfsync.store import LocalStore

ACCOUNT_ID = "acc-1"
CALENDAR_ID = "cal-1"


@pytest.fixture
def db_engine(tmp_path):
    engine = build_engine(f"sqlite:///{tmp_path / 'wolfsync.db'}")
    Base.metadata.create_all(bind=engine)
    apply_schema_upgrades(engine)
    try:
        yield engine
    finally:
        engine.dispose()


@pytest.fixture
def store(db_engine) -> LocalStore:
    return LocalStore(build_session_factory(db_engine))


@pytest.fixture
def remote() -> FakeRemoteClient:
    return FakeRemoteClient()


@pytest.fixture
def background_scheduler() -> FakeBackgroundScheduler:
    return FakeBackgroundScheduler()


@pytest.fixture
def account(store: LocalStore) -> Account:
    """Account ``acc-1`` with one visible calendar ``cal-1``."""
    now = utcnow()
    account = store.add_account(
        Account(id=ACCOUNT_ID, email="ada@example.org", settings={}, created_at=now, updated_at=now)
    )
    store.put_calendar(Calendar(id=CALENDAR_ID, account_id=ACCOUNT_ID, summary="Work", visible=True))
    return account


@pytest.fixture(autouse=True)
def fresh_cipher() -> Iterator[None]:
    reset_cipher_cache()
    yield
    reset_cipher_cache()
