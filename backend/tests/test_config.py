from pathlib import Path
import sys

import pytest

ROOT = Path(__file__).resolve().parents[2]
if str(ROOT) not in sys.path:  # pragma: no cover - test bootstrap code
    sys.path.insert(0, str(ROOT))

from backend.wolfsync.config import DEFAULT_DATABASE_URL, SyncSettings, database_url, load_sync_settings


@pytest.fixture(autouse=True)
def clean_env(monkeypatch) -> None:
    for name in ("WOLFSYNC_AUTO_SYNC", "WOLFSYNC_SYNC_INTERVAL", "WOLFSYNC_DATABASE_URL"):
        monkeypatch.delenv(name, raising=False)


def test_defaults() -> None:
    settings = load_sync_settings()

    assert settings == SyncSettings(auto_sync=True, sync_interval_minutes=20)
    assert database_url() == DEFAULT_DATABASE_URL


def test_environment_overrides(monkeypatch) -> None:
    monkeypatch.setenv("WOLFSYNC_AUTO_SYNC", "off")
    monkeypatch.setenv("WOLFSYNC_SYNC_INTERVAL", "5")
    monkeypatch.setenv("WOLFSYNC_DATABASE_URL", "sqlite:////tmp/other.db")

    settings = load_sync_settings()

    assert not settings.auto_sync
    assert settings.sync_interval_minutes == 5
    assert database_url() == "sqlite:////tmp/other.db"


@pytest.mark.parametrize(
    "auto_sync, interval, expected_interval",
    [("maybe", "15", 15), ("yes", "soon", 20), ("1", "0", 20), ("true", "100000", 20)],
)
def test_invalid_values_fall_back_to_defaults(monkeypatch, auto_sync, interval, expected_interval) -> None:
    monkeypatch.setenv("WOLFSYNC_AUTO_SYNC", auto_sync)
    monkeypatch.setenv("WOLFSYNC_SYNC_INTERVAL", interval)

    settings = load_sync_settings()

    assert settings.auto_sync is True
    assert settings.sync_interval_minutes == expected_interval
