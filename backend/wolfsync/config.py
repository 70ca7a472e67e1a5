"""Runtime configuration for the synchronization subsystem."""
from __future__ import annotations

import logging
import os

from pydantic import BaseModel, Field, ValidationError

logger = logging.getLogger(__name__)

DEFAULT_DATABASE_URL = "sqlite:///./data/wolfsync.db"

_TRUE_VALUES = {"1", "true", "yes", "on"}
_FALSE_VALUES = {"0", "false", "no", "off"}


class SyncSettings(BaseModel):
    """Auto-sync preferences consumed by the scheduler."""

    auto_sync: bool = True
    sync_interval_minutes: int = Field(default=20, ge=1, le=720)


def database_url() -> str:
    """Return the SQLAlchemy URL of the local store."""
    return os.getenv("WOLFSYNC_DATABASE_URL", DEFAULT_DATABASE_URL)


def load_sync_settings() -> SyncSettings:
    """Read auto-sync preferences from the environment.

    Invalid values never abort startup; they are reported and replaced by the
    defaults, mirroring how stored preferences were always treated.
    """

    defaults = SyncSettings()
    auto_sync = defaults.auto_sync
    interval = defaults.sync_interval_minutes

    raw_auto_sync = os.getenv("WOLFSYNC_AUTO_SYNC")
    if raw_auto_sync is not None:
        normalized = raw_auto_sync.strip().lower()
        if normalized in _TRUE_VALUES:
            auto_sync = True
        elif normalized in _FALSE_VALUES:
            auto_sync = False
        else:
            logger.warning(
                "Ignoring unparsable WOLFSYNC_AUTO_SYNC=%r, using %s", raw_auto_sync, auto_sync
            )

    raw_interval = os.getenv("WOLFSYNC_SYNC_INTERVAL")
    if raw_interval is not None:
        try:
            interval = int(raw_interval)
        except ValueError:
            logger.warning(
                "Ignoring unparsable WOLFSYNC_SYNC_INTERVAL=%r, using %s minutes",
                raw_interval,
                interval,
            )

    try:
        return SyncSettings(auto_sync=auto_sync, sync_interval_minutes=interval)
    except ValidationError:
        logger.warning(
            "Sync interval %s is out of range, falling back to %s minutes",
            interval,
            defaults.sync_interval_minutes,
        )
        return SyncSettings(auto_sync=auto_sync)
