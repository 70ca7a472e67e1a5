"""Database configuration module."""
from __future__ import annotations

import logging
from contextlib import contextmanager
from typing import Iterator, Optional

from sqlalchemy import create_engine
from sqlalchemy.engine import Engine
from sqlalchemy.orm import Session, declarative_base, sessionmaker

from .config import database_url

SQLALCHEMY_DATABASE_URL = database_url()

# Bumped whenever apply_schema_upgrades learns a new step.
SCHEMA_VERSION = 3


def build_engine(url: str) -> Engine:
    """Create an engine configured the way the local store expects."""
    connect_args = {"check_same_thread": False} if url.startswith("sqlite") else {}
    return create_engine(url, connect_args=connect_args, pool_pre_ping=True)


def build_session_factory(bind: Engine) -> sessionmaker:
    # Rows handed out by the store are used after their session closed.
    return sessionmaker(autocommit=False, autoflush=False, expire_on_commit=False, bind=bind)


engine = build_engine(SQLALCHEMY_DATABASE_URL)
SessionLocal = build_session_factory(engine)
Base = declarative_base()

logger = logging.getLogger(__name__)


def apply_schema_upgrades(bind: Optional[Engine] = None) -> int:
    """Perform lightweight, in-app schema migrations for SQLite deployments.

    Returns the schema version recorded after the upgrade.
    """

    from .models import ErrorLog, SchemaInfo

    bind = bind or engine
    with bind.begin() as connection:
        SchemaInfo.__table__.create(bind=connection, checkfirst=True)
        stored_version = connection.exec_driver_sql(
            "SELECT version FROM schema_info WHERE id = 1"
        ).scalar_one_or_none()
        columns = {
            row[1] for row in connection.exec_driver_sql("PRAGMA table_info('events')").fetchall()
        }

    current = stored_version or 0
    if current >= SCHEMA_VERSION:
        return current

    if current < 2:
        logger.info("Ensuring error_log table exists")
        with bind.begin() as connection:
            ErrorLog.__table__.create(bind=connection, checkfirst=True)

    if columns:
        new_columns: dict[str, str] = {
            "pending_sync": "ALTER TABLE events ADD COLUMN pending_sync BOOLEAN NOT NULL DEFAULT 0",
            "deleted": "ALTER TABLE events ADD COLUMN deleted BOOLEAN NOT NULL DEFAULT 0",
            "sync_error": "ALTER TABLE events ADD COLUMN sync_error TEXT NULL",
        }
        for column_name, ddl in new_columns.items():
            if column_name in columns:
                continue
            logger.info("Adding %s column to events table", column_name)
            with bind.begin() as connection:
                connection.exec_driver_sql(ddl)

    with bind.begin() as connection:
        if stored_version is None:
            connection.exec_driver_sql(
                "INSERT INTO schema_info (id, version) VALUES (1, ?)", (SCHEMA_VERSION,)
            )
        else:
            connection.exec_driver_sql(
                "UPDATE schema_info SET version = ? WHERE id = 1", (SCHEMA_VERSION,)
            )
    logger.info("Local store schema upgraded from version %s to %s", current, SCHEMA_VERSION)
    return SCHEMA_VERSION


@contextmanager
def session_scope(factory: Optional[sessionmaker] = None) -> Iterator[Session]:
    """Provide a transactional scope around a series of operations."""
    session = (factory or SessionLocal)()
    try:
        yield session
        session.commit()
    except Exception:
        session.rollback()
        raise
    finally:
        session.close()
