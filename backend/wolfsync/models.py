"""SQLAlchemy models for the local calendar replica."""
from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum

from sqlalchemy import (
    Boolean,
    Column,
    DateTime,
    Enum as SqlEnum,
    ForeignKey,
    Integer,
    JSON,
    String,
    Text,
)

from .database import Base


def utcnow() -> datetime:
    """Naive UTC timestamp, the representation used by every DateTime column."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def _enum_values(enum_cls) -> list[str]:
    return [member.value for member in enum_cls]


class EventStatus(str, Enum):
    """Status of a calendar event as reported by the provider."""

    CONFIRMED = "confirmed"
    TENTATIVE = "tentative"
    CANCELLED = "cancelled"


class SyncStatus(str, Enum):
    """Outcome of the most recent pull synchronization of a calendar."""

    SUCCESS = "success"
    ERROR = "error"
    IN_PROGRESS = "in_progress"


class ChangeOperation(str, Enum):
    """Kind of local mutation waiting for remote confirmation."""

    CREATE = "create"
    UPDATE = "update"
    DELETE = "delete"


class ConflictKind(str, Enum):
    """Classification of concurrent local and remote edits."""

    UPDATE_UPDATE = "update-update"
    DELETE_UPDATE = "delete-update"
    UPDATE_DELETE = "update-delete"


class ErrorType(str, Enum):
    """Categories used by the diagnostic error log."""

    SYNC_FAILURE = "sync_failure"
    API_ERROR = "api_error"
    CONFLICT_DETECTION = "conflict_detection"
    TOKEN_REFRESH = "token_refresh"
    NETWORK_ERROR = "network_error"
    OTHER = "other"


class SchemaInfo(Base):
    """Single row holding the schema version of the local store."""

    __tablename__ = "schema_info"

    id = Column(Integer, primary_key=True)
    version = Column(Integer, nullable=False)


class Account(Base):
    """One remote identity whose calendars are mirrored locally."""

    __tablename__ = "accounts"

    id = Column(String, primary_key=True)
    email = Column(String, unique=True, nullable=False, index=True)
    # Encrypted credential material, see security.encrypt_account_settings.
    settings = Column(JSON, nullable=False, default=dict)
    token_expiry = Column(DateTime, nullable=True)
    color = Column(String, nullable=True)
    created_at = Column(DateTime, default=utcnow)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)


class Calendar(Base):
    """Remote calendar owned by an account."""

    __tablename__ = "calendars"

    id = Column(String, primary_key=True)
    account_id = Column(String, ForeignKey("accounts.id"), nullable=False, index=True)
    summary = Column(String, nullable=False)
    description = Column(Text, nullable=True)
    color = Column(String, nullable=True)
    visible = Column(Boolean, default=True, nullable=False)
    primary = Column(Boolean, default=False, nullable=False)
    created_at = Column(DateTime, default=utcnow)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)


class CalendarEvent(Base):
    """Local replica of one event, including unconfirmed local edits."""

    __tablename__ = "events"

    id = Column(String, primary_key=True)
    account_id = Column(String, ForeignKey("accounts.id"), nullable=False, index=True)
    calendar_id = Column(String, ForeignKey("calendars.id"), nullable=False, index=True)
    summary = Column(String, nullable=True)
    description = Column(Text, nullable=True)
    location = Column(String, nullable=True)
    # {"date_time": ..., "date_only": ..., "time_zone": ...}
    start = Column(JSON, nullable=True)
    end = Column(JSON, nullable=True)
    start_at = Column(DateTime, nullable=True, index=True)
    recurrence = Column(JSON, nullable=True)
    recurring_event_id = Column(String, nullable=True)
    original_start_time = Column(JSON, nullable=True)
    attendees = Column(JSON, nullable=True)
    attachments = Column(JSON, nullable=True)
    status = Column(
        SqlEnum(
            EventStatus,
            values_callable=_enum_values,
            native_enum=False,
            validate_strings=True,
        ),
        default=EventStatus.CONFIRMED,
        nullable=False,
    )
    created_at = Column(DateTime, nullable=True)
    updated_at = Column(DateTime, nullable=True)

    has_conflict = Column(Boolean, default=False, nullable=False)
    conflict_kind = Column(
        SqlEnum(ConflictKind, values_callable=_enum_values, native_enum=False),
        nullable=True,
    )
    conflict_reason = Column(Text, nullable=True)
    local_version = Column(JSON, nullable=True)
    remote_version = Column(JSON, nullable=True)

    last_synced_at = Column(DateTime, nullable=True)
    pending_sync = Column(Boolean, default=False, nullable=False)
    deleted = Column(Boolean, default=False, nullable=False)
    sync_error = Column(Text, nullable=True)


class SyncMetadata(Base):
    """Incremental sync cursor and last outcome, one row per calendar."""

    __tablename__ = "sync_metadata"

    calendar_id = Column(String, primary_key=True)
    account_id = Column(String, ForeignKey("accounts.id"), nullable=False, index=True)
    sync_token = Column(String, nullable=True)
    last_sync_at = Column(DateTime, nullable=True)
    last_sync_status = Column(
        SqlEnum(SyncStatus, values_callable=_enum_values, native_enum=False),
        nullable=False,
        default=SyncStatus.SUCCESS,
    )
    error_message = Column(Text, nullable=True)


class PendingChange(Base):
    """Queued local mutation, replayed against the provider in FIFO order."""

    __tablename__ = "pending_changes"

    id = Column(String, primary_key=True)
    operation = Column(
        SqlEnum(ChangeOperation, values_callable=_enum_values, native_enum=False),
        nullable=False,
    )
    entity_type = Column(String, nullable=False, default="event")
    account_id = Column(String, nullable=False, index=True)
    calendar_id = Column(String, nullable=False, index=True)
    event_id = Column(String, nullable=True, index=True)
    event_data = Column(JSON, nullable=True)
    created_at = Column(DateTime, nullable=False, index=True)
    retry_count = Column(Integer, nullable=False, default=0)
    last_error = Column(Text, nullable=True)


class Tombstone(Base):
    """Marker of a local deletion awaiting remote confirmation."""

    __tablename__ = "tombstones"

    id = Column(String, primary_key=True)
    account_id = Column(String, nullable=False, index=True)
    calendar_id = Column(String, nullable=False, index=True)
    deleted_at = Column(DateTime, nullable=False, index=True)


class ErrorLog(Base):
    """Append-only diagnostic record for the troubleshooting view."""

    __tablename__ = "error_log"

    id = Column(String, primary_key=True)
    timestamp = Column(DateTime, nullable=False, default=utcnow, index=True)
    error_type = Column(
        SqlEnum(ErrorType, values_callable=_enum_values, native_enum=False),
        nullable=False,
        index=True,
    )
    account_id = Column(String, nullable=True, index=True)
    calendar_id = Column(String, nullable=True)
    error_message = Column(Text, nullable=False)
    error_details = Column(JSON, nullable=True)
