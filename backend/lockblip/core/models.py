"""
LockBlip Ghost - Database Models
================================

SQLAlchemy models for the five Ghost Mode collections:

- GhostIdentity: per-user Ghost PIN and unlock token
- ConversationSession: one hidden two-party conversation
- AccessGrant: a user's path into a conversation (one-time PIN)
- GhostMessage: encrypted, self-destructing message
- AccessAuditEntry: append-only security event log
"""

import enum
from datetime import datetime, timezone
from typing import Any, Optional
from uuid import uuid4

from sqlalchemy import (
    JSON,
    Boolean,
    DateTime,
    Enum,
    Index,
    Integer,
    String,
    Text,
    func,
    text,
)
from sqlalchemy.dialects.postgresql import UUID
from sqlalchemy.orm import Mapped, mapped_column
from sqlalchemy.types import TypeDecorator

from lockblip.core.database import Base


# ==========================================================================
# Column Types
# ==========================================================================

class UTCDateTime(TypeDecorator):
    """Timezone-aware UTC datetime; SQLite hands back naive values."""

    impl = DateTime(timezone=True)
    cache_ok = True

    def process_bind_param(self, value, dialect):
        if value is not None and value.tzinfo is not None:
            value = value.astimezone(timezone.utc)
        return value

    def process_result_value(self, value, dialect):
        if value is not None and value.tzinfo is None:
            value = value.replace(tzinfo=timezone.utc)
        return value


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


# ==========================================================================
# Enums
# ==========================================================================

class DeviceType(str, enum.Enum):
    """Client device classes reported with access events."""
    MOBILE = "mobile"
    DESKTOP = "desktop"
    TABLET = "tablet"


class MessageType(str, enum.Enum):
    """Ghost message content kinds."""
    TEXT = "text"
    AUDIO = "audio"
    IMAGE = "image"
    VIDEO = "video"
    DOCUMENT = "document"


class AuditEventType(str, enum.Enum):
    """Closed set of security-relevant Ghost events."""
    SESSION_CREATED = "session_created"
    PIN_GENERATED = "pin_generated"
    PIN_SHARED = "pin_shared"
    ACCESS_REQUESTED = "access_requested"
    ACCESS_GRANTED = "access_granted"
    ACCESS_DENIED = "access_denied"
    SESSION_JOINED = "session_joined"
    SESSION_LEFT = "session_left"
    SESSION_EXPIRED = "session_expired"
    SESSION_TERMINATED = "session_terminated"
    SCREENSHOT_ATTEMPT = "screenshot_attempt"
    BLUR_ACTIVATED = "blur_activated"
    IDLE_LOCK = "idle_lock"
    REAUTH_REQUIRED = "reauth_required"
    REAUTH_SUCCESS = "reauth_success"
    REAUTH_FAILED = "reauth_failed"


# ==========================================================================
# Models
# ==========================================================================

class GhostIdentity(Base):
    """
    A user who has opted into Ghost Mode.

    The record is created on first PIN setup and never deleted by
    normal flows. Only digests of the unlock token and biometric token
    are stored.
    """

    __tablename__ = "ghost_identities"

    id: Mapped[UUID] = mapped_column(
        UUID(as_uuid=True),
        primary_key=True,
        default=uuid4,
    )
    username: Mapped[str] = mapped_column(
        String(255),
        unique=True,
        index=True,
        nullable=False,
    )
    pin_hash: Mapped[str] = mapped_column(
        String(255),
        nullable=False,
    )
    active_session_token: Mapped[Optional[str]] = mapped_column(
        String(64),
        nullable=True,
    )  # sha256 hex digest
    session_token_expiry: Mapped[Optional[datetime]] = mapped_column(
        UTCDateTime(),
        nullable=True,
    )
    biometric_enabled: Mapped[bool] = mapped_column(
        Boolean,
        default=False,
        nullable=False,
    )
    biometric_token: Mapped[Optional[str]] = mapped_column(
        String(64),
        nullable=True,
    )  # sha256 hex digest
    auto_lock_timeout: Mapped[int] = mapped_column(
        Integer,
        default=30,
        nullable=False,
    )  # seconds
    last_ghost_access: Mapped[Optional[datetime]] = mapped_column(
        UTCDateTime(),
        nullable=True,
    )
    created_at: Mapped[datetime] = mapped_column(
        UTCDateTime(),
        default=utcnow,
        server_default=func.now(),
        nullable=False,
    )
    updated_at: Mapped[datetime] = mapped_column(
        UTCDateTime(),
        default=utcnow,
        onupdate=utcnow,
        server_default=func.now(),
        nullable=False,
    )

    def __repr__(self) -> str:
        return f"<GhostIdentity {self.username}>"


class ConversationSession(Base):
    """
    Ephemeral hidden conversation between exactly two users.

    `participants` is stored sorted and `pair_key` is derived from it, so
    the same pair always resolves to the same open session.
    """

    __tablename__ = "ghost_sessions"
    __table_args__ = (
        Index(
            "uq_ghost_sessions_active_pair",
            "pair_key",
            unique=True,
            sqlite_where=text("is_active = 1"),
            postgresql_where=text("is_active"),
        ),
    )

    id: Mapped[UUID] = mapped_column(
        UUID(as_uuid=True),
        primary_key=True,
        default=uuid4,
    )
    session_id: Mapped[str] = mapped_column(
        String(64),
        unique=True,
        index=True,
        nullable=False,
    )
    participants: Mapped[list] = mapped_column(
        JSON,
        nullable=False,
    )
    pair_key: Mapped[str] = mapped_column(
        String(600),
        index=True,
        nullable=False,
    )
    session_key: Mapped[str] = mapped_column(
        String(128),
        nullable=False,
    )
    created_by: Mapped[str] = mapped_column(
        String(255),
        nullable=False,
    )
    is_active: Mapped[bool] = mapped_column(
        Boolean,
        default=True,
        nullable=False,
    )
    last_activity: Mapped[datetime] = mapped_column(
        UTCDateTime(),
        default=utcnow,
        nullable=False,
    )
    expire_at: Mapped[datetime] = mapped_column(
        UTCDateTime(),
        index=True,
        nullable=False,
    )
    terminated_at: Mapped[Optional[datetime]] = mapped_column(
        UTCDateTime(),
        nullable=True,
    )
    terminated_by: Mapped[Optional[str]] = mapped_column(
        String(255),
        nullable=True,
    )
    created_at: Mapped[datetime] = mapped_column(
        UTCDateTime(),
        default=utcnow,
        nullable=False,
    )

    def partner_of(self, username: str) -> Optional[str]:
        """Return the other participant, or None if username is not one."""
        if username not in self.participants:
            return None
        others = [p for p in self.participants if p != username]
        return others[0] if others else username

    def is_expired(self, now: Optional[datetime] = None) -> bool:
        return self.expire_at <= (now or utcnow())

    def __repr__(self) -> str:
        return f"<ConversationSession {self.session_id} active={self.is_active}>"


class AccessGrant(Base):
    """
    A directed invitation: `user_id`'s path into `session_id`.

    The inviter's own record is created already granted; the partner's
    record becomes granted only by presenting the one-time PIN.
    """

    __tablename__ = "ghost_access_grants"
    __table_args__ = (
        Index("ix_ghost_grants_redeem", "user_id", "access_granted", "expire_at"),
        Index("ix_ghost_grants_session_user", "session_id", "user_id"),
    )

    id: Mapped[UUID] = mapped_column(
        UUID(as_uuid=True),
        primary_key=True,
        default=uuid4,
    )
    session_id: Mapped[str] = mapped_column(
        String(64),
        index=True,
        nullable=False,
    )
    user_id: Mapped[str] = mapped_column(
        String(255),
        nullable=False,
    )
    partner_id: Mapped[str] = mapped_column(
        String(255),
        nullable=False,
    )
    granted_by: Mapped[str] = mapped_column(
        String(255),
        nullable=False,
    )
    pin_hash: Mapped[str] = mapped_column(
        String(255),
        nullable=False,
    )
    device_type: Mapped[DeviceType] = mapped_column(
        Enum(DeviceType),
        default=DeviceType.DESKTOP,
        nullable=False,
    )
    access_granted: Mapped[bool] = mapped_column(
        Boolean,
        default=False,
        nullable=False,
    )
    access_granted_at: Mapped[Optional[datetime]] = mapped_column(
        UTCDateTime(),
        nullable=True,
    )
    last_activity: Mapped[datetime] = mapped_column(
        UTCDateTime(),
        default=utcnow,
        nullable=False,
    )
    expire_at: Mapped[datetime] = mapped_column(
        UTCDateTime(),
        index=True,
        nullable=False,
    )
    created_at: Mapped[datetime] = mapped_column(
        UTCDateTime(),
        default=utcnow,
        nullable=False,
    )

    def __repr__(self) -> str:
        return f"<AccessGrant {self.user_id}->{self.session_id} granted={self.access_granted}>"


class GhostMessage(Base):
    """
    Encrypted message in a conversation.

    A single shared record serves both parties. `delete_at` stays null
    until the receiver's first view and is immutable once set.
    """

    __tablename__ = "ghost_messages"
    __table_args__ = (
        Index("ix_ghost_messages_session_ts", "session_id", "timestamp"),
    )

    id: Mapped[UUID] = mapped_column(
        UUID(as_uuid=True),
        primary_key=True,
        default=uuid4,
    )
    session_id: Mapped[str] = mapped_column(
        String(64),
        index=True,
        nullable=False,
    )
    sender_id: Mapped[str] = mapped_column(
        String(255),
        nullable=False,
    )
    receiver_id: Mapped[str] = mapped_column(
        String(255),
        nullable=False,
    )
    encrypted_payload: Mapped[str] = mapped_column(
        Text,
        nullable=False,
    )
    encrypted_media_url: Mapped[Optional[str]] = mapped_column(
        Text,
        nullable=True,
    )
    message_type: Mapped[MessageType] = mapped_column(
        Enum(MessageType),
        default=MessageType.TEXT,
        nullable=False,
    )
    viewed: Mapped[bool] = mapped_column(
        Boolean,
        default=False,
        nullable=False,
    )
    view_timestamp: Mapped[Optional[datetime]] = mapped_column(
        UTCDateTime(),
        nullable=True,
    )
    auto_delete_timer: Mapped[int] = mapped_column(
        Integer,
        default=30,
        nullable=False,
    )  # seconds
    delete_at: Mapped[Optional[datetime]] = mapped_column(
        UTCDateTime(),
        index=True,
        nullable=True,
    )
    is_deleted: Mapped[bool] = mapped_column(
        Boolean,
        default=False,
        nullable=False,
    )
    timestamp: Mapped[datetime] = mapped_column(
        UTCDateTime(),
        default=utcnow,
        nullable=False,
    )
    expire_at: Mapped[datetime] = mapped_column(
        UTCDateTime(),
        index=True,
        nullable=False,
    )

    def __repr__(self) -> str:
        return f"<GhostMessage {self.id} viewed={self.viewed}>"


class AccessAuditEntry(Base):
    """Append-only security event. Never mutated by application logic."""

    __tablename__ = "ghost_access_logs"
    __table_args__ = (
        Index("ix_ghost_logs_session_ts", "session_id", "timestamp"),
        Index("ix_ghost_logs_user_ts", "user_id", "timestamp"),
    )

    id: Mapped[UUID] = mapped_column(
        UUID(as_uuid=True),
        primary_key=True,
        default=uuid4,
    )
    session_id: Mapped[Optional[str]] = mapped_column(
        String(64),
        nullable=True,
    )
    user_id: Mapped[str] = mapped_column(
        String(255),
        nullable=False,
    )
    event_type: Mapped[AuditEventType] = mapped_column(
        Enum(AuditEventType),
        index=True,
        nullable=False,
    )
    device_type: Mapped[DeviceType] = mapped_column(
        Enum(DeviceType),
        default=DeviceType.DESKTOP,
        nullable=False,
    )
    ip_address: Mapped[Optional[str]] = mapped_column(
        String(64),
        nullable=True,
    )
    user_agent: Mapped[Optional[str]] = mapped_column(
        String(512),
        nullable=True,
    )
    event_metadata: Mapped[dict[str, Any]] = mapped_column(
        "metadata",
        JSON,
        default=dict,
        nullable=False,
    )
    timestamp: Mapped[datetime] = mapped_column(
        UTCDateTime(),
        default=utcnow,
        index=True,
        nullable=False,
    )

    def __repr__(self) -> str:
        return f"<AccessAuditEntry {self.event_type.value} {self.user_id}>"
