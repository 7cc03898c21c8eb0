"""
LockBlip Ghost - Pydantic Schemas
=================================

Request and response schemas for the Ghost Mode API.
Fields are exposed in camelCase on the wire and accept snake_case too.
"""

from datetime import datetime
from typing import Any, Optional
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

from lockblip.core.models import AuditEventType, DeviceType, MessageType


# ==========================================================================
# Base Schemas
# ==========================================================================

class BaseSchema(BaseModel):
    """Base schema with common configuration."""

    model_config = ConfigDict(
        from_attributes=True,
        populate_by_name=True,
        str_strip_whitespace=True,
        alias_generator=to_camel,
    )


# ==========================================================================
# Ghost Identity
# ==========================================================================

class GhostStatusResponse(BaseSchema):
    is_set_up: bool
    biometric_enabled: bool
    auto_lock_timeout: int


class SetupRequest(BaseSchema):
    # Format (4-8 digits) is enforced by the credential store
    pin: str = Field(max_length=64)


class UnlockRequest(BaseSchema):
    pin: Optional[str] = Field(None, max_length=64)
    biometric_token: Optional[str] = Field(None, max_length=512)


class UnlockResponse(BaseSchema):
    success: bool = True
    session_token: str
    expires_at: datetime
    auto_lock_timeout: int


class HeartbeatRequest(BaseSchema):
    session_token: Optional[str] = None


class HeartbeatResponse(BaseSchema):
    success: bool = True
    expires_at: datetime


class SettingsUpdate(BaseSchema):
    auto_lock_timeout: Optional[int] = None
    biometric_enabled: Optional[bool] = None
    biometric_token: Optional[str] = Field(None, max_length=512)
    new_pin: Optional[str] = Field(None, max_length=64)


# ==========================================================================
# Sessions & Access
# ==========================================================================

class ActivateRequest(BaseSchema):
    partner_id: str = Field(min_length=1, max_length=255)
    device_type: DeviceType = DeviceType.DESKTOP
    disclaimer_agreed: bool = False


class ActivateResponse(BaseSchema):
    success: bool = True
    session_id: str
    pin: str
    partner_id: str
    expire_at: datetime
    pin_expires_at: datetime


class JoinRequest(BaseSchema):
    pin: str = Field(max_length=64)
    device_type: DeviceType = DeviceType.DESKTOP


class SessionAccessResponse(BaseSchema):
    """Returned by join and direct-enter; carries the session key."""
    success: bool = True
    session_id: str
    session_key: str
    partner_id: str
    participants: list[str]
    expire_at: datetime


class DirectEnterRequest(BaseSchema):
    partner_id: str = Field(min_length=1, max_length=255)
    device_type: DeviceType = DeviceType.DESKTOP


class SessionRequest(BaseSchema):
    session_id: str = Field(min_length=1, max_length=64)


class ValidateAccessResponse(BaseSchema):
    valid: bool
    session_id: Optional[str] = None
    session_key: Optional[str] = None
    partner_id: Optional[str] = None
    participants: Optional[list[str]] = None
    expire_at: Optional[datetime] = None


class ReauthRequest(BaseSchema):
    session_id: str = Field(min_length=1, max_length=64)
    pin: str = Field(max_length=64)
    device_type: DeviceType = DeviceType.DESKTOP


class ReauthResponse(BaseSchema):
    success: bool = True
    expire_at: datetime


class TerminateRequest(BaseSchema):
    session_id: str = Field(min_length=1, max_length=64)
    device_type: DeviceType = DeviceType.DESKTOP


class TerminateResponse(BaseSchema):
    success: bool = True
    session_id: str
    partner_id: Optional[str] = None


class SessionSummary(BaseSchema):
    session_id: str
    participants: list[str]
    partner_id: Optional[str] = None
    created_by: str
    last_activity: datetime
    expire_at: datetime


class SessionListResponse(BaseSchema):
    sessions: list[SessionSummary]


class PairStatusResponse(BaseSchema):
    has_active_session: bool
    has_access: bool
    session_id: Optional[str] = None
    expire_at: Optional[datetime] = None


# ==========================================================================
# Messages
# ==========================================================================

class SendMessageRequest(BaseSchema):
    session_id: str = Field(min_length=1, max_length=64)
    message: str = Field(max_length=20000)
    message_type: MessageType = MessageType.TEXT
    media_url: Optional[str] = Field(None, max_length=2000)
    auto_delete_timer: Optional[int] = Field(None, ge=1, le=86400)


class SentMessageResponse(BaseSchema):
    id: UUID
    session_id: str
    sender_id: str
    receiver_id: str
    message_type: MessageType
    timestamp: datetime
    auto_delete_timer: int


class MessageViewResponse(BaseSchema):
    id: UUID
    sender_id: str
    receiver_id: str
    content: Optional[str]
    message_type: MessageType
    media_url: Optional[str] = None
    viewed: bool
    view_timestamp: Optional[datetime] = None
    auto_delete_timer: int
    delete_at: Optional[datetime] = None
    timestamp: datetime


class MessageListResponse(BaseSchema):
    messages: list[MessageViewResponse]


class ViewReceiptResponse(BaseSchema):
    success: bool = True
    view_timestamp: datetime
    delete_at: datetime
    auto_delete_timer: int


# ==========================================================================
# Audit
# ==========================================================================

class LogEventRequest(BaseSchema):
    """Client-reported security event; unknown kinds are dropped, not rejected."""
    session_id: str = Field(min_length=1, max_length=64)
    event_type: str = Field(max_length=64)
    device_type: str = Field(DeviceType.DESKTOP.value, max_length=16)
    metadata: dict[str, Any] = Field(default_factory=dict)


class AuditEntryResponse(BaseSchema):
    id: UUID
    session_id: Optional[str] = None
    user_id: str
    event_type: AuditEventType
    device_type: DeviceType
    ip_address: Optional[str] = None
    user_agent: Optional[str] = None
    metadata: dict[str, Any] = Field(default_factory=dict)
    timestamp: datetime


class AuditLogResponse(BaseSchema):
    logs: list[AuditEntryResponse]


# ==========================================================================
# Common Response Schemas
# ==========================================================================

class SuccessResponse(BaseSchema):
    """Generic acknowledgement."""

    success: bool = True
    message: Optional[str] = None


class ErrorResponse(BaseSchema):
    """Error response schema."""

    error: str
    detail: Optional[str] = None
    code: Optional[str] = None


class HealthResponse(BaseSchema):
    """Health check response."""

    status: str
    version: str
    environment: str
    database: str
