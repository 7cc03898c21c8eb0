"""
LockBlip Ghost - Ghost Mode API
===============================

Hidden-chat endpoints: ghost unlock, PIN-gated session access,
self-destructing messages, the security audit trail and the real-time
WebSocket channel.

Every route needs the account bearer token. Routes acting on Ghost Mode
as a whole also need the ghost session token in the X-Ghost-Session
header; conversation routes are gated by the user's access grant.
"""

import logging
from typing import Annotated, Optional
from uuid import UUID

from fastapi import APIRouter, Depends, Query, WebSocket, WebSocketDisconnect, status

from lockblip.api.deps import (
    ChannelHub,
    Controller,
    CurrentUsername,
    GhostToken,
    username_from_token,
)
from lockblip.core.database import get_db_session
from lockblip.core.ghost.audit import SessionFactory
from lockblip.core.ghost.channels import ServerFrame, WSMessage
from lockblip.core.ghost.errors import NoAccess
from lockblip.core.ghost.grants import AccessGrantLedger, SessionAccess
from lockblip.core.schemas import (
    ActivateRequest,
    ActivateResponse,
    AuditEntryResponse,
    AuditLogResponse,
    DirectEnterRequest,
    GhostStatusResponse,
    HeartbeatRequest,
    HeartbeatResponse,
    JoinRequest,
    LogEventRequest,
    MessageListResponse,
    MessageViewResponse,
    PairStatusResponse,
    ReauthRequest,
    ReauthResponse,
    SendMessageRequest,
    SentMessageResponse,
    SessionAccessResponse,
    SessionListResponse,
    SessionRequest,
    SessionSummary,
    SettingsUpdate,
    SetupRequest,
    SuccessResponse,
    TerminateRequest,
    TerminateResponse,
    UnlockRequest,
    UnlockResponse,
    ValidateAccessResponse,
    ViewReceiptResponse,
)

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/ghost", tags=["Ghost Mode"])


# ==========================================================================
# Helper Functions
# ==========================================================================

def session_access_response(access: SessionAccess) -> SessionAccessResponse:
    return SessionAccessResponse(
        session_id=access.session.session_id,
        session_key=access.session_key,
        partner_id=access.partner_id,
        participants=access.session.participants,
        expire_at=access.session.expire_at,
    )


def get_session_factory() -> SessionFactory:
    """Database sessions for work outside a request (WebSocket frames)."""
    return get_db_session


# ==========================================================================
# Ghost Identity
# ==========================================================================

@router.get(
    "/status",
    response_model=GhostStatusResponse,
    summary="Ghost Mode setup status",
)
async def ghost_status(
    username: CurrentUsername,
    controller: Controller,
) -> GhostStatusResponse:
    return GhostStatusResponse(**await controller.status(username))


@router.post(
    "/setup",
    response_model=SuccessResponse,
    status_code=status.HTTP_201_CREATED,
    summary="Set the Ghost Mode PIN",
    responses={
        400: {"description": "PIN must be 4-8 digits"},
        409: {"description": "Ghost mode already set up"},
    },
)
async def setup(
    data: SetupRequest,
    username: CurrentUsername,
    controller: Controller,
) -> SuccessResponse:
    """
    Create the user's Ghost identity with a 4-8 digit PIN.

    Only the bcrypt hash of the PIN is stored.
    """
    await controller.setup(username, data.pin)
    return SuccessResponse(message="Ghost mode set up")


@router.post(
    "/unlock",
    response_model=UnlockResponse,
    summary="Unlock Ghost Mode",
    responses={
        401: {"description": "Invalid credentials"},
        404: {"description": "Ghost mode not set up"},
    },
)
async def unlock(
    data: UnlockRequest,
    username: CurrentUsername,
    controller: Controller,
) -> UnlockResponse:
    """
    Unlock with the PIN or an enrolled biometric token.

    Returns a fresh ghost session token; any previous token stops working.
    """
    result = await controller.unlock(username, data.pin, data.biometric_token)
    return UnlockResponse(
        session_token=result.session_token,
        expires_at=result.expires_at,
        auto_lock_timeout=result.auto_lock_timeout,
    )


@router.post(
    "/heartbeat",
    response_model=HeartbeatResponse,
    summary="Extend the ghost session",
)
async def heartbeat(
    username: CurrentUsername,
    controller: Controller,
    ghost_token: GhostToken,
    data: Optional[HeartbeatRequest] = None,
) -> HeartbeatResponse:
    token = (data.session_token if data else None) or ghost_token
    expires_at = await controller.heartbeat(username, token)
    return HeartbeatResponse(expires_at=expires_at)


@router.post(
    "/lock",
    response_model=SuccessResponse,
    summary="Lock Ghost Mode",
)
async def lock(
    username: CurrentUsername,
    controller: Controller,
) -> SuccessResponse:
    await controller.lock(username)
    return SuccessResponse(message="Ghost mode locked")


@router.put(
    "/settings",
    response_model=GhostStatusResponse,
    summary="Update Ghost Mode settings",
)
async def update_settings(
    data: SettingsUpdate,
    username: CurrentUsername,
    ghost_token: GhostToken,
    controller: Controller,
) -> GhostStatusResponse:
    """Change the auto-lock timeout, biometric unlock or the PIN itself."""
    updated = await controller.update_settings(
        username,
        ghost_token,
        auto_lock_timeout=data.auto_lock_timeout,
        biometric_enabled=data.biometric_enabled,
        biometric_token=data.biometric_token,
        new_pin=data.new_pin,
    )
    return GhostStatusResponse(**updated)


@router.get(
    "/sessions",
    response_model=SessionListResponse,
    summary="List active ghost sessions",
)
async def list_sessions(
    username: CurrentUsername,
    ghost_token: GhostToken,
    controller: Controller,
) -> SessionListResponse:
    sessions = await controller.list_sessions(username, ghost_token)
    return SessionListResponse(sessions=[
        SessionSummary(
            session_id=s.session_id,
            participants=s.participants,
            partner_id=s.partner_of(username),
            created_by=s.created_by,
            last_activity=s.last_activity,
            expire_at=s.expire_at,
        )
        for s in sessions
    ])


# ==========================================================================
# Activation & Access
# ==========================================================================

@router.post(
    "/activate",
    response_model=ActivateResponse,
    summary="Start a ghost chat and issue a one-time PIN",
    responses={
        400: {"description": "Disclaimer not agreed"},
        401: {"description": "Ghost mode is locked"},
    },
)
async def activate(
    data: ActivateRequest,
    username: CurrentUsername,
    ghost_token: GhostToken,
    controller: Controller,
) -> ActivateResponse:
    """
    Open (or reuse) the hidden conversation with a partner.

    The returned PIN is shown once and shared out of band; it is never
    stored in plaintext. Activating again invalidates the previous PIN.
    """
    invitation = await controller.activate(
        username,
        ghost_token,
        data.partner_id,
        data.device_type,
        data.disclaimer_agreed,
    )
    return ActivateResponse(
        session_id=invitation.session.session_id,
        pin=invitation.pin,
        partner_id=data.partner_id,
        expire_at=invitation.session.expire_at,
        pin_expires_at=invitation.pin_expires_at,
    )


@router.post(
    "/join",
    response_model=SessionAccessResponse,
    summary="Join a ghost chat with a PIN",
    responses={401: {"description": "Invalid or expired PIN"}},
)
async def join(
    data: JoinRequest,
    username: CurrentUsername,
    controller: Controller,
) -> SessionAccessResponse:
    access = await controller.join(username, data.pin, data.device_type)
    return session_access_response(access)


@router.post(
    "/direct-enter",
    response_model=SessionAccessResponse,
    summary="Re-enter a ghost chat without a PIN",
    responses={403: {"description": "No active access to this session"}},
)
async def direct_enter(
    data: DirectEnterRequest,
    username: CurrentUsername,
    ghost_token: GhostToken,
    controller: Controller,
) -> SessionAccessResponse:
    access = await controller.direct_enter(username, ghost_token, data.partner_id, data.device_type)
    return session_access_response(access)


@router.get(
    "/session-status/{partner_id}",
    response_model=PairStatusResponse,
    summary="Ghost session status with a partner",
)
async def session_status(
    partner_id: str,
    username: CurrentUsername,
    controller: Controller,
) -> PairStatusResponse:
    return PairStatusResponse(**await controller.pair_status(username, partner_id))


@router.post(
    "/validate-access",
    response_model=ValidateAccessResponse,
    response_model_exclude_none=True,
    summary="Check access to a ghost session",
)
async def validate_access(
    data: SessionRequest,
    username: CurrentUsername,
    controller: Controller,
) -> ValidateAccessResponse:
    access = await controller.validate_access(username, data.session_id)
    if access is None:
        return ValidateAccessResponse(valid=False)
    return ValidateAccessResponse(
        valid=True,
        session_id=access.session.session_id,
        session_key=access.session_key,
        partner_id=access.partner_id,
        participants=access.session.participants,
        expire_at=access.session.expire_at,
    )


@router.post(
    "/reauth",
    response_model=ReauthResponse,
    summary="Re-enter the session PIN",
    responses={
        401: {"description": "Invalid credentials"},
        404: {"description": "Session has been terminated or does not exist"},
    },
)
async def reauth(
    data: ReauthRequest,
    username: CurrentUsername,
    controller: Controller,
) -> ReauthResponse:
    expire_at = await controller.reauth(username, data.session_id, data.pin, data.device_type)
    return ReauthResponse(expire_at=expire_at)


# ==========================================================================
# Messages
# ==========================================================================

@router.post(
    "/messages",
    response_model=SentMessageResponse,
    status_code=status.HTTP_201_CREATED,
    summary="Send a ghost message",
    responses={
        403: {"description": "Not a participant or no active access"},
        404: {"description": "Session has been terminated or does not exist"},
    },
)
async def send_message(
    data: SendMessageRequest,
    username: CurrentUsername,
    controller: Controller,
) -> SentMessageResponse:
    message = await controller.send_message(
        username,
        data.session_id,
        data.message,
        data.message_type,
        data.media_url,
        data.auto_delete_timer,
    )
    return SentMessageResponse.model_validate(message)


@router.get(
    "/messages/{session_id}",
    response_model=MessageListResponse,
    summary="List ghost messages",
    responses={
        403: {"description": "Not a participant or no active access"},
        404: {"description": "Session has been terminated or does not exist"},
    },
)
async def list_messages(
    session_id: str,
    username: CurrentUsername,
    controller: Controller,
) -> MessageListResponse:
    """Visible messages of the session, decrypted, oldest first."""
    views = await controller.list_messages(username, session_id)
    return MessageListResponse(
        messages=[MessageViewResponse.model_validate(view) for view in views]
    )


@router.post(
    "/messages/{message_id}/view",
    response_model=ViewReceiptResponse,
    summary="Mark a ghost message viewed",
    responses={
        403: {"description": "Only the recipient starts the timer"},
        404: {"description": "Message not found"},
    },
)
async def view_message(
    message_id: UUID,
    username: CurrentUsername,
    controller: Controller,
) -> ViewReceiptResponse:
    """
    Start the self-destruct timer on the recipient's first view.

    Repeat calls return the original view and delete timestamps.
    """
    receipt = await controller.view_message(username, message_id)
    return ViewReceiptResponse(
        view_timestamp=receipt.view_timestamp,
        delete_at=receipt.delete_at,
        auto_delete_timer=receipt.auto_delete_timer,
    )


# ==========================================================================
# Audit & Termination
# ==========================================================================

@router.post(
    "/log-event",
    response_model=SuccessResponse,
    summary="Report a client security event",
)
async def log_event(
    data: LogEventRequest,
    username: CurrentUsername,
    controller: Controller,
) -> SuccessResponse:
    """Best effort; always succeeds for an authenticated caller."""
    await controller.log_event(
        username,
        data.session_id,
        data.event_type,
        data.device_type,
        data.metadata,
    )
    return SuccessResponse()


@router.get(
    "/access-logs/{session_id}",
    response_model=AuditLogResponse,
    summary="Security events of a ghost session",
    responses={403: {"description": "No active access to this session"}},
)
async def access_logs(
    session_id: str,
    username: CurrentUsername,
    controller: Controller,
) -> AuditLogResponse:
    entries = await controller.access_logs(username, session_id)
    return AuditLogResponse(logs=[
        AuditEntryResponse(
            id=entry.id,
            session_id=entry.session_id,
            user_id=entry.user_id,
            event_type=entry.event_type,
            device_type=entry.device_type,
            ip_address=entry.ip_address,
            user_agent=entry.user_agent,
            metadata=entry.event_metadata or {},
            timestamp=entry.timestamp,
        )
        for entry in entries
    ])


@router.post(
    "/terminate",
    response_model=TerminateResponse,
    summary="End a ghost chat for both participants",
    responses={
        403: {"description": "Not a participant"},
        404: {"description": "Session has been terminated or does not exist"},
    },
)
async def terminate(
    data: TerminateRequest,
    username: CurrentUsername,
    controller: Controller,
) -> TerminateResponse:
    """
    Terminate the session, deleting its grants and messages.

    The partner is notified over the WebSocket channel.
    """
    session = await controller.terminate(username, data.session_id, data.device_type)
    return TerminateResponse(
        session_id=session.session_id,
        partner_id=session.partner_of(username),
    )


# ==========================================================================
# WebSocket
# ==========================================================================

@router.websocket("/ws")
async def ghost_websocket(
    websocket: WebSocket,
    hub: ChannelHub,
    session_factory: Annotated[SessionFactory, Depends(get_session_factory)],
    token: Optional[str] = Query(None),
):
    """
    Real-time ghost events.

    Authenticate with `?token=<access token>`, then send
    `{"type": "join", "payload": {"sessionId": ...}}` for each session the
    user holds a live grant for.
    """
    username = username_from_token(token)
    if username is None:
        await websocket.close(code=status.WS_1008_POLICY_VIOLATION)
        return

    async def authorize_join(user: str, session_id: str) -> bool:
        async with session_factory() as db:
            try:
                await AccessGrantLedger(db).validate(session_id, user)
            except NoAccess:
                return False
        return True

    client_id = await hub.connect(websocket, username)
    try:
        while True:
            data = await websocket.receive_text()
            try:
                message = WSMessage.from_json(data)
            except ValueError:
                await hub._send_to_client(client_id, WSMessage(
                    type=ServerFrame.ERROR.value,
                    payload={"error": "Invalid JSON"},
                ))
                continue
            await hub.handle_message(client_id, message, authorize_join)
    except WebSocketDisconnect:
        await hub.disconnect(client_id)
    except Exception as e:
        logger.error(f"Ghost WebSocket error for {client_id}: {e}")
        await hub.disconnect(client_id)
