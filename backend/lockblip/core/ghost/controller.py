"""
Ghost Controller - orchestration over the Ghost Mode stores.

Composes the credential store, session registry, grant ledger, message
store and audit log behind one operation per API route. It is the only
layer that commits transactions, records audit events and pushes
real-time events.
"""

import logging
from dataclasses import dataclass
from typing import Any, Optional
from uuid import UUID

from sqlalchemy.ext.asyncio import AsyncSession

from lockblip.core.ghost.audit import AccessAuditLog
from lockblip.core.ghost.channels import GhostChannelHub, GhostEvent
from lockblip.core.ghost.credentials import PinCredentialStore, UnlockResult
from lockblip.core.ghost.errors import (
    DisclaimerRequired,
    GhostLocked,
    InvalidCredential,
    InvalidOrExpiredPin,
    NoAccess,
    NotAParticipant,
    SessionNotFound,
    ValidationFailure,
)
from lockblip.core.ghost.grants import AccessGrantLedger, Invitation, SessionAccess
from lockblip.core.ghost.messages import MessageStore, MessageView, ViewReceipt
from lockblip.core.ghost.registry import ConversationSessionRegistry
from lockblip.core.models import (
    AccessAuditEntry,
    AuditEventType,
    ConversationSession,
    DeviceType,
    GhostMessage,
    MessageType,
)

logger = logging.getLogger(__name__)

# Client-reported events that are mirrored to the partner in real time
SECURITY_BROADCAST_EVENTS = frozenset({
    AuditEventType.SCREENSHOT_ATTEMPT,
    AuditEventType.BLUR_ACTIVATED,
    AuditEventType.IDLE_LOCK,
    AuditEventType.REAUTH_REQUIRED,
})


@dataclass
class ClientInfo:
    """Where a request came from, for audit entries."""
    ip_address: Optional[str] = None
    user_agent: Optional[str] = None


class GhostController:
    """Request-scoped orchestration of every Ghost Mode operation."""

    def __init__(
        self,
        db: AsyncSession,
        audit_log: AccessAuditLog,
        hub: GhostChannelHub,
        client: Optional[ClientInfo] = None,
    ):
        self.db = db
        self.audit_log = audit_log
        self.hub = hub
        self.client = client or ClientInfo()

        self.credentials = PinCredentialStore(db)
        self.registry = ConversationSessionRegistry(db)
        self.grants = AccessGrantLedger(db, self.registry)
        self.messages = MessageStore(db, self.registry)

    def _audit(
        self,
        session_id: Optional[str],
        user: str,
        event_type: AuditEventType,
        device_type: DeviceType = DeviceType.DESKTOP,
        metadata: Optional[dict[str, Any]] = None,
    ) -> None:
        self.audit_log.record(
            session_id,
            user,
            event_type,
            device_type=device_type,
            metadata=metadata,
            ip_address=self.client.ip_address,
            user_agent=self.client.user_agent,
        )

    async def _require_unlocked(self, username: str, ghost_token: Optional[str]) -> None:
        if not await self.credentials.verify(username, ghost_token):
            raise GhostLocked()

    async def _require_access(self, session_id: str, username: str) -> SessionAccess:
        """
        Resolve the session before checking the grant, so a terminated
        session reads as not found rather than forbidden.
        """
        session = await self.registry.get_active(session_id)
        if session is None:
            raise SessionNotFound()
        if username not in session.participants:
            raise NotAParticipant()
        return await self.grants.validate(session_id, username)

    # ==========================================================================
    # Ghost identity
    # ==========================================================================

    async def status(self, username: str) -> dict:
        return await self.credentials.status(username)

    async def setup(self, username: str, pin: str) -> None:
        await self.credentials.setup(username, pin)
        await self.db.commit()

    async def unlock(
        self,
        username: str,
        pin: Optional[str],
        biometric_token: Optional[str],
    ) -> UnlockResult:
        result = await self.credentials.unlock(username, pin, biometric_token)
        await self.db.commit()
        return result

    async def heartbeat(self, username: str, ghost_token: Optional[str]):
        expires_at = await self.credentials.heartbeat(username, ghost_token)
        await self.db.commit()
        return expires_at

    async def lock(self, username: str) -> None:
        await self.credentials.lock(username)
        await self.db.commit()

    async def update_settings(self, username: str, ghost_token: Optional[str], **changes) -> dict:
        await self._require_unlocked(username, ghost_token)
        await self.credentials.update_settings(username, ghost_token, **changes)
        await self.db.commit()
        return await self.credentials.status(username)

    async def list_sessions(
        self, username: str, ghost_token: Optional[str]
    ) -> list[ConversationSession]:
        await self._require_unlocked(username, ghost_token)
        return await self.registry.list_for(username)

    # ==========================================================================
    # Activation & joining
    # ==========================================================================

    async def activate(
        self,
        username: str,
        ghost_token: Optional[str],
        partner_id: str,
        device_type: DeviceType,
        disclaimer_agreed: bool,
    ) -> Invitation:
        """
        Open (or reuse) the hidden conversation with `partner_id` and
        issue a fresh one-time PIN for the partner.
        """
        await self._require_unlocked(username, ghost_token)
        if partner_id == username:
            raise ValidationFailure("Cannot start a ghost chat with yourself")

        session = await self.registry.find_active_for_pair(username, partner_id)
        session_created = False
        if session is None:
            if not disclaimer_agreed:
                raise DisclaimerRequired()
            session, session_created = await self.registry.open_or_reuse(username, partner_id)

        invitation = await self.grants.invite(
            username,
            partner_id,
            device_type,
            session=session,
            session_created=session_created,
        )
        await self.db.commit()

        session_id = session.session_id
        if session_created:
            self._audit(session_id, username, AuditEventType.SESSION_CREATED, device_type,
                        {"partnerId": partner_id})
        self._audit(session_id, username, AuditEventType.PIN_GENERATED, device_type,
                    {"partnerId": partner_id, "pinExpiresAt": invitation.pin_expires_at.isoformat()})
        return invitation

    async def join(self, username: str, pin: str, device_type: DeviceType) -> SessionAccess:
        try:
            access = await self.grants.redeem(username, pin, device_type)
        except InvalidOrExpiredPin:
            self._audit(None, username, AuditEventType.ACCESS_DENIED, device_type,
                        {"reason": "invalid_or_expired_pin"})
            raise
        await self.db.commit()

        session_id = access.session.session_id
        self._audit(session_id, username, AuditEventType.ACCESS_GRANTED, device_type,
                    {"partnerId": access.partner_id})
        self._audit(session_id, username, AuditEventType.SESSION_JOINED, device_type)
        await self.hub.emit(session_id, GhostEvent.PARTNER_JOINED, {
            "sessionId": session_id,
            "userId": username,
        }, exclude_user=username)
        return access

    async def direct_enter(
        self,
        username: str,
        ghost_token: Optional[str],
        partner_id: str,
        device_type: DeviceType,
    ) -> SessionAccess:
        await self._require_unlocked(username, ghost_token)
        try:
            access = await self.grants.direct_enter(username, partner_id)
        except NoAccess:
            self._audit(None, username, AuditEventType.ACCESS_DENIED, device_type,
                        {"reason": "direct_enter_without_grant", "partnerId": partner_id})
            raise
        await self.db.commit()
        self._audit(access.session.session_id, username, AuditEventType.SESSION_JOINED,
                    device_type, {"direct": True})
        return access

    async def pair_status(self, username: str, partner_id: str) -> dict:
        return await self.grants.status_for_pair(username, partner_id)

    async def validate_access(self, username: str, session_id: str) -> Optional[SessionAccess]:
        """The user's live access, or None; never raises for missing access."""
        try:
            access = await self.grants.validate(session_id, username)
        except NoAccess:
            return None
        await self.db.commit()
        return access

    async def reauth(
        self,
        username: str,
        session_id: str,
        pin: str,
        device_type: DeviceType,
    ):
        try:
            grant = await self.grants.reauthenticate(session_id, username, pin, device_type)
        except InvalidCredential:
            self._audit(session_id, username, AuditEventType.REAUTH_FAILED, device_type)
            raise
        await self.db.commit()
        self._audit(session_id, username, AuditEventType.REAUTH_SUCCESS, device_type)
        return grant.expire_at

    # ==========================================================================
    # Messages
    # ==========================================================================

    async def send_message(
        self,
        username: str,
        session_id: str,
        content: str,
        message_type: MessageType,
        media_url: Optional[str],
        auto_delete_timer: Optional[int],
    ) -> GhostMessage:
        await self._require_access(session_id, username)
        message = await self.messages.send(
            session_id, username, content, message_type, media_url, auto_delete_timer,
        )
        await self.db.commit()

        await self.hub.emit(session_id, GhostEvent.RECEIVE_MESSAGE, {
            "id": str(message.id),
            "sessionId": session_id,
            "senderId": message.sender_id,
            "receiverId": message.receiver_id,
            "messageType": message.message_type.value,
            "timestamp": message.timestamp.isoformat(),
            "autoDeleteTimer": message.auto_delete_timer,
        }, exclude_user=username)
        return message

    async def list_messages(self, username: str, session_id: str) -> list[MessageView]:
        await self._require_access(session_id, username)
        views = await self.messages.list_for(session_id, username)
        await self.db.commit()
        return views

    async def view_message(self, username: str, message_id: UUID) -> ViewReceipt:
        message = await self.messages.get_visible(message_id)
        if message is not None:
            await self.grants.validate(message.session_id, username)
        receipt = await self.messages.mark_viewed(message_id, username)
        await self.db.commit()

        if receipt.first_view:
            await self.hub.emit(message.session_id, GhostEvent.MESSAGE_VIEW_STARTED, {
                "messageId": str(message_id),
                "sessionId": message.session_id,
                "viewTimestamp": receipt.view_timestamp.isoformat(),
                "deleteAt": receipt.delete_at.isoformat(),
                "autoDeleteTimer": receipt.auto_delete_timer,
            })
        return receipt

    # ==========================================================================
    # Audit & termination
    # ==========================================================================

    async def log_event(
        self,
        username: str,
        session_id: str,
        event_type: str,
        device_type: str,
        metadata: Optional[dict[str, Any]] = None,
    ) -> None:
        """
        Record a client-reported security event.

        Unknown kinds and events from users without a live grant on the
        session are dropped.
        """
        try:
            kind = AuditEventType(event_type)
        except ValueError:
            logger.warning("Dropped ghost security event %r from %s", event_type, username)
            return
        try:
            device = DeviceType(device_type)
        except ValueError:
            device = DeviceType.DESKTOP
        if await self.grants.live_grant(session_id, username) is None:
            logger.warning("Dropped ghost security event from %s without access", username)
            return

        self._audit(session_id, username, kind, device, metadata)
        if kind in SECURITY_BROADCAST_EVENTS:
            await self.hub.emit(session_id, GhostEvent.SECURITY_EVENT, {
                "sessionId": session_id,
                "userId": username,
                "eventType": kind.value,
            }, exclude_user=username)

    async def access_logs(self, username: str, session_id: str) -> list[AccessAuditEntry]:
        await self.grants.validate(session_id, username)
        await self.db.commit()
        return await AccessAuditLog.query(self.db, session_id)

    async def terminate(
        self, username: str, session_id: str, device_type: DeviceType
    ) -> ConversationSession:
        session = await self.registry.get_active(session_id)
        partner_id = session.partner_of(username) if session is not None else None
        if session is not None and partner_id is not None:
            # Recorded before the purge so the teardown is attributable
            self._audit(session_id, username, AuditEventType.SESSION_TERMINATED, device_type,
                        {"partnerId": partner_id})

        session = await self.registry.terminate(session_id, username)
        await self.db.commit()

        await self.hub.emit(session_id, GhostEvent.SESSION_TERMINATED, {
            "sessionId": session_id,
            "terminatedBy": username,
            "reason": "terminated",
        })
        await self.hub.close_channel(session_id)
        return session
