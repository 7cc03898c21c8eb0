"""
Message Store - encrypted messages with view-triggered self-destruct.

Each message is a single record shared by sender and receiver. The delete
clock starts only when the receiver first views it:

    delete_at = view_timestamp + auto_delete_timer

Every read filters on the persisted `delete_at`, so an elapsed message is
gone from listings even before the reaper tombstones it.
"""

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Optional
from uuid import UUID

from sqlalchemy import or_, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from lockblip.core.config import settings
from lockblip.core.ghost.errors import (
    DecryptionFailed,
    MessageNotFound,
    NotAParticipant,
    NotRecipient,
    SessionNotFound,
    ValidationFailure,
)
from lockblip.core.ghost.registry import ConversationSessionRegistry
from lockblip.core.ghost.vault import SessionKeyVault
from lockblip.core.models import GhostMessage, MessageType, utcnow

logger = logging.getLogger(__name__)

UNREADABLE_PLACEHOLDER = "[Unable to decrypt message]"
DELETED_PLACEHOLDER = "[Ghost message deleted]"


@dataclass
class MessageView:
    """Decrypted message as returned to a participant."""
    id: UUID
    session_id: str
    sender_id: str
    receiver_id: str
    content: Optional[str]
    message_type: MessageType
    media_url: Optional[str]
    viewed: bool
    view_timestamp: Optional[datetime]
    auto_delete_timer: int
    delete_at: Optional[datetime]
    timestamp: datetime


@dataclass
class ViewReceipt:
    view_timestamp: datetime
    delete_at: datetime
    auto_delete_timer: int
    first_view: bool


def visible_filter(now: datetime):
    """Messages not tombstoned, not past their delete clock or hard expiry."""
    return (
        GhostMessage.is_deleted == False,  # noqa: E712
        or_(GhostMessage.delete_at.is_(None), GhostMessage.delete_at > now),
        GhostMessage.expire_at > now,
    )


class MessageStore:
    """Send, list and view encrypted Ghost messages."""

    def __init__(self, db: AsyncSession, registry: Optional[ConversationSessionRegistry] = None):
        self.db = db
        self.registry = registry or ConversationSessionRegistry(db)

    async def send(
        self,
        session_id: str,
        sender: str,
        content: str,
        message_type: MessageType = MessageType.TEXT,
        media_url: Optional[str] = None,
        auto_delete_timer: Optional[int] = None,
    ) -> GhostMessage:
        """
        Encrypt and persist a message from `sender` to the other participant.

        Raises:
            SessionNotFound: session absent, inactive or expired
            NotAParticipant: sender is not in the session
        """
        session = await self.registry.get_active(session_id)
        if session is None:
            raise SessionNotFound()
        if sender not in session.participants:
            raise NotAParticipant()

        timer = auto_delete_timer or settings.MESSAGE_DEFAULT_AUTO_DELETE_SECONDS
        if not 1 <= timer <= settings.MESSAGE_MAX_AUTO_DELETE_SECONDS:
            raise ValidationFailure("Auto-delete timer out of range")

        now = utcnow()
        timestamp = await self._next_timestamp(session_id, now)

        message = GhostMessage(
            session_id=session_id,
            sender_id=sender,
            receiver_id=session.partner_of(sender),
            encrypted_payload=SessionKeyVault.encrypt(session.session_key, content),
            encrypted_media_url=SessionKeyVault.encrypt(session.session_key, media_url),
            message_type=message_type,
            viewed=False,
            auto_delete_timer=timer,
            delete_at=None,
            is_deleted=False,
            timestamp=timestamp,
            expire_at=now + timedelta(hours=settings.MESSAGE_TTL_HOURS),
        )
        self.db.add(message)
        session.last_activity = now
        await self.db.flush()
        return message

    async def _next_timestamp(self, session_id: str, now: datetime) -> datetime:
        """Keep timestamps strictly increasing within a session."""
        result = await self.db.execute(
            select(GhostMessage.timestamp)
            .where(GhostMessage.session_id == session_id)
            .order_by(GhostMessage.timestamp.desc())
            .limit(1)
        )
        latest = result.scalar_one_or_none()
        if latest is not None and latest >= now:
            return latest + timedelta(microseconds=1)
        return now

    async def list_for(self, session_id: str, requester: str) -> list[MessageView]:
        """
        All visible messages of the session, decrypted, oldest first.

        A message that fails to decrypt is returned with placeholder
        content instead of failing the whole listing.
        """
        session = await self.registry.get_active(session_id)
        if session is None:
            raise SessionNotFound()
        if requester not in session.participants:
            raise NotAParticipant()

        result = await self.db.execute(
            select(GhostMessage)
            .where(GhostMessage.session_id == session_id, *visible_filter(utcnow()))
            .order_by(GhostMessage.timestamp.asc())
        )

        views = []
        for message in result.scalars().all():
            try:
                content = SessionKeyVault.decrypt(session.session_key, message.encrypted_payload)
                media_url = SessionKeyVault.decrypt(
                    session.session_key, message.encrypted_media_url
                )
            except DecryptionFailed:
                logger.warning("Undecryptable ghost message %s", message.id)
                content, media_url = UNREADABLE_PLACEHOLDER, None

            views.append(MessageView(
                id=message.id,
                session_id=message.session_id,
                sender_id=message.sender_id,
                receiver_id=message.receiver_id,
                content=content,
                message_type=message.message_type,
                media_url=media_url,
                viewed=message.viewed,
                view_timestamp=message.view_timestamp,
                auto_delete_timer=message.auto_delete_timer,
                delete_at=message.delete_at,
                timestamp=message.timestamp,
            ))
        return views

    async def get_visible(self, message_id: UUID) -> Optional[GhostMessage]:
        result = await self.db.execute(
            select(GhostMessage).where(
                GhostMessage.id == message_id, *visible_filter(utcnow())
            )
        )
        return result.scalar_one_or_none()

    async def mark_viewed(self, message_id: UUID, viewer: str) -> ViewReceipt:
        """
        Start the message's self-destruct clock on the receiver's first view.

        Repeat calls return the original timestamps without writing.
        The sender's own view never starts the clock.

        Raises:
            MessageNotFound: absent, deleted or elapsed
            NotAParticipant: viewer is neither sender nor receiver
            NotRecipient: viewer is the sender of an unviewed message
        """
        message = await self.get_visible(message_id)
        if message is None:
            raise MessageNotFound()
        if viewer not in (message.sender_id, message.receiver_id):
            raise NotAParticipant()

        if message.viewed:
            return self._receipt(message, first_view=False)
        if viewer != message.receiver_id:
            raise NotRecipient()

        view_timestamp = utcnow()
        delete_at = view_timestamp + timedelta(seconds=message.auto_delete_timer)
        claimed = await self.db.execute(
            update(GhostMessage)
            .where(GhostMessage.id == message_id, GhostMessage.viewed == False)  # noqa: E712
            .values(viewed=True, view_timestamp=view_timestamp, delete_at=delete_at)
            .execution_options(synchronize_session=False)
        )
        await self.db.refresh(message)

        if claimed.rowcount != 1:
            # A concurrent view won; report its clock
            return self._receipt(message, first_view=False)

        logger.info("Ghost message %s viewed, deleting at %s", message_id, delete_at.isoformat())
        return self._receipt(message, first_view=True)

    @staticmethod
    def _receipt(message: GhostMessage, first_view: bool) -> ViewReceipt:
        return ViewReceipt(
            view_timestamp=message.view_timestamp,
            delete_at=message.delete_at,
            auto_delete_timer=message.auto_delete_timer,
            first_view=first_view,
        )
