"""
Conversation Session Registry - the canonical hidden conversation.

At most one active session exists per unordered participant pair. Every
read re-checks `expire_at`, so an expired session is reported as absent
even while its active flag is still set.
"""

import json
import logging
import secrets
from datetime import timedelta
from typing import Optional

from sqlalchemy import delete, select
from sqlalchemy.ext.asyncio import AsyncSession

from lockblip.core.config import settings
from lockblip.core.ghost.errors import NotAParticipant, NotFound
from lockblip.core.ghost.vault import SessionKeyVault
from lockblip.core.models import AccessGrant, ConversationSession, GhostMessage, utcnow

logger = logging.getLogger(__name__)


def canonical_pair(user_a: str, user_b: str) -> list[str]:
    return sorted([user_a, user_b])


def pair_key(user_a: str, user_b: str) -> str:
    return json.dumps(canonical_pair(user_a, user_b))


async def purge_session_dependents(db: AsyncSession, session_id: str) -> tuple[int, int]:
    """Delete every grant and message of a session. Returns (grants, messages)."""
    messages = await db.execute(
        delete(GhostMessage).where(GhostMessage.session_id == session_id)
    )
    grants = await db.execute(
        delete(AccessGrant).where(AccessGrant.session_id == session_id)
    )
    return grants.rowcount or 0, messages.rowcount or 0


class ConversationSessionRegistry:
    """Open, reuse, touch and terminate two-party conversations."""

    def __init__(self, db: AsyncSession):
        self.db = db

    @property
    def session_ttl(self) -> timedelta:
        return timedelta(hours=settings.CONVERSATION_TTL_HOURS)

    async def find_active_for_pair(
        self, user_a: str, user_b: str
    ) -> Optional[ConversationSession]:
        result = await self.db.execute(
            select(ConversationSession).where(
                ConversationSession.pair_key == pair_key(user_a, user_b),
                ConversationSession.is_active == True,  # noqa: E712
            )
        )
        session = result.scalar_one_or_none()
        if session is not None and session.is_expired():
            await self._close_expired(session)
            return None
        return session

    async def get_active(self, session_id: str) -> Optional[ConversationSession]:
        """Return the session if it is active and unexpired, else None."""
        result = await self.db.execute(
            select(ConversationSession).where(
                ConversationSession.session_id == session_id,
                ConversationSession.is_active == True,  # noqa: E712
            )
        )
        session = result.scalar_one_or_none()
        if session is None or session.is_expired():
            return None
        return session

    async def open_or_reuse(
        self, user_a: str, user_b: str
    ) -> tuple[ConversationSession, bool]:
        """
        Return the pair's open session, creating one if needed.

        Returns:
            (session, created)
        """
        existing = await self.find_active_for_pair(user_a, user_b)
        if existing is not None:
            return existing, False

        now = utcnow()
        session = ConversationSession(
            session_id=secrets.token_hex(16),
            participants=canonical_pair(user_a, user_b),
            pair_key=pair_key(user_a, user_b),
            session_key=SessionKeyVault.generate_key(),
            created_by=user_a,
            is_active=True,
            last_activity=now,
            expire_at=now + self.session_ttl,
            created_at=now,
        )
        # A concurrent activation of the same pair fails here on the
        # active-pair unique index and the request is rolled back.
        self.db.add(session)
        await self.db.flush()

        logger.info("Ghost session %s opened", session.session_id)
        return session, True

    async def touch(self, session_id: str) -> None:
        session = await self.get_active(session_id)
        if session is not None:
            session.last_activity = utcnow()
            await self.db.flush()

    async def list_for(self, username: str) -> list[ConversationSession]:
        """Active, unexpired sessions the user participates in."""
        result = await self.db.execute(
            select(ConversationSession)
            .where(
                ConversationSession.is_active == True,  # noqa: E712
                ConversationSession.expire_at > utcnow(),
            )
            .order_by(ConversationSession.last_activity.desc())
        )
        return [s for s in result.scalars().all() if username in s.participants]

    async def terminate(self, session_id: str, requesting_user: str) -> ConversationSession:
        """
        Close a session and purge its grants and messages.

        Dependents are deleted before the active flag flips; the caller
        commits everything as one unit.

        Raises:
            NotFound: session absent, inactive or expired
            NotAParticipant: requester is not in the session
        """
        session = await self.get_active(session_id)
        if session is None:
            raise NotFound()
        if requesting_user not in session.participants:
            raise NotAParticipant()

        grants, messages = await purge_session_dependents(self.db, session_id)

        session.is_active = False
        session.terminated_at = utcnow()
        session.terminated_by = requesting_user
        await self.db.flush()

        logger.info(
            "Ghost session %s terminated: %d grants, %d messages purged",
            session_id, grants, messages,
        )
        return session

    async def _close_expired(self, session: ConversationSession) -> None:
        await purge_session_dependents(self.db, session.session_id)
        session.is_active = False
        session.terminated_at = utcnow()
        await self.db.flush()
