"""
Access Grant Ledger - one-time PIN invitations into a conversation.

Each activation issues a fresh 6-digit PIN. The inviter's own grant is
created already granted; the partner's grant is redeemed by presenting
the PIN. Only the bcrypt hash of the PIN is ever stored.
"""

import logging
import secrets
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Optional

from sqlalchemy import and_, delete, or_, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from lockblip.core.config import settings
from lockblip.core.ghost.credentials import hash_pin, verify_pin
from lockblip.core.ghost.errors import (
    InvalidCredential,
    InvalidOrExpiredPin,
    NoAccess,
    NotFound,
)
from lockblip.core.ghost.registry import ConversationSessionRegistry
from lockblip.core.models import AccessGrant, ConversationSession, DeviceType, utcnow

logger = logging.getLogger(__name__)


def generate_access_pin() -> str:
    """Random numeric PIN with no leading zero (100000-999999 for 6 digits)."""
    length = settings.ACCESS_PIN_LENGTH
    low = 10 ** (length - 1)
    return str(low + secrets.randbelow(9 * low))


@dataclass
class Invitation:
    session: ConversationSession
    pin: str
    pin_expires_at: datetime
    session_created: bool


@dataclass
class SessionAccess:
    """What a granted user learns about a session."""
    session: ConversationSession
    grant: AccessGrant
    partner_id: str

    @property
    def session_key(self) -> str:
        return self.session.session_key


class AccessGrantLedger:
    """Invite, redeem, validate and reauthenticate session access."""

    def __init__(self, db: AsyncSession, registry: Optional[ConversationSessionRegistry] = None):
        self.db = db
        self.registry = registry or ConversationSessionRegistry(db)

    @property
    def grant_ttl(self) -> timedelta:
        return timedelta(minutes=settings.ACCESS_GRANT_MINUTES)

    # ==========================================================================
    # Invitation
    # ==========================================================================

    async def invite(
        self,
        inviter: str,
        partner: str,
        device_type: DeviceType,
        session: Optional[ConversationSession] = None,
        session_created: bool = False,
    ) -> Invitation:
        """
        Issue a fresh one-time PIN for `partner` to join the pair's session.

        Prior grants this inviter issued for the pair are deleted first so
        a previously shared PIN stops working. Callers are responsible for
        the ghost-unlock and disclaimer checks.
        """
        if session is None:
            session, session_created = await self.registry.open_or_reuse(inviter, partner)

        await self.db.execute(
            delete(AccessGrant).where(
                AccessGrant.session_id == session.session_id,
                AccessGrant.granted_by == inviter,
                or_(
                    and_(AccessGrant.user_id == inviter, AccessGrant.partner_id == partner),
                    and_(AccessGrant.user_id == partner, AccessGrant.partner_id == inviter),
                ),
            )
        )

        pin = generate_access_pin()
        pin_hash = hash_pin(pin)
        now = utcnow()
        expire_at = min(now + self.grant_ttl, session.expire_at)

        self.db.add_all([
            AccessGrant(
                session_id=session.session_id,
                user_id=inviter,
                partner_id=partner,
                granted_by=inviter,
                pin_hash=pin_hash,
                device_type=device_type,
                access_granted=True,
                access_granted_at=now,
                last_activity=now,
                expire_at=expire_at,
                created_at=now,
            ),
            AccessGrant(
                session_id=session.session_id,
                user_id=partner,
                partner_id=inviter,
                granted_by=inviter,
                pin_hash=pin_hash,
                device_type=device_type,
                access_granted=False,
                last_activity=now,
                expire_at=expire_at,
                created_at=now,
            ),
        ])
        await self.db.flush()

        return Invitation(
            session=session,
            pin=pin,
            pin_expires_at=expire_at,
            session_created=session_created,
        )

    # ==========================================================================
    # Redemption
    # ==========================================================================

    async def redeem(
        self, joining_user: str, pin: str, device_type: DeviceType
    ) -> SessionAccess:
        """
        Join a session with a one-time PIN.

        The PIN alone authorizes: every pending, unexpired grant addressed
        to the joining user is tested. Marking the grant granted is a
        conditional update, so only one of two racing redemptions wins.

        Raises:
            InvalidOrExpiredPin: no pending grant matches (uniform failure)
        """
        now = utcnow()
        result = await self.db.execute(
            select(AccessGrant)
            .where(
                AccessGrant.user_id == joining_user,
                AccessGrant.access_granted == False,  # noqa: E712
                AccessGrant.expire_at > now,
            )
            .order_by(AccessGrant.created_at.desc())
        )
        candidates = result.scalars().all()

        match = None
        for grant in candidates:
            if pin and verify_pin(pin, grant.pin_hash):
                match = grant
                break
        if match is None:
            raise InvalidOrExpiredPin()

        session = await self.registry.get_active(match.session_id)
        if session is None:
            raise InvalidOrExpiredPin()

        claimed = await self.db.execute(
            update(AccessGrant)
            .where(
                AccessGrant.id == match.id,
                AccessGrant.access_granted == False,  # noqa: E712
                AccessGrant.expire_at > now,
            )
            .values(
                access_granted=True,
                access_granted_at=now,
                device_type=device_type,
                last_activity=now,
            )
            .execution_options(synchronize_session=False)
        )
        if claimed.rowcount != 1:
            raise InvalidOrExpiredPin()

        await self.db.refresh(match)
        return SessionAccess(session=session, grant=match, partner_id=match.partner_id)

    # ==========================================================================
    # Validation
    # ==========================================================================

    async def live_grant(self, session_id: str, user: str) -> Optional[AccessGrant]:
        """The user's granted, unexpired grant for the session, if any."""
        result = await self.db.execute(
            select(AccessGrant)
            .where(
                AccessGrant.session_id == session_id,
                AccessGrant.user_id == user,
                AccessGrant.access_granted == True,  # noqa: E712
                AccessGrant.expire_at > utcnow(),
            )
            .order_by(AccessGrant.expire_at.desc())
            .limit(1)
        )
        return result.scalar_one_or_none()

    async def validate(self, session_id: str, user: str) -> SessionAccess:
        """
        Confirm the user may use the session right now.

        Raises:
            NoAccess: no active session or no live granted grant
        """
        session = await self.registry.get_active(session_id)
        if session is None or user not in session.participants:
            raise NoAccess()

        grant = await self.live_grant(session_id, user)
        if grant is None:
            raise NoAccess()

        grant.last_activity = utcnow()
        await self.db.flush()
        return SessionAccess(
            session=session,
            grant=grant,
            partner_id=session.partner_of(user),
        )

    async def reauthenticate(
        self, session_id: str, user: str, pin: str, device_type: DeviceType
    ) -> AccessGrant:
        """
        Re-check the grant's original PIN and extend its expiry window.

        Raises:
            NotFound: session inactive or the user holds no live grant
            InvalidCredential: PIN does not match the grant
        """
        session = await self.registry.get_active(session_id)
        if session is None:
            raise NotFound()
        grant = await self.live_grant(session_id, user)
        if grant is None:
            raise NotFound()
        if not pin or not verify_pin(pin, grant.pin_hash):
            raise InvalidCredential()

        now = utcnow()
        grant.expire_at = min(now + self.grant_ttl, session.expire_at)
        grant.last_activity = now
        grant.device_type = device_type
        await self.db.flush()
        return grant

    # ==========================================================================
    # Pair status / re-entry
    # ==========================================================================

    async def status_for_pair(self, user: str, partner: str) -> dict:
        session = await self.registry.find_active_for_pair(user, partner)
        if session is None:
            return {"has_active_session": False, "has_access": False}
        grant = await self.live_grant(session.session_id, user)
        return {
            "has_active_session": True,
            "has_access": grant is not None,
            "session_id": session.session_id if grant is not None else None,
            "expire_at": session.expire_at,
        }

    async def direct_enter(self, user: str, partner: str) -> SessionAccess:
        """Re-enter the pair's session without a PIN while a grant is live."""
        session = await self.registry.find_active_for_pair(user, partner)
        if session is None:
            raise NoAccess()
        return await self.validate(session.session_id, user)
