"""
PIN Credential Store - the Ghost Mode unlock gate.

Holds one GhostIdentity per user: a bcrypt hash of the unlock PIN and a
short-lived ghost session token. Only one unlock is active per user;
unlocking again replaces the previous token.
"""

import hashlib
import hmac
import logging
import secrets
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Optional

from passlib.hash import bcrypt
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from lockblip.core.config import settings
from lockblip.core.ghost.errors import (
    AlreadyConfigured,
    InvalidCredential,
    InvalidPinFormat,
    InvalidSession,
    NotConfigured,
    SessionExpired,
    ValidationFailure,
)
from lockblip.core.models import GhostIdentity, utcnow

logger = logging.getLogger(__name__)


# ==========================================================================
# Helper Functions
# ==========================================================================

def hash_pin(pin: str) -> str:
    """Hash a PIN using bcrypt."""
    return bcrypt.using(rounds=settings.PIN_HASH_ROUNDS).hash(pin)


def verify_pin(pin: str, pin_hash: str) -> bool:
    """Verify a PIN against a bcrypt hash."""
    try:
        return bcrypt.verify(pin, pin_hash)
    except ValueError:
        # malformed hash
        return False


def hash_token(token: str) -> str:
    """Create a hash of a token for storage."""
    return hashlib.sha256(token.encode()).hexdigest()


def tokens_match(token: Optional[str], token_hash: Optional[str]) -> bool:
    if not token or not token_hash:
        return False
    return hmac.compare_digest(hash_token(token), token_hash)


def validate_pin_format(pin: Optional[str]) -> str:
    """Raise InvalidPinFormat unless the PIN is 4-8 digits."""
    if (
        not pin
        or not pin.isascii()
        or not pin.isdigit()
        or not settings.GHOST_PIN_MIN_LENGTH <= len(pin) <= settings.GHOST_PIN_MAX_LENGTH
    ):
        raise InvalidPinFormat()
    return pin


@dataclass
class UnlockResult:
    session_token: str
    expires_at: datetime
    auto_lock_timeout: int


# ==========================================================================
# Store
# ==========================================================================

class PinCredentialStore:
    """Setup, unlock, heartbeat, verify and lock for Ghost identities."""

    MIN_AUTO_LOCK_SECONDS = 10
    MAX_AUTO_LOCK_SECONDS = 3600

    def __init__(self, db: AsyncSession):
        self.db = db

    @property
    def session_duration(self) -> timedelta:
        return timedelta(minutes=settings.GHOST_SESSION_MINUTES)

    async def get(self, username: str) -> Optional[GhostIdentity]:
        result = await self.db.execute(
            select(GhostIdentity).where(GhostIdentity.username == username)
        )
        return result.scalar_one_or_none()

    async def setup(self, username: str, pin: str) -> GhostIdentity:
        """
        Create the user's Ghost identity.

        Raises:
            AlreadyConfigured: identity already exists
            InvalidPinFormat: PIN is not 4-8 digits
        """
        if await self.get(username) is not None:
            raise AlreadyConfigured()
        validate_pin_format(pin)

        identity = GhostIdentity(
            username=username,
            pin_hash=hash_pin(pin),
            auto_lock_timeout=settings.GHOST_DEFAULT_AUTO_LOCK_SECONDS,
        )
        self.db.add(identity)
        await self.db.flush()

        logger.info("Ghost identity created for %s", username)
        return identity

    async def unlock(
        self,
        username: str,
        pin: Optional[str] = None,
        biometric_token: Optional[str] = None,
    ) -> UnlockResult:
        """
        Unlock Ghost Mode with the PIN or the enrolled biometric token.

        Issues a fresh session token, invalidating any previous one.
        """
        identity = await self.get(username)
        if identity is None:
            raise NotConfigured()

        authenticated = False
        if pin:
            authenticated = verify_pin(pin, identity.pin_hash)
        elif biometric_token and identity.biometric_enabled:
            authenticated = tokens_match(biometric_token, identity.biometric_token)

        if not authenticated:
            raise InvalidCredential()

        now = utcnow()
        session_token = secrets.token_hex(32)
        identity.active_session_token = hash_token(session_token)
        identity.session_token_expiry = now + self.session_duration
        identity.last_ghost_access = now
        await self.db.flush()

        return UnlockResult(
            session_token=session_token,
            expires_at=identity.session_token_expiry,
            auto_lock_timeout=identity.auto_lock_timeout,
        )

    async def heartbeat(self, username: str, token: Optional[str]) -> datetime:
        """Slide the session expiry forward. Returns the new expiry."""
        identity = await self.get(username)
        if identity is None or not tokens_match(token, identity.active_session_token):
            raise InvalidSession()

        now = utcnow()
        if identity.session_token_expiry is None or identity.session_token_expiry <= now:
            raise SessionExpired()

        identity.session_token_expiry = now + self.session_duration
        identity.last_ghost_access = now
        await self.db.flush()
        return identity.session_token_expiry

    async def verify(self, username: str, token: Optional[str]) -> bool:
        """Read-only check that token matches and has not expired."""
        identity = await self.get(username)
        if identity is None or not tokens_match(token, identity.active_session_token):
            return False
        expiry = identity.session_token_expiry
        return expiry is not None and expiry > utcnow()

    async def lock(self, username: str) -> None:
        """Clear the session token unconditionally."""
        identity = await self.get(username)
        if identity is None:
            return
        identity.active_session_token = None
        identity.session_token_expiry = None
        await self.db.flush()

    async def status(self, username: str) -> dict:
        identity = await self.get(username)
        return {
            "is_set_up": identity is not None,
            "biometric_enabled": bool(identity and identity.biometric_enabled),
            "auto_lock_timeout": (
                identity.auto_lock_timeout
                if identity
                else settings.GHOST_DEFAULT_AUTO_LOCK_SECONDS
            ),
        }

    async def update_settings(
        self,
        username: str,
        token: Optional[str],
        *,
        auto_lock_timeout: Optional[int] = None,
        biometric_enabled: Optional[bool] = None,
        biometric_token: Optional[str] = None,
        new_pin: Optional[str] = None,
    ) -> GhostIdentity:
        """Update unlock preferences; requires a live ghost session."""
        if not await self.verify(username, token):
            raise InvalidSession()
        identity = await self.get(username)

        if auto_lock_timeout is not None:
            if not self.MIN_AUTO_LOCK_SECONDS <= auto_lock_timeout <= self.MAX_AUTO_LOCK_SECONDS:
                raise ValidationFailure("Auto-lock timeout out of range")
            identity.auto_lock_timeout = auto_lock_timeout
        if biometric_token:
            identity.biometric_token = hash_token(biometric_token)
        if biometric_enabled is not None:
            if biometric_enabled and identity.biometric_token is None:
                raise ValidationFailure("Biometric token must be enrolled first")
            identity.biometric_enabled = biometric_enabled
        if new_pin:
            identity.pin_hash = hash_pin(validate_pin_format(new_pin))

        await self.db.flush()
        return identity
