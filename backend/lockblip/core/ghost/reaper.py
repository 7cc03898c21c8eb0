"""
Expiry Reaper - background TTL sweep for Ghost Mode.

Runs every REAPER_INTERVAL_SECONDS:

1. Viewed messages whose delete clock elapsed are tombstoned and both
   participants are told via `ghost-message-deleted`.
2. Messages past their hard expiry are physically deleted.
3. Expired access grants are deleted.
4. Expired sessions are removed together with their grants and messages,
   and `ghost-session-terminated` is emitted.
5. Audit entries older than the retention window are deleted.

Reads never depend on the reaper; it only reclaims storage and pushes
notifications for state the read paths already hide.
"""

import asyncio
import logging
from dataclasses import dataclass
from datetime import timedelta
from typing import Optional

from sqlalchemy import delete, select
from sqlalchemy.ext.asyncio import AsyncSession

from lockblip.core.config import settings
from lockblip.core.ghost.audit import AccessAuditLog, SessionFactory
from lockblip.core.ghost.channels import GhostChannelHub, GhostEvent
from lockblip.core.ghost.messages import DELETED_PLACEHOLDER
from lockblip.core.ghost.registry import purge_session_dependents
from lockblip.core.models import (
    AccessAuditEntry,
    AccessGrant,
    AuditEventType,
    ConversationSession,
    GhostMessage,
    utcnow,
)

logger = logging.getLogger(__name__)


@dataclass
class SweepStats:
    messages_destroyed: int = 0
    messages_expired: int = 0
    grants_expired: int = 0
    sessions_expired: int = 0
    audit_entries_expired: int = 0

    @property
    def total(self) -> int:
        return (
            self.messages_destroyed + self.messages_expired + self.grants_expired
            + self.sessions_expired + self.audit_entries_expired
        )


class ExpiryReaper:
    """Periodic sweep over expired Ghost entities."""

    def __init__(
        self,
        session_factory: SessionFactory,
        hub: GhostChannelHub,
        audit_log: AccessAuditLog,
        interval: float = settings.REAPER_INTERVAL_SECONDS,
        batch_size: int = settings.REAPER_BATCH_SIZE,
    ):
        self.session_factory = session_factory
        self.hub = hub
        self.audit_log = audit_log
        self.interval = interval
        self.batch_size = batch_size
        self._task: Optional[asyncio.Task] = None

    # ==========================================================================
    # Sweep
    # ==========================================================================

    async def sweep(self) -> SweepStats:
        """Run one full pass. Each step commits on its own."""
        stats = SweepStats()
        async with self.session_factory() as db:
            stats.messages_destroyed = await self._destroy_viewed_messages(db)
            await db.commit()
            stats.messages_expired = await self._delete_expired_messages(db)
            stats.grants_expired = await self._delete_expired_grants(db)
            await db.commit()
            stats.sessions_expired = await self._expire_sessions(db)
            await db.commit()
            stats.audit_entries_expired = await self._delete_old_audit_entries(db)
            await db.commit()

        if stats.total:
            logger.info(
                "Ghost reaper: %d destroyed, %d expired messages, %d grants, "
                "%d sessions, %d audit entries",
                stats.messages_destroyed, stats.messages_expired, stats.grants_expired,
                stats.sessions_expired, stats.audit_entries_expired,
            )
        return stats

    async def _destroy_viewed_messages(self, db: AsyncSession) -> int:
        now = utcnow()
        result = await db.execute(
            select(GhostMessage)
            .where(
                GhostMessage.is_deleted == False,  # noqa: E712
                GhostMessage.viewed == True,  # noqa: E712
                GhostMessage.delete_at <= now,
            )
            .limit(self.batch_size)
        )
        messages = result.scalars().all()

        for message in messages:
            message.is_deleted = True
            message.encrypted_payload = DELETED_PLACEHOLDER
            message.encrypted_media_url = None
        await db.flush()

        for message in messages:
            await self.hub.emit(message.session_id, GhostEvent.MESSAGE_DELETED, {
                "messageId": str(message.id),
                "sessionId": message.session_id,
                "reason": "ghost_auto_delete",
            })
        return len(messages)

    async def _delete_expired_messages(self, db: AsyncSession) -> int:
        result = await db.execute(
            delete(GhostMessage).where(GhostMessage.expire_at <= utcnow())
        )
        return result.rowcount or 0

    async def _delete_expired_grants(self, db: AsyncSession) -> int:
        result = await db.execute(
            delete(AccessGrant).where(AccessGrant.expire_at <= utcnow())
        )
        return result.rowcount or 0

    async def _expire_sessions(self, db: AsyncSession) -> int:
        result = await db.execute(
            select(ConversationSession)
            .where(ConversationSession.expire_at <= utcnow())
            .limit(self.batch_size)
        )
        sessions = result.scalars().all()

        for session in sessions:
            was_active = session.is_active
            await purge_session_dependents(db, session.session_id)
            await db.delete(session)

            if not was_active:
                continue
            for participant in session.participants:
                self.audit_log.record(
                    session.session_id,
                    participant,
                    AuditEventType.SESSION_EXPIRED,
                    metadata={"expireAt": session.expire_at.isoformat()},
                )
            await self.hub.emit(session.session_id, GhostEvent.SESSION_TERMINATED, {
                "sessionId": session.session_id,
                "reason": "expired",
            })
            await self.hub.close_channel(session.session_id)
        await db.flush()
        return len(sessions)

    async def _delete_old_audit_entries(self, db: AsyncSession) -> int:
        cutoff = utcnow() - timedelta(days=settings.AUDIT_RETENTION_DAYS)
        result = await db.execute(
            delete(AccessAuditEntry).where(AccessAuditEntry.timestamp < cutoff)
        )
        return result.rowcount or 0

    # ==========================================================================
    # Lifecycle
    # ==========================================================================

    async def _run(self) -> None:
        while True:
            try:
                await self.sweep()
            except asyncio.CancelledError:
                raise
            except Exception:
                logger.exception("Ghost reaper sweep failed")
            await asyncio.sleep(self.interval)

    def start(self) -> None:
        if self._task is None or self._task.done():
            self._task = asyncio.create_task(self._run(), name="ghost-expiry-reaper")
            logger.info("Ghost reaper started (interval %.1fs)", self.interval)

    async def stop(self) -> None:
        if self._task is None:
            return
        self._task.cancel()
        try:
            await self._task
        except asyncio.CancelledError:
            pass
        self._task = None
        logger.info("Ghost reaper stopped")
