"""
Access Audit Log - append-only, best-effort security event sink.

record() never blocks and never raises: entries go onto a bounded queue
drained by a background writer with its own database session. A full
queue or a failed write is reported on the operational log and the
entries are dropped; chat operations never depend on audit success.
"""

import asyncio
import logging
from collections.abc import Callable
from contextlib import AbstractAsyncContextManager
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Optional

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from lockblip.core.config import settings
from lockblip.core.database import get_db_session
from lockblip.core.models import AccessAuditEntry, AuditEventType, DeviceType, utcnow

logger = logging.getLogger(__name__)

# Never persisted in metadata
SECRET_METADATA_KEYS = frozenset({
    "pin", "sessionKey", "session_key", "sessionToken", "session_token", "token",
})

SessionFactory = Callable[[], AbstractAsyncContextManager[AsyncSession]]


@dataclass
class AuditRecord:
    session_id: Optional[str]
    user_id: str
    event_type: AuditEventType
    device_type: DeviceType = DeviceType.DESKTOP
    ip_address: Optional[str] = None
    user_agent: Optional[str] = None
    metadata: dict[str, Any] = field(default_factory=dict)
    timestamp: datetime = field(default_factory=utcnow)

    def to_entry(self) -> AccessAuditEntry:
        return AccessAuditEntry(
            session_id=self.session_id,
            user_id=self.user_id,
            event_type=self.event_type,
            device_type=self.device_type,
            ip_address=self.ip_address,
            user_agent=(self.user_agent or "")[:512] or None,
            event_metadata=self.metadata,
            timestamp=self.timestamp,
        )


def scrub_metadata(metadata: Optional[dict[str, Any]]) -> dict[str, Any]:
    if not metadata:
        return {}
    return {k: v for k, v in metadata.items() if k not in SECRET_METADATA_KEYS}


class AccessAuditLog:
    """Queue-backed audit sink with a background writer."""

    def __init__(
        self,
        session_factory: SessionFactory,
        max_pending: int = settings.AUDIT_QUEUE_SIZE,
    ):
        self.session_factory = session_factory
        self._queue: asyncio.Queue[AuditRecord] = asyncio.Queue(maxsize=max_pending)
        self._writer: Optional[asyncio.Task] = None
        self.dropped = 0

    # ==========================================================================
    # Recording
    # ==========================================================================

    def record(
        self,
        session_id: Optional[str],
        user_id: str,
        event_type: AuditEventType,
        device_type: DeviceType = DeviceType.DESKTOP,
        metadata: Optional[dict[str, Any]] = None,
        ip_address: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> None:
        """Enqueue an audit entry. Never raises."""
        try:
            self._queue.put_nowait(AuditRecord(
                session_id=session_id,
                user_id=user_id,
                event_type=AuditEventType(event_type),
                device_type=DeviceType(device_type),
                ip_address=ip_address,
                user_agent=user_agent,
                metadata=scrub_metadata(metadata),
            ))
        except asyncio.QueueFull:
            self.dropped += 1
            logger.warning("Audit queue full, dropping %s event", event_type)
        except Exception:
            self.dropped += 1
            logger.exception("Failed to enqueue audit event")

    @property
    def pending(self) -> int:
        return self._queue.qsize()

    # ==========================================================================
    # Writer
    # ==========================================================================

    def _drain_nowait(self) -> list[AuditRecord]:
        batch = []
        while True:
            try:
                batch.append(self._queue.get_nowait())
            except asyncio.QueueEmpty:
                return batch

    async def _persist(self, batch: list[AuditRecord]) -> int:
        if not batch:
            return 0
        try:
            async with self.session_factory() as session:
                session.add_all([record.to_entry() for record in batch])
                await session.commit()
            return len(batch)
        except Exception:
            self.dropped += len(batch)
            logger.exception("Failed to write %d audit entries", len(batch))
            return 0
        finally:
            for _ in batch:
                self._queue.task_done()

    async def flush(self) -> int:
        """Write every queued entry now. Returns the number written."""
        return await self._persist(self._drain_nowait())

    async def join(self) -> None:
        """Wait until every queued entry has been written or dropped."""
        await self._queue.join()

    async def _run(self) -> None:
        while True:
            first = await self._queue.get()
            await self._persist([first, *self._drain_nowait()])

    def start(self) -> None:
        if self._writer is None or self._writer.done():
            self._writer = asyncio.create_task(self._run(), name="ghost-audit-writer")
            logger.info("Audit writer started")

    async def stop(self) -> None:
        if self._writer is not None:
            if not self._writer.done():
                await self.join()
            self._writer.cancel()
            try:
                await self._writer
            except asyncio.CancelledError:
                pass
            self._writer = None
        await self.flush()
        logger.info("Audit writer stopped")

    # ==========================================================================
    # Query
    # ==========================================================================

    @staticmethod
    async def query(
        db: AsyncSession,
        session_id: str,
        limit: int = settings.AUDIT_PAGE_SIZE,
    ) -> list[AccessAuditEntry]:
        """
        Entries for a session, newest first.

        Access control (an active grant) is enforced by the caller.
        """
        limit = max(1, min(limit, settings.AUDIT_PAGE_SIZE))
        result = await db.execute(
            select(AccessAuditEntry)
            .where(AccessAuditEntry.session_id == session_id)
            .order_by(AccessAuditEntry.timestamp.desc())
            .limit(limit)
        )
        return list(result.scalars().all())


# ==========================================================================
# Global Instance
# ==========================================================================

_audit_log: Optional[AccessAuditLog] = None


def get_audit_log() -> AccessAuditLog:
    """Get or create the global audit log."""
    global _audit_log
    if _audit_log is None:
        _audit_log = AccessAuditLog(get_db_session)
    return _audit_log
