"""
LockBlip Ghost - Expiry Reaper Tests
"""

import asyncio
from datetime import timedelta

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from lockblip.core.ghost.audit import AccessAuditLog
from lockblip.core.ghost.channels import GhostChannelHub, GhostEvent
from lockblip.core.ghost.grants import AccessGrantLedger
from lockblip.core.ghost.messages import DELETED_PLACEHOLDER, MessageStore
from lockblip.core.ghost.reaper import ExpiryReaper, SweepStats
from lockblip.core.models import (
    AccessAuditEntry,
    AccessGrant,
    AuditEventType,
    ConversationSession,
    DeviceType,
    GhostMessage,
    utcnow,
)


def make_reaper(session_factory, hub: GhostChannelHub, audit_log: AccessAuditLog) -> ExpiryReaper:
    return ExpiryReaper(session_factory, hub, audit_log, interval=0.01, batch_size=100)


async def count(db: AsyncSession, model) -> int:
    return (await db.execute(select(func.count()).select_from(model))).scalar_one()


async def joined_listener(hub: GhostChannelHub, fake_websocket, username: str, session_id: str):
    ws = fake_websocket()
    client_id = await hub.connect(ws, username)
    await hub.join_channel(client_id, session_id)
    return ws


class TestSweep:

    async def test_empty_sweep(self, session_factory, hub, audit_log):
        stats = await make_reaper(session_factory, hub, audit_log).sweep()
        assert stats.total == 0

    async def test_tombstones_elapsed_viewed_message(
        self, db_session: AsyncSession, session_factory, hub, audit_log, fake_websocket
    ):
        invitation = await AccessGrantLedger(db_session).invite("alice", "bob", DeviceType.DESKTOP)
        session_id = invitation.session.session_id
        store = MessageStore(db_session)
        viewed = await store.send(session_id, "alice", "burn me", auto_delete_timer=1)
        unread = await store.send(session_id, "alice", "keep me", auto_delete_timer=1)
        await store.mark_viewed(viewed.id, "bob")
        viewed.delete_at = utcnow() - timedelta(seconds=1)
        await db_session.commit()
        ws = await joined_listener(hub, fake_websocket, "alice", session_id)

        stats = await make_reaper(session_factory, hub, audit_log).sweep()

        assert stats.messages_destroyed == 1
        assert viewed.is_deleted is True
        assert viewed.encrypted_payload == DELETED_PLACEHOLDER
        assert unread.is_deleted is False

        deleted = ws.frames(GhostEvent.MESSAGE_DELETED.value)
        assert len(deleted) == 1
        assert deleted[0]["payload"]["messageId"] == str(viewed.id)
        assert deleted[0]["payload"]["reason"] == "ghost_auto_delete"

    async def test_deletes_hard_expired_messages_and_grants(
        self, db_session: AsyncSession, session_factory, hub, audit_log
    ):
        invitation = await AccessGrantLedger(db_session).invite("alice", "bob", DeviceType.DESKTOP)
        session_id = invitation.session.session_id
        message = await MessageStore(db_session).send(session_id, "alice", "old")
        message.expire_at = utcnow() - timedelta(seconds=1)
        for grant in (await db_session.execute(select(AccessGrant))).scalars():
            grant.expire_at = utcnow() - timedelta(seconds=1)
        await db_session.commit()

        stats = await make_reaper(session_factory, hub, audit_log).sweep()

        assert stats.messages_expired == 1
        assert stats.grants_expired == 2
        assert await count(db_session, GhostMessage) == 0
        assert await count(db_session, AccessGrant) == 0
        assert await count(db_session, ConversationSession) == 1

    async def test_expires_sessions_with_dependents(
        self, db_session: AsyncSession, session_factory, hub, audit_log, fake_websocket
    ):
        ledger = AccessGrantLedger(db_session)
        invitation = await ledger.invite("alice", "bob", DeviceType.DESKTOP)
        session_id = invitation.session.session_id
        await MessageStore(db_session).send(session_id, "alice", "hi")
        invitation.session.expire_at = utcnow() - timedelta(seconds=1)
        await db_session.commit()
        ws = await joined_listener(hub, fake_websocket, "bob", session_id)

        stats = await make_reaper(session_factory, hub, audit_log).sweep()
        await audit_log.flush()

        assert stats.sessions_expired == 1
        assert await count(db_session, ConversationSession) == 0
        assert await count(db_session, AccessGrant) == 0
        assert await count(db_session, GhostMessage) == 0

        terminated = ws.frames(GhostEvent.SESSION_TERMINATED.value)
        assert terminated[0]["payload"] == {"sessionId": session_id, "reason": "expired"}
        assert hub.members(session_id) == set()

        entries = await AccessAuditLog.query(db_session, session_id)
        assert sorted(e.user_id for e in entries) == ["alice", "bob"]
        assert all(e.event_type == AuditEventType.SESSION_EXPIRED for e in entries)

    async def test_removes_audit_entries_past_retention(
        self, db_session: AsyncSession, session_factory, hub, audit_log
    ):
        db_session.add_all([
            AccessAuditEntry(
                session_id="s1",
                user_id="alice",
                event_type=AuditEventType.IDLE_LOCK,
                device_type=DeviceType.DESKTOP,
                event_metadata={},
                timestamp=utcnow() - timedelta(days=31),
            ),
            AccessAuditEntry(
                session_id="s1",
                user_id="alice",
                event_type=AuditEventType.IDLE_LOCK,
                device_type=DeviceType.DESKTOP,
                event_metadata={},
                timestamp=utcnow() - timedelta(days=1),
            ),
        ])
        await db_session.commit()

        stats = await make_reaper(session_factory, hub, audit_log).sweep()

        assert stats.audit_entries_expired == 1
        assert await count(db_session, AccessAuditEntry) == 1


class TestLifecycle:

    async def test_start_runs_sweeps_until_stopped(self, session_factory, hub, audit_log):
        reaper = make_reaper(session_factory, hub, audit_log)
        sweeps = 0

        async def counting_sweep():
            nonlocal sweeps
            sweeps += 1
            return SweepStats()

        reaper.sweep = counting_sweep
        reaper.start()
        await asyncio.sleep(0.05)
        await reaper.stop()

        assert sweeps >= 1
        assert reaper._task is None

    async def test_sweep_errors_do_not_stop_the_loop(self, session_factory, hub, audit_log):
        reaper = make_reaper(session_factory, hub, audit_log)
        calls = 0

        async def failing_sweep():
            nonlocal calls
            calls += 1
            raise RuntimeError("boom")

        reaper.sweep = failing_sweep
        reaper.start()
        await asyncio.sleep(0.1)
        await reaper.stop()

        assert calls >= 2
