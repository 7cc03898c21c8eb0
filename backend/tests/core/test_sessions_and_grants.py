"""
LockBlip Ghost - Session Registry & Access Grant Ledger Tests
=============================================================

One canonical conversation per pair, one-time PIN invitations,
access validation, re-authentication and termination.
"""

from datetime import timedelta

import pytest
from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from lockblip.core.ghost.credentials import verify_pin
from lockblip.core.ghost.errors import (
    InvalidCredential,
    InvalidOrExpiredPin,
    NoAccess,
    NotAParticipant,
    NotFound,
)
from lockblip.core.ghost.grants import AccessGrantLedger, generate_access_pin
from lockblip.core.ghost.messages import MessageStore
from lockblip.core.ghost.registry import ConversationSessionRegistry, pair_key
from lockblip.core.models import (
    AccessGrant,
    ConversationSession,
    DeviceType,
    GhostMessage,
    utcnow,
)


async def count(db: AsyncSession, model, **filters) -> int:
    query = select(func.count()).select_from(model)
    for name, value in filters.items():
        query = query.where(getattr(model, name) == value)
    return (await db.execute(query)).scalar_one()


async def expire_session(db: AsyncSession, session: ConversationSession) -> None:
    session.expire_at = utcnow() - timedelta(seconds=1)
    await db.flush()


# ==========================================================================
# ConversationSessionRegistry
# ==========================================================================

class TestConversationSessionRegistry:

    async def test_open_creates_canonical_session(self, db_session: AsyncSession):
        registry = ConversationSessionRegistry(db_session)
        session, created = await registry.open_or_reuse("bob", "alice")

        assert created is True
        assert session.participants == ["alice", "bob"]
        assert session.pair_key == pair_key("alice", "bob")
        assert session.created_by == "bob"
        assert len(session.session_id) == 32
        assert session.expire_at > utcnow() + timedelta(hours=23)

    async def test_pair_order_reuses_session(self, db_session: AsyncSession):
        registry = ConversationSessionRegistry(db_session)
        first, _ = await registry.open_or_reuse("alice", "bob")
        second, created = await registry.open_or_reuse("bob", "alice")

        assert created is False
        assert second.session_id == first.session_id
        assert await count(db_session, ConversationSession) == 1

    async def test_expired_session_is_absent(self, db_session: AsyncSession):
        registry = ConversationSessionRegistry(db_session)
        session, _ = await registry.open_or_reuse("alice", "bob")
        await expire_session(db_session, session)

        assert await registry.get_active(session.session_id) is None
        assert await registry.find_active_for_pair("alice", "bob") is None

        fresh, created = await registry.open_or_reuse("alice", "bob")
        assert created is True
        assert fresh.session_id != session.session_id

    async def test_list_for_participant(self, db_session: AsyncSession):
        registry = ConversationSessionRegistry(db_session)
        await registry.open_or_reuse("alice", "bob")
        await registry.open_or_reuse("alice", "carol")
        await registry.open_or_reuse("bob", "carol")

        sessions = await registry.list_for("alice")
        assert sorted(s.partner_of("alice") for s in sessions) == ["bob", "carol"]

    async def test_terminate_unknown_session(self, db_session: AsyncSession):
        with pytest.raises(NotFound):
            await ConversationSessionRegistry(db_session).terminate("missing", "alice")

    async def test_terminate_by_outsider(self, db_session: AsyncSession):
        registry = ConversationSessionRegistry(db_session)
        session, _ = await registry.open_or_reuse("alice", "bob")

        with pytest.raises(NotAParticipant):
            await registry.terminate(session.session_id, "carol")
        assert await registry.get_active(session.session_id) is not None

    async def test_terminate_purges_dependents(self, db_session: AsyncSession):
        registry = ConversationSessionRegistry(db_session)
        ledger = AccessGrantLedger(db_session, registry)
        invitation = await ledger.invite("alice", "bob", DeviceType.DESKTOP)
        session_id = invitation.session.session_id
        await MessageStore(db_session, registry).send(session_id, "alice", "hello")

        session = await registry.terminate(session_id, "bob")

        assert session.is_active is False
        assert session.terminated_by == "bob"
        assert session.terminated_at is not None
        assert await count(db_session, AccessGrant, session_id=session_id) == 0
        assert await count(db_session, GhostMessage, session_id=session_id) == 0
        assert await registry.get_active(session_id) is None

        with pytest.raises(NotFound):
            await registry.terminate(session_id, "alice")


# ==========================================================================
# AccessGrantLedger
# ==========================================================================

class TestInvite:

    def test_access_pin_format(self):
        for _ in range(200):
            pin = generate_access_pin()
            assert len(pin) == 6
            assert pin.isdigit()
            assert pin[0] != "0"

    async def test_invite_creates_both_grants(self, db_session: AsyncSession):
        ledger = AccessGrantLedger(db_session)
        invitation = await ledger.invite("alice", "bob", DeviceType.MOBILE)

        grants = (await db_session.execute(
            select(AccessGrant).where(AccessGrant.session_id == invitation.session.session_id)
        )).scalars().all()
        by_user = {g.user_id: g for g in grants}

        assert set(by_user) == {"alice", "bob"}
        assert by_user["alice"].access_granted is True
        assert by_user["bob"].access_granted is False
        assert by_user["bob"].partner_id == "alice"
        assert all(g.granted_by == "alice" for g in grants)
        assert all(g.pin_hash != invitation.pin for g in grants)
        assert verify_pin(invitation.pin, by_user["bob"].pin_hash)
        assert invitation.pin_expires_at <= invitation.session.expire_at
        assert invitation.session_created is True

    async def test_reinvite_replaces_previous_pin(self, db_session: AsyncSession):
        ledger = AccessGrantLedger(db_session)
        first = await ledger.invite("alice", "bob", DeviceType.DESKTOP)
        second = await ledger.invite("alice", "bob", DeviceType.DESKTOP)

        assert second.session.session_id == first.session.session_id
        assert second.session_created is False
        assert await count(db_session, AccessGrant, session_id=first.session.session_id) == 2

        if first.pin != second.pin:
            with pytest.raises(InvalidOrExpiredPin):
                await ledger.redeem("bob", first.pin, DeviceType.DESKTOP)
        access = await ledger.redeem("bob", second.pin, DeviceType.DESKTOP)
        assert access.session.session_id == first.session.session_id


class TestRedeem:

    async def test_redeem_grants_access(self, db_session: AsyncSession):
        ledger = AccessGrantLedger(db_session)
        invitation = await ledger.invite("alice", "bob", DeviceType.DESKTOP)

        access = await ledger.redeem("bob", invitation.pin, DeviceType.TABLET)

        assert access.partner_id == "alice"
        assert access.session_key == invitation.session.session_key
        assert access.grant.access_granted is True
        assert access.grant.access_granted_at is not None
        assert access.grant.device_type == DeviceType.TABLET

    async def test_pin_is_single_use(self, db_session: AsyncSession):
        ledger = AccessGrantLedger(db_session)
        invitation = await ledger.invite("alice", "bob", DeviceType.DESKTOP)
        await ledger.redeem("bob", invitation.pin, DeviceType.DESKTOP)

        with pytest.raises(InvalidOrExpiredPin):
            await ledger.redeem("bob", invitation.pin, DeviceType.DESKTOP)

    async def test_pin_only_works_for_invited_user(self, db_session: AsyncSession):
        ledger = AccessGrantLedger(db_session)
        invitation = await ledger.invite("alice", "bob", DeviceType.DESKTOP)

        with pytest.raises(InvalidOrExpiredPin):
            await ledger.redeem("carol", invitation.pin, DeviceType.DESKTOP)
        with pytest.raises(InvalidOrExpiredPin):
            await ledger.redeem("alice", invitation.pin, DeviceType.DESKTOP)

    async def test_wrong_pin(self, db_session: AsyncSession):
        ledger = AccessGrantLedger(db_session)
        invitation = await ledger.invite("alice", "bob", DeviceType.DESKTOP)
        wrong = "100000" if invitation.pin != "100000" else "100001"

        with pytest.raises(InvalidOrExpiredPin):
            await ledger.redeem("bob", wrong, DeviceType.DESKTOP)

    async def test_expired_pin(self, db_session: AsyncSession):
        ledger = AccessGrantLedger(db_session)
        invitation = await ledger.invite("alice", "bob", DeviceType.DESKTOP)
        grant = (await db_session.execute(
            select(AccessGrant).where(AccessGrant.user_id == "bob")
        )).scalar_one()
        grant.expire_at = utcnow() - timedelta(seconds=1)
        await db_session.flush()

        with pytest.raises(InvalidOrExpiredPin):
            await ledger.redeem("bob", invitation.pin, DeviceType.DESKTOP)

    async def test_pin_for_expired_session(self, db_session: AsyncSession):
        ledger = AccessGrantLedger(db_session)
        invitation = await ledger.invite("alice", "bob", DeviceType.DESKTOP)
        await expire_session(db_session, invitation.session)

        with pytest.raises(InvalidOrExpiredPin):
            await ledger.redeem("bob", invitation.pin, DeviceType.DESKTOP)

    async def test_racing_redemptions_have_one_winner(self, db_session: AsyncSession, monkeypatch):
        ledger = AccessGrantLedger(db_session)
        invitation = await ledger.invite("alice", "bob", DeviceType.DESKTOP)
        rival = AccessGrantLedger(db_session)
        winners = []

        # The rival claims the grant after this redemption matched the PIN
        # but before its conditional update runs.
        get_active = ledger.registry.get_active

        async def redeemed_meanwhile(session_id: str):
            winners.append(await rival.redeem("bob", invitation.pin, DeviceType.MOBILE))
            return await get_active(session_id)

        monkeypatch.setattr(ledger.registry, "get_active", redeemed_meanwhile)

        with pytest.raises(InvalidOrExpiredPin):
            await ledger.redeem("bob", invitation.pin, DeviceType.DESKTOP)

        assert len(winners) == 1
        assert winners[0].grant.device_type == DeviceType.MOBILE
        assert await count(db_session, AccessGrant, user_id="bob", access_granted=True) == 1


class TestValidateAndReauth:

    async def test_validate_inviter_and_joiner(self, db_session: AsyncSession):
        ledger = AccessGrantLedger(db_session)
        invitation = await ledger.invite("alice", "bob", DeviceType.DESKTOP)
        session_id = invitation.session.session_id

        assert (await ledger.validate(session_id, "alice")).partner_id == "bob"
        with pytest.raises(NoAccess):
            await ledger.validate(session_id, "bob")

        await ledger.redeem("bob", invitation.pin, DeviceType.DESKTOP)
        access = await ledger.validate(session_id, "bob")
        assert access.partner_id == "alice"
        assert access.session_key == invitation.session.session_key

    async def test_validate_outsider_and_unknown(self, db_session: AsyncSession):
        ledger = AccessGrantLedger(db_session)
        invitation = await ledger.invite("alice", "bob", DeviceType.DESKTOP)

        with pytest.raises(NoAccess):
            await ledger.validate(invitation.session.session_id, "carol")
        with pytest.raises(NoAccess):
            await ledger.validate("missing", "alice")

    async def test_validate_after_grant_expiry(self, db_session: AsyncSession):
        ledger = AccessGrantLedger(db_session)
        invitation = await ledger.invite("alice", "bob", DeviceType.DESKTOP)
        grant = await ledger.live_grant(invitation.session.session_id, "alice")
        grant.expire_at = utcnow() - timedelta(seconds=1)
        await db_session.flush()

        with pytest.raises(NoAccess):
            await ledger.validate(invitation.session.session_id, "alice")

    async def test_reauth_extends_grant(self, db_session: AsyncSession):
        ledger = AccessGrantLedger(db_session)
        invitation = await ledger.invite("alice", "bob", DeviceType.DESKTOP)
        session_id = invitation.session.session_id
        await ledger.redeem("bob", invitation.pin, DeviceType.DESKTOP)

        grant = await ledger.live_grant(session_id, "bob")
        grant.expire_at = utcnow() + timedelta(minutes=1)
        await db_session.flush()

        refreshed = await ledger.reauthenticate(session_id, "bob", invitation.pin, DeviceType.MOBILE)
        assert refreshed.expire_at > utcnow() + timedelta(minutes=50)
        assert refreshed.device_type == DeviceType.MOBILE

    async def test_reauth_failures(self, db_session: AsyncSession):
        ledger = AccessGrantLedger(db_session)
        invitation = await ledger.invite("alice", "bob", DeviceType.DESKTOP)
        session_id = invitation.session.session_id
        wrong = "100000" if invitation.pin != "100000" else "100001"

        with pytest.raises(InvalidCredential):
            await ledger.reauthenticate(session_id, "alice", wrong, DeviceType.DESKTOP)
        with pytest.raises(NotFound):
            await ledger.reauthenticate(session_id, "carol", invitation.pin, DeviceType.DESKTOP)
        with pytest.raises(NotFound):
            await ledger.reauthenticate("missing", "alice", invitation.pin, DeviceType.DESKTOP)


class TestPairStatusAndDirectEnter:

    async def test_status_without_session(self, db_session: AsyncSession):
        status = await AccessGrantLedger(db_session).status_for_pair("alice", "bob")
        assert status == {"has_active_session": False, "has_access": False}

    async def test_status_and_direct_enter(self, db_session: AsyncSession):
        ledger = AccessGrantLedger(db_session)
        invitation = await ledger.invite("alice", "bob", DeviceType.DESKTOP)

        bob_status = await ledger.status_for_pair("bob", "alice")
        assert bob_status["has_active_session"] is True
        assert bob_status["has_access"] is False
        assert bob_status["session_id"] is None

        with pytest.raises(NoAccess):
            await ledger.direct_enter("bob", "alice")

        await ledger.redeem("bob", invitation.pin, DeviceType.DESKTOP)
        access = await ledger.direct_enter("bob", "alice")
        assert access.session.session_id == invitation.session.session_id

        alice_status = await ledger.status_for_pair("alice", "bob")
        assert alice_status["has_access"] is True
        assert alice_status["session_id"] == invitation.session.session_id

    async def test_direct_enter_without_session(self, db_session: AsyncSession):
        with pytest.raises(NoAccess):
            await AccessGrantLedger(db_session).direct_enter("alice", "bob")
