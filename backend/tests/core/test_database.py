"""
LockBlip Ghost - Database Session Scope Tests
"""

import pytest
from sqlalchemy.ext.asyncio import AsyncSession

from lockblip.core.database import get_db, get_db_session


class TestSessionScopes:

    async def test_unit_of_work_reraises(self):
        with pytest.raises(RuntimeError):
            async with get_db_session() as session:
                assert isinstance(session, AsyncSession)
                raise RuntimeError("boom")

    async def test_request_session_closes_after_use(self):
        scope = get_db()
        session = await scope.__anext__()
        assert isinstance(session, AsyncSession)

        with pytest.raises(StopAsyncIteration):
            await scope.__anext__()
        assert not session.in_transaction()
