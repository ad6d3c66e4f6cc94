"""Tests for promotion to production."""

import asyncio

import pytest

from conftest import FakeConnection
from paralleldb.exceptions import PromotionFailed, ValidationFailure
from paralleldb.orchestrator.promotion import PromotionCoordinator

CREATE_INDEX = 'CREATE INDEX IF NOT EXISTS "pu_index_users_email" ON "public"."users" USING btree ("email")'
ANALYZE = 'ANALYZE "public"."users"'


def coordinator_for(conn: FakeConnection) -> PromotionCoordinator:
    async def connect():
        return conn

    return PromotionCoordinator(None, connector=connect)


class TestPromotionCoordinator:
    """Tests for PromotionCoordinator.promote."""

    @pytest.mark.asyncio
    async def test_commits_all_statements_in_order(self):
        conn = FakeConnection()

        outcome = await coordinator_for(conn).promote("fork000001", [CREATE_INDEX, ANALYZE])

        assert outcome.applied_count == 2
        assert outcome.fork_id == "fork000001"
        assert conn.committed == [CREATE_INDEX, ANALYZE]
        assert conn.closed is True

    @pytest.mark.asyncio
    async def test_invalid_statement_rolls_back_everything(self):
        conn = FakeConnection(failing={"INVALID SQL"})

        with pytest.raises(PromotionFailed) as exc_info:
            await coordinator_for(conn).promote("fork000001", [CREATE_INDEX, "INVALID SQL"])

        error = exc_info.value
        assert error.applied_count == 0
        assert error.statement == "INVALID SQL"
        assert error.fork_id == "fork000001"
        assert "syntax error" in str(error)
        assert conn.committed == []
        assert conn.closed is True

    @pytest.mark.asyncio
    async def test_retry_after_fix_succeeds(self):
        conn = FakeConnection(failing={"INVALID SQL"})
        coordinator = coordinator_for(conn)

        with pytest.raises(PromotionFailed):
            await coordinator.promote("fork000001", [CREATE_INDEX, "INVALID SQL"])
        outcome = await coordinator.promote("fork000001", [CREATE_INDEX, ANALYZE])

        assert outcome.applied_count == 2
        assert conn.committed == [CREATE_INDEX, ANALYZE]

    @pytest.mark.asyncio
    async def test_empty_changes_rejected(self):
        conn = FakeConnection()

        with pytest.raises(ValidationFailure):
            await coordinator_for(conn).promote("fork000001", [])

        assert conn.queries == []

    @pytest.mark.asyncio
    async def test_unconfigured_database(self):
        coordinator = PromotionCoordinator(None)

        with pytest.raises(PromotionFailed):
            await coordinator.promote("fork000001", [ANALYZE])

    @pytest.mark.asyncio
    async def test_connection_error_wrapped(self):
        async def connect():
            raise OSError("connection refused")

        coordinator = PromotionCoordinator(None, connector=connect)

        with pytest.raises(PromotionFailed) as exc_info:
            await coordinator.promote("fork000001", [ANALYZE])

        assert exc_info.value.statement is None

    @pytest.mark.asyncio
    async def test_promotions_are_serialized(self):
        in_flight = 0
        peak = 0

        class SlowConnection(FakeConnection):
            async def execute(self, query, params=None):
                nonlocal in_flight, peak
                in_flight += 1
                peak = max(peak, in_flight)
                await asyncio.sleep(0.01)
                in_flight -= 1
                await super().execute(query, params)

        async def connect():
            return SlowConnection()

        coordinator = PromotionCoordinator(None, connector=connect)

        await asyncio.gather(
            coordinator.promote("fork000001", [ANALYZE]),
            coordinator.promote("fork000002", [ANALYZE]),
            coordinator.promote("fork000003", [ANALYZE]),
        )

        assert peak == 1
