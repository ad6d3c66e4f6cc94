"""End-to-end tests against a real PostgreSQL database.

Skipped unless PARALLELDB_TEST_DATABASE_URL points at a disposable
database. Runs against the shared instance through fallback handles.
"""

import os

import psycopg
import pytest

from paralleldb.config import OrchestratorSettings
from paralleldb.forks.manager import ForkLifecycleManager
from paralleldb.orchestrator import Orchestrator, PromotionCoordinator
from paralleldb.exceptions import PromotionFailed
from paralleldb.schemas.run import StrategyStatus

DATABASE_URL = os.environ.get("PARALLELDB_TEST_DATABASE_URL")

pytestmark = [
    pytest.mark.integration,
    pytest.mark.skipif(not DATABASE_URL, reason="PARALLELDB_TEST_DATABASE_URL not set"),
]


async def seed() -> None:
    async with await psycopg.AsyncConnection.connect(DATABASE_URL, autocommit=True) as conn:
        await conn.execute("DROP TABLE IF EXISTS pu_test_users")
        await conn.execute(
            "CREATE TABLE pu_test_users (id serial PRIMARY KEY, email text, created_at timestamptz DEFAULT now())"
        )
        await conn.execute(
            "INSERT INTO pu_test_users (email) SELECT 'user' || g || '@example.com' FROM generate_series(1, 2000) g"
        )
        await conn.execute("SELECT * FROM pu_test_users WHERE email = 'user5@example.com'")
        await conn.execute("ANALYZE pu_test_users")


async def index_exists(name: str) -> bool:
    async with await psycopg.AsyncConnection.connect(DATABASE_URL) as conn:
        cur = await conn.execute("SELECT 1 FROM pg_indexes WHERE indexname = %s", (name,))
        return await cur.fetchone() is not None


@pytest.mark.asyncio
async def test_all_strategies_on_shared_instance():
    await seed()
    manager = ForkLifecycleManager(None, shared_url=DATABASE_URL)
    orchestrator = Orchestrator(manager, settings=OrchestratorSettings())

    run = await orchestrator.optimize("User lookups by email are slow")

    assert len(run.results) == 4
    assert all(r.status == StrategyStatus.COMPLETE for r in run.results)
    assert all(r.is_fallback for r in run.results)
    assert run.winner_strategy_id in run.selected_strategies


@pytest.mark.asyncio
async def test_failed_promotion_leaves_database_unchanged():
    await seed()
    coordinator = PromotionCoordinator(DATABASE_URL)
    statement = "CREATE INDEX IF NOT EXISTS pu_test_promotion_idx ON pu_test_users (created_at)"

    with pytest.raises(PromotionFailed) as exc_info:
        await coordinator.promote("fallback-test", [statement, "INVALID SQL"])

    assert exc_info.value.statement == "INVALID SQL"
    assert not await index_exists("pu_test_promotion_idx")

    outcome = await coordinator.promote("fallback-test", [statement])
    assert outcome.applied_count == 1
    assert await index_exists("pu_test_promotion_idx")
