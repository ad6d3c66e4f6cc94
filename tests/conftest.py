"""Pytest configuration and fixtures."""

import random
from contextlib import asynccontextmanager
from typing import Any

import psycopg
import pytest

from paralleldb.config import OrchestratorSettings
from paralleldb.exceptions import ForkProviderError
from paralleldb.forks.manager import ForkLifecycleManager
from paralleldb.forks.provider import ForkProvider
from paralleldb.orchestrator import Orchestrator
from paralleldb.schemas.fork import ProvisionedFork
from paralleldb.strategies.base import (
    AnalysisSnapshot,
    LatencySample,
    Recommendation,
    Strategy,
)

SHARED_URL = "postgresql://app@shared.example.com:5432/tsdb"


class FakeCursor:
    """Cursor answering queries from a substring -> rows table."""

    def __init__(self, conn: "FakeConnection"):
        self._conn = conn
        self._rows: list[dict[str, Any]] = []

    async def __aenter__(self) -> "FakeCursor":
        return self

    async def __aexit__(self, *exc: Any) -> None:
        return None

    async def execute(self, query: str, params: Any = None) -> None:
        self._conn.queries.append(query)
        for fragment, outcome in self._conn.results.items():
            if fragment in query:
                if isinstance(outcome, Exception):
                    raise outcome
                self._rows = list(outcome)
                return
        self._rows = []

    async def fetchall(self) -> list[dict[str, Any]]:
        return self._rows


class FakeConnection:
    """In-memory stand-in for psycopg.AsyncConnection.

    Statements listed in ``failing`` raise a psycopg error. Statements run
    inside ``transaction()`` only reach ``committed`` when the block exits
    cleanly.
    """

    def __init__(
        self,
        results: dict[str, Any] | None = None,
        failing: set[str] | None = None,
    ):
        self.results = results or {}
        self.failing = failing or set()
        self.queries: list[str] = []
        self.committed: list[str] = []
        self.closed = False
        self._pending: list[str] | None = None

    def cursor(self, row_factory: Any = None) -> FakeCursor:
        return FakeCursor(self)

    async def execute(self, query: str, params: Any = None) -> None:
        self.queries.append(query)
        if query in self.failing:
            raise psycopg.errors.SyntaxError(f'syntax error at or near "{query.split()[0]}"')
        if self._pending is not None:
            self._pending.append(query)
        else:
            self.committed.append(query)

    @asynccontextmanager
    async def transaction(self):
        self._pending = []
        try:
            yield self
        except BaseException:
            self._pending = None
            raise
        self.committed.extend(self._pending)
        self._pending = None

    async def close(self) -> None:
        self.closed = True


class FakeProvider(ForkProvider):
    """Provider tracking live forks, optionally unavailable."""

    def __init__(self, fail_create: bool = False, fail_delete: bool = False):
        self.fail_create = fail_create
        self.fail_delete = fail_delete
        self.created: list[str] = []
        self.deleted: list[str] = []
        self.active: set[str] = set()
        self.max_active = 0

    @property
    def provider_name(self) -> str:
        return "fake"

    async def create(self, name: str) -> ProvisionedFork:
        if self.fail_create:
            raise ForkProviderError("quota exceeded", command="service fork")
        fork_id = f"fork{len(self.created):06d}"
        self.created.append(fork_id)
        self.active.add(fork_id)
        self.max_active = max(self.max_active, len(self.active))
        return ProvisionedFork(
            id=fork_id,
            connection_descriptor=f"postgresql://tsdbadmin:secret@{fork_id}.example.com:5432/tsdb",
        )

    async def delete(self, fork_id: str) -> None:
        if self.fail_delete:
            raise ForkProviderError("service not found", command="service delete")
        self.deleted.append(fork_id)
        self.active.discard(fork_id)

    async def list_forks(self) -> list[str]:
        return sorted(self.active)


class ScriptedStrategy(Strategy):
    """Strategy with scripted latencies and an optional failing phase."""

    display_name = "Scripted"
    simulated_improvement = (0.25, 0.50)
    cost_per_change = 100.0

    def __init__(
        self,
        strategy_id: str,
        baseline_ms: float = 100.0,
        optimized_ms: float = 50.0,
        fail_phase: str | None = None,
        changes: list[str] | None = None,
    ):
        super().__init__()
        self.strategy_id = strategy_id
        self.baseline_ms = baseline_ms
        self.optimized_ms = optimized_ms
        self.fail_phase = fail_phase
        self.changes = changes or [f'CREATE INDEX IF NOT EXISTS "pu_{strategy_id}_t_id" ON t (id)']
        self.phases: list[str] = []
        self.cleanup_calls = 0

    def _enter(self, phase: str) -> None:
        self.phases.append(phase)
        if phase == self.fail_phase:
            raise RuntimeError(f"{self.strategy_id} broke during {phase}")

    async def analyze(self, conn: Any) -> AnalysisSnapshot:
        self._enter("analyze")
        return AnalysisSnapshot(workload=["SELECT 1"])

    def rule_based_recommendations(self, problem_description, snapshot):
        return [
            Recommendation(kind="scripted", target=self.strategy_id, statement=statement)
            for statement in self.changes
        ]

    async def recommend(self, problem_description, snapshot):
        self._enter("recommend")
        return await super().recommend(problem_description, snapshot)

    async def benchmark(self, conn: Any, workload: list[str]) -> LatencySample:
        self._enter("benchmark")
        first = self.phases.count("benchmark") == 1
        return LatencySample(timings_ms=[self.baseline_ms if first else self.optimized_ms])

    async def apply(self, conn: Any, recommendations) -> list[str]:
        self._enter("apply")
        return await super().apply(conn, recommendations)

    async def cleanup(self) -> None:
        self.cleanup_calls += 1
        await super().cleanup()


@pytest.fixture
def fake_provider() -> FakeProvider:
    return FakeProvider()


@pytest.fixture
def fork_manager(fake_provider) -> ForkLifecycleManager:
    return ForkLifecycleManager(fake_provider, shared_url=SHARED_URL, create_timeout=1.0)


@pytest.fixture
def connections() -> list[FakeConnection]:
    """Connections handed out by fake_connector, in order."""
    return []


@pytest.fixture
def fake_connector(connections):
    async def connect(handle):
        conn = FakeConnection()
        connections.append(conn)
        return conn

    return connect


@pytest.fixture
def scripted():
    """Registry of scripted strategies, filled in by each test."""
    return {}


@pytest.fixture
def make_orchestrator(fork_manager, fake_connector, scripted):
    """Build an orchestrator over the scripted strategies."""

    def build(mode: str = "sequential", manager: ForkLifecycleManager | None = None, **settings):
        settings.setdefault("ORCHESTRATOR_TEARDOWN_GRACE", 0)
        return Orchestrator(
            fork_manager=manager or fork_manager,
            strategies={sid: (lambda s=s: s) for sid, s in scripted.items()},
            mode=mode,
            settings=OrchestratorSettings(**settings),
            connector=fake_connector,
            rng=random.Random(7),
        )

    return build
