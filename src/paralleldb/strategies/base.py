"""Strategy execution contract and shared PostgreSQL introspection.

Every strategy runs the same phases against its fork connection:

1. analyze   - read-only introspection (slow statements, table statistics)
2. recommend - rule-based recommendations, optionally with advisory text
3. benchmark - time a bounded probe workload (before and after apply)
4. apply     - execute idempotent, namespaced statements
5. cleanup   - release resources, exactly once

Objects created by a strategy are always named ``pu_<strategy>_...`` so
runners sharing the fallback instance never collide.
"""

import re
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, ClassVar

import psycopg
import structlog
from psycopg.rows import dict_row

from ..core.advisory import ADVISORY_UNAVAILABLE, AdvisoryService, is_unavailable

logger = structlog.get_logger(__name__)

DEFAULT_PROBE_QUERY = "SELECT COUNT(*) FROM pg_catalog.pg_tables"
FAILED_QUERY_MS = 100.0  # Charged for probe statements that error out
MAX_IDENTIFIER_LENGTH = 63

_UNSAFE_NAME_CHARS = re.compile(r"[^a-z0-9_]+")


def quote_ident(name: str) -> str:
    """Quote a PostgreSQL identifier."""
    return '"' + name.replace('"', '""') + '"'


def qualified(schema: str, table: str) -> str:
    return f"{quote_ident(schema)}.{quote_ident(table)}"


def namespaced(strategy_id: str, *parts: str) -> str:
    """Stable object name keyed by strategy id, e.g. pu_index_users_email."""
    raw = "_".join(("pu", strategy_id) + parts).lower()
    return _UNSAFE_NAME_CHARS.sub("_", raw)[:MAX_IDENTIFIER_LENGTH]


def is_parameterless_select(query: str) -> bool:
    """Whether a normalized statement can be re-run verbatim."""
    text = query.strip().lower()
    return text.startswith("select") and "$" not in text


@dataclass
class TableStats:
    """Per-table statistics from pg_stat_user_tables."""

    schema: str
    table: str
    seq_scan: int = 0
    idx_scan: int = 0
    live_tuples: int = 0
    dead_tuples: int = 0
    size_bytes: int = 0
    columns: list[str] = field(default_factory=list)

    @property
    def qualified_name(self) -> str:
        return qualified(self.schema, self.table)

    def key_columns(self) -> list[str]:
        """Columns likely used in joins and filters, most likely first."""
        fk_like = [c for c in self.columns if c.endswith("_id")]
        named = [c for c in ("email", "created_at") if c in self.columns]
        return fk_like + named


@dataclass
class AnalysisSnapshot:
    """Read-only view of a fork's current state."""

    slow_queries: list[dict[str, Any]] = field(default_factory=list)
    frequent_queries: list[dict[str, Any]] = field(default_factory=list)
    tables: list[TableStats] = field(default_factory=list)
    workload: list[str] = field(default_factory=list)

    @property
    def average_query_time_ms(self) -> float:
        if not self.slow_queries:
            return 0.0
        total = sum(float(q.get("mean_exec_time") or 0) for q in self.slow_queries)
        return round(total / len(self.slow_queries), 2)


@dataclass
class Recommendation:
    """One concrete change a strategy intends to make."""

    kind: str
    target: str
    statement: str
    reason: str = ""


@dataclass
class RecommendationSet:
    """Recommendations plus whatever the advisory service said."""

    recommendations: list[Recommendation] = field(default_factory=list)
    advice: str = ADVISORY_UNAVAILABLE
    # Probe statement -> rewritten statement for the after-benchmark
    rewrites: dict[str, str] = field(default_factory=dict)

    @property
    def rule_based(self) -> bool:
        return is_unavailable(self.advice)


@dataclass
class LatencySample:
    """Wall-clock timings of one probe workload pass."""

    timings_ms: list[float] = field(default_factory=list)

    @property
    def average_ms(self) -> float:
        if not self.timings_ms:
            return 0.0
        return sum(self.timings_ms) / len(self.timings_ms)

    @property
    def query_count(self) -> int:
        return len(self.timings_ms)


async def fetch_all(conn: Any, query: str, params: Any = None) -> list[dict[str, Any]]:
    """Run a query and return rows as dicts."""
    async with conn.cursor(row_factory=dict_row) as cur:
        await cur.execute(query, params)
        return await cur.fetchall()


class Strategy(ABC):
    """Base class for optimization strategies.

    Subclasses declare their id and implement rule-based recommendations;
    the phases themselves are shared.
    """

    strategy_id: ClassVar[str]
    display_name: ClassVar[str]
    # Range of improvement factors used when measurements are too small to trust
    simulated_improvement: ClassVar[tuple[float, float]] = (0.25, 0.50)
    cost_per_change: ClassVar[float] = 0.0
    max_changes: ClassVar[int] = 3

    def __init__(
        self,
        advisory: AdvisoryService | None = None,
        probe_query_limit: int = 3,
        slow_query_threshold_ms: float = 10.0,
    ):
        self._advisory = advisory
        self._probe_query_limit = probe_query_limit
        self._slow_query_threshold_ms = slow_query_threshold_ms
        self._snapshot: AnalysisSnapshot | None = None

    # ------------------------------------------------------------------
    # Phase 1: analyze
    # ------------------------------------------------------------------

    async def analyze(self, conn: Any) -> AnalysisSnapshot:
        """Introspect the fork without mutating it."""
        slow_queries = await self._optional_fetch(
            conn,
            """
            SELECT query, calls, total_exec_time, mean_exec_time, stddev_exec_time
            FROM pg_stat_statements
            WHERE query NOT LIKE '%%pg_stat%%'
              AND query NOT LIKE '%%pg_catalog%%'
              AND mean_exec_time > %s
            ORDER BY mean_exec_time DESC
            LIMIT 10
            """,
            (self._slow_query_threshold_ms,),
        )
        frequent_queries = await self._optional_fetch(
            conn,
            """
            SELECT query, calls, mean_exec_time, total_exec_time
            FROM pg_stat_statements
            WHERE calls > 10
              AND query NOT LIKE '%pg_stat%'
            ORDER BY calls DESC
            LIMIT 5
            """,
        )
        table_rows = await fetch_all(
            conn,
            """
            SELECT schemaname, relname AS tablename, seq_scan,
                   COALESCE(idx_scan, 0) AS idx_scan,
                   n_live_tup AS live_tuples, n_dead_tup AS dead_tuples,
                   pg_total_relation_size(relid) AS size_bytes
            FROM pg_stat_user_tables
            ORDER BY seq_scan DESC
            LIMIT 10
            """,
        )

        tables = [
            TableStats(
                schema=row["schemaname"],
                table=row["tablename"],
                seq_scan=row.get("seq_scan") or 0,
                idx_scan=row.get("idx_scan") or 0,
                live_tuples=row.get("live_tuples") or 0,
                dead_tuples=row.get("dead_tuples") or 0,
                size_bytes=row.get("size_bytes") or 0,
            )
            for row in table_rows
        ]
        await self._load_columns(conn, tables)

        workload = [q["query"] for q in slow_queries if is_parameterless_select(q["query"])]
        if not workload:
            workload = [DEFAULT_PROBE_QUERY]

        self._snapshot = AnalysisSnapshot(
            slow_queries=slow_queries,
            frequent_queries=frequent_queries,
            tables=tables,
            workload=workload[: self._probe_query_limit],
        )

        logger.info(
            "Analyzed fork",
            strategy=self.strategy_id,
            slow_queries=len(slow_queries),
            tables=len(tables),
        )
        return self._snapshot

    async def _load_columns(self, conn: Any, tables: list[TableStats]) -> None:
        if not tables:
            return

        rows = await fetch_all(
            conn,
            """
            SELECT table_schema, table_name, column_name
            FROM information_schema.columns
            WHERE table_schema = ANY(%s) AND table_name = ANY(%s)
            ORDER BY table_schema, table_name, ordinal_position
            """,
            ([t.schema for t in tables], [t.table for t in tables]),
        )
        by_table = {(t.schema, t.table): t for t in tables}
        for row in rows:
            table = by_table.get((row["table_schema"], row["table_name"]))
            if table is not None:
                table.columns.append(row["column_name"])

    async def _optional_fetch(self, conn: Any, query: str, params: Any = None) -> list[dict[str, Any]]:
        # pg_stat_statements is an optional extension
        try:
            return await fetch_all(conn, query, params)
        except psycopg.Error as e:
            logger.warning("Statement statistics unavailable", strategy=self.strategy_id, error=str(e))
            return []

    # ------------------------------------------------------------------
    # Phase 2: recommend
    # ------------------------------------------------------------------

    async def recommend(self, problem_description: str, snapshot: AnalysisSnapshot) -> RecommendationSet:
        """Build recommendations, consulting the advisory service if present."""
        advice = ADVISORY_UNAVAILABLE
        if self._advisory is not None:
            advice = await self._advisory.advise(self.advisory_prompt(problem_description, snapshot))

        recommendations = self.rule_based_recommendations(problem_description, snapshot)
        recommendation_set = RecommendationSet(
            recommendations=recommendations[: self.max_changes],
            advice=advice,
        )
        recommendation_set.rewrites = self.workload_rewrites(snapshot, recommendation_set)

        logger.info(
            "Built recommendations",
            strategy=self.strategy_id,
            count=len(recommendation_set.recommendations),
            rule_based=recommendation_set.rule_based,
        )
        return recommendation_set

    def advisory_prompt(self, problem_description: str, snapshot: AnalysisSnapshot) -> str:
        return (
            f"I need to optimize database performance. {problem_description}\n\n"
            f"Current issues:\n"
            f"- {len(snapshot.slow_queries)} slow queries detected\n"
            f"- {sum(1 for t in snapshot.tables if t.seq_scan > t.idx_scan)} tables with "
            f"excessive sequential scans\n"
            f"- Average query time: {snapshot.average_query_time_ms}ms\n\n"
            f"Recommend 2-3 high-impact {self.display_name.lower()} changes."
        )

    @abstractmethod
    def rule_based_recommendations(
        self,
        problem_description: str,
        snapshot: AnalysisSnapshot,
    ) -> list[Recommendation]:
        """Deterministic recommendations from the snapshot alone."""
        ...

    def workload_rewrites(
        self,
        snapshot: AnalysisSnapshot,
        recommendations: RecommendationSet,
    ) -> dict[str, str]:
        """Probe statements to replace in the after-benchmark."""
        return {}

    # ------------------------------------------------------------------
    # Phase 3: benchmark
    # ------------------------------------------------------------------

    async def benchmark(self, conn: Any, workload: list[str]) -> LatencySample:
        """Run each probe statement once and record its latency."""
        sample = LatencySample()
        for query in (workload or [DEFAULT_PROBE_QUERY])[: self._probe_query_limit]:
            start = time.perf_counter()
            try:
                await conn.execute(query)
            except psycopg.Error as e:
                logger.warning("Could not benchmark query", strategy=self.strategy_id, error=str(e))
                sample.timings_ms.append(FAILED_QUERY_MS)
                continue
            sample.timings_ms.append((time.perf_counter() - start) * 1000)
        return sample

    def rewrite_workload(
        self,
        workload: list[str],
        recommendations: RecommendationSet,
        applied: list[str] | None = None,
    ) -> list[str]:
        """Workload used for the after-benchmark.

        When ``applied`` is given, only rewrites backed by a statement that
        actually ran are used.
        """
        rewrites = recommendations.rewrites
        if applied is not None:
            targets = {r.target for r in recommendations.recommendations if r.statement in applied}
            rewrites = {query: rewrite for query, rewrite in rewrites.items() if query in targets}
        return [rewrites.get(query, query) for query in workload]

    # ------------------------------------------------------------------
    # Phase 4: apply
    # ------------------------------------------------------------------

    async def apply(self, conn: Any, recommendations: RecommendationSet) -> list[str]:
        """Execute recommended statements; return those that succeeded."""
        applied: list[str] = []
        for rec in recommendations.recommendations:
            try:
                await conn.execute(rec.statement)
            except psycopg.Error as e:
                logger.warning(
                    "Could not apply change",
                    strategy=self.strategy_id,
                    target=rec.target,
                    error=str(e),
                )
                continue
            applied.append(rec.statement)
            logger.info("Applied change", strategy=self.strategy_id, kind=rec.kind, target=rec.target)
        return applied

    # ------------------------------------------------------------------
    # Reporting and cleanup
    # ------------------------------------------------------------------

    def estimate_cost(self, changes: list[str]) -> float:
        return len(changes) * self.cost_per_change

    def summarize(self, recommendations: RecommendationSet, changes: list[str]) -> str:
        if not changes:
            return f"No {self.display_name.lower()} changes applied"
        return f"Applied {len(changes)} {self.display_name.lower()} change{'s' if len(changes) > 1 else ''}"

    async def cleanup(self) -> None:
        """Release anything held between phases."""
        self._snapshot = None
