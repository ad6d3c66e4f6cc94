"""Optimization run Pydantic schemas."""

from datetime import datetime, timezone
from enum import Enum

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class CamelModel(BaseModel):
    """Base model serialized with camelCase keys for the UI layer."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class StrategyStatus(str, Enum):
    """Outcome of one strategy runner."""

    COMPLETE = "complete"
    FAILED = "failed"


class RunState(str, Enum):
    """Optimization run state machine."""

    CREATED = "created"
    PROVISIONING = "provisioning"
    RUNNING = "running"
    AGGREGATING = "aggregating"
    DONE = "done"


class SchedulingMode(str, Enum):
    """How strategy runners are scheduled."""

    SEQUENTIAL = "sequential"
    PARALLEL = "parallel"


class StrategyResult(CamelModel):
    """Result of one strategy executed against one fork.

    applied_changes is always empty for failed results, and
    improvement_percent is only meaningful for complete ones.
    """

    strategy_id: str
    status: StrategyStatus
    improvement_percent: float = Field(0.0, ge=0.0, le=100.0)
    baseline_latency_ms: float | None = None
    optimized_latency_ms: float | None = None
    applied_changes: list[str] = Field(default_factory=list)
    cost_estimate: float = 0.0
    error: str | None = None
    fork_id: str | None = None
    is_fallback: bool = False
    simulated: bool = False

    # Presentation
    universe: str | None = None
    symbol: str | None = None
    summary: str | None = None
    duration_ms: float | None = None

    @property
    def is_complete(self) -> bool:
        return self.status == StrategyStatus.COMPLETE

    @classmethod
    def failed(
        cls,
        strategy_id: str,
        error: str,
        fork_id: str | None = None,
        is_fallback: bool = False,
        **extra,
    ) -> "StrategyResult":
        """Build a failed result with no applied changes."""
        return cls(
            strategy_id=strategy_id,
            status=StrategyStatus.FAILED,
            error=error,
            fork_id=fork_id,
            is_fallback=is_fallback,
            **extra,
        )


class CostSummary(CamelModel):
    """Zero-copy forks versus full clones, for reporting only."""

    fork_count: int
    traditional_cost: float
    actual_cost: float
    savings_multiplier: int


class OptimizationRun(CamelModel):
    """One end-to-end optimization request and its results."""

    run_id: str
    problem_description: str
    selected_strategies: list[str]
    mode: SchedulingMode = SchedulingMode.SEQUENTIAL
    state: RunState = RunState.CREATED
    results: list[StrategyResult] = Field(default_factory=list)
    winner_strategy_id: str | None = None
    cost_summary: CostSummary | None = None
    created_at: datetime = Field(default_factory=utcnow)
    completed_at: datetime | None = None

    @property
    def winner(self) -> StrategyResult | None:
        for result in self.results:
            if result.strategy_id == self.winner_strategy_id:
                return result
        return None


class PromotionOutcome(CamelModel):
    """Result of a committed promotion."""

    fork_id: str
    applied_count: int
    timestamp: datetime = Field(default_factory=utcnow)


class RunSummary(CamelModel):
    """Condensed view of a completed run for the history listing."""

    run_id: str
    problem_description: str
    strategy: str | None
    improvement: float | None
    execution_time: float | None
    created_at: datetime

    @classmethod
    def from_run(cls, run: OptimizationRun) -> "RunSummary":
        winner = run.winner
        return cls(
            run_id=run.run_id,
            problem_description=run.problem_description,
            strategy=run.winner_strategy_id,
            improvement=winner.improvement_percent if winner else None,
            execution_time=winner.optimized_latency_ms if winner else None,
            created_at=run.created_at,
        )
