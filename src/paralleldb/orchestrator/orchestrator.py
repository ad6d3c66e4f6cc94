"""Optimization orchestrator.

Validates a request, provisions one fork per selected strategy, runs the
strategies sequentially or concurrently, and aggregates their results
into an OptimizationRun with a winner and a cost summary.
"""

import asyncio
import functools
import random
import uuid
from typing import Callable

import structlog

from ..config import OrchestratorSettings, Settings, get_settings
from ..core.advisory import AdvisoryService
from ..core.messaging import Events, emit
from ..exceptions import ValidationFailure
from ..forks.manager import ForkLifecycleManager
from ..schemas.fork import ForkHandle
from ..schemas.run import (
    CostSummary,
    OptimizationRun,
    PromotionOutcome,
    RunState,
    SchedulingMode,
    StrategyResult,
    utcnow,
)
from ..strategies import STRATEGIES, Strategy
from .history import RunHistory
from .runner import Connector, StrategyRunner, connect_fork

logger = structlog.get_logger(__name__)

# Presentation names, assigned by selection position
UNIVERSES = [
    ("alpha", "α"),
    ("beta", "β"),
    ("gamma", "γ"),
    ("delta", "δ"),
]

StrategyFactory = Callable[[], Strategy]


def select_winner(results: list[StrategyResult], selection: list[str]) -> StrategyResult | None:
    """Pick the winning complete result.

    Greatest improvement wins; ties go to the lower optimized latency and
    then to the strategy listed first in the selection.
    """
    order = {strategy_id: position for position, strategy_id in enumerate(selection)}
    complete = [r for r in results if r.is_complete]
    if not complete:
        return None

    def rank(result: StrategyResult) -> tuple[float, float, int]:
        latency = result.optimized_latency_ms
        return (
            -result.improvement_percent,
            latency if latency is not None else float("inf"),
            order.get(result.strategy_id, len(order)),
        )

    return min(complete, key=rank)


def compute_cost_summary(
    fork_count: int,
    cost_per_traditional_clone: float = 11.88,
    cost_per_zero_copy_fork: float = 0.02,
) -> CostSummary:
    """Compare zero-copy forks against full database clones."""
    traditional = round(fork_count * cost_per_traditional_clone, 2)
    actual = round(fork_count * cost_per_zero_copy_fork, 2)
    savings = round(traditional / actual) if actual > 0 else 0
    return CostSummary(
        fork_count=fork_count,
        traditional_cost=traditional,
        actual_cost=actual,
        savings_multiplier=savings,
    )


class Orchestrator:
    """Runs competing strategies on isolated forks and picks a winner."""

    def __init__(
        self,
        fork_manager: ForkLifecycleManager,
        strategies: dict[str, StrategyFactory] | None = None,
        mode: SchedulingMode | str = SchedulingMode.SEQUENTIAL,
        settings: OrchestratorSettings | None = None,
        connector: Connector | None = None,
        advisory: AdvisoryService | None = None,
        history: RunHistory | None = None,
        rng: random.Random | None = None,
    ):
        """Initialize the orchestrator.

        Args:
            fork_manager: Manager used to create and delete forks
            strategies: Strategy id to factory, in default selection order
            mode: Default scheduling mode
            settings: Orchestrator tuning; defaults are used when omitted
            connector: Opens a connection to a fork handle
            advisory: Advisory service shared by all strategies
            history: Store for completed runs
            rng: Random source for simulated estimates
        """
        self.settings = settings or OrchestratorSettings()
        self.fork_manager = fork_manager
        self.mode = SchedulingMode(mode)
        self.history = history or RunHistory(self.settings.history_size)
        self._connector = connector or connect_fork
        self._advisory = advisory
        self._rng = rng

        if strategies is None:
            strategies = {
                strategy_id: functools.partial(
                    cls,
                    advisory=advisory,
                    probe_query_limit=self.settings.probe_query_limit,
                )
                for strategy_id, cls in STRATEGIES.items()
            }
        self._strategies = strategies

        self._teardowns: dict[asyncio.Task, list[ForkHandle]] = {}

    @classmethod
    def from_settings(cls, settings: Settings | None = None) -> "Orchestrator":
        """Build an orchestrator with the Tiger CLI provider and promotion wired in."""
        from .promotion import PromotionCoordinator

        settings = settings or get_settings()
        promotion = PromotionCoordinator(
            settings.database.url,
            connect_timeout=settings.database.connect_timeout,
        )
        return cls(
            fork_manager=ForkLifecycleManager.from_settings(settings, promotion=promotion),
            mode=settings.orchestrator.mode,
            settings=settings.orchestrator,
            connector=functools.partial(
                connect_fork, connect_timeout=settings.database.connect_timeout
            ),
            advisory=AdvisoryService(),
        )

    @property
    def available_strategies(self) -> list[str]:
        return list(self._strategies)

    def validate(self, problem_description: str, strategies: list[str] | None = None) -> list[str]:
        """Validate a request and return the strategy selection.

        Raises:
            ValidationFailure: Empty problem, or an empty, unknown,
                duplicated or oversized strategy selection
        """
        if not problem_description or not problem_description.strip():
            raise ValidationFailure("Problem description is required")

        if strategies is None:
            return self.available_strategies

        if not strategies:
            raise ValidationFailure("At least one strategy must be selected")

        if len(strategies) > len(self._strategies):
            raise ValidationFailure(
                f"At most {len(self._strategies)} strategies can be selected"
            )

        unknown = [s for s in strategies if s not in self._strategies]
        if unknown:
            raise ValidationFailure(f"Unknown strategies: {', '.join(unknown)}")

        if len(set(strategies)) != len(strategies):
            raise ValidationFailure("Strategies must not be repeated")

        return list(strategies)

    async def optimize(
        self,
        problem_description: str,
        strategies: list[str] | None = None,
        mode: SchedulingMode | str | None = None,
    ) -> OptimizationRun:
        """Run the selected strategies and aggregate their results.

        Args:
            problem_description: User's description of the slowness
            strategies: Strategy ids in selection order (default: all)
            mode: Scheduling mode override for this run

        Returns:
            Completed OptimizationRun with one result per selected strategy

        Raises:
            ValidationFailure: Request rejected; no fork was created
        """
        selection = self.validate(problem_description, strategies)
        mode = SchedulingMode(mode) if mode else self.mode

        run = OptimizationRun(
            run_id=str(uuid.uuid4()),
            problem_description=problem_description.strip(),
            selected_strategies=selection,
            mode=mode,
        )
        log = logger.bind(run_id=run.run_id)
        log.info("Starting optimization run", strategies=selection, mode=mode.value)
        await emit(
            Events.OPTIMIZATION_STARTED,
            {
                "run_id": run.run_id,
                "problem_description": run.problem_description,
                "strategies": selection,
                "mode": mode.value,
            },
            correlation_id=run.run_id,
        )

        run.state = RunState.PROVISIONING
        if mode == SchedulingMode.PARALLEL:
            results, fork_count = await self._run_parallel(run)
        else:
            results, fork_count = await self._run_sequential(run)

        run.state = RunState.AGGREGATING
        by_id = {result.strategy_id: result for result in results}
        run.results = [by_id[strategy_id] for strategy_id in selection]

        winner = select_winner(run.results, selection)
        run.winner_strategy_id = winner.strategy_id if winner else None
        run.cost_summary = compute_cost_summary(
            fork_count,
            self.settings.cost_per_traditional_clone,
            self.settings.cost_per_zero_copy_fork,
        )
        run.completed_at = utcnow()
        run.state = RunState.DONE

        self.history.add(run)

        log.info(
            "Optimization run complete",
            winner=run.winner_strategy_id,
            improvement=winner.improvement_percent if winner else None,
            failed=sum(1 for r in run.results if not r.is_complete),
        )
        await emit(
            Events.OPTIMIZATION_COMPLETED,
            {
                "run_id": run.run_id,
                "winner_strategy_id": run.winner_strategy_id,
                "improvement": winner.improvement_percent if winner else None,
                "fork_count": fork_count,
            },
            correlation_id=run.run_id,
        )
        return run

    async def promote(self, fork_id: str, changes: list[str]) -> PromotionOutcome:
        """Promote a fork's recorded changes to production."""
        if not fork_id or not changes:
            raise ValidationFailure("Fork ID and at least one change are required")
        return await self.fork_manager.promote(fork_id, changes)

    def _runner(self, strategy_id: str) -> StrategyRunner:
        return StrategyRunner(
            strategy=self._strategies[strategy_id](),
            fork_manager=self.fork_manager,
            connector=self._connector,
            min_signal_ms=self.settings.min_signal_ms,
            simulate_low_signal=self.settings.simulate_low_signal,
            rng=self._rng,
        )

    def _presentation(self, position: int) -> dict[str, str]:
        universe, symbol = UNIVERSES[position % len(UNIVERSES)]
        return {"universe": universe, "symbol": symbol}

    def _fork_name(self, run: OptimizationRun, strategy_id: str) -> str:
        return f"pu-{run.run_id[:8]}-{strategy_id}"

    def _provisioning_failed(self, strategy_id: str, error: Exception, position: int) -> StrategyResult:
        logger.error("Fork provisioning failed", strategy=strategy_id, error=str(error))
        return StrategyResult.failed(
            strategy_id=strategy_id,
            error=f"provisioning failed: {error}",
            **self._presentation(position),
        )

    def _runner_failed(self, strategy_id: str, error: Exception, position: int) -> StrategyResult:
        logger.error("Could not set up strategy", strategy=strategy_id, error=str(error))
        return StrategyResult.failed(
            strategy_id=strategy_id,
            error=f"setup failed: {error}",
            **self._presentation(position),
        )

    def _build_runners(
        self, selection: list[str]
    ) -> tuple[dict[str, StrategyRunner], list[StrategyResult]]:
        """Instantiate runners before any fork exists, isolating broken strategies."""
        runners = {}
        failed = []
        for position, strategy_id in enumerate(selection):
            try:
                runners[strategy_id] = self._runner(strategy_id)
            except Exception as e:
                failed.append(self._runner_failed(strategy_id, e, position))
        return runners, failed

    async def _run_sequential(self, run: OptimizationRun) -> tuple[list[StrategyResult], int]:
        """Create, run and delete one fork at a time."""
        runners, results = self._build_runners(run.selected_strategies)
        fork_count = 0

        for position, strategy_id in enumerate(run.selected_strategies):
            runner = runners.get(strategy_id)
            if runner is None:
                continue

            try:
                handle = await self.fork_manager.create_fork(self._fork_name(run, strategy_id))
            except Exception as e:
                results.append(self._provisioning_failed(strategy_id, e, position))
                continue

            fork_count += 1
            run.state = RunState.RUNNING
            # The runner deletes the fork before returning
            result = await runner.run(
                handle,
                run.problem_description,
                delete_fork=True,
                run_id=run.run_id,
                **self._presentation(position),
            )
            results.append(result)

        return results, fork_count

    async def _run_parallel(self, run: OptimizationRun) -> tuple[list[StrategyResult], int]:
        """Create all forks, run all strategies concurrently, defer teardown."""
        runners, results = self._build_runners(run.selected_strategies)
        selection = [s for s in run.selected_strategies if s in runners]
        create_tasks = [
            asyncio.create_task(self.fork_manager.create_fork(self._fork_name(run, strategy_id)))
            for strategy_id in selection
        ]
        try:
            outcomes = await asyncio.gather(*create_tasks, return_exceptions=True)
        except asyncio.CancelledError:
            created = [
                task.result()
                for task in create_tasks
                if task.done() and not task.cancelled() and task.exception() is None
            ]
            await self._teardown(created)
            raise

        handles: list[ForkHandle] = []
        runs = []
        for strategy_id, outcome in zip(selection, outcomes):
            position = run.selected_strategies.index(strategy_id)
            if isinstance(outcome, BaseException):
                results.append(self._provisioning_failed(strategy_id, outcome, position))
                continue
            handles.append(outcome)
            runs.append(
                (
                    strategy_id,
                    outcome,
                    runners[strategy_id].run(
                        outcome,
                        run.problem_description,
                        delete_fork=False,
                        run_id=run.run_id,
                        **self._presentation(position),
                    ),
                )
            )

        run.state = RunState.RUNNING
        try:
            outcomes = await asyncio.gather(*(coro for _, _, coro in runs), return_exceptions=True)
        except asyncio.CancelledError:
            await self._teardown(handles)
            raise

        for (strategy_id, handle, _), outcome in zip(runs, outcomes):
            if isinstance(outcome, BaseException):
                logger.error("Strategy runner crashed", strategy=strategy_id, error=str(outcome))
                outcome = StrategyResult.failed(
                    strategy_id=strategy_id,
                    error=str(outcome),
                    fork_id=handle.id,
                    is_fallback=handle.is_fallback,
                    **self._presentation(run.selected_strategies.index(strategy_id)),
                )
            results.append(outcome)

        self._schedule_teardown(handles)
        return results, len(handles)

    def _schedule_teardown(self, handles: list[ForkHandle]) -> None:
        """Delete forks after the grace period, leaving room for late promotions."""
        handles = [h for h in handles if not h.is_fallback]
        if not handles:
            return

        grace = self.settings.teardown_grace_seconds
        logger.info("Scheduling fork teardown", forks=[h.id for h in handles], grace_seconds=grace)
        task = asyncio.create_task(self._deferred_teardown(handles, grace))
        self._teardowns[task] = handles
        task.add_done_callback(lambda t: self._teardowns.pop(t, None))

    async def _deferred_teardown(self, handles: list[ForkHandle], delay: float) -> None:
        await asyncio.sleep(delay)
        await self._teardown(handles)

    async def _teardown(self, handles: list[ForkHandle]) -> None:
        outcomes = await asyncio.gather(
            *(self.fork_manager.delete_fork(handle) for handle in handles),
            return_exceptions=True,
        )
        for handle, outcome in zip(handles, outcomes):
            if isinstance(outcome, BaseException):
                logger.error("Fork teardown failed", fork_id=handle.id, error=str(outcome))

    @property
    def pending_teardowns(self) -> int:
        return len(self._teardowns)

    async def wait_for_teardowns(self) -> None:
        """Wait for all scheduled teardowns to finish."""
        if self._teardowns:
            await asyncio.gather(*list(self._teardowns), return_exceptions=True)

    async def shutdown(self, teardown_now: bool = True) -> None:
        """Cancel scheduled teardowns, optionally deleting their forks right away."""
        pending = list(self._teardowns.items())
        for task, _ in pending:
            task.cancel()
        await asyncio.gather(*(task for task, _ in pending), return_exceptions=True)

        if teardown_now:
            for _, handles in pending:
                await self._teardown(handles)

        logger.info("Orchestrator shut down", cancelled_teardowns=len(pending))
