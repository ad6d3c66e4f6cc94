"""Pydantic schemas for data structures."""

from .fork import ForkHandle, ForkLifecycleState, ProvisionedFork
from .run import (
    CostSummary,
    OptimizationRun,
    PromotionOutcome,
    RunState,
    RunSummary,
    SchedulingMode,
    StrategyResult,
    StrategyStatus,
)

__all__ = [
    # Fork
    "ForkHandle",
    "ForkLifecycleState",
    "ProvisionedFork",
    # Run
    "CostSummary",
    "OptimizationRun",
    "PromotionOutcome",
    "RunState",
    "RunSummary",
    "SchedulingMode",
    "StrategyResult",
    "StrategyStatus",
]
