"""Optimization orchestration: scheduling, strategy runners and promotion."""

from .history import RunHistory
from .orchestrator import UNIVERSES, Orchestrator, compute_cost_summary, select_winner
from .promotion import PromotionCoordinator
from .runner import Improvement, StrategyRunner, compute_improvement, connect_fork

__all__ = [
    "UNIVERSES",
    "Improvement",
    "Orchestrator",
    "PromotionCoordinator",
    "RunHistory",
    "StrategyRunner",
    "compute_cost_summary",
    "compute_improvement",
    "connect_fork",
    "select_winner",
]
