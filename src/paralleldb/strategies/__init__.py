"""Optimization strategies and their registry."""

from .base import (
    AnalysisSnapshot,
    LatencySample,
    Recommendation,
    RecommendationSet,
    Strategy,
    TableStats,
)
from .cache import CacheStrategy
from .index import IndexStrategy
from .query import QueryStrategy
from .schema import SchemaStrategy

# Selection order when a request does not name strategies
STRATEGIES: dict[str, type[Strategy]] = {
    IndexStrategy.strategy_id: IndexStrategy,
    QueryStrategy.strategy_id: QueryStrategy,
    CacheStrategy.strategy_id: CacheStrategy,
    SchemaStrategy.strategy_id: SchemaStrategy,
}

__all__ = [
    "STRATEGIES",
    "AnalysisSnapshot",
    "LatencySample",
    "Recommendation",
    "RecommendationSet",
    "Strategy",
    "TableStats",
    "CacheStrategy",
    "IndexStrategy",
    "QueryStrategy",
    "SchemaStrategy",
]
