"""Query strategy: bounded rewrites of slow probe statements."""

import re

from .base import (
    AnalysisSnapshot,
    Recommendation,
    RecommendationSet,
    Strategy,
    namespaced,
    quote_ident,
)

ROW_LIMIT = 1000

_LIMIT_RE = re.compile(r"\blimit\b", re.IGNORECASE)


def rewrite_query(query: str) -> str:
    """Apply simple rewrite patterns; returns the query unchanged if none fit."""
    rewritten = query.strip().rstrip(";").strip()
    if rewritten.lower().startswith("select") and not _LIMIT_RE.search(rewritten):
        rewritten = f"{rewritten} LIMIT {ROW_LIMIT}"
    return rewritten


class QueryStrategy(Strategy):
    """Rewrites slow statements and publishes each rewrite as a view."""

    strategy_id = "query"
    display_name = "Query"
    simulated_improvement = (0.15, 0.40)
    cost_per_change = 10.0  # Complexity score per rewrite

    def rule_based_recommendations(
        self,
        problem_description: str,
        snapshot: AnalysisSnapshot,
    ) -> list[Recommendation]:
        recommendations = []
        for position, query in enumerate(snapshot.workload, start=1):
            rewritten = rewrite_query(query)
            if rewritten == query.strip():
                continue

            view_name = namespaced(self.strategy_id, "rewrite", str(position))
            recommendations.append(
                Recommendation(
                    kind="query_rewrite",
                    target=query,
                    statement=f"CREATE OR REPLACE VIEW {quote_ident(view_name)} AS {rewritten}",
                    reason="Added result limiting",
                )
            )
        return recommendations

    def workload_rewrites(
        self,
        snapshot: AnalysisSnapshot,
        recommendations: RecommendationSet,
    ) -> dict[str, str]:
        return {rec.target: rewrite_query(rec.target) for rec in recommendations.recommendations}

    def summarize(self, recommendations: RecommendationSet, changes: list[str]) -> str:
        if not changes:
            return "No query optimizations applied"
        noun = "query" if len(changes) == 1 else "queries"
        return f"Optimized {len(changes)} {noun}: added result limiting"
