"""Cache strategy: materialized views over frequently repeated statements."""

from .base import (
    AnalysisSnapshot,
    Recommendation,
    RecommendationSet,
    Strategy,
    is_parameterless_select,
    namespaced,
    quote_ident,
)


class CacheStrategy(Strategy):
    """Materializes hot, parameterless SELECTs."""

    strategy_id = "cache"
    display_name = "Cache"
    simulated_improvement = (0.40, 0.60)
    cost_per_change = 1024.0  # ~1MB per cached view
    max_changes = 2

    def rule_based_recommendations(
        self,
        problem_description: str,
        snapshot: AnalysisSnapshot,
    ) -> list[Recommendation]:
        queries = [q["query"] for q in snapshot.frequent_queries if is_parameterless_select(q["query"])]
        # Fall back to the probe workload when nothing is called often enough
        queries = queries or [q for q in snapshot.workload if is_parameterless_select(q)]

        recommendations = []
        for position, query in enumerate(queries[: self.max_changes], start=1):
            view_name = namespaced(self.strategy_id, str(position))
            body = query.strip().rstrip(";")
            recommendations.append(
                Recommendation(
                    kind="materialized_view",
                    target=query,
                    statement=f"CREATE MATERIALIZED VIEW IF NOT EXISTS {quote_ident(view_name)} AS {body}",
                    reason="Frequently executed statement",
                )
            )
        return recommendations

    def workload_rewrites(
        self,
        snapshot: AnalysisSnapshot,
        recommendations: RecommendationSet,
    ) -> dict[str, str]:
        rewrites = {}
        for position, rec in enumerate(recommendations.recommendations, start=1):
            view_name = namespaced(self.strategy_id, str(position))
            rewrites[rec.target] = f"SELECT * FROM {quote_ident(view_name)}"
        return rewrites

    def summarize(self, recommendations: RecommendationSet, changes: list[str]) -> str:
        if not changes:
            return "No materialized views created"
        noun = "view" if len(changes) == 1 else "views"
        return (
            f"Created {len(changes)} materialized {noun} to cache frequently "
            f"accessed data and reduce query load"
        )
