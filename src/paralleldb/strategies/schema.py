"""Schema strategy: planner statistics tuning on the largest tables."""

from .base import (
    AnalysisSnapshot,
    Recommendation,
    RecommendationSet,
    Strategy,
    quote_ident,
)

STATISTICS_TARGET = 500


class SchemaStrategy(Strategy):
    """Raises statistics targets on key columns and refreshes statistics."""

    strategy_id = "schema"
    display_name = "Schema"
    simulated_improvement = (0.25, 0.40)
    cost_per_change = 256.0
    max_changes = 4

    def rule_based_recommendations(
        self,
        problem_description: str,
        snapshot: AnalysisSnapshot,
    ) -> list[Recommendation]:
        tables = sorted(snapshot.tables, key=lambda t: t.size_bytes, reverse=True)[:2]

        recommendations = []
        for table in tables:
            columns = table.key_columns()
            if columns:
                recommendations.append(
                    Recommendation(
                        kind="statistics_target",
                        target=f"{table.schema}.{table.table}.{columns[0]}",
                        statement=(
                            f"ALTER TABLE {table.qualified_name} ALTER COLUMN "
                            f"{quote_ident(columns[0])} SET STATISTICS {STATISTICS_TARGET}"
                        ),
                        reason="Finer histograms for a frequently filtered column",
                    )
                )
            recommendations.append(
                Recommendation(
                    kind="statistics",
                    target=f"{table.schema}.{table.table}",
                    statement=f"ANALYZE {table.qualified_name}",
                    reason="Updated table statistics for query planner",
                )
            )
        return recommendations

    def summarize(self, recommendations: RecommendationSet, changes: list[str]) -> str:
        if not changes:
            return "No schema optimizations applied"

        kinds = sorted({r.kind for r in recommendations.recommendations if r.statement in changes})
        noun = "optimization" if len(changes) == 1 else "optimizations"
        return (
            f"Applied {len(changes)} schema {noun}: {', '.join(kinds)} "
            f"to improve query planning"
        )
