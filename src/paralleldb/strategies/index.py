"""Index strategy: B-tree indexes on key-like columns of seq-scan-heavy tables."""

from .base import (
    AnalysisSnapshot,
    Recommendation,
    RecommendationSet,
    Strategy,
    namespaced,
    quote_ident,
)


class IndexStrategy(Strategy):
    """Creates indexes where sequential scans dominate."""

    strategy_id = "index"
    display_name = "Index"
    simulated_improvement = (0.25, 0.50)
    cost_per_change = 512.0  # ~512KB per index

    def rule_based_recommendations(
        self,
        problem_description: str,
        snapshot: AnalysisSnapshot,
    ) -> list[Recommendation]:
        candidates = [t for t in snapshot.tables if t.seq_scan > t.idx_scan and t.live_tuples > 100]
        if not candidates:
            candidates = [t for t in snapshot.tables if t.seq_scan > 0]

        recommendations = []
        for table in candidates:
            columns = table.key_columns()
            if not columns:
                continue

            column = columns[0]
            index_name = namespaced(self.strategy_id, table.table, column)
            recommendations.append(
                Recommendation(
                    kind="btree",
                    target=f"{table.schema}.{table.table}.{column}",
                    statement=(
                        f"CREATE INDEX IF NOT EXISTS {quote_ident(index_name)} "
                        f"ON {table.qualified_name} USING btree ({quote_ident(column)})"
                    ),
                    reason=(
                        f"Table has {table.live_tuples} rows with {table.seq_scan} "
                        f"sequential scans"
                    ),
                )
            )
            if len(recommendations) >= self.max_changes:
                break

        return recommendations

    def summarize(self, recommendations: RecommendationSet, changes: list[str]) -> str:
        if not changes:
            return "No indexes applied"

        applied = [r for r in recommendations.recommendations if r.statement in changes]
        tables = sorted({r.target.rsplit(".", 1)[0] for r in applied})
        noun = "index" if len(changes) == 1 else "indexes"
        return f"Created {len(changes)} btree {noun} on {', '.join(tables)} to optimize query performance"
