"""Bounded in-memory history of completed runs."""

from collections import deque

from ..schemas.run import OptimizationRun, RunSummary


class RunHistory:
    """Keeps the most recent completed runs; oldest are dropped first."""

    def __init__(self, max_size: int = 50):
        self._runs: deque[OptimizationRun] = deque(maxlen=max_size)

    def __len__(self) -> int:
        return len(self._runs)

    def add(self, run: OptimizationRun) -> None:
        self._runs.appendleft(run)

    def get(self, run_id: str) -> OptimizationRun | None:
        for run in self._runs:
            if run.run_id == run_id:
                return run
        return None

    def recent(self, limit: int | None = None) -> list[RunSummary]:
        """Summaries of stored runs, most recent first."""
        runs = list(self._runs)
        if limit is not None:
            runs = runs[:limit]
        return [RunSummary.from_run(run) for run in runs]
