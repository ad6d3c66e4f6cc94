"""Error taxonomy for the optimization orchestrator."""


class ParallelDBError(Exception):
    """Base exception for orchestrator errors."""

    pass


class ValidationFailure(ParallelDBError):
    """Request rejected before any fork was created."""

    pass


class ForkProviderError(ParallelDBError):
    """Fork provider call failed (unreachable, quota exceeded, bad output)."""

    def __init__(self, message: str, command: str | None = None):
        super().__init__(message)
        self.command = command


class ProvisioningFailure(ParallelDBError):
    """Fork could not be provisioned and no shared instance is available."""

    pass


class StrategyExecutionError(ParallelDBError):
    """A strategy phase raised while running against its fork."""

    def __init__(self, strategy_id: str, phase: str, cause: BaseException):
        super().__init__(f"{phase} failed: {cause}")
        self.strategy_id = strategy_id
        self.phase = phase
        self.cause = cause


class PromotionFailed(ParallelDBError):
    """Promotion rolled back; carries the statement that broke it."""

    def __init__(self, message: str, statement: str | None = None, fork_id: str | None = None):
        super().__init__(message)
        self.statement = statement
        self.fork_id = fork_id
        self.applied_count = 0
