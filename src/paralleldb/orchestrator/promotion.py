"""Promotion of a winning change-set to the production database."""

import asyncio
from typing import Any, Awaitable, Callable

import psycopg
import structlog

from ..core.messaging import Events, emit
from ..exceptions import PromotionFailed, ValidationFailure
from ..schemas.run import PromotionOutcome

logger = structlog.get_logger(__name__)


class PromotionCoordinator:
    """Applies recorded changes to production in a single transaction.

    Promotions are serialized: the production connection is a single
    shared resource, so only one transaction is in flight at a time.
    Statements are required to be re-appliable, so a failed promotion can
    simply be retried once the cause is fixed.
    """

    def __init__(
        self,
        database_url: str | None,
        connect_timeout: int = 10,
        connector: Callable[[], Awaitable[Any]] | None = None,
    ):
        """Initialize the coordinator.

        Args:
            database_url: Production DSN
            connect_timeout: Connection timeout in seconds
            connector: Optional factory returning an async connection,
                replacing the psycopg connection to database_url
        """
        self._database_url = database_url
        self._connect_timeout = connect_timeout
        self._connector = connector
        self._lock = asyncio.Lock()

    async def _connect(self) -> Any:
        if self._connector is not None:
            return await self._connector()
        if not self._database_url:
            raise PromotionFailed("Production database is not configured")
        return await psycopg.AsyncConnection.connect(
            self._database_url,
            autocommit=True,
            connect_timeout=self._connect_timeout,
            application_name="paralleldb-promotion",
        )

    async def promote(self, fork_id: str, changes: list[str]) -> PromotionOutcome:
        """Apply changes in order, all or nothing.

        Args:
            fork_id: Fork whose changes are being promoted
            changes: Ordered SQL statements recorded on that fork

        Returns:
            PromotionOutcome with the number of statements committed

        Raises:
            ValidationFailure: fork_id or changes missing
            PromotionFailed: Any statement failed; nothing was committed
        """
        if not fork_id:
            raise ValidationFailure("Fork ID is required")
        if not changes:
            raise ValidationFailure("At least one change is required")

        async with self._lock:
            logger.info("Promoting fork to production", fork_id=fork_id, changes=len(changes))

            try:
                conn = await self._connect()
            except PromotionFailed:
                raise
            except Exception as e:
                raise PromotionFailed(f"Could not connect to production: {e}", fork_id=fork_id) from e

            try:
                outcome = await self._apply(conn, fork_id, changes)
            except PromotionFailed as e:
                logger.error(
                    "Promotion rolled back",
                    fork_id=fork_id,
                    statement=e.statement,
                    error=str(e),
                )
                await emit(Events.PROMOTION_FAILED, {"fork_id": fork_id, "error": str(e)})
                raise
            finally:
                await conn.close()

        logger.info("Promotion committed", fork_id=fork_id, applied=outcome.applied_count)
        await emit(
            Events.PROMOTION_COMPLETED,
            {"fork_id": fork_id, "applied_count": outcome.applied_count},
        )
        return outcome

    async def _apply(self, conn: Any, fork_id: str, changes: list[str]) -> PromotionOutcome:
        applied = 0
        statement = None
        try:
            async with conn.transaction():
                for statement in changes:
                    await conn.execute(statement)
                    applied += 1
        except Exception as e:
            raise PromotionFailed(
                f"Failed to promote fork: {e}",
                statement=statement,
                fork_id=fork_id,
            ) from e

        return PromotionOutcome(fork_id=fork_id, applied_count=applied)
