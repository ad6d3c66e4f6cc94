"""Fork lifecycle management with shared-instance fallback."""

import asyncio
import uuid
from typing import TYPE_CHECKING

import structlog

from ..config import Settings, get_settings
from ..core.messaging import Events, emit
from ..exceptions import ProvisioningFailure
from ..schemas.fork import ForkHandle, ForkLifecycleState
from ..schemas.run import PromotionOutcome
from .provider import ForkProvider, TigerCliProvider

if TYPE_CHECKING:
    from ..orchestrator.promotion import PromotionCoordinator

logger = structlog.get_logger(__name__)


class ForkLifecycleManager:
    """Creates, lists and deletes forks through a ForkProvider.

    When provisioning is disabled, fails, or times out, create_fork hands
    out a fallback handle on the shared instance instead of raising.
    Fallback handles are never deleted.
    """

    def __init__(
        self,
        provider: ForkProvider | None,
        shared_url: str | None = None,
        create_timeout: float = 120.0,
        promotion: "PromotionCoordinator | None" = None,
    ):
        """Initialize the manager.

        Args:
            provider: Fork provider, or None when provisioning is disabled
            shared_url: DSN of the shared instance used for fallback handles
            create_timeout: Seconds to wait for the provider to create a fork
            promotion: Coordinator used by promote()
        """
        self._provider = provider
        self._shared_url = shared_url
        self._create_timeout = create_timeout
        self._promotion = promotion

    @classmethod
    def from_settings(
        cls,
        settings: Settings | None = None,
        promotion: "PromotionCoordinator | None" = None,
    ) -> "ForkLifecycleManager":
        """Build a manager wired to the Tiger CLI when it is enabled."""
        settings = settings or get_settings()
        provider = None
        if settings.tiger.enabled and settings.tiger.service_id:
            provider = TigerCliProvider(
                service_id=settings.tiger.service_id,
                cli_path=settings.tiger.cli_path,
                fork_user=settings.tiger.fork_user,
                pgpass_path=settings.tiger.pgpass_path,
                command_timeout=settings.tiger.command_timeout_seconds,
                main_database_url=settings.database.url,
            )

        return cls(
            provider=provider,
            shared_url=settings.database.url,
            create_timeout=settings.tiger.create_timeout_seconds,
            promotion=promotion,
        )

    @property
    def provisioning_enabled(self) -> bool:
        return self._provider is not None

    async def create_fork(self, name: str) -> ForkHandle:
        """Create a fork, falling back to the shared instance.

        Args:
            name: Display name for the fork

        Returns:
            Active handle, possibly a fallback one

        Raises:
            ProvisioningFailure: Provisioning was unavailable and no shared
                instance is configured
        """
        if self._provider is None:
            return await self._fallback(name, reason="provisioning disabled")

        logger.info("Creating fork", name=name, provider=self._provider.provider_name)

        try:
            provisioned = await asyncio.wait_for(
                self._provider.create(name), timeout=self._create_timeout
            )
        except asyncio.TimeoutError:
            logger.warning("Fork creation timed out", name=name, timeout=self._create_timeout)
            return await self._fallback(name, reason="timeout")
        except Exception as e:
            logger.warning("Fork creation failed", name=name, error=str(e))
            return await self._fallback(name, reason=str(e))

        handle = ForkHandle(
            id=provisioned.id,
            display_name=name,
            connection_descriptor=provisioned.connection_descriptor,
            lifecycle_state=ForkLifecycleState.ACTIVE,
        )

        logger.info("Fork created", fork_id=handle.id, name=name)
        await emit(Events.FORK_CREATED, {"fork_id": handle.id, "name": name})
        return handle

    async def delete_fork(self, handle: ForkHandle) -> bool:
        """Tear down a fork, best-effort.

        Args:
            handle: Fork to delete

        Returns:
            True if the fork is gone (or was a fallback), False if the
            provider failed to delete it
        """
        if handle.is_fallback:
            logger.debug("Skipping delete of fallback fork", fork_id=handle.id)
            return True

        if handle.lifecycle_state == ForkLifecycleState.DELETED:
            return True

        if self._provider is None:
            logger.warning("No provider to delete fork", fork_id=handle.id)
            handle.lifecycle_state = ForkLifecycleState.FAILED
            return False

        handle.lifecycle_state = ForkLifecycleState.DELETING
        try:
            await self._provider.delete(handle.id)
        except Exception as e:
            logger.error("Fork deletion failed", fork_id=handle.id, error=str(e))
            handle.lifecycle_state = ForkLifecycleState.FAILED
            return False

        handle.lifecycle_state = ForkLifecycleState.DELETED
        logger.info("Fork deleted", fork_id=handle.id)
        await emit(Events.FORK_DELETED, {"fork_id": handle.id})
        return True

    async def list_forks(self) -> list[str]:
        """List fork ids known to the provider."""
        if self._provider is None:
            return []

        try:
            return await self._provider.list_forks()
        except Exception as e:
            logger.error("Error listing forks", error=str(e))
            return []

    async def promote(self, fork_id: str, changes: list[str]) -> PromotionOutcome:
        """Apply a fork's recorded changes to production."""
        if self._promotion is None:
            raise ProvisioningFailure("No promotion coordinator configured")
        return await self._promotion.promote(fork_id, changes)

    async def _fallback(self, name: str, reason: str) -> ForkHandle:
        if not self._shared_url:
            raise ProvisioningFailure(
                f"Could not provision fork {name} ({reason}) and no shared instance is configured"
            )

        handle = ForkHandle(
            id=f"fallback-{uuid.uuid4().hex[:12]}",
            display_name=name,
            connection_descriptor=self._shared_url,
            lifecycle_state=ForkLifecycleState.ACTIVE,
            is_fallback=True,
        )

        logger.info("Using shared instance for fork", fork_id=handle.id, name=name, reason=reason)
        await emit(Events.FORK_FALLBACK, {"fork_id": handle.id, "name": name, "reason": reason})
        return handle
