"""Fork-related Pydantic schemas."""

from datetime import datetime, timezone
from enum import Enum

from pydantic import BaseModel, Field


class ForkLifecycleState(str, Enum):
    """Lifecycle of one ephemeral database instance."""

    PROVISIONING = "provisioning"
    ACTIVE = "active"
    DELETING = "deleting"
    DELETED = "deleted"
    FAILED = "failed"


class ForkHandle(BaseModel):
    """One ephemeral, isolated database instance.

    Fallback handles point at the shared (production) instance and are
    owned externally, so they are never deleted by the orchestrator.
    """

    id: str
    display_name: str
    # DSN with credentials; kept out of reprs and API payloads
    connection_descriptor: str = Field(repr=False, exclude=True)
    created_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    lifecycle_state: ForkLifecycleState = ForkLifecycleState.PROVISIONING
    is_fallback: bool = False

    @property
    def is_active(self) -> bool:
        return self.lifecycle_state == ForkLifecycleState.ACTIVE


class ProvisionedFork(BaseModel):
    """Raw provider response for a newly created fork."""

    id: str
    connection_descriptor: str = Field(repr=False)
