"""Fork provisioning and lifecycle."""

from .manager import ForkLifecycleManager
from .provider import ForkProvider, TigerCliProvider, parse_fork_id, read_pgpass_password

__all__ = [
    "ForkLifecycleManager",
    "ForkProvider",
    "TigerCliProvider",
    "parse_fork_id",
    "read_pgpass_password",
]
