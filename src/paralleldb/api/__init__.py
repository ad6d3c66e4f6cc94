"""HTTP API for the optimization orchestrator."""

from .app import OptimizeRequest, PromoteRequest, create_app

__all__ = ["OptimizeRequest", "PromoteRequest", "create_app"]
