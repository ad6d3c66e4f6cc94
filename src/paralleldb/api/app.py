"""ParallelDB HTTP API.

Routes:
    POST /api/optimize             - Run competing strategies on forks
    POST /api/optimize/promote     - Promote a fork's changes to production
    GET  /api/optimize/history     - Recent run summaries
    GET  /api/optimize/strategies  - Available strategy ids
    GET  /health                   - Health check
    GET  /                         - Service information
"""

from contextlib import asynccontextmanager
from typing import Any

import structlog
from fastapi import FastAPI, Request, status
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import Field

from .. import __version__
from ..config import get_settings
from ..core.messaging import message_broker
from ..exceptions import ParallelDBError, PromotionFailed, ValidationFailure
from ..orchestrator import Orchestrator
from ..schemas.run import CamelModel, SchedulingMode

logger = structlog.get_logger(__name__)


# ============================================
# Request Models
# ============================================

class OptimizeRequest(CamelModel):
    """Request body for an optimization run."""

    problem_description: str = Field(..., description="What is slow, in plain words")
    strategies: list[str] | None = Field(
        default=None, description="Strategy ids in selection order (default: all)"
    )
    mode: SchedulingMode | None = Field(default=None, description="sequential or parallel")


class PromoteRequest(CamelModel):
    """Request body for promoting a fork's changes."""

    fork_id: str = Field(..., description="Fork whose changes are promoted")
    changes: list[str] = Field(..., description="SQL statements, applied in order")


def _error(status_code: int, message: str, **extra: Any) -> JSONResponse:
    return JSONResponse(
        status_code=status_code,
        content={"success": False, "error": message, **extra},
    )


def create_app(orchestrator: Orchestrator | None = None) -> FastAPI:
    """Create the API application.

    Args:
        orchestrator: Orchestrator to serve; built from settings when omitted
    """
    settings = get_settings()

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        async with message_broker():
            yield
            await app.state.orchestrator.shutdown()

    app = FastAPI(
        title="ParallelDB API",
        description="Competing database optimization strategies on zero-copy forks",
        version=__version__,
        docs_url="/api/docs",
        openapi_url="/api/openapi.json",
        lifespan=lifespan,
    )
    app.state.orchestrator = orchestrator or Orchestrator.from_settings(settings)

    app.add_middleware(
        CORSMiddleware,
        allow_origins=[origin.strip() for origin in settings.api.cors_origins.split(",")],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.exception_handler(RequestValidationError)
    async def request_validation_handler(request: Request, exc: RequestValidationError):
        errors = "; ".join(
            f"{'.'.join(str(part) for part in err['loc'][1:])}: {err['msg']}" for err in exc.errors()
        )
        return _error(status.HTTP_400_BAD_REQUEST, errors or "Invalid request")

    @app.exception_handler(ValidationFailure)
    async def validation_failure_handler(request: Request, exc: ValidationFailure):
        return _error(status.HTTP_400_BAD_REQUEST, str(exc))

    @app.exception_handler(PromotionFailed)
    async def promotion_failed_handler(request: Request, exc: PromotionFailed):
        return _error(
            status.HTTP_500_INTERNAL_SERVER_ERROR,
            str(exc),
            statement=exc.statement,
            appliedChanges=exc.applied_count,
        )

    @app.exception_handler(ParallelDBError)
    async def paralleldb_error_handler(request: Request, exc: ParallelDBError):
        logger.error("Request failed", path=request.url.path, error=str(exc))
        return _error(status.HTTP_500_INTERNAL_SERVER_ERROR, str(exc))

    @app.get("/")
    async def root():
        return {
            "name": "ParallelDB",
            "version": __version__,
            "docs": "/api/docs",
        }

    @app.get("/health")
    async def health():
        """Health check endpoint."""
        orch: Orchestrator = app.state.orchestrator
        return {
            "status": "ok",
            "version": __version__,
            "mode": orch.mode.value,
            "provisioning_enabled": orch.fork_manager.provisioning_enabled,
            "pending_teardowns": orch.pending_teardowns,
        }

    @app.post("/api/optimize")
    async def optimize(request: OptimizeRequest):
        """Run the selected strategies, each on its own fork.

        Individual strategy failures are reported in the run's results;
        only request validation errors fail the call.
        """
        orch: Orchestrator = app.state.orchestrator
        run = await orch.optimize(
            request.problem_description,
            strategies=request.strategies,
            mode=request.mode,
        )
        return {"success": True, "run": run.model_dump(mode="json", by_alias=True)}

    @app.post("/api/optimize/promote")
    async def promote(request: PromoteRequest):
        """Apply a fork's changes to production, all or nothing."""
        orch: Orchestrator = app.state.orchestrator
        outcome = await orch.promote(request.fork_id, request.changes)
        return {
            "success": True,
            "appliedChanges": outcome.applied_count,
            "timestamp": outcome.timestamp.isoformat(),
        }

    @app.get("/api/optimize/history")
    async def history(limit: int = 10):
        orch: Orchestrator = app.state.orchestrator
        return {
            "success": True,
            "history": [
                summary.model_dump(mode="json", by_alias=True)
                for summary in orch.history.recent(limit)
            ],
        }

    @app.get("/api/optimize/strategies")
    async def strategies():
        orch: Orchestrator = app.state.orchestrator
        return {"success": True, "strategies": orch.available_strategies}

    return app
