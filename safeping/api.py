"""
HTTP trigger surface for the overdue check-in engine.

An external scheduler (cron, a platform job runner) or an operator calls
``POST /process-overdue-checkins`` with no body.  The response is the run
summary: HTTP 200 whenever the run completed, even if individual workers or
escalations failed, and HTTP 500 only when the schedules could not be
loaded or the run aborted.  A trigger that arrives while a run is still in
progress gets 409.  Every response body is JSON.
"""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Optional

from fastapi import APIRouter, FastAPI
from fastapi.responses import JSONResponse

from safeping import __version__
from safeping.app_logger import get_logger, setup_logging
from safeping.orchestrator import InvalidTransitionError, RunOrchestrator

logger = get_logger("api")


def build_router(orchestrator: RunOrchestrator) -> APIRouter:
    router = APIRouter()

    @router.post("/process-overdue-checkins")
    def process_overdue_checkins() -> JSONResponse:
        try:
            summary = orchestrator.run()
        except InvalidTransitionError as exc:
            logger.warning("Trigger rejected: %s", exc)
            return JSONResponse(
                status_code=409,
                content={"success": False, "error": "A run is already in progress."},
            )
        except Exception as exc:
            logger.exception("Overdue check-in run aborted")
            return JSONResponse(
                status_code=500,
                content={
                    "success": False,
                    "processed_at": datetime.now(timezone.utc).isoformat(),
                    "error": f"{type(exc).__name__}: {exc}",
                },
            )
        return JSONResponse(
            status_code=200 if summary.success else 500,
            content=summary.to_response(),
        )

    @router.get("/health")
    def health() -> dict:
        return {"status": "ok", "version": __version__, "run_state": orchestrator.state.value}

    return router


def create_app(orchestrator: RunOrchestrator, log_level: Optional[str] = None) -> FastAPI:
    """Build the FastAPI application around an already-wired orchestrator."""
    setup_logging(log_level)
    app = FastAPI(title="SafePing Overdue Check-in Engine", version=__version__)
    app.include_router(build_router(orchestrator))
    return app
