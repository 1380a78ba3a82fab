"""
Progressive delivery control plane - service entry point.
"""

import logging
import sys
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Optional

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse
from prometheus_client import make_asgi_app

from delivery_plane import __version__
from delivery_plane.api import api_router
from delivery_plane.core.config import get_settings
from delivery_plane.core.coordinator import ControlPlaneCoordinator
from delivery_plane.core.errors import ControlPlaneError, ErrorCode
from delivery_plane.utils.logging import setup_logging

logger = logging.getLogger(__name__)

# Operator errors map onto HTTP statuses; anything else is a 500
_STATUS_BY_CODE = {
    ErrorCode.NOT_FOUND: 404,
    ErrorCode.VALIDATION_FAILED: 422,
    ErrorCode.CONFIGURATION_ERROR: 422,
    ErrorCode.CONFLICT: 409,
    ErrorCode.CIRCUIT_OPEN: 503,
    ErrorCode.METRICS_UNAVAILABLE: 503,
    ErrorCode.DEPENDENCY_FAILURE: 502,
}


def status_for(error: ControlPlaneError) -> int:
    return _STATUS_BY_CODE.get(error.code, 500)


async def control_plane_error_handler(request: Request, exc: ControlPlaneError) -> JSONResponse:
    status = status_for(exc)
    if status >= 500:
        logger.error(f"{exc.code.value}: {exc.message}", extra={"error_code": exc.code.value})
    return JSONResponse(status_code=status, content={"error": exc.to_dict()})


def create_app(coordinator: Optional[ControlPlaneCoordinator] = None) -> FastAPI:
    """Build the FastAPI application.

    When no coordinator is passed one is built from settings at startup and
    shut down with the application.
    """
    settings = get_settings()

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        if getattr(app.state, "coordinator", None) is None:
            # Standalone service; an injected coordinator leaves logging to its host
            setup_logging(settings.LOG_LEVEL, json_output=settings.LOG_JSON)
            logger.info("Starting progressive delivery control plane...")
            app.state.coordinator = ControlPlaneCoordinator.from_settings(settings)
            logger.info(
                f"Loaded {len(app.state.coordinator.flags.snapshot)} flags",
                extra={"reason": settings.FLAG_CONFIG_PATH or "no flag document"},
            )

        yield

        logger.info("Shutting down control plane...")
        await app.state.coordinator.shutdown()

    app = FastAPI(
        title="Progressive Delivery Control Plane",
        description="Feature flags, circuit breakers and canary rollouts",
        version=__version__,
        lifespan=lifespan,
    )
    app.state.coordinator = coordinator
    app.add_exception_handler(ControlPlaneError, control_plane_error_handler)
    app.include_router(api_router)
    app.mount("/metrics", make_asgi_app())

    @app.get("/health")
    async def health_check():
        """Health check with runtime info."""
        current = app.state.coordinator
        return {
            "status": "healthy",
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "runtime": {
                "python_version": sys.version.split(" ")[0],
                "version": __version__,
            },
            "flags": {
                "version": current.flags.snapshot.version if current else None,
                "count": len(current.flags.snapshot) if current else 0,
            },
            "config": {
                "tick_interval_seconds": settings.CANARY_TICK_INTERVAL_SECONDS,
                "routing_strategy": settings.ROUTING_STRATEGY,
                "log_level": settings.LOG_LEVEL,
            },
        }

    return app


def run() -> None:
    import uvicorn

    uvicorn.run("delivery_plane.main:create_app", factory=True, host="0.0.0.0", port=8000)  # nosec B104


if __name__ == "__main__":
    run()
