#!/usr/bin/env python3
"""
build-service: deployment build worker with a small operational API.

The worker consumes the deployment queue for as long as the application
runs. Set BUILD_WORKER_ENABLED=false to serve the API only.
"""
import os
from contextlib import asynccontextmanager

from fastapi import FastAPI

from app.api.deployments import router as deployments_router
from app.api.metrics import router as metrics_router
from app.core.config import get_build_config
from app.core.logging import get_logger, setup_logging
from app.core.request_logging import RequestLoggingMiddleware
from app.core.service import BuildService
from app.db.database import init_db

# =============================================================================
# Configuration from environment
# =============================================================================
LISTEN_HOST = os.environ.get("LISTEN_HOST", "0.0.0.0")
PORT = int(os.environ.get("PORT", "8000"))
VERSION = "1.0.0"

config = get_build_config()

# Setup structured JSON logging
setup_logging(config.log_level)
logger = get_logger("build.main")


@asynccontextmanager
async def lifespan(app: FastAPI):
    init_db()
    service = None
    if config.worker_enabled:
        service = BuildService(config)
        service.start(create_tables=False)
    else:
        logger.info("build_worker_disabled")
    app.state.build_service = service
    try:
        yield
    finally:
        if service is not None:
            service.stop()


# Create app
app = FastAPI(
    title="build-service",
    description="Builds queued deployments and publishes their static output",
    version=VERSION,
    lifespan=lifespan,
)

app.add_middleware(RequestLoggingMiddleware)

app.include_router(metrics_router)
app.include_router(deployments_router)


@app.get("/health")
def health():
    """Health check endpoint."""
    service = getattr(app.state, "build_service", None)
    body = {"status": "ok", "version": VERSION, "worker_enabled": config.worker_enabled}
    if service is not None:
        body.update(service.health())
    return body


if __name__ == "__main__":
    import uvicorn

    uvicorn.run("main:app", host=LISTEN_HOST, port=PORT)
