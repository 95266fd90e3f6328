"""FastAPI server for the clinic assistant.

Run with:
    uv run uvicorn src.server:app --reload --host 0.0.0.0 --port 8000
"""

from __future__ import annotations

import logging
import uuid
from contextlib import asynccontextmanager

import uvicorn
from fastapi import FastAPI, Request, Response
from fastapi.middleware.cors import CORSMiddleware

from src import config
from src.agent import create_orchestrator
from src.api.routes import router
from src.services.clinic_backend import ClinicBackend, InMemoryClinicBackend, seed_demo
from src.services.metrics import metrics

# ── Logging ──────────────────────────────────────────────────────────
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s %(levelname)-8s %(name)s — %(message)s",
)
logger = logging.getLogger(__name__)


def _build_backend() -> ClinicBackend:
    """Use the clinic REST API when configured, else a seeded in-memory clinic."""
    if config.CLINIC_API_BASE_URL:
        from src.services.clinic_api_client import ClinicAPIClient  # noqa: PLC0415

        logger.info("Using clinic API at %s", config.CLINIC_API_BASE_URL)
        return ClinicAPIClient()
    logger.warning("CLINIC_API_BASE_URL not set; serving the in-memory demo clinic")
    return seed_demo(InMemoryClinicBackend())


# ── Lifespan: initialise / tear-down shared resources ────────────────
@asynccontextmanager
async def lifespan(application: FastAPI):
    """Start-up: build the orchestrator once and store it in app state."""
    logger.info("Compiling turn graph…")
    backend = _build_backend()
    orchestrator = create_orchestrator(backend)
    application.state.orchestrator = orchestrator
    logger.info("Orchestrator ready.")
    yield
    orchestrator.shutdown()
    if hasattr(backend, "close"):
        backend.close()
    metrics.flush()


# ── FastAPI application ──────────────────────────────────────────────
app = FastAPI(
    title="Clinic Assistant",
    description=(
        "Customer-facing intake agent and staff copilot for clinic "
        "scheduling, patient lookup, billing and follow-up tasks."
    ),
    version="1.0.0",
    lifespan=lifespan,
)

# ── CORS ────────────────────────────────────────────────────────────
app.add_middleware(
    CORSMiddleware,
    allow_origins=config.CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


# ── Request-ID middleware ────────────────────────────────────────────
@app.middleware("http")
async def add_request_id(request: Request, call_next) -> Response:
    """Attach a unique request ID to every request for log correlation.

    The ID is echoed in the ``X-Request-ID`` response header and prefixes
    every log line written for the request.
    """
    request_id = request.headers.get("X-Request-ID", str(uuid.uuid4()))
    request.state.request_id = request_id
    logger.info(
        "[%s] %s %s", request_id, request.method, request.url.path,
    )
    response = await call_next(request)
    response.headers["X-Request-ID"] = request_id
    return response


# ── Register routes ──────────────────────────────────────────────────
app.include_router(router, prefix="/api")


@app.get("/")
async def root():
    """Root endpoint with API info."""
    return {
        "service": "Clinic Assistant",
        "version": "1.0.0",
        "docs": "/docs",
        "health": "/api/health",
    }


# ── CLI entry point ──────────────────────────────────────────────────

if __name__ == "__main__":
    logger.info("Starting clinic assistant API on %s:%d", config.SERVER_HOST, config.SERVER_PORT)
    uvicorn.run(
        "src.server:app",
        host=config.SERVER_HOST,
        port=config.SERVER_PORT,
        reload=True,
    )
