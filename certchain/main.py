"""
CertChain — Application Entry Point

FastAPI application. The lifespan builds every store client once, connects
them, wires the three services on top and tears everything down in reverse
order on shutdown.

`uvicorn certchain.main:app` or the `certchain` console script
"""

from __future__ import annotations

import os
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from typing import Any

import structlog
from dotenv import load_dotenv
from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware

# Load .env file before any configuration is loaded
load_dotenv()

from certchain import __version__
from certchain.api.errors import install_error_handlers
from certchain.api.routers.certificates import router as certificates_router
from certchain.api.routers.legacy import router as legacy_router
from certchain.clients.content_store import create_content_store
from certchain.clients.index_store import create_index_store
from certchain.clients.ledger import create_ledger_client
from certchain.clients.recognition import create_recognizer
from certchain.config import CertChainConfig, load_config
from certchain.core.tasks import DetachedTaskRunner
from certchain.primitives.common import HealthStatus
from certchain.systems.issuance.service import IssuanceCoordinator
from certchain.systems.legacy.service import LegacyDocumentMatcher
from certchain.systems.resolution.service import ResolutionEngine
from certchain.telemetry.logging import setup_logging

logger = structlog.get_logger("certchain.main")

_SHUTDOWN_DRAIN_TIMEOUT_S = 5.0


def _report_background_failure(task_name: str, exc: BaseException) -> None:
    logger.error(
        "operator_alert",
        source="detached_task",
        task_name=task_name,
        error=str(exc),
        error_type=type(exc).__name__,
    )


def overall_status(stores: dict[str, dict[str, Any]]) -> HealthStatus:
    """Without the ledger nothing can be issued or resolved; other stores only degrade."""
    if stores["ledger"].get("status") != "connected":
        return HealthStatus.UNHEALTHY
    if any(h.get("status") != "connected" for h in stores.values()):
        return HealthStatus.DEGRADED
    return HealthStatus.HEALTHY


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    """
    Startup and shutdown sequence.
    """
    # ── 1. Load configuration ─────────────────────────────────
    config: CertChainConfig | None = getattr(app.state, "config", None)
    config_path = os.environ.get("CERTCHAIN_CONFIG_PATH", "config/default.yaml")
    if config is None:
        config = load_config(config_path)
        app.state.config = config

    # ── 2. Set up logging ─────────────────────────────────────
    setup_logging(config.logging, instance_id=config.instance_id)
    logger.info(
        "certchain_starting",
        instance_id=config.instance_id,
        config_path=config_path,
        ledger_backend=config.ledger.backend,
        content_backend=config.content_store.backend,
        index_backend=config.index.backend,
    )

    # ── 3. Store clients ──────────────────────────────────────
    ledger = create_ledger_client(config.ledger)
    content_store = create_content_store(config.content_store)
    index = create_index_store(config.index)
    await ledger.connect()
    await content_store.connect()
    await index.connect()
    app.state.ledger = ledger
    app.state.content_store = content_store
    app.state.index = index

    # ── 4. Services ───────────────────────────────────────────
    tasks = DetachedTaskRunner(error_channel=_report_background_failure)
    app.state.tasks = tasks
    app.state.issuance = IssuanceCoordinator(
        ledger=ledger,
        content_store=content_store,
        index=index,
        config=config.issuance,
    )
    app.state.resolution = ResolutionEngine(
        ledger=ledger,
        content_store=content_store,
        index=index,
        config=config.resolution,
        tasks=tasks,
    )
    app.state.legacy = LegacyDocumentMatcher(
        recognizer=create_recognizer(config.legacy),
        index=index,
        config=config.legacy,
    )
    logger.info("certchain_ready")

    yield

    # ── Shutdown ──────────────────────────────────────────────
    logger.info("certchain_shutting_down", pending_audit_writes=tasks.pending)
    await tasks.drain(timeout=_SHUTDOWN_DRAIN_TIMEOUT_S)
    await index.close()
    await content_store.close()
    await ledger.close()
    logger.info("certchain_stopped")


def create_app(config: CertChainConfig | None = None) -> FastAPI:
    """Build the application. A pre-built ``config`` skips file loading."""
    app = FastAPI(
        title="CertChain",
        description="Certificate issuance and verification API",
        version=__version__,
        lifespan=lifespan,
    )
    if config is not None:
        app.state.config = config

    cors_origins = config.server.cors_origins if config else CertChainConfig().server.cors_origins
    extra_origins = os.environ.get("CORS_ALLOWED_ORIGINS", "")
    if extra_origins:
        cors_origins = [*cors_origins, *(o.strip() for o in extra_origins.split(",") if o.strip())]
    app.add_middleware(
        CORSMiddleware,
        allow_origins=cors_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    install_error_handlers(app)
    app.include_router(certificates_router)
    app.include_router(legacy_router)

    @app.get("/health")
    async def health(request: Request) -> dict[str, Any]:
        """Per-store health snapshot."""
        state = request.app.state
        stores = {
            "ledger": await state.ledger.health_check(),
            "content_store": await state.content_store.health_check(),
            "index": await state.index.health_check(),
        }
        return {
            "status": overall_status(stores).value,
            "instance_id": state.config.instance_id,
            "version": __version__,
            "stores": stores,
            "pending_index_sync": len(state.issuance.pending_index_sync),
            "background_tasks": {
                "pending": state.tasks.pending,
                "failures": state.tasks.failures,
            },
        }

    return app


app = create_app()


def run() -> None:
    """Console entry point: serve on the configured host and port."""
    import uvicorn

    config = load_config(os.environ.get("CERTCHAIN_CONFIG_PATH", "config/default.yaml"))
    uvicorn.run("certchain.main:app", host=config.server.host, port=config.server.port)
