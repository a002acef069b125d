"""ASGI entry point for the critical analysis backend.

Usage:
    uvicorn main:app --reload
"""

import asyncio
import contextlib
from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager

import structlog
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from api import routes, websocket
from audit import ToolAuditSystem
from config import settings
from events import get_event_bus
from metrics import get_metrics_collector
from orchestration.review import get_review_system
from session_manager import AnalysisSessionManager

logger = structlog.get_logger(__name__)

CLEANUP_INTERVAL_SECONDS = 60.0


def build_session_manager() -> AnalysisSessionManager:
    """Wire the process-wide collaborators into one session manager."""
    manager = AnalysisSessionManager(
        get_event_bus(),
        review_system=get_review_system(),
        metrics_collector=get_metrics_collector(),
        audit=ToolAuditSystem(),
    )
    routes.set_session_manager(manager)
    websocket.set_session_manager(manager)
    return manager


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    logger.info(
        "application_starting",
        backend_port=settings.backend_port,
        default_model=settings.default_model,
    )
    manager = build_session_manager()
    app.state.session_manager = manager
    cleanup = await manager.start_cleanup_loop(interval_seconds=CLEANUP_INTERVAL_SECONDS)

    yield

    logger.info("application_stopping")
    cleanup.cancel()
    with contextlib.suppress(asyncio.CancelledError):
        await cleanup
    # Running analyses are cancelled here.
    await manager.cleanup_all()
    logger.info("application_stopped")


app = FastAPI(
    title="Critical Analysis Orchestrator",
    description="Multi-agent critical analysis: evidence gathering, adversarial "
    "challenge, structured synthesis and optional human review.",
    version="0.1.0",
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins,
    allow_credentials=True,
    allow_methods=["GET", "POST", "OPTIONS"],
    allow_headers=["*"],
)

app.include_router(routes.router, tags=["analysis"])
app.include_router(websocket.websocket_router, tags=["websocket"])


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(
        "main:app",
        host="0.0.0.0",
        port=settings.backend_port,
        log_level=settings.log_level.lower(),
    )
