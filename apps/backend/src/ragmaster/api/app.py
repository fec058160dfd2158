import logging
from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager

from fastapi import FastAPI

from ragmaster.api.routes.health import router as health_router
from ragmaster.api.routes.queue import router as queue_router
from ragmaster.config.logging_config import configure_logging
from ragmaster.config.settings import get_settings
from ragmaster.runtime.queue import current_queue_engine

log = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """
    Startup: configure logging.  Queue state is in-process only, so there is
    nothing to restore.
    Shutdown: cancel any background run so the event loop can close cleanly.
    """
    configure_logging(get_settings().log_level)
    log.info("RAGMaster ready.")
    yield
    engine = current_queue_engine()
    if engine is not None:
        await engine.shutdown()


def create_app() -> FastAPI:
    settings = get_settings()

    app = FastAPI(
        title="RAGMaster",
        version="0.1.0",
        description="Queue-based LLM document conversion with adaptive quality gating",
        debug=settings.debug,
        lifespan=lifespan,
    )

    app.include_router(health_router)
    app.include_router(queue_router)

    return app
