"""Main application entry point."""

import logging
from contextlib import asynccontextmanager

import uvicorn
from fastapi import FastAPI, Response
from prometheus_fastapi_instrumentator import Instrumentator

from greener.ai.llm_service import llm_service
from greener.api.routes import dashboard, estimation, llm
from greener.config import settings
from greener.db.session import init_db
from greener.logging_config import setup_logging
from greener.notify.events import estimation_events
from greener.worker.tasks import task_runner

logger = logging.getLogger(__name__)


def _log_pass_complete(summary) -> None:
    logger.info(
        f"Estimation pass finished: {summary.newly_estimated} new, "
        f"{summary.fallbacks} fallback, {summary.errors} errors"
    )


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan manager."""
    setup_logging()
    logger.info("Starting Greener...")

    await init_db()
    unsubscribe = estimation_events.subscribe(_log_pass_complete)

    yield

    logger.info("Shutting down...")
    await task_runner.close()
    await estimation_events.drain()
    unsubscribe()
    await llm_service.close()
    logger.info("Shutdown complete")


app = FastAPI(
    title="Greener",
    description="Carbon footprint estimates for e-commerce purchases",
    version="0.1.0",
    lifespan=lifespan,
)

instrumentator = Instrumentator(
    should_group_status_codes=True,
    should_ignore_untemplated=True,
    excluded_handlers=["/metrics", "/health", "/favicon.ico"],
)
instrumentator.instrument(app).expose(app, include_in_schema=True, tags=["monitoring"])

app.include_router(dashboard.router)
app.include_router(estimation.router)
app.include_router(llm.router)


@app.get("/health")
async def health():
    """Health check endpoint."""
    return {"status": "healthy"}


@app.get("/favicon.ico")
async def favicon():
    """Return empty favicon response to avoid 404 noise."""
    return Response(status_code=204)


if __name__ == "__main__":
    uvicorn.run(
        "greener.main:app",
        host=settings.app_host,
        port=settings.app_port,
        reload=settings.debug,
        log_level=settings.log_level.lower(),
    )
