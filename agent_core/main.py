"""
FastAPI application: webhook intake plus health endpoints.
"""

import time
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request

from agent_core.config import settings
from agent_core.db.pool import db_pool
from agent_core.infrastructure.observability.logging import get_logger, log_request, setup_logging
from agent_core.routes import health, reminders, webhook
from agent_core.services.agent_runtime import AgentRuntime

# Setup logging before creating the app
setup_logging(log_level=settings.LOG_LEVEL)
logger = get_logger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Handle application startup and shutdown."""
    logger.info("Application starting", environment=settings.environment, debug=settings.debug)

    try:
        await db_pool.initialize()
    except RuntimeError as e:
        # Store outages are survivable, messages fall back to the ephemeral cache
        logger.error("Database pool unavailable at startup", error=str(e))

    app.state.runtime = AgentRuntime.build()

    yield

    logger.info("Application shutting down")

    shutdown_errors = []

    try:
        await app.state.runtime.close()
    except Exception as e:
        logger.error("Error closing agent runtime", error=str(e))
        shutdown_errors.append(f"Runtime: {e}")

    try:
        await db_pool.close()
    except Exception as e:
        logger.error("Error closing database pool", error=str(e))
        shutdown_errors.append(f"Database: {e}")

    if shutdown_errors:
        logger.warning("Some services had shutdown errors", errors=shutdown_errors)
    else:
        logger.info("All services closed successfully")


app = FastAPI(
    title="Agent Core",
    description="Message-handling core for a conversational messaging agent",
    version="0.1.0",
    lifespan=lifespan,
)

app.include_router(health.router)
app.include_router(webhook.router)
app.include_router(reminders.router)


@app.middleware("http")
async def log_requests(request: Request, call_next):
    """Log HTTP requests with timing."""
    start_time = time.time()
    response = await call_next(request)
    process_time = (time.time() - start_time) * 1000

    log_request(request.method, request.url.path, response.status_code, round(process_time, 2))
    return response


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(app, host="0.0.0.0", port=8000)
