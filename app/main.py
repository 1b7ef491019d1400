"""
Proctoring recording pipeline API.

Hosts candidate ingestion routes, the recruiter review surface, health
endpoints and the merge queue worker (started and stopped with the app).
"""

import time
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request

from app.config import settings
from app.db.pool import db_pool
from app.infrastructure.observability.logging import get_logger, setup_logging
from app.middleware.request_context import RequestContextMiddleware
from app.routes import candidate_proctoring, health, results
from app.services.recording.merge_engine import get_merge_engine
from app.services.recording.merge_queue import build_merge_queue
from app.services.recording.transcoder import check_transcoder_available
from app.services.storage.storage_service import storage_service

# Setup logging before creating the app
setup_logging(log_level=settings.LOG_LEVEL)
logger = get_logger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Handle application startup and shutdown with proper resource management."""

    logger.info("Application starting", environment=settings.environment, debug=settings.debug)

    startup_tasks = []
    app.state.merge_queue = None

    try:
        logger.info("Initializing database pool")
        await db_pool.initialize()
        startup_tasks.append("database_pool")

        storage_service.initialize()
        startup_tasks.append("storage")

        app.state.transcoder = check_transcoder_available()
        if app.state.transcoder["ok"]:
            app.state.merge_queue = build_merge_queue(
                get_merge_engine().merge_attempt, is_ready=db_pool.is_ready
            )
            startup_tasks.append("merge_queue")
        else:
            logger.error("Merge queue not started: ffmpeg/ffprobe unavailable")

        logger.info("All services initialized successfully", services=startup_tasks)

    except Exception as e:
        logger.error("Failed to initialize services", error=str(e), completed_tasks=startup_tasks)

        if "database_pool" in startup_tasks:
            try:
                await db_pool.close()
            except Exception as cleanup_error:
                logger.error("Error cleaning up database pool", error=str(cleanup_error))

        raise

    yield

    # Shutdown sequence (reverse order)
    logger.info("Application shutting down")

    shutdown_errors = []

    if app.state.merge_queue is not None:
        try:
            await app.state.merge_queue.shutdown()
        except Exception as e:
            logger.error("Error stopping merge queue", error=str(e))
            shutdown_errors.append(f"Merge queue: {e}")

    # Close database pool last (may have active connections)
    try:
        logger.info("Closing database pool")
        await db_pool.close()
    except Exception as e:
        logger.error("Error closing database pool", error=str(e))
        shutdown_errors.append(f"Database: {e}")

    if shutdown_errors:
        logger.warning("Some services had shutdown errors", errors=shutdown_errors)
    else:
        logger.info("All services closed successfully")


app = FastAPI(
    title="Proctoring Recording Pipeline",
    description="Proctoring event and media ingestion with background recording merges",
    version="0.1.0",
    lifespan=lifespan,
)

app.add_middleware(RequestContextMiddleware)

# Include routers
app.include_router(health.router)
app.include_router(candidate_proctoring.router)
app.include_router(results.router)


@app.middleware("http")
async def log_requests(request: Request, call_next):
    """Log HTTP requests with timing."""
    start_time = time.time()
    response = await call_next(request)
    process_time = (time.time() - start_time) * 1000

    logger.info(
        "HTTP request completed",
        method=request.method,
        path=request.url.path,
        status_code=response.status_code,
        duration_ms=round(process_time, 2),
    )
    return response


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(app, host="0.0.0.0", port=8000)
