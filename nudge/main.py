"""
FastAPI application hosting the consent landing step and health probes.
"""

import time
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request

from nudge.config import settings
from nudge.infrastructure.observability.logging import get_logger, log_request, setup_logging
from nudge.routes import consent, health
from nudge.services.factory import build_services
from nudge.services.infrastructure.redis_client import RedisClient

# Setup logging before creating the app
setup_logging(log_level=settings.LOG_LEVEL)
logger = get_logger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Connect Redis and wire services, unless they were provided up front."""
    logger.info("Application starting", environment=settings.environment, debug=settings.debug)

    redis_client = None
    if getattr(app.state, "services", None) is None:
        redis_client = RedisClient()
        try:
            logger.info("Initializing Redis connection")
            await redis_client.initialize()
            app.state.services = build_services(redis_client)
            logger.info("All services initialized successfully")
        except Exception as e:
            logger.error("Failed to initialize services", error=str(e), error_type=type(e).__name__)
            await redis_client.close()
            raise

    yield

    logger.info("Application shutting down")
    if redis_client is not None:
        await redis_client.close()
        app.state.services = None


app = FastAPI(
    title="Nudge",
    description="Gmail nudge dispatch: consent landing step and health probes",
    version="0.1.0",
    lifespan=lifespan,
)

app.include_router(health.router)
app.include_router(consent.router)


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
