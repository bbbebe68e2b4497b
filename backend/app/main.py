"""FastAPI application entry point"""
import asyncio
import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request, Response
from fastapi.responses import JSONResponse
from prometheus_client import CONTENT_TYPE_LATEST, generate_latest

from app.core.config import settings
from app.core.logging import setup_logging
from app.core.middleware import access_log_middleware, setup_cors_middleware
from app.core.otel import initialize_otel, instrument_fastapi, instrument_sqlalchemy
from app.db.redis import get_redis_client
from app.db.session import engine, init_db

# Import routers
from app.api import subscriptions

setup_logging()
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Lifespan event handler for startup and shutdown"""
    # Startup
    if initialize_otel():
        instrument_sqlalchemy(engine)
        logger.info(f"OpenTelemetry initialized, exporting to {settings.OTEL_EXPORTER_OTLP_ENDPOINT}")
    else:
        logger.info("OpenTelemetry not configured - running without distributed tracing")

    logger.info("Initializing database...")
    try:
        init_db()
        logger.info("Database initialized successfully")
    except Exception as e:
        logger.error(f"Database initialization failed: {e}")
        raise

    logger.info("Testing Redis connection...")
    try:
        get_redis_client().ping()
        logger.info("Redis connection successful")
    except Exception as e:
        logger.error(f"Redis connection failed: {e}")
        raise

    # Start background tasks
    from app.tasks.cache_resync import resync_worker_task
    from app.tasks.scheduler import expiry_scheduler_task

    background_tasks = [
        asyncio.create_task(resync_worker_task()),
        asyncio.create_task(expiry_scheduler_task()),
    ]
    logger.info("Background tasks started")

    yield

    # Shutdown
    logger.info("Shutting down...")
    for task in background_tasks:
        task.cancel()


# Create FastAPI app
app = FastAPI(
    title="Pronostics Billing",
    description="Subscriptions and Stripe billing reconciliation",
    version="1.0.0",
    lifespan=lifespan
)

if settings.OTEL_EXPORTER_OTLP_ENDPOINT:
    instrument_fastapi(app)

setup_cors_middleware(app)
app.middleware("http")(access_log_middleware)

# Include routers
app.include_router(subscriptions.router)


# Global exception handler
@app.exception_handler(Exception)
async def global_exception_handler(request: Request, exc: Exception):
    """Global exception handler"""
    logger.error(f"Unhandled exception: {exc}", exc_info=True)
    return JSONResponse(
        status_code=500,
        content={"error": "Internal server error"}
    )


# Prometheus metrics endpoint
@app.get("/metrics")
def metrics_endpoint():
    """Prometheus metrics endpoint"""
    return Response(content=generate_latest(), media_type=CONTENT_TYPE_LATEST)


# Health check endpoint
@app.get("/health")
def health_check():
    """Health check endpoint"""
    return {"status": "healthy"}
