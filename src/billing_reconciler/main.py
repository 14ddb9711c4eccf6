"""
FastAPI application factory for the billing reconciler
"""
import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse, PlainTextResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from . import __version__
from .admin_routes import router as admin_router
from .config import config
from .db.engine import init_db, check_database
from .exceptions import (
    WebhookVerificationError,
    http_exception_handler,
    validation_exception_handler,
    webhook_verification_exception_handler,
    general_exception_handler,
)
from .logging_config import RequestIDMiddleware, setup_logging
from .metrics import get_metrics_collector
from .webhook_routes import router as webhook_router

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Create tables and run the grace-period scheduler for the app's lifetime"""
    try:
        init_db()
    except Exception as e:
        logger.error(f"Database initialization failed: {e}", exc_info=True)

    if config.ENABLE_SCHEDULER:
        from .services.scheduled_jobs import start_scheduler
        start_scheduler()

    yield

    if config.ENABLE_SCHEDULER:
        from .services.scheduled_jobs import stop_scheduler
        stop_scheduler()


def create_app() -> FastAPI:
    """Build the API application"""
    setup_logging(env=config.ENV, log_level=config.LOG_LEVEL)

    app = FastAPI(title="Billing Reconciler API", version=__version__, lifespan=lifespan)

    app.add_middleware(RequestIDMiddleware)

    app.add_exception_handler(StarletteHTTPException, http_exception_handler)
    app.add_exception_handler(RequestValidationError, validation_exception_handler)
    app.add_exception_handler(WebhookVerificationError, webhook_verification_exception_handler)
    app.add_exception_handler(Exception, general_exception_handler)

    app.include_router(webhook_router)
    app.include_router(admin_router)

    @app.get("/health")
    async def health():
        """Health check endpoint for load balancers and monitoring"""
        database_ok = check_database()
        body = {
            "status": "healthy" if database_ok else "unhealthy",
            "service": "billing-reconciler",
            "database": "ok" if database_ok else "unavailable",
        }
        return JSONResponse(status_code=200 if database_ok else 503, content=body)

    @app.get("/metrics", response_class=PlainTextResponse)
    async def metrics():
        """Prometheus text exposition"""
        return get_metrics_collector().format_prometheus()

    return app
