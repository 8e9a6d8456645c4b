"""
FastAPI application receiving payment gateway confirmations.
"""
import logging

import structlog
from fastapi import FastAPI, HTTPException

from edu_billing.api.routers import webhooks
from edu_billing.core.exceptions import (
    EduBillingError,
    edu_billing_exception_handler,
    general_exception_handler,
    http_exception_handler,
)
from edu_billing.core.settings import settings


def configure_logging(renderer=None) -> None:
    """Structured logging at the configured level; JSON unless told otherwise."""
    level = logging.getLevelName(settings.log_level.upper())
    if not isinstance(level, int):
        level = logging.INFO
    
    structlog.configure(
        processors=[
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.processors.add_log_level,
            renderer or structlog.processors.JSONRenderer()
        ],
        wrapper_class=structlog.make_filtering_bound_logger(level),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(),
        cache_logger_on_first_use=True,
    )


configure_logging()

logger = structlog.get_logger()


def create_application() -> FastAPI:
    """Create and configure the FastAPI application."""
    
    app = FastAPI(
        title="EduBilling Gateway Webhooks",
        description="Payment confirmations for subscriptions and purchases",
        version="1.0.0",
        docs_url="/docs" if settings.is_development else None,
        redoc_url=None,
    )
    
    setup_exception_handlers(app)
    app.include_router(webhooks.router, prefix="/api")
    setup_event_handlers(app)
    
    return app


def setup_exception_handlers(app: FastAPI):
    app.add_exception_handler(EduBillingError, edu_billing_exception_handler)
    app.add_exception_handler(HTTPException, http_exception_handler)
    app.add_exception_handler(Exception, general_exception_handler)


def setup_event_handlers(app: FastAPI):
    """Setup application event handlers."""
    
    @app.on_event("startup")
    async def startup_event():
        logger.info(
            "EduBilling webhooks starting up",
            environment=settings.environment,
            payplus_environment=settings.payplus_environment
        )
        for issue in settings.validate_production_config():
            logger.warning("Configuration issue", issue=issue)
    
    @app.on_event("shutdown")
    async def shutdown_event():
        logger.info("EduBilling webhooks shutting down")


# Create application instance
app = create_application()
