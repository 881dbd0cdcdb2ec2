import logging
import os
from contextlib import asynccontextmanager
from typing import Optional

from dotenv import load_dotenv
from fastapi import FastAPI
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from starlette.exceptions import HTTPException as StarletteHTTPException

# Load env from writerdesk/.env
package_dir = os.path.dirname(os.path.abspath(__file__))
if "PYTEST_CURRENT_TEST" not in os.environ:
    load_dotenv(dotenv_path=os.path.join(package_dir, ".env"))

# Import after dotenv is loaded
from writerdesk.api import billing, health, subscription
from writerdesk.core.config import Settings, settings as default_settings, validate_config
from writerdesk.core.database import create_all_tables, dispose_engine, init_engine
from writerdesk.core.errors import (
    AppError,
    app_error_handler,
    http_error_handler,
    request_validation_handler,
    unhandled_exception_handler,
)
from writerdesk.core.logging import configure_logging
from writerdesk.core.middleware.metrics import MetricsMiddleware
from writerdesk.core.middleware.request_id import RequestIdMiddleware
from writerdesk.core.validation import validate_env
from writerdesk.features.billing.service import BillingServices


def create_app(settings: Optional[Settings] = None, billing_services: Optional[BillingServices] = None) -> FastAPI:
    """
    Build the API application.

    `billing_services` lets tests inject a container wired to a fake provider;
    by default one is built from settings (Stripe when a secret key is set).
    """
    cfg = settings or default_settings

    configure_logging(cfg.ENV, cfg.LOG_LEVEL)
    validate_env(settings_obj=cfg)
    validate_config(strict=cfg.CONFIG_STRICT, settings_obj=cfg)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        logger = logging.getLogger("writerdesk")
        logger.info("Starting writerdesk subscription service...")
        if cfg.DATABASE_URL:
            init_engine(cfg.DATABASE_URL)
            create_all_tables()
        try:
            yield
        finally:
            if cfg.DATABASE_URL:
                dispose_engine()
            logger.info("Stopping writerdesk subscription service...")

    app = FastAPI(title="writerdesk - Subscriptions", lifespan=lifespan)
    app.state.settings = cfg
    app.state.billing = billing_services or BillingServices.from_settings(cfg)

    # Middlewares
    app.add_middleware(MetricsMiddleware)
    app.add_middleware(RequestIdMiddleware)

    app.add_exception_handler(AppError, app_error_handler)
    app.add_exception_handler(StarletteHTTPException, http_error_handler)
    app.add_exception_handler(RequestValidationError, request_validation_handler)
    app.add_exception_handler(Exception, unhandled_exception_handler)

    if cfg.APP_URL:
        app.add_middleware(
            CORSMiddleware,
            allow_origins=[cfg.APP_URL.rstrip("/")],
            allow_credentials=True,
            allow_methods=["*"],
            allow_headers=["*"],
        )

    app.include_router(health.router, tags=["health"])
    app.include_router(billing.router, prefix="/api", tags=["billing"])
    app.include_router(subscription.router, prefix="/api", tags=["subscription"])
    return app


app = create_app()
