import logging
import os
import time
from contextlib import asynccontextmanager

from dotenv import load_dotenv
from fastapi import FastAPI
from starlette.exceptions import HTTPException as StarletteHTTPException
from fastapi.exceptions import RequestValidationError

if "PYTEST_CURRENT_TEST" not in os.environ:
    load_dotenv()

from quotagate.core.config import settings, validate_config
from quotagate.core.database import create_all_tables, get_database_url
from quotagate.core.errors import (
    AppError,
    app_error_handler,
    http_error_handler,
    request_validation_handler,
    unhandled_exception_handler,
)
from quotagate.core.logging import configure_logging
from quotagate.core.middleware.request_id import RequestIdMiddleware
from quotagate.api import (
    admin_audit,
    admin_donations,
    admin_plans,
    admin_settings,
    ai,
    donations,
    health,
    me,
    metrics,
)
from quotagate.features.usage.service import reset_dispatcher

configure_logging(settings.ENV)
validate_config(strict=settings.CONFIG_STRICT)


@asynccontextmanager
async def lifespan(app: FastAPI):
    logger = logging.getLogger("quotagate")
    logger.info("Starting quotagate...")
    app.state.startup_time = time.time()
    if get_database_url():
        create_all_tables()
    try:
        yield
    finally:
        reset_dispatcher()
        logger.info("Stopping quotagate...")


def create_app() -> FastAPI:
    app = FastAPI(title="quotagate", lifespan=lifespan)

    app.add_middleware(RequestIdMiddleware)

    app.add_exception_handler(AppError, app_error_handler)
    app.add_exception_handler(StarletteHTTPException, http_error_handler)
    app.add_exception_handler(RequestValidationError, request_validation_handler)
    app.add_exception_handler(Exception, unhandled_exception_handler)

    app.include_router(admin_plans.router)
    app.include_router(admin_settings.router)
    app.include_router(admin_audit.router)
    app.include_router(admin_donations.router)
    app.include_router(ai.router)
    app.include_router(me.router)
    app.include_router(donations.router)
    app.include_router(health.router)
    app.include_router(metrics.router)
    return app


app = create_app()
