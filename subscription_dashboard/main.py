import logging
import os
from contextlib import asynccontextmanager

from dotenv import load_dotenv
from fastapi import FastAPI, HTTPException
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware

if "PYTEST_CURRENT_TEST" not in os.environ:
    load_dotenv()

from subscription_dashboard.core.config import settings, validate_config
from subscription_dashboard.core.database import create_all_tables
from subscription_dashboard.core.errors import (
    AppError,
    app_error_handler,
    http_error_handler,
    request_validation_handler,
    unhandled_exception_handler,
)
from subscription_dashboard.core.logging import LOGGER_NAME, configure_logging
from subscription_dashboard.core.middleware.metrics import MetricsMiddleware
from subscription_dashboard.core.middleware.ratelimit import RateLimitMiddleware
from subscription_dashboard.core.middleware.request_id import RequestIdMiddleware
from subscription_dashboard.core.ratelimit import build_rate_limit_config
from subscription_dashboard.api import billing, health, metrics, plans, realtime, subscriptions
from subscription_dashboard.features.plans.service import seed_plans

configure_logging(settings.ENV)
validate_config(strict=settings.CONFIG_STRICT)


@asynccontextmanager
async def lifespan(app: FastAPI):
    logger = logging.getLogger(LOGGER_NAME)
    logger.info("Starting subscription dashboard backend...")
    create_all_tables()
    if settings.SEED_PLANS_ON_STARTUP:
        seed_plans()
    try:
        yield
    finally:
        logger.info("Stopping subscription dashboard backend...")


def create_app() -> FastAPI:
    app = FastAPI(title="Subscription Dashboard", lifespan=lifespan)

    # Middlewares
    app.add_middleware(RequestIdMiddleware)
    app.add_middleware(RateLimitMiddleware, config=build_rate_limit_config(settings))
    app.add_middleware(MetricsMiddleware)

    app.add_exception_handler(AppError, app_error_handler)
    app.add_exception_handler(HTTPException, http_error_handler)
    app.add_exception_handler(RequestValidationError, request_validation_handler)
    app.add_exception_handler(Exception, unhandled_exception_handler)

    app.add_middleware(
        CORSMiddleware,
        allow_origins=[o.strip() for o in settings.CORS_ORIGINS.split(",") if o.strip()],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    app.include_router(plans.router)
    app.include_router(billing.router)
    app.include_router(subscriptions.router)
    app.include_router(realtime.router, tags=["realtime"])
    app.include_router(health.router)
    app.include_router(metrics.router)
    return app


app = create_app()
