# backend/carshare/main.py
from __future__ import annotations

from contextlib import asynccontextmanager
import logging
from typing import AsyncGenerator

from fastapi import FastAPI

from .core.config import settings
from .errors import register_error_handlers
from .routes import health, stripe_webhooks
from .routes.v1 import bookings, deposit_cases, host_bookings, payments

logging.basicConfig(
    level=logging.INFO, format="%(asctime)s - %(name)s - %(levelname)s - %(message)s"
)
logger = logging.getLogger(__name__)

API_TITLE = "Car Share Booking & Payments API"
API_VERSION = "1.0.0"


@asynccontextmanager
async def app_lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """Handle application startup/shutdown without deprecated events."""
    logger.info(f"{API_TITLE} starting up (environment={settings.environment})")
    if not settings.stripe_secret_key.get_secret_value():
        logger.warning("STRIPE_SECRET_KEY is not set; checkout and payouts will fail")
    if not settings.enable_connect_payouts:
        logger.warning("Connect payouts disabled; checkouts are refused and webhooks ignored")
    yield
    logger.info(f"{API_TITLE} shutting down")


app = FastAPI(
    title=API_TITLE,
    version=API_VERSION,
    docs_url="/docs",
    redoc_url="/redoc",
    lifespan=app_lifespan,
)
register_error_handlers(app)

app.include_router(health.router)
app.include_router(stripe_webhooks.router)
app.include_router(bookings.router, prefix="/api/v1/bookings")
app.include_router(host_bookings.router, prefix="/api/v1/host/bookings")
app.include_router(payments.router, prefix="/api/v1/payments")
app.include_router(deposit_cases.router, prefix="/api/v1/deposit-cases")
