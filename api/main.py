"""Rental Engine API: FastAPI entry point.

Registers middleware, routers, error handling and lifecycle hooks. The
engine services are built once per app and shared by every request.
"""

import asyncio
import contextlib
import logging
import os
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from api.middleware import RequestContextMiddleware
from core.database import close_db, get_session_factory, init_db
from core.observability.logging_setup import setup_logging
from core.observability.otel_setup import setup_otel
from engine.errors import RentalEngineError
from engine.notifications import WebhookNotifier
from rentals.config import config as rental_config
from rentals.repository import sql_stores
from rentals.router import rental_error_handler, router as rentals_router
from rentals.services import RentalServices, build_services

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Settings
# ---------------------------------------------------------------------------

CORS_ORIGINS = os.getenv(
    "CORS_ORIGINS", "http://localhost:3000,http://localhost:3001"
).split(",")
CREATE_TABLES = os.getenv("DB_CREATE_TABLES", "false").lower() == "true"
RUN_SWEEPER = os.getenv("RENTAL_RUN_SWEEPER", "false").lower() == "true"
LATE_NOTICE_WEBHOOK_URL = os.getenv("LATE_NOTICE_WEBHOOK_URL")


def build_default_services() -> RentalServices:
    """SQL-backed services wired from the environment."""
    notifier = WebhookNotifier(LATE_NOTICE_WEBHOOK_URL) if LATE_NOTICE_WEBHOOK_URL else None
    return build_services(
        **sql_stores(get_session_factory()),
        config=rental_config,
        notifier=notifier,
        tracer=setup_otel("rental-engine"),
    )


# ---------------------------------------------------------------------------
# App factory
# ---------------------------------------------------------------------------

def create_app(services: Optional[RentalServices] = None) -> FastAPI:
    """Build the app. Tests pass services over in-memory stores."""

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        setup_logging()
        owns_database = services is None
        if owns_database and CREATE_TABLES:
            await init_db()
        app.state.rental_services = services or build_default_services()

        sweeper_task = None
        if RUN_SWEEPER:
            sweeper_task = asyncio.create_task(app.state.rental_services.sweeper.run_forever())
        logger.info("Rental Engine API started")
        yield
        logger.info("Rental Engine API shutting down")
        if sweeper_task is not None:
            sweeper_task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await sweeper_task
        await app.state.rental_services.dispatcher.drain()
        notifier = app.state.rental_services.dispatcher.notifier
        if isinstance(notifier, WebhookNotifier):
            await notifier.close()
        if owns_database:
            await close_db()

    app = FastAPI(
        title="Rental Engine",
        description="Rental pricing, availability, lifecycle, promo codes and installment plans",
        version="0.1.0",
        lifespan=lifespan,
    )
    if services is not None:
        app.state.rental_services = services

    app.add_middleware(
        CORSMiddleware,
        allow_origins=CORS_ORIGINS,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    app.add_middleware(RequestContextMiddleware)
    app.add_exception_handler(RentalEngineError, rental_error_handler)

    app.include_router(rentals_router, prefix="/api/rentals", tags=["Rentals"])

    @app.get("/health")
    async def health():
        return {"status": "healthy", "version": "0.1.0"}

    @app.get("/")
    async def root():
        return {
            "name": "Rental Engine",
            "version": "0.1.0",
            "docs": "/docs",
        }

    return app


app = create_app()
