"""
FastAPI application entry point for the gym access API.

Run locally:
    uvicorn gymaccess.main:app --reload
"""

import os
import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from gymaccess import __version__
from gymaccess.api.error_handlers import register_exception_handlers
from gymaccess.api.routes import access, entitlement
from gymaccess.config.access_control import get_access_control_config

# Configure structured logging
logging.basicConfig(
    level=os.getenv("LOG_LEVEL", "INFO"),
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan events."""
    logger.info("Starting gym access API")

    config = get_access_control_config()
    logger.info("Access control configured", extra={
        "max_distance_meters": config.max_distance_meters,
        "grace_period_policy": config.grace_period_policy.value,
        "end_date_policy": config.end_date_policy.value,
        "qr_token_ttl_seconds": config.qr_token_ttl_seconds,
    })

    database_url = os.getenv("DATABASE_URL")
    if not database_url:
        logger.error("DATABASE_URL is not set. All member endpoints will return 503.")
        app.state.database_configured = False
    else:
        masked = database_url.split("@")[-1] if "@" in database_url else "(no credentials)"
        logger.info("DATABASE_URL configured", extra={"host_db": masked})
        app.state.database_configured = True

    app.state.processor_configured = bool(os.getenv("STRIPE_SECRET_KEY"))
    if not app.state.processor_configured:
        logger.warning("STRIPE_SECRET_KEY not set; checkout and managed cancellation unavailable")

    yield

    logger.info("Shutting down gym access API")


def create_app() -> FastAPI:
    app = FastAPI(
        title="Gym Access API",
        description="Membership entitlement and facility access control",
        version=__version__,
        lifespan=lifespan
    )

    cors_origins = os.getenv("CORS_ORIGINS", "http://localhost:3000").split(",")
    app.add_middleware(
        CORSMiddleware,
        allow_origins=cors_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    register_exception_handlers(app)

    @app.get("/health", tags=["health"])
    async def health():
        return {"status": "ok", "version": __version__}

    app.include_router(entitlement.router)
    app.include_router(access.router)

    return app


app = create_app()
