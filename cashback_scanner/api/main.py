"""
FastAPI application for the read-only query surface.
"""

from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI

import structlog

from cashback_scanner.core.config import settings
from cashback_scanner.core.database import init_database, close_database
from cashback_scanner.rewards.rules import RuleRegistry
from cashback_scanner.scanner.runner import build_payout_gateway
from cashback_scanner.services.query_service import QueryService
from .routes import router, health_router
from .schemas import APIResponse


logger = structlog.get_logger(__name__)


def create_app(query_service: Optional[QueryService] = None) -> FastAPI:
    """
    Build the API app.

    With an injected query service the app does not manage the database;
    otherwise it opens and closes its own connection pool.
    """

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        owns_database = app.state.query_service is None
        if owns_database:
            session_maker = await init_database()
            app.state.query_service = QueryService(
                session_maker,
                settings.scanner_name,
                RuleRegistry.from_config(settings.reward_rules),
                build_payout_gateway(settings),
            )
        logger.info("API startup complete", version=settings.app_version)
        yield
        if owns_database:
            await close_database()
        logger.info("API shutdown complete")

    app = FastAPI(
        title=settings.app_name,
        version=settings.app_version,
        description="Read-only statistics for the cashback transaction scanner.",
        docs_url="/docs" if settings.debug else None,
        redoc_url=None,
        lifespan=lifespan,
    )
    app.state.query_service = query_service

    @app.get("/", response_model=APIResponse, tags=["System"])
    async def root():
        return APIResponse(message=f"{settings.app_name} v{settings.app_version}")

    app.include_router(health_router, tags=["System"])
    app.include_router(router, prefix=settings.api_prefix, tags=["Scanner"])
    return app
