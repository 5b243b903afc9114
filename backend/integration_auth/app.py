"""
FastAPI application factory for integration credential management.

Run with:
    uvicorn integration_auth.app:create_app --factory

Startup fails fast when INTEGRATION_SECRET_KEY is not set.
"""

import logging
from datetime import datetime
from typing import Callable, Optional

import httpx
from fastapi import FastAPI
from sqlalchemy.orm import Session

from integration_auth import __version__
from integration_auth.api.routes.integrations import callback_router, router
from integration_auth.config.integrations import IntegrationSettings
from integration_auth.credentials.redaction import setup_credential_logging
from integration_auth.database.session import build_engine, build_session_factory, init_db
from integration_auth.integrations.services import build_services
from integration_auth.models.base import utc_now
from integration_auth.platform.errors import AppError, ErrorHandlerMiddleware, app_error_handler

logger = logging.getLogger(__name__)


def create_app(
    settings: Optional[IntegrationSettings] = None,
    session_factory: Optional[Callable[[], Session]] = None,
    transport: Optional[httpx.AsyncBaseTransport] = None,
    now_fn: Callable[[], datetime] = utc_now,
) -> FastAPI:
    """
    Build the application and its process-wide services.

    Args:
        settings: Defaults to IntegrationSettings.from_env()
        session_factory: Defaults to a factory bound to settings.database_url
            (tables are created on first start)
        transport: Optional httpx transport for outbound calls
        now_fn: Clock shared by the OAuth engine, refresh guard and state machine

    Raises:
        InvalidKeyError: If no secret key is configured
    """
    settings = settings or IntegrationSettings.from_env()
    setup_credential_logging()

    if session_factory is None:
        engine = build_engine(settings.database_url)
        init_db(engine)
        session_factory = build_session_factory(engine)

    services = build_services(settings, session_factory, transport=transport, now_fn=now_fn)

    app = FastAPI(title="Integration Auth", version=__version__)
    app.state.integrations = services
    app.add_middleware(ErrorHandlerMiddleware)
    app.add_exception_handler(AppError, app_error_handler)
    app.include_router(router)
    app.include_router(callback_router)

    logger.info(
        "Integration API ready",
        extra={"providers": sorted(settings.providers), "base_url": settings.base_url},
    )
    return app
