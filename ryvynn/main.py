import logging
import os
from contextlib import asynccontextmanager
from typing import Optional

from dotenv import load_dotenv
from fastapi import FastAPI, HTTPException
from fastapi.middleware.cors import CORSMiddleware

# Load env from ryvynn/.env
package_dir = os.path.dirname(os.path.abspath(__file__))
if "PYTEST_CURRENT_TEST" not in os.environ:
    load_dotenv(dotenv_path=os.path.join(package_dir, ".env"))

from ryvynn.core.config import settings, validate_config
from ryvynn.core.database import create_all_tables, get_session_factory
from ryvynn.core.errors import (
    AppError,
    app_error_handler,
    http_error_handler,
    unhandled_exception_handler,
)
from ryvynn.core.logging import configure_logging
from ryvynn.core.middleware.request_id import RequestIdMiddleware
from ryvynn.api import billing, companion, entitlements, health, journal, profile, truth
from ryvynn.api.deps import Services, build_services


@asynccontextmanager
async def lifespan(app: FastAPI):
    logger = logging.getLogger("ryvynn")
    logger.info("Starting Ryvynn backend...")
    try:
        yield
    finally:
        logger.info("Stopping Ryvynn backend...")


def create_app(services: Optional[Services] = None, settings_obj=None) -> FastAPI:
    """
    Build the FastAPI application.

    Tests pass a prebuilt Services bundle (in-memory database, seeded rng,
    fixed clock); production builds one from settings and DATABASE_URL.
    """
    cfg = settings_obj or settings
    configure_logging(cfg.ENV)
    validate_config(strict=getattr(cfg, "CONFIG_STRICT", False), settings_obj=cfg)

    if services is None:
        create_all_tables()
        services = build_services(get_session_factory(), cfg)

    app = FastAPI(title="Ryvynn - Backend", lifespan=lifespan)
    app.state.services = services
    app.state.settings = cfg

    app.add_middleware(RequestIdMiddleware)
    app.add_middleware(
        CORSMiddleware,
        allow_origins=[origin.strip() for origin in cfg.CORS_ORIGINS.split(",") if origin.strip()],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    app.add_exception_handler(AppError, app_error_handler)
    app.add_exception_handler(HTTPException, http_error_handler)
    app.add_exception_handler(Exception, unhandled_exception_handler)

    app.include_router(companion.router)
    app.include_router(entitlements.router)
    app.include_router(truth.router)
    app.include_router(journal.router)
    app.include_router(profile.router)
    app.include_router(billing.router, prefix="/api")
    app.include_router(health.root_router)
    return app
