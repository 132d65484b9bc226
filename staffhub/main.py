"""StaffHub API application.

Importing this module configures logging, checks the database, creates
missing tables and builds ``app``. The lifespan hook refuses to start an
insecure production configuration, seeds the plan catalogue and warns
about development shortcuts.
"""

import logging
import re
import time
from contextlib import asynccontextmanager
from typing import List

from fastapi import Depends, FastAPI
from fastapi.middleware.cors import CORSMiddleware
from sqlalchemy import func
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from . import models
from .api import (
    ai_router,
    audit_router,
    communications_router,
    documents_router,
    drive_router,
    folders_router,
    mfa_router,
    plans_router,
    webhooks_router,
)
from .api.auth_routes import router as auth_router
from .core.circuit_breaker import breaker_states
from .core.config import DEFAULT_JWT_SECRET, ConfigurationError, Environment, Settings, settings
from .core.logging_config import setup_logging
from .core.seeder import seed_catalogue
from .database import Base, SessionLocal, engine, get_db
from .exceptions import StaffHubException
from .middleware.exception_handler import staffhub_exception_handler
from .middleware.request_context import RequestContextMiddleware
from .services.audit_service import get_audit_service

VERSION = "1.0.0"

ROUTERS = [
    auth_router,
    mfa_router,
    plans_router,
    folders_router,
    documents_router,
    drive_router,
    ai_router,
    communications_router,
    webhooks_router,
    audit_router,
]

setup_logging(log_level=settings.log_level, log_format=settings.log_format)
logger = logging.getLogger(__name__)

_started = time.monotonic()


def masked_url(url: str) -> str:
    return re.sub(r"://([^:/@]+):([^@]+)@", r"://\1:***@", url)


def prepare_database() -> None:
    """Fail fast when the database is unreachable, then create missing tables."""
    url = settings.database_url
    try:
        Base.metadata.create_all(bind=engine)
    except SQLAlchemyError as e:
        if url.startswith("sqlite"):
            hint = "check that the database directory exists and is writable"
        else:
            hint = "check that the server is up and DATABASE_URL credentials are right"
        logger.critical("Database unavailable at %s: %s (%s)", masked_url(url), e, hint)
        raise SystemExit(1) from e
    logger.info("Database ready at %s", masked_url(url))


def development_warnings(config: Settings) -> List[str]:
    """Shortcuts acceptable while developing that must not reach production."""
    warnings = []
    if config.jwt_secret_key == DEFAULT_JWT_SECRET:
        if config.auth_enabled:
            warnings.append("JWT_SECRET_KEY is the default while auth is enabled: tokens can be forged")
        else:
            warnings.append("JWT_SECRET_KEY is the default: set a real key before enabling auth")
    if not config.auth_enabled:
        warnings.append("AUTH_ENABLED=false: every request runs as an anonymous admin")
    if not config.whatsapp_app_secret:
        warnings.append("WHATSAPP_APP_SECRET is empty: WhatsApp webhook signatures are not checked")
    if not config.telegram_secret_token:
        warnings.append("TELEGRAM_SECRET_TOKEN is empty: the Telegram webhook accepts any caller")
    return warnings


def _seed() -> None:
    db = SessionLocal()
    try:
        seed_catalogue(db)
    except SQLAlchemyError as e:
        logger.warning("Catalogue seeding failed, plans may be missing: %s", e)
    finally:
        db.close()


@asynccontextmanager
async def lifespan(app: FastAPI):
    try:
        settings.validate_production_config()
    except ConfigurationError as e:
        logger.critical("Refusing to start: %s", e)
        raise SystemExit(1) from e

    if settings.environment == Environment.DEVELOPMENT:
        for warning in development_warnings(settings):
            logger.warning("SECURITY: %s", warning)
    if not settings.groq_configured():
        logger.warning("GROQ_API_KEY is empty: AI endpoints answer 503 and sentiment uses keywords")
    if not settings.google_configured():
        logger.info("Google OAuth not configured: files go to the local drive at %s", settings.local_drive_path)

    _seed()
    get_audit_service().apply_retention_policy()
    logger.info(
        "StaffHub API %s started",
        VERSION,
        extra={
            "environment": settings.environment.value,
            "auth": settings.auth_enabled,
            "llm": settings.groq_configured(),
            "drive": "google" if settings.google_configured() else "local",
        },
    )
    yield
    logger.info("StaffHub API stopping")


def create_app() -> FastAPI:
    application = FastAPI(
        title="StaffHub API",
        description=(
            "HR and internal-communications backend: employee folders and knowledge base, "
            "Drive-backed documents, plans and extensions, Telegram and WhatsApp ingestion "
            "with sentiment analysis, and LLM chat grounded in company documents.\n\n"
            "With `AUTH_ENABLED=true` send `Authorization: Bearer <token>`; otherwise every "
            "request runs as an anonymous admin."
        ),
        version=VERSION,
        lifespan=lifespan,
    )
    # Added last means outermost: CORS answers preflights before throttling.
    application.add_middleware(RequestContextMiddleware)
    application.add_middleware(
        CORSMiddleware,
        allow_origins=settings.get_cors_origins(),
        allow_credentials=True,
        allow_methods=["GET", "POST", "PUT", "DELETE"],
        allow_headers=["Content-Type", "Authorization", "X-Request-ID"],
    )
    application.add_exception_handler(StaffHubException, staffhub_exception_handler)
    for router in ROUTERS:
        application.include_router(router)
    return application


prepare_database()
app = create_app()


@app.get("/")
def root():
    return {"name": "StaffHub API", "version": VERSION, "status": "running"}


@app.get("/health")
def health_check(db: Session = Depends(get_db)):
    """Liveness and dependencies. Never raises: a database failure reports ``degraded``."""
    try:
        folder_count = db.query(func.count(models.Folder.id)).scalar() or 0
        db_status = "ok"
    except SQLAlchemyError:
        logger.exception("Health check could not reach the database")
        folder_count = 0
        db_status = "error"

    return {
        "status": "healthy" if db_status == "ok" else "degraded",
        "db": db_status,
        "uptime_seconds": round(time.monotonic() - _started),
        "version": VERSION,
        "folder_count": folder_count,
        "llm": "configured" if settings.groq_configured() else "disabled",
        "drive": "google" if settings.google_configured() else "local",
        "upstreams": breaker_states(),
    }
