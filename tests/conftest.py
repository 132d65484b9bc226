"""Shared test fixtures for the StaffHub test suite.

Tests run against a throwaway SQLite file. The app creates its tables on
import; every test starts from empty tables plus the seeded plan catalogue,
and the in-memory services (audit trail, MFA store, recommendation cache,
circuit breakers, rate limiter) are reset.
"""

import os
import tempfile

_TMP_DIR = tempfile.mkdtemp(prefix="staffhub-tests-")

# Force auth off, no LLM and a temporary database before any app imports.
os.environ["DATABASE_URL"] = f"sqlite:///{os.path.join(_TMP_DIR, 'test.db')}"
os.environ["AUTH_ENABLED"] = "false"
os.environ["LOG_FORMAT"] = "text"
os.environ["GROQ_API_KEY"] = ""
os.environ["GOOGLE_CLIENT_ID"] = ""
os.environ["GOOGLE_CLIENT_SECRET"] = ""
os.environ["WHATSAPP_APP_SECRET"] = ""
os.environ["WHATSAPP_VERIFY_TOKEN"] = ""
os.environ["TELEGRAM_SECRET_TOKEN"] = ""
os.environ["LOCAL_DRIVE_PATH"] = os.path.join(_TMP_DIR, "local_drive.json")

import uuid
from datetime import datetime, timedelta, timezone
from unittest.mock import MagicMock

import pytest
from fastapi.testclient import TestClient
from passlib.hash import bcrypt

from staffhub.database import Base, SessionLocal, get_db
from staffhub.main import app
from staffhub.core import circuit_breaker
from staffhub.core.config import settings
from staffhub.core.seeder import seed_catalogue
from staffhub.core.token_factory import create_token
from staffhub.drive import LocalDriveClient
from staffhub.middleware.request_context import limiter
from staffhub.models import Company, User
from staffhub.services.audit_service import reset_audit_service
from staffhub.services.llm_service import reset_reply_cache, reset_runtime_config
from staffhub.services.mfa_service import reset_mfa_service
from staffhub.services.recommendation_service import reset_cache

TEST_PASSWORD = "correct-horse-battery"


@pytest.fixture(autouse=True)
def _clean_state():
    """Empty every table, reseed the catalogue and reset in-process state before each test."""
    db = SessionLocal()
    try:
        for table in reversed(Base.metadata.sorted_tables):
            db.execute(table.delete())
        db.commit()
        seed_catalogue(db)
    finally:
        db.close()

    LocalDriveClient(settings.local_drive_path).clear()
    reset_audit_service()
    reset_mfa_service()
    reset_cache()
    reset_runtime_config()
    reset_reply_cache()
    circuit_breaker.reset_all()
    limiter.clear()
    yield


@pytest.fixture()
def db():
    """Per-test database session."""
    session = SessionLocal()
    yield session
    session.close()


@pytest.fixture()
def client(db):
    """FastAPI TestClient with the DB dependency overridden to use the test session."""

    def _override_get_db():
        yield db

    app.dependency_overrides[get_db] = _override_get_db
    with TestClient(app) as c:
        yield c
    app.dependency_overrides.clear()


@pytest.fixture()
def local_drive(tmp_path):
    return LocalDriveClient(str(tmp_path / "drive.json"))


@pytest.fixture()
def groq_configured(monkeypatch):
    """Pretend a Groq key is set; tests patch ``litellm.completion``."""
    monkeypatch.setattr(settings, "groq_api_key", "gsk_test_key_for_unit_tests_only")


@pytest.fixture()
def auth_enabled(monkeypatch):
    monkeypatch.setattr(settings, "auth_enabled", True)


def make_user(
    db,
    email: str = None,
    role: str = "admin",
    company_id: str = None,
    plan_id: str = None,
    **overrides,
) -> User:
    """Factory for users. Creates a company unless *company_id* is given."""
    if company_id is None:
        company = Company(id=f"co-{uuid.uuid4().hex[:8]}", name="Empresa Test")
        db.add(company)
        company_id = company.id
    fields = {
        "user_id": f"u-{uuid.uuid4().hex[:8]}",
        "email": email or f"{uuid.uuid4().hex[:6]}@empresa.cl",
        "display_name": "Test User",
        "password_hash": bcrypt.hash(TEST_PASSWORD),
        "role": role,
        "is_active": True,
        "company_id": company_id,
    }
    fields.update(overrides)
    user = User(**fields)
    if plan_id:
        user.current_plan_id = plan_id
        user.plan_expiration = datetime.now(timezone.utc) + timedelta(days=30)
    db.add(user)
    db.commit()
    db.refresh(user)
    return user


def token_for(user: User) -> str:
    return create_token(
        subject=user.user_id,
        role=user.role,
        secret=settings.jwt_secret_key,
        company_id=user.company_id,
    )


def bearer(user: User) -> dict:
    return {"Authorization": f"Bearer {token_for(user)}"}


@pytest.fixture()
def admin_user(db) -> User:
    return make_user(db, email="admin@empresa.cl", role="admin")


@pytest.fixture()
def auth_headers(admin_user) -> dict:
    """Valid JWT auth headers for an admin (only checked when auth is enabled)."""
    return bearer(admin_user)


def llm_reply(content: str) -> MagicMock:
    """A ``litellm.completion`` return value carrying *content*."""
    response = MagicMock()
    response.choices = [MagicMock()]
    response.choices[0].message.content = content
    return response
