"""Tests for JWT tokens, auth dependencies, registration, login and the MFA step-up."""

import base64
import json
import time

import pytest

from staffhub.core.config import settings
from staffhub.core.token_factory import PURPOSE_MFA_PENDING, create_token, decode_token
from staffhub.services.audit_service import get_audit_service
from staffhub.services.mfa_service import get_mfa_service, totp_at
from tests.conftest import TEST_PASSWORD, bearer, make_user

SECRET = "test-secret"


class TestTokenFactory:
    def test_roundtrip_carries_claims(self):
        token = create_token("u-1", "admin", SECRET, company_id="co-1")
        payload = decode_token(token, SECRET)
        assert payload.sub == "u-1"
        assert payload.role == "admin"
        assert payload.company_id == "co-1"
        assert payload.purpose == "session"

    def test_wrong_secret_rejected(self):
        token = create_token("u-1", "admin", SECRET)
        assert decode_token(token, "other-secret") is None

    def test_expired_token_rejected(self):
        token = create_token("u-1", "admin", SECRET, expires_hours=-1)
        assert decode_token(token, SECRET) is None

    def test_malformed_token_rejected(self):
        assert decode_token("not.a.jwt", SECRET) is None
        assert decode_token("garbage", SECRET) is None

    def test_unsupported_algorithm(self):
        with pytest.raises(ValueError):
            create_token("u-1", "admin", SECRET, algorithm="RS256")

    def test_unsigned_header_rejected(self):
        _, claims, signature = create_token("u-1", "admin", SECRET).split(".")
        none_header = base64.urlsafe_b64encode(b'{"alg":"none","typ":"JWT"}').rstrip(b"=").decode()
        assert decode_token(f"{none_header}.{claims}.{signature}", SECRET) is None

    def test_tampered_claims_rejected(self):
        header, _, signature = create_token("u-1", "employee", SECRET).split(".")
        claims = base64.urlsafe_b64encode(
            json.dumps({"iss": "staffhub", "sub": "u-1", "role": "admin", "exp": time.time() + 60}).encode()
        ).rstrip(b"=").decode()
        assert decode_token(f"{header}.{claims}.{signature}", SECRET) is None

    def test_each_token_has_its_own_id(self):
        first = decode_token(create_token("u-1", "admin", SECRET), SECRET)
        second = decode_token(create_token("u-1", "admin", SECRET), SECRET)
        assert first.token_id != second.token_id


class TestAuthDisabled:
    def test_anonymous_admin_can_reach_admin_routes(self, client):
        resp = client.get("/api/audit/stats")
        assert resp.status_code == 200


class TestAuthEnabled:
    def test_missing_token_is_401(self, client, auth_enabled):
        resp = client.get("/api/audit/stats")
        assert resp.status_code == 401
        assert resp.json()["error"] == "UNAUTHORIZED"

    def test_invalid_token_is_401(self, client, auth_enabled):
        resp = client.get("/api/audit/stats", headers={"Authorization": "Bearer nope"})
        assert resp.status_code == 401

    def test_employee_is_forbidden_from_admin_routes(self, client, db, auth_enabled):
        employee = make_user(db, role="employee")
        resp = client.get("/api/audit/stats", headers=bearer(employee))
        assert resp.status_code == 403

    def test_deactivated_user_is_rejected(self, client, db, auth_enabled):
        user = make_user(db, is_active=False)
        resp = client.get("/api/auth/me", headers=bearer(user))
        assert resp.status_code == 401

    def test_pending_mfa_token_is_not_a_session(self, client, db, auth_enabled):
        user = make_user(db)
        pending = create_token(
            user.user_id, user.role, settings.jwt_secret_key, purpose=PURPOSE_MFA_PENDING
        )
        resp = client.get("/api/auth/me", headers={"Authorization": f"Bearer {pending}"})
        assert resp.status_code == 401

    def test_me(self, client, auth_enabled, admin_user, auth_headers):
        resp = client.get("/api/auth/me", headers=auth_headers)
        assert resp.status_code == 200
        assert resp.json()["email"] == "admin@empresa.cl"


class TestRegistration:
    def test_register_creates_company_admin(self, client):
        resp = client.post("/api/auth/register", json={
            "email": "Ana@Empresa.cl",
            "password": "securepass",
            "display_name": "Ana",
            "company_name": "Empresa SpA",
        })
        assert resp.status_code == 201
        data = resp.json()
        assert data["email"] == "ana@empresa.cl"
        assert data["role"] == "admin"
        assert data["company_id"]

    def test_duplicate_email_rejected(self, client, admin_user):
        resp = client.post("/api/auth/register", json={
            "email": "admin@empresa.cl",
            "password": "securepass",
            "display_name": "Dup",
        })
        assert resp.status_code == 400

    def test_short_password_rejected(self, client):
        resp = client.post("/api/auth/register", json={
            "email": "x@empresa.cl", "password": "short", "display_name": "X",
        })
        assert resp.status_code == 422

    def test_joining_company_makes_employee(self, client, admin_user):
        resp = client.post("/api/auth/register", json={
            "email": "emp@empresa.cl",
            "password": "securepass",
            "display_name": "Emp",
            "company_id": admin_user.company_id,
        })
        assert resp.status_code == 201
        assert resp.json()["role"] == "employee"

    def test_joining_company_requires_its_admin(self, client, db, auth_enabled, admin_user):
        outsider = make_user(db, email="other@otra.cl")
        payload = {
            "email": "emp@empresa.cl",
            "password": "securepass",
            "display_name": "Emp",
            "company_id": admin_user.company_id,
        }
        assert client.post("/api/auth/register", json=payload).status_code == 403
        assert client.post("/api/auth/register", json=payload, headers=bearer(outsider)).status_code == 403
        assert client.post("/api/auth/register", json=payload, headers=bearer(admin_user)).status_code == 201


class TestLogin:
    def test_login_returns_session_token(self, client, admin_user):
        resp = client.post("/api/auth/login", json={"email": "admin@empresa.cl", "password": TEST_PASSWORD})
        assert resp.status_code == 200
        data = resp.json()
        assert data["mfa_required"] is False
        assert decode_token(data["token"], settings.jwt_secret_key).sub == admin_user.user_id

    def test_wrong_password_is_audited(self, client, admin_user):
        resp = client.post("/api/auth/login", json={"email": "admin@empresa.cl", "password": "wrong-password"})
        assert resp.status_code == 401
        failed = get_audit_service().search_logs(action="LOGIN_FAILED")
        assert failed and failed[0]["user_id"] == admin_user.user_id

    def test_unknown_email(self, client):
        resp = client.post("/api/auth/login", json={"email": "ghost@empresa.cl", "password": TEST_PASSWORD})
        assert resp.status_code == 401

    def test_mfa_step_up(self, client, db):
        user = make_user(db, email="mfa@empresa.cl", mfa_enabled=True)
        secret = get_mfa_service().generate_totp_secret(user.email)["secret"]
        get_mfa_service().register_mfa(user.user_id, "totp", secret=secret, backup_codes=["AAAA-BBBB"])

        first = client.post("/api/auth/login", json={"email": "mfa@empresa.cl", "password": TEST_PASSWORD})
        assert first.status_code == 200
        challenge = first.json()
        assert challenge["mfa_required"] is True
        assert challenge["token"] is None
        assert "totp" in challenge["mfa_methods"]

        bad = client.post("/api/auth/mfa/verify", json={
            "mfa_token": challenge["mfa_token"], "method": "totp", "code": "12",
        })
        assert bad.status_code == 401
        assert bad.json()["error"] == "MFA_REQUIRED"

        code = totp_at(secret, int(time.time() // 30))
        ok = client.post("/api/auth/mfa/verify", json={
            "mfa_token": challenge["mfa_token"], "method": "totp", "code": code,
        })
        assert ok.status_code == 200
        assert decode_token(ok.json()["token"], settings.jwt_secret_key).purpose == "session"

    def test_backup_code_completes_login(self, client, db):
        user = make_user(db, email="mfa@empresa.cl", mfa_enabled=True)
        get_mfa_service().register_mfa(user.user_id, "sms", phone="+56911112222", backup_codes=["AAAA-BBBB"])
        challenge = client.post(
            "/api/auth/login", json={"email": "mfa@empresa.cl", "password": TEST_PASSWORD}
        ).json()

        sms = client.post("/api/auth/mfa/sms-code", json={"mfa_token": challenge["mfa_token"]})
        assert sms.status_code == 200
        assert sms.json()["masked_phone"] == "***-***-2222"

        ok = client.post("/api/auth/mfa/verify", json={
            "mfa_token": challenge["mfa_token"], "method": "backup", "code": "aaaa-bbbb",
        })
        assert ok.status_code == 200

    def test_mfa_skipped_when_methods_lost(self, client, db):
        make_user(db, email="mfa@empresa.cl", mfa_enabled=True)
        resp = client.post("/api/auth/login", json={"email": "mfa@empresa.cl", "password": TEST_PASSWORD})
        assert resp.json()["mfa_required"] is False

    def test_skipped_mfa_is_a_security_event(self, client, db):
        user = make_user(db, email="mfa@empresa.cl", mfa_enabled=True)
        client.post("/api/auth/login", json={"email": "mfa@empresa.cl", "password": TEST_PASSWORD})
        events = get_audit_service().search_logs(action="SECURITY_EVENT", user_id=user.user_id)
        assert len(events) == 1
        assert events[0]["details"]["event"] == "MFA_METHODS_MISSING"
        assert events[0]["details"]["severity"] == "HIGH"
        assert events[0]["level"] == "WARN"
