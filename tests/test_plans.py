"""Tests for the plan catalogue, quotes, purchases and plan limits."""

from datetime import datetime, timedelta, timezone

import pytest

from staffhub.exceptions import PlanLimitExceededError, PlanNotFoundError, ValidationError
from staffhub.models import Folder, Payment, TokenUsage
from staffhub.services import plan_service
from staffhub.services.format_utils import format_bytes, format_price, format_storage
from tests.conftest import bearer, make_user


class TestFormatting:
    def test_price_uses_dot_thousands(self):
        assert format_price(29990) == "$29.990 CLP"
        assert format_price(119990) == "$119.990 CLP"
        assert format_price(0) == "$0 CLP"

    def test_bytes(self):
        assert format_bytes(0) == "0 Bytes"
        assert format_bytes(1536) == "1.5 KB"
        assert format_bytes(1024 ** 3) == "1 GB"

    def test_unlimited_storage(self):
        assert format_storage(None) == "Unlimited"


class TestCatalogue:
    def test_plans_cheapest_first(self, client):
        plans = client.get("/api/plans").json()
        assert [p["id"] for p in plans] == ["basic", "pro", "premium"]
        assert plans[0]["price_formatted"] == "$29.990 CLP"
        assert plans[0]["storage_formatted"] == "1 GB"
        assert plans[2]["max_folders"] is None
        assert plans[1]["features"]

    def test_extensions(self, client):
        extensions = client.get("/api/plans/extensions").json()
        assert {e["id"] for e in extensions} == {"ext_abogados", "ext_entrenador", "ext_analytics"}

    def test_unknown_plan(self, db):
        with pytest.raises(PlanNotFoundError):
            plan_service.get_plan(db, "gold")


class TestQuote:
    def test_total_includes_extensions(self, client):
        resp = client.post("/api/plans/pro/quote", json={"extension_ids": ["ext_abogados", "ext_entrenador"]})
        assert resp.status_code == 200
        data = resp.json()
        assert data["total"] == 59990 + 15000 + 12000
        assert data["total_formatted"] == "$86.990 CLP"
        assert len(data["extensions"]) == 2

    def test_unknown_and_duplicate_extensions_ignored(self, db):
        plan = plan_service.get_plan(db, "basic")
        total = plan_service.calculate_total_price(db, plan, ["ext_analytics", "ext_analytics", "ext_nope"])
        assert total == 29990 + 9990

    def test_unknown_plan_is_404(self, client):
        resp = client.post("/api/plans/gold/quote", json={})
        assert resp.status_code == 404
        assert resp.json()["error"] == "PLAN_NOT_FOUND"


class TestPurchase:
    def test_anonymous_cannot_buy(self, client):
        assert client.post("/api/plans/basic/purchase", json={}).status_code == 403

    def test_purchase_activates_plan_and_builds_folders(self, client, db, auth_enabled):
        user = make_user(db, role="employee")
        resp = client.post(
            "/api/plans/pro/purchase",
            json={"extension_ids": ["ext_entrenador"]},
            headers=bearer(user),
        )
        assert resp.status_code == 201
        data = resp.json()
        assert data["status"] == "paid"
        assert data["amount"] == 59990 + 12000
        assert data["master_folder_id"]
        assert data["folder_errors"] == []

        db.refresh(user)
        assert user.role == "admin"
        assert user.current_plan_id == "pro"
        assert plan_service.has_active_plan(user)
        assert db.query(Payment).filter(Payment.user_id == user.user_id).count() == 1
        assert db.get(TokenUsage, user.user_id).token_limit == 200000

        subfolders = db.query(Folder).filter(Folder.parent_id == data["master_folder_id"]).all()
        assert sorted(f.extension_type for f in subfolders) == ["entrenador", "staffhub"]

    def test_second_purchase_reuses_master_folder(self, db):
        user = make_user(db)
        first = plan_service.purchase_plan(db, user, "basic")
        second = plan_service.purchase_plan(db, user, "pro", ["ext_abogados"])
        assert first["master_folder_id"] == second["master_folder_id"]
        master = db.get(Folder, first["master_folder_id"])
        assert master.plan_name == "Pro"

    def test_my_plan(self, client, db, auth_enabled):
        user = make_user(db)
        plan_service.purchase_plan(db, user, "basic", ["ext_analytics"])

        data = client.get("/api/plans/me", headers=bearer(user)).json()
        assert data["active"] is True
        assert data["plan"]["id"] == "basic"
        assert [e["id"] for e in data["extensions"]] == ["ext_analytics"]
        assert data["available_extensions"] == 2
        assert data["usage"]["folders"] == 0
        assert data["usage"]["token_limit"] == 50000


class TestLimits:
    def test_no_plan_means_no_cap(self, db):
        user = make_user(db)
        plan_service.check_limits(db, user, "storage", incoming_bytes=10 ** 12)

    def test_expired_plan_is_not_active(self, db):
        user = make_user(db, plan_id="basic")
        user.plan_expiration = datetime.now(timezone.utc) - timedelta(days=1)
        db.commit()
        assert plan_service.has_active_plan(user) is False

    def test_storage_cap(self, db):
        user = make_user(db, plan_id="basic")
        with pytest.raises(PlanLimitExceededError) as exc_info:
            plan_service.check_limits(db, user, "storage", incoming_bytes=1024 ** 3 + 1)
        assert exc_info.value.status_code == 402

    def test_unknown_kind(self, db):
        with pytest.raises(ValidationError):
            plan_service.check_limits(db, make_user(db), "tokens")
