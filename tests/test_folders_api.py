"""Tests for employee folders, the admin Drive structure, knowledge base and conversation history."""

from unittest.mock import patch

import pytest

from staffhub.core.config import settings
from staffhub.drive import LocalDriveClient
from staffhub.exceptions import FolderNotFoundError, PlanLimitExceededError, ValidationError
from staffhub.models import Folder, PlanExtension
from staffhub.services.folder_service import MAX_CONVERSATION_MESSAGES, FolderService
from tests.conftest import bearer, make_user


def _employee(client, email="juan@empresa.cl", name="Juan Pérez"):
    resp = client.post("/api/folders/employees", json={"email": email, "name": name})
    assert resp.status_code == 201
    return resp.json()


class TestEmployeeFolders:
    def test_create_employee_folder(self, client):
        data = _employee(client)
        assert data["folder_type"] == "employee"
        assert data["employee_email"] == "juan@empresa.cl"
        assert data["name"] == "Juan Pérez"
        assert data["drive_folder_id"].startswith("local_")

    def test_create_is_idempotent_and_normalizes_email(self, client):
        first = _employee(client, email="Juan@Empresa.cl")
        second = _employee(client, email="juan@empresa.cl ")
        assert first["id"] == second["id"]
        assert len(client.get("/api/folders").json()) == 1

    def test_invalid_email_is_rejected(self, client):
        resp = client.post("/api/folders/employees", json={"email": "not-an-email"})
        assert resp.status_code == 422

    def test_name_defaults_to_mailbox(self, client):
        assert _employee(client, email="maria@empresa.cl", name=None)["name"] == "maria"

    def test_get_by_email_and_id(self, client):
        created = _employee(client)
        assert client.get("/api/folders/employees/juan@empresa.cl").json()["id"] == created["id"]
        assert client.get(f"/api/folders/{created['id']}").json()["id"] == created["id"]

    def test_missing_folder_is_404(self, client):
        resp = client.get("/api/folders/employees/ghost@empresa.cl")
        assert resp.status_code == 404
        assert resp.json()["error"] == "FOLDER_NOT_FOUND"

    def test_delete_removes_row_and_drive_folder(self, client):
        created = _employee(client)
        drive = LocalDriveClient(settings.local_drive_path)
        assert drive.get_stats()["folders"] == 1

        assert client.delete(f"/api/folders/{created['id']}").status_code == 204
        assert client.get(f"/api/folders/{created['id']}").status_code == 404
        assert drive.get_stats()["folders"] == 0

    def test_stats(self, client):
        created = _employee(client)
        client.post("/api/folders/employees/juan@empresa.cl/faqs", json={"question": "¿Horario?", "answer": "9 a 18"})
        stats = client.get(f"/api/folders/{created['id']}/stats").json()
        assert stats["documents"] == 0
        assert stats["knowledge"]["faqs"] == 1
        assert stats["synced"] is True


class TestTenantScoping:
    def test_other_company_cannot_see_folder(self, db):
        admin_a = make_user(db, email="a@empresa.cl")
        admin_b = make_user(db, email="b@otra.cl")
        folder = FolderService(db).create_employee_folder(admin_a.company_id, "juan@empresa.cl", owner=admin_a)

        with pytest.raises(FolderNotFoundError):
            FolderService(db).get_folder(folder.id, admin_b.company_id)
        with pytest.raises(FolderNotFoundError):
            FolderService(db).get_employee_folder(admin_b.company_id, "juan@empresa.cl")

    def test_employee_only_sees_own_folder(self, client, db, auth_enabled):
        admin = make_user(db, email="admin@empresa.cl")
        employee = make_user(db, email="juan@empresa.cl", role="employee", company_id=admin.company_id)
        FolderService(db).create_employee_folder(admin.company_id, "juan@empresa.cl", owner=admin)
        FolderService(db).create_employee_folder(admin.company_id, "maria@empresa.cl", owner=admin)

        own = client.get("/api/folders/employees/juan@empresa.cl", headers=bearer(employee))
        assert own.status_code == 200
        other = client.get("/api/folders/employees/maria@empresa.cl", headers=bearer(employee))
        assert other.status_code == 403
        assert client.get("/api/folders", headers=bearer(employee)).status_code == 403

    def test_delete_cleans_up_the_owners_drive(self, client, db, auth_enabled):
        owner = make_user(db, email="owner@empresa.cl")
        colleague = make_user(db, email="colleague@empresa.cl", company_id=owner.company_id)
        folder = FolderService(db).create_employee_folder(owner.company_id, "juan@empresa.cl", owner=owner)
        requested = []

        def select(session, user_id):
            requested.append(user_id)
            return LocalDriveClient(settings.local_drive_path)

        with patch("staffhub.services.folder_service.drive_for_user", side_effect=select):
            resp = client.delete(f"/api/folders/{folder.id}", headers=bearer(colleague))
        assert resp.status_code == 204
        assert requested == [owner.user_id]
        assert LocalDriveClient(settings.local_drive_path).get_stats()["folders"] == 0


class TestPlanLimits:
    def test_folder_limit_enforced_for_active_plan(self, db):
        admin = make_user(db, plan_id="basic")
        service = FolderService(db)
        for i in range(10):
            service.create_employee_folder(admin.company_id, f"e{i}@empresa.cl", owner=admin)
        with pytest.raises(PlanLimitExceededError):
            service.create_employee_folder(admin.company_id, "e10@empresa.cl", owner=admin)

    def test_existing_folder_returned_even_at_limit(self, db):
        admin = make_user(db, plan_id="basic")
        service = FolderService(db)
        for i in range(10):
            service.create_employee_folder(admin.company_id, f"e{i}@empresa.cl", owner=admin)
        assert service.create_employee_folder(admin.company_id, "e0@empresa.cl", owner=admin).employee_email == "e0@empresa.cl"

    def test_limit_error_over_http_is_402(self, client, db, auth_enabled):
        admin = make_user(db, plan_id="basic")
        for i in range(10):
            FolderService(db).create_employee_folder(admin.company_id, f"e{i}@empresa.cl", owner=admin)
        resp = client.post("/api/folders/employees", json={"email": "extra@empresa.cl"}, headers=bearer(admin))
        assert resp.status_code == 402
        assert resp.json()["error"] == "PLAN_LIMIT_EXCEEDED"


class TestAdminFolder:
    def test_requires_registered_user(self, client):
        assert client.post("/api/folders/admin").status_code == 403

    def test_requires_active_plan(self, client, db, auth_enabled):
        admin = make_user(db)
        resp = client.post("/api/folders/admin", headers=bearer(admin))
        assert resp.status_code == 402
        assert resp.json()["error"] == "NO_ACTIVE_PLAN"

    def test_builds_master_and_extension_subfolders(self, client, db, auth_enabled):
        admin = make_user(db, plan_id="pro")
        for ext in ("ext_abogados", "ext_analytics"):
            db.add(PlanExtension(user_id=admin.user_id, plan_id="pro", extension_id=ext))
        db.commit()

        resp = client.post("/api/folders/admin", headers=bearer(admin))
        assert resp.status_code == 200
        data = resp.json()
        assert data["created"] is True
        assert data["master"]["name"] == "Master - StaffHub"
        assert data["master"]["plan_name"] == "Pro"
        # Analytics ships no workspace folder.
        assert sorted(s["name"] for s in data["subfolders"]) == ["Abogados", "StaffHub"]

        again = client.post("/api/folders/admin", headers=bearer(admin)).json()
        assert again["created"] is False
        assert again["master"]["id"] == data["master"]["id"]
        assert db.query(Folder).filter(Folder.folder_type == "extension").count() == 2

    def test_employee_folders_nest_under_staffhub_subfolder(self, db, local_drive):
        admin = make_user(db, plan_id="pro")
        service = FolderService(db, drive=local_drive)
        structure = service.ensure_admin_folder(admin, "Pro")
        staffhub = next(s for s in structure["subfolders"] if s.extension_type == "staffhub")

        folder = service.create_employee_folder(admin.company_id, "juan@empresa.cl", owner=admin)
        info = local_drive.get_file_info(folder.drive_folder_id)
        assert info["parents"] == [staffhub.drive_folder_id]


class TestKnowledgeBase:
    def test_grouped_by_kind(self, client):
        _employee(client)
        base = "/api/folders/employees/juan@empresa.cl"
        client.post(f"{base}/faqs", json={"question": "¿Cuándo pagan?", "answer": "El último día hábil"})
        client.post(f"{base}/knowledge", json={"kind": "policies", "title": "Vacaciones", "content": "15 días"})

        kb = client.get(f"{base}/knowledge").json()
        assert set(kb) == {"faqs", "documents", "policies", "procedures"}
        assert kb["faqs"][0]["title"] == "¿Cuándo pagan?"
        assert kb["policies"][0]["content"] == "15 días"

    def test_unknown_kind_rejected(self, client):
        _employee(client)
        resp = client.post(
            "/api/folders/employees/juan@empresa.cl/knowledge", json={"kind": "memes", "title": "x"}
        )
        assert resp.status_code == 400

    def test_search_matches_by_kind_specific_fields(self, client):
        _employee(client)
        base = "/api/folders/employees/juan@empresa.cl"
        client.post(f"{base}/faqs", json={"question": "Horario", "answer": "Entrada a las NUEVE"})
        client.post(f"{base}/knowledge", json={"kind": "documents", "title": "Contrato", "description": "firmado"})
        client.post(f"{base}/knowledge", json={"kind": "procedures", "title": "nueve pasos", "content": "otro"})

        hits = client.get(f"{base}/knowledge/search", params={"q": "nueve"}).json()
        assert [h["title"] for h in hits] == ["Horario"]
        assert [h["title"] for h in client.get(f"{base}/knowledge/search", params={"q": "FIRMADO"}).json()] == ["Contrato"]


class TestConversation:
    def test_history_oldest_first_with_limit(self, client):
        _employee(client)
        url = "/api/folders/employees/juan@empresa.cl/conversation"
        for i in range(3):
            client.post(url, json={"role": "user", "content": f"m{i}", "channel": "web"})

        assert [m["content"] for m in client.get(url).json()] == ["m0", "m1", "m2"]
        assert [m["content"] for m in client.get(url, params={"limit": 2}).json()] == ["m1", "m2"]

    def test_invalid_role(self, db):
        admin = make_user(db)
        FolderService(db).create_employee_folder(admin.company_id, "juan@empresa.cl")
        with pytest.raises(ValidationError):
            FolderService(db).add_conversation_message(admin.company_id, "juan@empresa.cl", "bot", "hola")

    def test_history_is_capped(self, db):
        admin = make_user(db)
        service = FolderService(db)
        service.create_employee_folder(admin.company_id, "juan@empresa.cl")
        for i in range(MAX_CONVERSATION_MESSAGES + 5):
            service.add_conversation_message(admin.company_id, "juan@empresa.cl", "user", f"m{i}")

        history = service.get_conversation_history(admin.company_id, "juan@empresa.cl")
        assert len(history) == MAX_CONVERSATION_MESSAGES
        assert history[0].content == "m5"
