"""Tests for document uploads, listing with Drive state, deletion and similarity search."""

from unittest.mock import patch

import pytest

from staffhub.core.config import settings
from staffhub.drive import LocalDriveClient
from staffhub.exceptions import (
    FolderNotFoundError,
    PlanLimitExceededError,
    UnsupportedFileTypeError,
    ValidationError,
)
from staffhub.models import Plan
from staffhub.services import DocumentService, FolderService
from staffhub.services.document_service import extract_text, validate_file_type
from staffhub.services.embedding_service import (
    EmbeddingService,
    cosine_similarity,
    fallback_embedding,
    normalize_vector,
    preprocess_text,
    resize_vector,
)
from tests.conftest import llm_reply, make_user


def _folder(client, email="juan@empresa.cl"):
    resp = client.post("/api/folders/employees", json={"email": email, "name": "Juan"})
    return resp.json()["id"]


def _upload(client, folder_id, name="politicas.txt", body=b"Vacaciones: 15 dias habiles", mime="text/plain"):
    return client.post(
        "/api/documents",
        data={"folder_id": folder_id, "description": "Reglamento interno"},
        files={"file": (name, body, mime)},
    )


class TestFileTypes:
    def test_mime_type_accepted(self):
        assert validate_file_type("a.pdf", "application/pdf") == "application/pdf"

    def test_extension_fallback(self):
        assert validate_file_type("notas.md", "application/octet-stream") == "text/markdown"

    @pytest.mark.parametrize("name", ["setup.exe", "deploy.sh", "app.JS"])
    def test_blocked_extensions(self, name):
        with pytest.raises(UnsupportedFileTypeError):
            validate_file_type(name, "text/plain")

    def test_unknown_type(self):
        with pytest.raises(UnsupportedFileTypeError):
            validate_file_type("image.png", "image/png")

    def test_extract_text_only_for_text_types(self):
        assert extract_text("hola".encode(), "text/plain") == "hola"
        assert extract_text(b"%PDF", "application/pdf") is None


class TestUploadApi:
    def test_upload_and_fetch(self, client):
        folder_id = _folder(client)
        resp = _upload(client, folder_id)
        assert resp.status_code == 201
        doc = resp.json()
        assert doc["name"] == "politicas.txt"
        assert doc["mime_type"] == "text/plain"
        assert doc["size_bytes"] == len(b"Vacaciones: 15 dias habiles")
        assert doc["drive_file_id"].startswith("local_")
        assert doc["token_count"] > 0

        assert client.get(f"/api/documents/{doc['id']}").json()["id"] == doc["id"]

    def test_file_lands_inside_folder_in_drive(self, client):
        folder_id = _folder(client)
        doc = _upload(client, folder_id).json()
        drive = LocalDriveClient(settings.local_drive_path)
        assert drive.download_file(doc["drive_file_id"]) == b"Vacaciones: 15 dias habiles"

    def test_blocked_file_is_415(self, client):
        folder_id = _folder(client)
        resp = _upload(client, folder_id, name="virus.exe", mime="application/octet-stream")
        assert resp.status_code == 415
        assert resp.json()["error"] == "UNSUPPORTED_FILE_TYPE"

    def test_empty_file_is_400(self, client):
        folder_id = _folder(client)
        assert _upload(client, folder_id, body=b"").status_code == 400

    def test_unknown_folder_is_404(self, client):
        assert _upload(client, "fld-missing").status_code == 404

    def test_list_reports_drive_sync(self, client):
        folder_id = _folder(client)
        doc = _upload(client, folder_id).json()

        listed = client.get(f"/api/documents/folder/{folder_id}").json()
        assert [d["id"] for d in listed] == [doc["id"]]
        assert listed[0]["synced"] is True

        LocalDriveClient(settings.local_drive_path).delete_file(doc["drive_file_id"])
        assert client.get(f"/api/documents/folder/{folder_id}").json()[0]["synced"] is False

    def test_delete(self, client):
        folder_id = _folder(client)
        doc = _upload(client, folder_id).json()

        assert client.delete(f"/api/documents/{doc['id']}").status_code == 204
        assert client.get(f"/api/documents/{doc['id']}").status_code == 404
        assert LocalDriveClient(settings.local_drive_path).get_stats()["files"] == 0


class TestUploadService:
    def test_other_company_folder_is_hidden(self, db, local_drive):
        admin_a = make_user(db)
        admin_b = make_user(db)
        folder = FolderService(db, drive=local_drive).create_employee_folder(admin_a.company_id, "juan@empresa.cl")
        service = DocumentService(db, drive=local_drive)
        with pytest.raises(FolderNotFoundError):
            service.upload_document(folder.id, "a.txt", b"x", "text/plain", admin_b, admin_b.company_id)

    def test_file_limit(self, db, local_drive):
        admin = make_user(db, plan_id="basic")
        folder = FolderService(db, drive=local_drive).create_employee_folder(
            admin.company_id, "juan@empresa.cl", owner=admin
        )
        service = DocumentService(db, drive=local_drive)
        service.upload_document(folder.id, "a.txt", b"uno", "text/plain", admin, admin.company_id)

        db.get(Plan, "basic").max_files = 1
        db.commit()
        with pytest.raises(PlanLimitExceededError):
            service.upload_document(folder.id, "b.txt", b"dos", "text/plain", admin, admin.company_id)

    def test_limits_follow_the_folder_owner(self, db, local_drive):
        owner = make_user(db, plan_id="basic")
        colleague = make_user(db, company_id=owner.company_id)
        folder = FolderService(db, drive=local_drive).create_employee_folder(
            owner.company_id, "juan@empresa.cl", owner=owner
        )
        db.get(Plan, "basic").max_files = 1
        db.commit()

        service = DocumentService(db, drive=local_drive)
        service.upload_document(folder.id, "a.txt", b"uno", "text/plain", colleague, colleague.company_id)
        with pytest.raises(PlanLimitExceededError):
            service.upload_document(folder.id, "b.txt", b"dos", "text/plain", colleague, colleague.company_id)

    def test_uploader_plan_does_not_cap_anothers_folder(self, db, local_drive):
        owner = make_user(db)
        uploader = make_user(db, company_id=owner.company_id, plan_id="basic")
        folder = FolderService(db, drive=local_drive).create_employee_folder(
            owner.company_id, "juan@empresa.cl", owner=owner
        )
        db.get(Plan, "basic").max_files = 0
        db.commit()

        document = DocumentService(db, drive=local_drive).upload_document(
            folder.id, "a.txt", b"uno", "text/plain", uploader, uploader.company_id
        )
        assert document.uploaded_by == uploader.user_id
        with pytest.raises(ValidationError):
            DocumentService(db, drive=local_drive).upload_document("fld-x", "  ", b"x", "text/plain", None, None)


class TestEmbeddings:
    def test_preprocess_collapses_whitespace(self):
        assert preprocess_text("  hola \n\t mundo  ") == "hola mundo"

    def test_resize_truncates_and_pads(self):
        assert resize_vector([0.1, 0.2, 0.3], 2) == [0.1, 0.2]
        padded = resize_vector([0.5, -0.5], 6)
        assert len(padded) == 6
        assert padded == resize_vector([0.5, -0.5], 6)
        assert all(-1 <= v <= 1 for v in padded)

    def test_normalize(self):
        assert normalize_vector([3.0, 4.0]) == [0.6, 0.8]
        assert normalize_vector([0.0, 0.0]) == [0.0, 0.0]

    def test_fallback_is_deterministic_unit_vector(self):
        a = fallback_embedding("hola", 16)
        assert a == fallback_embedding("hola", 16)
        assert a != fallback_embedding("chao", 16)
        assert abs(sum(v * v for v in a) - 1) < 1e-9

    def test_cosine(self):
        assert cosine_similarity([1, 0], [1, 0]) == 1
        assert cosine_similarity([1, 0], [0, 1]) == 0
        assert cosine_similarity([0, 0], [1, 0]) == 0.0
        with pytest.raises(ValueError):
            cosine_similarity([1], [1, 2])

    def test_unconfigured_uses_fallback(self):
        vector = EmbeddingService().generate_embedding("hola   mundo")
        assert vector == fallback_embedding("hola mundo", settings.embedding_dimensions)

    def test_model_vector_is_resized_and_normalized(self, groq_configured):
        with patch("litellm.completion", return_value=llm_reply("Sure: [0.3, 0.4]")):
            vector = EmbeddingService().generate_embedding("hola")
        assert len(vector) == settings.embedding_dimensions
        assert abs(sum(v * v for v in vector) - 1) < 1e-9

    def test_unusable_model_answer_falls_back(self, groq_configured):
        with patch("litellm.completion", return_value=llm_reply("[2, 3]")):
            vector = EmbeddingService().generate_embedding("hola")
        assert vector == fallback_embedding("hola", settings.embedding_dimensions)

    def test_find_similar_ranks_exact_text_first(self, client, db):
        folder_id = _folder(client)
        _upload(client, folder_id, name="a.txt", body=b"Vacaciones: 15 dias habiles")
        _upload(client, folder_id, name="b.txt", body=b"Horario de entrada 9:00")

        results = EmbeddingService(db).find_similar_documents("Vacaciones: 15 dias habiles", None)
        assert results[0]["name"] == "a.txt"
        assert results[0]["similarity"] == pytest.approx(1.0)
        assert len(results) == 2
