"""Document uploads: type checks, plan limits, Drive storage and indexing.

A document row is only written after Drive accepted the file. Deleting goes
the other way round: Drive first (best-effort), then the row.
"""

import logging
import os
import uuid
from typing import Any, Dict, List, Optional

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from ..drive import DriveClient, drive_for_user
from ..exceptions import (
    DatabaseError,
    DriveError,
    UnsupportedFileTypeError,
    ValidationError,
)
from ..models import Document, User
from ..repositories.document_repository import DocumentRepository
from ..repositories.folder_repository import FolderRepository
from .audit_service import get_audit_service
from .embedding_service import EmbeddingService
from .llm_service import estimate_tokens
from .plan_service import check_limits

logger = logging.getLogger(__name__)

BLOCKED_EXTENSIONS = frozenset({
    ".exe", ".bat", ".cmd", ".sh", ".js", ".vbs", ".scr", ".msi", ".dll", ".com", ".jar",
})

# MIME type -> extensions that may carry it.
ALLOWED_TYPES: Dict[str, tuple] = {
    "application/pdf": (".pdf",),
    "application/msword": (".doc",),
    "application/vnd.openxmlformats-officedocument.wordprocessingml.document": (".docx",),
    "application/vnd.ms-excel": (".xls",),
    "application/vnd.openxmlformats-officedocument.spreadsheetml.sheet": (".xlsx",),
    "application/vnd.ms-powerpoint": (".ppt",),
    "application/vnd.openxmlformats-officedocument.presentationml.presentation": (".pptx",),
    "text/plain": (".txt",),
    "text/csv": (".csv",),
    "text/markdown": (".md", ".markdown"),
}

_EXTENSION_TO_MIME = {ext: mime for mime, exts in ALLOWED_TYPES.items() for ext in exts}

TEXT_MIME_TYPES = frozenset({"text/plain", "text/csv", "text/markdown"})

MAX_UPLOAD_BYTES = 50 * 1024 * 1024


def validate_file_type(name: str, mime_type: Optional[str] = None) -> str:
    """Return the effective MIME type, or raise UnsupportedFileTypeError.

    Blocked extensions are rejected whatever MIME type they claim.
    """
    extension = os.path.splitext(name or "")[1].lower()
    if extension in BLOCKED_EXTENSIONS:
        raise UnsupportedFileTypeError(name, f"extension {extension} is blocked")

    mime = (mime_type or "").split(";")[0].strip().lower()
    if mime in ALLOWED_TYPES:
        return mime
    if extension in _EXTENSION_TO_MIME:
        return _EXTENSION_TO_MIME[extension]
    raise UnsupportedFileTypeError(name, f"type {mime or extension or 'unknown'} is not allowed")


def extract_text(content: bytes, mime_type: str) -> Optional[str]:
    if mime_type not in TEXT_MIME_TYPES:
        return None
    return content.decode("utf-8", errors="replace")


def document_to_dict(document: Document) -> Dict[str, Any]:
    return {
        "id": document.id,
        "folder_id": document.folder_id,
        "name": document.name,
        "mime_type": document.mime_type,
        "size_bytes": document.size_bytes,
        "description": document.description,
        "drive_file_id": document.drive_file_id,
        "drive_link": document.drive_link,
        "token_count": document.token_count,
        "created_at": document.created_at.isoformat() if document.created_at else None,
    }


class DocumentService:
    def __init__(
        self,
        db: Session,
        drive: Optional[DriveClient] = None,
        embeddings: Optional[EmbeddingService] = None,
    ):
        self.db = db
        self.doc_repo = DocumentRepository(db)
        self.folder_repo = FolderRepository(db)
        self._drive = drive
        self.embeddings = embeddings or EmbeddingService(db)

    def _drive_for(self, user_id: Optional[str]) -> DriveClient:
        if self._drive is None:
            self._drive = drive_for_user(self.db, user_id)
        return self._drive

    def upload_document(
        self,
        folder_id: str,
        name: str,
        content: bytes,
        mime_type: Optional[str],
        user: Optional[User],
        company_id: Optional[str],
        description: Optional[str] = None,
    ) -> Document:
        """Validate, store in Drive, index and record an uploaded file."""
        name = (name or "").strip()
        if not name:
            raise ValidationError("File name required", field="file")
        if not content:
            raise ValidationError("File is empty", field="file")
        if len(content) > MAX_UPLOAD_BYTES:
            raise ValidationError("File exceeds the 50 MB upload limit", field="file")

        mime = validate_file_type(name, mime_type)

        folder = self.folder_repo.get_for_company(folder_id, company_id)

        # The file lands in the owner's Drive and counts against the owner's plan.
        owner = self.db.get(User, folder.owner_user_id) if folder.owner_user_id else None
        plan_holder = owner or user
        check_limits(self.db, plan_holder, "files")
        check_limits(self.db, plan_holder, "storage", incoming_bytes=len(content))

        drive = self._drive_for(plan_holder.user_id if plan_holder else None)
        uploaded = drive.upload_file(name, content, mime, parent_id=folder.drive_folder_id)

        text = extract_text(content, mime)
        index_text = text or " ".join(filter(None, [name, description]))

        document = Document(
            id=f"doc-{uuid.uuid4().hex[:12]}",
            folder_id=folder.id,
            company_id=folder.company_id,
            uploaded_by=user.user_id if user else None,
            name=name,
            mime_type=mime,
            size_bytes=len(content),
            description=description,
            drive_file_id=uploaded["id"],
            drive_link=uploaded.get("webViewLink"),
            content_text=text,
            embedding=self.embeddings.generate_embedding(index_text),
            token_count=estimate_tokens(text or ""),
        )
        try:
            self.doc_repo.add(document)
            self.db.commit()
        except SQLAlchemyError as e:
            self.db.rollback()
            self._delete_from_drive(drive, uploaded["id"])
            raise DatabaseError("Failed to record document", original_error=e)

        logger.info(
            "Document uploaded",
            extra={"document_id": document.id, "folder_id": folder.id, "size_bytes": len(content)},
        )
        get_audit_service().log_data_access(
            user.user_id if user else None, "document", "upload", {"document_id": document.id}
        )
        return document

    def list_documents(self, folder_id: str, company_id: Optional[str]) -> List[Document]:
        folder = self.folder_repo.get_for_company(folder_id, company_id)
        return self.doc_repo.list_by_folder(folder.id)

    def get_document(self, document_id: str, company_id: Optional[str]) -> Document:
        return self.doc_repo.get_for_company(document_id, company_id)

    def enrich_with_drive(self, documents: List[Document], user_id: Optional[str] = None) -> List[Dict[str, Any]]:
        """Document dicts with live Drive size and link. Unreachable files get ``synced=False``."""
        enriched = []
        for document in documents:
            data = document_to_dict(document)
            data["synced"] = False
            if document.drive_file_id:
                try:
                    info = self._drive_for(user_id).get_file_info(document.drive_file_id)
                    data["synced"] = True
                    if info.get("size") is not None:
                        data["size_bytes"] = int(info["size"])
                    data["drive_link"] = info.get("webViewLink") or document.drive_link
                except DriveError as e:
                    logger.debug("Drive info unavailable for %s: %s", document.id, e.message)
            enriched.append(data)
        return enriched

    def delete_document(self, document_id: str, company_id: Optional[str], user_id: Optional[str] = None) -> None:
        document = self.get_document(document_id, company_id)
        if document.drive_file_id:
            self._delete_from_drive(self._drive_for(user_id), document.drive_file_id)
        try:
            self.db.delete(document)
            self.db.commit()
        except SQLAlchemyError as e:
            self.db.rollback()
            raise DatabaseError("Failed to delete document", original_error=e)
        get_audit_service().log_data_access(user_id, "document", "delete", {"document_id": document_id})

    @staticmethod
    def _delete_from_drive(drive: DriveClient, file_id: str) -> None:
        try:
            drive.delete_file(file_id)
        except DriveError as e:
            logger.warning("Drive file %s not deleted: %s", file_id, e.message)
