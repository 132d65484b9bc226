"""Deep module for folder operations: the admin Drive structure and employee folders.

Admin side: every admin with a plan owns one ``Master - StaffHub`` folder in
Drive with a ``StaffHub`` subfolder plus one subfolder per purchased
extension that ships a workspace (Abogados, Entrenador).

Employee side: one folder per (company, employee email) holding a small
knowledge base and the assistant conversation history. Drive folders for
employees are best-effort; the database row is the source of truth.
"""

import logging
import uuid
from typing import Any, Dict, Iterable, List, Optional

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from ..drive import DriveClient, drive_for_user
from ..exceptions import DatabaseError, DriveError, FolderNotFoundError, ValidationError
from ..models import Extension, User
from ..models.folder import (
    Folder,
    KnowledgeItem,
    ConversationMessage,
    FOLDER_ADMIN_MASTER,
    FOLDER_EMPLOYEE,
    FOLDER_EXTENSION,
    KNOWLEDGE_KINDS,
)
from ..repositories.document_repository import DocumentRepository
from ..repositories.folder_repository import FolderRepository
from .audit_service import get_audit_service
from .plan_service import check_limits

logger = logging.getLogger(__name__)

MASTER_FOLDER_NAME = "Master - StaffHub"
STAFFHUB_SUBFOLDER = ("StaffHub", "staffhub")

# Older messages are deleted once an employee's history grows past this.
MAX_CONVERSATION_MESSAGES = 100


def _new_folder_id() -> str:
    return f"fld-{uuid.uuid4().hex[:12]}"


def knowledge_to_dict(item: KnowledgeItem) -> Dict[str, Any]:
    return {
        "id": item.id,
        "kind": item.kind,
        "title": item.title,
        "content": item.content,
        "description": item.description,
        "category": item.category,
        "created_at": item.created_at.isoformat() if item.created_at else None,
    }


def message_to_dict(message: ConversationMessage) -> Dict[str, Any]:
    return {
        "id": message.id,
        "role": message.role,
        "content": message.content,
        "channel": message.channel,
        "created_at": message.created_at.isoformat() if message.created_at else None,
    }


class FolderService:
    """Folder operations behind a narrow interface.

    Public methods:
        ensure_admin_folder       -- idempotent master + extension subfolders
        create_employee_folder    -- idempotent per (company, email)
        get_employee_folder       -- lookup by email within a company
        get_folder                -- lookup by id within a company
        list_company_folders
        add_knowledge / add_faq   -- append to an employee's knowledge base
        get_knowledge_base        -- items grouped by kind
        search_knowledge          -- case-insensitive substring search
        add_conversation_message  -- history capped at MAX_CONVERSATION_MESSAGES
        get_conversation_history
        get_folder_stats
        delete_folder             -- Drive folder removed best-effort
    """

    def __init__(self, db: Session, drive: Optional[DriveClient] = None):
        self.db = db
        self.folder_repo = FolderRepository(db)
        self.doc_repo = DocumentRepository(db)
        self._drive = drive

    def _drive_for(self, user_id: Optional[str]) -> DriveClient:
        if self._drive is None:
            self._drive = drive_for_user(self.db, user_id)
        return self._drive

    # ------------------------------------------------------------------
    # Admin structure
    # ------------------------------------------------------------------

    def ensure_admin_folder(
        self,
        user: User,
        plan_name: Optional[str] = None,
        extension_ids: Iterable[str] = (),
    ) -> Dict[str, Any]:
        """Create the admin's master folder and its subfolders if missing.

        Raises DriveError when the master folder cannot be created in Drive
        and DatabaseError when it cannot be recorded (the Drive folder is
        deleted again in that case). Subfolder failures are collected in
        ``errors`` instead of raised.
        """
        drive = self._drive_for(user.user_id)
        master = self.folder_repo.get_admin_master(user.email)
        created = False

        if master is None:
            drive_folder = drive.create_folder(MASTER_FOLDER_NAME)
            master = Folder(
                id=_new_folder_id(),
                name=MASTER_FOLDER_NAME,
                folder_type=FOLDER_ADMIN_MASTER,
                company_id=user.company_id,
                owner_user_id=user.user_id,
                owner_email=user.email,
                plan_name=plan_name,
                drive_folder_id=drive_folder["id"],
            )
            try:
                self.folder_repo.add(master)
                self.db.commit()
            except SQLAlchemyError as e:
                self.db.rollback()
                logger.error("Could not record master folder for %s: %s", user.email, e)
                self._delete_drive_folder(drive, drive_folder["id"])
                raise DatabaseError("Failed to record admin folder", original_error=e)
            created = True
            logger.info("Admin master folder created", extra={"folder_id": master.id, "owner": user.email})
        elif plan_name and master.plan_name != plan_name:
            master.plan_name = plan_name
            self.db.commit()

        wanted = [STAFFHUB_SUBFOLDER]
        ids = list(extension_ids or [])
        if ids:
            extensions = (
                self.db.query(Extension)
                .filter(Extension.id.in_(ids), Extension.folder_type.isnot(None))
                .order_by(Extension.name)
                .all()
            )
            wanted.extend((ext.name, ext.folder_type) for ext in extensions)

        subfolders: List[Folder] = []
        errors: List[Dict[str, str]] = []
        for name, extension_type in wanted:
            existing = self.folder_repo.get_extension_folder(master.id, extension_type)
            if existing is not None:
                subfolders.append(existing)
                continue
            try:
                drive_folder = drive.create_folder(name, parent_id=master.drive_folder_id)
                sub = Folder(
                    id=_new_folder_id(),
                    name=name,
                    folder_type=FOLDER_EXTENSION,
                    parent_id=master.id,
                    company_id=user.company_id,
                    owner_user_id=user.user_id,
                    owner_email=user.email,
                    extension_type=extension_type,
                    drive_folder_id=drive_folder["id"],
                )
                self.folder_repo.add(sub)
                self.db.commit()
                subfolders.append(sub)
            except DriveError as e:
                logger.warning("Subfolder %s not created in Drive: %s", name, e.message)
                errors.append({"folder": name, "error": e.message})
            except SQLAlchemyError as e:
                self.db.rollback()
                logger.warning("Subfolder %s not recorded: %s", name, e)
                errors.append({"folder": name, "error": str(e)})

        return {"master": master, "subfolders": subfolders, "errors": errors, "created": created}

    @staticmethod
    def _delete_drive_folder(drive: DriveClient, drive_folder_id: Optional[str]) -> None:
        if not drive_folder_id:
            return
        try:
            drive.delete_file(drive_folder_id)
        except DriveError as e:
            logger.warning("Drive folder %s left behind: %s", drive_folder_id, e.message)

    # ------------------------------------------------------------------
    # Employee folders
    # ------------------------------------------------------------------

    def create_employee_folder(
        self,
        company_id: Optional[str],
        email: str,
        name: Optional[str] = None,
        owner: Optional[User] = None,
        company_name: Optional[str] = None,
        settings: Optional[Dict[str, Any]] = None,
    ) -> Folder:
        """Return the employee's folder, creating it (and a Drive folder) if needed."""
        email = (email or "").strip().lower()
        if not email or "@" not in email:
            raise ValidationError("Valid employee email required", field="email")

        existing = self.folder_repo.get_employee_folder(company_id, email)
        if existing is not None:
            return existing

        if owner is not None:
            check_limits(self.db, owner, "folders")

        display = (name or "").strip() or email.split("@")[0]
        folder = Folder(
            id=_new_folder_id(),
            name=display,
            folder_type=FOLDER_EMPLOYEE,
            company_id=company_id,
            owner_user_id=owner.user_id if owner else None,
            owner_email=owner.email if owner else None,
            employee_email=email,
            employee_name=display,
            company_name=company_name,
            settings=settings or {},
        )
        folder.drive_folder_id = self._create_employee_drive_folder(owner, display, email)

        try:
            self.folder_repo.add(folder)
            self.db.commit()
        except SQLAlchemyError as e:
            self.db.rollback()
            raise DatabaseError("Failed to create employee folder", original_error=e)

        get_audit_service().log(
            owner.user_id if owner else None,
            "EMPLOYEE_FOLDER_CREATED",
            {"folder_id": folder.id, "employee_email": email},
        )
        return folder

    def _create_employee_drive_folder(self, owner: Optional[User], name: str, email: str) -> Optional[str]:
        parent_id = None
        if owner is not None:
            master = self.folder_repo.get_admin_master(owner.email)
            if master is not None:
                staffhub = self.folder_repo.get_extension_folder(master.id, STAFFHUB_SUBFOLDER[1])
                parent_id = (staffhub or master).drive_folder_id
        try:
            drive = self._drive_for(owner.user_id if owner else None)
            return drive.create_folder(f"{name} ({email})", parent_id=parent_id)["id"]
        except DriveError as e:
            logger.warning("Employee Drive folder not created for %s: %s", email, e.message)
            return None

    def get_employee_folder(self, company_id: Optional[str], email: str) -> Folder:
        folder = self.folder_repo.get_employee_folder(company_id, (email or "").strip().lower())
        if folder is None:
            raise FolderNotFoundError(email)
        return folder

    def get_folder(self, folder_id: str, company_id: Optional[str]) -> Folder:
        """Look up a folder; folders of other companies are reported as missing."""
        return self.folder_repo.get_for_company(folder_id, company_id)

    def list_company_folders(self, company_id: Optional[str], folder_type: Optional[str] = None) -> List[Folder]:
        return self.folder_repo.list_by_company(company_id, folder_type)

    # ------------------------------------------------------------------
    # Knowledge base
    # ------------------------------------------------------------------

    def add_knowledge(
        self,
        company_id: Optional[str],
        email: str,
        kind: str,
        title: str,
        content: str = "",
        description: Optional[str] = None,
        category: Optional[str] = None,
    ) -> KnowledgeItem:
        if kind not in KNOWLEDGE_KINDS:
            raise ValidationError(f"kind must be one of {', '.join(KNOWLEDGE_KINDS)}", field="kind")
        if not (title or "").strip():
            raise ValidationError("Title required", field="title")

        folder = self.get_employee_folder(company_id, email)
        item = KnowledgeItem(
            folder_id=folder.id,
            kind=kind,
            title=title.strip(),
            content=content or "",
            description=description,
            category=category,
        )
        self.folder_repo.add_knowledge(item)
        self.db.commit()
        return item

    def add_faq(
        self,
        company_id: Optional[str],
        email: str,
        question: str,
        answer: str,
        category: Optional[str] = None,
    ) -> KnowledgeItem:
        return self.add_knowledge(company_id, email, "faqs", question, answer, category=category)

    def get_knowledge_base(self, company_id: Optional[str], email: str) -> Dict[str, List[Dict[str, Any]]]:
        folder = self.get_employee_folder(company_id, email)
        grouped: Dict[str, List[Dict[str, Any]]] = {kind: [] for kind in KNOWLEDGE_KINDS}
        for item in self.folder_repo.knowledge_for(folder.id):
            grouped.setdefault(item.kind, []).append(knowledge_to_dict(item))
        return grouped

    def search_knowledge(self, company_id: Optional[str], email: str, query: str) -> List[Dict[str, Any]]:
        """Match FAQ question/answer, document title/description, policy and procedure content."""
        needle = (query or "").strip().lower()
        if not needle:
            return []

        folder = self.get_employee_folder(company_id, email)
        results = []
        for item in self.folder_repo.knowledge_for(folder.id):
            if item.kind == "faqs":
                haystacks = (item.title, item.content)
            elif item.kind == "documents":
                haystacks = (item.title, item.description)
            else:
                haystacks = (item.content,)
            if any(needle in (text or "").lower() for text in haystacks):
                results.append(knowledge_to_dict(item))
        return results

    # ------------------------------------------------------------------
    # Conversation history
    # ------------------------------------------------------------------

    def add_conversation_message(
        self,
        company_id: Optional[str],
        email: str,
        role: str,
        content: str,
        channel: Optional[str] = None,
    ) -> ConversationMessage:
        if role not in ("user", "assistant", "system"):
            raise ValidationError("role must be user, assistant or system", field="role")
        folder = self.get_employee_folder(company_id, email)
        message = ConversationMessage(folder_id=folder.id, role=role, content=content, channel=channel)
        self.folder_repo.add_message(message)
        self.folder_repo.trim_messages(folder.id, MAX_CONVERSATION_MESSAGES)
        self.db.commit()
        return message

    def get_conversation_history(
        self, company_id: Optional[str], email: str, limit: Optional[int] = None
    ) -> List[ConversationMessage]:
        folder = self.get_employee_folder(company_id, email)
        return self.folder_repo.messages_for(folder.id, limit)

    # ------------------------------------------------------------------
    # Stats and deletion
    # ------------------------------------------------------------------

    def get_folder_stats(self, folder_id: str, company_id: Optional[str]) -> Dict[str, Any]:
        folder = self.get_folder(folder_id, company_id)
        documents = self.doc_repo.list_by_folder(folder.id)
        knowledge = {kind: 0 for kind in KNOWLEDGE_KINDS}
        for item in self.folder_repo.knowledge_for(folder.id):
            knowledge[item.kind] = knowledge.get(item.kind, 0) + 1
        return {
            "folder_id": folder.id,
            "documents": len(documents),
            "storage_used": sum(d.size_bytes or 0 for d in documents),
            "knowledge": knowledge,
            "messages": len(self.folder_repo.messages_for(folder.id)),
            "synced": folder.drive_folder_id is not None,
        }

    def delete_folder(self, folder_id: str, company_id: Optional[str], user_id: Optional[str] = None) -> None:
        """Delete the row, then the Drive folder from the Drive it was created in."""
        folder = self.get_folder(folder_id, company_id)
        drive_folder_id = folder.drive_folder_id
        drive_owner_id = folder.owner_user_id or user_id
        try:
            self.db.delete(folder)
            self.db.commit()
        except SQLAlchemyError as e:
            self.db.rollback()
            raise DatabaseError("Failed to delete folder", original_error=e)

        if drive_folder_id:
            try:
                self._drive_for(drive_owner_id).delete_file(drive_folder_id)
            except DriveError as e:
                logger.warning("Drive folder %s not deleted: %s", drive_folder_id, e.message)

        get_audit_service().log(user_id, "EMPLOYEE_FOLDER_DELETED", {"folder_id": folder_id})
