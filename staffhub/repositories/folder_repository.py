"""Repository for folder, knowledge base and conversation queries."""

from typing import List, Optional

from sqlalchemy import func

from ..exceptions import FolderNotFoundError
from ..models.folder import (
    Folder,
    KnowledgeItem,
    ConversationMessage,
    FOLDER_ADMIN_MASTER,
    FOLDER_EMPLOYEE,
    FOLDER_EXTENSION,
)
from .base import TenantRepository


class FolderRepository(TenantRepository[Folder]):
    model_class = Folder
    not_found_error = FolderNotFoundError

    def get_admin_master(self, owner_email: str) -> Optional[Folder]:
        return (
            self.db.query(Folder)
            .filter(Folder.folder_type == FOLDER_ADMIN_MASTER, Folder.owner_email == owner_email)
            .first()
        )

    def get_extension_folder(self, master_id: str, extension_type: str) -> Optional[Folder]:
        return (
            self.db.query(Folder)
            .filter(
                Folder.folder_type == FOLDER_EXTENSION,
                Folder.parent_id == master_id,
                Folder.extension_type == extension_type,
            )
            .first()
        )

    def get_employee_folder(self, company_id: Optional[str], email: str) -> Optional[Folder]:
        return (
            self.scoped(company_id)
            .filter(Folder.folder_type == FOLDER_EMPLOYEE, Folder.employee_email == email)
            .first()
        )

    def list_by_company(self, company_id: Optional[str], folder_type: Optional[str] = None) -> List[Folder]:
        query = self.scoped(company_id)
        if folder_type:
            query = query.filter(Folder.folder_type == folder_type)
        return query.order_by(Folder.name).all()

    def count_by_owner(self, owner_user_id: str) -> int:
        """Employee folders created by this user; admin structure folders do not count."""
        return (
            self.db.query(func.count(Folder.id))
            .filter(Folder.owner_user_id == owner_user_id, Folder.folder_type == FOLDER_EMPLOYEE)
            .scalar()
        ) or 0

    def count_by_company(self, company_id: Optional[str]) -> int:
        return (
            self.db.query(func.count(Folder.id))
            .filter(Folder.company_id == company_id, Folder.folder_type == FOLDER_EMPLOYEE)
            .scalar()
        ) or 0

    # -- Knowledge base ------------------------------------------------------

    def add_knowledge(self, item: KnowledgeItem) -> KnowledgeItem:
        self.db.add(item)
        self.db.flush()
        return item

    def knowledge_for(self, folder_id: str, kind: Optional[str] = None) -> List[KnowledgeItem]:
        query = self.db.query(KnowledgeItem).filter(KnowledgeItem.folder_id == folder_id)
        if kind:
            query = query.filter(KnowledgeItem.kind == kind)
        return query.order_by(KnowledgeItem.id).all()

    # -- Conversation history ------------------------------------------------

    def add_message(self, message: ConversationMessage) -> ConversationMessage:
        self.db.add(message)
        self.db.flush()
        return message

    def messages_for(self, folder_id: str, limit: Optional[int] = None) -> List[ConversationMessage]:
        """Messages oldest-first; with *limit*, only the newest *limit* of them."""
        query = self.db.query(ConversationMessage).filter(ConversationMessage.folder_id == folder_id)
        if limit is None:
            return query.order_by(ConversationMessage.id).all()
        newest = query.order_by(ConversationMessage.id.desc()).limit(limit).all()
        return list(reversed(newest))

    def trim_messages(self, folder_id: str, keep: int) -> int:
        """Delete all but the newest *keep* messages. Returns rows deleted."""
        keep_ids = [
            row.id
            for row in self.db.query(ConversationMessage.id)
            .filter(ConversationMessage.folder_id == folder_id)
            .order_by(ConversationMessage.id.desc())
            .limit(keep)
            .all()
        ]
        if not keep_ids:
            return 0
        deleted = (
            self.db.query(ConversationMessage)
            .filter(ConversationMessage.folder_id == folder_id, ConversationMessage.id.notin_(keep_ids))
            .delete(synchronize_session=False)
        )
        return deleted
