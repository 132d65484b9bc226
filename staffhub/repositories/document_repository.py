"""Document repository for database operations."""

from typing import List, Optional, Tuple

from sqlalchemy import func

from ..exceptions import DocumentNotFoundError
from ..models import Document, Folder
from .base import TenantRepository


class DocumentRepository(TenantRepository[Document]):
    model_class = Document
    not_found_error = DocumentNotFoundError

    def list_by_folder(self, folder_id: str) -> List[Document]:
        return (
            self.db.query(Document)
            .filter(Document.folder_id == folder_id)
            .order_by(Document.created_at.desc(), Document.name)
            .all()
        )

    def with_embeddings(self, company_id: Optional[str]) -> List[Document]:
        return self.scoped(company_id).filter(Document.embedding.isnot(None)).all()

    def count_for_user(self, user_id: str) -> int:
        """Documents living in folders the user owns."""
        return (
            self.db.query(func.count(Document.id))
            .join(Folder, Folder.id == Document.folder_id)
            .filter(Folder.owner_user_id == user_id)
            .scalar()
        ) or 0

    def storage_for_user(self, user_id: str) -> int:
        return (
            self.db.query(func.coalesce(func.sum(Document.size_bytes), 0))
            .join(Folder, Folder.id == Document.folder_id)
            .filter(Folder.owner_user_id == user_id)
            .scalar()
        ) or 0

    def totals_for_company(self, company_id: Optional[str]) -> Tuple[int, int, int]:
        """(document count, bytes stored, tokens indexed) for a company."""
        row = (
            self.db.query(
                func.count(Document.id),
                func.coalesce(func.sum(Document.size_bytes), 0),
                func.coalesce(func.sum(Document.token_count), 0),
            )
            .filter(Document.company_id == company_id)
            .one()
        )
        return int(row[0] or 0), int(row[1] or 0), int(row[2] or 0)
