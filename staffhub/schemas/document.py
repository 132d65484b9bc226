"""Document schemas."""

from datetime import datetime
from typing import Optional

from pydantic import BaseModel


class DocumentResponse(BaseModel):
    id: str
    folder_id: str
    name: str
    mime_type: str
    size_bytes: int
    description: Optional[str] = None
    drive_file_id: Optional[str] = None
    drive_link: Optional[str] = None
    token_count: int = 0
    created_at: Optional[datetime] = None

    class Config:
        from_attributes = True


class SyncedDocumentResponse(DocumentResponse):
    """Document with live Drive state; ``synced`` is False when Drive could not be reached."""
    synced: bool


class SimilarDocumentResponse(BaseModel):
    id: str
    name: str
    folder_id: str
    similarity: float
