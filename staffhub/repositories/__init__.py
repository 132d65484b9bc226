"""Data access repositories."""

from .base import TenantRepository
from .folder_repository import FolderRepository
from .document_repository import DocumentRepository
from .communication_repository import CommunicationRepository

__all__ = [
    "TenantRepository",
    "FolderRepository",
    "DocumentRepository",
    "CommunicationRepository",
]
