"""Business logic services."""

from .document_service import DocumentService
from .folder_service import FolderService
from .communication_service import CommunicationService

__all__ = ["DocumentService", "FolderService", "CommunicationService"]
