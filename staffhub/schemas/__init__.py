"""Pydantic schemas for API validation."""

from .folder import (
    EmployeeFolderCreate,
    FolderResponse,
    AdminFolderResponse,
    KnowledgeCreate,
    FaqCreate,
    KnowledgeItemResponse,
    ConversationMessageCreate,
    ConversationMessageResponse,
)
from .document import DocumentResponse, SyncedDocumentResponse, SimilarDocumentResponse
from .plan import PlanResponse, ExtensionResponse, PurchaseRequest, QuoteResponse, PurchaseResponse
from .communication import CommunicationLogResponse, SentimentSummaryResponse, WebhookResponse

__all__ = [
    "EmployeeFolderCreate",
    "FolderResponse",
    "AdminFolderResponse",
    "KnowledgeCreate",
    "FaqCreate",
    "KnowledgeItemResponse",
    "ConversationMessageCreate",
    "ConversationMessageResponse",
    "DocumentResponse",
    "SyncedDocumentResponse",
    "SimilarDocumentResponse",
    "PlanResponse",
    "ExtensionResponse",
    "PurchaseRequest",
    "QuoteResponse",
    "PurchaseResponse",
    "CommunicationLogResponse",
    "SentimentSummaryResponse",
    "WebhookResponse",
]
