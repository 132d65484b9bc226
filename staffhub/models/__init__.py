"""Database models."""

from .company import Company
from .user import User, DriveCredential
from .folder import Folder, KnowledgeItem, ConversationMessage
from .document import Document
from .billing import Plan, Extension, PlanExtension, Payment, TokenUsage
from .communication import CommunicationLog, WhatsAppConfig, WhatsAppTemplate

__all__ = [
    "Company",
    "User", "DriveCredential",
    "Folder", "KnowledgeItem", "ConversationMessage",
    "Document",
    "Plan", "Extension", "PlanExtension", "Payment", "TokenUsage",
    "CommunicationLog", "WhatsAppConfig", "WhatsAppTemplate",
]
