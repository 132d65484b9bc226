"""API routes."""

from .ai import router as ai_router
from .audit import router as audit_router
from .communications import router as communications_router
from .documents import router as documents_router
from .drive import router as drive_router
from .folders import router as folders_router
from .mfa import router as mfa_router
from .plans import router as plans_router
from .webhooks import router as webhooks_router

__all__ = [
    "ai_router",
    "audit_router",
    "communications_router",
    "documents_router",
    "drive_router",
    "folders_router",
    "mfa_router",
    "plans_router",
    "webhooks_router",
]
