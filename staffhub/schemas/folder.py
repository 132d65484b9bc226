"""Folder, knowledge base and conversation schemas."""

from datetime import datetime
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field, field_validator


class EmployeeFolderCreate(BaseModel):
    """Request to create (or fetch) an employee's folder."""
    email: str
    name: Optional[str] = None
    company_name: Optional[str] = None
    settings: Optional[Dict[str, Any]] = None

    @field_validator("email")
    @classmethod
    def normalize_email(cls, v: str) -> str:
        v = v.strip().lower()
        if "@" not in v:
            raise ValueError("Invalid email address")
        return v


class FolderResponse(BaseModel):
    id: str
    name: str
    folder_type: str
    parent_id: Optional[str] = None
    company_id: Optional[str] = None
    owner_email: Optional[str] = None
    employee_email: Optional[str] = None
    employee_name: Optional[str] = None
    plan_name: Optional[str] = None
    extension_type: Optional[str] = None
    drive_folder_id: Optional[str] = None
    created_at: Optional[datetime] = None

    class Config:
        from_attributes = True


class AdminFolderResponse(BaseModel):
    """Result of ensuring the admin Drive structure."""
    master: FolderResponse
    subfolders: List[FolderResponse]
    errors: List[Dict[str, str]] = []
    created: bool


class KnowledgeCreate(BaseModel):
    kind: str = Field(..., description="faqs, documents, policies or procedures")
    title: str = Field(..., min_length=1, max_length=500)
    content: str = ""
    description: Optional[str] = None
    category: Optional[str] = None


class FaqCreate(BaseModel):
    question: str = Field(..., min_length=1, max_length=500)
    answer: str
    category: Optional[str] = None


class KnowledgeItemResponse(BaseModel):
    id: int
    kind: str
    title: str
    content: str
    description: Optional[str] = None
    category: Optional[str] = None
    created_at: Optional[datetime] = None

    class Config:
        from_attributes = True


class ConversationMessageCreate(BaseModel):
    role: str = Field(..., description="user, assistant or system")
    content: str = Field(..., min_length=1)
    channel: Optional[str] = None


class ConversationMessageResponse(BaseModel):
    id: int
    role: str
    content: str
    channel: Optional[str] = None
    created_at: Optional[datetime] = None

    class Config:
        from_attributes = True
