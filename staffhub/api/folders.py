"""Folder API: admin Drive structure, employee folders, knowledge base and conversations.

Every lookup is scoped to the caller's company. Delegates to FolderService.
"""

import logging
from typing import Dict, List, Optional

from fastapi import APIRouter, Depends, Query
from sqlalchemy.orm import Session

from ..core.auth import AuthContext, current_user, require_admin, require_auth
from ..database import get_db
from ..exceptions import ForbiddenError, NoActivePlanError
from ..models import PlanExtension, User
from ..schemas.folder import (
    AdminFolderResponse,
    ConversationMessageCreate,
    ConversationMessageResponse,
    EmployeeFolderCreate,
    FaqCreate,
    FolderResponse,
    KnowledgeCreate,
    KnowledgeItemResponse,
)
from ..services.folder_service import FolderService
from ..services.plan_service import has_active_plan

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/folders", tags=["folders"])


def _check_employee_access(auth: AuthContext, email: str) -> None:
    """Employees may only touch their own folder."""
    if not auth.is_admin and (auth.email or "").lower() != email.strip().lower():
        raise ForbiddenError("Employees can only access their own folder")


# -- Admin structure ------------------------------------------------------

@router.post("/admin", response_model=AdminFolderResponse)
def ensure_admin_folder(
    db: Session = Depends(get_db),
    auth: AuthContext = Depends(require_admin),
    user: Optional[User] = Depends(current_user),
):
    """Create the Master - StaffHub folder and subfolders for the caller's plan (idempotent)."""
    if user is None:
        raise ForbiddenError("The admin folder requires a registered user")
    if not has_active_plan(user):
        raise NoActivePlanError(user.user_id)

    extension_ids = [
        row.extension_id
        for row in db.query(PlanExtension.extension_id).filter(PlanExtension.user_id == user.user_id).all()
    ]
    plan_name = user.current_plan.name if user.current_plan else None
    return FolderService(db).ensure_admin_folder(user, plan_name, extension_ids)


# -- Employee folders -----------------------------------------------------

@router.get("", response_model=List[FolderResponse])
def list_folders(
    folder_type: Optional[str] = Query(None),
    db: Session = Depends(get_db),
    auth: AuthContext = Depends(require_admin),
):
    return FolderService(db).list_company_folders(auth.company_id, folder_type)


@router.post("/employees", response_model=FolderResponse, status_code=201)
def create_employee_folder(
    data: EmployeeFolderCreate,
    db: Session = Depends(get_db),
    auth: AuthContext = Depends(require_admin),
    user: Optional[User] = Depends(current_user),
):
    """Create an employee folder. Idempotent: returns the existing folder for a known email."""
    company_name = data.company_name or (user.company.name if user and user.company else None)
    return FolderService(db).create_employee_folder(
        auth.company_id,
        data.email,
        name=data.name,
        owner=user,
        company_name=company_name,
        settings=data.settings,
    )


@router.get("/employees/{email}", response_model=FolderResponse)
def get_employee_folder(email: str, db: Session = Depends(get_db), auth: AuthContext = Depends(require_auth)):
    _check_employee_access(auth, email)
    return FolderService(db).get_employee_folder(auth.company_id, email)


@router.get("/{folder_id}", response_model=FolderResponse)
def get_folder(folder_id: str, db: Session = Depends(get_db), auth: AuthContext = Depends(require_admin)):
    return FolderService(db).get_folder(folder_id, auth.company_id)


@router.get("/{folder_id}/stats")
def get_folder_stats(folder_id: str, db: Session = Depends(get_db), auth: AuthContext = Depends(require_admin)):
    return FolderService(db).get_folder_stats(folder_id, auth.company_id)


@router.delete("/{folder_id}", status_code=204)
def delete_folder(folder_id: str, db: Session = Depends(get_db), auth: AuthContext = Depends(require_admin)):
    FolderService(db).delete_folder(folder_id, auth.company_id, user_id=auth.db_user_id)


# -- Knowledge base -------------------------------------------------------

@router.get("/employees/{email}/knowledge", response_model=Dict[str, List[KnowledgeItemResponse]])
def get_knowledge_base(email: str, db: Session = Depends(get_db), auth: AuthContext = Depends(require_auth)):
    _check_employee_access(auth, email)
    return FolderService(db).get_knowledge_base(auth.company_id, email)


@router.post("/employees/{email}/knowledge", response_model=KnowledgeItemResponse, status_code=201)
def add_knowledge(
    email: str,
    data: KnowledgeCreate,
    db: Session = Depends(get_db),
    auth: AuthContext = Depends(require_admin),
):
    return FolderService(db).add_knowledge(
        auth.company_id, email, data.kind, data.title, data.content, data.description, data.category
    )


@router.post("/employees/{email}/faqs", response_model=KnowledgeItemResponse, status_code=201)
def add_faq(email: str, data: FaqCreate, db: Session = Depends(get_db), auth: AuthContext = Depends(require_admin)):
    return FolderService(db).add_faq(auth.company_id, email, data.question, data.answer, data.category)


@router.get("/employees/{email}/knowledge/search", response_model=List[KnowledgeItemResponse])
def search_knowledge(
    email: str,
    q: str = Query(..., min_length=1),
    db: Session = Depends(get_db),
    auth: AuthContext = Depends(require_auth),
):
    _check_employee_access(auth, email)
    return FolderService(db).search_knowledge(auth.company_id, email, q)


# -- Conversation history -------------------------------------------------

@router.get("/employees/{email}/conversation", response_model=List[ConversationMessageResponse])
def get_conversation(
    email: str,
    limit: Optional[int] = Query(None, ge=1, le=100),
    db: Session = Depends(get_db),
    auth: AuthContext = Depends(require_auth),
):
    _check_employee_access(auth, email)
    return FolderService(db).get_conversation_history(auth.company_id, email, limit)


@router.post("/employees/{email}/conversation", response_model=ConversationMessageResponse, status_code=201)
def add_conversation_message(
    email: str,
    data: ConversationMessageCreate,
    db: Session = Depends(get_db),
    auth: AuthContext = Depends(require_auth),
):
    _check_employee_access(auth, email)
    return FolderService(db).add_conversation_message(auth.company_id, email, data.role, data.content, data.channel)
