"""Document API endpoints.

Uploads are multipart: the file lands in the folder owner's Drive, its text
is indexed for similarity search, and plan limits are checked first.
"""

from typing import List, Optional

from fastapi import APIRouter, Depends, File, Form, UploadFile
from sqlalchemy.orm import Session

from ..core.auth import AuthContext, current_user, require_admin, require_auth
from ..database import get_db
from ..models import User
from ..schemas.document import DocumentResponse, SyncedDocumentResponse
from ..services import DocumentService

router = APIRouter(prefix="/api/documents", tags=["documents"])


@router.post("", response_model=DocumentResponse, status_code=201)
def upload_document(
    folder_id: str = Form(...),
    description: Optional[str] = Form(None),
    file: UploadFile = File(...),
    db: Session = Depends(get_db),
    auth: AuthContext = Depends(require_admin),
    user: Optional[User] = Depends(current_user),
):
    """Upload a file into a folder."""
    content = file.file.read()
    return DocumentService(db).upload_document(
        folder_id,
        file.filename or "",
        content,
        file.content_type,
        user=user,
        company_id=auth.company_id,
        description=description,
    )


@router.get("/folder/{folder_id}", response_model=List[SyncedDocumentResponse])
def list_folder_documents(folder_id: str, db: Session = Depends(get_db), auth: AuthContext = Depends(require_auth)):
    """Documents in a folder with their live Drive state."""
    service = DocumentService(db)
    documents = service.list_documents(folder_id, auth.company_id)
    owner_id = documents[0].folder.owner_user_id if documents else None
    return service.enrich_with_drive(documents, owner_id or auth.db_user_id)


@router.get("/{document_id}", response_model=DocumentResponse)
def get_document(document_id: str, db: Session = Depends(get_db), auth: AuthContext = Depends(require_auth)):
    return DocumentService(db).get_document(document_id, auth.company_id)


@router.delete("/{document_id}", status_code=204)
def delete_document(document_id: str, db: Session = Depends(get_db), auth: AuthContext = Depends(require_admin)):
    service = DocumentService(db)
    document = service.get_document(document_id, auth.company_id)
    owner_id = document.folder.owner_user_id if document.folder else None
    service.delete_document(document_id, auth.company_id, user_id=owner_id or auth.db_user_id)
