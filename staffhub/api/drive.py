"""Google Drive account linking.

    GET    /api/drive/auth-url     consent URL (state carries the user id)
    POST   /api/drive/callback     exchange the authorization code and store the tokens
    DELETE /api/drive/credentials  revoke at Google and forget the tokens
    GET    /api/drive/status       which backend the caller's files go to
"""

import logging
from datetime import datetime
from typing import Optional

from fastapi import APIRouter, Depends
from pydantic import BaseModel, Field
from sqlalchemy.orm import Session

from ..core.auth import AuthContext, require_auth
from ..core.config import settings
from ..database import get_db
from ..drive import GoogleDriveClient, LocalDriveClient, delete_credentials, get_credentials, store_credentials
from ..exceptions import ForbiddenError, ValidationError
from ..services.audit_service import get_audit_service

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/drive", tags=["drive"])


class CallbackRequest(BaseModel):
    code: str = Field(..., min_length=1)
    state: Optional[str] = None


class DriveStatusResponse(BaseModel):
    backend: str
    connected: bool
    google_configured: bool
    expires_at: Optional[datetime] = None
    scope: Optional[str] = None
    local_stats: Optional[dict] = None


def _linked_user(auth: AuthContext) -> str:
    if auth.db_user_id is None:
        raise ForbiddenError("Drive linking requires a registered user")
    if not settings.google_configured():
        raise ValidationError("Google OAuth is not configured on this server")
    return auth.db_user_id


@router.get("/auth-url")
def auth_url(auth: AuthContext = Depends(require_auth)):
    user_id = _linked_user(auth)
    return {"url": GoogleDriveClient().authorization_url(state=user_id)}


@router.post("/callback", response_model=DriveStatusResponse)
def oauth_callback(body: CallbackRequest, db: Session = Depends(get_db), auth: AuthContext = Depends(require_auth)):
    user_id = _linked_user(auth)
    if body.state and body.state != user_id:
        raise ValidationError("OAuth state does not match the current user", field="state")

    tokens = GoogleDriveClient().exchange_code(body.code)
    if not tokens.get("access_token"):
        raise ValidationError("Token response has no access token", field="code")
    credential = store_credentials(db, user_id, tokens)

    logger.info("Drive linked", extra={"user_id": user_id})
    get_audit_service().log(user_id, "DRIVE_LINKED", {"scope": credential.scope})
    return DriveStatusResponse(
        backend="google",
        connected=True,
        google_configured=True,
        expires_at=credential.expires_at,
        scope=credential.scope,
    )


@router.delete("/credentials", status_code=204)
def unlink(db: Session = Depends(get_db), auth: AuthContext = Depends(require_auth)):
    credential = get_credentials(db, auth.db_user_id)
    if credential is None:
        return
    if settings.google_configured():
        GoogleDriveClient(access_token=credential.access_token, refresh_token=credential.refresh_token).revoke()
    delete_credentials(db, auth.db_user_id)
    get_audit_service().log(auth.db_user_id, "DRIVE_UNLINKED", {})


@router.get("/status", response_model=DriveStatusResponse)
def status(db: Session = Depends(get_db), auth: AuthContext = Depends(require_auth)):
    credential = get_credentials(db, auth.db_user_id)
    google = credential is not None and settings.google_configured()
    if google:
        return DriveStatusResponse(
            backend="google",
            connected=True,
            google_configured=True,
            expires_at=credential.expires_at,
            scope=credential.scope,
        )
    return DriveStatusResponse(
        backend="local",
        connected=False,
        google_configured=settings.google_configured(),
        local_stats=LocalDriveClient(settings.local_drive_path).get_stats(),
    )
