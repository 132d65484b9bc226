"""Pick the Drive backend for a user and keep their OAuth tokens current."""

import logging
from typing import Optional, Union

from sqlalchemy.orm import Session

from ..core.config import settings
from ..models.user import DriveCredential
from .google_drive import GoogleDriveClient, expires_at
from .local_drive import LocalDriveClient

logger = logging.getLogger(__name__)

DriveClient = Union[GoogleDriveClient, LocalDriveClient]


def store_credentials(db: Session, user_id: str, tokens: dict) -> DriveCredential:
    """Upsert the user's Drive tokens. A response without a refresh token keeps the stored one."""
    credential = db.query(DriveCredential).filter(DriveCredential.user_id == user_id).first()
    if credential is None:
        credential = DriveCredential(user_id=user_id)
        db.add(credential)

    credential.access_token = tokens["access_token"]
    if tokens.get("refresh_token"):
        credential.refresh_token = tokens["refresh_token"]
    credential.token_type = tokens.get("token_type", "Bearer")
    credential.scope = tokens.get("scope", credential.scope)
    credential.expires_at = expires_at(tokens)
    db.commit()
    db.refresh(credential)
    return credential


def get_credentials(db: Session, user_id: Optional[str]) -> Optional[DriveCredential]:
    if not user_id:
        return None
    return db.query(DriveCredential).filter(DriveCredential.user_id == user_id).first()


def delete_credentials(db: Session, user_id: str) -> bool:
    credential = get_credentials(db, user_id)
    if credential is None:
        return False
    db.delete(credential)
    db.commit()
    return True


def drive_for_user(db: Session, user_id: Optional[str]) -> DriveClient:
    """Google Drive when the user linked an account and OAuth is configured, else the local store."""
    credential = get_credentials(db, user_id)
    if credential is not None and settings.google_configured():
        def _persist(tokens: dict) -> None:
            store_credentials(db, user_id, tokens)

        return GoogleDriveClient(
            access_token=credential.access_token,
            refresh_token=credential.refresh_token,
            on_token_refresh=_persist,
        )

    if credential is not None:
        logger.warning("Drive credentials stored but Google OAuth is not configured; using local drive")
    return LocalDriveClient(settings.local_drive_path)
