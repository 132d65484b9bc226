"""Request identity for StaffHub endpoints.

Dependencies:
    ``require_auth``  the caller's AuthContext, 401 without a valid session token.
    ``optional_auth`` the AuthContext when a usable token is sent, else None.
    ``require_admin`` like ``require_auth`` but 403 for non-admins.
    ``current_user``  the User row, None for the anonymous context.

With ``AUTH_ENABLED=false`` every request is the anonymous admin below.
"""

from dataclasses import dataclass
from typing import Optional

from fastapi import Depends
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from sqlalchemy.orm import Session

from .config import settings
from .token_factory import PURPOSE_SESSION, decode_token
from ..database import get_db
from ..exceptions import AuthenticationError, ForbiddenError

ANONYMOUS_USER_ID = "anonymous"

bearer_token = HTTPBearer(auto_error=False)


@dataclass(frozen=True)
class AuthContext:
    """Who is calling. ``company_id`` scopes every tenant query.

    It is None for the anonymous context and for users that belong to no
    company yet.
    """

    user_id: str
    role: str
    company_id: Optional[str] = None
    email: Optional[str] = None

    @property
    def is_admin(self) -> bool:
        return self.role == "admin"

    @property
    def is_anonymous(self) -> bool:
        return self.user_id == ANONYMOUS_USER_ID

    @property
    def db_user_id(self) -> Optional[str]:
        """Value for user foreign keys; None for the anonymous context."""
        return None if self.is_anonymous else self.user_id


ANONYMOUS = AuthContext(user_id=ANONYMOUS_USER_ID, role="admin")


def _user_model():
    from ..models.user import User
    return User


def _context_from_token(token: str, db: Session) -> AuthContext:
    claims = decode_token(token, settings.jwt_secret_key, settings.jwt_algorithm)
    if claims is None:
        raise AuthenticationError("Invalid or expired token")
    if claims.purpose != PURPOSE_SESSION:
        raise AuthenticationError("Multi-factor verification has not been completed")

    User = _user_model()
    account = db.query(User).filter(User.user_id == claims.sub).first()
    if account is None:
        raise AuthenticationError("User not found")
    if not account.is_active:
        raise AuthenticationError("Account is deactivated")
    return AuthContext(
        user_id=account.user_id,
        role=account.role,
        company_id=account.company_id,
        email=account.email,
    )


def require_auth(
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(bearer_token),
    db: Session = Depends(get_db),
) -> AuthContext:
    if not settings.auth_enabled:
        return ANONYMOUS
    if credentials is None:
        raise AuthenticationError("Missing authentication token")
    return _context_from_token(credentials.credentials, db)


def optional_auth(
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(bearer_token),
    db: Session = Depends(get_db),
) -> Optional[AuthContext]:
    """Never raises: a bad or missing token reads as no caller."""
    if not settings.auth_enabled:
        return ANONYMOUS
    if credentials is None:
        return None
    try:
        return _context_from_token(credentials.credentials, db)
    except AuthenticationError:
        return None


def require_admin(auth: AuthContext = Depends(require_auth)) -> AuthContext:
    if auth.is_admin:
        return auth
    raise ForbiddenError("Only company admins can do this")


def current_user(
    auth: AuthContext = Depends(require_auth),
    db: Session = Depends(get_db),
):
    if auth.is_anonymous:
        return None
    User = _user_model()
    return db.query(User).filter(User.user_id == auth.user_id).first()
