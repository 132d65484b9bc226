"""Authentication service: registration, password login and the MFA step-up.

All password operations use bcrypt via passlib. Passwords are never stored
or logged in plaintext. Every outcome is written to the audit trail.

Login with MFA is two requests: the password check returns a short-lived
``mfa_pending`` token, and ``verify_mfa`` exchanges it for a session token
once a TOTP code, SMS code or backup code checks out.
"""

import logging
import uuid
from typing import Any, Dict, Optional

from passlib.hash import bcrypt
from sqlalchemy.orm import Session

from ..core.config import settings
from ..core.token_factory import PURPOSE_MFA_PENDING, PURPOSE_SESSION, create_token, decode_token
from ..exceptions import AuthenticationError, ForbiddenError, MFARequiredError, NotFoundError, ValidationError
from ..models import Company, User
from .audit_service import get_audit_service
from .mfa_service import METHOD_BACKUP, METHOD_SMS, METHOD_TOTP, get_mfa_service

logger = logging.getLogger(__name__)

MIN_PASSWORD_LENGTH = 8


def _short_id(prefix: str) -> str:
    return f"{prefix}-{uuid.uuid4().hex[:8]}"


def register_user(
    db: Session,
    email: str,
    password: str,
    display_name: str,
    company_id: Optional[str] = None,
    company_name: Optional[str] = None,
    phone: Optional[str] = None,
) -> User:
    """Create a user account.

    Without *company_id* a new company is created and the user becomes its
    admin. Joining an existing company makes the user an employee, except
    for the first user of a company, who is promoted to admin.

    Raises ValidationError if the email is taken or inputs are invalid.
    """
    email = (email or "").strip().lower()
    if not email or "@" not in email:
        raise ValidationError("Valid email address required", field="email")
    if len(password or "") < MIN_PASSWORD_LENGTH:
        raise ValidationError("Password must be at least 8 characters", field="password")
    if not (display_name or "").strip():
        raise ValidationError("Display name required", field="display_name")

    if db.query(User).filter(User.email == email).first() is not None:
        raise ValidationError("Email already registered", field="email")

    if company_id:
        company = db.query(Company).filter(Company.id == company_id).first()
        if company is None:
            raise NotFoundError("Company", company_id)
        members = db.query(User).filter(User.company_id == company.id).with_for_update().count()
        role = "admin" if members == 0 else "employee"
    else:
        company = Company(
            id=_short_id("co"),
            name=(company_name or "").strip() or f"{display_name.strip()}'s company",
        )
        db.add(company)
        role = "admin"

    user = User(
        user_id=_short_id("u"),
        email=email,
        display_name=display_name.strip(),
        password_hash=bcrypt.hash(password),
        role=role,
        is_active=True,
        company_id=company.id,
        phone=phone,
    )
    db.add(user)
    db.commit()
    db.refresh(user)

    logger.info("User registered", extra={"user_id": user.user_id, "role": role, "company_id": company.id})
    get_audit_service().log(user.user_id, "USER_REGISTERED", {"email": email, "role": role})
    return user


def authenticate(db: Session, email: str, password: str, context: Optional[dict] = None) -> User:
    """Validate credentials and return the user.

    Raises AuthenticationError on unknown email, wrong password, or inactive account.
    """
    audit = get_audit_service()
    email = (email or "").strip().lower()
    user = db.query(User).filter(User.email == email).first()

    if user is None or user.password_hash is None or not bcrypt.verify(password, user.password_hash):
        audit.log_auth_event(
            user.user_id if user else email, "LOGIN", {"email": email}, success=False, context=context
        )
        raise AuthenticationError("Invalid email or password")

    if not user.is_active:
        audit.log_auth_event(user.user_id, "LOGIN", {"reason": "deactivated"}, success=False, context=context)
        raise AuthenticationError("Account is deactivated")

    return user


def issue_session_token(user: User) -> str:
    return create_token(
        subject=user.user_id,
        role=user.role,
        secret=settings.jwt_secret_key,
        algorithm=settings.jwt_algorithm,
        expires_hours=settings.jwt_expires_hours,
        company_id=user.company_id,
        purpose=PURPOSE_SESSION,
    )


def mfa_active(user: User) -> bool:
    """MFA applies when the user turned it on and still has methods registered in this process.

    Methods live in memory, so a restart leaves ``users.mfa_enabled`` set with
    nothing to verify against. The login then goes through on the password
    alone and a HIGH security event is recorded so an admin can have the user
    enroll again.
    """
    if not settings.mfa_enabled or not user.mfa_enabled:
        return False
    if get_mfa_service().get_mfa_config(user.user_id)["enabled"]:
        return True
    logger.warning("User %s has MFA enabled but no registered methods; skipping step-up", user.user_id)
    get_audit_service().log_security_event(
        user.user_id,
        "MFA_METHODS_MISSING",
        {"email": user.email, "reason": "mfa enabled without registered methods"},
        severity="HIGH",
    )
    return False


def login(db: Session, email: str, password: str, context: Optional[dict] = None) -> Dict[str, Any]:
    """Password step. Returns a session token, or a pending token when MFA is required."""
    user = authenticate(db, email, password, context)
    audit = get_audit_service()

    if mfa_active(user):
        pending = create_token(
            subject=user.user_id,
            role=user.role,
            secret=settings.jwt_secret_key,
            algorithm=settings.jwt_algorithm,
            expires_hours=settings.mfa_pending_minutes / 60,
            company_id=user.company_id,
            purpose=PURPOSE_MFA_PENDING,
        )
        audit.log_auth_event(user.user_id, "MFA_CHALLENGE", {"email": user.email}, success=True, context=context)
        return {
            "token": None,
            "mfa_required": True,
            "mfa_token": pending,
            "mfa_methods": get_mfa_service().get_mfa_config(user.user_id)["methods"],
            "user": user,
        }

    audit.log_auth_event(user.user_id, "LOGIN", {"email": user.email}, success=True, context=context)
    return {"token": issue_session_token(user), "mfa_required": False, "mfa_token": None,
            "mfa_methods": [], "user": user}


def _user_from_pending(db: Session, mfa_token: str) -> User:
    payload = decode_token(mfa_token or "", settings.jwt_secret_key, settings.jwt_algorithm)
    if payload is None or payload.purpose != PURPOSE_MFA_PENDING:
        raise AuthenticationError("Invalid or expired MFA token")
    user = get_user_by_id(db, payload.sub)
    if user is None or not user.is_active:
        raise AuthenticationError("User not found")
    return user


def send_login_sms(db: Session, mfa_token: str) -> Dict[str, Any]:
    """Issue an SMS code for a pending login."""
    user = _user_from_pending(db, mfa_token)
    mfa = get_mfa_service()
    phone = mfa.phone_for(user.user_id)
    if not phone:
        raise ValidationError("No phone registered for SMS verification", field="method")
    return mfa.generate_sms_otp(user.user_id, phone)


def verify_mfa(db: Session, mfa_token: str, method: str, code: str,
               context: Optional[dict] = None) -> Dict[str, Any]:
    """Second step of an MFA login. Returns a session token and the user."""
    user = _user_from_pending(db, mfa_token)
    mfa = get_mfa_service()
    audit = get_audit_service()

    if method == METHOD_TOTP:
        ok = mfa.verify_user_totp(user.user_id, code)
        error = None if ok else "Invalid code"
    elif method == METHOD_SMS:
        result = mfa.verify_sms_otp(user.user_id, code)
        ok, error = result["success"], result["error"]
    elif method == METHOD_BACKUP:
        ok = mfa.verify_backup_code(user.user_id, code)
        error = None if ok else "Invalid backup code"
    else:
        raise ValidationError("method must be totp, sms or backup", field="method")

    if not ok:
        audit.log_auth_event(user.user_id, "MFA_VERIFY", {"method": method, "error": error},
                             success=False, context=context)
        audit.log_security_event(user.user_id, "MFA_FAILED", {"method": method})
        raise MFARequiredError(f"Multi-factor verification failed: {error}")

    audit.log_auth_event(user.user_id, "LOGIN", {"email": user.email, "mfa_method": method},
                         success=True, context=context)
    return {"token": issue_session_token(user), "user": user}


def set_mfa_enabled(db: Session, user_id: str, enabled: bool) -> User:
    user = get_user_by_id(db, user_id)
    if user is None:
        raise ForbiddenError("MFA requires a registered user")
    user.mfa_enabled = enabled
    db.commit()
    db.refresh(user)
    return user


def get_user_by_id(db: Session, user_id: str) -> Optional[User]:
    return db.query(User).filter(User.user_id == user_id).first()
