"""Authentication API endpoints.

Public endpoints:
    POST /api/auth/register        create an account (a new company, or join one as its admin's invitee)
    POST /api/auth/login           password step; returns a session token or an MFA challenge
    POST /api/auth/mfa/sms-code    send an SMS code for a pending MFA login
    POST /api/auth/mfa/verify      exchange the pending token plus a second factor for a session token
    GET  /api/auth/me              current user
"""

import logging
from typing import List, Optional

from fastapi import APIRouter, Depends, Request
from pydantic import BaseModel, Field
from sqlalchemy.orm import Session

from ..core.auth import AuthContext, optional_auth, require_auth
from ..core.config import settings
from ..database import get_db
from ..exceptions import AuthenticationError, ForbiddenError
from ..services import auth_service

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/auth", tags=["Authentication"])


# --- Request/Response schemas ---


class RegisterRequest(BaseModel):
    email: str = Field(..., description="Email address")
    password: str = Field(..., min_length=8, description="Password (min 8 characters)")
    display_name: str = Field(..., description="Display name")
    company_id: Optional[str] = Field(None, description="Join this company (admin only)")
    company_name: Optional[str] = Field(None, description="Name of the company created for a new admin")
    phone: Optional[str] = None

    model_config = {
        "json_schema_extra": {
            "examples": [{
                "email": "ana@empresa.cl",
                "password": "securepass",
                "display_name": "Ana",
                "company_name": "Empresa SpA",
            }]
        }
    }


class LoginRequest(BaseModel):
    email: str
    password: str


class MFAVerifyRequest(BaseModel):
    mfa_token: str
    method: str = Field(..., description="totp, sms or backup")
    code: str


class MFATokenRequest(BaseModel):
    mfa_token: str


class UserResponse(BaseModel):
    user_id: str
    display_name: str
    email: str
    role: str
    is_active: bool
    company_id: Optional[str] = None
    current_plan_id: Optional[str] = None
    mfa_enabled: bool = False

    model_config = {"from_attributes": True}


class LoginResponse(BaseModel):
    token: Optional[str] = None
    mfa_required: bool = False
    mfa_token: Optional[str] = None
    mfa_methods: List[str] = []
    user: UserResponse


class SMSCodeResponse(BaseModel):
    masked_phone: str
    expires_at: str


def _request_context(request: Request) -> dict:
    return {
        "ip_address": request.client.host if request.client else None,
        "user_agent": request.headers.get("user-agent"),
    }


# --- Endpoints ---


@router.post(
    "/register",
    response_model=UserResponse,
    status_code=201,
    summary="Register a new user",
    description="Open for new companies. Joining an existing company requires an admin of that company.",
)
def register_user(
    body: RegisterRequest,
    db: Session = Depends(get_db),
    auth: Optional[AuthContext] = Depends(optional_auth),
):
    if body.company_id and settings.auth_enabled:
        if auth is None or not auth.is_admin or auth.company_id != body.company_id:
            raise ForbiddenError("Only an admin of the company can add users to it")

    return auth_service.register_user(
        db,
        body.email,
        body.password,
        body.display_name,
        company_id=body.company_id,
        company_name=body.company_name,
        phone=body.phone,
    )


@router.post("/login", response_model=LoginResponse, summary="Authenticate and receive JWT")
def login(body: LoginRequest, request: Request, db: Session = Depends(get_db)):
    return auth_service.login(db, body.email, body.password, context=_request_context(request))


@router.post("/mfa/sms-code", response_model=SMSCodeResponse, summary="Send an SMS code for a pending login")
def send_sms_code(body: MFATokenRequest, db: Session = Depends(get_db)):
    result = auth_service.send_login_sms(db, body.mfa_token)
    # No SMS gateway is wired in; the code is only written to the log in development.
    if settings.environment.value == "development":
        logger.info("SMS code for %s: %s", result["masked_phone"], result["otp"])
    return SMSCodeResponse(masked_phone=result["masked_phone"], expires_at=result["expires_at"].isoformat())


@router.post("/mfa/verify", response_model=LoginResponse, summary="Complete an MFA login")
def verify_mfa(body: MFAVerifyRequest, request: Request, db: Session = Depends(get_db)):
    result = auth_service.verify_mfa(
        db, body.mfa_token, body.method, body.code, context=_request_context(request)
    )
    return LoginResponse(token=result["token"], user=UserResponse.model_validate(result["user"]))


@router.get("/me", response_model=UserResponse, summary="Get current user info")
def get_me(auth: AuthContext = Depends(require_auth), db: Session = Depends(get_db)):
    user = auth_service.get_user_by_id(db, auth.user_id)
    if user is None:
        raise AuthenticationError("User not found")
    return user
