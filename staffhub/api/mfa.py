"""MFA enrolment endpoints.

    POST   /api/mfa/totp/setup    fresh secret, provisioning URI and backup codes (not stored yet)
    POST   /api/mfa/totp/confirm  verify a code against the secret, then register it
    POST   /api/mfa/sms/send      send a code to a phone being enrolled
    POST   /api/mfa/sms/confirm   verify that code, then register the phone
    GET    /api/mfa/config
    DELETE /api/mfa
    GET    /api/mfa/stats         admin only
"""

import logging
from datetime import datetime
from typing import List, Optional

from fastapi import APIRouter, Depends
from pydantic import BaseModel, Field
from sqlalchemy.orm import Session

from ..core.auth import AuthContext, require_admin, require_auth
from ..core.config import settings
from ..database import get_db
from ..exceptions import ForbiddenError, ValidationError
from ..services import auth_service
from ..services.audit_service import get_audit_service
from ..services.mfa_service import METHOD_SMS, METHOD_TOTP, get_mfa_service, verify_totp

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/mfa", tags=["mfa"])


class TOTPSetupResponse(BaseModel):
    secret: str
    provisioning_uri: str
    backup_codes: List[str]
    algorithm: str
    digits: int
    period: int


class TOTPConfirmRequest(BaseModel):
    secret: str
    token: str
    backup_codes: List[str] = Field(default_factory=list)


class SMSSendRequest(BaseModel):
    phone: str = Field(..., min_length=4)


class SMSConfirmRequest(BaseModel):
    phone: str
    otp: str


class MFAConfigResponse(BaseModel):
    enabled: bool
    methods: List[str]
    backup_codes_remaining: int
    registered_at: Optional[datetime] = None
    phone: Optional[str] = None


def _require_enabled(auth: AuthContext) -> None:
    if not settings.mfa_enabled:
        raise ForbiddenError("MFA is disabled on this server")
    if auth.is_anonymous:
        raise ForbiddenError("MFA requires a registered user")


@router.post("/totp/setup", response_model=TOTPSetupResponse)
def totp_setup(auth: AuthContext = Depends(require_auth)):
    _require_enabled(auth)
    return get_mfa_service().generate_totp_secret(auth.email or auth.user_id)


@router.post("/totp/confirm", response_model=MFAConfigResponse)
def totp_confirm(
    body: TOTPConfirmRequest,
    auth: AuthContext = Depends(require_auth),
    db: Session = Depends(get_db),
):
    _require_enabled(auth)
    if not verify_totp(body.secret, body.token):
        get_audit_service().log_security_event(auth.user_id, "MFA_SETUP_FAILED", {"method": METHOD_TOTP})
        raise ValidationError("Invalid authenticator code", field="token")

    config = get_mfa_service().register_mfa(
        auth.user_id, METHOD_TOTP, secret=body.secret, backup_codes=body.backup_codes or None
    )
    auth_service.set_mfa_enabled(db, auth.user_id, True)
    get_audit_service().log_security_event(auth.user_id, "MFA_ENABLED", {"method": METHOD_TOTP}, severity="LOW")
    return config


@router.post("/sms/send")
def sms_send(body: SMSSendRequest, auth: AuthContext = Depends(require_auth)):
    _require_enabled(auth)
    result = get_mfa_service().generate_sms_otp(auth.user_id, body.phone)
    if settings.environment.value == "development":
        logger.info("SMS code for %s: %s", result["masked_phone"], result["otp"])
    return {"masked_phone": result["masked_phone"], "expires_at": result["expires_at"]}


@router.post("/sms/confirm", response_model=MFAConfigResponse)
def sms_confirm(
    body: SMSConfirmRequest,
    auth: AuthContext = Depends(require_auth),
    db: Session = Depends(get_db),
):
    _require_enabled(auth)
    mfa = get_mfa_service()
    result = mfa.verify_sms_otp(auth.user_id, body.otp)
    if not result["success"]:
        raise ValidationError(result["error"], field="otp")

    config = mfa.register_mfa(auth.user_id, METHOD_SMS, phone=body.phone)
    auth_service.set_mfa_enabled(db, auth.user_id, True)
    get_audit_service().log_security_event(auth.user_id, "MFA_ENABLED", {"method": METHOD_SMS}, severity="LOW")
    return config


@router.get("/config", response_model=MFAConfigResponse)
def get_config(auth: AuthContext = Depends(require_auth)):
    return get_mfa_service().get_mfa_config(auth.user_id)


@router.delete("", status_code=204)
def disable(auth: AuthContext = Depends(require_auth), db: Session = Depends(get_db)):
    _require_enabled(auth)
    get_mfa_service().disable_mfa(auth.user_id)
    auth_service.set_mfa_enabled(db, auth.user_id, False)
    get_audit_service().log_security_event(auth.user_id, "MFA_DISABLED", {}, severity="HIGH")


@router.get("/stats")
def stats(auth: AuthContext = Depends(require_admin)):
    return get_mfa_service().get_stats()
