"""Second-factor authentication: TOTP, SMS one-time codes and backup codes.

Enrolment state lives in process memory keyed by user id. The
``users.mfa_enabled`` column records that a user must pass a second factor;
the secrets themselves never reach the database or the logs.

TOTP follows RFC 6238 (HMAC-SHA1, 6 digits, 30 second period).
"""

import base64
import hashlib
import hmac
import logging
import secrets
import struct
import threading
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Dict, List, Optional, Set
from urllib.parse import quote

from ..core.config import settings

logger = logging.getLogger(__name__)

TOTP_DIGITS = 6
TOTP_PERIOD = 30
TOTP_ALGORITHM = "SHA1"

SMS_OTP_TTL = 30                # seconds a code stays valid
SMS_MAX_ATTEMPTS = 5
SMS_LOCKOUT_SECONDS = 15 * 60

BACKUP_CODE_COUNT = 10

METHOD_TOTP = "totp"
METHOD_SMS = "sms"
METHOD_BACKUP = "backup"


def generate_secret(length: int = 20) -> str:
    """Random base32 secret, unpadded, as authenticator apps expect."""
    return base64.b32encode(secrets.token_bytes(length)).decode().rstrip("=")


def _decode_secret(secret: str) -> bytes:
    cleaned = secret.replace(" ", "").upper()
    cleaned += "=" * (-len(cleaned) % 8)
    return base64.b32decode(cleaned)


def totp_at(secret: str, counter: int) -> str:
    """HOTP value for *counter* (RFC 4226 dynamic truncation)."""
    digest = hmac.new(_decode_secret(secret), struct.pack(">Q", counter), hashlib.sha1).digest()
    offset = digest[-1] & 0x0F
    code = struct.unpack(">I", digest[offset:offset + 4])[0] & 0x7FFFFFFF
    return str(code % 10 ** TOTP_DIGITS).zfill(TOTP_DIGITS)


def verify_totp(secret: str, token: str, window: int = 1, at: Optional[float] = None) -> bool:
    """Check *token* against the codes of the current period +/- *window* periods.

    Malformed tokens and secrets return False.
    """
    if not secret or not token:
        return False
    token = token.strip()
    if len(token) != TOTP_DIGITS or not token.isdigit():
        return False

    now = time.time() if at is None else at
    counter = int(now // TOTP_PERIOD)
    try:
        for step in range(-window, window + 1):
            if hmac.compare_digest(totp_at(secret, counter + step), token):
                return True
    except (ValueError, TypeError):
        logger.warning("TOTP verification failed on a malformed secret")
    return False


def generate_backup_codes(count: int = BACKUP_CODE_COUNT) -> List[str]:
    """Codes shaped ``XXXX-XXXX`` in upper-case hex."""
    codes = []
    for _ in range(count):
        raw = secrets.token_hex(4).upper()
        codes.append(f"{raw[:4]}-{raw[4:]}")
    return codes


def _normalize_code(code: str) -> str:
    return "".join(code.split()).upper()


def mask_phone(phone: str) -> str:
    digits = "".join(ch for ch in phone if ch.isdigit())
    return f"***-***-{digits[-4:]}" if digits else "***-***-****"


def provisioning_uri(secret: str, account: str, issuer: str) -> str:
    label = quote(f"{issuer}:{account}")
    return (
        f"otpauth://totp/{label}?secret={secret}&issuer={quote(issuer)}"
        f"&algorithm={TOTP_ALGORITHM}&digits={TOTP_DIGITS}&period={TOTP_PERIOD}"
    )


@dataclass
class _PendingOtp:
    code: str
    phone: str
    expires_at: float
    attempts: int = 0


@dataclass
class _Lockout:
    failures: int = 0
    last_failure: float = 0.0


@dataclass
class _UserMfa:
    methods: Set[str] = field(default_factory=set)
    totp_secret: Optional[str] = None
    phone: Optional[str] = None
    backup_codes: Set[str] = field(default_factory=set)
    registered_at: Optional[datetime] = None


class MFAService:
    """Per-process MFA store. All state is guarded by one lock."""

    def __init__(self, issuer: str = "StaffHub", clock=time.time):
        self.issuer = issuer
        self._clock = clock
        self._users: Dict[str, _UserMfa] = {}
        self._pending: Dict[str, _PendingOtp] = {}
        self._lockouts: Dict[str, _Lockout] = {}
        self._lock = threading.Lock()

    # -- TOTP ----------------------------------------------------------------

    def generate_totp_secret(self, email: str) -> dict:
        """Fresh secret plus provisioning URI and backup codes. Nothing is stored until register_mfa."""
        secret = generate_secret()
        return {
            "secret": secret,
            "provisioning_uri": provisioning_uri(secret, email, self.issuer),
            "backup_codes": generate_backup_codes(),
            "algorithm": TOTP_ALGORITHM,
            "digits": TOTP_DIGITS,
            "period": TOTP_PERIOD,
        }

    def verify_user_totp(self, user_id: str, token: str) -> bool:
        with self._lock:
            record = self._users.get(user_id)
            secret = record.totp_secret if record else None
        return verify_totp(secret, token, at=self._clock()) if secret else False

    # -- Backup codes ----------------------------------------------------------

    def verify_backup_code(self, user_id: str, code: str) -> bool:
        """Single use: a matching code is removed."""
        normalized = _normalize_code(code or "")
        with self._lock:
            record = self._users.get(user_id)
            if record is None or normalized not in record.backup_codes:
                return False
            record.backup_codes.discard(normalized)
            remaining = len(record.backup_codes)
        logger.info("Backup code used", extra={"user_id": user_id, "remaining": remaining})
        return True

    # -- SMS -----------------------------------------------------------------

    def generate_sms_otp(self, user_id: str, phone: str) -> dict:
        """Issue a 6-digit code. Delivery is the caller's concern."""
        code = f"{secrets.randbelow(10 ** TOTP_DIGITS):0{TOTP_DIGITS}d}"
        expires_at = self._clock() + SMS_OTP_TTL
        with self._lock:
            self._pending[user_id] = _PendingOtp(code=code, phone=phone, expires_at=expires_at)
        return {
            "otp": code,
            "expires_at": datetime.fromtimestamp(expires_at, tz=timezone.utc),
            "masked_phone": mask_phone(phone),
        }

    def verify_sms_otp(self, user_id: str, otp: str) -> dict:
        """Returns ``{"success": bool, "error": str | None, "locked_until": datetime | None}``."""
        now = self._clock()
        with self._lock:
            lockout = self._lockouts.get(user_id)
            if lockout and lockout.failures >= SMS_MAX_ATTEMPTS:
                unlock_at = lockout.last_failure + SMS_LOCKOUT_SECONDS
                if now < unlock_at:
                    return {
                        "success": False,
                        "error": "Too many failed attempts",
                        "locked_until": datetime.fromtimestamp(unlock_at, tz=timezone.utc),
                    }
                del self._lockouts[user_id]
                lockout = None

            pending = self._pending.get(user_id)
            if pending is None:
                return {"success": False, "error": "No code requested", "locked_until": None}
            if now > pending.expires_at:
                del self._pending[user_id]
                return {"success": False, "error": "Code expired", "locked_until": None}

            if hmac.compare_digest(pending.code, (otp or "").strip()):
                del self._pending[user_id]
                self._lockouts.pop(user_id, None)
                return {"success": True, "error": None, "locked_until": None}

            pending.attempts += 1
            lockout = lockout or self._lockouts.setdefault(user_id, _Lockout())
            lockout.failures += 1
            lockout.last_failure = now
            if lockout.failures >= SMS_MAX_ATTEMPTS:
                self._pending.pop(user_id, None)
                logger.warning("SMS OTP lockout", extra={"user_id": user_id})
            return {"success": False, "error": "Invalid code", "locked_until": None}

    # -- Enrolment -----------------------------------------------------------

    def register_mfa(
        self,
        user_id: str,
        method: str,
        secret: Optional[str] = None,
        phone: Optional[str] = None,
        backup_codes: Optional[List[str]] = None,
    ) -> dict:
        if method not in (METHOD_TOTP, METHOD_SMS):
            raise ValueError(f"Unknown MFA method: {method}")
        if method == METHOD_TOTP and not secret:
            raise ValueError("TOTP registration needs a secret")
        if method == METHOD_SMS and not phone:
            raise ValueError("SMS registration needs a phone number")

        with self._lock:
            record = self._users.setdefault(user_id, _UserMfa())
            record.methods.add(method)
            if method == METHOD_TOTP:
                record.totp_secret = secret
            else:
                record.phone = phone
            if backup_codes:
                record.backup_codes = {_normalize_code(c) for c in backup_codes}
                record.methods.add(METHOD_BACKUP)
            if record.registered_at is None:
                record.registered_at = datetime.now(timezone.utc)

        logger.info("MFA method registered", extra={"user_id": user_id, "method": method})
        return self.get_mfa_config(user_id)

    def get_mfa_config(self, user_id: str) -> dict:
        with self._lock:
            record = self._users.get(user_id)
            if record is None:
                return {"enabled": False, "methods": [], "backup_codes_remaining": 0,
                        "registered_at": None, "phone": None}
            return {
                "enabled": bool(record.methods),
                "methods": sorted(record.methods),
                "backup_codes_remaining": len(record.backup_codes),
                "registered_at": record.registered_at,
                "phone": mask_phone(record.phone) if record.phone else None,
            }

    def phone_for(self, user_id: str) -> Optional[str]:
        with self._lock:
            record = self._users.get(user_id)
            return record.phone if record else None

    def disable_mfa(self, user_id: str) -> bool:
        with self._lock:
            removed = self._users.pop(user_id, None) is not None
            self._pending.pop(user_id, None)
            self._lockouts.pop(user_id, None)
        if removed:
            logger.info("MFA disabled", extra={"user_id": user_id})
        return removed

    def get_stats(self) -> dict:
        with self._lock:
            records = list(self._users.values())
        by_method = {METHOD_TOTP: 0, METHOD_SMS: 0, METHOD_BACKUP: 0}
        for record in records:
            for method in record.methods:
                by_method[method] = by_method.get(method, 0) + 1
        total_methods = sum(len(r.methods) for r in records)
        return {
            "total_users": len(records),
            "by_method": by_method,
            "average_methods_per_user": round(total_methods / len(records), 2) if records else 0.0,
        }


_service: Optional[MFAService] = None
_service_lock = threading.Lock()


def get_mfa_service() -> MFAService:
    global _service
    with _service_lock:
        if _service is None:
            _service = MFAService(issuer=settings.mfa_issuer)
        return _service


def reset_mfa_service(service: Optional[MFAService] = None) -> None:
    global _service
    with _service_lock:
        _service = service
