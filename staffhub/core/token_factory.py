"""HS256 JWTs for StaffHub sessions.

Two kinds of token share the format and differ in the ``pur`` claim:
``session`` for a logged-in user and ``mfa_pending`` for a login whose
password was accepted but whose second factor is still outstanding. The
tenant travels in ``cid`` so tenant checks need no extra lookup.
"""

import base64
import hashlib
import hmac
import json
import secrets
import time
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Dict, Optional

PURPOSE_SESSION = "session"
PURPOSE_MFA_PENDING = "mfa_pending"

ISSUER = "staffhub"
LEEWAY_SECONDS = 30
_HEADER = {"alg": "HS256", "typ": "JWT"}


@dataclass(frozen=True)
class TokenPayload:
    sub: str
    role: str
    exp: datetime
    company_id: Optional[str] = None
    purpose: str = PURPOSE_SESSION
    token_id: Optional[str] = None


def _b64(data: bytes) -> str:
    return base64.urlsafe_b64encode(data).rstrip(b"=").decode("ascii")


def _unb64(segment: str) -> bytes:
    return base64.urlsafe_b64decode(segment + "=" * (-len(segment) % 4))


def _signature(signing_input: str, secret: str) -> bytes:
    return hmac.new(secret.encode(), signing_input.encode("ascii"), hashlib.sha256).digest()


def create_token(
    subject: str,
    role: str,
    secret: str,
    algorithm: str = "HS256",
    expires_hours: float = 24,
    company_id: Optional[str] = None,
    purpose: str = PURPOSE_SESSION,
) -> str:
    """Sign a token for *subject* valid for *expires_hours* (fractions allowed)."""
    if algorithm != "HS256":
        raise ValueError(f"Unsupported algorithm: {algorithm}")

    issued = int(time.time())
    claims: Dict[str, Any] = {
        "iss": ISSUER,
        "sub": subject,
        "role": role,
        "cid": company_id,
        "pur": purpose,
        "jti": secrets.token_hex(8),
        "iat": issued,
        "exp": issued + int(expires_hours * 3600),
    }
    signing_input = ".".join(
        _b64(json.dumps(part, separators=(",", ":")).encode()) for part in (_HEADER, claims)
    )
    return f"{signing_input}.{_b64(_signature(signing_input, secret))}"


def decode_token(token: str, secret: str, algorithm: str = "HS256") -> Optional[TokenPayload]:
    """Verify *token* and return its payload, or None when it should not be trusted.

    Rejects malformed tokens, a header algorithm other than HS256, bad
    signatures, foreign issuers and tokens past their expiry (with a small
    clock leeway).
    """
    if algorithm != "HS256" or not isinstance(token, str) or token.count(".") != 2:
        return None
    header_b64, claims_b64, signature_b64 = token.split(".")
    try:
        if json.loads(_unb64(header_b64)).get("alg") != "HS256":
            return None
        signature = _unb64(signature_b64)
        expected = _signature(f"{header_b64}.{claims_b64}", secret)
        if not hmac.compare_digest(signature, expected):
            return None
        claims = json.loads(_unb64(claims_b64))
        expires = int(claims["exp"])
    except (ValueError, KeyError, TypeError, AttributeError):
        return None

    if claims.get("iss") != ISSUER or time.time() > expires + LEEWAY_SECONDS:
        return None
    if not claims.get("sub"):
        return None

    return TokenPayload(
        sub=claims["sub"],
        role=claims.get("role", ""),
        exp=datetime.fromtimestamp(expires, tz=timezone.utc),
        company_id=claims.get("cid"),
        purpose=claims.get("pur", PURPOSE_SESSION),
        token_id=claims.get("jti"),
    )
