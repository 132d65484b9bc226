"""Per-request bookkeeping: request id, access log and per-client throttling.

Throttling uses a sliding one-minute window per client and tier. Login,
registration and MFA endpoints get their own, smaller budget so password
guessing cannot borrow from the general API allowance. Rejections are
reported to the audit log as security events.
"""

import logging
import threading
import time
import uuid
from collections import deque
from typing import Callable, Deque, Dict, Optional, Tuple

from starlette.middleware.base import BaseHTTPMiddleware, RequestResponseEndpoint
from starlette.requests import Request
from starlette.responses import JSONResponse, Response

from ..core.config import settings
from ..core.logging_config import request_id_var
from ..services.audit_service import get_audit_service

logger = logging.getLogger(__name__)

WINDOW_SECONDS = 60.0

UNTHROTTLED_PATHS = frozenset({"/", "/health", "/docs", "/redoc", "/openapi.json"})
# Telegram and Meta deliver from a few shared addresses and retry on 429.
UNTHROTTLED_PREFIXES = ("/api/webhooks/",)
AUTH_PREFIXES = ("/api/auth/", "/api/mfa/")


class SlidingWindowLimiter:
    """Counts hits per key over the last ``window`` seconds."""

    def __init__(self, window: float = WINDOW_SECONDS, clock: Callable[[], float] = time.monotonic):
        self.window = window
        self._clock = clock
        self._hits: Dict[str, Deque[float]] = {}
        self._lock = threading.Lock()

    def hit(self, key: str, limit: int, now: Optional[float] = None) -> Tuple[bool, float]:
        """Record a hit for *key*; returns ``(allowed, retry_after_seconds)``.

        A rejected hit is not recorded. ``limit <= 0`` disables the check.
        """
        if limit <= 0:
            return True, 0.0
        now = self._clock() if now is None else now
        with self._lock:
            hits = self._hits.setdefault(key, deque())
            while hits and hits[0] <= now - self.window:
                hits.popleft()
            if len(hits) >= limit:
                return False, hits[0] + self.window - now
            hits.append(now)
            return True, 0.0

    def prune(self, now: Optional[float] = None) -> int:
        """Drop keys with no hits inside the window. Returns how many were dropped."""
        now = self._clock() if now is None else now
        with self._lock:
            idle = [k for k, hits in self._hits.items() if not hits or hits[-1] <= now - self.window]
            for key in idle:
                del self._hits[key]
            return len(idle)

    def clear(self) -> None:
        with self._lock:
            self._hits.clear()

    def __len__(self) -> int:
        return len(self._hits)


limiter = SlidingWindowLimiter()


def throttle_tier(path: str) -> Optional[str]:
    """``"auth"`` or ``"api"`` for throttled paths, None for exempt ones."""
    if path in UNTHROTTLED_PATHS or path.startswith(UNTHROTTLED_PREFIXES):
        return None
    if path.startswith(AUTH_PREFIXES):
        return "auth"
    return "api"


def tier_limit(tier: str) -> int:
    if tier == "auth":
        return settings.rate_limit_auth_per_minute
    return settings.rate_limit_per_minute


def client_address(request: Request) -> str:
    forwarded = request.headers.get("x-forwarded-for")
    if forwarded:
        return forwarded.split(",")[0].strip()
    return request.client.host if request.client else "unknown"


def _too_many_requests(rid: str, tier: str, retry_after: float) -> JSONResponse:
    wait = max(1, int(retry_after + 0.999))
    return JSONResponse(
        status_code=429,
        content={
            "error": "RATE_LIMITED",
            "message": "Too many requests, slow down",
            "details": {"tier": tier, "retry_after": wait},
        },
        headers={"Retry-After": str(wait), "X-Request-ID": rid},
    )


class RequestContextMiddleware(BaseHTTPMiddleware):
    async def dispatch(self, request: Request, call_next: RequestResponseEndpoint) -> Response:
        rid = request.headers.get("x-request-id") or uuid.uuid4().hex[:16]
        request_id_var.set(rid)
        path = request.url.path
        client = client_address(request)

        tier = throttle_tier(path)
        if tier is not None:
            allowed, retry_after = limiter.hit(f"{tier}:{client}", tier_limit(tier))
            if not allowed:
                logger.warning("Request throttled", extra={"client": client, "path": path, "tier": tier})
                get_audit_service().log_security_event(
                    None, "RATE_LIMITED", {"client": client, "path": path, "tier": tier}, severity="LOW"
                )
                return _too_many_requests(rid, tier, retry_after)

        started = time.perf_counter()
        response = await call_next(request)
        elapsed_ms = round((time.perf_counter() - started) * 1000, 1)

        response.headers["X-Request-ID"] = rid
        response.headers["X-Response-Time"] = f"{elapsed_ms}ms"
        logger.info(
            "%s %s -> %s", request.method, path, response.status_code,
            extra={"method": request.method, "path": path, "status_code": response.status_code,
                   "duration_ms": elapsed_ms, "client": client},
        )
        if len(limiter) > 1000:
            limiter.prune()
        return response
