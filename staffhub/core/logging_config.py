"""Logging for StaffHub: one stdout handler, JSON or text.

Every record carries the id of the request it was logged under and passes
through secret redaction first, so OAuth tokens, Groq keys and Graph API
tokens never reach the log sink, whether they appear in the message, in
its arguments or in ``extra`` fields.
"""

import contextvars
import json
import logging
import re
import sys
from datetime import datetime, timezone
from typing import Any, Dict, Optional

request_id_var: contextvars.ContextVar[str] = contextvars.ContextVar("request_id", default="")

REDACTED = "***REDACTED***"

_SECRETS = [
    re.compile(r"\bgsk_[a-zA-Z0-9]{20,}\b"),           # Groq
    re.compile(r"\bya29\.[a-zA-Z0-9._\-]{20,}"),        # Google access token
    re.compile(r"\b1//[a-zA-Z0-9._\-]{20,}"),           # Google refresh token
    re.compile(r"\bEAA[a-zA-Z0-9]{20,}\b"),             # Meta Graph
    re.compile(r"\b\d{8,10}:[a-zA-Z0-9_\-]{35}\b"),     # Telegram bot
]
_LABELLED_SECRETS = [
    re.compile(r"(?i)(bearer\s+)[a-zA-Z0-9._\-]{20,}"),
    re.compile(r"(?i)((?:access_token|refresh_token|client_secret|api_key|app_secret|"
               r"verify_token|password|secret|authorization)[\"']?\s*[=:]\s*[\"']?)[^\s,'\"]{8,}"),
]
_SENSITIVE_EXTRAS = frozenset({
    "access_token", "refresh_token", "password", "client_secret", "api_key", "authorization", "otp",
})

_NOISY_LOGGERS = {
    "uvicorn.access": logging.WARNING,
    "sqlalchemy.engine": logging.WARNING,
    "LiteLLM": logging.WARNING,
    "httpx": logging.WARNING,
    "urllib3": logging.WARNING,
}

_RECORD_FIELDS = frozenset(logging.LogRecord("", 0, "", 0, "", (), None).__dict__) | {
    "request_id", "message", "asctime",
}


def redact(text: str) -> str:
    for pattern in _SECRETS:
        text = pattern.sub(REDACTED, text)
    for pattern in _LABELLED_SECRETS:
        text = pattern.sub(lambda m: m.group(1) + REDACTED, text)
    return text


class _SecretFilter(logging.Filter):
    def filter(self, record: logging.LogRecord) -> bool:
        if record.args:
            # Render once so secrets passed as %s arguments are caught too.
            record.msg = record.getMessage()
            record.args = None
        record.msg = redact(str(record.msg))
        if record.exc_text:
            record.exc_text = redact(record.exc_text)
        for key, value in list(record.__dict__.items()):
            if key in _RECORD_FIELDS:
                continue
            if key.lower() in _SENSITIVE_EXTRAS:
                setattr(record, key, REDACTED)
            elif isinstance(value, str):
                setattr(record, key, redact(value))
        return True


class _RequestIdFilter(logging.Filter):
    def filter(self, record: logging.LogRecord) -> bool:
        record.request_id = request_id_var.get("") or "-"
        return True


class _JsonFormatter(logging.Formatter):
    """One JSON object per line; ``extra=`` fields become top-level keys."""

    def format(self, record: logging.LogRecord) -> str:
        payload: Dict[str, Any] = {
            "timestamp": datetime.fromtimestamp(record.created, tz=timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }
        if getattr(record, "request_id", "-") != "-":
            payload["request_id"] = record.request_id
        payload.update(
            (key, value) for key, value in record.__dict__.items()
            if key not in _RECORD_FIELDS and key not in payload
        )
        if record.exc_info:
            payload["exception"] = self.formatException(record.exc_info)
        return json.dumps(payload, default=str, ensure_ascii=False)


def setup_logging(log_level: Optional[str] = None, log_format: Optional[str] = None) -> None:
    """Install the stdout handler on the root logger.

    *log_format* is ``"json"`` (default) or ``"text"``.
    """
    level = (log_level or "INFO").upper()
    fmt = (log_format or "json").lower()

    handler = logging.StreamHandler(sys.stdout)
    handler.addFilter(_RequestIdFilter())
    handler.addFilter(_SecretFilter())
    if fmt == "json":
        handler.setFormatter(_JsonFormatter())
    else:
        handler.setFormatter(logging.Formatter(
            "%(asctime)s %(levelname)-7s [%(request_id)s] %(name)s: %(message)s",
            datefmt="%Y-%m-%d %H:%M:%S",
        ))

    root = logging.getLogger()
    root.handlers.clear()
    root.addHandler(handler)
    root.setLevel(level)
    for name, noisy_level in _NOISY_LOGGERS.items():
        logging.getLogger(name).setLevel(noisy_level)

    logging.getLogger(__name__).info("Logging configured", extra={"level": level, "format": fmt})
