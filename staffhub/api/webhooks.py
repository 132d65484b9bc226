"""Telegram and WhatsApp webhook endpoints.

Providers get a ``{success, ...}`` envelope rather than the generic error
body: 400 for malformed payloads, 401 for a bad signature, 500 with the
error text for anything unexpected.
"""

import json
import logging
from typing import Optional

from fastapi import APIRouter, Depends, Query, Request
from fastapi.responses import JSONResponse, PlainTextResponse
from sqlalchemy.orm import Session
from starlette.concurrency import run_in_threadpool

from ..core.config import settings
from ..database import get_db
from ..exceptions import StaffHubException, ValidationError, WebhookValidationError
from ..schemas.communication import WebhookResponse
from ..services.communication_service import (
    CommunicationService,
    verify_telegram_secret,
    verify_whatsapp_signature,
)

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/webhooks", tags=["webhooks"])


def _failure(status_code: int, error: str, details: Optional[str] = None) -> JSONResponse:
    body = {"success": False, "error": error}
    if details:
        body["details"] = details
    return JSONResponse(status_code=status_code, content=body)


def _parse(body: bytes):
    try:
        return json.loads(body or b"null")
    except ValueError:
        raise ValidationError("Invalid JSON payload")


# Sentiment calls, auto-replies and the session are blocking, so the
# body is read on the loop and handled in the threadpool.
def _handle_telegram(db: Session, body: bytes, secret_token: Optional[str]) -> dict:
    verify_telegram_secret(secret_token, settings.telegram_secret_token)
    return CommunicationService(db).process_telegram(_parse(body))


def _handle_whatsapp(db: Session, body: bytes, signature: Optional[str]) -> dict:
    verify_whatsapp_signature(body, signature, settings.whatsapp_app_secret)
    return CommunicationService(db).process_whatsapp(_parse(body))


@router.post("/telegram", response_model=WebhookResponse)
async def telegram_webhook(request: Request, db: Session = Depends(get_db)):
    """Store incoming Telegram messages with their sentiment."""
    body = await request.body()
    try:
        counts = await run_in_threadpool(
            _handle_telegram, db, body, request.headers.get("X-Telegram-Bot-Api-Secret-Token")
        )
    except WebhookValidationError as e:
        logger.warning("Telegram webhook rejected: %s", e.message)
        return _failure(401, e.message)
    except ValidationError as e:
        return _failure(400, e.message)
    except StaffHubException as e:
        logger.error("Telegram webhook failed: %s", e.message)
        return _failure(e.status_code, "Webhook processing failed", e.message)
    except Exception as e:
        logger.exception("Telegram webhook failed")
        return _failure(500, "Webhook processing failed", str(e))

    return WebhookResponse(success=True, message="Notification processed", processed=counts)


@router.get("/whatsapp")
def whatsapp_verify(
    mode: Optional[str] = Query(None, alias="hub.mode"),
    token: Optional[str] = Query(None, alias="hub.verify_token"),
    challenge: Optional[str] = Query(None, alias="hub.challenge"),
    db: Session = Depends(get_db),
):
    """Meta subscription handshake: echo the challenge when the verify token matches."""
    try:
        verified = CommunicationService(db).verify_whatsapp_subscription(mode, token)
    except ValidationError as e:
        return _failure(400, e.message)
    if not verified:
        logger.warning("WhatsApp verification failed", extra={"mode": mode})
        return _failure(403, "Verification failed")
    logger.info("WhatsApp webhook verified")
    return PlainTextResponse(challenge or "")


@router.post("/whatsapp", response_model=WebhookResponse)
async def whatsapp_webhook(request: Request, db: Session = Depends(get_db)):
    """Store WhatsApp messages and apply template and account status updates."""
    body = await request.body()
    try:
        counts = await run_in_threadpool(
            _handle_whatsapp, db, body, request.headers.get("X-Hub-Signature-256")
        )
    except WebhookValidationError as e:
        logger.warning("WhatsApp webhook rejected: %s", e.message)
        return _failure(401, e.message)
    except ValidationError as e:
        return _failure(400, e.message)
    except StaffHubException as e:
        logger.error("WhatsApp webhook failed: %s", e.message)
        return _failure(e.status_code, "Webhook processing failed", e.message)
    except Exception as e:
        logger.exception("WhatsApp webhook failed")
        return _failure(500, "Webhook processing failed", str(e))

    return WebhookResponse(success=True, message="Webhook processed", processed=counts)
