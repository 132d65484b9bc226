"""Inbound messaging: Telegram and WhatsApp webhook payloads into communication_logs.

Every text message gets a sentiment score. With a configured LLM the score
comes from the model and a failed analysis leaves the sentiment columns
empty; without one a keyword heuristic scores the message instead.
"""

import hashlib
import hmac
import json
import logging
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Tuple

import requests
from sqlalchemy.orm import Session

from ..core.circuit_breaker import WHATSAPP, CircuitBreakerOpen, UpstreamFailure, get_breaker
from ..core.config import settings
from ..exceptions import (
    LLMResponseError,
    LLMUnavailableError,
    PlanLimitExceededError,
    ValidationError,
    WebhookValidationError,
)
from ..models import CommunicationLog, User, WhatsAppConfig
from ..repositories.communication_repository import CommunicationRepository
from .llm_service import LLMService, should_auto_respond

logger = logging.getLogger(__name__)

CHANNEL_TELEGRAM = "telegram"
CHANNEL_WHATSAPP = "whatsapp"

POSITIVE_KEYWORDS = [
    "gracias", "excelente", "genial", "perfecto", "bueno", "feliz", "encanta", "increíble",
    "thanks", "great", "excellent", "good", "happy", "love", "amazing", "awesome",
]
NEGATIVE_KEYWORDS = [
    "malo", "terrible", "problema", "molesto", "error", "queja", "pésimo", "nunca",
    "bad", "awful", "problem", "angry", "broken", "complaint", "worst", "hate",
]


# ---------------------------------------------------------------------------
# Signature checks
# ---------------------------------------------------------------------------

def verify_whatsapp_signature(body: bytes, signature: Optional[str], app_secret: str) -> None:
    """Check Meta's ``X-Hub-Signature-256`` header. No secret configured means no check."""
    if not app_secret:
        return
    if not signature or not signature.startswith("sha256="):
        raise WebhookValidationError("Missing X-Hub-Signature-256 header")
    expected = hmac.new(app_secret.encode(), body, hashlib.sha256).hexdigest()
    if not hmac.compare_digest(expected, signature[len("sha256="):]):
        raise WebhookValidationError()


def verify_telegram_secret(header: Optional[str], secret: str) -> None:
    if not secret:
        return
    if not header or not hmac.compare_digest(header, secret):
        raise WebhookValidationError("Invalid X-Telegram-Bot-Api-Secret-Token")


# ---------------------------------------------------------------------------
# Pure helpers
# ---------------------------------------------------------------------------

def heuristic_sentiment(text: str) -> Dict[str, Any]:
    lower = (text or "").lower()
    positive = sum(1 for kw in POSITIVE_KEYWORDS if kw in lower)
    negative = sum(1 for kw in NEGATIVE_KEYWORDS if kw in lower)
    total = positive + negative
    if total == 0:
        return {"score": 0.0, "label": "neutral", "confidence": 0.5}
    score = round((positive - negative) / total, 2)
    if score > 0:
        label = "positive"
    elif score < 0:
        label = "negative"
    else:
        label = "neutral"
    return {"score": score, "label": label, "confidence": round(min(0.5 + 0.1 * total, 0.9), 2)}


def whatsapp_content(message: dict) -> Tuple[Optional[str], Optional[str]]:
    """(text stored for the message, media id) by WhatsApp message type."""
    kind = message.get("type")
    body = message.get(kind) if isinstance(message.get(kind), dict) else {}

    if kind == "text":
        return body.get("body"), None
    if kind == "image":
        return f"[Image] {body.get('caption') or ''}".strip(), body.get("id")
    if kind == "audio":
        return "[Audio message]", body.get("id")
    if kind == "video":
        return f"[Video] {body.get('caption') or ''}".strip(), body.get("id")
    if kind == "document":
        return f"[Document] {body.get('filename') or ''}".strip(), body.get("id")
    if kind == "interactive":
        return f"[Interactive] {json.dumps(message.get('interactive'), sort_keys=True)}", None
    if kind == "button":
        return f"[Button] {body.get('text') or ''}".strip(), None
    if kind == "location":
        return f"[Location] {body.get('latitude')}, {body.get('longitude')}", None
    if kind == "contacts":
        contacts = message.get("contacts") or [{}]
        name = (contacts[0].get("name") or {}).get("formatted_name") or "Unknown"
        return f"[Contact] {name}", None
    if kind == "order":
        return f"[Order] {body.get('id') or 'Unknown'}", None
    if kind == "system":
        return f"[System] {body.get('body') or ''}".strip(), None
    if kind == "unsupported":
        return "[Unsupported message type]", None
    return None, None


def is_question(text: str) -> bool:
    return "?" in (text or "")


def render_auto_reply(template: str, contact_name: Optional[str], company_name: Optional[str],
                      now: Optional[datetime] = None) -> str:
    now = now or datetime.now(timezone.utc)
    return (
        template.replace("{name}", contact_name or "Cliente")
        .replace("{company}", company_name or "nosotros")
        .replace("{time}", now.strftime("%H:%M:%S"))
    )


def _from_timestamp(value: Any) -> datetime:
    try:
        return datetime.fromtimestamp(int(value), tz=timezone.utc)
    except (TypeError, ValueError, OverflowError, OSError):
        return datetime.now(timezone.utc)


# ---------------------------------------------------------------------------
# Service
# ---------------------------------------------------------------------------

class CommunicationService:
    def __init__(self, db: Session, llm: Optional[LLMService] = None):
        self.db = db
        self.repo = CommunicationRepository(db)
        self.llm = llm or LLMService(db)

    def analyze(self, text: str, user_id: Optional[str]) -> Optional[Dict[str, Any]]:
        """Sentiment for an inbound text, or None when the model failed."""
        if not self.llm.is_configured():
            return heuristic_sentiment(text)
        try:
            return self.llm.analyze_sentiment(text, user_id)
        except (LLMResponseError, LLMUnavailableError, PlanLimitExceededError, ValidationError) as e:
            logger.warning("Sentiment analysis failed, storing message without it: %s", e.message)
            return None

    def _store(self, sentiment: Optional[Dict[str, Any]], **fields: Any) -> CommunicationLog:
        log = CommunicationLog(**fields)
        if sentiment:
            log.sentiment_score = sentiment["score"]
            log.sentiment_label = sentiment["label"]
            log.sentiment_confidence = sentiment.get("confidence")
        return self.repo.add_log(log)

    # -- Telegram --------------------------------------------------------------

    def process_telegram(self, payload: Any) -> Dict[str, int]:
        """Accept one update or a list of updates."""
        if isinstance(payload, list):
            updates = payload
        elif isinstance(payload, dict) and "update_id" in payload:
            updates = [payload]
        else:
            raise ValidationError("Invalid webhook data")

        processed = skipped = 0
        for update in updates:
            if self._process_telegram_update(update):
                processed += 1
            else:
                skipped += 1
        self.db.commit()
        logger.info("Telegram webhook processed", extra={"processed": processed, "skipped": skipped})
        return {"processed": processed, "skipped": skipped}

    def _process_telegram_update(self, update: Any) -> bool:
        message = update.get("message") if isinstance(update, dict) else None
        if not isinstance(message, dict) or not message.get("text"):
            return False

        chat_id = str((message.get("chat") or {}).get("id", ""))
        telegram_user_id = str((message.get("from") or {}).get("id", ""))
        user = self.repo.user_by_telegram_id(telegram_user_id) if telegram_user_id else None
        if user is None:
            logger.info("No user linked to telegram id %s", telegram_user_id)

        text = message["text"]
        self._store(
            self.analyze(text, user.user_id if user else None),
            channel=CHANNEL_TELEGRAM,
            direction="inbound",
            external_id=str(message.get("message_id", "")) or None,
            sender_id=telegram_user_id,
            user_id=user.user_id if user else None,
            company_id=user.company_id if user else None,
            message=text,
            message_type="text",
            status="received",
            sent_at=_from_timestamp(message.get("date")),
            meta={"chat_id": chat_id, "telegram_user_id": telegram_user_id},
        )
        return True

    # -- WhatsApp verification ---------------------------------------------------

    def verify_whatsapp_subscription(self, mode: Optional[str], token: Optional[str]) -> bool:
        """True when Meta's handshake carries a known verify token. Raises on missing parameters."""
        if not mode or not token:
            raise ValidationError("hub.mode and hub.verify_token are required")
        if mode != "subscribe":
            return False
        if self.repo.active_config_by_verify_token(token) is not None:
            return True
        configured = settings.whatsapp_verify_token
        return bool(configured) and hmac.compare_digest(token, configured)

    # -- WhatsApp events -----------------------------------------------------------

    def process_whatsapp(self, payload: Any) -> Dict[str, int]:
        if not isinstance(payload, dict):
            raise ValidationError("Invalid webhook data")

        counts = {"messages": 0, "templates": 0, "accounts": 0, "auto_replies": 0}
        entries = payload.get("entry") or []

        if payload.get("object") == "whatsapp_business_account":
            for entry in entries:
                for change in entry.get("changes") or []:
                    field = change.get("field")
                    value = change.get("value") or {}
                    if field == "messages":
                        self._process_business_messages(value, counts)
                    elif field == "message_template_status_update":
                        counts["templates"] += self._process_template_update(value)
                    elif field == "account_update":
                        counts["accounts"] += self._process_account_update(value)
        elif payload.get("object"):
            logger.info("Ignoring webhook for object %s", payload.get("object"))
        else:
            for entry in entries:
                for messaging in entry.get("messaging") or []:
                    if self._process_legacy_message(messaging):
                        counts["messages"] += 1

        self.db.commit()
        logger.info("WhatsApp webhook processed", extra=counts)
        return counts

    def _process_business_messages(self, value: dict, counts: Dict[str, int]) -> None:
        messages = value.get("messages") or []
        if not messages:
            return
        phone_number_id = (value.get("metadata") or {}).get("phone_number_id")
        config = self.repo.active_config_by_phone_number_id(phone_number_id) if phone_number_id else None
        if config is None:
            logger.info("No active WhatsApp config for phone number id %s", phone_number_id)
            return

        contacts = value.get("contacts") or []
        for message in messages:
            sender = message.get("from")
            user = self.repo.user_by_whatsapp_number(sender) if sender else None
            kind = message.get("type", "text")
            content, media = whatsapp_content(message)
            sentiment = self.analyze(content, user.user_id if user else None) if kind == "text" and content else None

            self._store(
                sentiment,
                channel=CHANNEL_WHATSAPP,
                direction="inbound",
                external_id=message.get("id"),
                sender_id=sender,
                recipient_id=config.display_phone_number,
                user_id=user.user_id if user else None,
                company_id=(user.company_id if user else None) or config.company_id,
                whatsapp_config_id=config.id,
                message=content,
                message_type=kind,
                media_url=media,
                status="received",
                sent_at=_from_timestamp(message.get("timestamp")),
                meta=message,
            )
            self.repo.increment_counter(config.id, "inbound")
            counts["messages"] += 1

            if config.auto_reply_enabled and kind == "text" and self._send_auto_reply(config, message, contacts):
                counts["auto_replies"] += 1

    def _send_auto_reply(self, config: WhatsAppConfig, message: dict, contacts: List[dict]) -> bool:
        if not config.auto_reply_message or not config.access_token:
            return False
        contact_name = ((contacts[0] if contacts else {}).get("profile") or {}).get("name")
        reply = render_auto_reply(config.auto_reply_message, contact_name, config.company_name)
        try:
            with get_breaker(WHATSAPP).guard((requests.RequestException,)):
                response = requests.post(
                    f"{settings.whatsapp_graph_url}/{config.phone_number_id}/messages",
                    headers={"Authorization": f"Bearer {config.access_token}"},
                    json={
                        "messaging_product": "whatsapp",
                        "to": message.get("from"),
                        "type": "text",
                        "text": {"body": reply},
                    },
                    timeout=10,
                )
                if response.status_code >= 500:
                    raise UpstreamFailure(response.status_code)
        except (requests.RequestException, CircuitBreakerOpen, UpstreamFailure) as e:
            logger.warning("Auto-reply not sent: %s", e)
            return False
        if not response.ok:
            logger.warning("Auto-reply rejected by Graph API (%s): %s", response.status_code, response.text[:200])
            return False

        try:
            message_id = (response.json().get("messages") or [{}])[0].get("id")
        except ValueError:
            message_id = None
        self._store(
            None,
            channel=CHANNEL_WHATSAPP,
            direction="outbound",
            external_id=message_id,
            sender_id=config.display_phone_number,
            recipient_id=message.get("from"),
            company_id=config.company_id,
            whatsapp_config_id=config.id,
            message=reply,
            message_type="text",
            status="sent",
            sent_at=datetime.now(timezone.utc),
            meta={"auto_reply": True},
        )
        self.repo.increment_counter(config.id, "outbound")
        return True

    def _process_template_update(self, value: dict) -> int:
        template = self.repo.template_by_template_id(str(value.get("message_template_id", "")))
        status = value.get("status") or value.get("event")
        if template is None or not status:
            return 0
        template.status = status
        return 1

    def _process_account_update(self, value: dict) -> int:
        config = self.repo.config_by_phone_number_id(value.get("phone_number_id") or "")
        if config is None:
            return 0
        if value.get("display_phone_number"):
            config.display_phone_number = value["display_phone_number"]
        if value.get("quality_rating"):
            config.quality_rating = value["quality_rating"]
        return 1

    def _process_legacy_message(self, messaging: dict) -> bool:
        message = messaging.get("message") or {}
        sender_id = (messaging.get("sender") or {}).get("id")
        text = (message.get("text") or {}).get("body") if isinstance(message.get("text"), dict) else None
        if not text or not sender_id:
            return False

        user: Optional[User] = self.repo.user_by_whatsapp_number(sender_id)
        self._store(
            self.analyze(text, user.user_id if user else None),
            channel=CHANNEL_WHATSAPP,
            direction="inbound",
            sender_id=sender_id,
            user_id=user.user_id if user else None,
            company_id=user.company_id if user else None,
            message=text,
            message_type="text",
            status="received",
            sent_at=_from_timestamp(message.get("timestamp")),
        )
        return True

    # -- Reads -------------------------------------------------------------------

    def list_messages(
        self,
        company_id: Optional[str],
        channel: Optional[str] = None,
        sentiment: Optional[str] = None,
        since: Optional[datetime] = None,
        limit: int = 100,
        offset: int = 0,
        direction: Optional[str] = None,
    ) -> List[CommunicationLog]:
        if channel and channel not in (CHANNEL_TELEGRAM, CHANNEL_WHATSAPP):
            raise ValidationError("channel must be telegram or whatsapp", field="channel")
        return self.repo.list_logs(company_id, channel, sentiment, since, limit, offset, direction)

    def sentiment_summary(self, company_id: Optional[str]) -> Dict[str, Any]:
        by_label = {"positive": 0, "negative": 0, "neutral": 0, "unanalyzed": 0}
        by_channel: Dict[str, Dict[str, int]] = {}
        total = 0
        weighted = 0.0
        scored = 0
        for channel, label, count, average in self.repo.sentiment_breakdown(company_id):
            key = label or "unanalyzed"
            by_label[key] = by_label.get(key, 0) + count
            by_channel.setdefault(channel, {}).setdefault(key, 0)
            by_channel[channel][key] += count
            total += count
            if label and average is not None:
                weighted += float(average) * count
                scored += count
        return {
            "total": total,
            "by_label": by_label,
            "by_channel": by_channel,
            "average_score": round(weighted / scored, 3) if scored else None,
        }

    # -- Message assistant -------------------------------------------------------

    def suggest_response(
        self,
        text: str,
        auto_responses: Optional[Dict[str, str]] = None,
        disable_auto_response: bool = False,
        company_name: Optional[str] = None,
        user_id: Optional[str] = None,
    ) -> Dict[str, Any]:
        """Triage an inbound message and propose an answer.

        A configured answer for the message's category wins. Otherwise
        questions get a generated reply and everything else gets none.
        """
        classification = self.llm.classify_message(text, user_id)
        sentiment = self.analyze(text, user_id)
        label = sentiment["label"] if sentiment else None

        response = (auto_responses or {}).get(classification["category"])
        source = "rule" if response else None
        if not response and is_question(text):
            reply = self.llm.generate_smart_reply(text, company_name=company_name, user_id=user_id)
            if reply["source"] == "ai":
                response, source = reply["text"], "ai"

        return {
            "response": response,
            "response_source": source,
            "sentiment": sentiment,
            "classification": classification,
            "should_auto_respond": should_auto_respond(classification, label, disable_auto_response),
        }

    def conversation_report(
        self,
        company_id: Optional[str],
        channel: Optional[str] = None,
        since: Optional[datetime] = None,
        limit: int = 200,
        user_id: Optional[str] = None,
    ) -> Dict[str, Any]:
        """LLM report over the company's latest inbound messages."""
        logs = self.list_messages(company_id, channel, since=since, limit=limit, direction="inbound")
        report = self.llm.generate_conversation_report([log.message for log in logs if log.message], user_id)
        report["channel"] = channel
        return report
