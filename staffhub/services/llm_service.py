"""Groq chat completions for chat, summaries, sentiment and the message assistant.

All calls go through LiteLLM as ``groq/<model>``. Prompts are trimmed to a
fixed token budget before sending, using the rough estimate of four
characters per token. Every call made on behalf of a user is charged to
that user's ``token_usage`` row, and a user whose plan allowance is spent
gets ``PlanLimitExceededError`` before the call is made.
"""

import json
import logging
import math
import re
import threading
from typing import Any, Dict, List, Optional

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from ..core.circuit_breaker import GROQ, CircuitBreakerOpen, get_breaker
from ..core.config import settings
from ..exceptions import (
    LLMResponseError,
    LLMUnavailableError,
    PlanLimitExceededError,
    ValidationError,
)
from ..models.billing import TokenUsage
from .ttl_cache import TTLCache

logger = logging.getLogger(__name__)

MAX_TOTAL_INPUT_TOKENS = 6000
MAX_CONTEXT_TOKENS = 2000
MAX_HISTORY_TOKENS = 1500
MAX_SYSTEM_TOKENS = 500
MAX_USER_TOKENS = 500

SENTIMENT_LABELS = ("positive", "negative", "neutral")

AVAILABLE_MODELS = [
    {"id": "llama-3.3-70b-versatile", "name": "Llama 3.3 70B Versatile",
     "description": "Meta 70B model, versatile across tasks"},
    {"id": "meta-llama/llama-4-maverick-17b-128e-instruct", "name": "Llama 4 Maverick 17B",
     "description": "Latest-generation Meta model, 17B parameters"},
    {"id": "meta-llama/llama-4-scout-17b-16e-instruct", "name": "Llama 4 Scout 17B",
     "description": "Optimised Meta model, 17B parameters"},
    {"id": "llama-3.1-8b-instant", "name": "Llama 3.1 8B Instant",
     "description": "Fast Meta model, 8B parameters"},
    {"id": "allam-2-7b", "name": "Allam 2 7B",
     "description": "Arabic-specialised model, 7B parameters"},
    {"id": "qwen/qwen3-32b", "name": "Qwen 3 32B",
     "description": "Alibaba Cloud model, 32B parameters"},
    {"id": "moonshotai/kimi-k2-instruct", "name": "Kimi K2 Instruct",
     "description": "Moonshot AI instruction-tuned model"},
    {"id": "moonshotai/kimi-k2-instruct-0905", "name": "Kimi K2 Instruct v0905",
     "description": "Updated Kimi K2 release"},
    {"id": "groq/compound", "name": "Groq Compound",
     "description": "Groq compound system"},
    {"id": "groq/compound-mini", "name": "Groq Compound Mini",
     "description": "Compact Groq compound system"},
    {"id": "openai/gpt-oss-120b", "name": "GPT-OSS 120B",
     "description": "OpenAI open-weight model, 120B parameters"},
    {"id": "openai/gpt-oss-20b", "name": "GPT-OSS 20B",
     "description": "OpenAI open-weight model, 20B parameters"},
]

CHAT_SYSTEM_PROMPT = (
    "You are an AI assistant that answers questions about company documents.\n\n"
    "Instructions:\n"
    "- Answer clearly and concisely, in the language of the question\n"
    "- Use the provided context when it is relevant\n"
    "- Say so plainly when the context does not contain the answer\n"
    "- Keep a professional but friendly tone"
)

SUMMARY_SYSTEM_PROMPT = (
    "You write concise, useful summaries. Produce a clear, structured summary "
    "of the documents provided."
)

SENTIMENT_SYSTEM_PROMPT = """You analyse the sentiment of workplace messages, including Chilean Spanish expressions and slang.

Return ONLY a valid JSON object with this structure:
{
  "score": number between -1.0 (very negative) and 1.0 (very positive),
  "label": "positive" | "negative" | "neutral",
  "confidence": number between 0.0 and 1.0
}

Score guide:
- 1.0: very positive, enthusiasm, full satisfaction
- 0.5 to 0.9: positive, approval
- 0.0: neutral, informative
- -0.5 to -0.9: negative, dissatisfaction, criticism
- -1.0: very negative, strong complaint

Confidence guide:
- 1.0: obvious
- 0.7 to 0.9: reasonably clear
- 0.4 to 0.6: somewhat ambiguous
- 0.0 to 0.3: very ambiguous or very short text"""


# ---------------------------------------------------------------------------
# Runtime model settings (PUT /api/ai/config changes them in-process)
# ---------------------------------------------------------------------------

_runtime_lock = threading.Lock()
_runtime: Dict[str, Any] = {}


def _runtime_config() -> Dict[str, Any]:
    with _runtime_lock:
        return {
            "model": _runtime.get("model", settings.groq_model),
            "temperature": _runtime.get("temperature", settings.groq_temperature),
            "max_tokens": _runtime.get("max_tokens", settings.groq_max_tokens),
        }


def reset_runtime_config() -> None:
    with _runtime_lock:
        _runtime.clear()


# ---------------------------------------------------------------------------
# Token budgeting helpers
# ---------------------------------------------------------------------------

def estimate_tokens(text: str) -> int:
    """Roughly four characters per token."""
    return math.ceil(len(text or "") / 4)


def truncate_text(text: str, max_tokens: float) -> str:
    """Cut *text* to about *max_tokens*, preferring a word boundary near the end."""
    if estimate_tokens(text) <= max_tokens:
        return text
    max_chars = max(int(max_tokens * 4), 0)
    truncated = text[:max_chars]
    last_space = truncated.rfind(" ")
    if last_space > max_chars * 0.8:
        return truncated[:last_space] + "..."
    return truncated + "..."


def _doc_content(doc: Any) -> str:
    if isinstance(doc, dict):
        return str(doc.get("content", ""))
    return str(doc)


def optimize_context(docs: Optional[List], max_tokens: float = MAX_CONTEXT_TOKENS) -> str:
    """Render documents as ``[Document i]`` blocks until the budget runs out.

    A first document that alone overflows the budget is truncated rather
    than dropped, so there is always some context when documents exist.
    """
    if not docs:
        return ""

    text = "\n\nDOCUMENT CONTEXT:\n"
    used = estimate_tokens(text)
    for i, doc in enumerate(docs, 1):
        content = _doc_content(doc)
        block = f"\n[Document {i}]: {content}\n"
        block_tokens = estimate_tokens(block)
        if used + block_tokens > max_tokens:
            if i == 1:
                remaining = max_tokens - used - 50
                text += f"\n[Document {i}]: {truncate_text(content, remaining)}\n"
            break
        text += block
        used += block_tokens
    return text


def optimize_chat_history(history: Optional[List[dict]], max_tokens: float = MAX_HISTORY_TOKENS) -> List[dict]:
    """Keep the most recent messages whose serialized size fits the budget."""
    if not history:
        return []
    kept: List[dict] = []
    used = 0
    for message in reversed(history):
        cost = estimate_tokens(json.dumps(message, ensure_ascii=False, default=str))
        if used + cost > max_tokens:
            break
        kept.insert(0, message)
        used += cost
    return kept


def _messages_tokens(messages: List[dict]) -> int:
    return estimate_tokens(json.dumps(messages, ensure_ascii=False))


def _extract_json_object(raw: str, operation: str = "sentiment") -> dict:
    """Parse a JSON object, tolerating prose around it."""
    try:
        data = json.loads(raw.strip())
    except json.JSONDecodeError:
        match = re.search(r"\{[\s\S]*\}", raw)
        if not match:
            raise LLMResponseError(f"{operation} response did not contain JSON", operation=operation)
        try:
            data = json.loads(match.group(0))
        except json.JSONDecodeError as e:
            raise LLMResponseError(f"{operation} response is not valid JSON: {e}", operation=operation) from e
    if not isinstance(data, dict):
        raise LLMResponseError(f"{operation} response is not a JSON object", operation=operation)
    return data


def _is_number(value: Any) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool)


def validate_sentiment(data: dict) -> dict:
    """Check score, label and confidence ranges. Zero is a valid score and confidence."""
    score = data.get("score")
    if not _is_number(score) or not -1 <= score <= 1:
        raise LLMResponseError("Invalid score in sentiment response", operation="sentiment")
    label = data.get("label")
    if label not in SENTIMENT_LABELS:
        raise LLMResponseError("Invalid label in sentiment response", operation="sentiment")
    confidence = data.get("confidence")
    if not _is_number(confidence) or not 0 <= confidence <= 1:
        raise LLMResponseError("Invalid confidence in sentiment response", operation="sentiment")
    return {"score": float(score), "label": label, "confidence": float(confidence)}


# ---------------------------------------------------------------------------
# Message assistant: categories, prompts, fallbacks
# ---------------------------------------------------------------------------

MESSAGE_CATEGORIES = (
    "general_inquiry",
    "technical_support",
    "sales",
    "complaint",
    "praise",
    "pricing",
    "information_request",
    "other",
)
PRIORITIES = ("low", "medium", "high")
SMART_REPLY_CACHE_TTL = 30 * 60

FALLBACK_CLASSIFICATION: Dict[str, Any] = {
    "category": "other",
    "subcategory": None,
    "priority": "medium",
    "department": "general",
    "estimated_response_time": 60,
}

SMART_REPLY_FALLBACK = "Lo siento, no pude procesar tu mensaje. ¿Podrías reformularlo?"

SMART_REPLY_PROMPT = """You are a professional, friendly customer service assistant. Answer the message below helpfully, concisely and professionally, in the language of the message.

Customer message: "{message}"

{company}{history}
Instructions:
- Be kind and professional
- Keep the answer short but complete
- Answer questions directly and offer a solution to problems
- Include a call to action when it fits

Answer:"""

TEMPLATE_PROMPTS = {
    "welcome": (
        "Write a personalised WhatsApp welcome message.\n\nContext: {context}\n\n"
        "The message must be friendly and professional, at most 150 characters, use the "
        "name when available and invite questions.\n\nMessage:"
    ),
    "farewell": (
        "Write a WhatsApp farewell message.\n\nContext: {context}\n\n"
        "The message must thank the customer for the conversation, invite them to get in "
        "touch again and stay professional but friendly.\n\nMessage:"
    ),
    "follow_up": (
        "Write a WhatsApp follow-up message.\n\nContext: {context}\n\n"
        "The message must recall the earlier conversation, offer further help and keep "
        "the customer engaged.\n\nMessage:"
    ),
}

TEMPLATE_FALLBACKS = {
    "welcome": "¡Hola! Gracias por contactarnos. ¿En qué podemos ayudarte?",
    "farewell": "Gracias por contactarnos. ¡Hasta pronto!",
    "follow_up": "Seguimiento: ¿Resolvimos tu consulta?",
}


def fallback_report() -> Dict[str, Any]:
    return {
        "summary": "No se pudo generar el análisis",
        "sentiment_distribution": {"positive": 0, "negative": 0, "neutral": 0},
        "top_topics": [],
        "customer_satisfaction_score": 50,
        "response_recommendations": [],
        "urgency_level": "medium",
        "key_insights": [],
    }


def reply_confidence(reply: str) -> float:
    """Word-count heuristic: short answers are less trustworthy."""
    words = len(reply.split())
    if words < 5:
        return 0.3
    if words > 50:
        return 0.9
    return round(min(0.6 + (words - 5) * 0.02, 0.9), 2)


def categorize_reply(reply: str) -> str:
    lower = reply.lower()
    if "?" in lower or "puedo ayudarte" in lower or "can i help" in lower:
        return "question"
    if "gracias" in lower or "agradec" in lower or "thank" in lower:
        return "gratitude"
    if "disculpa" in lower or "perdón" in lower or "sorry" in lower:
        return "apology"
    if "información" in lower or "detalles" in lower or "information" in lower:
        return "information"
    return "general"


def _string_list(value: Any) -> List[str]:
    if not isinstance(value, list):
        return []
    return [str(v) for v in value if v is not None]


def normalize_classification(data: Dict[str, Any]) -> Dict[str, Any]:
    """Force a model classification onto the known categories and priorities."""
    category = data.get("category")
    priority = data.get("priority")
    try:
        minutes = int(data.get("estimated_response_time"))
    except (TypeError, ValueError):
        minutes = FALLBACK_CLASSIFICATION["estimated_response_time"]
    subcategory = data.get("subcategory")
    return {
        "category": category if category in MESSAGE_CATEGORIES else "other",
        "subcategory": str(subcategory) if subcategory else None,
        "priority": priority if priority in PRIORITIES else "medium",
        "department": str(data.get("department") or "general"),
        "estimated_response_time": max(minutes, 0),
    }


def normalize_report(data: Dict[str, Any]) -> Dict[str, Any]:
    report = fallback_report()
    if isinstance(data.get("summary"), str):
        report["summary"] = data["summary"]
    distribution = data.get("sentiment_distribution")
    if isinstance(distribution, dict):
        for label in SENTIMENT_LABELS:
            count = distribution.get(label)
            report["sentiment_distribution"][label] = int(count) if _is_number(count) else 0
    score = data.get("customer_satisfaction_score")
    if _is_number(score):
        report["customer_satisfaction_score"] = max(0, min(100, int(score)))
    if data.get("urgency_level") in PRIORITIES:
        report["urgency_level"] = data["urgency_level"]
    for key in ("top_topics", "response_recommendations", "key_insights"):
        report[key] = _string_list(data.get(key))
    return report


def should_auto_respond(
    classification: Dict[str, Any], sentiment_label: Optional[str], disabled: bool = False
) -> bool:
    """Complaints, high-priority and negative messages are left to a person."""
    if disabled:
        return False
    if classification.get("category") == "complaint":
        return False
    if classification.get("priority") == "high":
        return False
    return sentiment_label != "negative"


# ---------------------------------------------------------------------------
# Service
# ---------------------------------------------------------------------------

class LLMService:
    """Groq-backed completions. *db* is only needed for token accounting."""

    def __init__(self, db: Optional[Session] = None):
        self.db = db

    @staticmethod
    def is_configured() -> bool:
        return settings.groq_configured()

    @staticmethod
    def get_config() -> dict:
        config = _runtime_config()
        return {"api_key_configured": settings.groq_configured(), **config}

    @staticmethod
    def update_config(
        model: Optional[str] = None,
        temperature: Optional[float] = None,
        max_tokens: Optional[int] = None,
    ) -> dict:
        if model is not None and model not in {m["id"] for m in AVAILABLE_MODELS}:
            raise ValidationError(f"Unknown model: {model}", field="model")
        if temperature is not None and not 0 <= temperature <= 2:
            raise ValidationError("Temperature must be between 0 and 2", field="temperature")
        if max_tokens is not None and max_tokens <= 0:
            raise ValidationError("max_tokens must be positive", field="max_tokens")

        with _runtime_lock:
            if model is not None:
                _runtime["model"] = model
            if temperature is not None:
                _runtime["temperature"] = temperature
            if max_tokens is not None:
                _runtime["max_tokens"] = max_tokens
        logger.info("LLM configuration updated", extra=_runtime_config())
        return LLMService.get_config()

    @staticmethod
    def available_models() -> List[dict]:
        return [dict(m) for m in AVAILABLE_MODELS]

    # -- Raw completion -------------------------------------------------------

    def _complete(
        self,
        messages: List[dict],
        operation: str,
        model: Optional[str] = None,
        temperature: Optional[float] = None,
        max_tokens: Optional[int] = None,
    ) -> str:
        if not self.is_configured():
            raise LLMUnavailableError()

        config = _runtime_config()
        try:
            import litellm

            with get_breaker(GROQ).guard():
                response = litellm.completion(
                    model=f"groq/{model or config['model']}",
                    api_key=settings.groq_api_key,
                    messages=messages,
                    temperature=config["temperature"] if temperature is None else temperature,
                    max_tokens=max_tokens or config["max_tokens"],
                    top_p=1,
                    timeout=settings.groq_timeout,
                )
            content = response.choices[0].message.content
        except CircuitBreakerOpen as e:
            raise LLMUnavailableError(
                f"AI service temporarily unavailable. Retry after {e.retry_after:.0f}s."
            ) from e
        except Exception as e:
            logger.warning("Groq %s call failed: %s", operation, e)
            if "context_length_exceeded" in str(e):
                raise LLMResponseError(
                    "The conversation is too long for the model. Start a new conversation "
                    "or shorten the message.",
                    operation=operation,
                ) from e
            raise LLMResponseError(f"Groq API error: {e}", operation=operation) from e

        return content or ""

    def generate_completion(
        self,
        messages: List[dict],
        model: Optional[str] = None,
        temperature: Optional[float] = None,
        max_tokens: Optional[int] = None,
    ) -> str:
        if not isinstance(messages, list) or not messages:
            raise ValidationError("messages must be a non-empty list", field="messages")
        return self._complete(messages, "completion", model, temperature, max_tokens)

    def is_available(self) -> bool:
        """Send a tiny completion and report whether the provider answered."""
        if not self.is_configured():
            return False
        try:
            return bool(self._complete([{"role": "user", "content": "test"}], "availability_check", max_tokens=5))
        except (LLMResponseError, LLMUnavailableError):
            return False

    # -- Token accounting ------------------------------------------------------

    def check_token_allowance(self, user_id: Optional[str]) -> None:
        """Raise PlanLimitExceededError when the user's plan allowance is spent."""
        if not user_id or self.db is None:
            return
        usage = self.db.query(TokenUsage).filter(TokenUsage.user_id == user_id).first()
        if usage and usage.token_limit and usage.tokens_used >= usage.token_limit:
            raise PlanLimitExceededError("tokens", usage.tokens_used, usage.token_limit)

    def track_token_usage(self, user_id: Optional[str], tokens: int, operation: str) -> None:
        """Add *tokens* to the user's running total. Failures are logged, not raised."""
        if not user_id or self.db is None:
            return
        try:
            usage = self.db.query(TokenUsage).filter(TokenUsage.user_id == user_id).first()
            if usage is None:
                usage = TokenUsage(user_id=user_id, tokens_used=0, token_limit=0)
                self.db.add(usage)
            usage.tokens_used = (usage.tokens_used or 0) + tokens
            usage.last_operation = operation
            self.db.commit()
        except SQLAlchemyError:
            self.db.rollback()
            logger.exception("Failed to record token usage", extra={"user_id": user_id, "operation": operation})

    def get_usage(self, user_id: str) -> dict:
        usage = None
        if self.db is not None:
            usage = self.db.query(TokenUsage).filter(TokenUsage.user_id == user_id).first()
        used = usage.tokens_used if usage else 0
        limit = usage.token_limit if usage else 0
        return {
            "user_id": user_id,
            "tokens_used": used,
            "token_limit": limit,
            "remaining": max(limit - used, 0) if limit else None,
            "last_operation": usage.last_operation if usage else None,
        }

    # -- High-level operations -------------------------------------------------

    def generate_chat_response(
        self,
        message: str,
        context: Optional[List] = None,
        history: Optional[List[dict]] = None,
        user_id: Optional[str] = None,
    ) -> dict:
        """Answer *message* using document *context* and prior *history*."""
        if not self.is_configured():
            raise LLMUnavailableError()
        self.check_token_allowance(user_id)

        context = context or []
        context_text = optimize_context(context, MAX_CONTEXT_TOKENS)
        trimmed_history = optimize_chat_history(history, MAX_HISTORY_TOKENS)

        messages = [{"role": "system", "content": truncate_text(CHAT_SYSTEM_PROMPT + context_text, MAX_SYSTEM_TOKENS)}]
        for turn in trimmed_history:
            messages.append({"role": turn.get("role", "user"), "content": turn.get("content", "")})
        messages.append({"role": "user", "content": truncate_text(message, MAX_USER_TOKENS)})

        input_tokens = _messages_tokens(messages)
        if input_tokens > MAX_TOTAL_INPUT_TOKENS:
            logger.warning("Chat prompt over budget (%d tokens), reducing context", input_tokens)
            reduced = optimize_context(context, MAX_CONTEXT_TOKENS * 0.5)
            messages[0]["content"] = truncate_text(CHAT_SYSTEM_PROMPT + reduced, MAX_SYSTEM_TOKENS * 0.7)

        answer = self._complete(messages, "chat") or "No response could be generated."

        total = _messages_tokens(messages) + estimate_tokens(answer)
        self.track_token_usage(user_id, total, "groq_chat")
        logger.info("Chat response generated", extra={"tokens": total, "context_docs": len(context)})

        return {
            "response": answer,
            "tokens_used": total,
            "context_used": len(context),
            "history_used": len(trimmed_history),
        }

    def summarize_documents(self, documents: List, user_id: Optional[str] = None) -> dict:
        if not self.is_configured():
            raise LLMUnavailableError()
        if not documents:
            return {"summary": "There are no documents to summarize", "tokens_used": 0}
        self.check_token_allowance(user_id)

        content = "DOCUMENTS TO SUMMARIZE:\n\n"
        for i, doc in enumerate(documents, 1):
            content += f"Document {i}:\n{_doc_content(doc)}\n\n"

        messages = [
            {"role": "system", "content": SUMMARY_SYSTEM_PROMPT},
            {"role": "user", "content": content},
        ]
        max_tokens = min(_runtime_config()["max_tokens"], 512)
        summary = self._complete(messages, "summary", max_tokens=max_tokens) or "The summary could not be generated"

        total = _messages_tokens(messages) + estimate_tokens(summary)
        self.track_token_usage(user_id, total, "groq_summary")
        return {"summary": summary, "tokens_used": total}

    def analyze_sentiment(self, text: str, user_id: Optional[str] = None) -> dict:
        """Score *text* as ``{score, label, confidence, tokens_used}``."""
        if not isinstance(text, str) or not text.strip():
            raise ValidationError("Invalid text for sentiment analysis", field="text")
        if not self.is_configured():
            raise LLMUnavailableError()
        self.check_token_allowance(user_id)

        messages = [
            {"role": "system", "content": SENTIMENT_SYSTEM_PROMPT},
            {"role": "user", "content": f'Analyse the sentiment of the following text:\n\n"{text}"'},
        ]
        max_tokens = min(_runtime_config()["max_tokens"], 200)
        raw = self._complete(messages, "sentiment", temperature=0.3, max_tokens=max_tokens) or "{}"

        result = validate_sentiment(_extract_json_object(raw))
        total = _messages_tokens(messages) + estimate_tokens(raw)
        self.track_token_usage(user_id, total, "groq_sentiment")
        return {**result, "tokens_used": total}

    # -- Message assistant -----------------------------------------------------
    #
    # These never fail on a model problem: a missing key, an open circuit or
    # an unusable answer gives the fixed fallback tagged ``source: "fallback"``.

    def _assistant_json(
        self,
        prompt: str,
        operation: str,
        user_id: Optional[str],
        temperature: float,
        max_tokens: int,
    ) -> Optional[Dict[str, Any]]:
        if not self.is_configured():
            return None
        self.check_token_allowance(user_id)
        messages = [{"role": "user", "content": prompt}]
        try:
            raw = self._complete(messages, operation, temperature=temperature, max_tokens=max_tokens)
            data = _extract_json_object(raw, operation)
        except (LLMResponseError, LLMUnavailableError) as e:
            logger.warning("%s: using fallback: %s", operation, e.message)
            return None
        self.track_token_usage(user_id, _messages_tokens(messages) + estimate_tokens(raw), f"groq_{operation}")
        return data

    def classify_message(self, text: str, user_id: Optional[str] = None) -> Dict[str, Any]:
        """Category, priority, department and expected response time for an inbound message."""
        if not isinstance(text, str) or not text.strip():
            raise ValidationError("Message text is required", field="message")
        prompt = (
            "Classify the following customer message into one category.\n\n"
            f'Message: "{truncate_text(text, MAX_USER_TOKENS)}"\n\n'
            f"Categories: {', '.join(MESSAGE_CATEGORIES)}\n\n"
            "Reply with JSON only:\n"
            '{"category": "...", "subcategory": "... or null", "priority": "low|medium|high", '
            '"department": "suggested department", "estimated_response_time": minutes}'
        )
        data = self._assistant_json(prompt, "classification", user_id, temperature=0.1, max_tokens=200)
        if data is None:
            return {**FALLBACK_CLASSIFICATION, "source": "fallback"}
        return {**normalize_classification(data), "source": "ai"}

    def generate_smart_reply(
        self,
        message: str,
        company_name: Optional[str] = None,
        previous_messages: Optional[List[str]] = None,
        user_id: Optional[str] = None,
    ) -> Dict[str, Any]:
        """A suggested answer to a customer message. Answers are cached for half an hour."""
        if not isinstance(message, str) or not message.strip():
            raise ValidationError("Message text is required", field="message")
        previous_messages = previous_messages or []
        cache_key = TTLCache.make_key("smart_reply", [message[:200], company_name, previous_messages[-5:]])
        cached = _reply_cache.get(cache_key)
        if cached is not None:
            return cached

        reply = None
        if self.is_configured():
            self.check_token_allowance(user_id)
            prompt = SMART_REPLY_PROMPT.format(
                message=truncate_text(message, MAX_USER_TOKENS),
                company=f"Company: {company_name}\n" if company_name else "",
                history=("Earlier conversation:\n" + "\n".join(previous_messages[-5:]) + "\n")
                if previous_messages else "",
            )
            messages = [{"role": "user", "content": prompt}]
            try:
                reply = self._complete(messages, "smart_reply", temperature=0.7, max_tokens=500).strip()
            except (LLMResponseError, LLMUnavailableError) as e:
                logger.warning("smart_reply: using fallback: %s", e.message)
            else:
                self.track_token_usage(
                    user_id, _messages_tokens(messages) + estimate_tokens(reply), "groq_smart_reply"
                )

        if not reply:
            return {"text": SMART_REPLY_FALLBACK, "confidence": 0.0, "category": "error", "source": "fallback"}
        result = {
            "text": reply,
            "confidence": reply_confidence(reply),
            "category": categorize_reply(reply),
            "source": "ai",
        }
        _reply_cache.set(cache_key, result)
        return result

    def generate_dynamic_template(
        self, kind: str, context: Optional[Dict[str, Any]] = None, user_id: Optional[str] = None
    ) -> Dict[str, Any]:
        """Welcome, farewell or follow-up message text personalised with *context*."""
        if kind not in TEMPLATE_FALLBACKS:
            raise ValidationError(
                f"Template kind must be one of {', '.join(TEMPLATE_FALLBACKS)}", field="kind"
            )
        text = None
        if self.is_configured():
            self.check_token_allowance(user_id)
            prompt = TEMPLATE_PROMPTS[kind].format(context=json.dumps(context or {}, ensure_ascii=False, default=str))
            messages = [{"role": "user", "content": prompt}]
            try:
                text = self._complete(messages, "template", temperature=0.8, max_tokens=200).strip()
            except (LLMResponseError, LLMUnavailableError) as e:
                logger.warning("template: using fallback: %s", e.message)
            else:
                self.track_token_usage(user_id, _messages_tokens(messages) + estimate_tokens(text), "groq_template")
        if not text:
            return {"kind": kind, "template": TEMPLATE_FALLBACKS[kind], "source": "fallback"}
        return {"kind": kind, "template": text, "source": "ai"}

    def generate_conversation_report(self, messages: List[str], user_id: Optional[str] = None) -> Dict[str, Any]:
        """Executive report over a batch of message texts."""
        texts = [m for m in messages if isinstance(m, str) and m.strip()]
        if not texts:
            return {**fallback_report(), "messages_analyzed": 0, "source": "fallback"}

        # Callers pass the newest messages first, so truncation drops the oldest.
        body = truncate_text("\n".join(texts), MAX_TOTAL_INPUT_TOKENS - MAX_SYSTEM_TOKENS)
        prompt = (
            "Analyse the following customer conversations and write an executive report.\n\n"
            f"Conversations:\n{body}\n\n"
            "Reply with JSON only:\n"
            '{"summary": "...", "sentiment_distribution": {"positive": 0, "negative": 0, "neutral": 0}, '
            '"top_topics": ["..."], "customer_satisfaction_score": 0-100, '
            '"response_recommendations": ["..."], "urgency_level": "low|medium|high", '
            '"key_insights": ["..."]}'
        )
        data = self._assistant_json(prompt, "conversation_report", user_id, temperature=0.3, max_tokens=800)
        if data is None:
            return {**fallback_report(), "messages_analyzed": len(texts), "source": "fallback"}
        return {**normalize_report(data), "messages_analyzed": len(texts), "source": "ai"}


_reply_cache = TTLCache(SMART_REPLY_CACHE_TTL)


def reset_reply_cache() -> None:
    _reply_cache.clear()
