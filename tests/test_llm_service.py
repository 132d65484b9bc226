"""Tests for LLMService: token budgeting, sentiment validation, accounting and the /api/ai endpoints.

LiteLLM is never called for real; ``litellm.completion`` is patched.
"""

import json
from unittest.mock import patch

import pytest

from staffhub.core.circuit_breaker import get_breaker
from staffhub.exceptions import (
    LLMResponseError,
    LLMUnavailableError,
    PlanLimitExceededError,
    ValidationError,
)
from staffhub.models import TokenUsage
from staffhub.services.llm_service import (
    LLMService,
    estimate_tokens,
    optimize_chat_history,
    optimize_context,
    truncate_text,
    validate_sentiment,
)
from tests.conftest import llm_reply, make_user


class TestTokenBudget:
    def test_estimate_tokens(self):
        assert estimate_tokens("") == 0
        assert estimate_tokens("abcd") == 1
        assert estimate_tokens("abcde") == 2

    def test_truncate_prefers_word_boundary(self):
        text = "word " * 100
        out = truncate_text(text, 10)
        assert out.endswith("...")
        assert len(out) <= 43

    def test_short_text_untouched(self):
        assert truncate_text("hola", 10) == "hola"

    def test_context_keeps_documents_in_order_until_budget(self):
        docs = [{"content": "a" * 400}, {"content": "b" * 400}, {"content": "c" * 4000}]
        text = optimize_context(docs, max_tokens=300)
        assert "[Document 1]" in text
        assert "[Document 2]" in text
        assert "[Document 3]" not in text

    def test_oversized_first_document_is_truncated(self):
        text = optimize_context([{"content": "x " * 5000}], max_tokens=200)
        assert "[Document 1]" in text
        assert estimate_tokens(text) < 300

    def test_history_keeps_most_recent(self):
        history = [{"role": "user", "content": f"message {i} " + "x" * 200} for i in range(20)]
        kept = optimize_chat_history(history, max_tokens=200)
        assert kept
        assert kept[-1] == history[-1]
        assert len(kept) < len(history)


class TestValidateSentiment:
    def test_zero_score_and_confidence_are_valid(self):
        assert validate_sentiment({"score": 0, "label": "neutral", "confidence": 0}) == {
            "score": 0.0, "label": "neutral", "confidence": 0.0,
        }

    @pytest.mark.parametrize("data", [
        {"score": 1.5, "label": "positive", "confidence": 0.5},
        {"score": "0.5", "label": "positive", "confidence": 0.5},
        {"score": True, "label": "positive", "confidence": 0.5},
        {"score": 0.5, "label": "happy", "confidence": 0.5},
        {"score": 0.5, "label": "positive", "confidence": 1.2},
        {"label": "positive", "confidence": 0.5},
    ])
    def test_invalid_payloads(self, data):
        with pytest.raises(LLMResponseError):
            validate_sentiment(data)


class TestUnconfigured:
    def test_chat_unavailable(self):
        with pytest.raises(LLMUnavailableError):
            LLMService().generate_chat_response("hola")

    def test_sentiment_validates_text_first(self):
        with pytest.raises(ValidationError):
            LLMService().analyze_sentiment("   ")

    def test_is_available_false(self):
        assert LLMService().is_available() is False


class TestCompletions:
    def test_chat_response(self, groq_configured):
        with patch("litellm.completion", return_value=llm_reply("Hola, ¿en qué te ayudo?")) as completion:
            result = LLMService().generate_chat_response(
                "hola",
                context=[{"content": "Política de vacaciones: 15 días hábiles"}],
                history=[{"role": "user", "content": "antes"}],
            )
        assert result["response"] == "Hola, ¿en qué te ayudo?"
        assert result["context_used"] == 1
        assert result["history_used"] == 1
        assert result["tokens_used"] > 0

        kwargs = completion.call_args.kwargs
        assert kwargs["model"] == "groq/llama-3.3-70b-versatile"
        assert "DOCUMENT CONTEXT" in kwargs["messages"][0]["content"]
        assert kwargs["messages"][-1] == {"role": "user", "content": "hola"}

    def test_sentiment_tolerates_prose_around_json(self, groq_configured):
        raw = 'Here you go: {"score": -0.8, "label": "negative", "confidence": 0.9} thanks'
        with patch("litellm.completion", return_value=llm_reply(raw)):
            result = LLMService().analyze_sentiment("estoy chato con la pega")
        assert result["label"] == "negative"
        assert result["score"] == -0.8

    def test_sentiment_rejects_garbage(self, groq_configured):
        with patch("litellm.completion", return_value=llm_reply("no idea")):
            with pytest.raises(LLMResponseError):
                LLMService().analyze_sentiment("hola")

    def test_summary_of_nothing_skips_the_model(self, groq_configured):
        with patch("litellm.completion") as completion:
            result = LLMService().summarize_documents([])
        completion.assert_not_called()
        assert result["tokens_used"] == 0

    def test_provider_error_becomes_llm_response_error(self, groq_configured):
        with patch("litellm.completion", side_effect=Exception("boom")):
            with pytest.raises(LLMResponseError):
                LLMService().generate_completion([{"role": "user", "content": "x"}])

    def test_context_length_error_message(self, groq_configured):
        with patch("litellm.completion", side_effect=Exception("context_length_exceeded")):
            with pytest.raises(LLMResponseError, match="too long"):
                LLMService().generate_completion([{"role": "user", "content": "x"}])

    def test_breaker_opens_after_repeated_failures(self, groq_configured):
        with patch("litellm.completion", side_effect=Exception("down")) as completion:
            for _ in range(3):
                with pytest.raises(LLMResponseError):
                    LLMService().generate_completion([{"role": "user", "content": "x"}])
            with pytest.raises(LLMUnavailableError):
                LLMService().generate_completion([{"role": "user", "content": "x"}])
        assert completion.call_count == 3
        assert get_breaker("groq").state.value == "open"

    def test_empty_messages_rejected(self, groq_configured):
        with pytest.raises(ValidationError):
            LLMService().generate_completion([])


class TestRuntimeConfig:
    def test_update_and_read_back(self):
        config = LLMService.update_config(model="llama-3.1-8b-instant", temperature=0.2)
        assert config["model"] == "llama-3.1-8b-instant"
        assert config["temperature"] == 0.2
        assert config["api_key_configured"] is False

    def test_unknown_model_rejected(self):
        with pytest.raises(ValidationError):
            LLMService.update_config(model="gpt-99")

    def test_temperature_range(self):
        with pytest.raises(ValidationError):
            LLMService.update_config(temperature=3)


class TestTokenAccounting:
    def test_usage_is_tracked_per_user(self, db, groq_configured):
        user = make_user(db)
        with patch("litellm.completion", return_value=llm_reply("ok")):
            LLMService(db).generate_chat_response("hola", user_id=user.user_id)
        usage = LLMService(db).get_usage(user.user_id)
        assert usage["tokens_used"] > 0
        assert usage["last_operation"] == "groq_chat"
        assert usage["remaining"] is None

    def test_spent_allowance_blocks_the_call(self, db, groq_configured):
        user = make_user(db)
        db.add(TokenUsage(user_id=user.user_id, tokens_used=100, token_limit=100))
        db.commit()
        with patch("litellm.completion") as completion:
            with pytest.raises(PlanLimitExceededError):
                LLMService(db).generate_chat_response("hola", user_id=user.user_id)
        completion.assert_not_called()


class TestAiApi:
    def test_chat_without_key_is_503(self, client):
        resp = client.post("/api/ai/chat", json={"message": "hola"})
        assert resp.status_code == 503
        assert resp.json()["error"] == "LLM_UNAVAILABLE"

    def test_chat_records_employee_conversation(self, client, groq_configured):
        client.post("/api/folders/employees", json={
            "email": "juan@empresa.cl", "name": "Juan", "company_name": "Empresa",
        })
        with patch("litellm.completion", return_value=llm_reply("Tienes 15 días.")):
            resp = client.post("/api/ai/chat", json={
                "message": "¿Cuántos días de vacaciones tengo?",
                "employee_email": "juan@empresa.cl",
                "use_documents": False,
            })
        assert resp.status_code == 200
        assert resp.json()["response"] == "Tienes 15 días."

        history = client.get("/api/folders/employees/juan@empresa.cl/conversation").json()
        assert [m["role"] for m in history] == ["user", "assistant"]

    def test_sentiment_endpoint(self, client, groq_configured):
        payload = json.dumps({"score": 0.7, "label": "positive", "confidence": 0.8})
        with patch("litellm.completion", return_value=llm_reply(payload)):
            resp = client.post("/api/ai/sentiment", json={"text": "¡Excelente trabajo!"})
        assert resp.status_code == 200
        assert resp.json()["label"] == "positive"

    def test_models_and_config(self, client):
        assert len(client.get("/api/ai/models").json()) == 12
        resp = client.put("/api/ai/config", json={"model": "nope"})
        assert resp.status_code == 400
