"""Tests for message classification, smart replies, templates and conversation reports."""

import json
from unittest.mock import patch

import pytest

from staffhub.exceptions import ValidationError
from staffhub.services.llm_service import (
    SMART_REPLY_FALLBACK,
    TEMPLATE_FALLBACKS,
    LLMService,
    categorize_reply,
    normalize_classification,
    reply_confidence,
    should_auto_respond,
)
from tests.conftest import llm_reply


def _telegram_update(text, update_id):
    return {
        "update_id": update_id,
        "message": {
            "message_id": update_id,
            "from": {"id": 555},
            "chat": {"id": 555, "type": "private"},
            "date": 1700000000 + update_id,
            "text": text,
        },
    }


def _classification(category="general_inquiry", priority="low"):
    return json.dumps({
        "category": category,
        "subcategory": None,
        "priority": priority,
        "department": "rrhh",
        "estimated_response_time": 15,
    })


class TestReplyHeuristics:
    @pytest.mark.parametrize("words, expected", [(3, 0.3), (10, 0.7), (45, 0.9), (60, 0.9)])
    def test_confidence_grows_with_length(self, words, expected):
        assert reply_confidence(" ".join(["palabra"] * words)) == expected

    def test_categories(self):
        assert categorize_reply("¿En qué más puedo ayudarte?") == "question"
        assert categorize_reply("Muchas gracias por escribirnos") == "gratitude"
        assert categorize_reply("Disculpa la demora") == "apology"
        assert categorize_reply("Te envío más información") == "information"
        assert categorize_reply("Listo") == "general"

    def test_unknown_values_are_normalized(self):
        result = normalize_classification({
            "category": "spam", "priority": "urgent", "estimated_response_time": "soon",
        })
        assert result["category"] == "other"
        assert result["priority"] == "medium"
        assert result["department"] == "general"
        assert result["estimated_response_time"] == 60

    def test_auto_response_rules(self):
        calm = {"category": "general_inquiry", "priority": "low"}
        assert should_auto_respond(calm, "neutral") is True
        assert should_auto_respond(calm, "negative") is False
        assert should_auto_respond(calm, "positive", disabled=True) is False
        assert should_auto_respond({"category": "complaint", "priority": "low"}, "neutral") is False
        assert should_auto_respond({"category": "sales", "priority": "high"}, "positive") is False


class TestClassification:
    def test_fallback_without_key(self):
        result = LLMService().classify_message("Necesito mi liquidación")
        assert result == {
            "category": "other",
            "subcategory": None,
            "priority": "medium",
            "department": "general",
            "estimated_response_time": 60,
            "source": "fallback",
        }

    def test_model_classification(self, groq_configured):
        with patch("litellm.completion", return_value=llm_reply(_classification("complaint", "high"))) as completion:
            result = LLMService().classify_message("Nadie me responde hace una semana")
        assert result["category"] == "complaint"
        assert result["priority"] == "high"
        assert result["estimated_response_time"] == 15
        assert result["source"] == "ai"
        assert completion.call_args.kwargs["temperature"] == 0.1

    def test_unusable_answer_falls_back(self, groq_configured):
        with patch("litellm.completion", return_value=llm_reply("no sé")):
            assert LLMService().classify_message("hola")["source"] == "fallback"

    def test_empty_message_rejected(self):
        with pytest.raises(ValidationError):
            LLMService().classify_message("  ")


class TestSmartReply:
    def test_replies_are_cached(self, groq_configured):
        answer = "Nuestro horario de atención es de lunes a viernes de 9 a 18 horas."
        with patch("litellm.completion", return_value=llm_reply(answer)) as completion:
            first = LLMService().generate_smart_reply("¿Cuál es el horario?", company_name="Empresa")
            second = LLMService().generate_smart_reply("¿Cuál es el horario?", company_name="Empresa")
        assert completion.call_count == 1
        assert first == second
        assert first["text"] == answer
        assert first["source"] == "ai"
        assert "Company: Empresa" in completion.call_args.kwargs["messages"][0]["content"]

    def test_provider_error_gives_uncached_fallback(self, groq_configured):
        with patch("litellm.completion", side_effect=Exception("boom")) as completion:
            first = LLMService().generate_smart_reply("hola")
            LLMService().generate_smart_reply("hola")
        assert first == {"text": SMART_REPLY_FALLBACK, "confidence": 0.0, "category": "error", "source": "fallback"}
        assert completion.call_count == 2


class TestTemplates:
    def test_fallback_without_key(self):
        result = LLMService().generate_dynamic_template("farewell", {"name": "Ana"})
        assert result == {"kind": "farewell", "template": TEMPLATE_FALLBACKS["farewell"], "source": "fallback"}

    def test_context_reaches_the_prompt(self, groq_configured):
        with patch("litellm.completion", return_value=llm_reply("  ¡Hola Ana! ¿En qué te ayudamos?  ")) as completion:
            result = LLMService().generate_dynamic_template("welcome", {"name": "Ana"})
        assert result["template"] == "¡Hola Ana! ¿En qué te ayudamos?"
        assert '"name": "Ana"' in completion.call_args.kwargs["messages"][0]["content"]

    def test_unknown_kind(self):
        with pytest.raises(ValidationError):
            LLMService().generate_dynamic_template("birthday")


class TestConversationReport:
    def test_no_messages_skips_the_model(self, groq_configured):
        with patch("litellm.completion") as completion:
            report = LLMService().generate_conversation_report(["", "  "])
        completion.assert_not_called()
        assert report["messages_analyzed"] == 0
        assert report["customer_satisfaction_score"] == 50

    def test_model_report_is_clamped(self, groq_configured):
        raw = json.dumps({
            "summary": "Consultas sobre sueldos",
            "sentiment_distribution": {"positive": 1, "negative": 2, "neutral": "x"},
            "top_topics": ["sueldos", None],
            "customer_satisfaction_score": 140,
            "urgency_level": "extreme",
            "key_insights": "not a list",
        })
        with patch("litellm.completion", return_value=llm_reply(raw)):
            report = LLMService().generate_conversation_report(["a", "b", "c"])
        assert report["summary"] == "Consultas sobre sueldos"
        assert report["sentiment_distribution"] == {"positive": 1, "negative": 2, "neutral": 0}
        assert report["top_topics"] == ["sueldos"]
        assert report["customer_satisfaction_score"] == 100
        assert report["urgency_level"] == "medium"
        assert report["key_insights"] == []
        assert report["messages_analyzed"] == 3
        assert report["source"] == "ai"


class TestAssistantApi:
    def test_classify_without_key(self, client):
        resp = client.post("/api/communications/classify", json={"message": "Necesito vacaciones"})
        assert resp.status_code == 200
        assert resp.json()["source"] == "fallback"

    def test_suggest_uses_category_rule(self, client):
        resp = client.post("/api/communications/suggest-response", json={
            "message": "Hola, quisiera saber cómo pedir un certificado",
            "auto_responses": {"other": "Te contactaremos a la brevedad"},
        })
        data = resp.json()
        assert data["response"] == "Te contactaremos a la brevedad"
        assert data["response_source"] == "rule"
        assert data["sentiment"]["label"] == "neutral"
        assert data["should_auto_respond"] is True

    def test_complaint_is_left_to_a_person(self, client, groq_configured):
        sentiment = json.dumps({"score": -0.8, "label": "negative", "confidence": 0.9})
        replies = [llm_reply(_classification("complaint", "high")), llm_reply(sentiment)]
        with patch("litellm.completion", side_effect=replies):
            data = client.post("/api/communications/suggest-response", json={
                "message": "Llevo un mes sin respuesta, es terrible",
            }).json()
        assert data["classification"]["category"] == "complaint"
        assert data["response"] is None
        assert data["should_auto_respond"] is False

    def test_question_gets_generated_reply(self, client, groq_configured):
        sentiment = json.dumps({"score": 0.0, "label": "neutral", "confidence": 0.8})
        answer = "Puedes pedir tu certificado de antigüedad directamente a Recursos Humanos."
        replies = [llm_reply(_classification("information_request")), llm_reply(sentiment), llm_reply(answer)]
        with patch("litellm.completion", side_effect=replies):
            data = client.post("/api/communications/suggest-response", json={
                "message": "¿Dónde pido mi certificado?",
            }).json()
        assert data["response"] == answer
        assert data["response_source"] == "ai"
        assert data["should_auto_respond"] is True

    def test_template_kind_is_validated(self, client):
        resp = client.post("/api/communications/templates", json={"kind": "birthday"})
        assert resp.status_code == 400

    def test_report_over_inbound_messages(self, client, groq_configured):
        sentiment = llm_reply(json.dumps({"score": 0.1, "label": "neutral", "confidence": 0.6}))
        with patch("litellm.completion", return_value=sentiment):
            client.post("/api/webhooks/telegram", json=_telegram_update("Consulta por mi sueldo", 1))
            client.post("/api/webhooks/telegram", json=_telegram_update("¿Cuándo pagan el bono?", 2))

        report = json.dumps({"summary": "Dudas de remuneraciones", "customer_satisfaction_score": 70})
        with patch("litellm.completion", return_value=llm_reply(report)) as completion:
            resp = client.get("/api/communications/report", params={"channel": "telegram"})
        assert resp.status_code == 200
        data = resp.json()
        assert data["messages_analyzed"] == 2
        assert data["channel"] == "telegram"
        assert data["customer_satisfaction_score"] == 70
        prompt = completion.call_args.kwargs["messages"][0]["content"]
        assert prompt.index("¿Cuándo pagan el bono?") < prompt.index("Consulta por mi sueldo")

    def test_report_rejects_unknown_channel(self, client):
        assert client.get("/api/communications/report", params={"channel": "sms"}).status_code == 400
