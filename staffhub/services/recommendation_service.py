"""AI recommendations, trend predictions and insights for the admin dashboard.

Each generator asks the LLM for a JSON document and falls back to a fixed
answer when the model is unavailable or replies with something that is not
the expected JSON. Results, fallbacks included, are cached for
``RECOMMENDATIONS_CACHE_TTL`` seconds keyed by method and parameters.
"""

import json
import logging
import math
import re
import threading
from typing import Any, Callable, Optional

from sqlalchemy import func
from sqlalchemy.orm import Session

from ..core.config import settings
from ..exceptions import LLMResponseError, LLMUnavailableError, ValidationError
from ..models import TokenUsage, User
from ..repositories.document_repository import DocumentRepository
from ..repositories.folder_repository import FolderRepository
from .format_utils import format_bytes
from .llm_service import LLMService
from .ttl_cache import TTLCache

logger = logging.getLogger(__name__)

TIME_RANGES = {"7d": "7 days", "30d": "30 days", "90d": "90 days"}

_cache: Optional[TTLCache] = None
_cache_lock = threading.Lock()


def get_cache() -> TTLCache:
    global _cache
    with _cache_lock:
        if _cache is None:
            _cache = TTLCache(settings.recommendations_cache_ttl)
        return _cache


def reset_cache() -> None:
    global _cache
    with _cache_lock:
        _cache = None


# ---------------------------------------------------------------------------
# Static fallbacks
# ---------------------------------------------------------------------------

def _fallback_dashboard() -> dict:
    return {
        "recommendations": [
            {
                "title": "Optimise storage usage",
                "description": "Archive old documents to free space and keep the system responsive.",
                "priority": "medium",
                "category": "storage",
                "actionable": True,
                "estimated_impact": "20-30% performance improvement",
            },
            {
                "title": "Increase communication with employees",
                "description": "Use the AI tools to send personalised messages and raise engagement.",
                "priority": "high",
                "category": "engagement",
                "actionable": True,
                "estimated_impact": "25% more participation",
            },
            {
                "title": "Monitor AI token usage",
                "description": "Set alerts on token consumption to keep operating costs under control.",
                "priority": "medium",
                "category": "ai",
                "actionable": True,
                "estimated_impact": "15-20% cost reduction",
            },
        ],
        "source": "fallback",
    }


def _fallback_trends(historical: dict) -> dict:
    folders = historical.get("folders") or 0
    documents = historical.get("documents") or historical.get("total_files") or 0
    tokens = historical.get("tokens_used") or 0
    return {
        "predictions": [
            {
                "metric": "folders",
                "current_value": folders,
                "predicted_value": math.floor(folders * 1.05),
                "trend": "increasing",
                "confidence": 85,
                "recommendation": "Prepare capacity for the expected growth in employees",
            },
            {
                "metric": "documents",
                "current_value": documents,
                "predicted_value": math.floor(documents * 1.15),
                "trend": "increasing",
                "confidence": 80,
                "recommendation": "Plan storage for the expected increase in documents",
            },
            {
                "metric": "tokens",
                "current_value": tokens,
                "predicted_value": math.floor(tokens * 1.2),
                "trend": "increasing",
                "confidence": 75,
                "recommendation": "Consider a larger token allowance for next month",
            },
        ],
        "source": "fallback",
    }


def _fallback_insights() -> dict:
    return {
        "insights": [
            {
                "type": "success",
                "title": "Healthy system usage",
                "description": "Employees are using the system efficiently.",
                "metrics": ["folders", "documents"],
                "suggestion": "Keep monitoring usage to maintain performance",
            },
            {
                "type": "opportunity",
                "title": "Room for optimisation",
                "description": "Wider use of the AI tools could raise productivity.",
                "metrics": ["tokens", "productivity"],
                "suggestion": "Run training sessions on the AI tools",
            },
        ],
        "source": "fallback",
    }


def _fallback_productivity() -> dict:
    return {
        "recommendations": [
            {
                "title": "Streamline communication flows",
                "description": "Set up more efficient channels between teams.",
                "target_group": "all",
                "implementation": "Configure integrated communication tools",
                "expected_roi": "15-20% efficiency gain",
            },
            {
                "title": "Training on digital tools",
                "description": "Build training programmes to get the most out of the platform.",
                "target_group": "employees",
                "implementation": "Monthly training sessions",
                "expected_roi": "25-30% productivity increase",
            },
        ],
        "source": "fallback",
    }


# ---------------------------------------------------------------------------
# Service
# ---------------------------------------------------------------------------

class RecommendationService:
    def __init__(self, llm: Optional[LLMService] = None, cache: Optional[TTLCache] = None):
        self.llm = llm or LLMService()
        self.cache = cache or get_cache()

    def _generate(self, method: str, params: Any, prompt: str, key: str, fallback: Callable[[], dict]) -> dict:
        cache_key = TTLCache.make_key(method, params)
        cached = self.cache.get(cache_key)
        if cached is not None:
            return cached

        try:
            raw = self.llm.generate_completion([{"role": "user", "content": prompt}])
            result = self._parse(raw, key)
            result["source"] = "ai"
        except (LLMResponseError, LLMUnavailableError) as e:
            logger.warning("%s: LLM unavailable, using fallback: %s", method, e.message)
            result = fallback()
        except ValueError as e:
            logger.warning("%s: unusable LLM response, using fallback: %s", method, e)
            result = fallback()

        self.cache.set(cache_key, result)
        return result

    @staticmethod
    def _parse(raw: str, key: str) -> dict:
        match = re.search(r"\{[\s\S]*\}", raw or "")
        if not match:
            raise ValueError("no JSON object in response")
        data = json.loads(match.group(0))
        if not isinstance(data, dict) or not isinstance(data.get(key), list):
            raise ValueError(f"response lacks a '{key}' list")
        return data

    def dashboard_recommendations(self, stats: dict) -> dict:
        prompt = (
            "As an expert in data analysis and business management, analyse the following figures "
            "from an employee management system and produce 3 to 5 actionable recommendations.\n\n"
            "SYSTEM DATA:\n"
            f"- Employee folders: {stats.get('folders', 0)}\n"
            f"- Documents: {stats.get('documents', 0)}\n"
            f"- AI tokens used: {stats.get('tokens_used', 0)}\n"
            f"- Storage used: {format_bytes(stats.get('storage_used', 0))}\n\n"
            "CONTEXT: StaffHub is an HR platform that manages employee folders and documents and "
            "uses AI for communication and analysis. The goal is productivity and engagement.\n\n"
            "Reply with JSON only:\n"
            '{"recommendations": [{"title": "...", "description": "...", '
            '"priority": "high|medium|low", "category": "productivity|storage|ai|engagement", '
            '"actionable": true, "estimated_impact": "..."}]}'
        )
        return self._generate("dashboard_recommendations", stats, prompt, "recommendations", _fallback_dashboard)

    def predict_trends(self, historical: dict, time_range: str = "30d") -> dict:
        if time_range not in TIME_RANGES:
            raise ValidationError("time_range must be one of 7d, 30d, 90d", field="time_range")
        prompt = (
            f"Analyse this historical dashboard data and predict trends for the next {TIME_RANGES[time_range]}:\n\n"
            f"{json.dumps(historical, indent=2, default=str)}\n\n"
            "Reply with JSON only:\n"
            '{"predictions": [{"metric": "...", "current_value": 0, "predicted_value": 0, '
            '"trend": "increasing|decreasing|stable", "confidence": 0, "recommendation": "..."}]}'
        )
        return self._generate(
            "trends_prediction",
            {"historical": historical, "time_range": time_range},
            prompt,
            "predictions",
            lambda: _fallback_trends(historical),
        )

    def generate_insights(self, stats: dict, activity: Optional[dict] = None) -> dict:
        activity = activity or {}
        prompt = (
            "Analyse these dashboard figures and produce automatic insights.\n\n"
            f"STATISTICS: {json.dumps(stats, default=str)}\n"
            f"USER ACTIVITY: {json.dumps(activity, default=str)}\n\n"
            "Reply with JSON only:\n"
            '{"insights": [{"type": "opportunity|warning|success", "title": "...", '
            '"description": "...", "metrics": ["..."], "suggestion": "..."}]}'
        )
        return self._generate(
            "insights", {"stats": stats, "activity": activity}, prompt, "insights", _fallback_insights
        )

    def productivity_recommendations(self, employee_data: dict) -> dict:
        prompt = (
            "Analyse this employee data and produce productivity recommendations:\n\n"
            f"{json.dumps(employee_data, indent=2, default=str)}\n\n"
            "Reply with JSON only:\n"
            '{"recommendations": [{"title": "...", "description": "...", '
            '"target_group": "all|managers|employees", "implementation": "...", "expected_roi": "..."}]}'
        )
        return self._generate(
            "productivity_recommendations", employee_data, prompt, "recommendations", _fallback_productivity
        )

    def is_available(self) -> bool:
        self.cache.clean_expired()
        return self.llm.is_available()

    def clear_cache(self) -> None:
        self.cache.clear()

    def cache_stats(self) -> dict:
        return self.cache.stats()


def get_dashboard_stats(db: Session, company_id: Optional[str]) -> dict:
    """Folder, document, storage and token figures for one company."""
    folders = FolderRepository(db).count_by_company(company_id)
    documents, storage, _ = DocumentRepository(db).totals_for_company(company_id)
    tokens = (
        db.query(func.coalesce(func.sum(TokenUsage.tokens_used), 0))
        .join(User, User.user_id == TokenUsage.user_id)
        .filter(User.company_id == company_id)
        .scalar()
    ) or 0
    return {
        "folders": folders,
        "documents": documents,
        "storage_used": storage,
        "storage_used_human": format_bytes(storage),
        "tokens_used": int(tokens),
    }
