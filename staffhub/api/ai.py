"""AI endpoints: chat, sentiment, summaries, model configuration and dashboard recommendations.

Chat answers are grounded in the company's most similar documents. When an
employee email is given, the exchange is appended to that employee's
conversation history and the history is fed back to the model.
"""

import logging
from typing import Dict, List, Optional

from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel, Field
from sqlalchemy.orm import Session

from ..core.auth import AuthContext, require_admin, require_auth
from ..database import get_db
from ..exceptions import ForbiddenError
from ..models import Document
from ..schemas.document import SimilarDocumentResponse
from ..services.audit_service import get_audit_service
from ..services.embedding_service import EmbeddingService
from ..services.folder_service import FolderService
from ..services.llm_service import LLMService
from ..services.recommendation_service import RecommendationService, get_dashboard_stats

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/ai", tags=["ai"])

CHAT_CONTEXT_DOCUMENTS = 3


class ChatRequest(BaseModel):
    message: str = Field(..., min_length=1)
    employee_email: Optional[str] = None
    history: List[Dict[str, str]] = Field(default_factory=list)
    use_documents: bool = True


class ChatResponse(BaseModel):
    response: str
    tokens_used: int
    context_used: int
    history_used: int
    sources: List[SimilarDocumentResponse] = []


class SentimentRequest(BaseModel):
    text: str


class SentimentResponse(BaseModel):
    score: float
    label: str
    confidence: float
    tokens_used: int


class SummarizeRequest(BaseModel):
    document_ids: List[str] = Field(default_factory=list)
    texts: List[str] = Field(default_factory=list)


class SummarizeResponse(BaseModel):
    summary: str
    tokens_used: int


class ConfigUpdate(BaseModel):
    model: Optional[str] = None
    temperature: Optional[float] = None
    max_tokens: Optional[int] = None


class ProductivityRequest(BaseModel):
    employee_data: Dict = Field(default_factory=dict)


# -- LLM ----------------------------------------------------------------------

@router.post("/chat", response_model=ChatResponse)
def chat(body: ChatRequest, db: Session = Depends(get_db), auth: AuthContext = Depends(require_auth)):
    llm = LLMService(db)
    sources = []
    if body.use_documents:
        sources = EmbeddingService(db, llm).find_similar_documents(
            body.message, auth.company_id, limit=CHAT_CONTEXT_DOCUMENTS
        )

    folders = FolderService(db)
    history = body.history
    if body.employee_email:
        if not auth.is_admin and (auth.email or "").lower() != body.employee_email.strip().lower():
            raise ForbiddenError("Employees can only chat in their own conversation")
        history = [
            {"role": m.role, "content": m.content}
            for m in folders.get_conversation_history(auth.company_id, body.employee_email)
        ]

    result = llm.generate_chat_response(body.message, sources, history, user_id=auth.db_user_id)

    if body.employee_email:
        folders.add_conversation_message(auth.company_id, body.employee_email, "user", body.message, "web")
        folders.add_conversation_message(auth.company_id, body.employee_email, "assistant", result["response"], "web")

    return ChatResponse(**result, sources=[SimilarDocumentResponse(**s) for s in sources])


@router.post("/sentiment", response_model=SentimentResponse)
def sentiment(body: SentimentRequest, db: Session = Depends(get_db), auth: AuthContext = Depends(require_auth)):
    return LLMService(db).analyze_sentiment(body.text, user_id=auth.db_user_id)


@router.post("/summarize", response_model=SummarizeResponse)
def summarize(body: SummarizeRequest, db: Session = Depends(get_db), auth: AuthContext = Depends(require_auth)):
    contents = list(body.texts)
    if body.document_ids:
        documents = (
            db.query(Document)
            .filter(Document.id.in_(body.document_ids), Document.company_id == auth.company_id)
            .all()
        )
        contents.extend(d.content_text or f"{d.name}: {d.description or ''}" for d in documents)
    return LLMService(db).summarize_documents(contents, user_id=auth.db_user_id)


@router.get("/config")
def get_config(auth: AuthContext = Depends(require_auth)):
    return LLMService.get_config()


@router.put("/config")
def update_config(body: ConfigUpdate, auth: AuthContext = Depends(require_admin)):
    return LLMService.update_config(body.model, body.temperature, body.max_tokens)


@router.get("/models")
def list_models(auth: AuthContext = Depends(require_auth)):
    return LLMService.available_models()


@router.get("/usage")
def usage(db: Session = Depends(get_db), auth: AuthContext = Depends(require_auth)):
    return LLMService(db).get_usage(auth.user_id)


@router.get("/similar", response_model=List[SimilarDocumentResponse])
def similar_documents(
    q: str = Query(..., min_length=1),
    limit: int = Query(5, ge=1, le=20),
    db: Session = Depends(get_db),
    auth: AuthContext = Depends(require_auth),
):
    return EmbeddingService(db).find_similar_documents(q, auth.company_id, limit)


# -- Recommendations ----------------------------------------------------------

@router.get("/recommendations")
def recommendations(db: Session = Depends(get_db), auth: AuthContext = Depends(require_admin)):
    stats = get_dashboard_stats(db, auth.company_id)
    return {"stats": stats, **RecommendationService(LLMService(db)).dashboard_recommendations(stats)}


@router.get("/trends")
def trends(
    time_range: str = Query("30d"),
    db: Session = Depends(get_db),
    auth: AuthContext = Depends(require_admin),
):
    stats = get_dashboard_stats(db, auth.company_id)
    return RecommendationService(LLMService(db)).predict_trends(stats, time_range)


@router.get("/insights")
def insights(db: Session = Depends(get_db), auth: AuthContext = Depends(require_admin)):
    stats = get_dashboard_stats(db, auth.company_id)
    activity = get_audit_service().get_activity_summary(hours=24)
    return RecommendationService(LLMService(db)).generate_insights(stats, activity)


@router.post("/productivity")
def productivity(body: ProductivityRequest, db: Session = Depends(get_db), auth: AuthContext = Depends(require_admin)):
    return RecommendationService(LLMService(db)).productivity_recommendations(body.employee_data)


@router.get("/cache")
def cache_stats(auth: AuthContext = Depends(require_admin)):
    return RecommendationService().cache_stats()


@router.delete("/cache", status_code=204)
def clear_cache(auth: AuthContext = Depends(require_admin)):
    RecommendationService().clear_cache()
    logger.info("Recommendation cache cleared", extra={"user_id": auth.user_id})
