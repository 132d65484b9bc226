"""Message log, sentiment figures and the message assistant, scoped to the caller's company."""

from datetime import datetime
from typing import List, Optional

from fastapi import APIRouter, Depends, Query
from sqlalchemy.orm import Session

from ..core.auth import AuthContext, require_admin
from ..database import get_db
from ..schemas.communication import (
    ClassificationResponse,
    CommunicationLogResponse,
    ConversationReportResponse,
    MessageRequest,
    SentimentSummaryResponse,
    SmartReplyRequest,
    SmartReplyResponse,
    SuggestResponseRequest,
    SuggestResponseResponse,
    TemplateRequest,
    TemplateResponse,
)
from ..services import CommunicationService
from ..services.llm_service import LLMService

router = APIRouter(prefix="/api/communications", tags=["communications"])


@router.get("", response_model=List[CommunicationLogResponse])
def list_messages(
    channel: Optional[str] = Query(None, description="telegram or whatsapp"),
    sentiment: Optional[str] = Query(None, description="positive, negative or neutral"),
    since: Optional[datetime] = None,
    limit: int = Query(100, ge=1, le=500),
    offset: int = Query(0, ge=0),
    db: Session = Depends(get_db),
    auth: AuthContext = Depends(require_admin),
):
    return CommunicationService(db).list_messages(auth.company_id, channel, sentiment, since, limit, offset)


@router.get("/sentiment-summary", response_model=SentimentSummaryResponse)
def sentiment_summary(db: Session = Depends(get_db), auth: AuthContext = Depends(require_admin)):
    return CommunicationService(db).sentiment_summary(auth.company_id)


@router.get("/report", response_model=ConversationReportResponse)
def conversation_report(
    channel: Optional[str] = Query(None, description="telegram or whatsapp"),
    since: Optional[datetime] = None,
    limit: int = Query(200, ge=1, le=1000),
    db: Session = Depends(get_db),
    auth: AuthContext = Depends(require_admin),
):
    return CommunicationService(db).conversation_report(
        auth.company_id, channel, since, limit, user_id=auth.db_user_id
    )


@router.post("/classify", response_model=ClassificationResponse)
def classify_message(body: MessageRequest, db: Session = Depends(get_db), auth: AuthContext = Depends(require_admin)):
    return LLMService(db).classify_message(body.message, user_id=auth.db_user_id)


@router.post("/smart-reply", response_model=SmartReplyResponse)
def smart_reply(body: SmartReplyRequest, db: Session = Depends(get_db), auth: AuthContext = Depends(require_admin)):
    return LLMService(db).generate_smart_reply(
        body.message, body.company_name, body.previous_messages, user_id=auth.db_user_id
    )


@router.post("/suggest-response", response_model=SuggestResponseResponse)
def suggest_response(
    body: SuggestResponseRequest, db: Session = Depends(get_db), auth: AuthContext = Depends(require_admin)
):
    """Classification, sentiment and a proposed answer, plus whether it is safe to send unattended."""
    return CommunicationService(db).suggest_response(
        body.message,
        auto_responses=body.auto_responses,
        disable_auto_response=body.disable_auto_response,
        company_name=body.company_name,
        user_id=auth.db_user_id,
    )


@router.post("/templates", response_model=TemplateResponse)
def dynamic_template(body: TemplateRequest, db: Session = Depends(get_db), auth: AuthContext = Depends(require_admin)):
    return LLMService(db).generate_dynamic_template(body.kind, body.context, user_id=auth.db_user_id)
