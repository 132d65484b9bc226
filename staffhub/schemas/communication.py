"""Communication log and webhook schemas."""

from datetime import datetime
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field


class CommunicationLogResponse(BaseModel):
    id: int
    channel: str
    direction: str
    sender_id: Optional[str] = None
    recipient_id: Optional[str] = None
    user_id: Optional[str] = None
    message: Optional[str] = None
    message_type: str
    status: str
    sentiment_score: Optional[float] = None
    sentiment_label: Optional[str] = None
    sentiment_confidence: Optional[float] = None
    meta: Optional[Dict[str, Any]] = Field(default=None, serialization_alias="metadata")
    sent_at: Optional[datetime] = None

    model_config = {"from_attributes": True}


class SentimentSummaryResponse(BaseModel):
    total: int
    by_label: Dict[str, int]
    by_channel: Dict[str, Dict[str, int]]
    average_score: Optional[float] = None


class WebhookResponse(BaseModel):
    """Envelope returned to messaging providers."""
    success: bool
    message: Optional[str] = None
    processed: Optional[Dict[str, int]] = None


class MessageRequest(BaseModel):
    message: str = Field(..., min_length=1, max_length=4000)


class ClassificationResponse(BaseModel):
    category: str
    subcategory: Optional[str] = None
    priority: str
    department: str
    estimated_response_time: int = Field(..., description="Minutes")
    source: str


class SmartReplyRequest(MessageRequest):
    company_name: Optional[str] = None
    previous_messages: List[str] = Field(default_factory=list)


class SmartReplyResponse(BaseModel):
    text: str
    confidence: float
    category: str
    source: str


class SuggestResponseRequest(MessageRequest):
    auto_responses: Dict[str, str] = Field(
        default_factory=dict, description="Fixed answer per message category"
    )
    disable_auto_response: bool = False
    company_name: Optional[str] = None


class SuggestResponseResponse(BaseModel):
    response: Optional[str] = None
    response_source: Optional[str] = Field(None, description="rule or ai")
    sentiment: Optional[Dict[str, Any]] = None
    classification: ClassificationResponse
    should_auto_respond: bool


class TemplateRequest(BaseModel):
    kind: str = Field(..., description="welcome, farewell or follow_up")
    context: Dict[str, Any] = Field(default_factory=dict)


class TemplateResponse(BaseModel):
    kind: str
    template: str
    source: str


class ConversationReportResponse(BaseModel):
    summary: str
    sentiment_distribution: Dict[str, int]
    top_topics: List[str]
    customer_satisfaction_score: int
    response_recommendations: List[str]
    urgency_level: str
    key_insights: List[str]
    messages_analyzed: int
    channel: Optional[str] = None
    source: str
