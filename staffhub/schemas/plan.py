"""Plan, extension and purchase schemas."""

from datetime import datetime
from typing import Dict, List, Optional

from pydantic import BaseModel, Field


class PlanResponse(BaseModel):
    id: str
    code: str
    name: str
    price: int
    price_formatted: str
    duration_days: int
    storage_limit_bytes: int
    storage_formatted: str
    max_folders: Optional[int] = None
    max_files: Optional[int] = None
    token_limit: int
    features: List[str] = []


class ExtensionResponse(BaseModel):
    id: str
    name: str
    description: Optional[str] = None
    price: int
    price_formatted: str
    folder_type: Optional[str] = None
    is_available: bool


class PurchaseRequest(BaseModel):
    extension_ids: List[str] = Field(default_factory=list)
    provider: str = "mercadopago_test"


class QuoteResponse(BaseModel):
    plan: PlanResponse
    extensions: List[ExtensionResponse]
    total: int
    total_formatted: str


class PurchaseResponse(BaseModel):
    payment_id: str
    plan_id: str
    extension_ids: List[str]
    amount: int
    amount_formatted: str
    status: str
    plan_expiration: Optional[datetime] = None
    master_folder_id: Optional[str] = None
    folder_errors: List[Dict[str, str]] = []


class UsageResponse(BaseModel):
    folders: int
    files: int
    storage_bytes: int
    tokens_used: int
    token_limit: int


class UserPlanResponse(BaseModel):
    active: bool
    plan: Optional[PlanResponse] = None
    plan_expiration: Optional[datetime] = None
    extensions: List[ExtensionResponse] = []
    available_extensions: int
    usage: UsageResponse
