"""Plan catalogue and purchase endpoints.

    GET  /api/plans                     catalogue, cheapest first
    GET  /api/plans/extensions          purchasable extensions
    GET  /api/plans/me                  caller's plan, extensions and usage
    POST /api/plans/{plan_id}/quote     total for a plan plus extensions
    POST /api/plans/{plan_id}/purchase  simulated payment, activates the plan
"""

from typing import List, Optional

from fastapi import APIRouter, Depends
from sqlalchemy.orm import Session

from ..core.auth import AuthContext, current_user, require_auth
from ..database import get_db
from ..exceptions import ForbiddenError
from ..models import User
from ..schemas.plan import (
    ExtensionResponse,
    PlanResponse,
    PurchaseRequest,
    PurchaseResponse,
    QuoteResponse,
    UserPlanResponse,
)
from ..services import plan_service

router = APIRouter(prefix="/api/plans", tags=["plans"])


def _registered(user: Optional[User]) -> User:
    if user is None:
        raise ForbiddenError("Plans can only be bought by a registered user")
    return user


@router.get("", response_model=List[PlanResponse])
def list_plans(db: Session = Depends(get_db)):
    return [plan_service.plan_to_dict(p) for p in plan_service.list_plans(db)]


@router.get("/extensions", response_model=List[ExtensionResponse])
def list_extensions(db: Session = Depends(get_db)):
    return [plan_service.extension_to_dict(e) for e in plan_service.list_extensions(db)]


@router.get("/me", response_model=UserPlanResponse)
def my_plan(
    db: Session = Depends(get_db),
    auth: AuthContext = Depends(require_auth),
    user: Optional[User] = Depends(current_user),
):
    return plan_service.get_user_plan(db, _registered(user))


@router.post("/{plan_id}/quote", response_model=QuoteResponse)
def quote(plan_id: str, body: PurchaseRequest, db: Session = Depends(get_db)):
    return plan_service.quote(db, plan_id, body.extension_ids)


@router.post("/{plan_id}/purchase", response_model=PurchaseResponse, status_code=201)
def purchase(
    plan_id: str,
    body: PurchaseRequest,
    db: Session = Depends(get_db),
    auth: AuthContext = Depends(require_auth),
    user: Optional[User] = Depends(current_user),
):
    """Buy a plan. Payment is simulated; Drive folder failures come back under ``folder_errors``."""
    return plan_service.purchase_plan(db, _registered(user), plan_id, body.extension_ids, provider=body.provider)
