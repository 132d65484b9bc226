"""Plans, extensions, purchases and plan limits.

Purchases are recorded as paid test payments (no payment gateway). A
purchase never fails because of Drive: the admin folder structure is
created afterwards and any problem there is reported in the response.
"""

import logging
import time
import uuid
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, Iterable, List, Optional

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from ..exceptions import (
    DatabaseError,
    DriveError,
    PlanLimitExceededError,
    PlanNotFoundError,
    ValidationError,
)
from ..models import Extension, Payment, Plan, PlanExtension, TokenUsage, User
from ..repositories.document_repository import DocumentRepository
from ..repositories.folder_repository import FolderRepository
from .audit_service import get_audit_service
from .format_utils import format_price, format_storage

logger = logging.getLogger(__name__)

LIMIT_KINDS = ("folders", "files", "storage")

_FEATURES = {
    "basic": [
        "Employee folders on Google Drive",
        "AI chat assistant",
        "WhatsApp and Telegram inbox",
    ],
    "pro": [
        "Everything in Basic",
        "Sentiment analysis on every message",
        "AI dashboard recommendations",
        "Priority support",
    ],
    "premium": [
        "Everything in Pro",
        "Unlimited folders and files",
        "Trend predictions and insights",
        "Dedicated account manager",
    ],
}


def _as_utc(value: Optional[datetime]) -> Optional[datetime]:
    """SQLite hands back naive datetimes even for timezone-aware columns."""
    if value is None or value.tzinfo is not None:
        return value
    return value.replace(tzinfo=timezone.utc)


def plan_to_dict(plan: Plan) -> Dict[str, Any]:
    return {
        "id": plan.id,
        "code": plan.code,
        "name": plan.name,
        "price": plan.price,
        "price_formatted": format_price(plan.price),
        "duration_days": plan.duration_days,
        "storage_limit_bytes": plan.storage_limit_bytes,
        "storage_formatted": format_storage(plan.storage_limit_bytes),
        "max_folders": plan.max_folders,
        "max_files": plan.max_files,
        "token_limit": plan.token_limit,
        "features": plan_features(plan.code),
    }


def extension_to_dict(extension: Extension) -> Dict[str, Any]:
    return {
        "id": extension.id,
        "name": extension.name,
        "description": extension.description,
        "price": extension.price,
        "price_formatted": format_price(extension.price),
        "folder_type": extension.folder_type,
        "is_available": extension.is_available,
    }


def plan_features(code: str) -> List[str]:
    return list(_FEATURES.get(code, []))


def list_plans(db: Session) -> List[Plan]:
    return db.query(Plan).filter(Plan.is_active.is_(True)).order_by(Plan.price).all()


def list_extensions(db: Session, available_only: bool = True) -> List[Extension]:
    query = db.query(Extension)
    if available_only:
        query = query.filter(Extension.is_available.is_(True))
    return query.order_by(Extension.name).all()


def get_plan(db: Session, plan_id: str) -> Plan:
    plan = db.query(Plan).filter(Plan.id == plan_id, Plan.is_active.is_(True)).first()
    if plan is None:
        raise PlanNotFoundError(plan_id)
    return plan


def _selected_extensions(db: Session, extension_ids: Iterable[str]) -> List[Extension]:
    ids = list(dict.fromkeys(extension_ids or []))
    if not ids:
        return []
    return (
        db.query(Extension)
        .filter(Extension.id.in_(ids), Extension.is_available.is_(True))
        .order_by(Extension.name)
        .all()
    )


def calculate_total_price(db: Session, plan: Plan, extension_ids: Iterable[str] = ()) -> int:
    """Plan price plus each selected extension. Unknown extension ids are ignored."""
    return plan.price + sum(ext.price for ext in _selected_extensions(db, extension_ids))


def quote(db: Session, plan_id: str, extension_ids: Iterable[str] = ()) -> Dict[str, Any]:
    plan = get_plan(db, plan_id)
    extensions = _selected_extensions(db, extension_ids)
    total = calculate_total_price(db, plan, extension_ids)
    return {
        "plan": plan_to_dict(plan),
        "extensions": [extension_to_dict(e) for e in extensions],
        "total": total,
        "total_formatted": format_price(total),
    }


def purchase_plan(
    db: Session,
    user: User,
    plan_id: str,
    extension_ids: Iterable[str] = (),
    provider: str = "mercadopago_test",
) -> Dict[str, Any]:
    """Buy *plan_id* plus extensions for *user*.

    Records a paid payment, activates the plan, promotes the user to admin,
    records the extensions and the token allowance, then builds the admin
    Drive folders. Drive failures are returned under ``folder_errors``.
    """
    from .folder_service import FolderService

    plan = get_plan(db, plan_id)
    extensions = _selected_extensions(db, extension_ids)
    ext_ids = [e.id for e in extensions]
    total = plan.price + sum(e.price for e in extensions)
    now = datetime.now(timezone.utc)

    payment = Payment(
        id=f"pay-{uuid.uuid4().hex[:12]}",
        user_id=user.user_id,
        plan_id=plan.id,
        extension_ids=ext_ids,
        amount=total,
        currency="CLP",
        status="paid",
        provider=provider,
        provider_reference=f"test_mp_{int(time.time() * 1000)}",
    )

    try:
        db.add(payment)
        user.current_plan_id = plan.id
        user.plan_expiration = now + timedelta(days=plan.duration_days)
        user.role = "admin"

        owned = {
            row.extension_id
            for row in db.query(PlanExtension.extension_id).filter(PlanExtension.user_id == user.user_id).all()
        }
        for ext_id in ext_ids:
            if ext_id not in owned:
                db.add(PlanExtension(user_id=user.user_id, plan_id=plan.id, extension_id=ext_id))

        usage = db.query(TokenUsage).filter(TokenUsage.user_id == user.user_id).first()
        if usage is None:
            usage = TokenUsage(user_id=user.user_id, tokens_used=0)
            db.add(usage)
        usage.token_limit = plan.token_limit
        usage.last_operation = "plan_purchase"

        db.commit()
    except SQLAlchemyError as e:
        db.rollback()
        logger.error("Plan purchase failed for %s: %s", user.user_id, e)
        raise DatabaseError("Failed to record plan purchase", original_error=e)

    db.refresh(user)
    logger.info(
        "Plan purchased",
        extra={"user_id": user.user_id, "plan_id": plan.id, "extensions": ext_ids, "amount": total},
    )
    get_audit_service().log(
        user.user_id,
        "PLAN_PURCHASED",
        {"plan_id": plan.id, "extension_ids": ext_ids, "amount": total, "payment_id": payment.id},
    )

    folder_errors: List[Dict[str, str]] = []
    master_folder_id = None
    try:
        structure = FolderService(db).ensure_admin_folder(user, plan.name, ext_ids)
        master_folder_id = structure["master"].id
        folder_errors.extend(structure["errors"])
    except (DriveError, DatabaseError) as e:
        logger.warning("Admin folder structure not created for %s: %s", user.email, e.message)
        folder_errors.append({"folder": "Master - StaffHub", "error": e.message})

    return {
        "payment_id": payment.id,
        "plan_id": plan.id,
        "extension_ids": ext_ids,
        "amount": total,
        "amount_formatted": format_price(total),
        "status": payment.status,
        "plan_expiration": _as_utc(user.plan_expiration),
        "master_folder_id": master_folder_id,
        "folder_errors": folder_errors,
    }


def has_active_plan(user: Optional[User], now: Optional[datetime] = None) -> bool:
    if user is None or not user.current_plan_id or user.plan_expiration is None:
        return False
    now = now or datetime.now(timezone.utc)
    return _as_utc(user.plan_expiration) > now


def get_user_plan(db: Session, user: User) -> Dict[str, Any]:
    active = has_active_plan(user)
    plan = db.query(Plan).filter(Plan.id == user.current_plan_id).first() if user.current_plan_id else None
    extensions = (
        db.query(Extension)
        .join(PlanExtension, PlanExtension.extension_id == Extension.id)
        .filter(PlanExtension.user_id == user.user_id)
        .order_by(Extension.name)
        .all()
    )
    usage = db.query(TokenUsage).filter(TokenUsage.user_id == user.user_id).first()
    return {
        "active": active,
        "plan": plan_to_dict(plan) if plan else None,
        "plan_expiration": _as_utc(user.plan_expiration),
        "extensions": [extension_to_dict(e) for e in extensions],
        "available_extensions": available_extensions_count(db, user),
        "usage": {
            "folders": FolderRepository(db).count_by_owner(user.user_id),
            "files": DocumentRepository(db).count_for_user(user.user_id),
            "storage_bytes": DocumentRepository(db).storage_for_user(user.user_id),
            "tokens_used": usage.tokens_used if usage else 0,
            "token_limit": usage.token_limit if usage else 0,
        },
    }


def available_extensions_count(db: Session, user: User) -> int:
    """Available extensions the user has not bought yet."""
    owned = db.query(PlanExtension.extension_id).filter(PlanExtension.user_id == user.user_id)
    return (
        db.query(Extension)
        .filter(Extension.is_available.is_(True), Extension.id.notin_(owned))
        .count()
    )


def check_limits(db: Session, user: Optional[User], kind: str, incoming_bytes: int = 0) -> None:
    """Raise PlanLimitExceededError if one more folder/file (or *incoming_bytes*) breaks the plan.

    Users without an active plan are not capped.
    """
    if kind not in LIMIT_KINDS:
        raise ValidationError(f"Unknown limit kind: {kind}", field="kind")
    if not has_active_plan(user):
        return
    plan = db.query(Plan).filter(Plan.id == user.current_plan_id).first()
    if plan is None:
        return

    if kind == "folders" and plan.max_folders is not None:
        current = FolderRepository(db).count_by_owner(user.user_id)
        if current >= plan.max_folders:
            raise PlanLimitExceededError("folders", current, plan.max_folders)

    elif kind == "files" and plan.max_files is not None:
        current = DocumentRepository(db).count_for_user(user.user_id)
        if current >= plan.max_files:
            raise PlanLimitExceededError("files", current, plan.max_files)

    elif kind == "storage":
        current = DocumentRepository(db).storage_for_user(user.user_id)
        if current + incoming_bytes > plan.storage_limit_bytes:
            raise PlanLimitExceededError("storage", current + incoming_bytes, plan.storage_limit_bytes)
