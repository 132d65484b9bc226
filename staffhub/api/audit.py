"""Audit trail endpoints (admin only)."""

from datetime import datetime, timezone
from typing import Optional

from fastapi import APIRouter, Depends, Query
from fastapi.responses import Response

from ..core.auth import AuthContext, require_admin
from ..exceptions import ValidationError
from ..services.audit_service import get_audit_service

router = APIRouter(prefix="/api/audit", tags=["audit"])


def _utc(value: Optional[datetime]) -> Optional[datetime]:
    if value is not None and value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def _filters(level, user_id, action, category, start_date, end_date) -> dict:
    return {
        "level": level,
        "user_id": user_id,
        "action": action,
        "category": category,
        "start_date": _utc(start_date),
        "end_date": _utc(end_date),
    }


@router.get("/logs")
def search_logs(
    level: Optional[str] = Query(None, description="Minimum level: DEBUG, INFO, WARN, ERROR, CRITICAL"),
    user_id: Optional[str] = None,
    action: Optional[str] = None,
    category: Optional[str] = None,
    start_date: Optional[datetime] = None,
    end_date: Optional[datetime] = None,
    sort_by: str = Query("timestamp", pattern="^(timestamp|severity)$"),
    limit: int = Query(100, ge=1, le=1000),
    auth: AuthContext = Depends(require_admin),
):
    return get_audit_service().search_logs(
        **_filters(level, user_id, action, category, start_date, end_date), sort_by=sort_by, limit=limit
    )


@router.get("/stats")
def log_stats(
    level: Optional[str] = None,
    user_id: Optional[str] = None,
    action: Optional[str] = None,
    category: Optional[str] = None,
    start_date: Optional[datetime] = None,
    end_date: Optional[datetime] = None,
    auth: AuthContext = Depends(require_admin),
):
    return get_audit_service().get_log_stats(**_filters(level, user_id, action, category, start_date, end_date))


@router.get("/summary")
def activity_summary(hours: int = Query(24, ge=1, le=24 * 30), auth: AuthContext = Depends(require_admin)):
    return get_audit_service().get_activity_summary(hours=hours)


@router.get("/anomalies")
def anomalies(limit: int = Query(50, ge=1, le=500), auth: AuthContext = Depends(require_admin)):
    return get_audit_service().get_anomalies(limit=limit)


@router.get("/export")
def export_logs(
    format: str = Query("json"),
    level: Optional[str] = None,
    user_id: Optional[str] = None,
    action: Optional[str] = None,
    category: Optional[str] = None,
    start_date: Optional[datetime] = None,
    end_date: Optional[datetime] = None,
    auth: AuthContext = Depends(require_admin),
):
    """Download the filtered trail as JSON or CSV."""
    if format not in ("json", "csv"):
        raise ValidationError("format must be json or csv", field="format")
    content = get_audit_service().export_logs(
        format=format, **_filters(level, user_id, action, category, start_date, end_date)
    )
    media_type = "text/csv" if format == "csv" else "application/json"
    return Response(
        content=content,
        media_type=media_type,
        headers={"Content-Disposition": f'attachment; filename="audit_logs.{format}"'},
    )
