"""In-memory audit trail with anomaly detection and alerting.

Entries are immutable once written and kept in process memory, newest
last, up to ``AUDIT_MAX_ENTRIES``. The service is optional: with
``AUDIT_ENABLED=false`` every write is a no-op and reads return empty
results, and nothing else in the application changes behaviour.

Usage in the service layer:
    get_audit_service().log_data_access(user_id, "document", "download",
                                        {"document_id": doc.id})

Writes never raise. Audit failures are logged and swallowed so they cannot
break the operation being audited.
"""

import csv
import io
import json
import logging
import secrets
import threading
from collections import Counter, deque
from dataclasses import dataclass, field, asdict
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Deque, Dict, List, Optional, Tuple

from ..core.config import settings
from ..core.logging_config import request_id_var

logger = logging.getLogger(__name__)

LEVELS = {"DEBUG": 0, "INFO": 1, "WARN": 2, "ERROR": 3, "CRITICAL": 4}

# Keyword found in the upper-cased action -> category. First match wins.
_CATEGORY_RULES = [
    (("LOGIN", "LOGOUT", "AUTH"), "authentication"),
    (("SECURITY",), "security"),
    (("USER",), "user_management"),
    (("EMPLOYEE",), "employee_management"),
    (("COMPANY",), "company_management"),
    (("DATA",), "data_access"),
    (("ERROR",), "error"),
    (("PERFORMANCE",), "performance"),
    (("SYSTEM",), "system"),
]

RETENTION_DAYS = {
    "authentication": 90,
    "security": 365,
    "data_access": 180,
    "error": 30,
    "performance": 7,
    "general": 30,
}

_SENSITIVE_KEYS = frozenset({"password", "token", "secret", "key", "credit_card"})
_SENSITIVE_SUFFIXES = ("_password", "_token", "_secret", "_key")
_MAX_STRING = 1000


def sanitize_details(details: Any) -> Any:
    """Redact credential-like keys and truncate long strings, recursively."""
    if isinstance(details, dict):
        clean = {}
        for key, value in details.items():
            name = str(key).lower()
            if name in _SENSITIVE_KEYS or name.endswith(_SENSITIVE_SUFFIXES):
                clean[key] = "[REDACTED]"
            else:
                clean[key] = sanitize_details(value)
        return clean
    if isinstance(details, (list, tuple)):
        return [sanitize_details(v) for v in details]
    if isinstance(details, str) and len(details) > _MAX_STRING:
        return details[:_MAX_STRING] + "...[TRUNCATED]"
    return details


def categorize_action(action: str) -> str:
    upper = action.upper()
    for keywords, category in _CATEGORY_RULES:
        if any(k in upper for k in keywords):
            return category
    return "general"


def calculate_severity(action: str, level: str, details: Optional[dict] = None) -> int:
    """Score an entry from 1 to 10."""
    score = LEVELS.get(level.upper(), 1)
    upper = action.upper()

    if "SECURITY" in upper or "UNAUTHORIZED" in upper:
        score += 3
    if "ERROR" in upper or "FAILED" in upper:
        score += 2
    if "CRITICAL" in upper:
        score += 4

    flagged = str((details or {}).get("severity", "")).upper()
    if flagged == "HIGH":
        score += 2
    elif flagged == "CRITICAL":
        score += 4

    return max(1, min(score, 10))


def severity_bucket(severity: int) -> str:
    if severity <= 2:
        return "low"
    if severity <= 4:
        return "medium"
    if severity <= 7:
        return "high"
    return "critical"


@dataclass(frozen=True)
class AuditEntry:
    id: str
    timestamp: datetime
    user_id: str
    action: str
    level: str
    category: str
    severity: int
    details: dict = field(default_factory=dict)
    context: dict = field(default_factory=dict)
    session_id: Optional[str] = None
    request_id: Optional[str] = None
    ip_address: Optional[str] = None
    user_agent: Optional[str] = None
    source: str = "api"

    def to_dict(self) -> dict:
        data = asdict(self)
        data["timestamp"] = self.timestamp.isoformat()
        return data


# ---------------------------------------------------------------------------
# Anomaly detection
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class Anomaly:
    type: str
    severity: str
    detected_at: datetime
    user_id: Optional[str] = None
    count: Optional[int] = None
    threshold: Optional[int] = None
    entry_id: Optional[str] = None

    def to_dict(self) -> dict:
        data = asdict(self)
        data["detected_at"] = self.detected_at.isoformat()
        return data


class AnomalyDetector:
    """Threshold checks over the entries of the last few minutes.

    Each check is triggered by the entry just written, so a burst produces
    one anomaly per entry past the threshold. The alert manager's cooldown
    collapses those into a single alert.
    """

    WINDOW = timedelta(minutes=5)
    THRESHOLDS = {
        "failed_logins": 5,
        "data_access": 100,
        "errors": 10,
        "security_events": 3,
    }
    BUSINESS_HOURS = (6, 22)

    def check(self, entry: AuditEntry, recent: List[AuditEntry]) -> List[Anomaly]:
        """Return anomalies raised by *entry*. *recent* holds entries inside WINDOW, including *entry*."""
        found: List[Anomaly] = []
        now = entry.timestamp

        def _raise(kind: str, severity: str, count: Optional[int] = None, threshold: Optional[int] = None):
            found.append(Anomaly(
                type=kind,
                severity=severity,
                detected_at=now,
                user_id=entry.user_id,
                count=count,
                threshold=threshold,
                entry_id=entry.id,
            ))

        if entry.action == "LOGIN_FAILED":
            count = sum(1 for e in recent if e.action == "LOGIN_FAILED" and e.user_id == entry.user_id)
            limit = self.THRESHOLDS["failed_logins"]
            if count >= limit:
                _raise("BRUTE_FORCE_ATTACK", "HIGH", count, limit)

        if entry.category == "data_access":
            count = sum(1 for e in recent if e.category == "data_access" and e.user_id == entry.user_id)
            limit = self.THRESHOLDS["data_access"]
            if count >= limit:
                _raise("EXCESSIVE_DATA_ACCESS", "MEDIUM", count, limit)

        if entry.action == "ERROR_OCCURRED":
            count = sum(1 for e in recent if e.action == "ERROR_OCCURRED")
            limit = self.THRESHOLDS["errors"]
            if count >= limit:
                _raise("ERROR_SPIKE", "HIGH", count, limit)

        if entry.action == "SECURITY_EVENT":
            count = sum(1 for e in recent if e.action == "SECURITY_EVENT")
            limit = self.THRESHOLDS["security_events"]
            if count >= limit:
                _raise("SECURITY_EVENT_SPIKE", "HIGH", count, limit)

        if entry.category in ("data_access", "authentication"):
            start, end = self.BUSINESS_HOURS
            if now.hour < start or now.hour > end:
                _raise("UNUSUAL_HOURS_ACCESS", "MEDIUM")

        if entry.context.get("unusual_location"):
            _raise("UNUSUAL_LOCATION_ACCESS", "HIGH")

        return found


# ---------------------------------------------------------------------------
# Alerting
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class AlertRule:
    severity: str
    channels: Tuple[str, ...]
    cooldown: timedelta


DEFAULT_ALERT_RULES = {
    "BRUTE_FORCE_ATTACK": AlertRule("HIGH", ("email", "sms"), timedelta(seconds=300)),
    "EXCESSIVE_DATA_ACCESS": AlertRule("MEDIUM", ("email",), timedelta(seconds=600)),
    "ERROR_SPIKE": AlertRule("HIGH", ("email", "slack"), timedelta(seconds=300)),
}


def _log_channel(channel: str) -> Callable[[dict], None]:
    def send(alert: dict) -> None:
        logger.warning(
            "Audit alert via %s: %s", channel, alert["type"],
            extra={"alert_channel": channel, "alert": alert},
        )
    return send


class AlertManager:
    """Routes anomalies to notification channels, at most once per cooldown per anomaly type.

    Channels are plain callables taking the alert dict. Every channel named
    by a rule defaults to a logging sink until a real sender is registered.
    """

    def __init__(self, rules: Optional[Dict[str, AlertRule]] = None):
        self.rules = dict(rules or DEFAULT_ALERT_RULES)
        self._channels: Dict[str, Callable[[dict], None]] = {}
        self._last_sent: Dict[str, datetime] = {}
        self.sent: Deque[dict] = deque(maxlen=500)
        for rule in self.rules.values():
            for channel in rule.channels:
                self._channels.setdefault(channel, _log_channel(channel))

    def register_channel(self, name: str, sender: Callable[[dict], None]) -> None:
        self._channels[name] = sender

    def send_alert(self, anomaly: Anomaly) -> Optional[dict]:
        """Dispatch *anomaly* if it has a rule and is out of cooldown. Returns the alert sent."""
        rule = self.rules.get(anomaly.type)
        if rule is None:
            return None

        last = self._last_sent.get(anomaly.type)
        if last is not None and anomaly.detected_at - last < rule.cooldown:
            return None
        self._last_sent[anomaly.type] = anomaly.detected_at

        alert = {
            "type": anomaly.type,
            "severity": rule.severity,
            "channels": list(rule.channels),
            "anomaly": anomaly.to_dict(),
            "sent_at": anomaly.detected_at.isoformat(),
        }
        for channel in rule.channels:
            sender = self._channels.get(channel)
            if sender is None:
                continue
            try:
                sender(alert)
            except Exception:
                logger.exception("Alert channel %s failed", channel)
        self.sent.append(alert)
        return alert


# ---------------------------------------------------------------------------
# Audit service
# ---------------------------------------------------------------------------

def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class AuditService:
    """Append-only in-memory audit log."""

    MAX_ANOMALIES = 1000

    def __init__(
        self,
        max_entries: int = 50000,
        enabled: bool = True,
        clock: Callable[[], datetime] = _utcnow,
        alert_manager: Optional[AlertManager] = None,
    ):
        self.max_entries = max_entries
        self.enabled = enabled
        self._clock = clock
        self._entries: List[AuditEntry] = []
        self._anomalies: Deque[Anomaly] = deque(maxlen=self.MAX_ANOMALIES)
        self._lock = threading.RLock()
        self.detector = AnomalyDetector()
        self.alerts = alert_manager or AlertManager()

    # -- Writes --------------------------------------------------------------

    def log(
        self,
        user_id: Optional[str],
        action: str,
        details: Optional[dict] = None,
        level: str = "INFO",
        context: Optional[dict] = None,
    ) -> Optional[str]:
        """Record an entry. Returns its id, or None when disabled or on failure. Never raises."""
        if not self.enabled:
            return None
        try:
            return self._append(user_id, action, details, level, context)
        except Exception:
            logger.exception("Failed to write audit entry", extra={"audit_action": action})
            return None

    def _append(self, user_id, action, details, level, context) -> str:
        level = level.upper()
        context = dict(context or {})
        details = sanitize_details(dict(details or {}))
        now = self._clock()

        entry = AuditEntry(
            id=f"log_{int(now.timestamp() * 1000)}_{secrets.token_hex(4)}",
            timestamp=now,
            user_id=user_id or "anonymous",
            action=action,
            level=level,
            category=categorize_action(action),
            severity=calculate_severity(action, level, details),
            details=details,
            context=context,
            session_id=context.get("session_id"),
            request_id=context.get("request_id") or request_id_var.get("") or None,
            ip_address=context.get("ip_address"),
            user_agent=context.get("user_agent"),
            source=context.get("source", "api"),
        )

        with self._lock:
            self._entries.append(entry)
            purged = 0
            if len(self._entries) > self.max_entries:
                purged = len(self._entries) - self.max_entries
                del self._entries[:purged]
            recent = self._recent(now - self.detector.WINDOW)

        anomalies = self.detector.check(entry, recent)
        for anomaly in anomalies:
            logger.warning(
                "Audit anomaly detected: %s", anomaly.type,
                extra={"anomaly": anomaly.to_dict()},
            )
            with self._lock:
                self._anomalies.append(anomaly)
            self.alerts.send_alert(anomaly)

        if purged and action != "LOGS_PURGED":
            self.log("system", "LOGS_PURGED", {"purged": purged, "max_entries": self.max_entries})

        return entry.id

    def _recent(self, since: datetime) -> List[AuditEntry]:
        """Entries at or after *since*. Caller holds the lock."""
        recent = []
        for entry in reversed(self._entries):
            if entry.timestamp < since:
                break
            recent.append(entry)
        return recent

    def log_security_event(self, user_id: Optional[str], event: str, details: Optional[dict] = None,
                           severity: str = "MEDIUM") -> Optional[str]:
        payload = {"event": event, "severity": severity, **(details or {})}
        return self.log(user_id, "SECURITY_EVENT", payload, level="WARN")

    def log_auth_event(self, user_id: Optional[str], event: str, details: Optional[dict] = None,
                       success: bool = True, context: Optional[dict] = None) -> Optional[str]:
        """Record an authentication outcome. A failed LOGIN is written as LOGIN_FAILED."""
        action = "LOGIN_FAILED" if event.upper() == "LOGIN" and not success else "AUTH_EVENT"
        payload = {"event": event, "success": success, **(details or {})}
        return self.log(user_id, action, payload, level="INFO" if success else "WARN", context=context)

    def log_data_access(self, user_id: Optional[str], resource: str, operation: str,
                        details: Optional[dict] = None) -> Optional[str]:
        payload = {"resource": resource, "operation": operation, **(details or {})}
        return self.log(user_id, "DATA_ACCESS", payload)

    def log_error(self, user_id: Optional[str], error: BaseException,
                  context: Optional[dict] = None) -> Optional[str]:
        payload = {"error_type": type(error).__name__, "message": str(error)}
        return self.log(user_id, "ERROR_OCCURRED", payload, level="ERROR", context=context)

    def log_performance(self, operation: str, duration_ms: float,
                        metrics: Optional[dict] = None) -> Optional[str]:
        payload = {"operation": operation, "duration_ms": duration_ms, **(metrics or {})}
        return self.log("system", "PERFORMANCE_METRIC", payload, level="DEBUG")

    # -- Reads ---------------------------------------------------------------

    def search_logs(
        self,
        level: Optional[str] = None,
        user_id: Optional[str] = None,
        action: Optional[str] = None,
        category: Optional[str] = None,
        start_date: Optional[datetime] = None,
        end_date: Optional[datetime] = None,
        sort_by: str = "timestamp",
        limit: Optional[int] = 100,
    ) -> List[dict]:
        """Filter entries. *level* means "at or above"; *action* is a case-insensitive substring."""
        with self._lock:
            entries = list(self._entries)

        if level:
            floor = LEVELS.get(level.upper(), 0)
            entries = [e for e in entries if LEVELS.get(e.level, 1) >= floor]
        if user_id:
            entries = [e for e in entries if e.user_id == user_id]
        if action:
            needle = action.upper()
            entries = [e for e in entries if needle in e.action.upper()]
        if category:
            entries = [e for e in entries if e.category == category]
        if start_date:
            entries = [e for e in entries if e.timestamp >= start_date]
        if end_date:
            entries = [e for e in entries if e.timestamp <= end_date]

        if sort_by == "severity":
            entries.sort(key=lambda e: (e.severity, e.timestamp), reverse=True)
        else:
            entries.sort(key=lambda e: e.timestamp, reverse=True)

        if limit is not None:
            entries = entries[:limit]
        return [e.to_dict() for e in entries]

    def get_log_stats(self, **filters) -> dict:
        filters["limit"] = None
        logs = self.search_logs(**filters)
        stats: dict = {
            "total": len(logs),
            "by_level": dict(Counter(log["level"] for log in logs)),
            "by_category": dict(Counter(log["category"] for log in logs)),
            "by_user": dict(Counter(log["user_id"] for log in logs)),
            "by_action": dict(Counter(log["action"] for log in logs)),
            "by_severity": {"low": 0, "medium": 0, "high": 0, "critical": 0},
            "time_range": None,
        }
        for log in logs:
            stats["by_severity"][severity_bucket(log["severity"])] += 1
        if logs:
            stamps = sorted(log["timestamp"] for log in logs)
            stats["time_range"] = {"earliest": stamps[0], "latest": stamps[-1]}
        return stats

    def export_logs(self, format: str = "json", **filters) -> str:
        filters["limit"] = None
        logs = self.search_logs(**filters)
        if format == "json":
            return json.dumps(logs, indent=2, default=str)
        if format == "csv":
            out = io.StringIO()
            columns = ["id", "timestamp", "user_id", "action", "level", "category",
                       "severity", "ip_address", "request_id", "details"]
            writer = csv.DictWriter(out, fieldnames=columns, extrasaction="ignore")
            writer.writeheader()
            for log in logs:
                row = dict(log)
                row["details"] = json.dumps(log["details"], default=str)
                writer.writerow(row)
            return out.getvalue()
        raise ValueError(f"Unsupported export format: {format}")

    def cleanup_old_logs(self, days: int = 30) -> int:
        """Drop entries older than *days*. Returns the number removed."""
        cutoff = self._clock() - timedelta(days=days)
        with self._lock:
            before = len(self._entries)
            self._entries = [e for e in self._entries if e.timestamp >= cutoff]
            removed = before - len(self._entries)
        if removed:
            logger.info("Removed %d audit entries older than %d days", removed, days)
        return removed

    def apply_retention_policy(self) -> int:
        """Drop entries older than the retention window of their category."""
        now = self._clock()
        default = RETENTION_DAYS["general"]
        with self._lock:
            before = len(self._entries)
            self._entries = [
                e for e in self._entries
                if now - e.timestamp <= timedelta(days=RETENTION_DAYS.get(e.category, default))
            ]
            removed = before - len(self._entries)
        if removed:
            logger.info("Retention policy removed %d audit entries", removed)
        return removed

    def get_activity_summary(self, hours: int = 24) -> dict:
        since = self._clock() - timedelta(hours=hours)
        with self._lock:
            window = self._recent(since)

        total = len(window)
        errors = sum(1 for e in window if LEVELS.get(e.level, 1) >= LEVELS["ERROR"])
        return {
            "period_hours": hours,
            "total_events": total,
            "unique_users": len({e.user_id for e in window}),
            "error_rate": round(errors / total, 4) if total else 0.0,
            "security_events": sum(1 for e in window if e.category == "security"),
            "top_actions": self._top_actions(window, 5),
        }

    def get_top_actions(self, limit: int = 10, hours: Optional[int] = None) -> List[dict]:
        with self._lock:
            entries = self._recent(self._clock() - timedelta(hours=hours)) if hours else list(self._entries)
        return self._top_actions(entries, limit)

    @staticmethod
    def _top_actions(entries: List[AuditEntry], limit: int) -> List[dict]:
        counts = Counter(e.action for e in entries)
        return [{"action": action, "count": count} for action, count in counts.most_common(limit)]

    def get_anomalies(self, limit: int = 50) -> List[dict]:
        with self._lock:
            anomalies = list(self._anomalies)[-limit:]
        return [a.to_dict() for a in reversed(anomalies)]

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)


_service: Optional[AuditService] = None
_service_lock = threading.Lock()


def get_audit_service() -> AuditService:
    """Process-wide audit service configured from settings."""
    global _service
    with _service_lock:
        if _service is None:
            _service = AuditService(
                max_entries=settings.audit_max_entries,
                enabled=settings.audit_enabled,
            )
        return _service


def reset_audit_service(service: Optional[AuditService] = None) -> None:
    """Replace (or drop) the process-wide instance. Used by tests."""
    global _service
    with _service_lock:
        _service = service
