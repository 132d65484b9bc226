"""StaffHub errors. Each maps to one HTTP status and one machine-readable code."""

from enum import Enum
from typing import Any, Dict, Optional


class ErrorCode(str, Enum):
    """Values of the ``error`` field in error responses."""

    # Lookups
    NOT_FOUND = "NOT_FOUND"
    FOLDER_NOT_FOUND = "FOLDER_NOT_FOUND"
    DOCUMENT_NOT_FOUND = "DOCUMENT_NOT_FOUND"
    PLAN_NOT_FOUND = "PLAN_NOT_FOUND"
    USER_NOT_FOUND = "USER_NOT_FOUND"

    # Input
    VALIDATION_ERROR = "VALIDATION_ERROR"
    UNSUPPORTED_FILE_TYPE = "UNSUPPORTED_FILE_TYPE"

    # Plan / billing
    PLAN_LIMIT_EXCEEDED = "PLAN_LIMIT_EXCEEDED"
    NO_ACTIVE_PLAN = "NO_ACTIVE_PLAN"

    # Persistence
    DATABASE_ERROR = "DATABASE_ERROR"

    # Webhooks
    WEBHOOK_VALIDATION_FAILED = "WEBHOOK_VALIDATION_FAILED"

    # Identity and throttling
    UNAUTHORIZED = "UNAUTHORIZED"
    FORBIDDEN = "FORBIDDEN"
    MFA_REQUIRED = "MFA_REQUIRED"
    RATE_LIMITED = "RATE_LIMITED"

    # State
    CONFLICT = "CONFLICT"

    # Upstream services
    DRIVE_ERROR = "DRIVE_ERROR"
    LLM_UNAVAILABLE = "LLM_UNAVAILABLE"
    LLM_RESPONSE_INVALID = "LLM_RESPONSE_INVALID"

    # Fallback
    INTERNAL_ERROR = "INTERNAL_ERROR"


class StaffHubException(Exception):
    """Base for every error the API turns into a JSON response.

    Subclasses set ``error_code`` and ``status_code`` as class attributes;
    both can still be overridden per instance.
    """

    error_code: ErrorCode = ErrorCode.INTERNAL_ERROR
    status_code: int = 500

    def __init__(
        self,
        message: str,
        error_code: Optional[ErrorCode] = None,
        status_code: Optional[int] = None,
        details: Optional[Dict[str, Any]] = None,
    ):
        super().__init__(message)
        self.message = message
        if error_code is not None:
            self.error_code = error_code
        if status_code is not None:
            self.status_code = status_code
        self.details = details or {}

    def to_dict(self) -> Dict[str, Any]:
        return {"error": self.error_code.value, "message": self.message, "details": self.details}


class NotFoundError(StaffHubException):
    """Missing row, or a row owned by another company."""

    error_code = ErrorCode.NOT_FOUND
    status_code = 404
    resource = "Resource"

    def __init__(self, *args: Any):
        # NotFoundError("Company", id) or SubclassNotFound(id)
        if len(args) == 2:
            self.resource, resource_id = args
        else:
            (resource_id,) = args
        super().__init__(
            f"{self.resource} not found: {resource_id}",
            details={"resource": self.resource, "id": str(resource_id)},
        )


class FolderNotFoundError(NotFoundError):
    error_code = ErrorCode.FOLDER_NOT_FOUND
    resource = "Folder"


class DocumentNotFoundError(NotFoundError):
    error_code = ErrorCode.DOCUMENT_NOT_FOUND
    resource = "Document"


class PlanNotFoundError(NotFoundError):
    error_code = ErrorCode.PLAN_NOT_FOUND
    resource = "Plan"


class UserNotFoundError(NotFoundError):
    error_code = ErrorCode.USER_NOT_FOUND
    resource = "User"


class ValidationError(StaffHubException):
    error_code = ErrorCode.VALIDATION_ERROR
    status_code = 400

    def __init__(self, message: str, field: Optional[str] = None):
        super().__init__(message, details={"field": field} if field else None)


class UnsupportedFileTypeError(StaffHubException):
    """Extension on the block list, or missing from the allow list."""

    error_code = ErrorCode.UNSUPPORTED_FILE_TYPE
    status_code = 415

    def __init__(self, filename: str, reason: str):
        super().__init__(
            f"File type not allowed: {filename} ({reason})",
            details={"filename": filename, "reason": reason},
        )


class PlanLimitExceededError(StaffHubException):
    error_code = ErrorCode.PLAN_LIMIT_EXCEEDED
    status_code = 402

    def __init__(self, limit: str, current: int, maximum: int):
        super().__init__(
            f"Plan limit reached for {limit}: {current}/{maximum}",
            details={"limit": limit, "current": current, "maximum": maximum},
        )


class NoActivePlanError(StaffHubException):
    error_code = ErrorCode.NO_ACTIVE_PLAN
    status_code = 402

    def __init__(self, user_id: str):
        super().__init__(
            "An active plan is required for this operation",
            details={"user_id": user_id},
        )


class WebhookValidationError(StaffHubException):
    """Bad signature, token or verify handshake on an inbound webhook."""

    error_code = ErrorCode.WEBHOOK_VALIDATION_FAILED
    status_code = 401

    def __init__(self, message: str = "Invalid webhook signature"):
        super().__init__(message)


class AuthenticationError(StaffHubException):
    error_code = ErrorCode.UNAUTHORIZED
    status_code = 401

    def __init__(self, message: str = "Authentication required"):
        super().__init__(message)


class MFARequiredError(StaffHubException):
    """Password accepted, second factor still missing or wrong."""

    error_code = ErrorCode.MFA_REQUIRED
    status_code = 401

    def __init__(self, message: str = "Multi-factor verification required"):
        super().__init__(message)


class ForbiddenError(StaffHubException):
    error_code = ErrorCode.FORBIDDEN
    status_code = 403

    def __init__(self, message: str = "Not allowed for this account"):
        super().__init__(message)


class ConflictError(StaffHubException):
    error_code = ErrorCode.CONFLICT
    status_code = 409

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(message, details=details)


class DriveError(StaffHubException):
    """Google Drive (or the local substitute) rejected a request."""

    error_code = ErrorCode.DRIVE_ERROR
    status_code = 502

    def __init__(self, message: str, status: Optional[int] = None, operation: Optional[str] = None):
        details: Dict[str, Any] = {}
        if status is not None:
            details["upstream_status"] = status
        if operation:
            details["operation"] = operation
        super().__init__(message, details=details)


class LLMUnavailableError(StaffHubException):
    """No usable LLM: missing key or the circuit is open."""

    error_code = ErrorCode.LLM_UNAVAILABLE
    status_code = 503

    def __init__(self, message: str = "AI service unavailable. Configure GROQ_API_KEY."):
        super().__init__(message)


class LLMResponseError(StaffHubException):
    """The LLM call failed or returned something unusable."""

    error_code = ErrorCode.LLM_RESPONSE_INVALID
    status_code = 502

    def __init__(self, message: str, operation: Optional[str] = None):
        super().__init__(message, details={"operation": operation} if operation else None)


class DatabaseError(StaffHubException):
    error_code = ErrorCode.DATABASE_ERROR

    def __init__(self, message: str, original_error: Optional[Exception] = None):
        super().__init__(
            message,
            details={"original_error": str(original_error)} if original_error else None,
        )
