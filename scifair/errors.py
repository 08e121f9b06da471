"""
scifair/errors.py
Centralized error handling for the judging engine and its HTTP surface.

Engine operations (allocation, scoring, publication) never use exceptions
for rule failures. They return an OperationResult carrying an ErrorKind, a
machine-readable code and a human-readable reason that the UI renders
verbatim. The HTTP layer converts failed results into APIError responses.

ERROR RESPONSE STRUCTURE:
{
    "success": false,
    "error": "ErrorType",
    "message": "Human-readable description",
    "code": "UNIQUE_ERROR_CODE",
    "kind": "INVARIANT_VIOLATION",
    "details": {} (optional)
}

HTTP STATUS CODE DISCIPLINE:
- 401: Authentication missing or expired
- 403: Jurisdiction / privilege failures
- 404: NOT_FOUND
- 409: INVARIANT_VIOLATION, PRECONDITION_NOT_MET, CONCURRENCY_CONFLICT
- 422: VALIDATION_ERROR (score input, request bodies)
- 500: NEVER caused by user input (internal only)
"""

import logging
import uuid
from dataclasses import dataclass, field
from enum import Enum
from typing import Optional, Dict, Any

from fastapi import status
from fastapi.responses import JSONResponse
from pydantic import BaseModel

logger = logging.getLogger(__name__)


class ErrorKind(str, Enum):
    """Discriminated failure kinds returned by engine operations."""
    VALIDATION_ERROR = "VALIDATION_ERROR"
    INVARIANT_VIOLATION = "INVARIANT_VIOLATION"
    PRECONDITION_NOT_MET = "PRECONDITION_NOT_MET"
    CONCURRENCY_CONFLICT = "CONCURRENCY_CONFLICT"
    NOT_FOUND = "NOT_FOUND"


class ErrorCode:
    """Unique error codes for machine-readable error handling"""

    VALIDATION_ERROR = "VALIDATION_ERROR"
    INVALID_INPUT = "INVALID_INPUT"
    INVALID_SCORE = "INVALID_SCORE"
    MISSING_FEEDBACK = "MISSING_FEEDBACK"

    AUTH_REQUIRED = "AUTH_REQUIRED"
    AUTH_INVALID = "AUTH_INVALID"

    FORBIDDEN = "FORBIDDEN"
    JURISDICTION_MISMATCH = "JURISDICTION_MISMATCH"
    LEVEL_NOT_PERMITTED = "LEVEL_NOT_PERMITTED"
    SUPER_ADMIN_REQUIRED = "SUPER_ADMIN_REQUIRED"
    NOT_ASSIGNED_JUDGE = "NOT_ASSIGNED_JUDGE"

    NOT_FOUND = "NOT_FOUND"
    PROJECT_NOT_FOUND = "PROJECT_NOT_FOUND"
    JUDGE_NOT_FOUND = "JUDGE_NOT_FOUND"
    ASSIGNMENT_NOT_FOUND = "ASSIGNMENT_NOT_FOUND"
    PUBLICATION_NOT_FOUND = "PUBLICATION_NOT_FOUND"

    # Allocator invariants
    SECTION_CAPACITY_EXCEEDED = "SECTION_CAPACITY_EXCEEDED"
    SECTION_ALREADY_HELD = "SECTION_ALREADY_HELD"
    DUPLICATE_ASSIGNMENT = "DUPLICATE_ASSIGNMENT"
    ALREADY_COORDINATOR = "ALREADY_COORDINATOR"
    COORDINATOR_EXISTS = "COORDINATOR_EXISTS"
    COORDINATOR_HAS_OTHER_ASSIGNMENTS = "COORDINATOR_HAS_OTHER_ASSIGNMENTS"
    ADMIN_JURISDICTION_CONFLICT = "ADMIN_JURISDICTION_CONFLICT"
    PRIOR_LEVEL_CONFLICT = "PRIOR_LEVEL_CONFLICT"
    NO_ACTIVE_PROJECTS = "NO_ACTIVE_PROJECTS"
    NOT_ASSIGNED = "NOT_ASSIGNED"

    # Scoring
    INVALID_STATE = "INVALID_STATE"
    SESSION_TOO_SHORT = "SESSION_TOO_SHORT"
    SESSION_EXPIRED = "SESSION_EXPIRED"
    OUTSIDE_JUDGING_HOURS = "OUTSIDE_JUDGING_HOURS"
    LEVEL_ARCHIVED = "LEVEL_ARCHIVED"

    # Publication
    EMPTY_COHORT = "EMPTY_COHORT"
    PROJECTS_NOT_FULLY_JUDGED = "PROJECTS_NOT_FULLY_JUDGED"
    ARBITRATION_PENDING = "ARBITRATION_PENDING"
    TIES_UNRESOLVED = "TIES_UNRESOLVED"
    ALREADY_PUBLISHED = "ALREADY_PUBLISHED"
    NOT_PUBLISHED = "NOT_PUBLISHED"
    PUBLICATION_FINAL = "PUBLICATION_FINAL"
    NEXT_LEVEL_STARTED = "NEXT_LEVEL_STARTED"
    CONCURRENT_MODIFICATION = "CONCURRENT_MODIFICATION"
    STATE_TRANSITION_INVALID = "STATE_TRANSITION_INVALID"

    RATE_LIMITED = "RATE_LIMITED"
    INTERNAL_ERROR = "INTERNAL_ERROR"


# Codes that mean "you may not do this" rather than "this cannot be done now"
FORBIDDEN_CODES = {
    ErrorCode.FORBIDDEN,
    ErrorCode.JURISDICTION_MISMATCH,
    ErrorCode.LEVEL_NOT_PERMITTED,
    ErrorCode.SUPER_ADMIN_REQUIRED,
    ErrorCode.NOT_ASSIGNED_JUDGE,
}


@dataclass
class OperationResult:
    """
    Outcome of an engine operation.

    On success `data` carries the operation's payload; on failure `kind`,
    `code` and `message` describe exactly why nothing was written.
    """
    success: bool
    message: str = ""
    kind: Optional[ErrorKind] = None
    code: Optional[str] = None
    details: Dict[str, Any] = field(default_factory=dict)
    data: Any = None

    @classmethod
    def ok(cls, message: str = "", data: Any = None, **details) -> "OperationResult":
        return cls(success=True, message=message, data=data, details=details)

    @classmethod
    def fail(
        cls,
        kind: ErrorKind,
        message: str,
        code: str,
        **details
    ) -> "OperationResult":
        return cls(success=False, message=message, kind=kind, code=code, details=details)

    def __bool__(self) -> bool:
        return self.success

    def to_dict(self) -> Dict[str, Any]:
        result = {
            "success": self.success,
            "message": self.message,
        }
        if not self.success:
            result["kind"] = self.kind.value if self.kind else None
            result["code"] = self.code
        if self.details:
            result["details"] = self.details
        return result


class ErrorResponse(BaseModel):
    """Standard error response model"""
    success: bool = False
    error: str
    message: str
    code: str
    kind: Optional[str] = None
    details: Optional[Dict[str, Any]] = None


class APIError(Exception):
    """Base API exception with consistent structure"""

    def __init__(
        self,
        status_code: int,
        error: str,
        message: str,
        code: str,
        details: Optional[Dict[str, Any]] = None,
        kind: Optional[ErrorKind] = None
    ):
        self.status_code = status_code
        self.error = error
        self.message = message
        self.code = code
        self.details = details
        self.kind = kind
        super().__init__(message)

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary"""
        result = {
            "success": False,
            "error": self.error,
            "message": self.message,
            "code": self.code
        }
        if self.kind:
            result["kind"] = self.kind.value
        if self.details:
            result["details"] = self.details
        return result

    def to_response(self) -> JSONResponse:
        """Convert to FastAPI JSONResponse"""
        return JSONResponse(status_code=self.status_code, content=self.to_dict())


class UnauthorizedError(APIError):
    """401 Unauthorized - Authentication required"""
    def __init__(self, message: str = "Authentication required", code: str = ErrorCode.AUTH_REQUIRED):
        super().__init__(
            status_code=status.HTTP_401_UNAUTHORIZED,
            error="Unauthorized",
            message=message,
            code=code
        )


class ForbiddenError(APIError):
    """403 Forbidden - Jurisdiction or privilege failure"""
    def __init__(self, message: str, code: str = ErrorCode.FORBIDDEN, details: Optional[Dict] = None,
                 kind: Optional[ErrorKind] = None):
        super().__init__(
            status_code=status.HTTP_403_FORBIDDEN,
            error="Forbidden",
            message=message,
            code=code,
            details=details,
            kind=kind
        )


class NotFoundError(APIError):
    """404 Not Found - Resource does not exist"""
    def __init__(self, resource: str, identifier: Any = None, code: str = ErrorCode.NOT_FOUND,
                 message: Optional[str] = None):
        if message is None:
            message = f"{resource} not found"
            if identifier is not None:
                message = f"{resource} with id '{identifier}' not found"
        super().__init__(
            status_code=status.HTTP_404_NOT_FOUND,
            error="Not Found",
            message=message,
            code=code,
            kind=ErrorKind.NOT_FOUND
        )


class ConflictError(APIError):
    """409 Conflict - Rule, precondition or concurrency failure"""
    def __init__(self, message: str, code: str, kind: ErrorKind, details: Optional[Dict] = None):
        error = {
            ErrorKind.INVARIANT_VIOLATION: "Invariant Violation",
            ErrorKind.PRECONDITION_NOT_MET: "Precondition Not Met",
            ErrorKind.CONCURRENCY_CONFLICT: "Concurrency Conflict",
        }.get(kind, "Conflict")
        super().__init__(
            status_code=status.HTTP_409_CONFLICT,
            error=error,
            message=message,
            code=code,
            details=details,
            kind=kind
        )


class ValidationFailedError(APIError):
    """422 Unprocessable Entity - Rejected input fields"""
    def __init__(self, message: str, code: str = ErrorCode.VALIDATION_ERROR, details: Optional[Dict] = None):
        super().__init__(
            status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
            error="Validation Error",
            message=message,
            code=code,
            details=details,
            kind=ErrorKind.VALIDATION_ERROR
        )


class InternalError(APIError):
    """500 Internal Server Error - Use sparingly, only for true internal failures"""
    def __init__(self, message: str = "An internal error occurred", log_id: Optional[str] = None):
        details = {"log_id": log_id} if log_id else None
        super().__init__(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            error="Internal Error",
            message=message,
            code=ErrorCode.INTERNAL_ERROR,
            details=details
        )


def api_error_from_result(result: OperationResult) -> APIError:
    """Map a failed OperationResult onto the HTTP error family."""
    details = result.details or None
    code = result.code or ErrorCode.INTERNAL_ERROR
    if result.kind == ErrorKind.NOT_FOUND:
        return NotFoundError("Resource", code=code, message=result.message)
    if code in FORBIDDEN_CODES:
        return ForbiddenError(result.message, code=code, details=details, kind=result.kind)
    if result.kind == ErrorKind.VALIDATION_ERROR:
        return ValidationFailedError(result.message, code=code, details=details)
    if result.kind in (
        ErrorKind.INVARIANT_VIOLATION,
        ErrorKind.PRECONDITION_NOT_MET,
        ErrorKind.CONCURRENCY_CONFLICT,
    ):
        return ConflictError(result.message, code=code, kind=result.kind, details=details)
    return InternalError(result.message or "An internal error occurred")


def raise_for_result(result: OperationResult) -> OperationResult:
    """Return a successful result unchanged, raise its APIError otherwise."""
    if not result.success:
        raise api_error_from_result(result)
    return result


def log_internal_error(error: Exception, context: str = "") -> InternalError:
    """Log an internal error and build a safe 500 error carrying a log id."""
    log_id = str(uuid.uuid4())[:8]
    logger.error(f"[{log_id}] Internal error in {context}: {type(error).__name__}: {str(error)}")
    return InternalError("An internal error occurred. Please try again later.", log_id=log_id)
