"""
Structured error taxonomy.

Every domain failure is a CourseCoveError carrying a machine-readable
code, a human message and the HTTP status it maps to. Routes let these
propagate; the handler registered in main.py renders them as

    {"error": {"code": "...", "message": "..."}}

Page guards use RedirectRequired instead, rendered as a 307.
"""

import logging
from typing import Any, Dict, Optional

from fastapi import Request, status
from fastapi.responses import JSONResponse, RedirectResponse

logger = logging.getLogger(__name__)


class CourseCoveError(Exception):
    """Base exception for all structured errors."""

    code: str = "INTERNAL_SERVER_ERROR"
    http_status: int = status.HTTP_500_INTERNAL_SERVER_ERROR
    default_message: str = "Internal server error"
    retryable: bool = False

    def __init__(self, message: Optional[str] = None, **details: Any):
        self.message = message or self.default_message
        self.details = details
        super().__init__(self.message)

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for JSON response."""
        return {"code": self.code, "message": self.message}


class Unauthenticated(CourseCoveError):
    code = "UNAUTHORIZED"
    http_status = status.HTTP_401_UNAUTHORIZED
    default_message = "You must be logged in to perform this action"


class MissingTenantContext(CourseCoveError):
    code = "FORBIDDEN"
    http_status = status.HTTP_403_FORBIDDEN
    default_message = "You must be part of an organization to perform this action"


class InsufficientRole(CourseCoveError):
    code = "FORBIDDEN"
    http_status = status.HTTP_403_FORBIDDEN
    default_message = "You do not have permission to perform this action"


class RateLimited(CourseCoveError):
    code = "TOO_MANY_REQUESTS"
    http_status = status.HTTP_429_TOO_MANY_REQUESTS
    default_message = "Too many requests"

    def __init__(self, retry_after: int, message: Optional[str] = None):
        self.retry_after = max(int(retry_after), 0)
        super().__init__(
            message or f"Too many requests. Try again in {self.retry_after} seconds."
        )

    def to_dict(self) -> Dict[str, Any]:
        body = super().to_dict()
        body["retry_after"] = self.retry_after
        return body


class NotFound(CourseCoveError):
    code = "NOT_FOUND"
    http_status = status.HTTP_404_NOT_FOUND
    default_message = "Resource not found"


class Conflict(CourseCoveError):
    code = "CONFLICT"
    http_status = status.HTTP_409_CONFLICT
    default_message = "The resource was modified by someone else. Reload and try again."


class DependencyNotReady(CourseCoveError):
    """Referenced identity rows have not been synced yet. Retryable."""
    code = "DEPENDENCY_NOT_READY"
    http_status = status.HTTP_503_SERVICE_UNAVAILABLE
    default_message = "Referenced records are not available yet"
    retryable = True


class ValidationFailed(CourseCoveError):
    code = "BAD_REQUEST"
    http_status = status.HTTP_400_BAD_REQUEST
    default_message = "Invalid input"


class Expired(CourseCoveError):
    code = "PRECONDITION_FAILED"
    http_status = status.HTTP_410_GONE
    default_message = "The retention window has passed"


class RestrictedDelete(CourseCoveError):
    code = "CONFLICT"
    http_status = status.HTTP_409_CONFLICT
    default_message = "Record is still referenced and cannot be deleted"

    def __init__(self, message: Optional[str] = None, blocked_count: int = 0):
        self.blocked_count = blocked_count
        super().__init__(message, blocked_count=blocked_count)


class RedirectRequired(Exception):
    """Raised by page guards; rendered as a temporary redirect."""

    def __init__(self, location: str, reason: str):
        self.location = location
        self.reason = reason
        super().__init__(f"Redirect to {location}: {reason}")


async def coursecove_error_handler(request: Request, exc: CourseCoveError) -> JSONResponse:
    """FastAPI exception handler for CourseCoveError."""
    log = logger.warning if exc.http_status < 500 else logger.error
    log(
        "Request failed",
        extra={
            "path": request.url.path,
            "code": exc.code,
            "error_type": type(exc).__name__,
            "status_code": exc.http_status,
        },
    )
    headers = None
    if isinstance(exc, RateLimited):
        headers = {"Retry-After": str(exc.retry_after)}
    return JSONResponse(
        status_code=exc.http_status,
        content={"error": exc.to_dict()},
        headers=headers,
    )


async def redirect_required_handler(request: Request, exc: RedirectRequired) -> RedirectResponse:
    logger.info(
        "Page guard redirect",
        extra={"path": request.url.path, "location": exc.location, "reason": exc.reason},
    )
    return RedirectResponse(url=exc.location, status_code=status.HTTP_307_TEMPORARY_REDIRECT)
