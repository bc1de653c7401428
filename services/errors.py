"""
Error taxonomy for the exam attempt core.

Services raise these; the application maps each one to a structured JSON
error response with the status code declared on the class.
"""
from typing import Any, Dict, Optional

from fastapi import status


class ExamServiceError(Exception):
    """Base error for the exam attempt core"""

    status_code: int = status.HTTP_500_INTERNAL_SERVER_ERROR
    error_code: str = "INTERNAL_ERROR"

    def __init__(
        self,
        message: str,
        error_code: Optional[str] = None,
        extra: Optional[Dict[str, Any]] = None,
        headers: Optional[Dict[str, str]] = None,
    ):
        super().__init__(message)
        self.message = message
        if error_code:
            self.error_code = error_code
        self.extra = extra or {}
        self.headers = headers

    def to_dict(self) -> Dict[str, Any]:
        body = {"error": self.message, "error_code": self.error_code}
        body.update(self.extra)
        return body


class UnauthorizedError(ExamServiceError):
    """Missing or invalid credential"""
    status_code = status.HTTP_401_UNAUTHORIZED
    error_code = "UNAUTHORIZED"


class ForbiddenError(ExamServiceError):
    """Valid credential, wrong ownership or role"""
    status_code = status.HTTP_403_FORBIDDEN
    error_code = "FORBIDDEN"


class NotFoundError(ExamServiceError):
    status_code = status.HTTP_404_NOT_FOUND
    error_code = "NOT_FOUND"


class BadRequestError(ExamServiceError):
    status_code = status.HTTP_400_BAD_REQUEST
    error_code = "BAD_REQUEST"


class InvalidStateError(ExamServiceError):
    """Operation illegal for the attempt's current status"""
    status_code = status.HTTP_409_CONFLICT
    error_code = "INVALID_STATE"

    def __init__(self, message: str, current_status: Optional[str] = None, **kwargs):
        extra = kwargs.pop("extra", None) or {}
        if current_status is not None:
            extra["status"] = current_status
        super().__init__(message, extra=extra, **kwargs)


class RateLimitExceededError(ExamServiceError):
    status_code = status.HTTP_429_TOO_MANY_REQUESTS
    error_code = "RATE_LIMITED"

    def __init__(self, action: str, reset_time_ms: int, now_ms: int):
        retry_after = max(1, -(-(reset_time_ms - now_ms) // 1000))
        super().__init__(
            f"Too many {action.replace('_', ' ')} requests. Try again in {retry_after} seconds.",
            extra={"action": action, "reset_time": reset_time_ms},
            headers={
                "Retry-After": str(retry_after),
                "X-RateLimit-Remaining": "0",
                "X-RateLimit-Reset": str(reset_time_ms),
            },
        )


class TransientStoreFailure(ExamServiceError):
    """The persistence layer raised; reported as a generic internal failure"""
    status_code = status.HTTP_500_INTERNAL_SERVER_ERROR
    error_code = "STORE_FAILURE"

    def __init__(self, operation: str):
        super().__init__(f"Failed to {operation}", extra={"operation": operation})
