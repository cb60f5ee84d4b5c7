from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Generic, Optional, TypeVar, Union

T = TypeVar("T")


class ErrorCodes:
    """Stable ``CATEGORY.REASON`` codes surfaced in API error bodies.

    Each code has a message in every locale catalog under
    ``service/locales``; the HTTP status travels separately on the failure.
    """

    class AUTH:
        INVALID_CREDENTIALS = "AUTH.INVALID_CREDENTIALS"
        EMAIL_NOT_CONFIRMED = "AUTH.EMAIL_NOT_CONFIRMED"
        TOKEN_EXPIRED = "AUTH.TOKEN_EXPIRED"
        INVALID_TOKEN = "AUTH.INVALID_TOKEN"
        RATE_LIMIT_EXCEEDED = "AUTH.RATE_LIMIT_EXCEEDED"
        USER_NOT_FOUND = "AUTH.USER_NOT_FOUND"
        EMAIL_ALREADY_EXISTS = "AUTH.EMAIL_ALREADY_EXISTS"
        EMAIL_ALREADY_CONFIRMED = "AUTH.EMAIL_ALREADY_CONFIRMED"
        NEW_PASSWORD_SAME_AS_CURRENT = "AUTH.NEW_PASSWORD_SAME_AS_CURRENT"
        CONFIRMATION_TOKEN_EXPIRED = "AUTH.CONFIRMATION_TOKEN_EXPIRED"
        UNAUTHORIZED = "AUTH.UNAUTHORIZED"
        FORBIDDEN = "AUTH.FORBIDDEN"
        OAUTH_FAILED = "AUTH.OAUTH_FAILED"

    class VALIDATION:
        REQUIRED_FIELD = "VALIDATION.REQUIRED_FIELD"
        INVALID_EMAIL = "VALIDATION.INVALID_EMAIL"
        PASSWORD_TOO_SHORT = "VALIDATION.PASSWORD_TOO_SHORT"
        PASSWORD_MISMATCH = "VALIDATION.PASSWORD_MISMATCH"
        PASSWORD_TOO_WEAK = "VALIDATION.PASSWORD_TOO_WEAK"
        FAILED = "VALIDATION.FAILED"
        INVALID_REQUEST = "VALIDATION.INVALID_REQUEST"
        INVALID_NAME = "VALIDATION.INVALID_NAME"

    class DATABASE:
        UNIQUE_CONSTRAINT_VIOLATION = "DATABASE.UNIQUE_CONSTRAINT_VIOLATION"
        RECORD_NOT_FOUND = "DATABASE.RECORD_NOT_FOUND"
        UNKNOWN_ERROR = "DATABASE.UNKNOWN_ERROR"

    class SYSTEM:
        UNKNOWN_ERROR = "SYSTEM.UNKNOWN_ERROR"
        NOT_FOUND = "SYSTEM.NOT_FOUND"
        EMAIL_DELIVERY_FAILED = "SYSTEM.EMAIL_DELIVERY_FAILED"
        SERVICE_UNAVAILABLE = "SYSTEM.SERVICE_UNAVAILABLE"

    class MEDIA:
        UPLOAD_FAILED = "MEDIA.UPLOAD_FAILED"
        DELETE_FAILED = "MEDIA.DELETE_FAILED"
        INVALID_FILE = "MEDIA.INVALID_FILE"


@dataclass(frozen=True)
class Failure:
    """An expected failure branch of a service operation."""

    code: str
    status: int
    params: dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class Ok(Generic[T]):
    value: T

    @property
    def ok(self) -> bool:
        return True


@dataclass(frozen=True)
class Err:
    failure: Failure

    @property
    def ok(self) -> bool:
        return False


Result = Union[Ok[T], Err]


def fail(code: str, status: int, **params: Any) -> Err:
    return Err(Failure(code=code, status=status, params=params))


class ServiceError(Exception):
    """Base class for exceptions raised by collaborators outside the core flows.

    The session lifecycle returns ``Err`` values; helpers that talk to external
    systems (image host, mail relay) raise these instead. ``error_code`` is one
    of :class:`ErrorCodes` and ``detail`` feeds the message interpolation.
    """

    status_code: int = 400
    error_code: str = ErrorCodes.VALIDATION.INVALID_REQUEST

    def __init__(
        self,
        message: str,
        *,
        status_code: Optional[int] = None,
        detail: Optional[dict] = None,
        error_code: Optional[str] = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        if status_code is not None:
            self.status_code = status_code
        if error_code is not None:
            self.error_code = error_code
        self.detail = detail or {}

    def to_failure(self) -> Failure:
        return Failure(code=self.error_code, status=self.status_code, params=dict(self.detail))


class ValidationError(ServiceError):
    """Request content rejected by a collaborator (400)."""
    status_code = 400
    error_code = ErrorCodes.VALIDATION.INVALID_REQUEST


class AuthenticationError(ServiceError):
    """Authentication failed or missing (401)."""
    status_code = 401
    error_code = ErrorCodes.AUTH.UNAUTHORIZED


class ServerError(ServiceError):
    """External dependency failed (500)."""
    status_code = 500
    error_code = ErrorCodes.SYSTEM.UNKNOWN_ERROR


__all__ = [
    "ErrorCodes",
    "Failure",
    "Ok",
    "Err",
    "Result",
    "fail",
    "ServiceError",
    "ValidationError",
    "AuthenticationError",
    "ServerError",
]
