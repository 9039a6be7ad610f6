from __future__ import annotations

from enum import Enum
from typing import Any, Dict, Optional


class ServiceError(Exception):
    """Base class for service-layer exceptions mapped to HTTP responses.

    Each subclass pins an HTTP ``status_code`` and a stable ``error_code``:
    - unauthorized (401)
    - forbidden (403)
    - not_found (404)
    - validation_error (400)
    - conflict (409)
    - rate_limited (429)
    - server_error (500)
    - service_unavailable (503)
    """

    status_code: int = 400
    error_code: str = "validation_error"

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


class ValidationError(ServiceError):
    """Request validation failed (400)."""
    status_code = 400
    error_code = "validation_error"


class AuthenticationError(ServiceError):
    """Authentication failed or missing (401)."""
    status_code = 401
    error_code = "unauthorized"


class ForbiddenError(ServiceError):
    """Access denied (403)."""
    status_code = 403
    error_code = "forbidden"


class NotFoundError(ServiceError):
    """Requested resource not found (404)."""
    status_code = 404
    error_code = "not_found"


class ConflictError(ServiceError):
    """Resource conflict, e.g. duplicate registration (409)."""
    status_code = 409
    error_code = "conflict"


class RateLimitedError(ServiceError):
    """Rate limit exceeded (429)."""
    status_code = 429
    error_code = "rate_limited"


class ServerError(ServiceError):
    """Internal server error (500)."""
    status_code = 500
    error_code = "server_error"


class ServiceUnavailableError(ServiceError):
    """A dependency is temporarily unavailable; safe to retry (503)."""
    status_code = 503
    error_code = "service_unavailable"


class RejectionKind(str, Enum):
    INVALID_TOKEN = "invalid_token"
    EXPIRED_TOKEN = "token_expired"
    BLACKLISTED = "token_revoked"
    SESSION_TERMINATED = "session_terminated"
    SUBJECT_NOT_FOUND = "subject_not_found"
    EMAIL_NOT_VERIFIED = "email_not_verified"
    INSUFFICIENT_ROLE = "insufficient_role"
    INSUFFICIENT_PERMISSION = "insufficient_permission"
    PROVIDER_UNREACHABLE = "provider_unreachable"


class AuthRejection(ServiceError):
    """An authorization decision that ended in refusal.

    ``kind`` doubles as the wire ``error_code``; ``retryable`` is only true for
    provider outages.
    """

    kind: RejectionKind = RejectionKind.INVALID_TOKEN
    status_code = 401
    retryable = False
    default_message = "authentication required"

    def __init__(self, message: Optional[str] = None, *, detail: Optional[dict] = None) -> None:
        super().__init__(
            message or self.default_message,
            detail=detail,
            error_code=self.kind.value,
        )

    def to_response(self) -> Dict[str, Any]:
        return {
            "status": self.status_code,
            "body": {"error": self.message, "code": self.kind.value},
        }


class InvalidToken(AuthRejection):
    kind = RejectionKind.INVALID_TOKEN
    default_message = "invalid token"


class ExpiredToken(AuthRejection):
    kind = RejectionKind.EXPIRED_TOKEN
    default_message = "token expired"


class Blacklisted(AuthRejection):
    kind = RejectionKind.BLACKLISTED
    default_message = "token has been revoked"


class SessionTerminated(AuthRejection):
    kind = RejectionKind.SESSION_TERMINATED
    default_message = "session is no longer active"


class SubjectNotFound(AuthRejection):
    kind = RejectionKind.SUBJECT_NOT_FOUND
    default_message = "subject has no role assignment"


class EmailNotVerified(AuthRejection):
    kind = RejectionKind.EMAIL_NOT_VERIFIED
    status_code = 403
    default_message = "email address not verified"


class InsufficientRole(AuthRejection):
    kind = RejectionKind.INSUFFICIENT_ROLE
    status_code = 403
    default_message = "role not permitted for this operation"


class InsufficientPermission(AuthRejection):
    kind = RejectionKind.INSUFFICIENT_PERMISSION
    status_code = 403
    default_message = "missing required permission"


class ProviderUnreachable(AuthRejection):
    kind = RejectionKind.PROVIDER_UNREACHABLE
    status_code = 503
    retryable = True
    default_message = "identity provider unavailable, retry later"


__all__ = [
    "ServiceError",
    "ValidationError",
    "AuthenticationError",
    "ForbiddenError",
    "NotFoundError",
    "ConflictError",
    "RateLimitedError",
    "ServerError",
    "ServiceUnavailableError",
    "RejectionKind",
    "AuthRejection",
    "InvalidToken",
    "ExpiredToken",
    "Blacklisted",
    "SessionTerminated",
    "SubjectNotFound",
    "EmailNotVerified",
    "InsufficientRole",
    "InsufficientPermission",
    "ProviderUnreachable",
]
