from __future__ import annotations

from typing import Optional


class ServiceError(Exception):
    """Base class for service-layer exceptions mapped to HTTP responses.

    Each class carries an HTTP ``status_code`` and a stable ``error_code``:
    - unauthorized (401)
    - forbidden (403)
    - not_found (404)
    - validation_error (400)
    - conflict (409)
    - upstream_error (502)
    - server_error (500)
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
    """Authentication failed or missing (401).

    ``reason`` distinguishes the failure kind for logs; clients only ever see
    ``unauthorized``.
    """
    status_code = 401
    error_code = "unauthorized"
    reason = "unauthenticated"


class TokenMalformedError(AuthenticationError):
    reason = "token_malformed"


class TokenExpiredError(AuthenticationError):
    reason = "token_expired"


class SessionRevokedError(AuthenticationError):
    reason = "session_revoked"


class ForbiddenError(ServiceError):
    """Access denied (403)."""
    status_code = 403
    error_code = "forbidden"


class ReadOnlyRootError(ForbiddenError):
    """The root folder cannot be renamed, moved or deleted."""


class NotFoundError(ServiceError):
    """Requested resource not found (404)."""
    status_code = 404
    error_code = "not_found"


class RemoteNotFoundError(NotFoundError):
    """The video provider cannot resolve the remote id."""
    error_code = "remote_not_found"


class ConflictError(ServiceError):
    """Resource conflict, e.g., duplicate creation (409)."""
    status_code = 409
    error_code = "conflict"


class IdentityConflictError(ConflictError):
    error_code = "identity_conflict"


class NameConflictError(ConflictError):
    error_code = "name_conflict"


class FolderNotEmptyError(ConflictError):
    error_code = "folder_not_empty"


class CycleDetectedError(ValidationError):
    """A folder cannot be moved into itself or one of its descendants."""
    error_code = "cycle_detected"


class UpstreamError(ServiceError):
    """A collaborator service failed (502)."""
    status_code = 502
    error_code = "upstream_error"


class RemoteUnavailableError(UpstreamError):
    """Transient video provider failure."""
    error_code = "remote_unavailable"


class ServerError(ServiceError):
    """Internal server error (500)."""
    status_code = 500
    error_code = "server_error"


__all__ = [
    "ServiceError",
    "ValidationError",
    "AuthenticationError",
    "TokenMalformedError",
    "TokenExpiredError",
    "SessionRevokedError",
    "ForbiddenError",
    "ReadOnlyRootError",
    "NotFoundError",
    "RemoteNotFoundError",
    "ConflictError",
    "IdentityConflictError",
    "NameConflictError",
    "FolderNotEmptyError",
    "CycleDetectedError",
    "UpstreamError",
    "RemoteUnavailableError",
    "ServerError",
]
