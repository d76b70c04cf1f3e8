from __future__ import annotations

from typing import Any, Dict, List, Optional


class ServiceError(Exception):
    """Base class for service-layer exceptions mapped to HTTP responses.

    Each exception class carries an HTTP ``status_code`` and a stable
    ``error_code``:
    - bad_request (400)
    - unauthorized (401)
    - forbidden (403)
    - not_found (404)
    - conflict (409)
    - validation_error (422)
    - server_error (500)
    """

    status_code: int = 400
    error_code: str = "bad_request"

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


class BadRequestError(ServiceError):
    """Malformed input or an unresolvable reference (400)."""
    status_code = 400
    error_code = "bad_request"


class ValidationError(ServiceError):
    """Payload shape violations with a field-level error list (422)."""
    status_code = 422
    error_code = "validation_error"

    def __init__(
        self,
        message: str = "Validation failed",
        errors: Optional[List[Dict[str, Any]]] = None,
        **kwargs: Any,
    ) -> None:
        super().__init__(message, **kwargs)
        self.errors = errors or []


class AuthenticationError(ServiceError):
    """Authentication failed or missing (401)."""
    status_code = 401
    error_code = "unauthorized"


class TokenError(AuthenticationError):
    """A bearer token could not be accepted."""


class TokenExpired(TokenError):
    """The token's expiry has elapsed."""


class TokenMalformed(TokenError):
    """The token's structure, signature or claims are invalid."""


class TokenKindMismatch(TokenError):
    """A valid token was presented for the wrong purpose."""


class ForbiddenError(ServiceError):
    """Access denied - insufficient role or permission (403)."""
    status_code = 403
    error_code = "forbidden"


class NotFoundError(ServiceError):
    """Requested resource not found (404)."""
    status_code = 404
    error_code = "not_found"


class ConflictError(ServiceError):
    """Duplicate unique value, e.g. an existing username (409)."""
    status_code = 409
    error_code = "conflict"


class ServerError(ServiceError):
    """Internal server error (500)."""
    status_code = 500
    error_code = "server_error"


__all__ = [
    "ServiceError",
    "BadRequestError",
    "ValidationError",
    "AuthenticationError",
    "TokenError",
    "TokenExpired",
    "TokenMalformed",
    "TokenKindMismatch",
    "ForbiddenError",
    "NotFoundError",
    "ConflictError",
    "ServerError",
]
