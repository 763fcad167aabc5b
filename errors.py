"""Service errors shared by the cycle-bound features; routes turn them into JSON responses."""

from __future__ import annotations

from typing import Any, Dict, Optional


class CoreServiceError(Exception):
    """Raised when a core service operation fails."""

    status_code = 500
    code = "internal_failure"

    def __init__(
        self,
        message: str,
        status_code: Optional[int] = None,
        payload: Optional[Dict[str, Any]] = None,
    ):
        super().__init__(message)
        self.message = message
        if status_code is not None:
            self.status_code = status_code
        self.payload = payload or {"ok": False, "error": message, "code": self.code}


class AuthenticationMissing(CoreServiceError):
    status_code = 401
    code = "not_authenticated"


class AuthorizationDenied(CoreServiceError):
    status_code = 403
    code = "not_authorized"


class ValidationFailed(CoreServiceError):
    status_code = 400
    code = "malformed_input"


class NotFound(CoreServiceError):
    status_code = 404
    code = "not_found"


class ConflictAlreadyApplied(CoreServiceError):
    """A uniqueness guard rejected a duplicate side effect; callers report "already done"."""

    status_code = 409
    code = "already_applied"


class StoreFailure(CoreServiceError):
    status_code = 500
    code = "internal_failure"
