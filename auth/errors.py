"""
auth/errors.py -- Error taxonomy for authentication and authorization.

Every failure the authority can report to a client is an AuthError subclass.
Each carries the HTTP status, a stable machine-readable code and a
client-safe message; api/main.py renders them into the standard error
envelope. Anything the client must not learn (why a token failed, whether a
username exists) lives in attributes that are only written to the audit log.

Layer rule: no imports from api/ or fastapi. The route layer maps these to
responses; auth/ stays framework-agnostic below the dependency module.
"""

from __future__ import annotations

from datetime import datetime


class AuthError(Exception):
    status_code: int = 400
    code: str = "auth_error"
    message: str = "Authentication error."

    def __init__(self, message: str | None = None) -> None:
        super().__init__(message or self.message)
        if message:
            self.message = message

    def extra(self) -> dict:
        """Additional client-visible fields merged into the error envelope."""
        return {}

    def headers(self) -> dict[str, str]:
        return {}


class InvalidInput(AuthError):
    status_code = 400
    code = "invalid_input"
    message = "Invalid input."


class InvalidCredential(AuthError):
    """Unknown user, inactive account or wrong password -- indistinguishable to clients."""

    status_code = 401
    code = "invalid_credentials"
    message = "Invalid credentials."

    def __init__(self, message: str | None = None, attempts_remaining: int | None = None) -> None:
        super().__init__(message)
        self.attempts_remaining = attempts_remaining

    def extra(self) -> dict:
        if self.attempts_remaining is None:
            return {}
        return {"attempts_remaining": self.attempts_remaining}


class AccountLocked(AuthError):
    status_code = 423
    code = "account_locked"
    message = "Account temporarily locked due to too many failed attempts."

    def __init__(self, lock_until: datetime, now: datetime) -> None:
        super().__init__()
        self.lock_until = lock_until
        self.retry_after = max(1, int((lock_until - now).total_seconds()))

    def extra(self) -> dict:
        return {"lock_until": self.lock_until.isoformat()}

    def headers(self) -> dict[str, str]:
        return {"Retry-After": str(self.retry_after)}


# ---------------------------------------------------------------------------
# Token failures
#
# Expired, invalid and reused tokens share one client-facing code and message
# so a caller cannot probe which check failed. `reason` is for the audit log.
# ---------------------------------------------------------------------------


class TokenError(AuthError):
    status_code = 401
    code = "invalid_token"
    message = "Invalid or expired token."
    reason = "invalid"

    def __init__(self, message: str | None = None, user_id: int | None = None) -> None:
        super().__init__(message)
        self.user_id = user_id

    def headers(self) -> dict[str, str]:
        return {"WWW-Authenticate": "Bearer"}


class TokenMissing(TokenError):
    code = "no_token"
    message = "Access token required."
    reason = "missing"


class TokenExpired(TokenError):
    reason = "expired"


class TokenInvalid(TokenError):
    reason = "invalid"


class TokenReused(TokenError):
    reason = "reused"


# ---------------------------------------------------------------------------
# Authorization failures
# ---------------------------------------------------------------------------


class InsufficientPermission(AuthError):
    status_code = 403
    code = "insufficient_permission"
    message = "Insufficient permissions."

    def __init__(self, required: str) -> None:
        super().__init__()
        self.required = required

    def extra(self) -> dict:
        return {"required": self.required}


class InsufficientRole(AuthError):
    status_code = 403
    code = "insufficient_role"
    message = "Insufficient role."

    def __init__(self, required: str, current: str) -> None:
        super().__init__()
        self.required = required
        self.current = current

    def extra(self) -> dict:
        return {"required": self.required, "current": self.current}


# ---------------------------------------------------------------------------
# Dependency failure
# ---------------------------------------------------------------------------


class StoreUnavailable(Exception):
    """The credential store cannot be reached. Fatal for the request (500).

    Not an AuthError: api/main.py renders it as a bare 500 without detail.
    """


class DuplicateUsername(Exception):
    """Raised by a store when create_user() collides with an existing username."""
