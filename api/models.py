"""
API request and response models for the sanctum REST endpoints.

These Pydantic v2 models define the HTTP transport contract for the API layer.
They are intentionally separate from the dataclasses in auth/models.py, which
own the internal domain representation. Route handlers map between the two.

Separation of concerns: auth/ models = domain truth; api/ models = API contract.
"""

from datetime import datetime
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field

from auth.models import Identity, SecurityEvent, User

# ---------------------------------------------------------------------------
# Request models
# ---------------------------------------------------------------------------


class LoginRequest(BaseModel):
    """Request body for POST /api/v1/auth/login.

    Lengths here are the transport limits; the authenticator applies the
    configured minimums again before touching the store.
    """

    model_config = ConfigDict(populate_by_name=True)

    username: str = Field(min_length=1, max_length=255)
    password: str = Field(min_length=1, max_length=128)
    remember_me: bool = Field(default=False, alias="rememberMe")


class RefreshRequest(BaseModel):
    """Optional body for POST /api/v1/auth/refresh. The cookie wins when both are sent."""

    model_config = ConfigDict(populate_by_name=True)

    refresh_token: Optional[str] = Field(default=None, alias="refreshToken", max_length=4096)


class ChangePasswordRequest(BaseModel):
    """Request body for POST /api/v1/auth/change-password.

    Strength rules are checked by the authority so the CLI and the API share them.
    """

    model_config = ConfigDict(populate_by_name=True)

    current_password: str = Field(alias="currentPassword", min_length=1, max_length=128)
    new_password: str = Field(alias="newPassword", min_length=1, max_length=128)


# ---------------------------------------------------------------------------
# Response models
# ---------------------------------------------------------------------------


class UserInfo(BaseModel):
    """Public view of an account. Never includes the password hash or lock state."""

    model_config = ConfigDict(frozen=True)

    id: int
    username: str
    role: str
    permissions: list[str]
    last_login: Optional[datetime] = None

    @classmethod
    def from_user(cls, user: User) -> "UserInfo":
        return cls(
            id=user.id,
            username=user.username,
            role=user.role,
            permissions=sorted(user.permissions),
            last_login=user.last_login,
        )


class LoginResponse(BaseModel):
    """Response body for POST /login and POST /refresh.

    The refresh token travels only in its httpOnly cookie.
    """

    model_config = ConfigDict(frozen=True)

    success: bool = True
    access_token: str
    token_type: str = "bearer"
    expires_at: datetime
    user: UserInfo


class VerifyResponse(BaseModel):
    """Response for GET /api/v1/auth/verify -- claims of the presented access token."""

    model_config = ConfigDict(frozen=True)

    valid: bool = True
    user_id: int
    username: str
    role: str
    permissions: list[str]
    expires_at: datetime

    @classmethod
    def from_identity(cls, identity: Identity) -> "VerifyResponse":
        return cls(
            user_id=identity.user_id,
            username=identity.username,
            role=identity.role,
            permissions=sorted(identity.permissions),
            expires_at=identity.expires_at,
        )


class MessageResponse(BaseModel):
    model_config = ConfigDict(frozen=True)

    success: bool = True
    message: str


class UserRow(BaseModel):
    """One row in GET /api/v1/auth/users (administrators only)."""

    model_config = ConfigDict(frozen=True)

    id: int
    username: str
    role: str
    permissions: list[str]
    is_active: bool
    failed_login_attempts: int
    lock_until: Optional[datetime] = None
    last_login: Optional[datetime] = None
    created_at: Optional[datetime] = None

    @classmethod
    def from_user(cls, user: User) -> "UserRow":
        return cls(
            id=user.id,
            username=user.username,
            role=user.role,
            permissions=sorted(user.permissions),
            is_active=user.is_active,
            failed_login_attempts=user.failed_login_attempts,
            lock_until=user.lock_until,
            last_login=user.last_login,
            created_at=user.created_at,
        )


class SecurityEventRow(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: int
    kind: str
    username: Optional[str]
    ip_address: Optional[str]
    user_agent: Optional[str]
    details: Optional[str]
    timestamp: datetime

    @classmethod
    def from_event(cls, event: SecurityEvent) -> "SecurityEventRow":
        return cls(
            id=event.id,
            kind=event.kind,
            username=event.username,
            ip_address=event.ip_address,
            user_agent=event.user_agent,
            details=event.details,
            timestamp=event.timestamp,
        )


class ErrorDetail(BaseModel):
    """Machine-readable error payload.

    extra="allow" lets auth errors attach their own client-visible fields
    (attempts_remaining, lock_until, required, current).
    """

    model_config = ConfigDict(frozen=True, extra="allow")

    code: str
    message: str
    detail: Optional[str] = None


class ErrorResponse(BaseModel):
    """Top-level error envelope returned on 4xx/5xx responses."""

    model_config = ConfigDict(frozen=True)

    error: ErrorDetail


class HealthResponse(BaseModel):
    """Response for GET /api/v1/health."""

    model_config = ConfigDict(frozen=True)

    status: str = "healthy"
    version: str
    components: dict[str, str]
