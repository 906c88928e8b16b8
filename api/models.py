"""
API request and response models for the auth REST endpoints.

These Pydantic v2 models define the HTTP transport contract. They are
intentionally separate from the dataclasses in auth/models.py, which own the
internal domain representation. Route handlers map between the two.

Shape checks (types, presence, gross length limits) happen here and fail
with 422. Policy checks (email format, password length) belong to the
session manager and fail with 400 invalid_input, so the same rules apply to
every caller, not only HTTP ones.

Separation of concerns: auth/ models = domain truth; api/ models = API contract.
"""

from typing import Optional

from pydantic import BaseModel, ConfigDict, Field

from auth.errors import AuthError
from auth.models import Session, User

# ---------------------------------------------------------------------------
# Request models
# ---------------------------------------------------------------------------


class SignUpRequest(BaseModel):
    """Request body for POST /api/v1/auth/sign-up."""

    model_config = ConfigDict(str_strip_whitespace=True)

    email: str = Field(min_length=1, max_length=320)
    # Not stripped: whitespace is a legal password character.
    password: str = Field(max_length=255, json_schema_extra={"format": "password"})
    name: str = Field(min_length=1, max_length=255)


class SignInRequest(BaseModel):
    """Request body for POST /api/v1/auth/sign-in."""

    email: str = Field(min_length=1, max_length=320)
    password: str = Field(max_length=255)


class VerifyEmailRequest(BaseModel):
    """Request body for POST /api/v1/auth/verify-email."""

    token: str = Field(min_length=1, max_length=255)


class ResendVerificationRequest(BaseModel):
    """Request body for POST /api/v1/auth/verify-email/resend."""

    email: str = Field(min_length=1, max_length=320)


class ForgotPasswordRequest(BaseModel):
    """Request body for POST /api/v1/auth/forgot-password."""

    email: str = Field(min_length=1, max_length=320)


class ResetPasswordRequest(BaseModel):
    """Request body for POST /api/v1/auth/reset-password."""

    token: str = Field(min_length=1, max_length=255)
    new_password: str = Field(max_length=255)


class ChangePasswordRequest(BaseModel):
    """Request body for POST /api/v1/auth/change-password."""

    current_password: str = Field(max_length=255)
    new_password: str = Field(max_length=255)
    revoke_other_sessions: bool = False


class UpdateUserRequest(BaseModel):
    """Request body for PATCH /api/v1/auth/user."""

    model_config = ConfigDict(str_strip_whitespace=True)

    name: str = Field(min_length=1, max_length=255)


# ---------------------------------------------------------------------------
# Response models
# ---------------------------------------------------------------------------


class UserResponse(BaseModel):
    """Public view of a user. Never includes the password hash."""

    model_config = ConfigDict(frozen=True)

    id: int
    email: str
    name: str
    email_verified: bool
    created_at: str
    updated_at: str

    @classmethod
    def from_user(cls, user: User) -> "UserResponse":
        return cls(
            id=user.id,
            email=user.email,
            name=user.name,
            email_verified=user.email_verified,
            created_at=user.created_at or "",
            updated_at=user.updated_at or "",
        )


class SessionInfo(BaseModel):
    """Public view of a session. Never includes the token or its digest."""

    model_config = ConfigDict(frozen=True)

    id: int
    created_at: str
    expires_at: str
    ip_address: Optional[str]
    user_agent: Optional[str]
    current: bool = False

    @classmethod
    def from_session(cls, session: Session, current_id: Optional[int] = None) -> "SessionInfo":
        return cls(
            id=session.id,
            created_at=session.created_at or "",
            expires_at=session.expires_at,
            ip_address=session.ip_address,
            user_agent=session.user_agent,
            current=current_id is not None and session.id == current_id,
        )


class SignUpResponse(BaseModel):
    """Response for POST /api/v1/auth/sign-up."""

    model_config = ConfigDict(frozen=True)

    user_id: int
    user: UserResponse


class SignInResponse(BaseModel):
    """Response for POST /api/v1/auth/sign-in.

    token is returned once for non-browser clients (Bearer auth). Browsers
    use the httpOnly cookie set on the same response instead.
    """

    model_config = ConfigDict(frozen=True)

    token: str
    token_type: str = "bearer"
    expires_at: str
    user: UserResponse


class CurrentSessionResponse(BaseModel):
    """Response for GET /api/v1/auth/session."""

    model_config = ConfigDict(frozen=True)

    user: UserResponse
    session: SessionInfo


class MeResponse(BaseModel):
    """Response for GET /api/v1/users/me."""

    model_config = ConfigDict(frozen=True)

    user: UserResponse
    linked_providers: list[str] = Field(default_factory=list)


class MessageResponse(BaseModel):
    model_config = ConfigDict(frozen=True)

    message: str


class RevokedCountResponse(BaseModel):
    model_config = ConfigDict(frozen=True)

    revoked: int


class ErrorDetail(BaseModel):
    """Machine-readable error payload."""

    model_config = ConfigDict(frozen=True)

    code: str
    message: str
    detail: Optional[str] = None


class ErrorResponse(BaseModel):
    """Top-level error envelope returned on 4xx/5xx responses."""

    model_config = ConfigDict(frozen=True)

    error: ErrorDetail

    @classmethod
    def from_auth_error(cls, exc: AuthError) -> "ErrorResponse":
        return cls(error=ErrorDetail(code=exc.code, message=exc.message, detail=exc.detail))


class HealthResponse(BaseModel):
    """Response for GET /api/v1/health."""

    model_config = ConfigDict(frozen=True)

    status: str = "healthy"
    version: str
    components: dict[str, str] = Field(default_factory=dict)
