"""
api/routes/v1/auth.py -- Authentication REST endpoints (client adapter).

Routes:
  POST   /api/v1/auth/sign-up                -- register; 201 {user_id, user}
  POST   /api/v1/auth/sign-in                -- login; sets session cookie, returns token
  GET    /api/v1/auth/session                -- current user + session (requires auth)
  POST   /api/v1/auth/sign-out               -- revoke presented token, clear cookie; 204
  POST   /api/v1/auth/verify-email/request   -- issue email-verify token (requires auth)
  POST   /api/v1/auth/verify-email           -- consume email-verify token
  POST   /api/v1/auth/verify-email/resend    -- re-issue email-verify token by email; always 202
  POST   /api/v1/auth/forgot-password        -- issue password-reset token; always 202
  POST   /api/v1/auth/reset-password         -- consume password-reset token
  POST   /api/v1/auth/change-password        -- change password (requires auth)
  PATCH  /api/v1/auth/user                   -- update profile name (requires auth)
  GET    /api/v1/auth/sessions               -- list own sessions (requires auth)
  DELETE /api/v1/auth/sessions/{id}          -- revoke one own session (requires auth)
  POST   /api/v1/auth/revoke-other-sessions  -- revoke all but the current session

No business logic lives here: every route maps onto one SessionManager call.
Routes are protected by the app-wide access guard unless marked @public.

Handlers that hash passwords are plain `def`, so FastAPI runs them in its
thread pool and bcrypt never blocks the event loop. The rest follow suit
because every store call is blocking I/O.

Security:
  Sign-in, sign-up, forgot-password and verify-email/resend are rate-limited
  (LOGIN_RATE_LIMIT, per client IP).
  Sign-in failures share one error code whether the email exists or not.
  Cache-Control: no-store on every sign-in response.
  forgot-password and verify-email/resend answer 202 for unknown emails too.
  DELETE /sessions/{id} passes user_id to the store; the store checks ownership.
"""

from fastapi import APIRouter, Depends, Request, Response
from fastapi.responses import JSONResponse

from api.limiter import limiter
from api.models import (
    ChangePasswordRequest,
    CurrentSessionResponse,
    ErrorResponse,
    ForgotPasswordRequest,
    MessageResponse,
    ResendVerificationRequest,
    ResetPasswordRequest,
    RevokedCountResponse,
    SessionInfo,
    SignInRequest,
    SignInResponse,
    SignUpRequest,
    SignUpResponse,
    UpdateUserRequest,
    UserResponse,
    VerifyEmailRequest,
)
from auth.errors import AuthError, InvalidInput
from auth.guard import extract_token, get_current_session, get_current_user, get_session_manager, public
from auth.models import Session, User, VerificationPurpose
from auth.sessions import SessionManager
from auth.store import from_iso, utcnow
from auth.tokens import clear_session_cookie, set_session_cookie
from core.config import get_settings

router = APIRouter()

_RATE_LIMIT = get_settings().login_rate_limit


def _client_ip(request: Request) -> str | None:
    return request.client.host if request.client else None


def _remaining_seconds(session: Session) -> int:
    return int((from_iso(session.expires_at) - utcnow()).total_seconds())


# ---------------------------------------------------------------------------
# Public endpoints
# ---------------------------------------------------------------------------


@router.post("/auth/sign-up", response_model=SignUpResponse, status_code=201)
@limiter.limit(_RATE_LIMIT)  # below @router: the registered endpoint must be the limiting wrapper
@public
def sign_up(request: Request, body: SignUpRequest) -> SignUpResponse:
    """Create an account. Does not sign the user in."""
    manager: SessionManager = request.app.state.session_manager
    user = manager.register(body.email, body.password, body.name)
    return SignUpResponse(user_id=user.id, user=UserResponse.from_user(user))


@router.post("/auth/sign-in", response_model=SignInResponse)
@limiter.limit(_RATE_LIMIT)
@public
def sign_in(request: Request, body: SignInRequest) -> JSONResponse:
    """Authenticate with email and password; set the session cookie.

    Returns the same "invalid_credentials" error for an unknown email and a
    wrong password so the endpoint cannot be used to enumerate accounts.
    """
    manager: SessionManager = request.app.state.session_manager
    try:
        session = manager.login(
            body.email,
            body.password,
            ip_address=_client_ip(request),
            user_agent=request.headers.get("User-Agent"),
        )
    except AuthError as exc:
        resp = JSONResponse(status_code=exc.status_code, content=ErrorResponse.from_auth_error(exc).model_dump())
        resp.headers["Cache-Control"] = "no-store"
        return resp

    user = manager.store.get_by_id(session.user_id)
    resp = JSONResponse(
        status_code=200,
        content=SignInResponse(
            token=session.token,
            expires_at=session.expires_at,
            user=UserResponse.from_user(user),
        ).model_dump(),
    )
    set_session_cookie(
        resp,
        session.token,
        max_age=manager.settings.session_ttl_seconds,
        cookie_name=manager.settings.session_cookie_name,
        secure=manager.settings.secure_cookies,
    )
    resp.headers["Cache-Control"] = "no-store"
    return resp


@router.post("/auth/sign-out", status_code=204)
@public
def sign_out(request: Request) -> Response:
    """Revoke the presented session (if any) and clear the cookie.

    Public and idempotent: signing out twice, or without a session, is a 204.
    """
    manager: SessionManager = request.app.state.session_manager
    token = extract_token(request, manager.settings.session_cookie_name)
    if token:
        manager.revoke(token)
    resp = Response(status_code=204)
    clear_session_cookie(resp, manager.settings.session_cookie_name, manager.settings.secure_cookies)
    return resp


@router.post("/auth/verify-email", response_model=UserResponse)
@public
def verify_email(body: VerifyEmailRequest, manager: SessionManager = Depends(get_session_manager)) -> UserResponse:
    """Spend an email-verify token. Fails with invalid_token on reuse."""
    return UserResponse.from_user(manager.verify_email(body.token))


@router.post("/auth/verify-email/resend", response_model=MessageResponse, status_code=202)
@limiter.limit(_RATE_LIMIT)
@public
def resend_verification(request: Request, body: ResendVerificationRequest) -> MessageResponse:
    """Re-issue the email-verify token for an unverified address.

    Public so a user who cannot sign in yet (REQUIRE_EMAIL_VERIFICATION) can
    recover from a lost or expired token. Same answer for unknown and
    already-verified addresses.
    """
    manager: SessionManager = request.app.state.session_manager
    manager.resend_verification(body.email)
    return MessageResponse(message="If the address is awaiting verification, a new link has been sent.")


@router.post("/auth/forgot-password", response_model=MessageResponse, status_code=202)
@limiter.limit(_RATE_LIMIT)
@public
def forgot_password(request: Request, body: ForgotPasswordRequest) -> MessageResponse:
    """Issue a password-reset token. Same answer whether or not the email exists."""
    manager: SessionManager = request.app.state.session_manager
    manager.request_password_reset(body.email)
    return MessageResponse(message="If the address is registered, a reset link has been sent.")


@router.post("/auth/reset-password", response_model=MessageResponse)
@public
def reset_password(body: ResetPasswordRequest, manager: SessionManager = Depends(get_session_manager)) -> MessageResponse:
    """Spend a password-reset token. Every session of the user is revoked."""
    manager.reset_password(body.token, body.new_password)
    return MessageResponse(message="Password has been reset.")


# ---------------------------------------------------------------------------
# Authenticated endpoints
# ---------------------------------------------------------------------------


@router.get("/auth/session", response_model=CurrentSessionResponse)
def current_session(
    request: Request,
    response: Response,
    user: User = Depends(get_current_user),
    session: Session = Depends(get_current_session),
) -> CurrentSessionResponse:
    """Return the signed-in user and the session in use.

    When the session arrived by cookie, the cookie is re-issued so its
    max-age follows any sliding extension the guard applied.
    """
    settings = request.app.state.session_manager.settings
    cookie_token = request.cookies.get(settings.session_cookie_name)
    if cookie_token:
        set_session_cookie(
            response,
            cookie_token,
            max_age=_remaining_seconds(session),
            cookie_name=settings.session_cookie_name,
            secure=settings.secure_cookies,
        )
    return CurrentSessionResponse(
        user=UserResponse.from_user(user),
        session=SessionInfo.from_session(session, current_id=session.id),
    )


@router.post("/auth/verify-email/request", response_model=MessageResponse, status_code=202)
def request_email_verification(
    user: User = Depends(get_current_user),
    manager: SessionManager = Depends(get_session_manager),
) -> MessageResponse:
    """Issue (or re-issue) the email-verify token for the signed-in user."""
    if user.email_verified:
        raise InvalidInput("Email address is already verified.")
    manager.request_verification(user.id, VerificationPurpose.EMAIL_VERIFY)
    return MessageResponse(message="Verification email sent.")


@router.post("/auth/change-password", response_model=MessageResponse)
def change_password(
    body: ChangePasswordRequest,
    user: User = Depends(get_current_user),
    session: Session = Depends(get_current_session),
    manager: SessionManager = Depends(get_session_manager),
) -> MessageResponse:
    """Change the password after re-checking the current one."""
    manager.change_password(
        user,
        body.current_password,
        body.new_password,
        revoke_other_sessions=body.revoke_other_sessions,
        current_session_id=session.id,
    )
    return MessageResponse(message="Password changed.")


@router.patch("/auth/user", response_model=UserResponse)
def update_user(
    body: UpdateUserRequest,
    user: User = Depends(get_current_user),
    manager: SessionManager = Depends(get_session_manager),
) -> UserResponse:
    """Update the signed-in user's display name."""
    return UserResponse.from_user(manager.update_profile(user.id, body.name))


@router.get("/auth/sessions", response_model=list[SessionInfo])
def list_sessions(
    user: User = Depends(get_current_user),
    session: Session = Depends(get_current_session),
    manager: SessionManager = Depends(get_session_manager),
) -> list[SessionInfo]:
    """List the user's active sessions. Tokens are never returned."""
    return [SessionInfo.from_session(s, current_id=session.id) for s in manager.list_sessions(user.id)]


@router.delete("/auth/sessions/{session_id}", status_code=204)
def revoke_session(
    session_id: int,
    user: User = Depends(get_current_user),
    manager: SessionManager = Depends(get_session_manager),
) -> Response:
    """Revoke one of the user's sessions. Ownership is verified server-side."""
    manager.revoke_session(user.id, session_id)
    return Response(status_code=204)


@router.post("/auth/revoke-other-sessions", response_model=RevokedCountResponse)
def revoke_other_sessions(
    user: User = Depends(get_current_user),
    session: Session = Depends(get_current_session),
    manager: SessionManager = Depends(get_session_manager),
) -> RevokedCountResponse:
    """Sign out everywhere except here."""
    return RevokedCountResponse(revoked=manager.revoke_other_sessions(user.id, session.id))
