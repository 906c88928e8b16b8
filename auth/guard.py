"""
auth/guard.py -- Default-deny access guard for FastAPI.

access_guard() is installed once as an application-wide dependency:

    app = FastAPI(dependencies=[Depends(access_guard)])

so it runs for every routed request, before the endpoint's own
dependencies. Every route is protected unless its endpoint function is
marked with @public:

    @router.post("/auth/sign-in")
    @public
    def sign_in(...): ...

Token carriers are checked in priority order:
  1. Session cookie (SESSION_COOKIE_NAME) -- set by POST /auth/sign-in.
  2. Authorization: Bearer <token> header -- non-browser clients.

On success the resolved user and session are attached to request.state.
Public routes still get request.state.user when a valid token is present
(e.g. sign-out needs to know which session to revoke), but never a 401.

Layer rule: no imports from api/. May import from fastapi because this
module is part of the FastAPI dependency injection system.
"""

from __future__ import annotations

from collections.abc import Callable
from typing import TypeVar

from fastapi import Request

from auth.errors import Unauthorized
from auth.models import Session, User
from auth.sessions import SessionManager

_PUBLIC_ATTR = "__auth_public__"

F = TypeVar("F", bound=Callable)


def public(endpoint: F) -> F:
    """Mark an endpoint as reachable without a session (opt-out of the guard)."""
    setattr(endpoint, _PUBLIC_ATTR, True)
    return endpoint


def is_public(request: Request) -> bool:
    """Return True if the matched route's endpoint is marked @public."""
    route = request.scope.get("route")
    endpoint = getattr(route, "endpoint", None)
    return bool(getattr(endpoint, _PUBLIC_ATTR, False))


def extract_token(request: Request, cookie_name: str) -> str | None:
    """Return the session token from the cookie or Bearer header, if any."""
    token = request.cookies.get(cookie_name)
    if token:
        return token
    auth_header = request.headers.get("Authorization", "")
    if auth_header.startswith("Bearer "):
        return auth_header[7:].strip() or None
    return None


def access_guard(request: Request) -> None:
    """Resolve the session for this request and enforce default-deny.

    Raises Unauthorized (or its SessionNotFound / SessionExpired subclasses)
    for protected routes without a valid session. StoreUnavailable is never
    swallowed, on public routes either.
    """
    manager: SessionManager = request.app.state.session_manager
    request.state.user = None
    request.state.session = None

    token = extract_token(request, manager.settings.session_cookie_name)
    if is_public(request):
        resolved = manager.try_resolve(token) if token else None
    else:
        if not token:
            raise Unauthorized()
        resolved = manager.resolve(token)

    if resolved is not None:
        request.state.session, request.state.user = resolved


def get_current_user(request: Request) -> User:
    """Return the user attached by access_guard. Raises 401 if there is none.

    Use as a FastAPI dependency:
        @router.get("/protected")
        def route(user: User = Depends(get_current_user)): ...
    """
    user = getattr(request.state, "user", None)
    if user is None:
        raise Unauthorized()
    return user


def get_current_session(request: Request) -> Session:
    session = getattr(request.state, "session", None)
    if session is None:
        raise Unauthorized()
    return session


def get_session_manager(request: Request) -> SessionManager:
    return request.app.state.session_manager
