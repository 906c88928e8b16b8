"""
auth/errors.py -- Error taxonomy for the authentication lifecycle.

Every error carries a machine-readable code, a user-facing message and the
HTTP status the API layer renders it with. The messages are deliberately
generic: InvalidCredentials never says which half of the pair was wrong, and
StoreUnavailable never includes driver output.

Expected absence (unknown email, no session cookie) is not an error inside
the store -- lookups return None. These exceptions are raised by the session
manager and the access guard, and turned into responses by api/main.py.

Layer rule: no imports from api/.
"""

from __future__ import annotations


class AuthError(Exception):
    """Base class. Subclasses override the class attributes."""

    code: str = "auth_error"
    message: str = "Authentication error."
    status_code: int = 400

    def __init__(self, message: str | None = None, detail: str | None = None) -> None:
        self.message = message or self.message
        self.detail = detail
        super().__init__(self.message)


class InvalidInput(AuthError):
    code = "invalid_input"
    message = "Invalid input."
    status_code = 400


class EmailInUse(AuthError):
    code = "email_in_use"
    message = "An account with that email already exists."
    status_code = 409


class InvalidCredentials(AuthError):
    code = "invalid_credentials"
    message = "Invalid email or password."
    status_code = 401


class EmailNotVerified(AuthError):
    code = "email_not_verified"
    message = "Email address has not been verified."
    status_code = 403


class Unauthorized(AuthError):
    code = "unauthorized"
    message = "Authentication required."
    status_code = 401


class SessionNotFound(Unauthorized):
    code = "session_not_found"
    message = "Session not found."


class SessionExpired(Unauthorized):
    code = "session_expired"
    message = "Session has expired."


class InvalidOrExpiredToken(AuthError):
    code = "invalid_token"
    message = "Token is invalid or has expired."
    status_code = 400


class NotFound(AuthError):
    code = "not_found"
    message = "Not found."
    status_code = 404


class StoreUnavailable(AuthError):
    code = "store_unavailable"
    message = "The service is temporarily unavailable."
    status_code = 503
