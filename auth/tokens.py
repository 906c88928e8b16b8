"""
auth/tokens.py -- Password hashing, opaque token, and cookie utilities.

Security design decisions:
  Passwords: bcrypt used directly (no passlib wrapper). The cost factor is
       configurable (BCRYPT_ROUNDS). bcrypt only looks at the first 72 bytes
       of its input: 4.x silently truncates, 5.x raises. The session manager
       rejects such passwords up front, and verify_password() never matches
       one, whichever bcrypt release is installed.

  Timing equalization: dummy_hash() gives login() a real bcrypt hash to
       check against when the email is unknown, so response time does not
       reveal whether an account exists.

  Session / verification tokens: secrets.token_urlsafe(32) gives 256 bits of
       entropy. Only HMAC-SHA256(SECRET_KEY, raw_token) is stored, so a copy
       of the database does not contain usable tokens. The hash is
       deterministic, which keeps lookup O(1) via a UNIQUE index -- bcrypt's
       slowness is unnecessary for high-entropy secrets.

Layer rule: no imports from api/.
"""

from __future__ import annotations

import hashlib
import hmac
import secrets
from functools import lru_cache

import bcrypt

BCRYPT_MAX_BYTES = 72

# ---------------------------------------------------------------------------
# Password hashing
# ---------------------------------------------------------------------------


def hash_password(plain: str, rounds: int = 12) -> str:
    """Return a bcrypt hash of the given plaintext password."""
    return bcrypt.hashpw(plain.encode("utf-8"), bcrypt.gensalt(rounds=rounds)).decode("utf-8")


def verify_password(plain: str, hashed: str) -> bool:
    """Return True if the plaintext password matches the bcrypt hash.

    Input longer than BCRYPT_MAX_BYTES never matches, even when its first
    72 bytes do. It still pays the full bcrypt cost.
    """
    encoded = plain.encode("utf-8")
    too_long = len(encoded) > BCRYPT_MAX_BYTES
    try:
        matched = bcrypt.checkpw(encoded[:BCRYPT_MAX_BYTES], hashed.encode("utf-8"))
    except ValueError:
        # Malformed stored hash.
        return False
    return matched and not too_long


@lru_cache(maxsize=8)
def dummy_hash(rounds: int) -> str:
    """Return a throwaway hash at the given cost, computed once per cost."""
    return hash_password("authdemo_timing_dummy", rounds=rounds)


# ---------------------------------------------------------------------------
# Opaque tokens
# ---------------------------------------------------------------------------


def generate_token() -> str:
    """Return a new URL-safe token carrying 256 bits of entropy."""
    return secrets.token_urlsafe(32)


def hash_token(raw_token: str, secret_key: str) -> str:
    """Return HMAC-SHA256(secret_key, raw_token) as a hex string."""
    return hmac.new(
        secret_key.encode(),
        raw_token.encode(),
        hashlib.sha256,
    ).hexdigest()


# ---------------------------------------------------------------------------
# Cookie helpers
# ---------------------------------------------------------------------------


def set_session_cookie(response, token: str, max_age: int, cookie_name: str, secure: bool) -> None:
    """Write the session token as an httpOnly cookie on the response.

    httponly=True: JS cannot read the cookie (XSS mitigation).
    samesite="lax": not sent on cross-site POST -- CSRF mitigation.
    secure: only sent over HTTPS when SECURE_COOKIES=true (production).
    max_age: matches the remaining session lifetime so both expire together.
    """
    response.set_cookie(
        cookie_name,
        value=token,
        httponly=True,
        samesite="lax",
        secure=secure,
        max_age=max(max_age, 0),
    )


def clear_session_cookie(response, cookie_name: str, secure: bool) -> None:
    response.delete_cookie(cookie_name, httponly=True, samesite="lax", secure=secure)
