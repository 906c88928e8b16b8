"""
auth/models.py -- Domain dataclasses for authentication entities.

Pattern: Data class (pure data container, zero logic). Stores and the
session manager do the work.

Timestamps are ISO 8601 UTC strings with fixed microsecond precision, so
they compare correctly both in Python and as TEXT in SQL.

Layer rule: no imports from api/.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum


class VerificationPurpose(str, Enum):
    EMAIL_VERIFY = "email-verify"
    PASSWORD_RESET = "password-reset"


@dataclass
class User:
    """A registered identity.

    email is stored normalized (stripped, lower-case); the UNIQUE index on
    that column is what makes duplicate registrations impossible.
    hashed_password is a bcrypt hash and never leaves the server.
    """

    email: str
    name: str
    hashed_password: str
    id: int | None = None
    email_verified: bool = False
    created_at: str | None = None
    updated_at: str | None = None


@dataclass
class Session:
    """A server-issued proof of authenticated identity.

    Only token_hash (HMAC-SHA256 of the raw token) is persisted. token holds
    the raw value exactly once, on the instance returned by login(); rows
    read back from the store always have token=None.
    """

    user_id: int
    token_hash: str
    expires_at: str
    id: int | None = None
    created_at: str | None = None
    updated_at: str | None = None
    ip_address: str | None = None  # audit only
    user_agent: str | None = None  # audit only
    token: str | None = None  # raw token, issue time only


@dataclass
class VerificationToken:
    """Single-use token authorizing a follow-up action for one user.

    Same storage rule as Session: token_hash is persisted, token is the raw
    value and is only populated on the instance returned at issue time.
    """

    user_id: int
    purpose: VerificationPurpose
    token_hash: str
    expires_at: str
    id: int | None = None
    created_at: str | None = None
    token: str | None = None


@dataclass
class Account:
    """Reserved link between a user and an external identity provider.

    No provider logic exists yet; the table is created so that OAuth linkage
    can be added without a schema migration.
    """

    user_id: int
    provider_id: str  # e.g. "github", "google"
    account_id: str  # provider's stable user ID
    id: int | None = None
    created_at: str | None = None
    updated_at: str | None = None
