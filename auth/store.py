"""
auth/store.py -- SQLAlchemy Core persistence layer for auth entities.

Pattern: Repository + Data Mapper. AuthStore is the repository; the _row_to_*
functions are the mappers. The session manager and routes never touch SQL
directly.

Tables: users, sessions, accounts (reserved for provider linkage),
verification_tokens.

Security:
  All queries use bound parameters. No f-strings in SQL.
  Raw session and verification tokens are never stored -- only their HMAC
  digests (see auth/tokens.hash_token).

Integrity rules enforced by the database, not by application code:
  - UNIQUE(users.email): two concurrent registrations for one address cannot
    both insert; the loser gets IntegrityError -> EmailInUse.
  - sessions/verification_tokens/accounts.user_id REFERENCES users(id).
    SQLite needs PRAGMA foreign_keys=ON per connection (set on connect).
  - Verification tokens are claimed by DELETE; the statement's rowcount
    decides which of two concurrent consumers wins.

Infrastructure failures (connection refused, locked database, pool
exhaustion) surface as StoreUnavailable. Driver messages go to the log only.

Usage:
    store = AuthStore("sqlite:///authdemo.db")
    store = AuthStore("postgresql+psycopg://user:pw@host/db")
    user_id = store.create_user(User(email="a@b.com", name="A", hashed_password=h))
    user = store.get_by_email("A@B.com")
    store.close()

Layer rule: no imports from api/.
"""

from __future__ import annotations

import logging
from collections.abc import Iterator
from contextlib import contextmanager
from datetime import datetime, timezone

from sqlalchemy import (
    Column,
    ForeignKey,
    Integer,
    MetaData,
    String,
    Table,
    Text,
    UniqueConstraint,
    create_engine,
    event,
    text,
)
from sqlalchemy.engine import Connection, Engine
from sqlalchemy.exc import IntegrityError, InterfaceError, OperationalError
from sqlalchemy.exc import TimeoutError as PoolTimeoutError

from auth.errors import EmailInUse, NotFound, StoreUnavailable
from auth.models import Account, Session, User, VerificationPurpose, VerificationToken

logger = logging.getLogger("authdemo.auth.store")

_UNAVAILABLE_ERRORS = (OperationalError, InterfaceError, PoolTimeoutError)

# ---------------------------------------------------------------------------
# Schema
# ---------------------------------------------------------------------------

_metadata = MetaData()

_users = Table(
    "users",
    _metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("email", String(320), nullable=False, unique=True),  # normalized lower-case
    Column("name", String(255), nullable=False),
    Column("hashed_password", Text, nullable=False),
    Column("email_verified", Integer, nullable=False, server_default="0"),
    Column("created_at", String(32), nullable=False),
    Column("updated_at", String(32), nullable=False),
)

_sessions = Table(
    "sessions",
    _metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("user_id", Integer, ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True),
    Column("token_hash", String(64), nullable=False, unique=True),  # HMAC-SHA256 hex
    Column("created_at", String(32), nullable=False),
    Column("updated_at", String(32), nullable=False),
    Column("expires_at", String(32), nullable=False, index=True),
    Column("ip_address", String(45)),
    Column("user_agent", Text),
)

_accounts = Table(
    "accounts",
    _metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("user_id", Integer, ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True),
    Column("provider_id", String(30), nullable=False),
    Column("account_id", Text, nullable=False),
    Column("created_at", String(32), nullable=False),
    Column("updated_at", String(32), nullable=False),
    UniqueConstraint("provider_id", "account_id", name="uq_accounts_provider_account"),
)

_verification_tokens = Table(
    "verification_tokens",
    _metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("user_id", Integer, ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True),
    Column("purpose", String(20), nullable=False),  # "email-verify" | "password-reset"
    Column("token_hash", String(64), nullable=False, unique=True),
    Column("created_at", String(32), nullable=False),
    Column("expires_at", String(32), nullable=False, index=True),
)


# ---------------------------------------------------------------------------
# SQLite connection setup
# ---------------------------------------------------------------------------


def _set_sqlite_pragmas(dbapi_conn, connection_record) -> None:
    """Enable WAL journaling and foreign key enforcement.

    Set per-connection because SQLite PRAGMAs are not inherited by new
    connections from the pool. Foreign keys are off by default in SQLite.
    """
    cursor = dbapi_conn.cursor()
    cursor.execute("PRAGMA journal_mode=WAL")
    cursor.execute("PRAGMA foreign_keys=ON")
    cursor.close()


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def to_iso(moment: datetime) -> str:
    """Fixed-width UTC ISO 8601, so stored values sort lexicographically."""
    return moment.astimezone(timezone.utc).isoformat(timespec="microseconds")


def from_iso(value: str) -> datetime:
    return datetime.fromisoformat(value)


def normalize_email(email: str) -> str:
    return email.strip().lower()


# ---------------------------------------------------------------------------
# Repository
# ---------------------------------------------------------------------------


class AuthStore:
    """Repository for User, Session, Account and VerificationToken entities."""

    # Mutable user columns accepted by update_user(). Anything else is a
    # programming error and raises ValueError before any SQL runs.
    _USER_FIELDS: set = {"name", "email_verified"}

    def __init__(self, db_url: str, pool_size: int = 5, pool_timeout: int = 30) -> None:
        engine_kwargs: dict = {"pool_pre_ping": True}
        if db_url.startswith("sqlite"):
            engine_kwargs["connect_args"] = {"check_same_thread": False}
        else:
            engine_kwargs["pool_size"] = pool_size
            engine_kwargs["pool_timeout"] = pool_timeout
        self.engine: Engine = create_engine(db_url, **engine_kwargs)
        if db_url.startswith("sqlite"):
            event.listen(self.engine, "connect", _set_sqlite_pragmas)
        _metadata.create_all(self.engine)

    @contextmanager
    def _connect(self) -> Iterator[Connection]:
        try:
            with self.engine.connect() as conn:
                yield conn
        except _UNAVAILABLE_ERRORS as exc:
            logger.exception("Auth store unavailable")
            raise StoreUnavailable() from exc

    @contextmanager
    def _begin(self) -> Iterator[Connection]:
        """Connection inside a transaction: commit on exit, rollback on error."""
        try:
            with self.engine.begin() as conn:
                yield conn
        except _UNAVAILABLE_ERRORS as exc:
            logger.exception("Auth store unavailable")
            raise StoreUnavailable() from exc

    def ping(self) -> bool:
        """Return True if the database answers a trivial query."""
        try:
            with self.engine.connect() as conn:
                conn.execute(text("SELECT 1"))
        except _UNAVAILABLE_ERRORS:
            logger.warning("Auth store ping failed", exc_info=True)
            return False
        return True

    # ------------------------------------------------------------------
    # Users
    # ------------------------------------------------------------------

    def create_user(self, user: User, now: datetime | None = None) -> int:
        """Insert a new user and return its assigned database ID.

        Raises EmailInUse if the (normalized) email already exists. The check
        is the UNIQUE index itself, so it holds under concurrent inserts.
        """
        stamp = to_iso(now or utcnow())
        try:
            with self._connect() as conn:
                result = conn.execute(
                    _users.insert().values(
                        email=normalize_email(user.email),
                        name=user.name,
                        hashed_password=user.hashed_password,
                        email_verified=1 if user.email_verified else 0,
                        created_at=stamp,
                        updated_at=stamp,
                    )
                )
                conn.commit()
                return result.inserted_primary_key[0]
        except IntegrityError as exc:
            raise EmailInUse() from exc

    def get_by_email(self, email: str) -> User | None:
        """Look up a user by email (case-insensitive). Returns None if not found."""
        with self._connect() as conn:
            row = conn.execute(_users.select().where(_users.c.email == normalize_email(email))).fetchone()
        return _row_to_user(row) if row is not None else None

    def get_by_id(self, user_id: int) -> User | None:
        """Look up a user by primary key. Returns None if not found."""
        with self._connect() as conn:
            row = conn.execute(_users.select().where(_users.c.id == user_id)).fetchone()
        return _row_to_user(row) if row is not None else None

    def update_credential(self, user_id: int, hashed_password: str, now: datetime | None = None) -> None:
        """Replace a user's password hash. Raises NotFound for an unknown user_id."""
        with self._connect() as conn:
            result = conn.execute(
                _users.update()
                .where(_users.c.id == user_id)
                .values(hashed_password=hashed_password, updated_at=to_iso(now or utcnow()))
            )
            conn.commit()
        if result.rowcount == 0:
            raise NotFound("User not found.")

    def update_user(self, user_id: int, **fields) -> bool:
        """Update mutable profile fields (name, email_verified).

        Returns True if a row was updated, False if user_id was not found.
        """
        unknown = set(fields) - self._USER_FIELDS
        if unknown:
            raise ValueError(f"Unknown user fields: {unknown!r}")
        if "email_verified" in fields:
            fields["email_verified"] = 1 if fields["email_verified"] else 0
        fields["updated_at"] = to_iso(utcnow())
        with self._connect() as conn:
            result = conn.execute(_users.update().where(_users.c.id == user_id).values(**fields))
            conn.commit()
        return result.rowcount > 0

    def list_accounts(self, user_id: int) -> list[Account]:
        """Return provider accounts linked to a user (none until OAuth exists)."""
        with self._connect() as conn:
            rows = conn.execute(
                _accounts.select().where(_accounts.c.user_id == user_id).order_by(_accounts.c.provider_id)
            ).fetchall()
        return [_row_to_account(r) for r in rows]

    # ------------------------------------------------------------------
    # Sessions
    # ------------------------------------------------------------------

    def create_session(self, session: Session) -> int:
        """Insert a session row and return its ID."""
        stamp = session.created_at or to_iso(utcnow())
        with self._connect() as conn:
            result = conn.execute(
                _sessions.insert().values(
                    user_id=session.user_id,
                    token_hash=session.token_hash,
                    created_at=stamp,
                    updated_at=session.updated_at or stamp,
                    expires_at=session.expires_at,
                    ip_address=session.ip_address,
                    user_agent=session.user_agent,
                )
            )
            conn.commit()
            return result.inserted_primary_key[0]

    def get_session_by_hash(self, token_hash: str) -> Session | None:
        """Look up a session by token digest. O(1) via UNIQUE index."""
        with self._connect() as conn:
            row = conn.execute(_sessions.select().where(_sessions.c.token_hash == token_hash)).fetchone()
        return _row_to_session(row) if row is not None else None

    def list_sessions(self, user_id: int, now: datetime | None = None) -> list[Session]:
        """Return a user's unexpired sessions, newest first."""
        with self._connect() as conn:
            rows = conn.execute(
                _sessions.select()
                .where((_sessions.c.user_id == user_id) & (_sessions.c.expires_at >= to_iso(now or utcnow())))
                .order_by(_sessions.c.created_at.desc())
            ).fetchall()
        return [_row_to_session(r) for r in rows]

    def extend_session(self, session_id: int, expires_at: datetime, now: datetime) -> None:
        """Move a session's expiry forward (sliding expiration)."""
        with self._connect() as conn:
            conn.execute(
                _sessions.update()
                .where(_sessions.c.id == session_id)
                .values(expires_at=to_iso(expires_at), updated_at=to_iso(now))
            )
            conn.commit()

    def delete_session(self, token_hash: str) -> bool:
        """Delete a session by token digest. Returns False if it was already gone."""
        with self._connect() as conn:
            result = conn.execute(_sessions.delete().where(_sessions.c.token_hash == token_hash))
            conn.commit()
        return result.rowcount > 0

    def delete_session_by_id(self, session_id: int, user_id: int) -> bool:
        """Delete one of a user's sessions. user_id is checked to prevent IDOR.

        Returns True if a session was deleted, False if not found or wrong owner.
        """
        with self._connect() as conn:
            result = conn.execute(
                _sessions.delete().where((_sessions.c.id == session_id) & (_sessions.c.user_id == user_id))
            )
            conn.commit()
        return result.rowcount > 0

    def delete_user_sessions(self, user_id: int, except_session_id: int | None = None) -> int:
        """Delete all of a user's sessions, optionally keeping one. Returns count."""
        condition = _sessions.c.user_id == user_id
        if except_session_id is not None:
            condition = condition & (_sessions.c.id != except_session_id)
        with self._connect() as conn:
            result = conn.execute(_sessions.delete().where(condition))
            conn.commit()
        return result.rowcount

    # ------------------------------------------------------------------
    # Verification tokens
    # ------------------------------------------------------------------

    def create_verification(self, token: VerificationToken) -> int:
        """Insert a verification token, replacing any outstanding one for the
        same (user, purpose) pair. Returns the new token's ID.
        """
        purpose = VerificationPurpose(token.purpose).value
        with self._begin() as conn:
            conn.execute(
                _verification_tokens.delete().where(
                    (_verification_tokens.c.user_id == token.user_id) & (_verification_tokens.c.purpose == purpose)
                )
            )
            result = conn.execute(
                _verification_tokens.insert().values(
                    user_id=token.user_id,
                    purpose=purpose,
                    token_hash=token.token_hash,
                    created_at=token.created_at or to_iso(utcnow()),
                    expires_at=token.expires_at,
                )
            )
            return result.inserted_primary_key[0]

    def consume_verification(
        self,
        token_hash: str,
        purpose: VerificationPurpose,
        now: datetime | None = None,
        new_hashed_password: str | None = None,
    ) -> VerificationToken | None:
        """Claim a verification token and apply the change it authorizes.

        Runs in one transaction:
          1. DELETE the token row. A rowcount of 0 means another consumer got
             there first (or the token never existed) -> None.
          2. If the token had expired, stop -> None (the row stays deleted).
          3. email-verify: set users.email_verified = 1.
             password-reset: store new_hashed_password, set email_verified
             (the reset link reached the mailbox) and delete every session
             of the user.

        Returns the consumed token on success, None otherwise.
        """
        purpose = VerificationPurpose(purpose)
        if purpose is VerificationPurpose.PASSWORD_RESET and new_hashed_password is None:
            raise ValueError("password-reset tokens require new_hashed_password")
        stamp = to_iso(now or utcnow())
        with self._begin() as conn:
            # first() closes the cursor: no read snapshot is held into the DELETE.
            row = conn.execute(
                _verification_tokens.select().where(
                    (_verification_tokens.c.token_hash == token_hash)
                    & (_verification_tokens.c.purpose == purpose.value)
                )
            ).first()
            if row is None:
                return None
            claimed = conn.execute(_verification_tokens.delete().where(_verification_tokens.c.id == row.id)).rowcount
            if claimed != 1:
                return None
            if stamp > row.expires_at:
                return None
            if purpose is VerificationPurpose.EMAIL_VERIFY:
                conn.execute(
                    _users.update().where(_users.c.id == row.user_id).values(email_verified=1, updated_at=stamp)
                )
            else:
                conn.execute(
                    _users.update()
                    .where(_users.c.id == row.user_id)
                    .values(hashed_password=new_hashed_password, email_verified=1, updated_at=stamp)
                )
                conn.execute(_sessions.delete().where(_sessions.c.user_id == row.user_id))
        return _row_to_verification(row)

    # ------------------------------------------------------------------
    # Maintenance
    # ------------------------------------------------------------------

    def purge_expired(self, now: datetime | None = None) -> dict[str, int]:
        """Delete sessions and verification tokens whose expiry has passed.

        A row expiring exactly at `now` is kept; it is still valid.
        Returns the number of rows removed per table.
        """
        stamp = to_iso(now or utcnow())
        with self._begin() as conn:
            sessions = conn.execute(_sessions.delete().where(_sessions.c.expires_at < stamp)).rowcount
            tokens = conn.execute(
                _verification_tokens.delete().where(_verification_tokens.c.expires_at < stamp)
            ).rowcount
        return {"sessions": sessions, "verification_tokens": tokens}

    def close(self) -> None:
        self.engine.dispose()


# ---------------------------------------------------------------------------
# Row mappers (Data Mapper pattern)
# ---------------------------------------------------------------------------


def _row_to_user(row) -> User:
    return User(
        id=row.id,
        email=row.email,
        name=row.name,
        hashed_password=row.hashed_password,
        email_verified=bool(row.email_verified),
        created_at=row.created_at,
        updated_at=row.updated_at,
    )


def _row_to_session(row) -> Session:
    return Session(
        id=row.id,
        user_id=row.user_id,
        token_hash=row.token_hash,
        created_at=row.created_at,
        updated_at=row.updated_at,
        expires_at=row.expires_at,
        ip_address=row.ip_address,
        user_agent=row.user_agent,
    )


def _row_to_account(row) -> Account:
    return Account(
        id=row.id,
        user_id=row.user_id,
        provider_id=row.provider_id,
        account_id=row.account_id,
        created_at=row.created_at,
        updated_at=row.updated_at,
    )


def _row_to_verification(row) -> VerificationToken:
    return VerificationToken(
        id=row.id,
        user_id=row.user_id,
        purpose=VerificationPurpose(row.purpose),
        token_hash=row.token_hash,
        created_at=row.created_at,
        expires_at=row.expires_at,
    )
