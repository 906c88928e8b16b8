"""
auth/sessions.py -- Session lifecycle: registration, login, validation,
revocation and single-use verification tokens.

SessionManager is constructed explicitly with its store and settings (no
module-level singletons) so tests and the CLI can build their own.

Security notes:
  [enum] login() raises the same InvalidCredentials for "no such email" and
         "wrong password", and runs bcrypt in both cases (against a dummy
         hash when the user is missing) so timing does not differ either.
         request_password_reset() and resend_verification() are silent
         no-ops for unknown emails.

  [ttl]  A session is valid while now <= expires_at. Expired rows found on
         read are deleted straight away; the periodic purge catches the rest.

  [slide] Sliding expiration is explicit policy: when
         session_update_age_seconds > 0 and at least that much time has
         passed since the session was created or last extended, a
         successful validation moves expires_at to now + session TTL.
         With 0, expiry is fixed at login time.

  [once] Verification tokens are claimed by the store in the same
         transaction as the change they authorize; see
         AuthStore.consume_verification().

All methods are synchronous and bcrypt is CPU-bound. The API calls them from
plain `def` endpoints, which FastAPI runs in its worker thread pool.
"""

from __future__ import annotations

import logging
import re
from collections.abc import Callable
from datetime import datetime, timedelta

from auth.errors import (
    EmailInUse,
    EmailNotVerified,
    InvalidCredentials,
    InvalidInput,
    InvalidOrExpiredToken,
    NotFound,
    SessionExpired,
    SessionNotFound,
    Unauthorized,
)
from auth.models import Session, User, VerificationPurpose, VerificationToken
from auth.store import AuthStore, from_iso, normalize_email, to_iso, utcnow
from auth.tokens import BCRYPT_MAX_BYTES, dummy_hash, generate_token, hash_password, hash_token, verify_password
from core.config import Settings

logger = logging.getLogger("authdemo.auth.sessions")

# Deliberately loose: one "@", no whitespace, a dot in the domain. Deliverability
# is proven by the email-verify flow, not by a regex.
_EMAIL_RE = re.compile(r"^[^@\s]+@[^@\s]+\.[^@\s]+$")
_MAX_EMAIL_LENGTH = 320
_MAX_NAME_LENGTH = 255

Clock = Callable[[], datetime]
VerificationNotifier = Callable[[User, VerificationToken], None]


def make_log_notifier(debug: bool) -> VerificationNotifier:
    """Return the default notifier: log that a token was issued.

    There is no mailer in this service. In DEBUG mode the raw token is
    written to the log so the verify-email and reset-password flows can be
    exercised locally.
    """

    def notify(user: User, token: VerificationToken) -> None:
        logger.info("Verification token issued (user_id=%s purpose=%s)", user.id, token.purpose.value)
        if debug:
            logger.warning("DEBUG: %s token for %s: %s", token.purpose.value, user.email, token.token)

    return notify


class SessionManager:
    """Issues, validates and revokes sessions on top of an AuthStore.

    Usage:
        manager = SessionManager(store, settings)
        user = manager.register("a@b.com", "correcthorse", "A")
        session = manager.login("a@b.com", "correcthorse")
        manager.validate(session.token).email   # "a@b.com"
        manager.revoke(session.token)
    """

    def __init__(
        self,
        store: AuthStore,
        settings: Settings,
        clock: Clock = utcnow,
        notifier: VerificationNotifier | None = None,
    ) -> None:
        self.store = store
        self.settings = settings
        self._clock = clock
        self._notifier = notifier or make_log_notifier(settings.debug)

    # ------------------------------------------------------------------
    # Input policy
    # ------------------------------------------------------------------

    def _check_email(self, email: str) -> str:
        normalized = normalize_email(email)
        if len(normalized) > _MAX_EMAIL_LENGTH or not _EMAIL_RE.match(normalized):
            raise InvalidInput("Email address is malformed.")
        return normalized

    def _check_password(self, password: str) -> None:
        if len(password) < self.settings.min_password_length:
            raise InvalidInput(f"Password must be at least {self.settings.min_password_length} characters.")
        if len(password.encode("utf-8")) > BCRYPT_MAX_BYTES:
            raise InvalidInput(f"Password must be at most {BCRYPT_MAX_BYTES} bytes.")

    def _check_name(self, name: str) -> str:
        name = name.strip()
        if not name or len(name) > _MAX_NAME_LENGTH:
            raise InvalidInput(f"Name must be between 1 and {_MAX_NAME_LENGTH} characters.")
        return name

    def _hash(self, password: str) -> str:
        return hash_password(password, rounds=self.settings.bcrypt_rounds)

    def _digest(self, raw_token: str) -> str:
        return hash_token(raw_token, self.settings.secret_key)

    # ------------------------------------------------------------------
    # Registration and login
    # ------------------------------------------------------------------

    def register(self, email: str, password: str, name: str) -> User:
        """Create a user with a bcrypt-hashed password.

        Raises InvalidInput for a malformed email, empty name or a password
        outside the length policy, and EmailInUse if the address is taken.
        """
        email = self._check_email(email)
        name = self._check_name(name)
        self._check_password(password)

        user = User(email=email, name=name, hashed_password=self._hash(password))
        try:
            user_id = self.store.create_user(user, now=self._clock())
        except EmailInUse:
            logger.info("Registration rejected: email already in use")
            raise
        created = self.store.get_by_id(user_id)
        if created is None:
            raise NotFound("User not found after write.")
        logger.info("User registered (user_id=%d)", user_id)

        if self.settings.require_email_verification:
            self.request_verification(user_id, VerificationPurpose.EMAIL_VERIFY)
        return created

    def authenticate(self, email: str, password: str) -> User:
        """Check an email/password pair with timing equalization.

        Always runs bcrypt whether or not the user exists:
        - Unknown email: bcrypt runs against dummy_hash() (same cost)
        - Wrong password: bcrypt runs against the real hash (same cost)
        """
        user = self.store.get_by_email(email)
        if user is None:
            # Equalize timing -- do NOT return early before running bcrypt.
            verify_password(password, dummy_hash(self.settings.bcrypt_rounds))
            raise InvalidCredentials()
        if not verify_password(password, user.hashed_password):
            raise InvalidCredentials()
        return user

    def login(self, email: str, password: str, ip_address: str | None = None, user_agent: str | None = None) -> Session:
        """Authenticate and issue a new session.

        The returned Session carries the raw token in .token; it is not
        recoverable afterwards.
        """
        try:
            user = self.authenticate(email, password)
        except InvalidCredentials:
            logger.info("Sign-in failed")
            raise
        if self.settings.require_email_verification and not user.email_verified:
            raise EmailNotVerified()

        now = self._clock()
        raw_token = generate_token()
        session = Session(
            user_id=user.id,
            token_hash=self._digest(raw_token),
            created_at=to_iso(now),
            updated_at=to_iso(now),
            expires_at=to_iso(now + timedelta(seconds=self.settings.session_ttl_seconds)),
            ip_address=ip_address,
            user_agent=user_agent,
        )
        session.id = self.store.create_session(session)
        session.token = raw_token
        logger.info("Session issued (user_id=%d session_id=%d)", user.id, session.id)
        return session

    # ------------------------------------------------------------------
    # Validation and revocation
    # ------------------------------------------------------------------

    def resolve(self, token: str) -> tuple[Session, User]:
        """Return (session, owner) for a raw token.

        Raises SessionNotFound for an unknown or revoked token and
        SessionExpired once now > expires_at.
        """
        session = self.store.get_session_by_hash(self._digest(token))
        if session is None:
            raise SessionNotFound()

        now = self._clock()
        expires_at = from_iso(session.expires_at)
        if now > expires_at:
            self.store.delete_session(session.token_hash)
            raise SessionExpired()

        user = self.store.get_by_id(session.user_id)
        if user is None:
            # Unreachable with foreign keys on; treat as revoked.
            raise SessionNotFound()

        update_age = self.settings.session_update_age_seconds
        if update_age > 0 and now >= from_iso(session.updated_at) + timedelta(seconds=update_age):
            new_expiry = now + timedelta(seconds=self.settings.session_ttl_seconds)
            self.store.extend_session(session.id, new_expiry, now)
            session.expires_at = to_iso(new_expiry)
            session.updated_at = to_iso(now)
        return session, user

    def validate(self, token: str) -> User:
        """Return the User owning a valid session token."""
        return self.resolve(token)[1]

    def try_resolve(self, token: str) -> tuple[Session, User] | None:
        """Soft variant of resolve(): None instead of Unauthorized."""
        try:
            return self.resolve(token)
        except Unauthorized:
            return None

    def revoke(self, token: str) -> None:
        """Delete the session for a raw token. Revoking twice is not an error."""
        if self.store.delete_session(self._digest(token)):
            logger.info("Session revoked")

    def list_sessions(self, user_id: int) -> list[Session]:
        return self.store.list_sessions(user_id, now=self._clock())

    def revoke_session(self, user_id: int, session_id: int) -> None:
        """Revoke one of the user's own sessions. Raises NotFound otherwise."""
        if not self.store.delete_session_by_id(session_id, user_id):
            raise NotFound("Session not found.")

    def revoke_other_sessions(self, user_id: int, current_session_id: int) -> int:
        count = self.store.delete_user_sessions(user_id, except_session_id=current_session_id)
        logger.info("Revoked %d other session(s) (user_id=%d)", count, user_id)
        return count

    # ------------------------------------------------------------------
    # Verification tokens
    # ------------------------------------------------------------------

    def request_verification(self, user_id: int, purpose: VerificationPurpose) -> VerificationToken:
        """Issue a single-use token for user_id and hand it to the notifier.

        Any outstanding token for the same purpose is replaced.
        """
        user = self.store.get_by_id(user_id)
        if user is None:
            raise NotFound("User not found.")
        now = self._clock()
        raw_token = generate_token()
        token = VerificationToken(
            user_id=user_id,
            purpose=VerificationPurpose(purpose),
            token_hash=self._digest(raw_token),
            created_at=to_iso(now),
            expires_at=to_iso(now + timedelta(seconds=self.settings.verification_ttl_seconds)),
        )
        token.id = self.store.create_verification(token)
        token.token = raw_token
        self._notifier(user, token)
        return token

    def consume_verification(
        self,
        token: str,
        purpose: VerificationPurpose = VerificationPurpose.EMAIL_VERIFY,
        new_password: str | None = None,
    ) -> VerificationToken:
        """Spend a verification token exactly once.

        email-verify marks the owner's email as verified. password-reset
        requires new_password; it replaces the credential, marks the email
        verified and revokes every session of the owner. Raises
        InvalidOrExpiredToken if the token is unknown, already spent, expired,
        or issued for another purpose.
        """
        purpose = VerificationPurpose(purpose)
        new_hashed: str | None = None
        if purpose is VerificationPurpose.PASSWORD_RESET:
            if new_password is None:
                raise InvalidInput("A new password is required.")
            self._check_password(new_password)
            new_hashed = self._hash(new_password)

        consumed = self.store.consume_verification(
            self._digest(token),
            purpose,
            now=self._clock(),
            new_hashed_password=new_hashed,
        )
        if consumed is None:
            raise InvalidOrExpiredToken()
        logger.info("Verification token consumed (user_id=%d purpose=%s)", consumed.user_id, purpose.value)
        return consumed

    def verify_email(self, token: str) -> User:
        consumed = self.consume_verification(token, VerificationPurpose.EMAIL_VERIFY)
        user = self.store.get_by_id(consumed.user_id)
        if user is None:
            raise NotFound("User not found.")
        return user

    def resend_verification(self, email: str) -> VerificationToken | None:
        """Re-issue the email-verify token for an unverified address.

        Returns None, without raising, for unknown or already-verified
        addresses.
        """
        user = self.store.get_by_email(email)
        if user is None or user.email_verified:
            return None
        return self.request_verification(user.id, VerificationPurpose.EMAIL_VERIFY)

    def request_password_reset(self, email: str) -> VerificationToken | None:
        """Issue a password-reset token if the email is registered.

        Returns None for unknown addresses without raising, so the caller's
        response cannot be used to enumerate accounts.
        """
        user = self.store.get_by_email(email)
        if user is None:
            return None
        return self.request_verification(user.id, VerificationPurpose.PASSWORD_RESET)

    def reset_password(self, token: str, new_password: str) -> None:
        self.consume_verification(token, VerificationPurpose.PASSWORD_RESET, new_password=new_password)

    # ------------------------------------------------------------------
    # Account maintenance
    # ------------------------------------------------------------------

    def change_password(
        self,
        user: User,
        current_password: str,
        new_password: str,
        revoke_other_sessions: bool = False,
        current_session_id: int | None = None,
    ) -> None:
        """Replace the password after re-checking the current one."""
        if not verify_password(current_password, user.hashed_password):
            raise InvalidCredentials("Current password is incorrect.")
        self._check_password(new_password)
        self.store.update_credential(user.id, self._hash(new_password), now=self._clock())
        logger.info("Password changed (user_id=%d)", user.id)
        if revoke_other_sessions:
            self.store.delete_user_sessions(user.id, except_session_id=current_session_id)

    def update_profile(self, user_id: int, name: str) -> User:
        name = self._check_name(name)
        if not self.store.update_user(user_id, name=name):
            raise NotFound("User not found.")
        user = self.store.get_by_id(user_id)
        if user is None:
            raise NotFound("User not found.")
        return user

    def purge_expired(self) -> dict[str, int]:
        """Delete expired sessions and verification tokens."""
        removed = self.store.purge_expired(now=self._clock())
        if removed["sessions"] or removed["verification_tokens"]:
            logger.info(
                "Purged %d expired session(s), %d verification token(s)",
                removed["sessions"],
                removed["verification_tokens"],
            )
        return removed
