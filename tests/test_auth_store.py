"""Unit tests for auth/store.py -- the durable credential and session store.

Covers:
- create_user() normalizes email and rejects duplicates case-insensitively
- get_by_email() / get_by_id() return None for unknown keys
- update_credential() replaces the hash; NotFound for unknown users
- update_user() only accepts whitelisted fields
- session rows: create, lookup by digest, list (unexpired only), delete
- delete_session_by_id() checks ownership
- create_verification() replaces the outstanding token per purpose
- consume_verification() is single-use and applies its side effect
- purge_expired() keeps rows expiring exactly now
- deleting a user cascades to sessions
- driver errors surface as StoreUnavailable
"""

from datetime import datetime, timedelta, timezone

import pytest
from sqlalchemy import text
from sqlalchemy.exc import IntegrityError, OperationalError

from auth.errors import EmailInUse, NotFound, StoreUnavailable
from auth.models import Session, User, VerificationPurpose, VerificationToken
from auth.store import AuthStore, from_iso, normalize_email, to_iso

NOW = datetime(2025, 1, 1, 12, 0, 0, tzinfo=timezone.utc)


def _user(email="alice@example.com", name="Alice"):
    return User(email=email, name=name, hashed_password="$2b$04$notarealhash")


def _session(user_id, token_hash="a" * 64, expires_in=timedelta(hours=1), created=NOW):
    return Session(
        user_id=user_id,
        token_hash=token_hash,
        created_at=to_iso(created),
        updated_at=to_iso(created),
        expires_at=to_iso(created + expires_in),
    )


def _verification(user_id, token_hash="v" * 64, purpose=VerificationPurpose.EMAIL_VERIFY, expires_in=timedelta(hours=1)):
    return VerificationToken(
        user_id=user_id,
        purpose=purpose,
        token_hash=token_hash,
        created_at=to_iso(NOW),
        expires_at=to_iso(NOW + expires_in),
    )


# ---------------------------------------------------------------------------
# Timestamp helpers
# ---------------------------------------------------------------------------


def test_iso_timestamps_sort_chronologically():
    """Fixed-width ISO strings compare in the same order as the datetimes."""
    earlier = to_iso(NOW)
    later = to_iso(NOW + timedelta(microseconds=1))
    assert earlier < later
    assert len(earlier) == len(later)
    assert from_iso(earlier) == NOW


def test_normalize_email_lowercases_and_strips():
    assert normalize_email("  Alice@Example.COM ") == "alice@example.com"


# ---------------------------------------------------------------------------
# Users
# ---------------------------------------------------------------------------


def test_create_user_returns_id_and_normalizes_email(store):
    user_id = store.create_user(_user(email="Alice@Example.com"), now=NOW)
    assert isinstance(user_id, int)
    user = store.get_by_id(user_id)
    assert user.email == "alice@example.com"
    assert user.name == "Alice"
    assert user.email_verified is False
    assert user.created_at == to_iso(NOW)


def test_create_user_duplicate_email_case_insensitive(store):
    store.create_user(_user(email="alice@example.com"))
    with pytest.raises(EmailInUse):
        store.create_user(_user(email="ALICE@example.com"))


def test_get_by_email_is_case_insensitive(store):
    user_id = store.create_user(_user())
    assert store.get_by_email("ALICE@EXAMPLE.COM").id == user_id


def test_get_unknown_user_returns_none(store):
    assert store.get_by_email("nobody@example.com") is None
    assert store.get_by_id(9999) is None


def test_update_credential_replaces_hash(store):
    user_id = store.create_user(_user())
    store.update_credential(user_id, "$2b$04$newhash")
    assert store.get_by_id(user_id).hashed_password == "$2b$04$newhash"


def test_update_credential_unknown_user_raises(store):
    with pytest.raises(NotFound):
        store.update_credential(9999, "$2b$04$newhash")


def test_update_user_sets_whitelisted_fields(store):
    user_id = store.create_user(_user())
    assert store.update_user(user_id, name="Alice B", email_verified=True) is True
    user = store.get_by_id(user_id)
    assert user.name == "Alice B"
    assert user.email_verified is True


def test_update_user_rejects_unknown_fields(store):
    user_id = store.create_user(_user())
    with pytest.raises(ValueError):
        store.update_user(user_id, hashed_password="x")


def test_update_user_unknown_id_returns_false(store):
    assert store.update_user(9999, name="Ghost") is False


def test_list_accounts_empty_without_provider_links(store):
    user_id = store.create_user(_user())
    assert store.list_accounts(user_id) == []


# ---------------------------------------------------------------------------
# Sessions
# ---------------------------------------------------------------------------


def test_session_lookup_by_digest(store):
    user_id = store.create_user(_user())
    session_id = store.create_session(_session(user_id))
    found = store.get_session_by_hash("a" * 64)
    assert found.id == session_id
    assert found.user_id == user_id
    assert found.token is None
    assert store.get_session_by_hash("b" * 64) is None


def test_duplicate_session_digest_rejected(store):
    user_id = store.create_user(_user())
    store.create_session(_session(user_id))
    with pytest.raises(IntegrityError):
        store.create_session(_session(user_id))


def test_list_sessions_excludes_expired_newest_first(store):
    user_id = store.create_user(_user())
    store.create_session(_session(user_id, token_hash="1" * 64, created=NOW - timedelta(hours=2)))
    store.create_session(_session(user_id, token_hash="2" * 64, created=NOW - timedelta(minutes=30)))
    store.create_session(_session(user_id, token_hash="3" * 64, created=NOW - timedelta(minutes=10)))
    sessions = store.list_sessions(user_id, now=NOW)
    assert [s.token_hash for s in sessions] == ["3" * 64, "2" * 64]


def test_extend_session_moves_expiry(store):
    user_id = store.create_user(_user())
    session_id = store.create_session(_session(user_id))
    later = NOW + timedelta(hours=3)
    store.extend_session(session_id, later + timedelta(hours=1), later)
    found = store.get_session_by_hash("a" * 64)
    assert found.expires_at == to_iso(later + timedelta(hours=1))
    assert found.updated_at == to_iso(later)


def test_delete_session_reports_whether_row_existed(store):
    user_id = store.create_user(_user())
    store.create_session(_session(user_id))
    assert store.delete_session("a" * 64) is True
    assert store.delete_session("a" * 64) is False


def test_delete_session_by_id_checks_owner(store):
    alice = store.create_user(_user())
    mallory = store.create_user(_user(email="mallory@example.com", name="Mallory"))
    session_id = store.create_session(_session(alice))
    assert store.delete_session_by_id(session_id, mallory) is False
    assert store.get_session_by_hash("a" * 64) is not None
    assert store.delete_session_by_id(session_id, alice) is True


def test_delete_user_sessions_can_keep_one(store):
    user_id = store.create_user(_user())
    keep = store.create_session(_session(user_id, token_hash="1" * 64))
    store.create_session(_session(user_id, token_hash="2" * 64))
    store.create_session(_session(user_id, token_hash="3" * 64))
    assert store.delete_user_sessions(user_id, except_session_id=keep) == 2
    assert [s.id for s in store.list_sessions(user_id, now=NOW)] == [keep]


def test_deleting_user_cascades_to_sessions(store):
    user_id = store.create_user(_user())
    store.create_session(_session(user_id))
    with store.engine.begin() as conn:
        conn.execute(text("DELETE FROM users WHERE id = :id"), {"id": user_id})
    assert store.get_session_by_hash("a" * 64) is None


def test_session_requires_existing_user(store):
    with pytest.raises(IntegrityError):
        store.create_session(_session(9999))


# ---------------------------------------------------------------------------
# Verification tokens
# ---------------------------------------------------------------------------


def test_create_verification_replaces_outstanding_token(store):
    user_id = store.create_user(_user())
    store.create_verification(_verification(user_id, token_hash="1" * 64))
    store.create_verification(_verification(user_id, token_hash="2" * 64))
    assert store.consume_verification("1" * 64, VerificationPurpose.EMAIL_VERIFY, now=NOW) is None
    assert store.consume_verification("2" * 64, VerificationPurpose.EMAIL_VERIFY, now=NOW) is not None


def test_tokens_for_different_purposes_coexist(store):
    user_id = store.create_user(_user())
    store.create_verification(_verification(user_id, token_hash="1" * 64))
    store.create_verification(
        _verification(user_id, token_hash="2" * 64, purpose=VerificationPurpose.PASSWORD_RESET)
    )
    assert store.consume_verification("1" * 64, VerificationPurpose.EMAIL_VERIFY, now=NOW) is not None


def test_consume_email_verify_marks_user_verified(store):
    user_id = store.create_user(_user())
    store.create_verification(_verification(user_id))
    consumed = store.consume_verification("v" * 64, VerificationPurpose.EMAIL_VERIFY, now=NOW)
    assert consumed.user_id == user_id
    assert consumed.purpose is VerificationPurpose.EMAIL_VERIFY
    assert store.get_by_id(user_id).email_verified is True


def test_consume_is_single_use(store):
    user_id = store.create_user(_user())
    store.create_verification(_verification(user_id))
    assert store.consume_verification("v" * 64, VerificationPurpose.EMAIL_VERIFY, now=NOW) is not None
    assert store.consume_verification("v" * 64, VerificationPurpose.EMAIL_VERIFY, now=NOW) is None


def test_consume_wrong_purpose_leaves_token(store):
    user_id = store.create_user(_user())
    store.create_verification(_verification(user_id))
    assert (
        store.consume_verification("v" * 64, VerificationPurpose.PASSWORD_RESET, now=NOW, new_hashed_password="h")
        is None
    )
    assert store.consume_verification("v" * 64, VerificationPurpose.EMAIL_VERIFY, now=NOW) is not None


def test_consume_expired_token_fails_and_is_spent(store):
    user_id = store.create_user(_user())
    store.create_verification(_verification(user_id, expires_in=timedelta(minutes=5)))
    late = NOW + timedelta(minutes=5, microseconds=1)
    assert store.consume_verification("v" * 64, VerificationPurpose.EMAIL_VERIFY, now=late) is None
    assert store.get_by_id(user_id).email_verified is False
    assert store.consume_verification("v" * 64, VerificationPurpose.EMAIL_VERIFY, now=NOW) is None


def test_consume_at_exact_expiry_succeeds(store):
    user_id = store.create_user(_user())
    store.create_verification(_verification(user_id, expires_in=timedelta(minutes=5)))
    at_expiry = NOW + timedelta(minutes=5)
    assert store.consume_verification("v" * 64, VerificationPurpose.EMAIL_VERIFY, now=at_expiry) is not None


def test_consume_password_reset_replaces_hash_and_drops_sessions(store):
    user_id = store.create_user(_user())
    store.create_session(_session(user_id, token_hash="1" * 64))
    store.create_session(_session(user_id, token_hash="2" * 64))
    store.create_verification(_verification(user_id, purpose=VerificationPurpose.PASSWORD_RESET))
    consumed = store.consume_verification(
        "v" * 64, VerificationPurpose.PASSWORD_RESET, now=NOW, new_hashed_password="$2b$04$reset"
    )
    assert consumed is not None
    assert store.get_by_id(user_id).hashed_password == "$2b$04$reset"
    assert store.list_sessions(user_id, now=NOW) == []


def test_consume_password_reset_marks_email_verified(store):
    user_id = store.create_user(_user())
    store.create_verification(_verification(user_id, purpose=VerificationPurpose.PASSWORD_RESET))
    store.consume_verification("v" * 64, VerificationPurpose.PASSWORD_RESET, now=NOW, new_hashed_password="h")
    assert store.get_by_id(user_id).email_verified is True


def test_consume_password_reset_requires_new_hash(store):
    with pytest.raises(ValueError):
        store.consume_verification("v" * 64, VerificationPurpose.PASSWORD_RESET, now=NOW)


# ---------------------------------------------------------------------------
# Maintenance
# ---------------------------------------------------------------------------


def test_purge_expired_keeps_rows_expiring_now(store):
    user_id = store.create_user(_user())
    store.create_session(_session(user_id, token_hash="1" * 64, expires_in=timedelta(0)))
    store.create_session(_session(user_id, token_hash="2" * 64, expires_in=-timedelta(seconds=1)))
    store.create_verification(_verification(user_id, expires_in=-timedelta(seconds=1)))
    removed = store.purge_expired(now=NOW)
    assert removed == {"sessions": 1, "verification_tokens": 1}
    assert store.get_session_by_hash("1" * 64) is not None
    assert store.get_session_by_hash("2" * 64) is None


def test_ping_true_for_live_database(store):
    assert store.ping() is True


def test_driver_errors_become_store_unavailable(store, monkeypatch):
    """OperationalError from the engine surfaces as StoreUnavailable."""

    def refuse():
        raise OperationalError("SELECT 1", {}, Exception("database is locked"))

    monkeypatch.setattr(store.engine, "connect", refuse)
    with pytest.raises(StoreUnavailable):
        store.get_by_email("alice@example.com")
    assert store.ping() is False


def test_file_database_persists_between_instances(tmp_path):
    url = f"sqlite:///{tmp_path / 'auth.db'}"
    first = AuthStore(url)
    user_id = first.create_user(_user())
    first.close()
    second = AuthStore(url)
    try:
        assert second.get_by_id(user_id).email == "alice@example.com"
    finally:
        second.close()
