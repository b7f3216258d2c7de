from datetime import timedelta

from sqlalchemy import func, select

from token_gateway.database import SessionLocal
from token_gateway.models import OAuthState, UsedCode, utcnow
from token_gateway.replay_guard import ReplayGuard, StateRecord, sign_state_cookie, verify_state_cookie

SECRET = "cookie-secret-that-is-long-enough-for-hs256"


def _insert_expired_state(state):
    with SessionLocal() as session:
        session.add(
            OAuthState(
                state=state,
                client_id="test-client-id",
                redirect_uri="http://testserver/oauth/callback",
                created_at=utcnow() - timedelta(minutes=30),
                expires_at=utcnow() - timedelta(minutes=10),
            )
        )
        session.commit()


def _insert_expired_code(code):
    with SessionLocal() as session:
        session.add(
            UsedCode(
                code=code,
                created_at=utcnow() - timedelta(minutes=30),
                expires_at=utcnow() - timedelta(minutes=1),
            )
        )
        session.commit()


def test_issued_state_is_random_and_persisted(db):
    guard = ReplayGuard(db)
    a = guard.issue_state("cid", "https://app/cb")
    b = guard.issue_state("cid", "https://app/cb")
    assert a != b
    assert len(a) >= 16
    assert db.scalar(select(func.count()).select_from(OAuthState)) == 2


def test_state_consumed_once(db):
    guard = ReplayGuard(db)
    state = guard.issue_state("cid", "https://app/cb")

    assert guard.consume_state(state) == StateRecord(client_id="cid", redirect_uri="https://app/cb")
    assert guard.consume_state(state) is None


def test_state_consumed_once_across_sessions(db):
    state = ReplayGuard(db).issue_state("cid", "https://app/cb")
    with SessionLocal() as first, SessionLocal() as second:
        results = [ReplayGuard(first).consume_state(state), ReplayGuard(second).consume_state(state)]
    assert sum(r is not None for r in results) == 1


def test_unknown_or_empty_state_rejected(db):
    guard = ReplayGuard(db)
    assert guard.consume_state("never-issued") is None
    assert guard.consume_state("") is None


def test_expired_state_treated_as_missing(db):
    _insert_expired_state("old-state")
    assert ReplayGuard(db).consume_state("old-state") is None


def test_code_claimed_once(db):
    guard = ReplayGuard(db)
    assert not guard.is_code_used("code-1")
    assert guard.claim_code("code-1") is True
    assert guard.is_code_used("code-1")
    assert guard.claim_code("code-1") is False


def test_expired_code_can_be_claimed_again(db):
    _insert_expired_code("code-2")
    guard = ReplayGuard(db)
    assert not guard.is_code_used("code-2")
    assert guard.claim_code("code-2") is True
    assert guard.is_code_used("code-2")


def test_mark_code_used_is_idempotent(db):
    guard = ReplayGuard(db)
    guard.mark_code_used("code-3")
    guard.mark_code_used("code-3")
    assert guard.is_code_used("code-3")


def test_cleanup_removes_only_expired_rows(db):
    guard = ReplayGuard(db)
    live_state = guard.issue_state("cid", "https://app/cb")
    guard.claim_code("live-code")
    _insert_expired_state("old-state")
    _insert_expired_code("old-code")

    assert guard.cleanup_expired() == (1, 1)
    assert guard.consume_state(live_state) is not None
    assert guard.is_code_used("live-code")


def test_state_cookie_round_trip():
    cookie = sign_state_cookie(SECRET, "abc", "cid", "https://app/cb")
    assert verify_state_cookie(SECRET, cookie, "abc") == StateRecord("cid", "https://app/cb")


def test_state_cookie_bound_to_state_and_secret():
    cookie = sign_state_cookie(SECRET, "abc", "cid", "https://app/cb")
    assert verify_state_cookie(SECRET, cookie, "other") is None
    assert verify_state_cookie(SECRET + "-rotated", cookie, "abc") is None
    assert verify_state_cookie(SECRET, None, "abc") is None
    assert verify_state_cookie(SECRET, "not-a-jwt", "abc") is None
