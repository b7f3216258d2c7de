"""Persisted OAuth `state` values and consumed authorization codes.

The database is the only record: a state is valid until it is deleted by
its first consumer or it expires, and a code is "used" while its row is
unexpired. Expired rows are treated exactly like missing ones.
"""

import logging
import secrets
from dataclasses import dataclass
from datetime import timedelta
from typing import Optional

import jwt
from sqlalchemy import delete, insert, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from token_gateway.models import OAuthState, UsedCode, utcnow

log = logging.getLogger(__name__)

COOKIE_TTL_S = 600


@dataclass(frozen=True)
class StateRecord:
    client_id: str
    redirect_uri: str


class ReplayGuard:
    def __init__(self, db: Session, state_ttl_min: int = 20, code_ttl_min: int = 10):
        self.db = db
        self.state_ttl = timedelta(minutes=state_ttl_min)
        self.code_ttl_min = code_ttl_min

    def issue_state(self, client_id: str, redirect_uri: str) -> str:
        state = secrets.token_urlsafe(16)
        self.db.add(
            OAuthState(
                state=state,
                client_id=client_id,
                redirect_uri=redirect_uri,
                expires_at=utcnow() + self.state_ttl,
            )
        )
        self.db.commit()
        return state

    def consume_state(self, state: str) -> Optional[StateRecord]:
        """Delete and return the state record; None when absent or expired.

        The conditional DELETE decides the winner: of two concurrent
        consumers only one sees rowcount == 1.
        """
        if not state:
            return None
        now = utcnow()
        row = self.db.execute(
            select(OAuthState.client_id, OAuthState.redirect_uri).where(
                OAuthState.state == state, OAuthState.expires_at > now
            )
        ).first()
        if row is None:
            return None
        result = self.db.execute(
            delete(OAuthState).where(OAuthState.state == state, OAuthState.expires_at > now)
        )
        self.db.commit()
        if result.rowcount != 1:
            log.warning("state consumed concurrently")
            return None
        return StateRecord(client_id=row.client_id, redirect_uri=row.redirect_uri)

    def is_code_used(self, code: str) -> bool:
        found = self.db.execute(
            select(UsedCode.code).where(UsedCode.code == code, UsedCode.expires_at > utcnow())
        ).first()
        return found is not None

    def claim_code(self, code: str, ttl_min: Optional[int] = None) -> bool:
        """Record `code` as used. False if someone else already holds it."""
        expires_at = utcnow() + timedelta(minutes=ttl_min or self.code_ttl_min)
        try:
            self.db.execute(insert(UsedCode).values(code=code, expires_at=expires_at))
            self.db.commit()
            return True
        except IntegrityError:
            self.db.rollback()
        # an expired row may be taken over
        result = self.db.execute(
            update(UsedCode)
            .where(UsedCode.code == code, UsedCode.expires_at <= utcnow())
            .values(expires_at=expires_at, created_at=utcnow())
        )
        self.db.commit()
        return result.rowcount == 1

    def mark_code_used(self, code: str, ttl_min: Optional[int] = None) -> None:
        """Idempotent variant of claim_code."""
        self.claim_code(code, ttl_min)

    def cleanup_expired(self) -> tuple[int, int]:
        now = utcnow()
        states = self.db.execute(delete(OAuthState).where(OAuthState.expires_at <= now)).rowcount
        codes = self.db.execute(delete(UsedCode).where(UsedCode.expires_at <= now)).rowcount
        self.db.commit()
        log.info("cleaned up %s expired states, %s expired codes", states, codes)
        return states, codes


# Cookie fallback: carries the same {client_id, redirect_uri} binding when the
# state row cannot be read because the store itself is failing.

def sign_state_cookie(secret: str, state: str, client_id: str, redirect_uri: str) -> str:
    now = utcnow()
    return jwt.encode(
        {
            "st": state,
            "cid": client_id,
            "ru": redirect_uri,
            "iat": now,
            "exp": now + timedelta(seconds=COOKIE_TTL_S),
        },
        secret,
        algorithm="HS256",
    )


def verify_state_cookie(secret: str, cookie: Optional[str], state: str) -> Optional[StateRecord]:
    if not cookie or not state:
        return None
    try:
        claims = jwt.decode(cookie, secret, algorithms=["HS256"])
    except jwt.PyJWTError as e:
        log.warning("state cookie rejected: %s", e)
        return None
    if not secrets.compare_digest(str(claims.get("st", "")), state):
        return None
    return StateRecord(client_id=claims.get("cid", ""), redirect_uri=claims.get("ru", ""))
