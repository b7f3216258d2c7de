import uuid
from datetime import datetime, timezone

from sqlalchemy import JSON, CheckConstraint, Column, DateTime, Integer, String, Text

from token_gateway.database import Base
from token_gateway.tenant import Tenant, tenant_from_ids


def utcnow() -> datetime:
    # naive UTC, so values compare the same way after a sqlite round trip
    return datetime.now(timezone.utc).replace(tzinfo=None)


INSTALLATION_STATUSES = ("active", "revoked", "expired", "error")


# one row per tenant grant
class Installation(Base):
    __tablename__ = "hl_installations"
    __table_args__ = (
        CheckConstraint(
            "(location_id IS NOT NULL AND agency_id IS NULL) OR "
            "(location_id IS NULL AND agency_id IS NOT NULL)",
            name="require_tenant_id",
        ),
        CheckConstraint(
            "status IN ('active', 'revoked', 'expired', 'error')",
            name="valid_status",
        ),
    )

    id = Column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    location_id = Column(String, unique=True, index=True, nullable=True)
    agency_id = Column(String, unique=True, index=True, nullable=True)

    # encrypted, see token_gateway.crypto
    access_token = Column(Text, nullable=False)
    refresh_token = Column(Text, nullable=False)
    token_type = Column(String, nullable=False, default="Bearer")
    scopes = Column(Text, nullable=False, default="")
    expires_at = Column(DateTime, nullable=False)

    installation_type = Column(String, nullable=False, default="location")
    status = Column(String, nullable=False, default="active", index=True)
    install_ip = Column(String)
    user_agent = Column(Text)

    last_token_refresh = Column(DateTime)
    created_at = Column(DateTime, default=utcnow, nullable=False)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow, nullable=False)

    @property
    def tenant(self) -> Tenant:
        tenant = tenant_from_ids(self.location_id, self.agency_id)
        if tenant is None:
            raise ValueError(f"installation {self.id} has no tenant id")
        return tenant

    @property
    def scope_list(self) -> list[str]:
        return self.scopes.split() if self.scopes else []

    def to_public_dict(self) -> dict:
        """Serializable view with the tokens left out."""
        return {
            "id": self.id,
            "location_id": self.location_id,
            "agency_id": self.agency_id,
            "installation_type": self.installation_type,
            "scopes": self.scope_list,
            "status": self.status,
            "expires_at": _iso(self.expires_at),
            "last_token_refresh": _iso(self.last_token_refresh),
            "created_at": _iso(self.created_at),
            "updated_at": _iso(self.updated_at),
        }


# anti-CSRF state, consumed once
class OAuthState(Base):
    __tablename__ = "oauth_state"

    state = Column(String, primary_key=True)
    client_id = Column(String, nullable=False)
    redirect_uri = Column(String, nullable=False)
    created_at = Column(DateTime, default=utcnow, nullable=False)
    expires_at = Column(DateTime, nullable=False, index=True)


# authorization codes already exchanged
class UsedCode(Base):
    __tablename__ = "oauth_used_codes"

    code = Column(String, primary_key=True)
    created_at = Column(DateTime, default=utcnow, nullable=False)
    expires_at = Column(DateTime, nullable=False, index=True)


# append-only
class AuditEntry(Base):
    __tablename__ = "hl_audit_log"

    id = Column(Integer, primary_key=True, autoincrement=True)
    installation_id = Column(String(36), index=True)
    event_type = Column(String, nullable=False)
    event_data = Column(JSON)
    ip_address = Column(String)
    user_agent = Column(Text)
    endpoint = Column(Text)
    created_at = Column(DateTime, default=utcnow, nullable=False)


def _iso(value):
    return value.isoformat() + "Z" if value else None
