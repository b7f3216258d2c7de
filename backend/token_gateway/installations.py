import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Optional

from sqlalchemy import func, or_, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from token_gateway.crypto import TokenCipher
from token_gateway.models import INSTALLATION_STATUSES, Installation, utcnow
from token_gateway.provider import TokenGrant
from token_gateway.tenant import Location, Tenant, tenant_columns

log = logging.getLogger(__name__)


@dataclass
class Credentials:
    """Decrypted tokens for one installation. Never persisted or logged."""

    installation_id: str
    access_token: str
    refresh_token: str
    expires_at: datetime
    user_type: str


def _tenant_filter(tenant: Tenant):
    if isinstance(tenant, Location):
        return Installation.location_id == tenant.id
    return Installation.agency_id == tenant.id


class InstallationStore:
    def __init__(self, db: Session, cipher: Optional[TokenCipher] = None):
        self.db = db
        self.cipher = cipher

    def _select_for_tenant(self, tenant: Tenant, *, lock: bool = False):
        stmt = select(Installation).where(_tenant_filter(tenant))
        if lock:
            # no-op on sqlite, row lock on postgres
            stmt = stmt.with_for_update()
        return stmt

    def get(self, tenant: Tenant, *, active_only: bool = True) -> Optional[Installation]:
        stmt = self._select_for_tenant(tenant)
        if active_only:
            stmt = stmt.where(Installation.status == "active")
        return self.db.execute(stmt).scalars().first()

    def credentials(self, installation: Installation) -> Credentials:
        return Credentials(
            installation_id=installation.id,
            access_token=self.cipher.decrypt(installation.access_token),
            refresh_token=self.cipher.decrypt(installation.refresh_token),
            expires_at=installation.expires_at,
            user_type="Location" if installation.location_id else "Company",
        )

    def upsert(
        self,
        tenant: Tenant,
        grant: TokenGrant,
        *,
        install_ip: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> tuple[Installation, bool]:
        """Insert or update the installation for `tenant`. Returns (row, created).

        The tenant row is locked while it is updated; a concurrent insert for
        the same tenant loses on the unique constraint and is retried as an
        update.
        """
        values = dict(
            access_token=self.cipher.encrypt(grant.access_token),
            refresh_token=self.cipher.encrypt(grant.refresh_token),
            token_type=grant.token_type,
            scopes=grant.scope,
            expires_at=grant.expires_at,
            installation_type=tenant.kind,
            status="active",
            install_ip=install_ip,
            user_agent=user_agent,
            last_token_refresh=utcnow(),
        )
        for attempt in range(2):
            existing = self.db.execute(self._select_for_tenant(tenant, lock=True)).scalars().first()
            if existing is not None:
                for key, value in values.items():
                    setattr(existing, key, value)
                existing.updated_at = utcnow()
                self.db.commit()
                return existing, False

            row = Installation(**tenant_columns(tenant), **values)
            self.db.add(row)
            try:
                self.db.commit()
                return row, True
            except IntegrityError:
                self.db.rollback()
                if attempt:
                    raise
                log.info("concurrent install for the same tenant, retrying as update")
        raise RuntimeError("unreachable")

    def update_tokens(self, installation: Installation, grant: TokenGrant) -> Installation:
        installation.access_token = self.cipher.encrypt(grant.access_token)
        if grant.refresh_token:
            installation.refresh_token = self.cipher.encrypt(grant.refresh_token)
        installation.expires_at = grant.expires_at
        if grant.scope:
            installation.scopes = grant.scope
        installation.last_token_refresh = utcnow()
        installation.updated_at = utcnow()
        self.db.commit()
        return installation

    def set_status(self, installation: Installation, status: str) -> None:
        installation.status = status
        installation.updated_at = utcnow()
        self.db.commit()

    def revoke(self, tenant: Tenant) -> Optional[Installation]:
        installation = self.db.execute(self._select_for_tenant(tenant, lock=True)).scalars().first()
        if installation is None or installation.status == "revoked":
            self.db.rollback()
            return None
        self.set_status(installation, "revoked")
        return installation

    def list_recent(self, limit: int = 100) -> list[Installation]:
        stmt = select(Installation).order_by(Installation.created_at.desc()).limit(limit)
        return list(self.db.execute(stmt).scalars())

    def due_for_refresh(self, lookahead_s: int, cooldown_s: int) -> list[Installation]:
        now = utcnow()
        stmt = select(Installation).where(
            Installation.status == "active",
            Installation.expires_at <= now + timedelta(seconds=lookahead_s),
            or_(
                Installation.last_token_refresh.is_(None),
                Installation.last_token_refresh <= now - timedelta(seconds=cooldown_s),
            ),
        )
        return list(self.db.execute(stmt).scalars())

    def count_by_status(self) -> dict:
        counts = {status: 0 for status in INSTALLATION_STATUSES}
        rows = self.db.execute(select(Installation.status, func.count()).group_by(Installation.status))
        for status, n in rows:
            counts[status] = n
        return counts
