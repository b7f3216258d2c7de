"""OAuth callback: verify state, spend the code once, exchange, resolve, persist.

Each stage is a gate; failing one raises a GatewayError whose status and
`error` code say which gate it was:

    Received -> StateVerified -> CodeFresh -> TokenExchanged
             -> TenantResolved -> Persisted -> Responded
"""

import logging
from dataclasses import dataclass
from enum import Enum
from typing import Mapping, Optional

from fastapi import Request
from sqlalchemy.exc import SQLAlchemyError

from token_gateway.audit import audit_log, request_meta
from token_gateway.config import Settings
from token_gateway.errors import GatewayError, ReplayRejected, TenantUnresolved, ValidationFailed
from token_gateway.installations import InstallationStore
from token_gateway.metrics import Metrics
from token_gateway.models import Installation
from token_gateway.provider import HighLevelClient
from token_gateway.replay_guard import ReplayGuard, StateRecord, verify_state_cookie
from token_gateway.tenant import Tenant, tenant_from_ids, user_type_candidates
from token_gateway.tenant_resolver import TenantResolver

log = logging.getLogger(__name__)


class Stage(str, Enum):
    RECEIVED = "received"
    STATE_VERIFIED = "state_verified"
    CODE_FRESH = "code_fresh"
    TOKEN_EXCHANGED = "token_exchanged"
    TENANT_RESOLVED = "tenant_resolved"
    PERSISTED = "persisted"


@dataclass
class CallbackHints:
    location_id: Optional[str] = None
    agency_id: Optional[str] = None

    @classmethod
    def from_query(cls, query: Mapping[str, str]) -> "CallbackHints":
        return cls(
            location_id=query.get("locationId") or query.get("location_id") or None,
            agency_id=(
                query.get("companyId")
                or query.get("company_id")
                or query.get("agencyId")
                or query.get("agency_id")
                or None
            ),
        )

    @property
    def tenant(self) -> Optional[Tenant]:
        return tenant_from_ids(self.location_id, self.agency_id)


@dataclass
class CallbackResult:
    installation: Installation
    tenant: Tenant
    created: bool
    tenant_source: str


class CallbackHandler:
    def __init__(
        self,
        settings: Settings,
        guard: ReplayGuard,
        provider: HighLevelClient,
        resolver: TenantResolver,
        store: InstallationStore,
        metrics: Metrics,
    ):
        self.settings = settings
        self.guard = guard
        self.provider = provider
        self.resolver = resolver
        self.store = store
        self.metrics = metrics

    def _verify_state(self, state: Optional[str], state_cookie: Optional[str]) -> None:
        if not state:
            if self.settings.oauth_require_state:
                raise ReplayRejected("Invalid or expired state")
            log.info("callback without state accepted (provider-initiated install)")
            return

        try:
            record = self.guard.consume_state(state)
        except SQLAlchemyError:
            # store unavailable: accept only a cookie carrying the same binding
            self.guard.db.rollback()
            log.exception("state store lookup failed, trying cookie fallback")
            record = verify_state_cookie(self.settings.state_cookie_key, state_cookie, state)
            if record is None:
                raise

        if record is None:
            raise ReplayRejected("Invalid or expired state")
        self._check_binding(record)

    def _check_binding(self, record: StateRecord) -> None:
        if record.client_id != self.settings.hl_client_id or record.redirect_uri != self.settings.redirect_uri:
            log.warning("state issued for a different client or redirect uri")
            raise ValidationFailed("State does not match this client", error="client_mismatch")

    async def handle(
        self,
        query: Mapping[str, str],
        request: Optional[Request] = None,
        state_cookie: Optional[str] = None,
    ) -> CallbackResult:
        stage = Stage.RECEIVED
        try:
            if query.get("error"):
                raise ValidationFailed(
                    "Authorization was not granted",
                    error="authorization_denied",
                    detail={"provider_error": query.get("error"), "description": query.get("error_description")},
                )
            code = query.get("code")
            if not code:
                raise ValidationFailed("Missing required parameter: code", error="missing_code")

            self._verify_state(query.get("state"), state_cookie)
            stage = Stage.STATE_VERIFIED

            if self.guard.is_code_used(code) or not self.guard.claim_code(code):
                raise ReplayRejected("Authorization code already used", status_code=409, error="code_already_used")
            stage = Stage.CODE_FRESH

            hints = CallbackHints.from_query(query)
            grant = await self.provider.exchange_code_with_fallback(
                code, user_type_candidates(hints.location_id, hints.agency_id)
            )
            stage = Stage.TOKEN_EXCHANGED

            resolution = await self.resolver.resolve(
                grant.access_token,
                hints=hints.tenant,
                embedded=tenant_from_ids(grant.location_id, grant.company_id),
            )
            if resolution.tenant is None:
                raise TenantUnresolved(
                    "Connected, but the account could not be identified. "
                    "Please re-install choosing Agency or Location explicitly."
                )
            tenant = resolution.tenant
            stage = Stage.TENANT_RESOLVED

            meta = request_meta(request)
            installation, created = self.store.upsert(
                tenant, grant, install_ip=meta["ip_address"], user_agent=meta["user_agent"]
            )
            stage = Stage.PERSISTED
        except GatewayError as e:
            self.metrics.oauth_callback.labels(result=e.error).inc()
            log.warning(
                "oauth callback failed",
                extra={"meta": {"stage": stage.value, "error": e.error, "status": e.status_code}},
            )
            raise

        audit_log(
            self.store.db,
            installation.id,
            "install",
            {
                "location_id": installation.location_id,
                "agency_id": installation.agency_id,
                "scopes": installation.scope_list,
                "expires_at": installation.expires_at.isoformat(),
                "created": created,
                "tenant_source": resolution.source,
            },
            request,
        )
        self.metrics.oauth_callback.labels(result="success").inc()
        self.metrics.installation_changes.labels(change="created" if created else "updated").inc()
        log.info(
            "oauth installation successful",
            extra={
                "meta": {
                    "installation_id": installation.id,
                    "kind": tenant.kind,
                    "tenant": tenant.id,
                    "created": created,
                }
            },
        )
        return CallbackResult(installation, tenant, created, resolution.source)
