import logging
from datetime import timedelta
from typing import Optional

from fastapi import Request

from token_gateway.audit import audit_log
from token_gateway.errors import AuthError, ProviderTimeout, ProviderUnavailable, UpstreamError
from token_gateway.installations import Credentials, InstallationStore
from token_gateway.metrics import Metrics
from token_gateway.models import Installation, utcnow
from token_gateway.provider import HighLevelClient

log = logging.getLogger(__name__)


def needs_refresh(installation: Installation, window_s: int) -> bool:
    return installation.expires_at <= utcnow() + timedelta(seconds=window_s)


class TokenRefreshFailed(AuthError):
    error = "token_refresh_failed"


class TokenLifecycle:
    """Refreshes an installation's tokens and records the outcome."""

    def __init__(self, store: InstallationStore, provider: HighLevelClient, metrics: Metrics):
        self.store = store
        self.provider = provider
        self.metrics = metrics

    async def refresh(self, installation: Installation, request: Optional[Request] = None) -> Credentials:
        creds = self.store.credentials(installation)
        old_expires_at = installation.expires_at
        try:
            grant = await self.provider.refresh(creds.refresh_token, creds.user_type)
        except UpstreamError as e:
            retryable = isinstance(e, (ProviderTimeout, ProviderUnavailable))
            self.metrics.token_refresh.labels(result=e.error if retryable else "failed").inc()
            log.error(
                "token refresh failed",
                extra={"meta": {"installation_id": installation.id, "status": e.status_code, "error": e.message}},
            )
            audit_log(
                self.store.db,
                installation.id,
                "error",
                {"type": e.error if retryable else "token_refresh_failed", "status": e.status_code, "error": e.message},
                request,
            )
            if retryable:
                # 504 / 502, retryable
                raise
            raise TokenRefreshFailed("Token refresh failed", detail={"provider_status": e.status_code}) from e

        self.store.update_tokens(installation, grant)
        self.metrics.token_refresh.labels(result="success").inc()
        audit_log(
            self.store.db,
            installation.id,
            "token_refresh",
            {
                "old_expires_at": old_expires_at.isoformat(),
                "new_expires_at": grant.expires_at.isoformat(),
            },
            request,
        )
        return Credentials(
            installation_id=installation.id,
            access_token=grant.access_token,
            refresh_token=grant.refresh_token or creds.refresh_token,
            expires_at=grant.expires_at,
            user_type=creds.user_type,
        )

    async def fresh_credentials(self, installation: Installation, window_s: int, request: Optional[Request] = None) -> Credentials:
        """Credentials valid for at least `window_s` more seconds, refreshing first if needed."""
        if needs_refresh(installation, window_s):
            log.info("refreshing access token", extra={"meta": {"installation_id": installation.id}})
            return await self.refresh(installation, request)
        return self.store.credentials(installation)
