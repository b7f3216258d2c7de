"""Client used by the business server to reach the token server.

It never sees provider tokens: every call carries a freshly minted
service token and goes through `/proxy/hl`.
"""

import logging
from typing import Any, Optional

import httpx

from token_gateway.s2s import issue_service_token
from token_gateway.tenant import Tenant

log = logging.getLogger(__name__)


class TokenServerError(Exception):
    def __init__(self, status_code: int, body: Any):
        super().__init__(f"token server returned {status_code}")
        self.status_code = status_code
        self.body = body


class TokenServerClient:
    def __init__(
        self,
        base_url: str,
        shared_secret: str,
        *,
        issuer: str = "api-server",
        audience: str = "oauth-server",
        timeout: float = 30.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.base_url = base_url.rstrip("/")
        self.shared_secret = shared_secret
        self.issuer = issuer
        self.audience = audience
        self.timeout = timeout
        self.transport = transport

    def _headers(self, tenant: Optional[Tenant] = None) -> dict:
        token = issue_service_token(self.shared_secret, issuer=self.issuer, audience=self.audience, tenant=tenant)
        return {"Authorization": f"Bearer {token}"}

    async def _send(self, method: str, path: str, *, tenant: Optional[Tenant] = None, **kwargs) -> httpx.Response:
        async with httpx.AsyncClient(base_url=self.base_url, timeout=self.timeout, transport=self.transport) as client:
            return await client.request(method, path, headers=self._headers(tenant), **kwargs)

    async def proxy(
        self,
        tenant: Tenant,
        method: str,
        endpoint: str,
        data: Any = None,
        headers: Optional[dict] = None,
    ) -> httpx.Response:
        """Call a HighLevel endpoint as `tenant`; the provider's status comes back unchanged."""
        resp = await self._send(
            "POST",
            "/proxy/hl",
            tenant=tenant,
            json={"method": method, "endpoint": endpoint, "data": data, "headers": headers or {}},
        )
        if resp.status_code >= 400:
            log.warning(
                "token server proxy request failed",
                extra={"meta": {"method": method, "endpoint": endpoint, "status": resp.status_code}},
            )
        return resp

    async def installations(self) -> list:
        resp = await self._send("GET", "/admin/installations")
        if resp.status_code != 200:
            raise TokenServerError(resp.status_code, resp.text)
        return resp.json()

    async def metrics(self) -> dict:
        resp = await self._send("GET", "/metrics")
        if resp.status_code != 200:
            raise TokenServerError(resp.status_code, resp.text)
        return resp.json()

    async def disconnect(self, tenant: Tenant) -> dict:
        body = {"location_id": None, "agency_id": None}
        body[f"{tenant.kind}_id"] = tenant.id
        resp = await self._send("POST", "/oauth/disconnect", tenant=tenant, json=body)
        if resp.status_code != 200:
            raise TokenServerError(resp.status_code, resp.text)
        return resp.json()
