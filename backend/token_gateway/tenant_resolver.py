"""Find out which tenant an access token belongs to.

Explicit hints win. Without them, a list of introspection strategies is
walked in order until one yields an identifier; a strategy failing never
stops the walk. The last resort reads identifiers out of the token itself
when it is a JWT. Nothing here authorizes anything, so that decode skips
signature verification.
"""

import logging
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Optional

import httpx
import jwt

from token_gateway.errors import GatewayError
from token_gateway.provider import HighLevelClient
from token_gateway.tenant import Agency, Location, Tenant, tenant_from_ids

log = logging.getLogger(__name__)

LOCATION_KEYS = ("locationId", "location_id")
AGENCY_KEYS = ("companyId", "company_id", "agencyId", "agency_id")


class StrategyError(Exception):
    pass


Strategy = Callable[[HighLevelClient, str], Awaitable[Optional[Tenant]]]


def _first(payload: dict, keys) -> Optional[str]:
    for key in keys:
        value = payload.get(key)
        if value:
            return str(value)
    return None


def tenant_from_payload(payload: Any) -> Optional[Tenant]:
    if not isinstance(payload, dict):
        return None
    location_id = _first(payload, LOCATION_KEYS)
    agency_id = _first(payload, AGENCY_KEYS)
    if location_id and agency_id:
        log.info("token is location scoped", extra={"meta": {"location_id": location_id, "parent_company_id": agency_id}})
    return tenant_from_ids(location_id, agency_id)


async def _get_json(client: HighLevelClient, access_token: str, path: str, *, params=None, method="GET", form=None) -> Any:
    headers = client.api_headers(access_token)
    try:
        async with client.http_client(client.settings.introspection_timeout_s) as http:
            if method == "POST":
                resp = await http.post(path, headers=headers, data=form)
            else:
                resp = await http.get(path, headers=headers, params=params)
    except httpx.HTTPError as e:
        raise StrategyError(f"{path}: {e.__class__.__name__}") from e
    if resp.status_code >= 400:
        raise StrategyError(f"{path}: HTTP {resp.status_code}")
    try:
        return resp.json()
    except ValueError as e:
        raise StrategyError(f"{path}: response is not JSON") from e


def _first_item(payload: Any, *keys: str) -> Optional[dict]:
    if not isinstance(payload, dict):
        raise StrategyError("unexpected payload shape")
    for key in keys:
        items = payload.get(key)
        if isinstance(items, list) and items:
            return items[0] if isinstance(items[0], dict) else None
    return None


async def users_me(client: HighLevelClient, access_token: str) -> Optional[Tenant]:
    return tenant_from_payload(await _get_json(client, access_token, "/users/me"))


async def list_locations(client: HighLevelClient, access_token: str) -> Optional[Tenant]:
    payload = await _get_json(client, access_token, "/locations/", params={"limit": 1})
    location = _first_item(payload, "locations", "data")
    if not location:
        return None
    location_id = location.get("id") or location.get("_id")
    return tenant_from_ids(location_id, _first(location, AGENCY_KEYS))


async def list_companies(client: HighLevelClient, access_token: str) -> Optional[Tenant]:
    payload = await _get_json(client, access_token, "/companies/", params={"limit": 1})
    company = _first_item(payload, "companies", "data")
    if not company:
        return None
    company_id = company.get("id") or company.get("_id")
    return Agency(str(company_id)) if company_id else None


async def userinfo(client: HighLevelClient, access_token: str) -> Optional[Tenant]:
    return tenant_from_payload(await _get_json(client, access_token, "/oauth/userinfo"))


async def introspect(client: HighLevelClient, access_token: str) -> Optional[Tenant]:
    payload = await _get_json(client, access_token, "/oauth/introspect", method="POST", form={"token": access_token})
    return tenant_from_payload(payload)


DEFAULT_STRATEGIES: list[tuple[str, Strategy]] = [
    ("users_me", users_me),
    ("locations", list_locations),
    ("companies", list_companies),
    ("userinfo", userinfo),
    ("introspect", introspect),
]


def tenant_from_token_claims(access_token: str) -> Optional[Tenant]:
    if not access_token or access_token.count(".") != 2:
        return None
    try:
        claims = jwt.decode(access_token, options={"verify_signature": False})
    except jwt.PyJWTError:
        log.debug("access token is not a decodable JWT")
        return None
    # HighLevel nests the ids under authClassId / primaryAuthClassId on some tokens
    tenant = tenant_from_payload(claims)
    if tenant is None and claims.get("authClass") in ("Location", "Company") and claims.get("authClassId"):
        cls = Location if claims["authClass"] == "Location" else Agency
        tenant = cls(str(claims["authClassId"]))
    return tenant


@dataclass
class Resolution:
    tenant: Optional[Tenant]
    source: str


class TenantResolver:
    def __init__(self, client: HighLevelClient, strategies: Optional[list[tuple[str, Strategy]]] = None):
        self.client = client
        self.strategies = DEFAULT_STRATEGIES if strategies is None else strategies

    async def resolve(self, access_token: str, hints: Optional[Tenant] = None, embedded: Optional[Tenant] = None) -> Resolution:
        """Never raises; an unresolved tenant comes back as Resolution(None, ...)."""
        if hints is not None:
            return Resolution(hints, "callback")
        if embedded is not None:
            return Resolution(embedded, "token_response")

        for name, strategy in self.strategies:
            try:
                tenant = await strategy(self.client, access_token)
            except (StrategyError, GatewayError, ValueError, TypeError, KeyError) as e:
                log.warning("tenant strategy %s failed: %s", name, e)
                continue
            if tenant is not None:
                log.info("tenant discovered via %s", name, extra={"meta": {"kind": tenant.kind, "id": tenant.id}})
                return Resolution(tenant, name)

        tenant = tenant_from_token_claims(access_token)
        if tenant is not None:
            log.info("tenant read from access token claims", extra={"meta": {"kind": tenant.kind}})
            return Resolution(tenant, "token_claims")

        log.error("all tenant discovery strategies failed")
        return Resolution(None, "unresolved")
