import logging
import re
from dataclasses import dataclass
from typing import Any, Iterable, Optional

from fastapi import Request

from token_gateway.audit import audit_log
from token_gateway.errors import Forbidden, GatewayError, NotFound, ValidationFailed
from token_gateway.installations import InstallationStore
from token_gateway.metrics import Metrics
from token_gateway.provider import HighLevelClient
from token_gateway.tenant import Tenant
from token_gateway.token_lifecycle import TokenLifecycle

log = logging.getLogger(__name__)

_ID = r"[\w-]+"

DEFAULT_ALLOWED_ENDPOINTS = [
    # Location endpoints
    rf"^/locations/{_ID}$",
    rf"^/locations/{_ID}/contacts",
    rf"^/locations/{_ID}/opportunities",
    rf"^/locations/{_ID}/calendars",
    rf"^/locations/{_ID}/users",
    rf"^/locations/{_ID}/custom-fields",
    rf"^/locations/{_ID}/tags",
    rf"^/locations/{_ID}/workflows",
    # Contact endpoints
    rf"^/contacts/{_ID}$",
    rf"^/contacts/{_ID}/notes",
    rf"^/contacts/{_ID}/tasks",
    rf"^/contacts/{_ID}/appointments",
    # Opportunity endpoints
    rf"^/opportunities/{_ID}$",
    rf"^/opportunities/{_ID}/notes",
    # Calendar endpoints
    rf"^/calendars/{_ID}/events",
    rf"^/calendars/{_ID}/slots",
]

ALLOWED_METHODS = {"GET", "POST", "PUT", "PATCH", "DELETE"}
# caller headers that never reach the provider
DROPPED_HEADERS = {"authorization", "host", "cookie", "content-length", "version"}


def glob_to_regex(pattern: str) -> str:
    """`/contacts/*` matches exactly one path segment per `*`."""
    return "^" + re.escape(pattern).replace(r"\*", r"[^/]+") + "$"


class EndpointAllowList:
    def __init__(self, patterns: Iterable[str] = DEFAULT_ALLOWED_ENDPOINTS, globs: Iterable[str] = ()):
        self.patterns = [re.compile(p) for p in patterns]
        self.patterns += [re.compile(glob_to_regex(g)) for g in globs]

    def is_allowed(self, endpoint: str) -> bool:
        if not endpoint or not endpoint.startswith("/") or endpoint.startswith("//"):
            return False
        path = endpoint.split("?", 1)[0]
        if ".." in path.split("/") or "\\" in path or "%" in path or "://" in endpoint:
            return False
        return any(p.match(path) for p in self.patterns)


@dataclass
class ProxyResult:
    """Provider reply, passed back to the caller byte for byte."""

    status_code: int
    content: bytes
    content_type: Optional[str]


class ProxyGateway:
    def __init__(
        self,
        store: InstallationStore,
        provider: HighLevelClient,
        allow_list: EndpointAllowList,
        metrics: Metrics,
        safety_window_s: int = 300,
    ):
        self.store = store
        self.provider = provider
        self.allow_list = allow_list
        self.metrics = metrics
        self.safety_window_s = safety_window_s
        self.lifecycle = TokenLifecycle(store, provider, metrics)

    async def forward(
        self,
        tenant: Tenant,
        method: str,
        endpoint: str,
        data: Any = None,
        headers: Optional[dict] = None,
        request: Optional[Request] = None,
    ) -> ProxyResult:
        method = (method or "").upper()
        installation_id = None
        try:
            if method not in ALLOWED_METHODS:
                raise ValidationFailed(f"Method {method or '(none)'} is not supported")

            if not self.allow_list.is_allowed(endpoint):
                log.warning(
                    "blocked disallowed endpoint access",
                    extra={"meta": {"endpoint": endpoint, "tenant": tenant.id, "kind": tenant.kind}},
                )
                raise Forbidden("Endpoint not allowed", detail={"endpoint": endpoint})

            installation = self.store.get(tenant)
            if installation is None:
                raise NotFound("Installation not found", error="installation_not_found")
            installation_id = installation.id

            creds = await self.lifecycle.fresh_credentials(installation, self.safety_window_s, request)
            forward_headers = {k: v for k, v in (headers or {}).items() if k.lower() not in DROPPED_HEADERS}
            resp = await self.provider.request(creds.access_token, method, endpoint, data, forward_headers)
        except GatewayError as e:
            self.metrics.proxy_calls.labels(outcome="blocked" if isinstance(e, Forbidden) else "failed").inc()
            self._audit(installation_id, method, endpoint, e.status_code, request, error=e.error)
            raise

        self.metrics.proxy_calls.labels(outcome="ok").inc()
        self._audit(installation_id, method, endpoint, resp.status_code, request)
        return ProxyResult(resp.status_code, resp.content, resp.headers.get("content-type"))

    def _audit(self, installation_id, method, endpoint, status_code, request, error=None):
        data = {"method": method, "endpoint": endpoint, "status_code": status_code}
        if error:
            data["error"] = error
        audit_log(self.store.db, installation_id, "api_call", data, request)
