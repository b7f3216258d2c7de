import logging
import math
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Optional
from urllib.parse import urlencode

import httpx

from token_gateway.config import Settings
from token_gateway.errors import ProviderTimeout, ProviderUnavailable, UpstreamError
from token_gateway.models import utcnow

log = logging.getLogger(__name__)

DEFAULT_EXPIRES_IN = 3600


def parse_expires_in(value: Any) -> int:
    """Token lifetime in seconds; anything missing or non-numeric becomes one hour."""
    if isinstance(value, bool) or value is None:
        return DEFAULT_EXPIRES_IN
    try:
        seconds = float(value)
    except (TypeError, ValueError):
        return DEFAULT_EXPIRES_IN
    if math.isnan(seconds) or math.isinf(seconds) or seconds <= 0:
        return DEFAULT_EXPIRES_IN
    return int(seconds)


def is_user_type_mismatch(status_code: int) -> bool:
    """Statuses after which the next `user_type` candidate is worth trying."""
    return 400 <= status_code < 500 and status_code not in (408, 429)


@dataclass
class TokenGrant:
    access_token: str
    refresh_token: str
    expires_in: int = DEFAULT_EXPIRES_IN
    scope: str = ""
    token_type: str = "Bearer"
    user_type: Optional[str] = None
    location_id: Optional[str] = None
    company_id: Optional[str] = None
    issued_at: datetime = field(default_factory=utcnow)

    @classmethod
    def from_response(cls, data: dict) -> "TokenGrant":
        if not isinstance(data, dict) or not data.get("access_token"):
            raise UpstreamError("Token response did not include an access token", detail=data, status_code=502)
        return cls(
            access_token=data["access_token"],
            refresh_token=data.get("refresh_token") or "",
            expires_in=parse_expires_in(data.get("expires_in")),
            scope=data.get("scope") or "",
            token_type=data.get("token_type") or "Bearer",
            user_type=data.get("userType") or data.get("user_type"),
            location_id=data.get("locationId") or data.get("location_id"),
            company_id=data.get("companyId") or data.get("company_id"),
        )

    @property
    def expires_at(self) -> datetime:
        return self.issued_at + timedelta(seconds=self.expires_in)


def _body(resp: httpx.Response) -> Any:
    try:
        return resp.json()
    except ValueError:
        return resp.text


class HighLevelClient:
    """Outbound calls to the HighLevel (LeadConnector) API."""

    def __init__(self, settings: Settings, transport: Optional[httpx.AsyncBaseTransport] = None):
        self.settings = settings
        self.transport = transport

    def http_client(self, timeout: float) -> httpx.AsyncClient:
        return httpx.AsyncClient(base_url=self.settings.hl_api_base, timeout=timeout, transport=self.transport)

    def api_headers(self, token: str, *, include_content_type: bool = False) -> dict:
        headers = {
            "Authorization": f"Bearer {token}",
            "Version": self.settings.hl_api_version,
            "Accept": "application/json",
        }
        if include_content_type:
            headers["Content-Type"] = "application/json"
        return headers

    def authorize_url(self, state: str) -> str:
        params = {
            "response_type": "code",
            "client_id": self.settings.hl_client_id,
            "redirect_uri": self.settings.redirect_uri,
            "scope": self.settings.hl_scopes,
            "state": state,
        }
        return f"{self.settings.hl_auth_base}/oauth/chooselocation?" + urlencode(params)

    async def _token_request(self, form: dict) -> TokenGrant:
        try:
            async with self.http_client(self.settings.token_timeout_s) as client:
                resp = await client.post(
                    "/oauth/token",
                    data=form,
                    headers={"Accept": "application/json"},
                )
        except httpx.TimeoutException as e:
            raise ProviderTimeout("Token endpoint timed out") from e
        except httpx.TransportError as e:
            raise ProviderUnavailable(f"Token endpoint unreachable: {e.__class__.__name__}") from e

        if resp.status_code != 200:
            raise UpstreamError(
                f"Token endpoint returned {resp.status_code}",
                detail=_body(resp),
                status_code=resp.status_code,
            )
        return TokenGrant.from_response(_body(resp))

    async def exchange_code(self, code: str, user_type: str) -> TokenGrant:
        grant = await self._token_request(
            {
                "client_id": self.settings.hl_client_id,
                "client_secret": self.settings.hl_client_secret.get_secret_value(),
                "grant_type": "authorization_code",
                "code": code,
                "redirect_uri": self.settings.redirect_uri,
                "user_type": user_type,
            }
        )
        grant.user_type = grant.user_type or user_type
        return grant

    async def exchange_code_with_fallback(self, code: str, candidates: list[str]) -> TokenGrant:
        """Try each `user_type` in order, moving on only after a type-mismatch-like 4xx."""
        last_error: Optional[UpstreamError] = None
        for user_type in candidates:
            try:
                return await self.exchange_code(code, user_type)
            except (ProviderTimeout, ProviderUnavailable):
                raise
            except UpstreamError as e:
                if not is_user_type_mismatch(e.status_code):
                    raise
                log.warning(
                    "code exchange rejected, trying next user_type",
                    extra={"meta": {"user_type": user_type, "status": e.status_code}},
                )
                last_error = e
        if last_error is None:
            raise ValueError("no user_type candidates")
        raise last_error

    async def refresh(self, refresh_token: str, user_type: Optional[str] = None) -> TokenGrant:
        form = {
            "client_id": self.settings.hl_client_id,
            "client_secret": self.settings.hl_client_secret.get_secret_value(),
            "grant_type": "refresh_token",
            "refresh_token": refresh_token,
        }
        if user_type:
            form["user_type"] = user_type
        return await self._token_request(form)

    async def request(
        self,
        access_token: str,
        method: str,
        endpoint: str,
        data: Any = None,
        headers: Optional[dict] = None,
        params: Optional[dict] = None,
        timeout: Optional[float] = None,
    ) -> httpx.Response:
        """Forward one API call; any HTTP status is returned, not raised."""
        merged = dict(headers or {})
        merged.update(self.api_headers(access_token, include_content_type=data is not None))
        try:
            async with self.http_client(timeout or self.settings.proxy_timeout_s) as client:
                return await client.request(
                    method.upper(),
                    endpoint,
                    json=data,
                    headers=merged,
                    params=params,
                )
        except httpx.TimeoutException as e:
            raise ProviderTimeout(f"{method.upper()} {endpoint} timed out") from e
        except httpx.TransportError as e:
            raise ProviderUnavailable(f"{method.upper()} {endpoint} failed: {e.__class__.__name__}") from e
