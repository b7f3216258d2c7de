"""Service-to-service tokens: short-lived HS256 JWTs shared by both tiers."""

import logging
import time
from dataclasses import dataclass
from typing import Optional

import jwt
from fastapi import Depends, Request

from token_gateway.config import Settings, get_settings
from token_gateway.errors import AuthError
from token_gateway.tenant import Tenant, tenant_columns, tenant_from_ids

log = logging.getLogger(__name__)


@dataclass
class ServicePrincipal:
    issuer: str
    tenant: Optional[Tenant]
    claims: dict


def issue_service_token(
    secret: str,
    *,
    issuer: str,
    audience: str,
    tenant: Optional[Tenant] = None,
    ttl_s: int = 300,
) -> str:
    now = int(time.time())
    payload = {"iss": issuer, "aud": audience, "iat": now, "exp": now + ttl_s}
    if tenant is not None:
        payload.update({k: v for k, v in tenant_columns(tenant).items() if v})
    return jwt.encode(payload, secret, algorithm="HS256")


def verify_service_token(token: str, settings: Settings) -> ServicePrincipal:
    secret = settings.s2s_shared_secret.get_secret_value()
    if not secret:
        raise AuthError("Service authentication is not configured")
    try:
        claims = jwt.decode(
            token,
            secret,
            algorithms=["HS256"],
            audience=settings.s2s_audience,
            issuer=settings.s2s_issuer,
            options={"require": ["exp", "iat", "iss", "aud"]},
        )
    except jwt.PyJWTError as e:
        log.warning("service token rejected: %s", e.__class__.__name__)
        raise AuthError("Invalid or expired token") from e
    if claims["exp"] - claims["iat"] > settings.s2s_max_lifetime_s:
        raise AuthError("Token lifetime exceeds the allowed maximum")
    return ServicePrincipal(
        issuer=claims["iss"],
        tenant=tenant_from_ids(claims.get("location_id"), claims.get("agency_id")),
        claims=claims,
    )


def require_service(request: Request, settings: Settings = Depends(get_settings)) -> ServicePrincipal:
    auth = request.headers.get("authorization", "")
    if not auth.startswith("Bearer "):
        raise AuthError("Missing or invalid authorization header")
    return verify_service_token(auth[len("Bearer "):].strip(), settings)
