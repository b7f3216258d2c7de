import logging
from typing import Optional

from fastapi import APIRouter, Depends, Request
from fastapi.responses import JSONResponse, RedirectResponse
from pydantic import BaseModel

from token_gateway.audit import audit_log
from token_gateway.callback import CallbackHandler
from token_gateway.config import Settings, get_settings
from token_gateway.deps import get_guard, get_metrics, get_provider, get_store
from token_gateway.errors import GatewayError, NotFound, TenantUnresolved, ValidationFailed, html_page, wants_html
from token_gateway.installations import InstallationStore
from token_gateway.metrics import Metrics
from token_gateway.provider import HighLevelClient
from token_gateway.replay_guard import COOKIE_TTL_S, ReplayGuard, sign_state_cookie
from token_gateway.s2s import ServicePrincipal, require_service
from token_gateway.tenant import tenant_from_ids
from token_gateway.tenant_resolver import TenantResolver

log = logging.getLogger(__name__)

router = APIRouter(prefix="/oauth", tags=["oauth"])


@router.get("/start")
def start(
    request: Request,
    format: Optional[str] = None,
    settings: Settings = Depends(get_settings),
    guard: ReplayGuard = Depends(get_guard),
    provider: HighLevelClient = Depends(get_provider),
):
    if not settings.hl_client_id:
        raise GatewayError("HL_CLIENT_ID is not configured")

    state = guard.issue_state(settings.hl_client_id, settings.redirect_uri)
    auth_url = provider.authorize_url(state)

    if format == "json" or "application/json" in request.headers.get("accept", ""):
        r = JSONResponse({"url": auth_url, "state": state})
    else:
        r = RedirectResponse(auth_url, status_code=302)

    secret = settings.state_cookie_key
    if secret:
        r.set_cookie(
            key=settings.state_cookie_name,
            value=sign_state_cookie(secret, state, settings.hl_client_id, settings.redirect_uri),
            httponly=True,
            max_age=COOKIE_TTL_S,
            samesite="lax",
            secure=settings.is_production,
        )
    return r


@router.get("/callback")
async def callback(
    request: Request,
    settings: Settings = Depends(get_settings),
    guard: ReplayGuard = Depends(get_guard),
    provider: HighLevelClient = Depends(get_provider),
    store: InstallationStore = Depends(get_store),
    metrics: Metrics = Depends(get_metrics),
):
    handler = CallbackHandler(settings, guard, provider, TenantResolver(provider), store, metrics)
    try:
        result = await handler.handle(
            request.query_params,
            request=request,
            state_cookie=request.cookies.get(settings.state_cookie_name),
        )
    except TenantUnresolved as e:
        # accepted but needs an explicit reinstall; not an error page
        if wants_html(request):
            return html_page("Almost there", e.message, e.status_code)
        return JSONResponse(e.to_dict(), status_code=e.status_code)

    kind = "Location" if result.installation.location_id else "Agency"
    r = html_page("Connected", f"Connected to HighLevel ({kind}). You can close this window.")
    r.delete_cookie(settings.state_cookie_name)
    return r


class DisconnectRequest(BaseModel):
    location_id: Optional[str] = None
    agency_id: Optional[str] = None


@router.post("/disconnect")
def disconnect(
    payload: DisconnectRequest,
    request: Request,
    principal: ServicePrincipal = Depends(require_service),
    store: InstallationStore = Depends(get_store),
    metrics: Metrics = Depends(get_metrics),
):
    tenant = tenant_from_ids(payload.location_id, payload.agency_id)
    if tenant is None:
        raise ValidationFailed("Missing location_id or agency_id")
    if principal.tenant is not None and principal.tenant != tenant:
        raise ValidationFailed("Token is not authorized for this tenant", status_code=403, error="forbidden")

    installation = store.revoke(tenant)
    if installation is None:
        raise NotFound("Installation not found", error="installation_not_found")

    audit_log(store.db, installation.id, "revoke", {"kind": tenant.kind, "tenant": tenant.id, "by": principal.issuer}, request)
    metrics.installation_changes.labels(change="revoked").inc()
    log.info("installation revoked", extra={"meta": {"installation_id": installation.id, "kind": tenant.kind}})
    return {"success": True, "message": "Installation revoked successfully"}
