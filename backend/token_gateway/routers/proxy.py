from typing import Any, Optional

from fastapi import APIRouter, Depends, Request, Response
from pydantic import BaseModel

from token_gateway.config import Settings, get_settings
from token_gateway.deps import get_metrics, get_provider, get_store
from token_gateway.errors import ValidationFailed
from token_gateway.installations import InstallationStore
from token_gateway.metrics import Metrics
from token_gateway.provider import HighLevelClient
from token_gateway.proxy import EndpointAllowList, ProxyGateway
from token_gateway.s2s import ServicePrincipal, require_service

router = APIRouter(prefix="/proxy", tags=["proxy"])


class ProxyRequest(BaseModel):
    method: str = ""
    endpoint: str = ""
    data: Optional[Any] = None
    headers: dict[str, str] = {}


def get_allow_list(settings: Settings = Depends(get_settings)) -> EndpointAllowList:
    return EndpointAllowList(globs=settings.extra_allowed_patterns)


@router.post("/hl")
async def proxy_hl(
    payload: ProxyRequest,
    request: Request,
    principal: ServicePrincipal = Depends(require_service),
    settings: Settings = Depends(get_settings),
    store: InstallationStore = Depends(get_store),
    provider: HighLevelClient = Depends(get_provider),
    allow_list: EndpointAllowList = Depends(get_allow_list),
    metrics: Metrics = Depends(get_metrics),
):
    if not payload.method or not payload.endpoint:
        raise ValidationFailed("Missing method or endpoint")
    # tenant comes from the service token, never from the body
    if principal.tenant is None:
        raise ValidationFailed("Missing location_id or agency_id in token")

    gateway = ProxyGateway(store, provider, allow_list, metrics, settings.refresh_safety_window_s)
    result = await gateway.forward(
        principal.tenant,
        payload.method,
        payload.endpoint,
        payload.data,
        payload.headers,
        request=request,
    )
    if not result.content:
        return Response(status_code=result.status_code)
    return Response(result.content, status_code=result.status_code, media_type=result.content_type)
