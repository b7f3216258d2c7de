from fastapi import APIRouter, Depends, Query, Response
from prometheus_client import CONTENT_TYPE_LATEST
from sqlalchemy.orm import Session

from token_gateway.database import get_db
from token_gateway.deps import get_metrics
from token_gateway.installations import InstallationStore
from token_gateway.metrics import Metrics
from token_gateway.s2s import ServicePrincipal, require_service

router = APIRouter(tags=["admin"])


@router.get("/admin/installations")
def list_installations(
    limit: int = Query(100, ge=1, le=500),
    principal: ServicePrincipal = Depends(require_service),
    db: Session = Depends(get_db),
):
    # tokens stay encrypted and are left out of the listing
    return [i.to_public_dict() for i in InstallationStore(db).list_recent(limit)]


@router.get("/metrics")
def metrics_endpoint(
    principal: ServicePrincipal = Depends(require_service),
    db: Session = Depends(get_db),
    metrics: Metrics = Depends(get_metrics),
):
    snapshot = metrics.snapshot()
    snapshot["installations"] = InstallationStore(db).count_by_status()
    return snapshot


@router.get("/metrics/prometheus")
def metrics_exposition(
    principal: ServicePrincipal = Depends(require_service),
    metrics: Metrics = Depends(get_metrics),
):
    return Response(metrics.exposition(), media_type=CONTENT_TYPE_LATEST)
