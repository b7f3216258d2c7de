import logging
from typing import Optional

from fastapi import Request
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from token_gateway.logging_config import redact
from token_gateway.models import AuditEntry

log = logging.getLogger(__name__)

EVENT_TYPES = ("install", "token_refresh", "error", "api_call", "revoke")


def request_meta(request: Optional[Request]) -> dict:
    if request is None:
        return {"ip_address": None, "user_agent": None, "endpoint": None}
    forwarded = request.headers.get("x-forwarded-for", "")
    ip = forwarded.split(",")[0].strip() if forwarded else (request.client.host if request.client else None)
    return {
        "ip_address": ip,
        "user_agent": request.headers.get("user-agent"),
        "endpoint": request.url.path,
    }


def audit_log(
    db: Session,
    installation_id: Optional[str],
    event_type: str,
    event_data: dict,
    request: Optional[Request] = None,
) -> None:
    """Append one audit row. A failing write is logged, never raised."""
    entry = AuditEntry(
        installation_id=installation_id,
        event_type=event_type,
        event_data=redact(event_data),
        **request_meta(request),
    )
    try:
        db.add(entry)
        db.commit()
    except SQLAlchemyError:
        db.rollback()
        log.exception("audit logging failed", extra={"meta": {"installation_id": installation_id, "event": event_type}})
