import json
import logging
import re
import sys
from contextvars import ContextVar
from datetime import datetime, timezone

# Set per request by the middleware in main.py
req_id_var: ContextVar[str] = ContextVar("req_id", default="-")

_SECRET_KEYS = {"code", "access_token", "refresh_token", "client_secret", "authorization", "token"}
_BEARER_RE = re.compile(r"(Bearer\s+)[A-Za-z0-9._~+/=-]+")


def redact(value):
    """Mask secrets in a dict (by key) or in a string (bearer tokens)."""
    if isinstance(value, dict):
        return {
            k: "[redacted]" if k.lower() in _SECRET_KEYS and v else redact(v)
            for k, v in value.items()
        }
    if isinstance(value, str):
        return _BEARER_RE.sub(r"\1[redacted]", value)
    return value


class RequestIdFilter(logging.Filter):
    def filter(self, record: logging.LogRecord) -> bool:
        if not hasattr(record, "req_id"):
            record.req_id = req_id_var.get()
        return True


class JsonFormatter(logging.Formatter):
    def __init__(self, service: str = "oauth-server"):
        super().__init__()
        self.service = service

    def format(self, record: logging.LogRecord) -> str:
        payload = {
            "timestamp": datetime.now(timezone.utc).isoformat(timespec="seconds"),
            "service": self.service,
            "req_id": getattr(record, "req_id", req_id_var.get()),
            "level": record.levelname,
            "component": record.name,
            "msg": redact(record.getMessage()),
        }
        if hasattr(record, "meta"):
            payload["meta"] = redact(record.meta)
        if record.exc_info:
            payload["exc"] = self.formatException(record.exc_info)
        try:
            return json.dumps(payload, ensure_ascii=False, default=str)
        except (TypeError, ValueError):
            return payload["msg"]


def configure_logging(level: str = "INFO", fmt: str = "json") -> None:
    """Call once at app startup."""
    root_logger = logging.getLogger()
    root_logger.setLevel(getattr(logging, level.upper(), logging.INFO))

    for handler in root_logger.handlers[:]:
        root_logger.removeHandler(handler)

    handler = logging.StreamHandler(sys.stdout)
    handler.addFilter(RequestIdFilter())
    if fmt == "json":
        handler.setFormatter(JsonFormatter())
    else:
        handler.setFormatter(
            logging.Formatter("%(asctime)s %(levelname)s [%(name)s] [%(req_id)s] %(message)s")
        )
    root_logger.addHandler(handler)

    if level.upper() != "DEBUG":
        logging.getLogger("httpx").setLevel(logging.WARNING)
        logging.getLogger("httpcore").setLevel(logging.WARNING)
