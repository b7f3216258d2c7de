import logging
import uuid
from datetime import datetime, timezone

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware

from token_gateway import models  # noqa: F401  registers the tables on Base
from token_gateway.config import get_settings
from token_gateway.database import Base, SessionLocal, engine
from token_gateway.errors import register_error_handlers
from token_gateway.logging_config import configure_logging, req_id_var
from token_gateway.metrics import Metrics
from token_gateway.rate_limit import RateLimitMiddleware
from token_gateway.refresher import BackgroundRefresher
from token_gateway.routers import admin, oauth, proxy

VERSION = "2.1.0"

log = logging.getLogger(__name__)


def create_app() -> FastAPI:
    settings = get_settings()
    configure_logging(settings.log_level, settings.log_format)

    app = FastAPI(title="HighLevel Token Gateway", version=VERSION)
    app.state.metrics = Metrics()
    app.state.refresher = None

    app.add_middleware(
        CORSMiddleware,
        allow_origins=[] if settings.is_production else ["*"],
        allow_methods=["GET", "POST"],
        allow_headers=["*"],
    )

    if settings.rate_limit_enabled:
        app.add_middleware(RateLimitMiddleware, settings=settings, metrics=app.state.metrics)

    @app.middleware("http")
    async def request_id(request: Request, call_next):
        rid = request.headers.get("x-request-id") or uuid.uuid4().hex[:16]
        token = req_id_var.set(rid)
        try:
            response = await call_next(request)
        finally:
            req_id_var.reset(token)
        response.headers["X-Request-ID"] = rid
        return response

    register_error_handlers(app)

    @app.on_event("startup")
    async def on_startup():
        missing = settings.require()
        if missing:
            log.error("missing required configuration: %s", ", ".join(missing))
        Base.metadata.create_all(bind=engine)
        if settings.refresher_enabled and not missing:
            app.state.refresher = BackgroundRefresher(SessionLocal, settings, app.state.metrics)
            app.state.refresher.start()
        log.info(
            "oauth server started",
            extra={"meta": {"env": settings.env, "redirect_uri": settings.redirect_uri, "commit": settings.commit_sha}},
        )

    @app.on_event("shutdown")
    async def on_shutdown():
        if app.state.refresher is not None:
            app.state.refresher.stop()
        engine.dispose()

    app.include_router(oauth.router)
    app.include_router(proxy.router)
    app.include_router(admin.router)

    @app.get("/health")
    def health_check():
        return {
            "status": "healthy",
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "version": VERSION,
            "environment": settings.env,
        }

    @app.get("/version")
    def version():
        return {
            "commit": settings.commit_sha,
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "environment": settings.env,
        }

    return app


app = create_app()
