import logging
from typing import Callable, Optional

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.interval import IntervalTrigger
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from token_gateway.config import Settings
from token_gateway.crypto import TokenCipher
from token_gateway.errors import GatewayError
from token_gateway.installations import InstallationStore
from token_gateway.metrics import Metrics
from token_gateway.provider import HighLevelClient
from token_gateway.replay_guard import ReplayGuard
from token_gateway.token_lifecycle import TokenLifecycle

log = logging.getLogger(__name__)


class BackgroundRefresher:
    """Refreshes tokens that are about to expire, on a fixed interval.

    Best effort: the proxy refreshes just in time anyway, so one tenant
    failing here is logged and the sweep moves on.
    """

    def __init__(
        self,
        session_factory: Callable[[], Session],
        settings: Settings,
        metrics: Metrics,
        provider: Optional[HighLevelClient] = None,
    ):
        self.session_factory = session_factory
        self.settings = settings
        self.metrics = metrics
        self.provider = provider or HighLevelClient(settings)
        self.scheduler = AsyncIOScheduler()

    async def run_once(self) -> dict:
        summary = {"due": 0, "refreshed": 0, "failed": 0}
        db = self.session_factory()
        try:
            store = InstallationStore(db, TokenCipher(self.settings.encryption_key.get_secret_value()))
            lifecycle = TokenLifecycle(store, self.provider, self.metrics)
            due = store.due_for_refresh(self.settings.refresh_lookahead_s, self.settings.refresh_cooldown_s)
            summary["due"] = len(due)
            for installation in due:
                try:
                    await lifecycle.refresh(installation)
                    summary["refreshed"] += 1
                    log.info(
                        "background token refresh successful",
                        extra={"meta": {"installation_id": installation.id}},
                    )
                except (GatewayError, SQLAlchemyError) as e:
                    db.rollback()
                    summary["failed"] += 1
                    log.error(
                        "background token refresh failed",
                        extra={"meta": {"installation_id": installation.id, "error": str(e)}},
                    )
            ReplayGuard(db).cleanup_expired()
        finally:
            db.close()
        self.metrics.refresh_sweeps.inc()
        return summary

    def start(self) -> None:
        if self.scheduler.running:
            return
        self.scheduler.add_job(
            self.run_once,
            IntervalTrigger(seconds=self.settings.refresh_interval_s),
            id="token_refresh",
            name="background token refresh",
            max_instances=1,
            coalesce=True,
            replace_existing=True,
        )
        self.scheduler.start()
        log.info("token refresher scheduled", extra={"meta": {"interval_s": self.settings.refresh_interval_s}})

    def stop(self) -> None:
        if self.scheduler.running:
            self.scheduler.shutdown(wait=False)
