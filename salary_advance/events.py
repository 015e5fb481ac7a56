import logging

from fastapi import FastAPI

from salary_advance.core.settings import settings
from salary_advance.jobs.reconciliation import ReconciliationScheduler
from salary_advance.utils.redis_client import close_redis_client

logger = logging.getLogger(__name__)


def register_event_handlers(app: FastAPI) -> None:
    @app.on_event("startup")
    async def on_startup() -> None:
        logger.info("Application startup")
        await app.state.database.connect()
        if settings.reconciliation_enabled:
            scheduler = ReconciliationScheduler(app.state.database)
            scheduler.start()
            app.state.reconciliation = scheduler

    @app.on_event("shutdown")
    async def on_shutdown() -> None:
        logger.info("Application shutdown")
        scheduler = getattr(app.state, "reconciliation", None)
        if scheduler is not None:
            await scheduler.stop()
        await close_redis_client()
        await app.state.database.disconnect()
