"""Periodic repayment reconciliation.

Runs inside the API process when ``RECONCILIATION_ENABLED`` is set, or once
from the command line::

    python -m salary_advance.jobs.reconciliation
"""

from __future__ import annotations

import asyncio
import logging

from salary_advance.core.context import clear_context, set_job
from salary_advance.core.logging import configure_logging
from salary_advance.core.settings import settings
from salary_advance.db.session import Database
from salary_advance.schemas.repayment import ReconciliationRunDTO
from salary_advance.services.repayments import run_reconciliation

logger = logging.getLogger(__name__)

JOB_NAME = "c2b-reconciliation"


async def run_once(database: Database) -> ReconciliationRunDTO:
    set_job(JOB_NAME)
    try:
        async with database.session() as session:
            summary = await run_reconciliation(session)
        logger.info(
            "Reconciliation run finished examined=%s processed=%s skipped=%s failed=%s",
            summary.examined,
            summary.processed,
            summary.skipped,
            summary.failed,
        )
        return summary
    finally:
        clear_context()


class ReconciliationScheduler:
    """Background task that reconciles queued payments every interval."""

    def __init__(self, database: Database, *, interval_seconds: float | None = None) -> None:
        self.database = database
        self.interval_seconds = interval_seconds or settings.reconciliation_interval_seconds
        self._task: asyncio.Task | None = None
        self._stopping = asyncio.Event()

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self) -> None:
        if self.running:
            return
        self._stopping.clear()
        self._task = asyncio.create_task(self._loop(), name=JOB_NAME)
        logger.info("Reconciliation scheduler started interval=%ss", self.interval_seconds)

    async def stop(self) -> None:
        if self._task is None:
            return
        self._stopping.set()
        try:
            await asyncio.wait_for(self._task, timeout=10.0)
        except (TimeoutError, asyncio.TimeoutError):
            self._task.cancel()
            logger.warning("Reconciliation run did not finish before shutdown; cancelled")
        self._task = None
        logger.info("Reconciliation scheduler stopped")

    async def _loop(self) -> None:
        while not self._stopping.is_set():
            try:
                await run_once(self.database)
            except Exception:
                logger.exception("Reconciliation run failed")
            try:
                await asyncio.wait_for(self._stopping.wait(), timeout=self.interval_seconds)
            except (TimeoutError, asyncio.TimeoutError):
                continue


async def main() -> None:
    configure_logging()
    database = Database(settings.database_url)
    await database.connect()
    try:
        await run_once(database)
    finally:
        await database.disconnect()


if __name__ == "__main__":
    asyncio.run(main())
