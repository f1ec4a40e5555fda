"""
Indexing Background Jobs
========================

APScheduler wrapper that resumes an incomplete indexing run shortly after
application startup.
"""

from datetime import datetime, timedelta, timezone
from typing import Optional

from apscheduler.schedulers.asyncio import AsyncIOScheduler

from helpdesk_retrieval.config import settings
from helpdesk_retrieval.indexing.application import RagIndexerService
from helpdesk_retrieval.shared.infrastructure.logging import get_logger

logger = get_logger(__name__)

RESUME_JOB_ID = "indexer_resume"


class IndexingResumeScheduler:
    """
    One-shot delayed resume of the indexing pipeline.

    The job runs inside its own error boundary: a failed resume is logged
    and never reaches the scheduler or the application.
    """

    def __init__(self, indexer: RagIndexerService, delay_seconds: Optional[int] = None):
        self._indexer = indexer
        self.delay_seconds = settings.indexer_resume_delay_seconds if delay_seconds is None else delay_seconds
        self._scheduler: Optional[AsyncIOScheduler] = None
        self._running = False

    async def run_resume(self) -> None:
        """Job body: resume and log the outcome."""
        try:
            stats = await self._indexer.resume_if_incomplete()
        except Exception as e:
            logger.error(
                "Scheduled indexing resume failed",
                extra={"pipeline_id": self._indexer.pipeline_id, "error": str(e)},
                exc_info=True
            )
            return

        if stats is not None:
            logger.info(
                "Scheduled indexing resume finished",
                extra={
                    "pipeline_id": self._indexer.pipeline_id,
                    "processed_requests": stats.processed_requests,
                    "total_chunks": stats.total_chunks,
                }
            )

    async def start(self) -> None:
        """Schedule the resume job after the configured delay."""
        if self._running:
            logger.warning("Indexing resume scheduler already running")
            return

        self._scheduler = AsyncIOScheduler()
        run_date = datetime.now(timezone.utc) + timedelta(seconds=self.delay_seconds)

        self._scheduler.add_job(
            self.run_resume,
            "date",
            run_date=run_date,
            id=RESUME_JOB_ID,
            name="Indexing Resume Job",
            misfire_grace_time=60,
            max_instances=1,
            replace_existing=True
        )

        self._scheduler.start()
        self._running = True

        logger.info(
            "Indexing resume scheduled",
            extra={"delay_seconds": self.delay_seconds, "pipeline_id": self._indexer.pipeline_id}
        )

    async def stop(self) -> None:
        """Stop the scheduler; waits for a running job to finish."""
        if not self._running:
            return

        if self._scheduler:
            self._scheduler.shutdown(wait=True)

        self._running = False
        logger.info("Indexing resume scheduler stopped")

    @property
    def is_running(self) -> bool:
        return self._running
