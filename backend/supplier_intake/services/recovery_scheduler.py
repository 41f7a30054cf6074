"""
Recovery Scheduler - periodic background loop.

Each tick:
1. releases retry claims abandoned by a dead worker
2. fails submissions stuck in processing so recovery takes over
3. retries failed operations whose backoff has elapsed
4. dispatches pending submissions that were never picked up
"""
import asyncio
import logging
from datetime import datetime
from typing import Optional

from supplier_intake.errors import PipelineError
from supplier_intake.services.pipeline import Pipeline
from supplier_intake.utils.clock import utcnow

logger = logging.getLogger(__name__)


class RecoveryScheduler:
    def __init__(self, pipeline: Pipeline, interval_seconds: Optional[int] = None):
        self.pipeline = pipeline
        self.interval_seconds = interval_seconds or pipeline.settings.recovery_scheduler_interval_seconds
        self._task: Optional[asyncio.Task] = None
        self._stopping = asyncio.Event()

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    async def run_once(self, now: Optional[datetime] = None) -> dict:
        """One scheduler tick; returns counts for logging and tests"""
        now = now or utcnow()
        settings = self.pipeline.settings
        summary = {"released": 0, "stuck": 0, "retried": 0, "recovered": 0, "dispatched": 0}

        db = self.pipeline.session_factory()
        try:
            summary["released"] = self.pipeline.recovery.release_stale_claims(db, now=now)
            summary["stuck"] = self.pipeline.worker.fail_stuck(db, settings.stuck_processing_minutes, now=now)

            attempts = await self.pipeline.recovery.retry_due(db, now=now, limit=settings.recovery_batch_size)
            summary["retried"] = len(attempts)
            summary["recovered"] = sum(1 for a in attempts if a.succeeded)

            if settings.auto_process_submissions:
                for submission_id in self.pipeline.worker.pending_for_sweep(
                    db, settings.pending_submission_sweep_minutes, now=now, limit=settings.recovery_batch_size
                ):
                    try:
                        await self.pipeline.worker.process(db, submission_id)
                        summary["dispatched"] += 1
                    except PipelineError as e:
                        # Claimed by another worker between the sweep query and now
                        logger.info(f"Sweep skipped submission {submission_id}: {e.message}")
        finally:
            db.close()

        if any(summary.values()):
            logger.info(
                f"Recovery tick: {summary['retried']} retried ({summary['recovered']} recovered), "
                f"{summary['dispatched']} dispatched, {summary['stuck']} stuck, {summary['released']} released"
            )
        return summary

    async def _loop(self) -> None:
        logger.info(f"Recovery scheduler started (every {self.interval_seconds}s)")
        while not self._stopping.is_set():
            try:
                await self.run_once()
            except Exception as e:
                logger.error(f"Recovery tick failed: {str(e)}", exc_info=True)
            try:
                await asyncio.wait_for(self._stopping.wait(), timeout=self.interval_seconds)
            except asyncio.TimeoutError:
                pass
        logger.info("Recovery scheduler stopped")

    def start(self) -> None:
        if self.running:
            return
        self._stopping.clear()
        self._task = asyncio.create_task(self._loop())

    async def stop(self) -> None:
        if not self.running:
            return
        self._stopping.set()
        await self._task
        self._task = None
