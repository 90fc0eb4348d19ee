import asyncio
from datetime import datetime, timezone
from typing import Any, Dict, Optional

import structlog
from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.cron import CronTrigger

from usage_guard.modules.notifications.domain.sweep import ThresholdSweepService

logger = structlog.get_logger()

SWEEP_JOB_ID = "hourly_threshold_sweep"


class ThresholdSweepScheduler:
    """Runs the threshold sweep once at startup and then at the top of every hour."""

    def __init__(
        self,
        sweep: ThresholdSweepService,
        scheduler: Optional[AsyncIOScheduler] = None,
    ) -> None:
        self.sweep = sweep
        self.scheduler = scheduler or AsyncIOScheduler()
        self._startup_task: Optional[asyncio.Task[None]] = None
        self._last_run_success: bool | None = None
        self._last_run_time: str | None = None
        self._last_triggered: int | None = None

    async def threshold_sweep_job(self) -> None:
        """Scheduled entry point; failures are recorded and logged, never raised."""
        try:
            triggered = await self.sweep.check_thresholds()
        except Exception as e:
            self._last_run_success = False
            logger.error("threshold_sweep_job_failed", error=str(e))
        else:
            self._last_run_success = True
            self._last_triggered = triggered
        finally:
            self._last_run_time = datetime.now(timezone.utc).isoformat()

    def start(self, run_on_startup: bool = True) -> None:
        """Defines the hourly schedule, starts APScheduler and the catch-up run."""
        # Threshold sweep: every hour, on the hour
        self.scheduler.add_job(
            self.threshold_sweep_job,
            trigger=CronTrigger(minute=0, timezone="UTC"),
            id=SWEEP_JOB_ID,
            replace_existing=True,
            coalesce=True,
            max_instances=1,
        )
        self.scheduler.start()
        logger.info("threshold_sweep_scheduler_started", run_on_startup=run_on_startup)

        if run_on_startup:
            self._startup_task = asyncio.create_task(
                self.threshold_sweep_job(), name="threshold-sweep-startup"
            )

    async def stop(self) -> None:
        task = self._startup_task
        self._startup_task = None
        if task is not None and not task.done():
            task.cancel()
            await asyncio.gather(task, return_exceptions=True)

        if not self.scheduler.running:
            logger.debug("threshold_sweep_scheduler_stop_skipped_not_running")
            return
        self.scheduler.shutdown(wait=False)
        logger.info("threshold_sweep_scheduler_stopped")

    def get_status(self) -> Dict[str, Any]:
        return {
            "running": self.scheduler.running,
            "last_run_success": self._last_run_success,
            "last_run_time": self._last_run_time,
            "last_triggered": self._last_triggered,
            "jobs": [str(job.id) for job in self.scheduler.get_jobs()],
        }
