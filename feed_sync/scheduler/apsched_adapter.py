"""APScheduler wrapper driving periodic refresh batches."""

from __future__ import annotations

from typing import TYPE_CHECKING

from apscheduler.schedulers.background import BackgroundScheduler
from apscheduler.triggers.interval import IntervalTrigger

from ..logging_conf import configure_logging

if TYPE_CHECKING:
    from ..orchestrator import Orchestrator

REFRESH_JOB_ID = "refresh::all"


class APSchedulerAdapter:
    """Manage the periodic refresh job."""

    def __init__(self, scheduler: BackgroundScheduler | None = None) -> None:
        self.scheduler = scheduler or BackgroundScheduler()
        self.logger = configure_logging().bind(component="scheduler")
        self.started = False

    def start(self) -> None:
        if not self.started:
            self.scheduler.start()
            self.started = True
            self.logger.info("apscheduler_started")

    def shutdown(self) -> None:
        if self.started:
            self.scheduler.shutdown(wait=False)
            self.started = False
            self.logger.info("apscheduler_stopped")

    def schedule_refresh(self, orchestrator: "Orchestrator", minutes: int) -> None:
        if minutes <= 0:
            raise ValueError("Refresh interval must be a positive number of minutes")
        self.scheduler.add_job(
            run_scheduled_refresh,
            trigger=IntervalTrigger(minutes=minutes),
            id=REFRESH_JOB_ID,
            args=[orchestrator],
            replace_existing=True,
            max_instances=1,
            coalesce=True,
        )
        self.logger.info("job_scheduled", job=REFRESH_JOB_ID, minutes=minutes)

    def cancel_refresh(self) -> None:
        try:
            self.scheduler.remove_job(REFRESH_JOB_ID)
        except Exception:  # noqa: BLE001
            self.logger.warning("job_remove_failed", job=REFRESH_JOB_ID)

    def list_jobs(self) -> list[dict]:
        jobs = []
        for job in self.scheduler.get_jobs():
            jobs.append(
                {
                    "id": job.id,
                    "next_run_time": getattr(job, "next_run_time", None),
                    "trigger": str(job.trigger),
                }
            )
        return jobs


def run_scheduled_refresh(orchestrator: "Orchestrator") -> None:
    logger = configure_logging().bind(component="scheduler")
    if orchestrator.is_batch_syncing:
        logger.info("scheduled_refresh_skipped", reason="batch_in_progress")
        return
    try:
        result = orchestrator.refresh_all()
    except Exception as exc:  # noqa: BLE001
        logger.error("scheduled_refresh_failed", error=str(exc))
        return
    logger.info("scheduled_refresh_finished", **result.as_dict())


__all__ = ["APSchedulerAdapter", "REFRESH_JOB_ID", "run_scheduled_refresh"]
