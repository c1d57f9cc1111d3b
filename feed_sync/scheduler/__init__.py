"""Scheduling helpers."""

from .apsched_adapter import APSchedulerAdapter, REFRESH_JOB_ID, run_scheduled_refresh

__all__ = ["APSchedulerAdapter", "REFRESH_JOB_ID", "run_scheduled_refresh"]
