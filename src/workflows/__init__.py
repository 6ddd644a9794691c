"""
Scheduled Workflows for Receipt Insights.

Batch jobs (weekly digest, recurring detection, budget alerts, month
reconciliation) and the cron loop that runs them.
"""

from src.workflows.scheduled_jobs import ScheduledJobs, ScheduledTask
from src.workflows.scheduler import Scheduler, next_run

__all__ = ["ScheduledJobs", "ScheduledTask", "Scheduler", "next_run"]
