"""Cron service for scheduled agent tasks."""

from errand.cron.service import CronService, compute_next_run
from errand.cron.types import CronJob, CronPayload, CronSchedule

__all__ = ["CronService", "CronJob", "CronSchedule", "CronPayload", "compute_next_run"]
