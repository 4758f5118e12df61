from __future__ import annotations

from typing import Any, Awaitable, Callable

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.cron import CronTrigger

SWEEP_JOB_ID = "nightly_integrity_sweep"


def parse_cron(cron_expr: str) -> CronTrigger:
    fields = cron_expr.split()
    if len(fields) != 5:
        raise ValueError("Cron must have 5 fields: min hour day month day_of_week")
    minute, hour, day, month, day_of_week = fields
    return CronTrigger(
        minute=minute,
        hour=hour,
        day=day,
        month=month,
        day_of_week=day_of_week,
    )


def build_nightly_sweep_scheduler(
    cron_expr: str,
    job_fn: Callable[[], Awaitable[Any]],
) -> AsyncIOScheduler:
    scheduler = AsyncIOScheduler()
    scheduler.add_job(
        job_fn,
        trigger=parse_cron(cron_expr),
        id=SWEEP_JOB_ID,
        replace_existing=True,
        max_instances=1,
        coalesce=True,
    )
    return scheduler
