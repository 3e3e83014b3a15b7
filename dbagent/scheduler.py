"""
APScheduler configuration for scheduled mode.

`dbagent backup ENGINE --schedule '0 3 * * *'` (or SCHEDULE=...) keeps the
process running and performs a backup on every cron tick. At most one backup
runs at a time; ticks that fire while a backup is still running are merged.
"""

import signal
import logging
from datetime import datetime
from typing import Callable

from apscheduler.schedulers.blocking import BlockingScheduler
from apscheduler.triggers.cron import CronTrigger
from apscheduler.executors.pool import ThreadPoolExecutor


logger = logging.getLogger(__name__)

JOB_ID = 'dbagent_backup'


def _run_job(job: Callable, name: str):
    """
    Wrapper for executing the backup in scheduler context.

    A failed run is logged; the scheduler keeps going.
    """
    logger.info(f"Scheduler executing {name}")
    try:
        summary = job()
    except Exception as e:
        logger.error(f"Scheduled {name} failed: {e}")
        return
    logger.info(f"Scheduled {name} finished: {summary!r}")


def parse_cron(cron: str, timezone: str = 'UTC') -> CronTrigger:
    """
    Parse a five-field crontab expression.

    Raises:
        ValueError: If the expression is invalid
    """
    return CronTrigger.from_crontab(cron.strip(), timezone=timezone)


def build_scheduler(job: Callable, cron: str, timezone: str = 'UTC', name: str = 'backup') -> BlockingScheduler:
    """
    Create a blocking scheduler running job on a cron schedule.

    Args:
        job: Callable performing one backup
        cron: Crontab expression, e.g. '0 3 * * *'
        timezone: Timezone the expression is evaluated in
        name: Job name used in log messages

    Returns:
        Configured (not started) BlockingScheduler
    """
    executors = {
        'default': ThreadPoolExecutor(max_workers=1)
    }

    job_defaults = {
        'coalesce': True,  # Combine multiple pending runs into one
        'max_instances': 1,  # Only one backup at a time
        'misfire_grace_time': 300  # 5 minutes grace period for misfires
    }

    scheduler = BlockingScheduler(
        executors=executors,
        job_defaults=job_defaults,
        timezone=timezone
    )

    scheduler.add_job(
        func=_run_job,
        args=[job, name],
        trigger=parse_cron(cron, timezone),
        id=JOB_ID,
        name=f"Scheduled {name}",
        replace_existing=True
    )

    return scheduler


def run_scheduled(job: Callable, cron: str, timezone: str = 'UTC', name: str = 'backup'):
    """
    Run job on a cron schedule until SIGTERM or SIGINT.

    Shutting down waits for a backup that is already running.
    """
    scheduler = build_scheduler(job, cron, timezone=timezone, name=name)

    def _shutdown(signum, frame):
        logger.info(f"Received {signal.Signals(signum).name}, stopping scheduler after the current run")
        scheduler.shutdown(wait=True)

    for signum in (signal.SIGTERM, signal.SIGINT):
        signal.signal(signum, _shutdown)

    trigger = parse_cron(cron, timezone)
    next_run = trigger.get_next_fire_time(None, datetime.now(trigger.timezone))
    logger.info(f"Scheduler started: {name} on '{cron}' ({timezone}), next run: {next_run.isoformat()}")

    scheduler.start()
    logger.info("Scheduler stopped")
