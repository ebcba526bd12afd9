"""
APScheduler configuration for homevault.

Manages:
- Scheduled backups per scope (cron expressions from the config)
- Daily retention sweep

Jobs run one at a time: a single worker thread, one instance per job and
coalesced misfires, so two backups never overlap.
"""

import logging

from apscheduler.executors.pool import ThreadPoolExecutor
from apscheduler.schedulers.blocking import BlockingScheduler
from apscheduler.triggers.cron import CronTrigger

from homevault.backup import BackupError, build_scope, execute_backup, sweep_retention
from homevault.config import get_settings

logger = logging.getLogger(__name__)


def run_scheduled_backup(app, scope: str):
    """
    Execute one scheduled backup inside the app context.

    Fatal backup errors are logged; the run record already carries them.

    Args:
        app: Flask app instance
        scope: Backup scope name
    """
    with app.app_context():
        logger.info(f"Scheduler executing {scope} backup")
        try:
            summary = execute_backup(get_settings(app), scope)
        except BackupError as e:
            logger.error(f"Scheduled {scope} backup failed: {e}")
            return None

        logger.info(f"Scheduled {scope} backup {summary.set_id} completed with status: {summary.status}")
        return summary


def run_scheduled_sweep(app):
    """
    Execute the retention sweep inside the app context.

    Args:
        app: Flask app instance
    """
    with app.app_context():
        summary = sweep_retention(get_settings(app))
        for error in summary['errors']:
            logger.warning(error)
        return summary


def build_scheduler(app) -> BlockingScheduler:
    """
    Create a scheduler with one job per configured backup schedule plus the
    retention sweep.

    Args:
        app: Flask app instance

    Raises:
        UnknownScope: If a schedule names a scope that is not configured
        ValueError: If a cron expression is invalid
    """
    settings = get_settings(app)

    executors = {
        'default': ThreadPoolExecutor(max_workers=1)
    }

    job_defaults = {
        'coalesce': True,  # Combine multiple pending instances into one
        'max_instances': 1,  # Only one instance of a job at a time
        'misfire_grace_time': 300  # 5 minutes grace period for misfires
    }

    scheduler = BlockingScheduler(
        executors=executors,
        job_defaults=job_defaults,
        timezone=settings.scheduler_timezone
    )

    for scope, cron in settings.backup_schedules.items():
        build_scope(settings, scope)
        scheduler.add_job(
            func=run_scheduled_backup,
            args=[app, scope],
            trigger=CronTrigger.from_crontab(cron, timezone=settings.scheduler_timezone),
            id=f"backup_{scope}",
            name=f"Backup: {scope}",
            replace_existing=True
        )

    if settings.retention_schedule:
        scheduler.add_job(
            func=run_scheduled_sweep,
            args=[app],
            trigger=CronTrigger.from_crontab(settings.retention_schedule, timezone=settings.scheduler_timezone),
            id='retention_sweep',
            name='Daily Retention Sweep',
            replace_existing=True
        )

    return scheduler


def run_scheduler(app):
    """
    Run the schedules in the foreground until interrupted.

    Args:
        app: Flask app instance
    """
    scheduler = build_scheduler(app)

    jobs = scheduler.get_jobs()
    logger.info(f"Loaded {len(jobs)} scheduled jobs:")
    for job in jobs:
        logger.info(f"  - {job.id}: {job.name} ({job.trigger})")

    try:
        scheduler.start()
    except (KeyboardInterrupt, SystemExit):
        logger.info("Scheduler stopped")
