"""
APScheduler configuration for vmkuper.

Manages:
- The nightly backup run (based on a cron expression)
- Manual run triggers
"""

import logging
import uuid
from datetime import datetime, timedelta, timezone
from apscheduler.schedulers.background import BackgroundScheduler
from apscheduler.triggers.cron import CronTrigger
from apscheduler.triggers.date import DateTrigger
from apscheduler.jobstores.sqlalchemy import SQLAlchemyJobStore
from apscheduler.executors.pool import ThreadPoolExecutor

from vmkuper.backup.orchestrator import execute_backup_run


logger = logging.getLogger(__name__)

NIGHTLY_JOB_ID = 'nightly_backup'

# Global scheduler instance and Flask app reference
scheduler = None
flask_app = None


def init_scheduler(app):
    """
    Initialize and configure APScheduler.

    Args:
        app: Flask app instance
    """
    global scheduler, flask_app

    if scheduler is not None:
        return scheduler

    # Store Flask app reference for use in background threads
    flask_app = app

    jobstores = {
        'default': SQLAlchemyJobStore(url=app.config['SQLALCHEMY_DATABASE_URI'])
    }

    # A single worker: runs never overlap within this process
    executors = {
        'default': ThreadPoolExecutor(max_workers=1)
    }

    job_defaults = {
        'coalesce': True,  # Combine multiple pending instances into one
        'max_instances': 1,  # Only one instance of a job at a time
        'misfire_grace_time': 300  # 5 minutes grace period for misfires
    }

    scheduler = BackgroundScheduler(
        jobstores=jobstores,
        executors=executors,
        job_defaults=job_defaults,
        timezone=app.config.get('SCHEDULER_TIMEZONE', 'UTC')
    )

    cron = app.config.get('SCHEDULE_CRON')
    if cron:
        scheduler.add_job(
            func=_execute_backup_wrapper,
            trigger=CronTrigger.from_crontab(cron, timezone=app.config.get('SCHEDULER_TIMEZONE', 'UTC')),
            id=NIGHTLY_JOB_ID,
            name='Nightly VM Backup',
            replace_existing=True
        )
    else:
        logger.info("SCHEDULE_CRON is empty, nightly backup not scheduled")

    return scheduler


def start_scheduler():
    """
    Start the APScheduler.

    Should be called after Flask app is initialized.
    """
    if scheduler is None:
        raise RuntimeError("Scheduler not initialized. Call init_scheduler() first.")

    if not scheduler.running:
        scheduler.start()
        logger.info(f"APScheduler started (state={scheduler.state})")

        for job in scheduler.get_jobs():
            next_run = job.next_run_time.isoformat() if job.next_run_time else 'N/A'
            logger.info(f"  - {job.id}: {job.name} (next run: {next_run})")
    else:
        logger.info(f"Scheduler already running (state={scheduler.state})")


def stop_scheduler():
    """Stop the APScheduler."""
    if scheduler and scheduler.running:
        scheduler.shutdown()
        logger.info("APScheduler stopped")


def _execute_backup_wrapper():
    """
    Run a backup inside the stored app's context.

    Errors are logged here because APScheduler would only print them.
    """
    with flask_app.app_context():
        try:
            logger.info("Scheduler starting backup run")
            summary = execute_backup_run()
            logger.info(f"Scheduled backup run finished with status: {summary.status}")
        except Exception:
            logger.exception("Scheduled backup run failed")


def trigger_backup_now() -> str:
    """
    Trigger a backup run immediately.

    Returns:
        Id of the one-time scheduler job

    Raises:
        RuntimeError: If the scheduler is not running
    """
    if scheduler is None or not scheduler.running:
        raise RuntimeError("Scheduler not running")

    now = datetime.now(timezone.utc)
    job_id = f"manual_{now:%Y%m%d%H%M%S}_{uuid.uuid4().hex[:8]}"

    # 1 second delay to avoid race condition
    scheduler.add_job(
        func=_execute_backup_wrapper,
        trigger=DateTrigger(run_date=now + timedelta(seconds=1)),
        id=job_id,
        name='Manual VM Backup',
        replace_existing=False
    )

    logger.info(f"Manually triggered backup run ({job_id})")
    return job_id


def get_scheduled_jobs() -> list:
    """
    Get list of all scheduled jobs.

    Returns:
        List of dicts with job information
    """
    if scheduler is None:
        return []

    jobs = []

    for job in scheduler.get_jobs():
        jobs.append({
            'id': job.id,
            'name': job.name,
            'next_run': job.next_run_time.isoformat() if job.next_run_time else None,
            'trigger': str(job.trigger)
        })

    return jobs


def is_scheduler_running() -> bool:
    return scheduler is not None and scheduler.running
