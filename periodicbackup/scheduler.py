"""
APScheduler configuration and job scheduling for periodicbackup.

Manages:
- The periodic backup job (cron expression from BackupSettings)
- Manual "backup now" triggers
- Daily retention policy enforcement
"""

import logging
from datetime import datetime, timedelta, timezone
from apscheduler.schedulers.background import BackgroundScheduler
from apscheduler.triggers.cron import CronTrigger
from apscheduler.triggers.date import DateTrigger
from apscheduler.jobstores.sqlalchemy import SQLAlchemyJobStore
from apscheduler.executors.pool import ThreadPoolExecutor

from periodicbackup.models import BackupSettings, run_lease
from periodicbackup.backup.errors import RunInProgressError
from periodicbackup.backup.executor import execute_backup
from periodicbackup.backup.retention import enforce_retention


logger = logging.getLogger(__name__)

BACKUP_JOB_ID = 'periodic_backup'
RETENTION_JOB_ID = 'retention_cleanup'

# Global scheduler instance and Flask app reference
scheduler = None
flask_app = None


def validate_cron(cron: str, tz: str = 'UTC') -> CronTrigger:
    """
    Parse a crontab expression.

    Raises:
        ValueError: If the expression is not valid cron syntax
    """
    if not cron or not cron.strip():
        raise ValueError("Cron expression is empty")
    return CronTrigger.from_crontab(cron.strip(), timezone=tz)


def _timezone() -> str:
    if flask_app is None:
        return 'UTC'
    return flask_app.config.get('SCHEDULER_TIMEZONE', 'UTC')


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
    tz = app.config.get('SCHEDULER_TIMEZONE', 'UTC')

    jobstores = {
        'default': SQLAlchemyJobStore(url=app.config['SQLALCHEMY_DATABASE_URI'])
    }

    executors = {
        'default': ThreadPoolExecutor(max_workers=app.config.get('SCHEDULER_MAX_WORKERS', 2))
    }

    job_defaults = {
        'coalesce': True,  # Combine multiple pending instances into one
        'max_instances': 1,  # Per job; overlapping runs are excluded by the run lease
        'misfire_grace_time': 300  # 5 minutes grace period for misfires
    }

    scheduler = BackgroundScheduler(
        jobstores=jobstores,
        executors=executors,
        job_defaults=job_defaults,
        timezone=tz
    )

    # Retention also runs after every backup; the daily pass covers manual-only setups
    scheduler.add_job(
        func=_execute_retention_wrapper,
        trigger=validate_cron(app.config.get('RETENTION_CRON', '0 3 * * *'), tz),
        id=RETENTION_JOB_ID,
        name='Daily Retention Cleanup',
        replace_existing=True
    )

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
        logger.info(f"APScheduler started (state={scheduler.state}, running={scheduler.running})")

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


def sync_backup_schedule():
    """
    Synchronize the periodic backup job with the stored cron expression.

    Call after app startup and after the settings change.
    """
    if scheduler is None:
        raise RuntimeError("Scheduler not initialized")

    # Old manual triggers have already run or missed their window
    for job in scheduler.get_jobs():
        if job.id.startswith('manual_'):
            try:
                scheduler.remove_job(job.id)
                logger.info(f"Cleaned up old manual job: {job.id}")
            except Exception as e:
                logger.warning(f"Failed to remove old manual job {job.id}: {e}")

    settings = BackupSettings.query.first()
    existing = scheduler.get_job(BACKUP_JOB_ID)

    if settings is None or not settings.cron:
        if existing:
            scheduler.remove_job(BACKUP_JOB_ID)
            logger.info("Removed periodic backup job (no schedule configured)")
        return

    try:
        trigger = validate_cron(settings.cron, _timezone())
    except ValueError as e:
        logger.error(f"Invalid backup schedule {settings.cron!r}: {e}")
        return

    if existing:
        existing.reschedule(trigger=trigger)
        logger.info(f"Updated periodic backup schedule: {settings.cron}")
    else:
        scheduler.add_job(
            func=_execute_backup_wrapper,
            trigger=trigger,
            id=BACKUP_JOB_ID,
            name='Periodic Backup',
            replace_existing=True
        )
        logger.info(f"Scheduled periodic backup: {settings.cron}")


def _execute_backup_wrapper():
    """
    Run a backup inside the Flask app context.

    APScheduler runs jobs on its own threads, so the app context has to be
    pushed explicitly.
    """
    with flask_app.app_context():
        try:
            logger.info("Scheduler executing backup")
            run = execute_backup()
            logger.info(f"Backup run {run.id} completed with status: {run.status}")
        except RunInProgressError as e:
            logger.warning(f"Scheduled backup skipped: {e}")
        except Exception:
            logger.exception("Scheduled backup crashed")


def _execute_retention_wrapper():
    with flask_app.app_context():
        try:
            with run_lease('retention'):
                run = enforce_retention()
            logger.info(f"Retention run {run.id} completed with status: {run.status}")
        except RunInProgressError as e:
            logger.warning(f"Scheduled retention skipped: {e}")
        except Exception:
            logger.exception("Scheduled retention crashed")


def trigger_backup_now() -> str:
    """
    Run a backup immediately on the scheduler's worker pool.

    Returns:
        Id of the one-time scheduler job
    """
    if scheduler is None:
        raise RuntimeError("Scheduler not initialized")

    now = datetime.now(timezone.utc)
    job_id = f"manual_{int(now.timestamp())}"

    # 1 second delay to avoid racing the request's own transaction
    scheduler.add_job(
        func=_execute_backup_wrapper,
        trigger=DateTrigger(run_date=now + timedelta(seconds=1)),
        id=job_id,
        name='Manual Backup',
        replace_existing=True
    )

    logger.info("Manually triggered backup")
    return job_id


def get_scheduled_jobs() -> list:
    """
    Get list of all scheduled jobs.

    Returns:
        List of dicts with job information
    """
    if scheduler is None:
        return []

    return [
        {
            'id': job.id,
            'name': job.name,
            'next_run': job.next_run_time.isoformat() if job.next_run_time else None,
            'trigger': str(job.trigger)
        }
        for job in scheduler.get_jobs()
    ]


def is_scheduler_running() -> bool:
    return scheduler is not None and scheduler.running
