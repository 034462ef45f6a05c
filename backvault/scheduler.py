"""
APScheduler configuration and the backup job queue.

Manages:
- The recurring backup trigger (manual / daily / weekly cadence)
- Queued backup jobs (manual triggers) with bounded retry
- Daily maintenance sweeps (retention, stuck runs)
- A dispatch job picking up work left by processes that do not own the
  scheduler (pending runs, a changed cadence)

Backup jobs run on a dedicated single-thread executor, so only one backup
executes at a time across the whole system.
"""

import logging
import threading
from datetime import datetime, timedelta, timezone
from typing import Optional

from apscheduler.schedulers.background import BackgroundScheduler
from apscheduler.triggers.cron import CronTrigger
from apscheduler.triggers.date import DateTrigger
from apscheduler.triggers.interval import IntervalTrigger
from apscheduler.jobstores.sqlalchemy import SQLAlchemyJobStore
from apscheduler.jobstores.base import JobLookupError
from apscheduler.executors.pool import ThreadPoolExecutor

from backvault import db
from backvault.models import BackupRun
from backvault.backup.executor import execute_backup
from backvault.backup.retention import enforce_retention_policies
from backvault.backup.storage import ConfigurationError
from backvault.backup.watchdog import sweep_stuck_runs
from backvault.settings import DatabaseSettings, get_schedule

logger = logging.getLogger(__name__)

SCHEDULED_BACKUP_JOB_ID = 'scheduled_backup'
BACKUP_EXECUTOR = 'backup'

# Cadence => trigger fields (02:00 UTC)
SCHEDULE_TRIGGERS = {
    'daily': {'hour': 2, 'minute': 0},
    'weekly': {'day_of_week': 'sun', 'hour': 2, 'minute': 0},
}

# Global scheduler instance and Flask app reference
scheduler = None
flask_app = None

# Cadence of the installed recurring trigger, None until first applied
_installed_cadence = None

_schedule_lock = threading.Lock()


def _count_jobs_in_database() -> int:
    """
    Count jobs in APScheduler's persistent job store.

    Used to report scheduler health from processes that do not own the
    scheduler (other gunicorn workers, the reloader parent).

    Returns:
        Number of jobs in database, or 0 if the job table is missing
    """
    try:
        from sqlalchemy import text
        result = db.session.execute(
            text("SELECT COUNT(*) FROM apscheduler_jobs")
        ).scalar()
        return result or 0
    except Exception as e:
        db.session.rollback()
        logger.debug(f"Could not count scheduler jobs: {e}")
        return 0


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

    executors = {
        'default': ThreadPoolExecutor(max_workers=2),
        BACKUP_EXECUTOR: ThreadPoolExecutor(max_workers=1)
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

    # Maintenance sweeps (daily at 3 AM UTC, after the 2 AM backup)
    scheduler.add_job(
        func=_run_retention_sweep,
        trigger=CronTrigger(hour=3, minute=0, timezone='UTC'),
        id='retention_cleanup',
        name='Daily Retention Cleanup',
        replace_existing=True
    )
    scheduler.add_job(
        func=_run_stuck_run_sweep,
        trigger=CronTrigger(hour=3, minute=0, timezone='UTC'),
        id='stuck_run_sweep',
        name='Daily Stuck Run Sweep',
        replace_existing=True
    )
    scheduler.add_job(
        func=_run_dispatch,
        trigger=IntervalTrigger(seconds=app.config.get('BACKUP_DISPATCH_INTERVAL_SECONDS', 30)),
        id='queue_dispatch',
        name='Queue Dispatch',
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


def apply_backup_schedule(cadence: str):
    """
    Install the recurring backup trigger for a cadence.

    The previous trigger is always removed first, so there is never more than
    one. 'manual' leaves no trigger installed.

    Args:
        cadence: 'manual', 'daily' or 'weekly'

    Raises:
        ValueError: If cadence is unknown
    """
    if cadence != 'manual' and cadence not in SCHEDULE_TRIGGERS:
        raise ValueError(f"Unknown backup schedule: {cadence}")

    global _installed_cadence

    if scheduler is None:
        raise RuntimeError("Scheduler not initialized")

    with _schedule_lock:
        try:
            scheduler.remove_job(SCHEDULED_BACKUP_JOB_ID)
        except JobLookupError:
            pass

        _installed_cadence = cadence

        if cadence == 'manual':
            logger.info("Backup schedule set to manual, recurring backup removed")
            return

        # No run id: the run is built against the destinations active at fire time
        scheduler.add_job(
            func=_run_backup_job,
            kwargs={'triggered_by': 'scheduled'},
            trigger=CronTrigger(timezone='UTC', **SCHEDULE_TRIGGERS[cadence]),
            id=SCHEDULED_BACKUP_JOB_ID,
            name=f"Scheduled Backup ({cadence})",
            executor=BACKUP_EXECUTOR,
            replace_existing=True
        )
        logger.info(f"Backup schedule set to {cadence}")


def sync_backup_schedule(settings=None):
    """
    Apply the cadence stored in the settings table.

    Called after app startup and whenever the schedule setting changes.
    """
    apply_backup_schedule(get_schedule(settings or DatabaseSettings()))


def enqueue_backup(run_id: Optional[int] = None, triggered_by: str = 'manual',
                   user_id: Optional[str] = None, user_name: Optional[str] = None,
                   attempt: int = 1, delay_seconds: int = 1) -> str:
    """
    Queue a backup job.

    Args:
        run_id: Existing pending run to execute (None builds a fresh run)
        triggered_by: 'manual' or 'scheduled'
        user_id: Initiating actor id
        user_name: Initiating actor display name
        attempt: Delivery attempt number (1 for the first delivery)
        delay_seconds: Delay before the job starts

    Returns:
        Scheduler job id, or None when this process does not own the
        scheduler and the pending run is left for the owner's dispatch job

    Raises:
        RuntimeError: If there is no scheduler and no run to leave pending
    """
    if scheduler is None:
        if run_id is not None:
            logger.info(f"Backup run {run_id} left pending for the scheduler-owning process")
            return None
        raise RuntimeError("Scheduler not initialized")

    now = datetime.now(timezone.utc)
    job_id = f"backup_{run_id or 'new'}_{attempt}_{int(now.timestamp() * 1000)}"

    scheduler.add_job(
        func=_run_backup_job,
        kwargs={
            'run_id': run_id,
            'triggered_by': triggered_by,
            'user_id': user_id,
            'user_name': user_name,
            'attempt': attempt
        },
        trigger=DateTrigger(run_date=now + timedelta(seconds=delay_seconds)),
        id=job_id,
        name=f"Backup: run {run_id or 'new'} (attempt {attempt})",
        executor=BACKUP_EXECUTOR,
        misfire_grace_time=None,  # Queued backups run however late they start
        replace_existing=False
    )

    logger.info(f"Queued {triggered_by} backup job {job_id}")
    return job_id


def _run_backup_job(run_id: Optional[int] = None, triggered_by: str = 'scheduled',
                    user_id: Optional[str] = None, user_name: Optional[str] = None,
                    attempt: int = 1):
    """
    Execute a queued backup inside the app context, retrying on failure.

    A retry never carries the run id: the failed run stays in history and
    the retry builds a fresh run against the currently active destinations.
    """
    with flask_app.app_context():
        try:
            run = execute_backup(run_id=run_id, triggered_by=triggered_by,
                                 user_id=user_id, user_name=user_name)
            if run is not None:
                logger.info(f"Backup run {run.id} finished with status: {run.status}")
            return

        except ConfigurationError as e:
            logger.error(f"Backup job not retried, configuration error: {e}")
            return

        except Exception as e:
            db.session.rollback()
            max_attempts = flask_app.config.get('BACKUP_JOB_MAX_ATTEMPTS', 3)
            if attempt >= max_attempts:
                logger.error(f"Backup job failed after {attempt} attempt(s): {e}")
                return

            delay = flask_app.config.get('BACKUP_JOB_RETRY_DELAY_SECONDS', 60) * attempt
            logger.warning(f"Backup job attempt {attempt} failed ({e}), retrying in {delay}s")

        finally:
            db.session.remove()

    enqueue_backup(triggered_by=triggered_by, user_id=user_id, user_name=user_name,
                   attempt=attempt + 1, delay_seconds=delay)


def _run_retention_sweep():
    with flask_app.app_context():
        try:
            enforce_retention_policies()
        except Exception as e:
            db.session.rollback()
            logger.error(f"Retention sweep failed: {e}")
        finally:
            db.session.remove()


def _run_stuck_run_sweep():
    with flask_app.app_context():
        try:
            result = sweep_stuck_runs(flask_app)
            if result['running_failed'] or result['pending_failed']:
                logger.warning(f"Stuck run sweep: {result}")
        except Exception as e:
            db.session.rollback()
            logger.error(f"Stuck run sweep failed: {e}")
        finally:
            db.session.remove()


def refresh_backup_schedule(settings=None) -> bool:
    """
    Re-apply the stored cadence if it differs from the installed trigger.

    Picks up schedule changes saved by processes without the scheduler.

    Returns:
        True if the trigger was replaced
    """
    cadence = get_schedule(settings or DatabaseSettings())
    if cadence == _installed_cadence:
        return False

    apply_backup_schedule(cadence)
    return True


def dispatch_pending_runs() -> int:
    """
    Queue every pending run that has no backup job yet.

    Returns:
        Number of runs queued
    """
    queued_run_ids = {
        job.kwargs.get('run_id')
        for job in scheduler.get_jobs()
        if job.id.startswith('backup_')
    }

    dispatched = 0
    for run in BackupRun.query.filter_by(status='pending').order_by(BackupRun.created_at).all():
        if run.id in queued_run_ids:
            continue
        enqueue_backup(run_id=run.id, triggered_by=run.triggered_by,
                       user_id=run.user_id, user_name=run.user_name)
        dispatched += 1

    return dispatched


def _run_dispatch():
    with flask_app.app_context():
        try:
            refresh_backup_schedule()
            dispatched = dispatch_pending_runs()
            if dispatched:
                logger.info(f"Dispatched {dispatched} pending backup run(s)")
        except Exception as e:
            db.session.rollback()
            logger.error(f"Queue dispatch failed: {e}")
        finally:
            db.session.remove()


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


def get_next_scheduled_backup() -> Optional[str]:
    if scheduler is None:
        return None

    job = scheduler.get_job(SCHEDULED_BACKUP_JOB_ID)
    if job is None or job.next_run_time is None:
        return None
    return job.next_run_time.isoformat()


def is_scheduler_running() -> bool:
    """
    Check if scheduler is running.

    Falls back to the job store so processes that do not own the scheduler
    still report it as running when jobs are persisted.
    """
    if scheduler is not None and scheduler.running:
        return True

    return _count_jobs_in_database() > 0
