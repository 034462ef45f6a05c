"""
Detection of runs abandoned by a crashed or restarted worker.

There is no heartbeat: a run that has been running (or waiting to be picked
up) for longer than its ceiling is assumed dead and failed.
"""

import logging
from datetime import datetime, timedelta
from typing import Dict, Optional

from backvault import db
from backvault.models import BackupRun, UPLOAD_TERMINAL_STATUSES

logger = logging.getLogger(__name__)

STUCK_RUN_MESSAGE = 'Timed out: backup worker stopped responding'
STUCK_PENDING_MESSAGE = 'Timed out: backup was never picked up by a worker'

DEFAULT_RUNNING_MINUTES = 240
DEFAULT_PENDING_MINUTES = 60


def fail_run(run: BackupRun, message: str, now: datetime):
    """Fail the run and every upload still in flight. The caller commits."""
    for upload in run.uploads:
        if upload.status not in UPLOAD_TERMINAL_STATUSES:
            upload.advance_status('failed')
            upload.error_message = message
            upload.completed_at = now

    run.advance_status('failed')
    run.error_message = message
    run.completed_at = now


def fail_stuck_runs(now: Optional[datetime] = None,
                    running_minutes: int = DEFAULT_RUNNING_MINUTES,
                    pending_minutes: int = DEFAULT_PENDING_MINUTES) -> Dict[str, int]:
    """
    Fail runs stuck in 'running' or 'pending' beyond their ceilings.

    Running runs are measured from started_at, pending runs from created_at.
    Terminal runs never match, so repeated sweeps are no-ops.

    Returns:
        Dict with 'running_failed' and 'pending_failed' counts
    """
    now = now or datetime.utcnow()
    running_cutoff = now - timedelta(minutes=running_minutes)
    pending_cutoff = now - timedelta(minutes=pending_minutes)

    stuck_running = BackupRun.query.filter(
        BackupRun.status == 'running',
        db.func.coalesce(BackupRun.started_at, BackupRun.created_at) < running_cutoff
    ).all()

    stuck_pending = BackupRun.query.filter(
        BackupRun.status == 'pending',
        BackupRun.created_at < pending_cutoff
    ).all()

    for run in stuck_running:
        logger.warning(f"Backup run {run.id} running since {run.started_at or run.created_at}, marking failed")
        fail_run(run, STUCK_RUN_MESSAGE, now)

    for run in stuck_pending:
        logger.warning(f"Backup run {run.id} pending since {run.created_at}, marking failed")
        fail_run(run, STUCK_PENDING_MESSAGE, now)

    if stuck_running or stuck_pending:
        db.session.commit()

    return {'running_failed': len(stuck_running), 'pending_failed': len(stuck_pending)}


def sweep_stuck_runs(app=None) -> Dict[str, int]:
    """Run fail_stuck_runs with the ceilings from the app config."""
    if app is None:
        from flask import current_app
        app = current_app

    return fail_stuck_runs(
        running_minutes=app.config.get('BACKUP_STUCK_RUNNING_MINUTES', DEFAULT_RUNNING_MINUTES),
        pending_minutes=app.config.get('BACKUP_STUCK_PENDING_MINUTES', DEFAULT_PENDING_MINUTES)
    )
