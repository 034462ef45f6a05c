"""
Retention policy enforcement for backups.

Runs older than the configured retention window are removed from every
destination they reached, then deleted from the run history.
"""

import logging
from datetime import datetime, timedelta
from typing import Any, Dict, Optional

from backvault import db
from backvault.models import BackupRun
from backvault.settings import DatabaseSettings, get_retention_days
from .storage import storage_for_destination

logger = logging.getLogger(__name__)

# Wider than completed-only pruning: partial runs also left complete copies
# on some destinations, and would otherwise keep them forever
PRUNABLE_STATUSES = ('completed', 'partial')


class RetentionManager:
    """
    Prunes expired backup runs and their remote copies.
    """

    def __init__(self, settings=None):
        """
        Args:
            settings: Settings provider holding backup_retention_days
        """
        self.settings = settings or DatabaseSettings()

    def enforce(self, now: Optional[datetime] = None, keep_run_id: Optional[int] = None) -> Dict[str, Any]:
        """
        Delete every prunable run created at or before the retention cutoff.

        keep_run_id excludes the run whose completion triggered the sweep; it
        becomes eligible on the next sweep.

        Remote deletes are best-effort: a failure is logged and counted but the
        run row is deleted anyway.

        Returns:
            Dict with summary of cleanup operations:
            {
                'retention_days': int,
                'runs_deleted': int,
                'remote_deleted': int,
                'errors': List[str]
            }
        """
        retention_days = get_retention_days(self.settings)
        cutoff = (now or datetime.utcnow()) - timedelta(days=retention_days)

        summary = {
            'retention_days': retention_days,
            'runs_deleted': 0,
            'remote_deleted': 0,
            'errors': []
        }

        query = BackupRun.query.filter(
            BackupRun.status.in_(PRUNABLE_STATUSES),
            BackupRun.created_at <= cutoff
        )
        if keep_run_id is not None:
            query = query.filter(BackupRun.id != keep_run_id)

        expired = query.order_by(BackupRun.created_at).all()

        if not expired:
            return summary

        logger.info(f"Retention ({retention_days} days): pruning {len(expired)} run(s) created before {cutoff}")

        for run in expired:
            summary['remote_deleted'] += self._delete_remote_copies(run, summary['errors'])
            db.session.delete(run)
            db.session.commit()
            summary['runs_deleted'] += 1

        logger.info(
            f"Retention enforcement complete. "
            f"Runs deleted: {summary['runs_deleted']}, "
            f"Remote copies deleted: {summary['remote_deleted']}, "
            f"Errors: {len(summary['errors'])}"
        )
        return summary

    def _delete_remote_copies(self, run: BackupRun, errors: list) -> int:
        deleted = 0

        for upload in run.uploads:
            if upload.status != 'completed' or not run.file_name:
                continue

            destination = upload.destination
            try:
                storage_for_destination(destination).delete(run.file_name)
                deleted += 1
                logger.info(f"Deleted {run.file_name} from {destination.name}")
            except Exception as e:
                message = f"Failed to delete {run.file_name} from {destination.name}: {e}"
                logger.warning(message)
                errors.append(message)

        return deleted


def enforce_retention_policies(settings=None) -> Dict[str, Any]:
    """
    Enforce the retention policy.

    This function is called after every run and by the daily maintenance job.

    Returns:
        Summary dict from RetentionManager.enforce()
    """
    return RetentionManager(settings).enforce()
