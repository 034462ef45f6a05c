"""
Backup executor - orchestrates one backup run across every destination.

Workflow:
1. Create BackupRun + one BackupUpload per active destination (if no run given)
2. Mark the run running
3. Build the archive once (database dump + uploads + .env + manifest)
4. Upload the same archive to every destination concurrently
5. Classify the run from its upload statuses (completed / partial / failed)
6. Write an audit entry
7. Enforce the retention policy
8. Cleanup temporary files
"""

import os
import json
import shutil
import logging
import tempfile
from concurrent.futures import ThreadPoolExecutor, as_completed
from datetime import datetime
from typing import Iterable, Optional

from flask import current_app

from backvault import db
from backvault.models import BackupDestination, BackupRun, BackupUpload
from backvault.activity import log_activity
from backvault.settings import DatabaseSettings
from .archive import create_backup_archive, get_archive_size
from .storage import BACKUP_PREFIX, ConfigurationError, storage_for_destination
from .retention import RetentionManager

logger = logging.getLogger(__name__)


def classify_run_status(upload_statuses: Iterable[str]) -> str:
    """
    Final run status as a function of its upload statuses.

    All completed => 'completed', none completed => 'failed', otherwise 'partial'.
    """
    statuses = list(upload_statuses)
    completed = sum(1 for status in statuses if status == 'completed')

    if statuses and completed == len(statuses):
        return 'completed'
    if completed == 0:
        return 'failed'
    return 'partial'


def create_backup_run(triggered_by: str = 'manual', user_id: Optional[str] = None,
                      user_name: Optional[str] = None) -> BackupRun:
    """
    Create a pending run with one upload per currently active destination.

    Raises:
        ConfigurationError: If no destination is active
    """
    destinations = BackupDestination.query.filter_by(is_active=True).order_by(BackupDestination.id).all()
    if not destinations:
        raise ConfigurationError("No active backup destinations configured")

    run = BackupRun(
        triggered_by=triggered_by,
        user_id=user_id,
        user_name=user_name,
        status='pending'
    )
    db.session.add(run)

    for destination in destinations:
        run.uploads.append(BackupUpload(destination_id=destination.id, status='pending'))

    db.session.commit()
    logger.info(f"Created backup run {run.id} ({triggered_by}) for {len(destinations)} destination(s)")
    return run


class BackupExecutor:
    """
    Orchestrates the complete backup workflow for a run.
    """

    def __init__(self, run: BackupRun, settings=None):
        """
        Initialize backup executor.

        Args:
            run: Pending BackupRun to execute
            settings: Settings provider used for the retention sweep
        """
        self.run = run
        self.settings = settings or DatabaseSettings()
        self.temp_dir = None
        self.archive_path = None
        self.logs = []
        self._log_flush_counter = 0

    def execute(self) -> BackupRun:
        """
        Execute the backup run.

        Returns:
            The BackupRun with its final status

        Raises:
            Exception: Failures before the upload phase are stored on the run
                and re-raised so the job queue can retry
        """
        self.run.advance_status('running')
        self.run.started_at = datetime.utcnow()
        db.session.commit()

        self._log(f"Starting backup run {self.run.id} ({self.run.triggered_by})")

        try:
            self._execute_workflow()

        except Exception as e:
            # Only touch runs the upload phase has not already classified
            if self.run.status == 'running':
                self.run.advance_status('failed')
                self.run.completed_at = datetime.utcnow()
                self.run.error_message = str(e)
                for upload in self.run.uploads:
                    if upload.status not in ('completed', 'failed'):
                        upload.advance_status('failed')
                        upload.error_message = f"Backup aborted: {e}"
                        upload.completed_at = datetime.utcnow()
            self._log(f"Backup failed: {e}")
            raise

        finally:
            self.run.logs = '\n'.join(self.logs)
            db.session.commit()
            self._cleanup()

        try:
            summary = RetentionManager(self.settings).enforce(keep_run_id=self.run.id)
            if summary['runs_deleted']:
                logger.info(f"Retention removed {summary['runs_deleted']} run(s) after run {self.run.id}")
        except Exception as e:
            db.session.rollback()
            logger.error(f"Retention enforcement after run {self.run.id} failed: {e}")

        return self.run

    def _execute_workflow(self):
        """Execute the main backup workflow steps."""
        config = current_app.config

        # Step 1: Create temporary directory
        temp_root = config.get('TEMP_DIR')
        if temp_root:
            os.makedirs(temp_root, exist_ok=True)
        self.temp_dir = tempfile.mkdtemp(prefix='backvault_backup_', dir=temp_root)
        self._log(f"Temporary directory: {self.temp_dir}")

        # Step 2: Build the archive once for all destinations
        self._log("Creating archive (database dump, uploads, environment)")
        self.archive_path, manifest = create_backup_archive(
            self.temp_dir,
            config['BACKUP_DATABASE_URL'],
            uploads_dir=config.get('UPLOADS_DIR'),
            env_file=config.get('ENV_FILE'),
            app_version=config.get('APP_VERSION'),
            dump_timeout=config.get('BACKUP_DUMP_TIMEOUT_SECONDS')
        )
        file_name = os.path.basename(self.archive_path)
        file_size = get_archive_size(self.archive_path)

        self.run.file_name = f"{BACKUP_PREFIX}{file_name}"
        self.run.file_size = file_size
        self.run.manifest = json.dumps(manifest)
        self._log(f"Archive created: {file_name} ({file_size / 1024 / 1024:.2f} MB)")
        self._flush_logs_to_db()

        # Step 3: Fan out to every destination
        self._upload_to_destinations()

        # Step 4: Classify
        statuses = [upload.status for upload in self.run.uploads]
        errors = [
            f"{upload.destination.name}: {upload.error_message}"
            for upload in self.run.uploads if upload.status == 'failed'
        ]
        self.run.advance_status(classify_run_status(statuses))
        self.run.error_message = '; '.join(errors) or None
        self.run.completed_at = datetime.utcnow()

        completed = statuses.count('completed')
        self._log(f"Backup {self.run.status}: {completed}/{len(statuses)} destinations")
        db.session.commit()

        log_activity(
            'backup_created',
            'backup',
            user_id=self.run.user_id,
            user_display_name=self.run.user_name,
            entity_id=self.run.id,
            entity_label=file_name,
            details=f"Size: {file_size / 1024 / 1024:.1f} MB, destinations: {completed}/{len(statuses)} succeeded"
        )

    def _upload_to_destinations(self):
        """
        Upload the archive to every destination of the run concurrently.

        Worker threads only perform storage I/O. Status changes are made on this
        thread, so the database session is never shared between threads.
        """
        key = self.run.file_name
        futures = {}

        uploads = [upload for upload in self.run.uploads if upload.status == 'pending']
        if not uploads:
            self._log("Run has no pending uploads")
            return

        with ThreadPoolExecutor(max_workers=len(uploads), thread_name_prefix='backup-upload') as pool:
            for upload in uploads:
                upload.advance_status('uploading')
                upload.started_at = datetime.utcnow()

                try:
                    provider = storage_for_destination(upload.destination)
                except Exception as e:
                    self._mark_upload_failed(upload, e)
                    continue

                futures[pool.submit(provider.upload, key, self.archive_path)] = upload
                self._log(f"Uploading to {upload.destination.name} ({upload.destination.provider})")

            db.session.commit()

            for future in as_completed(futures):
                upload = futures[future]
                try:
                    future.result()
                except Exception as e:
                    self._mark_upload_failed(upload, e)
                else:
                    upload.advance_status('completed')
                    upload.completed_at = datetime.utcnow()
                    self._log(f"Uploaded to {upload.destination.name}: {key}")
                db.session.commit()

    def _mark_upload_failed(self, upload: BackupUpload, error: Exception):
        upload.advance_status('failed')
        upload.error_message = str(error) or error.__class__.__name__
        upload.completed_at = datetime.utcnow()
        self._log(f"Upload to {upload.destination.name} failed: {upload.error_message}")

    def _cleanup(self):
        """Remove temporary directory and files."""
        if self.temp_dir and os.path.exists(self.temp_dir):
            try:
                shutil.rmtree(self.temp_dir)
                self._log("Cleaned up temporary directory")
            except OSError as e:
                self._log(f"Warning: Failed to cleanup temp directory: {e}")

    def _log(self, message: str):
        """
        Add a timestamped message to the run log.

        Args:
            message: Log message
        """
        timestamp = datetime.utcnow().strftime('%Y-%m-%d %H:%M:%S UTC')
        self.logs.append(f"[{timestamp}] {message}")
        logger.info(f"[run {self.run.id}] {message}")

        # Flush logs every 5 entries
        self._log_flush_counter += 1
        if self._log_flush_counter >= 5:
            self._flush_logs_to_db()

    def _flush_logs_to_db(self):
        """Flush accumulated logs to database for real-time visibility."""
        self.run.logs = '\n'.join(self.logs)
        db.session.commit()
        self._log_flush_counter = 0


def execute_backup(run_id: Optional[int] = None, triggered_by: str = 'scheduled',
                   user_id: Optional[str] = None, user_name: Optional[str] = None,
                   settings=None) -> Optional[BackupRun]:
    """
    Execute a backup run.

    Args:
        run_id: Existing pending run to execute; a fresh run is created when None
        triggered_by: 'manual' or 'scheduled'
        user_id: Initiating actor id (None for scheduled runs)
        user_name: Initiating actor display name
        settings: Settings provider (defaults to the settings table)

    Returns:
        The executed BackupRun, the unchanged run when it is no longer pending,
        or None when there is nothing to back up to

    Raises:
        ValueError: If run_id does not exist
    """
    if run_id is None:
        try:
            run = create_backup_run(triggered_by, user_id, user_name)
        except ConfigurationError as e:
            logger.info(f"Skipping {triggered_by} backup: {e}")
            return None
    else:
        run = db.session.get(BackupRun, run_id)
        if not run:
            raise ValueError(f"Backup run not found: {run_id}")

        if run.status != 'pending':
            logger.warning(f"Backup run {run_id} is already {run.status}, not executing it again")
            return run

    executor = BackupExecutor(run, settings=settings)
    return executor.execute()
