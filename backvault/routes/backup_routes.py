"""
Backup routes - settings, manual trigger and run history.
"""

import logging
from datetime import datetime

from flask import Blueprint, jsonify, request

from backvault import db
from backvault.models import BackupRun, RUN_STATUSES
from backvault.activity import actor_from_request, log_activity
from backvault.settings import (
    DatabaseSettings, SCHEDULE_KEY, RETENTION_DAYS_KEY, SCHEDULE_CHOICES,
    get_schedule, get_retention_days
)
from backvault.backup.executor import create_backup_run
from backvault.backup.storage import ConfigurationError, storage_for_destination
from backvault.backup.watchdog import fail_run


bp = Blueprint('backups', __name__, url_prefix='/api/backups')
logger = logging.getLogger(__name__)


def _isoformat(value):
    return value.isoformat() if value else None


def _serialize_run(run: BackupRun, include_logs: bool = False) -> dict:
    data = {
        'id': run.id,
        'triggered_by': run.triggered_by,
        'user_id': run.user_id,
        'user_name': run.user_name,
        'status': run.status,
        'file_name': run.file_name,
        'file_size': run.file_size,
        'file_size_mb': round(run.file_size / 1024 / 1024, 2) if run.file_size else None,
        'error_message': run.error_message,
        'created_at': _isoformat(run.created_at),
        'started_at': _isoformat(run.started_at),
        'completed_at': _isoformat(run.completed_at),
        'uploads': [
            {
                'id': upload.id,
                'destination_id': upload.destination_id,
                'destination_name': upload.destination.name if upload.destination else None,
                'provider': upload.destination.provider if upload.destination else None,
                'status': upload.status,
                'error_message': upload.error_message,
                'started_at': _isoformat(upload.started_at),
                'completed_at': _isoformat(upload.completed_at)
            }
            for upload in run.uploads
        ]
    }

    if include_logs:
        data['manifest'] = run.manifest_data
        data['logs'] = run.logs

    return data


@bp.route('/settings', methods=['GET'])
def get_backup_settings():
    """
    Get the backup schedule and retention settings.

    Returns:
        JSON with schedule, retention_days and the next scheduled run
    """
    from backvault.scheduler import get_next_scheduled_backup

    settings = DatabaseSettings()
    return jsonify({
        'schedule': get_schedule(settings),
        'retention_days': get_retention_days(settings),
        'next_run': get_next_scheduled_backup()
    })


@bp.route('/settings', methods=['PUT'])
def update_backup_settings():
    """
    Update backup settings.

    Request body:
        - schedule: manual / daily / weekly (optional)
        - retention_days: Non-negative integer (optional)

    Returns:
        JSON with the stored settings
    """
    data = request.get_json(silent=True) or {}
    settings = DatabaseSettings()
    changes = []

    if 'retention_days' in data:
        try:
            retention_days = int(data['retention_days'])
        except (TypeError, ValueError):
            return jsonify({'error': 'retention_days must be an integer'}), 400
        if retention_days < 0:
            return jsonify({'error': 'retention_days must not be negative'}), 400

        settings.set(RETENTION_DAYS_KEY, retention_days)
        changes.append(f"retention: {retention_days} days")

    if 'schedule' in data:
        schedule = data['schedule']
        if schedule not in SCHEDULE_CHOICES:
            return jsonify({'error': f"schedule must be one of: {', '.join(SCHEDULE_CHOICES)}"}), 400

        settings.set(SCHEDULE_KEY, schedule)
        changes.append(f"schedule: {schedule}")

        from backvault import scheduler
        if scheduler.scheduler is not None:
            scheduler.apply_backup_schedule(schedule)
        else:
            logger.info("Scheduler not running in this process - the owner applies the schedule on its next dispatch")

    if changes:
        actor = actor_from_request(request)
        log_activity(
            'backup_settings_updated',
            'settings',
            user_id=actor['user_id'],
            user_display_name=actor['user_name'],
            details=', '.join(changes)
        )

    return jsonify({
        'schedule': get_schedule(settings),
        'retention_days': get_retention_days(settings)
    })


@bp.route('/create', methods=['POST'])
def create_backup():
    """
    Create a pending run for every active destination and queue it.

    Returns:
        JSON with the created run (202), or 400 when no destination is active
    """
    from backvault.scheduler import enqueue_backup

    actor = actor_from_request(request)

    try:
        run = create_backup_run('manual', actor['user_id'], actor['user_name'])
    except ConfigurationError as e:
        return jsonify({'error': str(e)}), 400

    try:
        job_id = enqueue_backup(run_id=run.id, triggered_by='manual',
                                user_id=actor['user_id'], user_name=actor['user_name'])
    except RuntimeError as e:
        logger.error(f"Could not queue backup run {run.id}: {e}")
        fail_run(run, 'Backup queue is not available', datetime.utcnow())
        db.session.commit()
        return jsonify({'error': 'Backup queue is not available', 'run': _serialize_run(run)}), 503

    # Without a job id the run waits for the scheduler-owning process to dispatch it
    message = 'Backup started' if job_id else 'Backup queued'
    return jsonify({'message': message, 'run': _serialize_run(run)}), 202


@bp.route('/history', methods=['GET'])
def list_backups():
    """
    Get backup runs, newest first.

    Query params:
        - status: Filter by run status
        - limit: Max number of records (default: 50, max: 200)
        - offset: Number of records to skip (default: 0)
    """
    status_filter = request.args.get('status')
    limit = min(max(request.args.get('limit', 50, type=int), 1), 200)
    offset = max(request.args.get('offset', 0, type=int), 0)

    query = BackupRun.query

    if status_filter:
        if status_filter not in RUN_STATUSES:
            return jsonify({'error': 'Invalid status filter'}), 400
        query = query.filter(BackupRun.status == status_filter)

    total_count = query.count()
    runs = query.order_by(BackupRun.created_at.desc(), BackupRun.id.desc()).limit(limit).offset(offset).all()

    return jsonify({
        'records': [_serialize_run(run) for run in runs],
        'total': total_count,
        'limit': limit,
        'offset': offset
    })


@bp.route('/<int:run_id>', methods=['GET'])
def get_backup(run_id):
    run = db.get_or_404(BackupRun, run_id)
    return jsonify(_serialize_run(run, include_logs=True))


@bp.route('/<int:run_id>', methods=['DELETE'])
def delete_backup(run_id):
    """
    Delete a run and, best-effort, its remote copies.

    Runs that are still pending or running cannot be deleted.
    """
    run = db.get_or_404(BackupRun, run_id)

    if run.status in ('pending', 'running'):
        return jsonify({'error': f'Cannot delete a {run.status} backup'}), 400

    remote_errors = []
    for upload in run.uploads:
        if upload.status != 'completed' or not run.file_name:
            continue
        try:
            storage_for_destination(upload.destination).delete(run.file_name)
        except Exception as e:
            logger.warning(f"Failed to delete {run.file_name} from {upload.destination.name}: {e}")
            remote_errors.append(f"{upload.destination.name}: {e}")

    label = run.file_name
    db.session.delete(run)
    db.session.commit()

    actor = actor_from_request(request)
    log_activity(
        'backup_deleted',
        'backup',
        user_id=actor['user_id'],
        user_display_name=actor['user_name'],
        entity_id=run_id,
        entity_label=label
    )

    return jsonify({'message': 'Backup deleted', 'remote_errors': remote_errors})
