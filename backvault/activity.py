"""
Fire-and-forget activity logging.

Entries are written on a background thread inside their own app context.
Failures are logged and never reach the caller.
"""

import logging
from concurrent.futures import ThreadPoolExecutor
from typing import Optional

from flask import current_app

logger = logging.getLogger(__name__)

_executor = ThreadPoolExecutor(max_workers=1, thread_name_prefix='activity-log')


def _write_entry(app, entry: dict):
    from backvault import db
    from backvault.models import ActivityLog

    with app.app_context():
        try:
            db.session.add(ActivityLog(**entry))
            db.session.commit()
        except Exception as e:
            db.session.rollback()
            logger.error(f"Failed to write activity log entry {entry.get('action')}: {e}")
        finally:
            db.session.remove()


def log_activity(
    action: str,
    entity_type: str,
    user_id: Optional[str] = None,
    user_display_name: Optional[str] = None,
    entity_id=None,
    entity_label: Optional[str] = None,
    details: Optional[str] = None
):
    """
    Record an audit entry without blocking or failing the caller.

    Args:
        action: What happened (e.g. 'backup_created')
        entity_type: Kind of record affected (e.g. 'backup')
        user_id: Acting user, None for system actions
        user_display_name: Name shown in the audit trail ('System' when omitted)
        entity_id: Affected record id
        entity_label: Human readable label for the record
        details: Free-form details
    """
    entry = {
        'user_id': user_id,
        'user_display_name': user_display_name or 'System',
        'action': action,
        'entity_type': entity_type,
        'entity_id': str(entity_id) if entity_id is not None else None,
        'entity_label': entity_label,
        'details': details,
    }

    try:
        app = current_app._get_current_object()
    except RuntimeError:
        logger.error(f"Activity log entry {action} dropped: no application context")
        return None

    if not app.config.get('ACTIVITY_LOG_ASYNC', True):
        _write_entry_inline(entry)
        return None

    future = _executor.submit(_write_entry, app, entry)
    future.add_done_callback(_report_failure)
    return future


def _write_entry_inline(entry: dict):
    from backvault import db
    from backvault.models import ActivityLog

    try:
        db.session.add(ActivityLog(**entry))
        db.session.commit()
    except Exception as e:
        db.session.rollback()
        logger.error(f"Failed to write activity log entry {entry.get('action')}: {e}")


def _report_failure(future):
    exc = future.exception()
    if exc is not None:
        logger.error(f"Activity log task failed: {exc}")


def actor_from_request(request) -> dict:
    """
    Extract the acting user set by the upstream authentication layer.

    Returns:
        Dict with 'user_id' and 'user_name' (both None when unauthenticated)
    """
    return {
        'user_id': request.headers.get('X-Actor-Id') or None,
        'user_name': request.headers.get('X-Actor-Name') or None,
    }
