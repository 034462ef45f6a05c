"""
Unit tests for stuck-run detection (backvault/backup/watchdog.py).
"""

from datetime import datetime, timedelta

from backvault import db
from backvault.models import BackupRun
from backvault.backup.watchdog import (
    fail_stuck_runs,
    sweep_stuck_runs,
    STUCK_RUN_MESSAGE,
    STUCK_PENDING_MESSAGE
)


NOW = datetime(2024, 1, 15, 12, 0, 0)


class TestFailStuckRuns:

    def test_long_running_run_failed_with_uploads(self, make_destination, make_run):
        first = make_destination('First')
        second = make_destination('Second')
        run = make_run([first, second], status='running', upload_status='uploading',
                       created_at=NOW - timedelta(minutes=300))
        run.uploads[0].status = 'completed'
        db.session.commit()

        result = fail_stuck_runs(now=NOW)

        assert result == {'running_failed': 1, 'pending_failed': 0}
        run = db.session.get(BackupRun, run.id)
        assert run.status == 'failed'
        assert run.error_message == STUCK_RUN_MESSAGE
        assert run.completed_at == NOW

        # Completed uploads keep their status
        assert run.uploads[0].status == 'completed'
        assert run.uploads[1].status == 'failed'
        assert run.uploads[1].error_message == STUCK_RUN_MESSAGE

    def test_recent_running_run_untouched(self, make_destination, make_run):
        run = make_run([make_destination()], status='running', upload_status='uploading',
                       created_at=NOW - timedelta(minutes=30))

        result = fail_stuck_runs(now=NOW)

        assert result['running_failed'] == 0
        assert run.status == 'running'

    def test_measured_from_started_at(self, make_destination, make_run):
        run = make_run([make_destination()], status='running', upload_status='uploading',
                       created_at=NOW - timedelta(minutes=600),
                       started_at=NOW - timedelta(minutes=10))

        assert fail_stuck_runs(now=NOW)['running_failed'] == 0
        assert run.status == 'running'

    def test_old_pending_run_failed(self, make_destination, make_run):
        run = make_run([make_destination()], status='pending', upload_status='pending',
                       created_at=NOW - timedelta(minutes=90))

        result = fail_stuck_runs(now=NOW)

        assert result == {'running_failed': 0, 'pending_failed': 1}
        assert run.status == 'failed'
        assert run.error_message == STUCK_PENDING_MESSAGE
        assert run.uploads[0].status == 'failed'

    def test_repeat_sweep_is_noop(self, make_destination, make_run):
        run = make_run([make_destination()], status='running', upload_status='uploading',
                       created_at=NOW - timedelta(minutes=500))

        fail_stuck_runs(now=NOW)
        first_completed_at = run.completed_at

        result = fail_stuck_runs(now=NOW + timedelta(hours=1))

        assert result == {'running_failed': 0, 'pending_failed': 0}
        assert run.completed_at == first_completed_at

    def test_terminal_runs_never_touched(self, make_destination, make_run):
        destination = make_destination()
        old = NOW - timedelta(days=2)
        completed = make_run([destination], status='completed', created_at=old)
        partial = make_run([destination], status='partial', created_at=old)

        assert fail_stuck_runs(now=NOW) == {'running_failed': 0, 'pending_failed': 0}
        assert completed.status == 'completed'
        assert partial.status == 'partial'

    def test_custom_ceilings(self, make_destination, make_run):
        run = make_run([make_destination()], status='running', upload_status='uploading',
                       created_at=NOW - timedelta(minutes=20))

        assert fail_stuck_runs(now=NOW, running_minutes=15)['running_failed'] == 1
        assert run.status == 'failed'


def test_sweep_uses_app_config(app, make_destination, make_run):
    app.config['BACKUP_STUCK_RUNNING_MINUTES'] = 5
    run = make_run([make_destination()], status='running', upload_status='uploading',
                   created_at=datetime.utcnow() - timedelta(minutes=10))

    result = sweep_stuck_runs(app)

    assert result['running_failed'] == 1
    assert run.status == 'failed'
