"""
Unit tests for scheduler (backvault/scheduler.py).

Tests APScheduler configuration, the backup schedule and the job queue.
"""

from unittest.mock import MagicMock, patch

import pytest
from apscheduler.jobstores.base import JobLookupError
from apscheduler.triggers.cron import CronTrigger
from apscheduler.triggers.date import DateTrigger

from backvault import scheduler as scheduler_module
from backvault.backup.storage import ConfigurationError
from backvault.settings import InMemorySettings


class TestSchedulerInitialization:
    """Test scheduler initialization."""

    def teardown_method(self):
        """Clean up after each test."""
        # Reset global scheduler
        scheduler_module.scheduler = None
        scheduler_module.flask_app = None

    @patch('backvault.scheduler.BackgroundScheduler')
    def test_init_scheduler(self, mock_scheduler_class, app):
        """Test scheduler initialization."""
        mock_scheduler = MagicMock()
        mock_scheduler_class.return_value = mock_scheduler

        result = scheduler_module.init_scheduler(app)

        assert result == mock_scheduler
        assert scheduler_module.scheduler == mock_scheduler
        assert scheduler_module.flask_app == app

        call_kwargs = mock_scheduler_class.call_args[1]
        assert set(call_kwargs['executors']) == {'default', 'backup'}
        assert call_kwargs['timezone'] == 'UTC'

        # Both maintenance sweeps registered
        job_ids = {c[1]['id'] for c in mock_scheduler.add_job.call_args_list}
        assert job_ids == {'retention_cleanup', 'stuck_run_sweep', 'queue_dispatch'}

    @patch('backvault.scheduler.BackgroundScheduler')
    def test_init_scheduler_only_once(self, mock_scheduler_class, app):
        """Test scheduler is only initialized once."""
        mock_scheduler_class.return_value = MagicMock()

        result1 = scheduler_module.init_scheduler(app)
        result2 = scheduler_module.init_scheduler(app)

        assert result1 == result2
        mock_scheduler_class.assert_called_once()


class TestSchedulerLifecycle:
    """Test scheduler start/stop operations."""

    def setup_method(self):
        self.mock_scheduler = MagicMock()
        self.mock_scheduler.running = False
        self.mock_scheduler.state = 0
        scheduler_module.scheduler = self.mock_scheduler

    def teardown_method(self):
        scheduler_module.scheduler = None
        scheduler_module.flask_app = None

    def test_start_scheduler(self):
        self.mock_scheduler.get_jobs.return_value = []

        scheduler_module.start_scheduler()

        self.mock_scheduler.start.assert_called_once()

    def test_start_scheduler_not_initialized(self):
        scheduler_module.scheduler = None

        with pytest.raises(RuntimeError, match="not initialized"):
            scheduler_module.start_scheduler()

    def test_start_scheduler_already_running(self):
        self.mock_scheduler.running = True

        scheduler_module.start_scheduler()

        self.mock_scheduler.start.assert_not_called()

    def test_stop_scheduler(self):
        self.mock_scheduler.running = True

        scheduler_module.stop_scheduler()

        self.mock_scheduler.shutdown.assert_called_once()


class TestApplyBackupSchedule:
    """Test installing the recurring backup trigger."""

    @pytest.mark.parametrize('cadence, fields', [
        ('daily', {'hour': '2', 'minute': '0', 'day_of_week': '*'}),
        ('weekly', {'hour': '2', 'minute': '0', 'day_of_week': 'sun'}),
    ])
    def test_replaces_trigger(self, mock_scheduler, cadence, fields):
        scheduler_module.apply_backup_schedule(cadence)

        mock_scheduler.remove_job.assert_called_once_with('scheduled_backup')
        mock_scheduler.add_job.assert_called_once()

        kwargs = mock_scheduler.add_job.call_args[1]
        assert kwargs['id'] == 'scheduled_backup'
        assert kwargs['executor'] == 'backup'
        assert kwargs['kwargs'] == {'triggered_by': 'scheduled'}
        assert kwargs['func'] is scheduler_module._run_backup_job

        trigger = kwargs['trigger']
        assert isinstance(trigger, CronTrigger)
        assert str(trigger.timezone) == 'UTC'
        trigger_fields = {field.name: str(field) for field in trigger.fields}
        for name, value in fields.items():
            assert trigger_fields[name] == value

    def test_manual_only_removes(self, mock_scheduler):
        scheduler_module.apply_backup_schedule('manual')

        mock_scheduler.remove_job.assert_called_once_with('scheduled_backup')
        mock_scheduler.add_job.assert_not_called()

    def test_missing_previous_trigger_ignored(self, mock_scheduler):
        mock_scheduler.remove_job.side_effect = JobLookupError('scheduled_backup')

        scheduler_module.apply_backup_schedule('daily')

        mock_scheduler.add_job.assert_called_once()

    def test_unknown_cadence(self, mock_scheduler):
        with pytest.raises(ValueError, match='Unknown backup schedule'):
            scheduler_module.apply_backup_schedule('hourly')

        mock_scheduler.remove_job.assert_not_called()

    def test_not_initialized(self):
        with patch.object(scheduler_module, 'scheduler', None):
            with pytest.raises(RuntimeError, match='not initialized'):
                scheduler_module.apply_backup_schedule('daily')

    def test_sync_reads_settings(self, mock_scheduler):
        scheduler_module.sync_backup_schedule(InMemorySettings({'backup_schedule': 'weekly'}))

        assert mock_scheduler.add_job.call_args[1]['name'] == 'Scheduled Backup (weekly)'

    def test_sync_treats_garbage_as_manual(self, mock_scheduler):
        scheduler_module.sync_backup_schedule(InMemorySettings({'backup_schedule': 'monthly'}))

        mock_scheduler.add_job.assert_not_called()


class TestEnqueueBackup:
    """Test queueing backup jobs."""

    def test_enqueue_manual_run(self, mock_scheduler):
        job_id = scheduler_module.enqueue_backup(run_id=7, triggered_by='manual',
                                                 user_id='u-1', user_name='Alice')

        assert job_id.startswith('backup_7_1_')
        kwargs = mock_scheduler.add_job.call_args[1]
        assert kwargs['id'] == job_id
        assert kwargs['executor'] == 'backup'
        assert kwargs['misfire_grace_time'] is None
        assert isinstance(kwargs['trigger'], DateTrigger)
        assert kwargs['kwargs'] == {
            'run_id': 7,
            'triggered_by': 'manual',
            'user_id': 'u-1',
            'user_name': 'Alice',
            'attempt': 1
        }

    def test_enqueue_fresh_run(self, mock_scheduler):
        job_id = scheduler_module.enqueue_backup(triggered_by='scheduled', attempt=2)

        assert job_id.startswith('backup_new_2_')

    def test_enqueue_fresh_run_not_initialized(self):
        with patch.object(scheduler_module, 'scheduler', None):
            with pytest.raises(RuntimeError, match='not initialized'):
                scheduler_module.enqueue_backup(triggered_by='scheduled', attempt=2)

    def test_pending_run_left_for_owner(self):
        with patch.object(scheduler_module, 'scheduler', None):
            assert scheduler_module.enqueue_backup(run_id=1) is None


class TestRunBackupJob:
    """Test the queued job body and its retry policy."""

    @patch('backvault.scheduler.enqueue_backup')
    @patch('backvault.scheduler.execute_backup')
    def test_success(self, mock_execute, mock_enqueue, mock_scheduler, db):
        mock_execute.return_value = MagicMock(id=5, status='completed')

        scheduler_module._run_backup_job(run_id=5, triggered_by='manual', user_id='u-1', user_name='Alice')

        mock_execute.assert_called_once_with(run_id=5, triggered_by='manual', user_id='u-1', user_name='Alice')
        mock_enqueue.assert_not_called()

    @patch('backvault.scheduler.enqueue_backup')
    @patch('backvault.scheduler.execute_backup')
    def test_failure_retried_without_run_id(self, mock_execute, mock_enqueue, mock_scheduler, app, db):
        app.config['BACKUP_JOB_RETRY_DELAY_SECONDS'] = 30
        mock_execute.side_effect = RuntimeError('pg_dump failed')

        scheduler_module._run_backup_job(run_id=5, triggered_by='manual', user_id='u-1', user_name='Alice')

        mock_enqueue.assert_called_once_with(
            triggered_by='manual', user_id='u-1', user_name='Alice', attempt=2, delay_seconds=30
        )

    @patch('backvault.scheduler.enqueue_backup')
    @patch('backvault.scheduler.execute_backup')
    def test_retry_delay_grows_with_attempt(self, mock_execute, mock_enqueue, mock_scheduler, app, db):
        app.config['BACKUP_JOB_MAX_ATTEMPTS'] = 5
        app.config['BACKUP_JOB_RETRY_DELAY_SECONDS'] = 10
        mock_execute.side_effect = RuntimeError('network down')

        scheduler_module._run_backup_job(triggered_by='scheduled', attempt=3)

        assert mock_enqueue.call_args[1]['attempt'] == 4
        assert mock_enqueue.call_args[1]['delay_seconds'] == 30

    @patch('backvault.scheduler.enqueue_backup')
    @patch('backvault.scheduler.execute_backup')
    def test_no_retry_at_max_attempts(self, mock_execute, mock_enqueue, mock_scheduler, app, db):
        app.config['BACKUP_JOB_MAX_ATTEMPTS'] = 3
        mock_execute.side_effect = RuntimeError('pg_dump failed')

        # Should not raise exception
        scheduler_module._run_backup_job(triggered_by='scheduled', attempt=3)

        mock_enqueue.assert_not_called()

    @patch('backvault.scheduler.enqueue_backup')
    @patch('backvault.scheduler.execute_backup')
    def test_configuration_error_not_retried(self, mock_execute, mock_enqueue, mock_scheduler, db):
        mock_execute.side_effect = ConfigurationError('Missing s3 credential: bucket')

        scheduler_module._run_backup_job(run_id=5, triggered_by='manual')

        mock_enqueue.assert_not_called()


class TestMaintenanceJobs:

    @patch('backvault.scheduler.enforce_retention_policies')
    def test_retention_sweep_swallows_errors(self, mock_enforce, mock_scheduler, db):
        mock_enforce.side_effect = RuntimeError('boom')

        scheduler_module._run_retention_sweep()

        mock_enforce.assert_called_once()

    @patch('backvault.scheduler.sweep_stuck_runs')
    def test_stuck_run_sweep(self, mock_sweep, mock_scheduler, app, db):
        mock_sweep.return_value = {'running_failed': 1, 'pending_failed': 0}

        scheduler_module._run_stuck_run_sweep()

        mock_sweep.assert_called_once_with(app)


class TestQueueDispatch:
    """Test picking up work saved by processes without the scheduler."""

    @patch('backvault.scheduler.enqueue_backup')
    def test_unqueued_pending_runs_dispatched(self, mock_enqueue, mock_scheduler, make_destination, make_run):
        from backvault.backup.executor import create_backup_run

        destination = make_destination()
        already_queued = create_backup_run('manual', user_id='u-1', user_name='Alice')
        waiting = create_backup_run('manual', user_id='u-2', user_name='Bob')
        make_run([destination], status='completed')

        mock_scheduler.get_jobs.return_value = [
            MagicMock(id='queue_dispatch', kwargs={}),
            MagicMock(id=f'backup_{already_queued.id}_1_1700000000000', kwargs={'run_id': already_queued.id}),
        ]

        assert scheduler_module.dispatch_pending_runs() == 1
        mock_enqueue.assert_called_once_with(run_id=waiting.id, triggered_by='manual',
                                             user_id='u-2', user_name='Bob')

    @patch('backvault.scheduler.enqueue_backup')
    def test_nothing_pending(self, mock_enqueue, mock_scheduler, db):
        assert scheduler_module.dispatch_pending_runs() == 0
        mock_enqueue.assert_not_called()

    def test_changed_cadence_replaces_trigger(self, mock_scheduler):
        with patch.object(scheduler_module, '_installed_cadence', 'daily'):
            replaced = scheduler_module.refresh_backup_schedule(InMemorySettings({'backup_schedule': 'weekly'}))

        assert replaced is True
        mock_scheduler.remove_job.assert_called_once_with('scheduled_backup')
        assert mock_scheduler.add_job.call_args[1]['name'] == 'Scheduled Backup (weekly)'

    def test_unchanged_cadence_left_alone(self, mock_scheduler):
        with patch.object(scheduler_module, '_installed_cadence', 'weekly'):
            replaced = scheduler_module.refresh_backup_schedule(InMemorySettings({'backup_schedule': 'weekly'}))

        assert replaced is False
        mock_scheduler.remove_job.assert_not_called()
        mock_scheduler.add_job.assert_not_called()

    @patch('backvault.scheduler.dispatch_pending_runs', side_effect=RuntimeError('database is locked'))
    @patch('backvault.scheduler.refresh_backup_schedule')
    def test_dispatch_job_swallows_errors(self, mock_refresh, mock_dispatch, mock_scheduler, db):
        scheduler_module._run_dispatch()

        mock_refresh.assert_called_once()
        mock_dispatch.assert_called_once()


class TestSchedulerStatus:

    def teardown_method(self):
        scheduler_module.scheduler = None

    @patch('backvault.scheduler._count_jobs_in_database')
    def test_running_in_memory(self, mock_count):
        mock_scheduler = MagicMock()
        mock_scheduler.running = True
        scheduler_module.scheduler = mock_scheduler

        assert scheduler_module.is_scheduler_running() is True
        mock_count.assert_not_called()

    @patch('backvault.scheduler._count_jobs_in_database')
    def test_falls_back_to_job_store(self, mock_count):
        scheduler_module.scheduler = None
        mock_count.return_value = 2

        assert scheduler_module.is_scheduler_running() is True

    @patch('backvault.scheduler._count_jobs_in_database')
    def test_not_running(self, mock_count):
        scheduler_module.scheduler = None
        mock_count.return_value = 0

        assert scheduler_module.is_scheduler_running() is False

    def test_next_scheduled_backup(self):
        job = MagicMock()
        job.next_run_time.isoformat.return_value = '2024-01-21T02:00:00+00:00'
        scheduler_module.scheduler = MagicMock()
        scheduler_module.scheduler.get_job.return_value = job

        assert scheduler_module.get_next_scheduled_backup() == '2024-01-21T02:00:00+00:00'

    def test_get_scheduled_jobs_not_initialized(self):
        scheduler_module.scheduler = None

        assert scheduler_module.get_scheduled_jobs() == []
