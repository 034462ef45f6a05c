"""
Unit tests for the application factory (backvault/__init__.py).
"""

from unittest.mock import MagicMock

import pytest

from backvault import _should_init_scheduler


class TestSchedulerOwnership:

    def _app(self, **config):
        app = MagicMock()
        app.config = {'SCHEDULER_ENABLED': True, 'DEBUG': False}
        app.config.update(config)
        return app

    def test_disabled(self):
        assert _should_init_scheduler(self._app(SCHEDULER_ENABLED=False)) is False

    @pytest.mark.parametrize('value, expected', [('true', True), ('false', False)])
    def test_gunicorn_worker_flag(self, monkeypatch, value, expected):
        monkeypatch.setenv('SCHEDULER_WORKER', value)

        assert _should_init_scheduler(self._app()) is expected

    def test_development_reloader_child_only(self, monkeypatch):
        monkeypatch.delenv('WERKZEUG_RUN_MAIN', raising=False)
        assert _should_init_scheduler(self._app(DEBUG=True)) is False

        monkeypatch.setenv('WERKZEUG_RUN_MAIN', 'true')
        assert _should_init_scheduler(self._app(DEBUG=True)) is True


def test_testing_config(app):
    assert app.config['TESTING'] is True
    assert app.config['SCHEDULER_ENABLED'] is False
    assert 'backups' in app.blueprints
    assert 'destinations' in app.blueprints


def test_init_db_command(runner):
    result = runner.invoke(args=['init-db'])

    assert result.exit_code == 0
    assert 'Database schema is up to date' in result.output
