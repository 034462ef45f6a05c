"""
Shared pytest fixtures for Backvault tests.

This module provides fixtures for:
- Flask app and test client
- Database setup with in-memory SQLite
- Credential cipher and backup destination fixtures
- Backup run fixtures
- Mock fixtures for external services (S3, scheduler)
- Archive fixtures
"""

import os
import json
import tarfile
from datetime import datetime
from unittest.mock import MagicMock, patch

import pytest
import boto3
from moto import mock_aws

from backvault import create_app, db as _db
from backvault.models import BackupDestination, BackupRun, BackupUpload
from backvault.settings import InMemorySettings
from backvault.utils.crypto import CredentialCipher


S3_CREDENTIALS = {
    'access_key': 'testing',
    'secret_key': 'testing',
    'bucket': 'test-bucket',
    'region': 'us-east-1',
}


@pytest.fixture(scope='function')
def app(tmp_path):
    """
    Create Flask app with test configuration.

    Uses in-memory SQLite database for fast, isolated tests.
    """
    app = create_app('testing')

    app.config.update({
        'TEMP_DIR': str(tmp_path / 'temp'),
        'UPLOADS_DIR': str(tmp_path / 'uploads'),
        'ENV_FILE': str(tmp_path / '.env'),
    })
    os.makedirs(app.config['TEMP_DIR'], exist_ok=True)

    yield app


@pytest.fixture(scope='function')
def db(app):
    """
    Database with all tables inside an app context.

    Each test gets a fresh database.
    """
    with app.app_context():
        _db.create_all()
        yield _db
        _db.session.remove()
        _db.drop_all()


@pytest.fixture(scope='function')
def client(app, db):
    """Flask test client for making HTTP requests."""
    return app.test_client()


@pytest.fixture(scope='function')
def runner(app):
    """Flask CLI test runner."""
    return app.test_cli_runner()


@pytest.fixture(scope='function')
def cipher():
    """CredentialCipher keyed like the testing config."""
    return CredentialCipher('test-secret-key')


@pytest.fixture(scope='function')
def settings():
    """In-memory settings provider."""
    return InMemorySettings()


@pytest.fixture(scope='function')
def make_destination(db, cipher):
    """
    Factory creating BackupDestination rows with encrypted credentials.

    Defaults to an S3 destination pointing at the moto 'test-bucket'.
    """
    def _make(name='Primary S3', provider='s3', credentials=None, is_active=True):
        destination = BackupDestination(
            name=name,
            provider=provider,
            credentials_encrypted=cipher.encrypt_credentials(credentials or dict(S3_CREDENTIALS)),
            is_active=is_active
        )
        db.session.add(destination)
        db.session.commit()
        return destination

    return _make


@pytest.fixture(scope='function')
def make_run(db):
    """
    Factory creating a BackupRun with one upload per given destination.
    """
    def _make(destinations, status='completed', upload_status='completed', created_at=None,
              started_at=None, file_name='backups/backup-2024-01-15-020000.tar.gz'):
        created_at = created_at or datetime.utcnow()
        run = BackupRun(
            triggered_by='scheduled',
            status=status,
            file_name=file_name,
            file_size=1024,
            created_at=created_at,
            started_at=started_at or created_at
        )
        db.session.add(run)
        for destination in destinations:
            run.uploads.append(BackupUpload(destination_id=destination.id, status=upload_status))
        db.session.commit()
        return run

    return _make


@pytest.fixture
def mock_s3():
    """
    Mock AWS S3 service using moto.

    Creates a test bucket 'test-bucket' in us-east-1 region.
    """
    with mock_aws():
        s3 = boto3.resource('s3', region_name='us-east-1')
        s3.create_bucket(Bucket='test-bucket')
        yield s3


@pytest.fixture
def fake_archive(tmp_path):
    """
    Patch archive creation with a fake that writes a small archive file.

    Yields the mock so tests can inspect calls or set a side effect.
    """
    manifest = {
        'version': '1.0.0',
        'app_version': '1.0.0',
        'timestamp': '2024-01-15T02:00:00+00:00',
        'db_name': 'backvault',
        'python_version': '3.12.0',
    }

    def _create(temp_dir, database_url, **kwargs):
        path = os.path.join(temp_dir, 'backup-2024-01-15-020000.tar.gz')
        with open(path, 'wb') as f:
            f.write(b'fake archive bytes')
        return path, dict(manifest)

    with patch('backvault.backup.executor.create_backup_archive', side_effect=_create) as mock_create:
        yield mock_create


@pytest.fixture
def backup_source(tmp_path):
    """
    Uploads tree and .env file to put into an archive.

    Creates:
    - uploads/avatars/user1.png
    - uploads/branding/logo.svg
    - .env
    """
    uploads = tmp_path / 'source' / 'uploads'
    (uploads / 'avatars').mkdir(parents=True)
    (uploads / 'branding').mkdir()
    (uploads / 'avatars' / 'user1.png').write_bytes(b'\x89PNG fake image')
    (uploads / 'branding' / 'logo.svg').write_text('<svg></svg>')

    env_file = tmp_path / 'source' / '.env'
    env_file.write_text('DATABASE_URL=postgresql://app:pw@db.internal:5432/backvault\nSECRET_KEY=abc\n')

    return {'uploads_dir': str(uploads), 'env_file': str(env_file)}


@pytest.fixture
def sample_archive(tmp_path):
    """
    Build a restorable archive by hand (no pg_dump needed).

    Contains database.sql, manifest.json, .env and an uploads tree.
    """
    content = tmp_path / 'archive_content'
    (content / 'uploads' / 'docs').mkdir(parents=True)
    (content / 'uploads' / 'docs' / 'invoice-1.pdf').write_bytes(b'%PDF-1.4 fake')
    (content / 'database.sql').write_text(
        "CREATE TABLE clients (id integer PRIMARY KEY, name text NOT NULL);\n"
        "INSERT INTO clients (id, name) VALUES (1, 'Acme');\n"
    )
    (content / '.env').write_text('DATABASE_URL=postgresql://app:pw@localhost:5432/restored\n')
    (content / 'manifest.json').write_text(json.dumps({
        'version': '1.0.0',
        'app_version': '1.0.0',
        'timestamp': '2024-01-15T02:00:00+00:00',
        'db_name': 'backvault',
        'python_version': '3.12.0',
    }))

    archive_path = tmp_path / 'backup-2024-01-15-020000.tar.gz'
    with tarfile.open(archive_path, 'w:gz') as tar:
        for entry in sorted(os.listdir(content)):
            tar.add(content / entry, arcname=entry)

    return archive_path


@pytest.fixture(scope='function')
def mock_scheduler(app):
    """
    Replace the global APScheduler instance with a MagicMock.
    """
    from backvault import scheduler as scheduler_module

    scheduler_instance = MagicMock()
    scheduler_instance.running = True
    scheduler_instance.get_jobs.return_value = []

    with patch.object(scheduler_module, 'scheduler', scheduler_instance), \
            patch.object(scheduler_module, 'flask_app', app), \
            patch.object(scheduler_module, '_installed_cadence', None):
        yield scheduler_instance
