"""
Unit tests for schema setup and data migrations (backvault/migrations.py).
"""

from backvault.models import AppSetting, BackupDestination
from backvault.migrations import run_migrations, init_database_schema
from backvault.backup.storage import create_storage, S3Storage


def _legacy_settings(db, provider, **values):
    db.session.add(AppSetting(key='backup_provider', value=provider))
    for key, value in values.items():
        db.session.add(AppSetting(key=key, value=value))
    db.session.commit()


class TestLegacySettingsImport:

    def test_s3_settings_become_destination(self, app, db, cipher):
        _legacy_settings(
            db, 's3',
            backup_s3_access_key='AKIA123',
            backup_s3_secret_key='secret',
            backup_s3_bucket='legacy-bucket',
            backup_s3_region='eu-west-1',
            backup_s3_endpoint=''
        )
        db.session.add(AppSetting(key='backup_schedule', value='daily'))
        db.session.commit()

        run_migrations(app)

        destination = BackupDestination.query.one()
        assert destination.name == 'AWS S3'
        assert destination.provider == 's3'
        assert destination.is_active is True

        credentials = cipher.decrypt_credentials(destination.credentials_encrypted)
        assert credentials == {
            'backup_s3_access_key': 'AKIA123',
            'backup_s3_secret_key': 'secret',
            'backup_s3_bucket': 'legacy-bucket',
            'backup_s3_region': 'eu-west-1'
        }

        # The imported credentials still build a working provider
        storage = create_storage('s3', credentials)
        assert isinstance(storage, S3Storage)
        assert storage.bucket_name == 'legacy-bucket'

        # Plaintext credentials removed, unrelated settings kept
        remaining = {s.key for s in AppSetting.query.all()}
        assert remaining == {'backup_schedule'}

    def test_skipped_when_destinations_exist(self, app, db, make_destination):
        make_destination('Existing')
        _legacy_settings(db, 'b2', backup_b2_key_id='k', backup_b2_app_key='a',
                         backup_b2_bucket='b', backup_b2_endpoint='s3.us-west-004.backblazeb2.com')

        run_migrations(app)

        assert [d.name for d in BackupDestination.query.all()] == ['Existing']
        assert db.session.get(AppSetting, 'backup_b2_key_id') is not None

    def test_unknown_provider_ignored(self, app, db):
        _legacy_settings(db, 'ftp')

        run_migrations(app)

        assert BackupDestination.query.count() == 0

    def test_no_legacy_settings(self, app, db):
        run_migrations(app)

        assert BackupDestination.query.count() == 0

    def test_idempotent(self, app, db):
        _legacy_settings(db, 'gdrive', backup_gdrive_credentials='{"type": "service_account"}',
                         backup_gdrive_folder_id='folder-1')

        run_migrations(app)
        run_migrations(app)

        assert BackupDestination.query.count() == 1


def test_init_database_schema_is_repeatable(app, db):
    init_database_schema(app)
    init_database_schema(app)

    assert BackupDestination.query.count() == 0
