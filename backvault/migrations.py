"""
Database migrations for Backvault.

Simple migration system to handle schema changes without requiring Alembic.
"""

import logging
from sqlalchemy import inspect
from backvault import db

logger = logging.getLogger(__name__)

# Single-provider settings written before named destinations existed
LEGACY_PROVIDER_KEY = 'backup_provider'
LEGACY_CREDENTIAL_KEYS = {
    's3': ('backup_s3_access_key', 'backup_s3_secret_key', 'backup_s3_bucket',
           'backup_s3_region', 'backup_s3_endpoint'),
    'b2': ('backup_b2_key_id', 'backup_b2_app_key', 'backup_b2_bucket', 'backup_b2_endpoint'),
    'gdrive': ('backup_gdrive_credentials', 'backup_gdrive_folder_id'),
}
LEGACY_PROVIDER_NAMES = {
    's3': 'AWS S3',
    'b2': 'Backblaze B2',
    'gdrive': 'Google Drive',
}


def init_database_schema(app):
    """
    Initialize database schema and run migrations.

    Creates any missing tables and runs the in-place migrations. Safe to call
    from several gunicorn workers and repeatedly (flask init-db).
    """
    with app.app_context():
        inspector = inspect(db.engine)
        existing_tables = set(inspector.get_table_names())

        try:
            db.create_all()
        except Exception as e:
            # Another worker may have created the tables concurrently
            logger.error(f"Failed to create database schema: {e}")
            db.session.rollback()

        created = set(inspect(db.engine).get_table_names()) - existing_tables
        if created:
            logger.info(f"Created tables: {', '.join(sorted(created))}")

        run_migrations(app)


def run_migrations(app):
    """
    Run all necessary data migrations.
    """
    # Migration 1: Import single-provider backup settings as a named destination
    try:
        _migrate_legacy_backup_settings()
    except Exception as e:
        logger.error(f"Failed to migrate legacy backup settings: {e}")
        db.session.rollback()


def _migrate_legacy_backup_settings():
    """
    Convert the legacy backup_provider + backup_<provider>_* settings into a
    BackupDestination with encrypted credentials.

    Runs only while no destination exists. The plaintext credential settings
    are removed once the destination is stored.
    """
    from backvault.models import AppSetting, BackupDestination
    from backvault.utils.crypto import get_credential_cipher

    provider_setting = db.session.get(AppSetting, LEGACY_PROVIDER_KEY)
    if not provider_setting:
        return

    provider = (provider_setting.value or '').strip()
    if provider not in LEGACY_CREDENTIAL_KEYS:
        logger.warning(f"Ignoring legacy backup provider setting: {provider!r}")
        return

    if BackupDestination.query.count() > 0:
        logger.info("Backup destinations already configured - skipping legacy settings import")
        return

    keys = LEGACY_CREDENTIAL_KEYS[provider]
    settings = {s.key: s.value for s in AppSetting.query.filter(AppSetting.key.in_(keys)).all()}
    credentials = {key: value for key, value in settings.items() if value}

    if not credentials:
        logger.info(f"Legacy backup provider '{provider}' has no credentials - skipping import")
        return

    cipher = get_credential_cipher()
    destination = BackupDestination(
        name=LEGACY_PROVIDER_NAMES[provider],
        provider=provider,
        credentials_encrypted=cipher.encrypt_credentials(credentials),
        is_active=True
    )
    db.session.add(destination)

    AppSetting.query.filter(AppSetting.key.in_(keys + (LEGACY_PROVIDER_KEY,))).delete(synchronize_session=False)
    db.session.commit()

    logger.info(f"Imported legacy {provider} backup settings as destination '{destination.name}'")
