"""
Backup module for Backvault.

This module handles the core backup functionality including:
- Storage providers (S3, Backblaze B2, Google Drive)
- Archive creation and extraction (database dump, uploads, .env)
- Execution orchestration (executor)
- Retention and stuck-run sweeps (retention, watchdog)

Only the storage and archive layers are exported here: the restore CLI uses
them without loading the database models.
"""

from .storage import (
    StorageProvider, S3Storage, GoogleDriveStorage, StorageError, ConfigurationError,
    create_storage
)
from .archive import create_backup_archive, extract_backup_archive, ArchiveError
from .database import DumpError, RestoreError

__all__ = [
    'StorageProvider',
    'S3Storage',
    'GoogleDriveStorage',
    'StorageError',
    'ConfigurationError',
    'create_storage',
    'create_backup_archive',
    'extract_backup_archive',
    'ArchiveError',
    'DumpError',
    'RestoreError'
]
