"""
Backup archive creation and extraction.

An archive is a gzip-compressed tar with these members at its root:
- manifest.json: format version, app version, timestamp, database, runtime
- database.sql:  plain SQL dump of the application database
- uploads/:      copy of the uploaded-files tree (optional)
- .env:          environment configuration file (optional)
"""

import json
import logging
import os
import platform
import shutil
import tarfile
import tempfile
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, Optional, Tuple

from .database import DumpError, dump_database, parse_database_url

logger = logging.getLogger(__name__)

MANIFEST_VERSION = '1.0.0'
UNKNOWN_VERSION = 'unknown'

MANIFEST_FILE = 'manifest.json'
DATABASE_FILE = 'database.sql'
UPLOADS_DIR = 'uploads'
ENV_FILE = '.env'


class ArchiveError(Exception):
    """Raised when archive creation or extraction fails."""
    pass


def build_manifest(db_name: Optional[str], app_version: Optional[str]) -> Dict[str, Any]:
    return {
        'version': MANIFEST_VERSION,
        'app_version': app_version,
        'timestamp': datetime.now(timezone.utc).isoformat(),
        'db_name': db_name,
        'python_version': platform.python_version(),
    }


def unknown_manifest() -> Dict[str, Any]:
    """Manifest for archives written before manifests existed."""
    return {
        'version': UNKNOWN_VERSION,
        'app_version': None,
        'timestamp': None,
        'db_name': None,
        'python_version': None,
    }


def generate_archive_filename(now: Optional[datetime] = None) -> str:
    """
    Generate a standardized archive filename.

    Format: backup-YYYY-MM-DD-HHMMSS.tar.gz
    """
    now = now or datetime.now()
    return f"backup-{now:%Y-%m-%d-%H%M%S}.tar.gz"


def create_backup_archive(
    temp_dir: str,
    database_url: str,
    uploads_dir: Optional[str] = None,
    env_file: Optional[str] = None,
    app_version: Optional[str] = None,
    dump_timeout: Optional[int] = 3600
) -> Tuple[str, Dict[str, Any]]:
    """
    Snapshot the database and files into one archive inside temp_dir.

    Args:
        temp_dir: Directory the archive is written to (owned by the caller)
        database_url: Database to dump
        uploads_dir: Uploaded-files tree to include, skipped if missing
        env_file: Environment file to include, skipped if missing
        app_version: Application version recorded in the manifest
        dump_timeout: Seconds pg_dump may run

    Returns:
        Tuple of (archive_path, manifest)

    Raises:
        DumpError: If the database dump fails (no archive is left behind)
        ArchiveError: If copying files or writing the archive fails
    """
    work_dir = tempfile.mkdtemp(prefix='backup-work-', dir=temp_dir)
    archive_path = os.path.join(temp_dir, generate_archive_filename())

    try:
        dump_database(database_url, os.path.join(work_dir, DATABASE_FILE), timeout=dump_timeout)

        try:
            if uploads_dir and os.path.isdir(uploads_dir):
                shutil.copytree(uploads_dir, os.path.join(work_dir, UPLOADS_DIR), symlinks=False)
            else:
                logger.info(f"No uploads directory at {uploads_dir}, skipping")

            if env_file and os.path.isfile(env_file):
                shutil.copy2(env_file, os.path.join(work_dir, ENV_FILE))
            else:
                logger.info(f"No environment file at {env_file}, skipping")
        except OSError as e:
            raise ArchiveError(f"Failed to copy files into archive: {e}")

        try:
            db_name = parse_database_url(database_url)['dbname']
        except ValueError:
            db_name = None

        manifest = build_manifest(db_name, app_version)
        with open(os.path.join(work_dir, MANIFEST_FILE), 'w') as f:
            json.dump(manifest, f, indent=2)

        try:
            with tarfile.open(archive_path, 'w:gz') as tar:
                for entry in sorted(os.listdir(work_dir)):
                    tar.add(os.path.join(work_dir, entry), arcname=entry, recursive=True)
        except (OSError, tarfile.TarError) as e:
            raise ArchiveError(f"Failed to create archive: {e}")

        return archive_path, manifest

    except (DumpError, ArchiveError):
        # Never leave a partial archive behind
        if os.path.exists(archive_path):
            os.remove(archive_path)
        raise

    finally:
        shutil.rmtree(work_dir, ignore_errors=True)


def _safe_members(tar: tarfile.TarFile, dest_dir: Path):
    """Yield archive members, rejecting anything that would land outside dest_dir."""
    for member in tar.getmembers():
        target = (dest_dir / member.name).resolve()
        if target != dest_dir and dest_dir not in target.parents:
            raise ArchiveError(f"Archive member escapes extraction directory: {member.name}")
        if member.issym() or member.islnk():
            link_target = (target.parent / member.linkname).resolve()
            if link_target != dest_dir and dest_dir not in link_target.parents:
                raise ArchiveError(f"Archive link escapes extraction directory: {member.name}")
        yield member


def read_manifest(extracted_dir: str) -> Dict[str, Any]:
    """
    Read manifest.json from an extracted archive.

    Missing or unreadable manifests yield unknown_manifest().
    """
    manifest_path = os.path.join(extracted_dir, MANIFEST_FILE)

    if not os.path.isfile(manifest_path):
        logger.warning("Archive has no manifest, treating as unknown version")
        return unknown_manifest()

    try:
        with open(manifest_path, 'r') as f:
            manifest = json.load(f)
    except (OSError, ValueError) as e:
        logger.warning(f"Unreadable manifest ({e}), treating as unknown version")
        return unknown_manifest()

    if not isinstance(manifest, dict):
        return unknown_manifest()

    result = unknown_manifest()
    result.update(manifest)
    return result


def extract_backup_archive(archive_path: str, dest_dir: str) -> Dict[str, Any]:
    """
    Extract a backup archive into dest_dir.

    Returns:
        The archive manifest

    Raises:
        ArchiveError: If the archive cannot be read
    """
    dest = Path(dest_dir)
    dest.mkdir(parents=True, exist_ok=True)
    dest = dest.resolve()

    try:
        with tarfile.open(archive_path, 'r:gz') as tar:
            tar.extractall(dest, members=list(_safe_members(tar, dest)))
    except (OSError, tarfile.TarError) as e:
        raise ArchiveError(f"Failed to extract archive: {e}")

    return read_manifest(str(dest))


def get_archive_size(archive_path: str) -> int:
    try:
        return os.path.getsize(archive_path)
    except OSError as e:
        raise ArchiveError(f"Failed to get archive size: {e}")
