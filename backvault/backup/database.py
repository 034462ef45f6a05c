"""
PostgreSQL client tool wrappers used to dump and restore the application database.

pg_dump produces a plain SQL script without ownership or privilege statements,
so it can be replayed by psql onto a fresh role on a new machine.
"""

import logging
import os
import subprocess
from typing import Dict, Optional

from sqlalchemy.engine import make_url
from sqlalchemy.exc import ArgumentError

logger = logging.getLogger(__name__)


class DatabaseToolError(Exception):
    """Raised when a PostgreSQL client tool fails."""
    pass


class DumpError(DatabaseToolError):
    """Raised when pg_dump fails - no archive may be produced from a failed dump."""
    pass


class RestoreError(DatabaseToolError):
    """Raised when the SQL dump cannot be loaded."""
    pass


def parse_database_url(url: str) -> Dict[str, str]:
    """
    Split a database URL into the parameters the PostgreSQL tools need.

    Accepts plain and driver-qualified URLs (postgres://, postgresql+psycopg2://).

    Returns:
        Dict with 'host', 'port', 'user', 'password' and 'dbname'

    Raises:
        ValueError: If the URL is not a usable PostgreSQL URL
    """
    if not url:
        raise ValueError("Database URL is empty")

    # SQLAlchemy only knows the 'postgresql' dialect name
    if url.startswith('postgres://'):
        url = 'postgresql://' + url[len('postgres://'):]

    try:
        parsed = make_url(url)
    except ArgumentError as e:
        raise ValueError(f"Invalid database URL: {e}")

    if not parsed.drivername.startswith('postgresql'):
        raise ValueError(f"Only PostgreSQL databases can be dumped, got '{parsed.drivername}'")
    if not parsed.database:
        raise ValueError("Database URL does not name a database")

    return {
        'host': parsed.host or 'localhost',
        'port': str(parsed.port or 5432),
        'user': parsed.username or '',
        'password': parsed.password or '',
        'dbname': parsed.database,
    }


def _tool_env(params: Dict[str, str]) -> Dict[str, str]:
    env = os.environ.copy()
    if params.get('password'):
        env['PGPASSWORD'] = params['password']
    return env


def _connection_args(params: Dict[str, str]) -> list:
    args = ['-h', params['host'], '-p', params['port']]
    if params.get('user'):
        args += ['-U', params['user']]
    return args


def dump_database(database_url: str, output_path: str, timeout: Optional[int] = 3600) -> None:
    """
    Write a plain SQL dump (schema and data) of the database to output_path.

    Raises:
        DumpError: If pg_dump exits non-zero, times out or cannot be started
    """
    try:
        params = parse_database_url(database_url)
    except ValueError as e:
        raise DumpError(str(e))

    cmd = [
        'pg_dump',
        '--format=plain',
        '--no-owner',
        '--no-privileges',
        *_connection_args(params),
        '-d', params['dbname'],
        '-f', output_path,
    ]

    logger.info(f"Starting pg_dump for database {params['dbname']} on {params['host']}:{params['port']}")

    try:
        result = subprocess.run(cmd, env=_tool_env(params), capture_output=True, text=True, timeout=timeout)
    except subprocess.TimeoutExpired:
        raise DumpError(f"pg_dump timed out after {timeout} seconds")
    except OSError as e:
        raise DumpError(f"pg_dump could not be started: {e}")

    if result.returncode != 0:
        stderr = (result.stderr or '').strip()
        raise DumpError(f"pg_dump failed with return code {result.returncode}: {stderr}")

    logger.info(f"pg_dump completed: {output_path}")


def _run_restore_tool(cmd: list, params: Dict[str, str]) -> subprocess.CompletedProcess:
    try:
        return subprocess.run(cmd, env=_tool_env(params), capture_output=True, text=True)
    except OSError as e:
        raise RestoreError(f"{cmd[0]} could not be started: {e}")


def database_exists(params: Dict[str, str]) -> bool:
    dbname = params['dbname'].replace("'", "''")
    cmd = [
        'psql', *_connection_args(params), '-d', 'postgres', '-tAc',
        f"SELECT 1 FROM pg_database WHERE datname = '{dbname}'",
    ]
    result = _run_restore_tool(cmd, params)
    if result.returncode != 0:
        raise RestoreError(f"Could not query databases: {(result.stderr or '').strip()}")
    return result.stdout.strip() == '1'


def ensure_database_exists(params: Dict[str, str]) -> bool:
    """
    Create the target database if it is missing.

    Returns:
        True if the database was created, False if it already existed
    """
    if database_exists(params):
        return False

    cmd = ['createdb', *_connection_args(params), params['dbname']]
    result = _run_restore_tool(cmd, params)
    if result.returncode != 0:
        raise RestoreError(f"createdb failed: {(result.stderr or '').strip()}")

    logger.info(f"Created database {params['dbname']}")
    return True


def load_sql_dump(params: Dict[str, str], sql_path: str) -> None:
    """
    Replay a plain SQL dump in a single transaction.

    The first error aborts and rolls back the whole load, so the dump is
    applied exactly once or not at all.

    Raises:
        RestoreError: If psql reports an error or cannot be started
    """
    cmd = [
        'psql', *_connection_args(params),
        '-d', params['dbname'],
        '-v', 'ON_ERROR_STOP=1',
        '--single-transaction',
        '-f', sql_path,
    ]
    result = _run_restore_tool(cmd, params)
    if result.returncode != 0:
        raise RestoreError(f"psql failed with return code {result.returncode}: {(result.stderr or '').strip()[:500]}")
