"""
Remote database dumps.

Supports:
- MySQL / MariaDB via mysqldump
- PostgreSQL via pg_dump

The dump is written to a file on the remote host, mirroring how file
backups are archived remotely. Passwords never appear on the command line;
they are written to a mode 0600 client credentials file next to the dump
and removed once the dump finishes.
"""

import logging
import shlex
from typing import Iterable, Optional

import paramiko

from .connection import RemoteSession
from .exceptions import DumpError, RemoteCommandError

logger = logging.getLogger(__name__)

MYSQL = 'mysql'
POSTGRESQL = 'postgresql'

DUMP_EXTENSION = 'sql'

CREDENTIALS_SUFFIX = {
    MYSQL: '.cnf',
    POSTGRESQL: '.pgpass',
}


def build_credentials_file(engine: str, password: str) -> str:
    """
    Render a client credentials file holding the dump password.

    MySQL reads a `[client]` option group via --defaults-extra-file; pg_dump
    reads a wildcard pgpass line via PGPASSFILE.

    Raises:
        ValueError: If engine is not supported
    """
    if engine == MYSQL:
        escaped = password.replace('\\', '\\\\').replace('"', '\\"')
        return f'[client]\npassword="{escaped}"\n'

    if engine == POSTGRESQL:
        escaped = password.replace('\\', '\\\\').replace(':', '\\:')
        return f"*:*:*:*:{escaped}\n"

    raise ValueError(f"Unsupported database engine: {engine}")


def build_dump_command(engine: str, database: str, dest_path: str, username: Optional[str] = None,
                       credentials_file: Optional[str] = None, excluded_tables: Iterable[str] = ()) -> str:
    """
    Build the remote dump command line for a database engine.

    Args:
        credentials_file: Remote path of a file from build_credentials_file

    Raises:
        ValueError: If engine is not supported
    """
    excluded_tables = [t for t in excluded_tables if t]

    if engine == MYSQL:
        parts = ['mysqldump']
        if credentials_file:
            # Must be the first option.
            parts.append(f"--defaults-extra-file={shlex.quote(credentials_file)}")
        parts.append('--single-transaction --routines')
        if username:
            parts.append(f"--user={shlex.quote(username)}")
        for table in excluded_tables:
            parts.append(f"--ignore-table={shlex.quote(f'{database}.{table}')}")
        parts.append(shlex.quote(database))
        parts.append(f"> {shlex.quote(dest_path)}")
        return ' '.join(parts)

    if engine == POSTGRESQL:
        parts = []
        if credentials_file:
            parts.append(f"PGPASSFILE={shlex.quote(credentials_file)}")
        parts.append('pg_dump --no-owner --no-password')
        if username:
            parts.append(f"--username={shlex.quote(username)}")
        for table in excluded_tables:
            parts.append(f"--exclude-table={shlex.quote(table)}")
        parts.append(f"--file={shlex.quote(dest_path)}")
        parts.append(shlex.quote(database))
        return ' '.join(parts)

    raise ValueError(f"Unsupported database engine: {engine}")


class DatabaseDumper:
    """Detects the database engine on a remote host and dumps databases to files."""

    def __init__(self, timeout: Optional[float] = None):
        self.timeout = timeout

    def detect_engine(self, session: RemoteSession) -> Optional[str]:
        """
        Detect which database client is installed on the remote host.

        MySQL is checked first; MariaDB reports through the mysql client.

        Returns:
            'mysql', 'postgresql', or None if neither is available
        """
        try:
            result = session.run('mysql --version')
            if result.ok and ('mysql' in result.stdout.lower() or 'mariadb' in result.stdout.lower()):
                return MYSQL

            result = session.run('psql --version')
            if result.ok and 'psql' in result.stdout.lower():
                return POSTGRESQL
        except RemoteCommandError as e:
            logger.warning(f"Database engine detection failed on {session.host}: {e}")

        return None

    def dump(self, session: RemoteSession, engine: str, database: str, dest_path: str,
             username: Optional[str] = None, password: Optional[str] = None,
             excluded_tables: Iterable[str] = ()) -> int:
        """
        Dump a database to a file on the remote host.

        Returns:
            Size of the dump file in bytes

        Raises:
            DumpError: On non-zero exit, timeout or missing output
        """
        credentials_file = None
        if password:
            content = build_credentials_file(engine, password)
            credentials_file = dest_path + CREDENTIALS_SUFFIX[engine]
            self._write_credentials(session, credentials_file, content)

        try:
            command = build_dump_command(engine, database, dest_path, username, credentials_file, excluded_tables)

            try:
                result = session.run(command, timeout=self.timeout)
            except RemoteCommandError as e:
                raise DumpError(f"Failed to dump database {database}: {e}")
        finally:
            if credentials_file:
                self._remove_credentials(session, credentials_file)

        if not result.ok:
            detail = result.stderr or result.stdout or 'no output'
            raise DumpError(f"{engine} dump of {database} exited with status {result.exit_code}: {detail}")

        try:
            attrs = session.sftp.stat(dest_path)
        except OSError:
            raise DumpError(f"Database dump was not created at {dest_path}")

        return attrs.st_size or 0

    def _write_credentials(self, session: RemoteSession, path: str, content: str):
        try:
            with session.sftp.open(path, 'w') as handle:
                handle.chmod(0o600)
                handle.write(content)
        except (OSError, paramiko.SSHException) as e:
            raise DumpError(f"Failed to write database credentials file {path}: {e}")

    def _remove_credentials(self, session: RemoteSession, path: str):
        try:
            session.remove(path)
        except (OSError, paramiko.SSHException) as e:
            logger.warning(f"Failed to remove database credentials file {path} on {session.host}: {e}")
