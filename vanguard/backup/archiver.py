"""
Remote archiving.

The archive is built on the remote host with `zip`; no file content passes
through this process while archiving.
"""

import logging
import shlex
from typing import Iterable, List, Optional

from .connection import RemoteSession
from .exceptions import ArchiveError, RemoteCommandError

logger = logging.getLogger(__name__)


def build_zip_command(source_path: str, dest_path: str, exclude_dirs: Iterable[str] = ()) -> str:
    """
    Build the remote zip command line.

    Excluded directories are matched at the archive root and at any depth
    below it.

    Args:
        source_path: Remote directory to compress
        dest_path: Remote path of the archive to create
        exclude_dirs: Directory names to leave out

    Returns:
        Shell command string
    """
    command = f"cd {shlex.quote(source_path)} && zip -r -q {shlex.quote(dest_path)} ."

    patterns: List[str] = []
    for directory in exclude_dirs:
        directory = directory.strip('/')
        if not directory:
            continue
        patterns.append(shlex.quote(f"{directory}/*"))
        patterns.append(shlex.quote(f"*/{directory}/*"))

    if patterns:
        command += ' -x ' + ' '.join(patterns)

    return command


class RemoteArchiver:
    """Creates zip archives of remote directories on the remote host."""

    def __init__(self, timeout: Optional[float] = None):
        """
        Args:
            timeout: Seconds to wait for the remote zip to finish
        """
        self.timeout = timeout

    def archive(self, session: RemoteSession, source_path: str, dest_path: str,
                exclude_dirs: Iterable[str] = ()) -> int:
        """
        Compress a remote directory into a single zip archive.

        Returns:
            Size of the created archive in bytes

        Raises:
            ArchiveError: On non-zero exit, timeout or missing output
        """
        command = build_zip_command(source_path, dest_path, exclude_dirs)
        logger.debug(f"Running remote archive command on {session.host}: {command}")

        try:
            result = session.run(command, timeout=self.timeout)
        except RemoteCommandError as e:
            raise ArchiveError(f"Failed to compress {source_path}: {e}")

        if not result.ok:
            detail = result.stderr or result.stdout or 'no output'
            raise ArchiveError(f"zip exited with status {result.exit_code} while compressing {source_path}: {detail}")

        try:
            attrs = session.sftp.stat(dest_path)
        except OSError:
            raise ArchiveError(f"Archive was not created at {dest_path}")

        return attrs.st_size or 0
