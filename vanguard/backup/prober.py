"""
Remote filesystem probing over SFTP.

Answers the pre-flight questions the orchestrator asks before archiving:
does the source exist, how big is it, and is it a known project layout.
"""

import logging
import posixpath
import stat
from typing import Callable, Optional, Tuple

import paramiko

from .connection import RemoteSession
from .exceptions import SizingError

logger = logging.getLogger(__name__)

LARAVEL_MARKER = 'artisan'
LARAVEL_EXCLUDES = ('node_modules', 'vendor')


class RemoteFilesystemProber:
    """
    Path, size and project-layout checks against a RemoteSession.
    """

    def __init__(self, marker: str = LARAVEL_MARKER, marker_excludes: Tuple[str, ...] = LARAVEL_EXCLUDES):
        """
        Args:
            marker: Filename whose presence at the source root identifies the project type
            marker_excludes: Directories to exclude when the marker is present
        """
        self.marker = marker
        self.marker_excludes = tuple(marker_excludes)

    def path_exists(self, session: RemoteSession, path: str) -> bool:
        try:
            session.sftp.stat(path)
            return True
        except FileNotFoundError:
            return False
        except PermissionError:
            # Stat was refused, but the entry is there.
            return True

    def directory_size(self, session: RemoteSession, path: str,
                       warn: Optional[Callable[[str], None]] = None) -> int:
        """
        Recursively sum file sizes below a remote directory.

        Symlinks are followed once per resolved target so link cycles
        terminate. Entries that cannot be read due to permissions are skipped
        with a warning.

        Raises:
            SizingError: On any other I/O failure
        """
        def _warn(message):
            logger.warning(message)
            if warn:
                warn(message)

        total = 0
        visited = set()
        pending = [path]

        while pending:
            current = pending.pop()

            try:
                resolved = session.sftp.normalize(current)
            except PermissionError:
                _warn(f"Permission denied resolving {current}, skipping")
                continue
            except OSError as e:
                raise SizingError(f"Failed to resolve remote path {current}: {e}")

            if resolved in visited:
                continue
            visited.add(resolved)

            try:
                entries = session.sftp.listdir_attr(current)
            except PermissionError:
                _warn(f"Permission denied reading {current}, skipping")
                continue
            except OSError as e:
                raise SizingError(f"Failed to list remote directory {current}: {e}")

            for entry in entries:
                child = posixpath.join(current, entry.filename)
                mode = entry.st_mode or 0

                if stat.S_ISLNK(mode):
                    try:
                        target = session.sftp.stat(child)
                    except PermissionError:
                        _warn(f"Permission denied following link {child}, skipping")
                        continue
                    except FileNotFoundError:
                        _warn(f"Broken symlink {child}, skipping")
                        continue
                    except OSError as e:
                        raise SizingError(f"Failed to follow link {child}: {e}")

                    if stat.S_ISDIR(target.st_mode or 0):
                        pending.append(child)
                    else:
                        total += target.st_size or 0
                elif stat.S_ISDIR(mode):
                    pending.append(child)
                else:
                    total += entry.st_size or 0

        return total

    def detect_project_marker(self, session: RemoteSession, path: str) -> bool:
        return self.path_exists(session, posixpath.join(path, self.marker))

    def exclusions_for(self, session: RemoteSession, path: str,
                       warn: Optional[Callable[[str], None]] = None) -> Tuple[str, ...]:
        """
        Directories to leave out of the archive for this source.

        Detection is advisory: an I/O error while looking for the marker is
        reported through `warn` and no layout-specific exclusions apply.
        """
        try:
            detected = self.detect_project_marker(session, path)
        except (OSError, paramiko.SSHException) as e:
            message = f"Project detection failed for {path}: {e}. Continuing without layout-specific exclusions."
            logger.warning(message)
            if warn:
                warn(message)
            return ()

        if detected:
            return self.marker_excludes
        return ()
