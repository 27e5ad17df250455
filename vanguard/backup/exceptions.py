"""
Error taxonomy for backup task execution.

Fatal errors end the run in a failed state. Non-fatal errors (rotation and
cleanup) are logged on the run and never change its outcome.
"""


class BackupError(Exception):
    """Base class for errors raised while executing a backup task."""
    fatal = True


class RemoteConnectionError(BackupError):
    """Raised when a remote SSH/SFTP session cannot be established."""
    pass


class RemoteCommandError(BackupError):
    """Raised when a remote command cannot be executed or times out."""
    pass


class ValidationError(BackupError):
    """Raised when a task fails a pre-flight check."""
    pass


class PathNotFoundError(ValidationError):
    """Raised when the source path does not exist on the remote server."""
    pass


class SizeLimitExceededError(ValidationError):
    """Raised when the backup source is larger than the configured ceiling."""
    pass


class SizingError(ValidationError):
    """Raised when the remote directory size cannot be determined reliably."""
    pass


class ArchiveError(BackupError):
    """Raised when the remote archive cannot be created."""
    pass


class DumpError(ArchiveError):
    """Raised when a remote database dump fails."""
    pass


class UploadError(BackupError):
    """Raised when an artifact cannot be uploaded to its destination."""
    pass


class RotationError(BackupError):
    """Raised when old backups cannot be listed for rotation."""
    fatal = False


class CleanupError(BackupError):
    """Raised when the remote temporary artifact cannot be removed."""
    fatal = False
