"""
Value types passed into and out of the backup orchestrator.

A BackupTaskDescriptor is built by the caller and is read-only for the
duration of a run. A BackupOutcome is produced once per run and handed back.
"""

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, List, Optional, Tuple


TASK_TYPE_FILE = 'file'
TASK_TYPE_DATABASE = 'database'

STATUS_SUCCEEDED = 'succeeded'
STATUS_FAILED = 'failed'
STATUS_DECLINED = 'declined'

LEVEL_INFO = 'info'
LEVEL_ERROR = 'error'


@dataclass(frozen=True)
class ServerCredentials:
    """Connection details for the remote server a task backs up."""
    host: str
    port: int = 22
    username: str = 'root'
    password: Optional[str] = None
    server_id: Optional[int] = None
    database_username: Optional[str] = None
    database_password: Optional[str] = None

    @property
    def key(self) -> str:
        """Identity used for single-task-per-server admission."""
        if self.server_id is not None:
            return f"server:{self.server_id}"
        return f"{self.host}:{self.port}"


@dataclass(frozen=True)
class RotationPolicy:
    enabled: bool = False
    max_to_keep: int = 0

    @classmethod
    def keep(cls, max_to_keep: Optional[int]) -> 'RotationPolicy':
        """Build a policy from a nullable "maximum backups to keep" value."""
        if not max_to_keep or max_to_keep < 1:
            return cls(enabled=False, max_to_keep=0)
        return cls(enabled=True, max_to_keep=int(max_to_keep))


@dataclass(frozen=True)
class DestinationTarget:
    """
    A configured storage backend.

    `type` selects the driver variant; `config` carries the driver's
    connection parameters (bucket, host, credentials, ...).
    """
    type: str
    label: str = ''
    config: Dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class BackupTaskDescriptor:
    task_id: int
    type: str
    server: ServerCredentials
    destination: DestinationTarget
    source_path: Optional[str] = None
    store_path: Optional[str] = None
    rotation: RotationPolicy = field(default_factory=RotationPolicy)
    exclude_dirs: Tuple[str, ...] = ()
    database_name: Optional[str] = None
    excluded_tables: Tuple[str, ...] = ()
    label: str = ''


@dataclass
class ArchiveArtifact:
    """The backup file built on the remote host before upload."""
    remote_path: str
    filename: str
    size_bytes: int = 0


@dataclass(frozen=True)
class LogLine:
    timestamp: datetime
    level: str
    message: str

    def __str__(self):
        return f"[{self.timestamp.strftime('%Y-%m-%d %H:%M:%S UTC')}] {self.message}"


@dataclass
class BackupOutcome:
    task_id: int
    status: str
    size_bytes: int = 0
    logs: List[LogLine] = field(default_factory=list)
    artifact: Optional[str] = None
    error: Optional[str] = None
    started_at: Optional[datetime] = None
    finished_at: Optional[datetime] = None

    @property
    def succeeded(self) -> bool:
        return self.status == STATUS_SUCCEEDED

    @property
    def declined(self) -> bool:
        return self.status == STATUS_DECLINED

    @property
    def output(self) -> str:
        return '\n'.join(str(line) for line in self.logs)

    def messages(self, level: Optional[str] = None) -> List[str]:
        return [line.message for line in self.logs if level is None or line.level == level]
