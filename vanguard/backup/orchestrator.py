"""
Backup task orchestrator - drives one backup run from connect to cleanup.

Workflow:
1. Admission check (one running task per remote server)
2. Connect to the remote server
3. Validate the source (path exists / database reachable)
4. Measure the source and enforce the size ceiling
5. Detect project layout and choose exclusions
6. Produce the artifact remotely (zip or database dump)
7. Upload the artifact to the destination
8. Rotate old backups (when enabled and supported)
9. Remove the remote temporary artifact
10. Return a BackupOutcome with the ordered run log

Fatal errors end the run as failed. Rotation and cleanup errors are logged
only. The artifact step is supplied by an ArtifactStrategy, one per task type.
"""

import logging
import posixpath
import time
from abc import ABC, abstractmethod
from datetime import datetime, timezone
from enum import Enum
from typing import Callable, Dict, List, Mapping, Optional, Tuple

import paramiko

from .archiver import RemoteArchiver
from .connection import RemoteConnectionManager, RemoteSession, SSHKeyConfig
from .database import DUMP_EXTENSION, DatabaseDumper
from .descriptor import (
    ArchiveArtifact, BackupOutcome, BackupTaskDescriptor, LogLine,
    LEVEL_ERROR, LEVEL_INFO, STATUS_DECLINED, STATUS_FAILED, STATUS_SUCCEEDED,
    TASK_TYPE_DATABASE, TASK_TYPE_FILE,
)
from .destinations import DestinationDriver, create_driver
from .exceptions import (
    BackupError, CleanupError, PathNotFoundError, RotationError,
    SizeLimitExceededError, UploadError, ValidationError,
)
from .naming import BACKUP_PREFIX, generate_backup_filename
from .prober import RemoteFilesystemProber
from .rotation import RotationEngine

logger = logging.getLogger(__name__)

DEFAULT_SIZE_LIMIT = 50 * 1024 * 1024 * 1024  # 50GB
DEFAULT_REMOTE_TEMP_DIR = '/tmp'


class BackupState(Enum):
    IDLE = 'idle'
    CONNECTING = 'connecting'
    VALIDATING = 'validating'
    SIZING = 'sizing'
    SIZE_CHECK = 'size_check'
    PROJECT_DETECTION = 'project_detection'
    ARCHIVING = 'archiving'
    UPLOADING = 'uploading'
    ROTATING = 'rotating'
    CLEANUP = 'cleanup'
    DONE = 'done'


def format_megabytes(size_bytes: int) -> str:
    return f"{size_bytes / 1024 / 1024:,.1f}"


class BackupRun:
    """
    Working state of a single orchestrated run.

    Discarded once the BackupOutcome has been built.
    """

    def __init__(self, descriptor: BackupTaskDescriptor,
                 sink: Optional[Callable[[str, str], None]] = None):
        self.descriptor = descriptor
        self.sink = sink
        self.state = BackupState.IDLE
        self.states: List[BackupState] = [BackupState.IDLE]
        self.logs: List[LogLine] = []
        self.size_bytes = 0
        self.artifact: Optional[ArchiveArtifact] = None
        self.uploaded: Optional[str] = None
        self.context: Dict[str, object] = {}
        self.started_at = datetime.now(timezone.utc)

    def enter(self, state: BackupState):
        self.state = state
        self.states.append(state)
        logger.debug(f"Task {self.descriptor.task_id} -> {state.value}")

    def log(self, message: str, level: str = LEVEL_INFO):
        self.logs.append(LogLine(datetime.now(timezone.utc), level, message))

        if level == LEVEL_ERROR:
            logger.error(f"[task {self.descriptor.task_id}] {message}")
        else:
            logger.info(f"[task {self.descriptor.task_id}] {message}")

        if self.sink:
            self.sink(message, level)

    def finish(self, status: str, error: Optional[str] = None) -> BackupOutcome:
        self.enter(BackupState.DONE)
        return BackupOutcome(
            task_id=self.descriptor.task_id,
            status=status,
            size_bytes=self.size_bytes,
            logs=list(self.logs),
            artifact=self.uploaded if status == STATUS_SUCCEEDED else None,
            error=error,
            started_at=self.started_at,
            finished_at=datetime.now(timezone.utc)
        )


class ArtifactStrategy(ABC):
    """Produces the backup artifact for one task type."""

    extension = None
    noun = 'Backup'
    measures_artifact = False

    @property
    def suffix(self) -> str:
        return f".{self.extension}"

    def validate(self, session: RemoteSession, run: BackupRun):
        """Raise ValidationError if the task cannot run against this server."""

    def measure_source(self, session: RemoteSession, run: BackupRun) -> Optional[int]:
        """Size of the source before producing, or None if only the artifact can be measured."""
        return None

    def exclusions(self, session: RemoteSession, run: BackupRun) -> Tuple[str, ...]:
        run.log('No exclusions apply to this backup.')
        return ()

    @abstractmethod
    def produce(self, session: RemoteSession, run: BackupRun, remote_path: str,
                exclusions: Tuple[str, ...]) -> int:
        """Create the artifact at remote_path and return its size in bytes."""

    def produced_message(self, remote_path: str) -> str:
        return f"Backup artifact created at {remote_path}."


class FileArchiveStrategy(ArtifactStrategy):
    """Zips a remote directory."""

    extension = 'zip'
    noun = 'File'

    def __init__(self, prober: RemoteFilesystemProber, archiver: RemoteArchiver):
        self.prober = prober
        self.archiver = archiver

    def validate(self, session: RemoteSession, run: BackupRun):
        source_path = run.descriptor.source_path
        if not source_path:
            raise ValidationError('No source path is configured for this task.')

        if not self.prober.path_exists(session, source_path):
            raise PathNotFoundError(f"The path specified does not exist: {source_path}")

        run.log(f"Source path '{source_path}' exists on the remote server.")

    def measure_source(self, session: RemoteSession, run: BackupRun) -> Optional[int]:
        source_path = run.descriptor.source_path
        size = self.prober.directory_size(session, source_path,
                                          warn=lambda message: run.log(message, LEVEL_ERROR))
        run.log(f"Source directory '{source_path}' size: {format_megabytes(size)} MB.")
        return size

    def exclusions(self, session: RemoteSession, run: BackupRun) -> Tuple[str, ...]:
        source_path = run.descriptor.source_path
        detected = self.prober.exclusions_for(session, source_path,
                                              warn=lambda message: run.log(message, LEVEL_ERROR))

        if detected:
            run.log('Laravel project detected. Optimizing backup process for Laravel-specific structure.')
        else:
            run.log('No known project layout detected. Archiving the full directory.')

        excluded = []
        for directory in tuple(detected) + tuple(run.descriptor.exclude_dirs):
            if directory and directory not in excluded:
                excluded.append(directory)

        if excluded:
            run.log(f"Excluding directories: {', '.join(excluded)}.")

        return tuple(excluded)

    def produce(self, session: RemoteSession, run: BackupRun, remote_path: str,
                exclusions: Tuple[str, ...]) -> int:
        return self.archiver.archive(session, run.descriptor.source_path, remote_path, exclusions)

    def produced_message(self, remote_path: str) -> str:
        return f"Directory compression complete. Archive location: {remote_path}."


class DatabaseDumpStrategy(ArtifactStrategy):
    """Dumps a remote database; size is known only after the dump."""

    extension = DUMP_EXTENSION
    noun = 'Database'
    measures_artifact = True

    def __init__(self, dumper: DatabaseDumper):
        self.dumper = dumper

    def validate(self, session: RemoteSession, run: BackupRun):
        if not run.descriptor.database_name:
            raise ValidationError('No database name is configured for this task.')

        engine = self.dumper.detect_engine(session)
        if engine is None:
            raise ValidationError('Unable to determine the database type on the remote server.')

        run.context['engine'] = engine
        run.log(f"Database type detected: {engine}.")

    def measure_source(self, session: RemoteSession, run: BackupRun) -> Optional[int]:
        run.log('Database size will be measured once the dump completes.')
        return None

    def exclusions(self, session: RemoteSession, run: BackupRun) -> Tuple[str, ...]:
        tables = tuple(t for t in run.descriptor.excluded_tables if t)
        if tables:
            run.log(f"Excluding tables from the dump: {', '.join(tables)}.")
        else:
            run.log('No tables excluded from the dump.')
        return tables

    def produce(self, session: RemoteSession, run: BackupRun, remote_path: str,
                exclusions: Tuple[str, ...]) -> int:
        server = run.descriptor.server
        return self.dumper.dump(
            session,
            run.context['engine'],
            run.descriptor.database_name,
            remote_path,
            username=server.database_username or server.username,
            password=server.database_password,
            excluded_tables=exclusions
        )

    def produced_message(self, remote_path: str) -> str:
        return f"Database dump complete. Dump location: {remote_path}."


class BackupOrchestrator:
    """
    Executes backup tasks as a linear, fail-fast state machine.

    Collaborators are injected so each step can be replaced or observed.
    """

    def __init__(self, connection_manager: RemoteConnectionManager,
                 strategies: Mapping[str, ArtifactStrategy],
                 driver_factory: Callable[..., DestinationDriver] = create_driver,
                 log_sink: Optional[Callable[[str, str], None]] = None,
                 activity_callback: Optional[Callable[[int], None]] = None,
                 server_registry=None,
                 size_limit: int = DEFAULT_SIZE_LIMIT,
                 remote_temp_dir: str = DEFAULT_REMOTE_TEMP_DIR,
                 clock: Callable[[], float] = time.time):
        """
        Initialize the orchestrator.

        Args:
            connection_manager: Opens the run's RemoteSession
            strategies: Artifact strategy per task type ('file', 'database')
            driver_factory: Builds the destination driver for a DestinationTarget
            log_sink: Receives (message, level) for every run log line
            activity_callback: Receives the task id at long-running step boundaries
            server_registry: Admission registry with acquire/release
            size_limit: Maximum source size in bytes
            remote_temp_dir: Remote directory for temporary artifacts
            clock: Source of unix timestamps for artifact names
        """
        self.connection_manager = connection_manager
        self.strategies = dict(strategies)
        self.driver_factory = driver_factory
        self.log_sink = log_sink
        self.activity_callback = activity_callback
        self.server_registry = server_registry
        self.size_limit = size_limit
        self.remote_temp_dir = remote_temp_dir
        self.clock = clock

    def execute(self, descriptor: BackupTaskDescriptor) -> BackupOutcome:
        """
        Run one backup task to a terminal state.

        Never raises for run failures; they are reported on the outcome.
        """
        run = BackupRun(descriptor, self.log_sink)

        strategy = self.strategies.get(descriptor.type)
        if strategy is None:
            message = f"Unsupported backup task type: {descriptor.type}"
            run.log(message, LEVEL_ERROR)
            return run.finish(STATUS_FAILED, error=message)

        server_key = descriptor.server.key
        if self.server_registry is not None and not self.server_registry.acquire(server_key, descriptor.task_id):
            run.log('Another backup task is already running on this remote server. This run has been skipped.')
            return run.finish(STATUS_DECLINED)

        try:
            self._execute_workflow(run, strategy)
            run.log('Backup task completed successfully.')
            return run.finish(STATUS_SUCCEEDED)

        except BackupError as e:
            run.log(f"Backup task failed: {e}", LEVEL_ERROR)
            return run.finish(STATUS_FAILED, error=str(e))

        except Exception as e:
            logger.exception(f"Unexpected error while running backup task {descriptor.task_id}")
            run.log(f"Backup task failed with an unexpected error: {e}", LEVEL_ERROR)
            return run.finish(STATUS_FAILED, error=str(e))

        finally:
            if self.server_registry is not None:
                self.server_registry.release(server_key, descriptor.task_id)

    def _execute_workflow(self, run: BackupRun, strategy: ArtifactStrategy):
        """Execute the backup steps against one remote session."""
        descriptor = run.descriptor

        run.enter(BackupState.CONNECTING)
        run.log('Attempting to connect to remote server.')
        session = self.connection_manager.connect(descriptor.server)

        try:
            run.log('Secure SSH connection established with the remote server.')
            self._touch(descriptor)

            run.enter(BackupState.VALIDATING)
            strategy.validate(session, run)

            run.enter(BackupState.SIZING)
            size = strategy.measure_source(session, run)
            if size is not None:
                run.size_bytes = size
                self._check_size(run, size)
                self._touch(descriptor)

            self._produce_and_ship(run, strategy, session)
        finally:
            session.close()

    def _produce_and_ship(self, run: BackupRun, strategy: ArtifactStrategy, session: RemoteSession):
        descriptor = run.descriptor

        run.enter(BackupState.PROJECT_DETECTION)
        exclusions = strategy.exclusions(session, run)

        filename = generate_backup_filename(descriptor.task_id, strategy.extension, self.clock())
        remote_path = posixpath.join(self.remote_temp_dir, filename)
        run.artifact = ArchiveArtifact(remote_path=remote_path, filename=filename)

        driver = None
        try:
            run.enter(BackupState.ARCHIVING)
            run.artifact.size_bytes = strategy.produce(session, run, remote_path, exclusions)
            run.log(strategy.produced_message(remote_path))

            if strategy.measures_artifact:
                run.size_bytes = run.artifact.size_bytes
                run.log(f"Backup size: {format_megabytes(run.size_bytes)} MB.")
                self._check_size(run, run.size_bytes)

            self._touch(descriptor)

            run.enter(BackupState.UPLOADING)
            driver = self._create_driver(descriptor, session)
            run.log(f"Uploading backup to {driver.describe()}.")
            run.uploaded = driver.upload(session, remote_path, filename, descriptor.store_path)
            run.log(f"{strategy.noun} backup has been uploaded to {driver.describe()}: {filename}")

            self._rotate(run, strategy, driver)

        finally:
            run.enter(BackupState.CLEANUP)
            self._cleanup(run, session)
            if driver is not None:
                driver.close()

    def _check_size(self, run: BackupRun, size: int):
        run.enter(BackupState.SIZE_CHECK)
        if size > self.size_limit:
            raise SizeLimitExceededError(
                f"Backup size exceeds the limit ({format_megabytes(size)} MB > "
                f"{format_megabytes(self.size_limit)} MB)."
            )
        run.log(f"Size check passed (limit {format_megabytes(self.size_limit)} MB).")

    def _create_driver(self, descriptor: BackupTaskDescriptor, session: RemoteSession) -> DestinationDriver:
        try:
            return self.driver_factory(descriptor.destination, source_session=session,
                                       connection_manager=self.connection_manager)
        except ValueError as e:
            raise UploadError(str(e))

    def _rotate(self, run: BackupRun, strategy: ArtifactStrategy, driver: DestinationDriver):
        policy = run.descriptor.rotation

        if not policy.enabled:
            run.log('Backup rotation is not enabled for this task.')
            return

        if driver.is_local_connection() or not driver.supports_rotation:
            run.log(f"Backup rotation is not supported for {driver.display_name} destinations. Skipping rotation.")
            return

        run.enter(BackupState.ROTATING)
        run.log(f"Initiating backup rotation. Retention limit: {policy.max_to_keep} backups.")

        try:
            result = driver.rotate(
                run.descriptor.task_id,
                policy.max_to_keep,
                strategy.suffix,
                BACKUP_PREFIX,
                run.descriptor.store_path,
                engine=RotationEngine(log=run.log)
            )
        except RotationError as e:
            run.log(f"Backup rotation failed: {e}", LEVEL_ERROR)
            return
        except Exception as e:
            logger.exception(f"Unexpected rotation error for task {run.descriptor.task_id}")
            run.log(f"Backup rotation failed: {e}", LEVEL_ERROR)
            return

        run.log(f"Backup rotation complete. Removed {len(result.deleted)} old backup(s).")

    def _cleanup(self, run: BackupRun, session: RemoteSession):
        remote_path = run.artifact.remote_path

        try:
            session.remove(remote_path)
        except FileNotFoundError:
            run.log(f"No temporary file found at {remote_path}; nothing to remove.")
            return
        except (OSError, paramiko.SSHException) as e:
            error = CleanupError(f"Failed to remove temporary file {remote_path}: {e}")
            run.log(str(error), LEVEL_ERROR)
            return

        if run.uploaded is not None:
            run.log('Temporary server file removed after successful backup operation.')
        else:
            run.log('Temporary server file removed after failed backup operation.')

    def _touch(self, descriptor: BackupTaskDescriptor):
        if self.activity_callback:
            self.activity_callback(descriptor.task_id)


def build_orchestrator(config: Mapping, log_sink: Optional[Callable[[str, str], None]] = None,
                       activity_callback: Optional[Callable[[int], None]] = None,
                       server_registry=None) -> BackupOrchestrator:
    """
    Build an orchestrator from application configuration.

    Args:
        config: Mapping with the SSH_*, REMOTE_* and BACKUP_SIZE_LIMIT keys

    Returns:
        BackupOrchestrator with file and database strategies registered
    """
    key_config = SSHKeyConfig(
        private_key_path=config.get('SSH_PRIVATE_KEY_PATH'),
        public_key_path=config.get('SSH_PUBLIC_KEY_PATH'),
        passphrase=config.get('SSH_PASSPHRASE')
    )
    command_timeout = config.get('REMOTE_COMMAND_TIMEOUT')

    connection_manager = RemoteConnectionManager(
        key_config,
        timeout=config.get('SSH_CONNECT_TIMEOUT', 30),
        command_timeout=command_timeout
    )

    strategies = {
        TASK_TYPE_FILE: FileArchiveStrategy(RemoteFilesystemProber(), RemoteArchiver(timeout=command_timeout)),
        TASK_TYPE_DATABASE: DatabaseDumpStrategy(DatabaseDumper(timeout=command_timeout)),
    }

    return BackupOrchestrator(
        connection_manager,
        strategies,
        log_sink=log_sink,
        activity_callback=activity_callback,
        server_registry=server_registry,
        size_limit=config.get('BACKUP_SIZE_LIMIT', DEFAULT_SIZE_LIMIT),
        remote_temp_dir=config.get('REMOTE_TEMP_DIR', DEFAULT_REMOTE_TEMP_DIR)
    )
