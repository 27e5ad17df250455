"""
Backup task executor - runs a stored backup task and records the result.

Workflow:
1. Create BackupTaskLog record (status: running)
2. Build the task descriptor, decrypting stored credentials
3. Run the orchestrator, streaming its log lines into the record
4. Store the outcome (status, size, artifact, timings)
5. Hand the result to the notifier, if one is configured
"""

from datetime import datetime, timezone
from typing import Callable, Optional, Tuple

from flask import current_app

from vanguard import db
from vanguard.models import BackupTask, BackupTaskLog
from vanguard.utils.crypto import crypto_manager, SecretDecryptionError
from .descriptor import (
    BackupOutcome, BackupTaskDescriptor, DestinationTarget, LogLine, RotationPolicy, ServerCredentials,
    LEVEL_ERROR, STATUS_FAILED,
)
from .orchestrator import build_orchestrator

LOG_FLUSH_INTERVAL = 5

SECRET_CONFIG_KEYS = {
    's3': 'secret_key',
    'custom_s3': 'secret_key',
    'sftp': 'password',
}


def _split_list(value: Optional[str]) -> Tuple[str, ...]:
    if not value:
        return ()
    return tuple(item.strip() for item in value.split(',') if item.strip())


def build_descriptor(task: BackupTask) -> BackupTaskDescriptor:
    """
    Build the immutable run descriptor for a stored task.

    Raises:
        SecretDecryptionError: If a stored credential cannot be decrypted
    """
    server = task.remote_server
    destination = task.backup_destination

    credentials = ServerCredentials(
        host=server.ip_address,
        port=server.port or 22,
        username=server.username,
        password=crypto_manager.decrypt_optional(server.password_encrypted),
        server_id=server.id,
        database_username=server.database_username,
        database_password=crypto_manager.decrypt_optional(server.database_password_encrypted)
    )

    destination_config = destination.get_config()
    secret = crypto_manager.decrypt_optional(destination.secret_encrypted)
    if secret and destination.type in SECRET_CONFIG_KEYS:
        destination_config[SECRET_CONFIG_KEYS[destination.type]] = secret

    target = DestinationTarget(type=destination.type, label=destination.label, config=destination_config)

    return BackupTaskDescriptor(
        task_id=task.id,
        type=task.type,
        server=credentials,
        destination=target,
        source_path=task.source_path,
        store_path=task.store_path,
        rotation=RotationPolicy.keep(task.maximum_backups_to_keep),
        exclude_dirs=_split_list(task.excluded_directories),
        database_name=task.database_name,
        excluded_tables=_split_list(task.excluded_database_tables),
        label=task.label
    )


class TaskStatusRegistry:
    """
    Admission registry backed by BackupTask.status.

    A task may start only when no task on the same remote server, itself
    included, is marked running. The claim is a conditional UPDATE so two
    concurrent callers cannot both win it.
    """

    def acquire(self, server_key: str, task_id: int) -> bool:
        task = db.session.get(BackupTask, task_id)
        if task is None:
            return False

        busy = BackupTask.query.filter(
            BackupTask.remote_server_id == task.remote_server_id,
            BackupTask.status == BackupTask.STATUS_RUNNING
        ).first()
        if busy is not None:
            return False

        claimed = BackupTask.query.filter(
            BackupTask.id == task_id,
            BackupTask.status != BackupTask.STATUS_RUNNING
        ).update({BackupTask.status: BackupTask.STATUS_RUNNING}, synchronize_session=False)
        db.session.commit()
        return claimed == 1

    def release(self, server_key: str, task_id: int):
        task = db.session.get(BackupTask, task_id)
        if task is not None:
            task.status = BackupTask.STATUS_READY
            db.session.commit()


class BackupTaskExecutor:
    """
    Runs one stored backup task and persists its BackupTaskLog.
    """

    def __init__(self, task: BackupTask,
                 notifier: Optional[Callable[[BackupTask, BackupTaskLog, str], None]] = None,
                 orchestrator_factory=build_orchestrator):
        """
        Args:
            task: BackupTask to execute
            notifier: Called with (task, log_record, stream) after the run; stream is 'success' or 'failure'
            orchestrator_factory: Builds the orchestrator from app config
        """
        self.task = task
        self.notifier = notifier
        self.orchestrator_factory = orchestrator_factory
        self.log_record = None
        self.logs = []
        self._log_flush_counter = 0

    def execute(self) -> BackupTaskLog:
        self.log_record = BackupTaskLog(
            backup_task_id=self.task.id,
            status='running',
            output='',
            created_at=datetime.utcnow()
        )
        db.session.add(self.log_record)
        db.session.commit()

        try:
            descriptor = build_descriptor(self.task)
            orchestrator = self.orchestrator_factory(
                current_app.config,
                log_sink=self._log,
                activity_callback=self._touch,
                server_registry=TaskStatusRegistry()
            )
            outcome = orchestrator.execute(descriptor)

        except SecretDecryptionError as e:
            current_app.logger.error(f"Backup task {self.task.id}: failed to load task credentials: {e}")
            return self._fail(f"Failed to load task credentials: {e}", e)

        except Exception as e:
            current_app.logger.exception(f"Backup task {self.task.id} could not be run")
            return self._fail(f"Backup task could not be run: {e}", e)

        self._record(outcome)
        self._notify(outcome)
        return self.log_record

    def _fail(self, message: str, error: Exception) -> BackupTaskLog:
        """Finalize the record as failed when the run never produced an outcome."""
        self._log(message, LEVEL_ERROR)
        outcome = BackupOutcome(
            task_id=self.task.id,
            status=STATUS_FAILED,
            logs=[LogLine(datetime.now(timezone.utc), LEVEL_ERROR, message)],
            error=str(error)
        )
        self._record(outcome, output='\n'.join(self.logs))
        self._notify(outcome)
        return self.log_record

    def _record(self, outcome: BackupOutcome, output: Optional[str] = None):
        finished_at = datetime.utcnow()

        record = self.log_record
        record.status = outcome.status
        record.output = outcome.output if output is None else output
        record.size_bytes = outcome.size_bytes
        record.artifact = outcome.artifact
        record.error_message = outcome.error
        record.finished_at = finished_at
        if outcome.succeeded:
            record.successful_at = finished_at

        if not outcome.declined:
            self.task.last_run_at = finished_at

        db.session.commit()

    def _notify(self, outcome: BackupOutcome):
        if self.notifier is None or outcome.declined:
            return

        stream = 'success' if outcome.succeeded else 'failure'
        try:
            self.notifier(self.task, self.log_record, stream)
        except Exception:
            current_app.logger.exception(f"Notification dispatch failed for backup task {self.task.id}")

    def _touch(self, task_id: int):
        """Record activity at a step boundary and flush pending log lines."""
        self.task.last_script_update_at = datetime.utcnow()
        if self.log_record:
            self.log_record.output = '\n'.join(self.logs)
            self._log_flush_counter = 0
        db.session.commit()

    def _log(self, message: str, level: str = 'info'):
        """
        Append a run log line and periodically flush it to the log record.

        Args:
            message: Log message
            level: 'info' or 'error'
        """
        timestamp = datetime.utcnow().strftime('%Y-%m-%d %H:%M:%S UTC')
        self.logs.append(f"[{timestamp}] {message}")

        # Flush logs every few entries for real-time visibility
        self._log_flush_counter += 1
        if self._log_flush_counter >= LOG_FLUSH_INTERVAL:
            self._flush_logs_to_db()

    def _flush_logs_to_db(self):
        if self.log_record:
            self.log_record.output = '\n'.join(self.logs)
            db.session.commit()
            self._log_flush_counter = 0


def execute_backup_task(task_id: int, allow_paused: bool = False,
                        notifier: Optional[Callable[[BackupTask, BackupTaskLog, str], None]] = None) -> BackupTaskLog:
    """
    Execute a backup task by ID.

    Args:
        task_id: ID of BackupTask to execute
        allow_paused: If True, allow execution of paused tasks (for manual triggers)
        notifier: Optional notification dispatcher

    Returns:
        BackupTaskLog record with execution results

    Raises:
        ValueError: If task not found, or if paused and not allowed
    """
    task = db.session.get(BackupTask, task_id)

    if not task:
        raise ValueError(f"Backup task not found: {task_id}")

    if task.is_paused and not allow_paused:
        raise ValueError(f"Backup task is paused: {task.label}")

    executor = BackupTaskExecutor(task, notifier=notifier)
    return executor.execute()
