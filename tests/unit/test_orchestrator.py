"""
Unit tests for the backup orchestrator (vanguard/backup/orchestrator.py).

Runs complete backups against an in-memory SFTP tree and scripted SSH
client, with moto S3 or a mocked driver as the destination.
"""

from dataclasses import replace
from unittest.mock import MagicMock

import pytest

from vanguard.backup.archiver import RemoteArchiver
from vanguard.backup.database import DatabaseDumper
from vanguard.backup.descriptor import (
    DestinationTarget, RotationPolicy, ServerCredentials, LEVEL_ERROR,
)
from vanguard.backup.destinations import create_driver
from vanguard.backup.exceptions import RemoteConnectionError, RotationError, UploadError
from vanguard.backup.orchestrator import (
    BackupOrchestrator,
    DatabaseDumpStrategy,
    FileArchiveStrategy,
    build_orchestrator,
    format_megabytes
)
from vanguard.backup.prober import RemoteFilesystemProber
from vanguard.backup.registry import InMemoryServerRegistry


NOW = 1700000000
ARCHIVE_PATH = f'/tmp/backup_7_{NOW}.zip'
DUMP_PATH = f'/tmp/backup_7_{NOW}.sql'


def assert_in_order(messages, expected):
    """Assert each expected fragment appears in a later message than the previous one."""
    position = 0
    for fragment in expected:
        for index in range(position, len(messages)):
            if fragment in messages[index]:
                position = index + 1
                break
        else:
            raise AssertionError(f"{fragment!r} not found in order in:\n" + '\n'.join(messages))


def mock_driver(describe='Offsite - S3', reference='backups/uploaded.zip'):
    driver = MagicMock()
    driver.describe.return_value = describe
    driver.display_name = 'S3'
    driver.supports_rotation = True
    driver.is_local_connection.return_value = False
    driver.upload.return_value = reference
    return driver


@pytest.fixture
def connection_manager(remote_session):
    manager = MagicMock()
    manager.connect.return_value = remote_session
    return manager


@pytest.fixture
def laravel_source(fake_sftp, fake_ssh):
    """Laravel checkout at /var/www/app whose zip produces a 1 KiB archive."""
    fake_sftp.add_file('/var/www/app/artisan', b'#!/usr/bin/env php')
    fake_sftp.add_file('/var/www/app/public/index.php', size=2048)
    fake_sftp.add_file('/var/www/app/vendor/autoload.php', size=4096)
    fake_ssh.on('zip -r', effect=lambda command: fake_sftp.add_file(ARCHIVE_PATH, size=1024))
    return '/var/www/app'


def make_orchestrator(connection_manager, driver_factory=create_driver, **kwargs):
    strategies = {
        'file': FileArchiveStrategy(RemoteFilesystemProber(), RemoteArchiver()),
        'database': DatabaseDumpStrategy(DatabaseDumper()),
    }
    return BackupOrchestrator(connection_manager, strategies, driver_factory=driver_factory,
                              clock=lambda: NOW, **kwargs)


def test_format_megabytes():
    assert format_megabytes(1572864) == '1.5'
    assert format_megabytes(50 * 1024 * 1024 * 1024) == '51,200.0'


class TestFileBackup:
    """Test the file backup workflow."""

    def test_end_to_end_to_s3_with_rotation(self, mock_s3, connection_manager, fake_ssh, fake_sftp,
                                            laravel_source, file_descriptor):
        bucket = mock_s3.Bucket('test-bucket')
        for ts in (100, 200, 300):
            bucket.put_object(Key=f'backups/backup_7_{ts}.zip', Body=b'old')

        descriptor = replace(file_descriptor, exclude_dirs=('vendor', 'storage/logs'))
        activity = MagicMock()
        sink = MagicMock()

        orchestrator = make_orchestrator(connection_manager, log_sink=sink, activity_callback=activity)
        outcome = orchestrator.execute(descriptor)

        assert outcome.succeeded, outcome.output
        assert outcome.artifact == f'backups/backup_7_{NOW}.zip'
        assert outcome.size_bytes == 2048 + 4096 + len(b'#!/usr/bin/env php')
        assert outcome.error is None
        assert outcome.started_at <= outcome.finished_at

        assert_in_order(outcome.messages(), [
            'Attempting to connect to remote server.',
            'Secure SSH connection established with the remote server.',
            "Source path '/var/www/app' exists on the remote server.",
            "Source directory '/var/www/app' size:",
            'Size check passed',
            'Laravel project detected. Optimizing backup process for Laravel-specific structure.',
            'Excluding directories: node_modules, vendor, storage/logs.',
            f'Directory compression complete. Archive location: {ARCHIVE_PATH}.',
            'Uploading backup to Offsite - S3.',
            f'File backup has been uploaded to Offsite - S3: backup_7_{NOW}.zip',
            'Initiating backup rotation. Retention limit: 3 backups.',
            'Deleted old backup: backups/backup_7_100.zip',
            'Backup rotation complete. Removed 1 old backup(s).',
            'Temporary server file removed after successful backup operation.',
            'Backup task completed successfully.',
        ])

        remaining = sorted(obj.key for obj in bucket.objects.all())
        assert remaining == ['backups/backup_7_200.zip', 'backups/backup_7_300.zip', f'backups/backup_7_{NOW}.zip']

        # Archive built remotely with exclusions, then removed exactly once
        assert len(fake_ssh.commands) == 1
        assert "'node_modules/*'" in fake_ssh.commands[0]
        assert "'*/storage/logs/*'" in fake_ssh.commands[0]
        assert fake_sftp.removed == [ARCHIVE_PATH]
        assert ARCHIVE_PATH not in fake_sftp.files
        assert fake_ssh.closed

        assert sink.call_count == len(outcome.logs)
        activity.assert_called_with(7)
        assert activity.call_count >= 2

    def test_sixth_artifact_rotates_three_oldest(self, mock_s3, connection_manager, laravel_source,
                                                 file_descriptor):
        bucket = mock_s3.Bucket('test-bucket')
        for ts in (100, 200, 300, 400, 500):
            bucket.put_object(Key=f'backups/backup_7_{ts}.zip', Body=b'old')

        outcome = make_orchestrator(connection_manager).execute(file_descriptor)

        assert outcome.succeeded, outcome.output
        deletions = [m for m in outcome.messages() if m.startswith('Deleted old backup:')]
        assert sorted(deletions) == [
            'Deleted old backup: backups/backup_7_100.zip',
            'Deleted old backup: backups/backup_7_200.zip',
            'Deleted old backup: backups/backup_7_300.zip',
        ]
        remaining = sorted(obj.key for obj in bucket.objects.all())
        assert remaining == ['backups/backup_7_400.zip', 'backups/backup_7_500.zip', f'backups/backup_7_{NOW}.zip']

    def test_output_lines_are_timestamped(self, connection_manager, laravel_source, file_descriptor):
        driver = mock_driver()
        orchestrator = make_orchestrator(connection_manager, driver_factory=lambda target, **kw: driver)

        outcome = orchestrator.execute(file_descriptor)

        first_line = outcome.output.splitlines()[0]
        assert first_line.startswith('[')
        assert first_line.endswith('UTC] Attempting to connect to remote server.')

    def test_missing_path_fails_before_archive(self, connection_manager, fake_ssh, fake_sftp, file_descriptor):
        factory = MagicMock()
        orchestrator = make_orchestrator(connection_manager, driver_factory=factory)

        outcome = orchestrator.execute(file_descriptor)

        assert outcome.status == 'failed'
        assert outcome.error == 'The path specified does not exist: /var/www/app'
        assert 'Backup task failed: The path specified does not exist: /var/www/app' in outcome.messages(LEVEL_ERROR)
        assert fake_ssh.commands == []
        assert fake_sftp.removed == []
        factory.assert_not_called()
        assert fake_ssh.closed

    def test_size_limit_exceeded_fails_before_archive(self, connection_manager, fake_ssh, laravel_source,
                                                      file_descriptor):
        orchestrator = make_orchestrator(connection_manager, size_limit=1024)

        outcome = orchestrator.execute(file_descriptor)

        assert outcome.status == 'failed'
        assert 'Backup size exceeds the limit' in outcome.error
        assert fake_ssh.commands == []

    def test_local_destination_never_rotates(self, connection_manager, fake_ssh, laravel_source,
                                             file_descriptor):
        fake_ssh.on('mkdir -p')
        descriptor = replace(
            file_descriptor,
            destination=DestinationTarget(type='local', label='On-box', config={'path': '/srv/backups'}),
            rotation=RotationPolicy.keep(3)
        )

        outcome = make_orchestrator(connection_manager).execute(descriptor)

        assert outcome.succeeded, outcome.output
        assert outcome.artifact == f'/srv/backups/backups/backup_7_{NOW}.zip'
        assert 'Backup rotation is not supported for Local destinations. Skipping rotation.' in outcome.messages()
        assert not any('Initiating backup rotation' in m for m in outcome.messages())

    def test_rotation_disabled(self, connection_manager, laravel_source, file_descriptor):
        driver = mock_driver()
        descriptor = replace(file_descriptor, rotation=RotationPolicy.keep(None))

        outcome = make_orchestrator(connection_manager, driver_factory=lambda target, **kw: driver).execute(descriptor)

        assert outcome.succeeded
        assert 'Backup rotation is not enabled for this task.' in outcome.messages()
        driver.rotate.assert_not_called()

    def test_upload_failure_cleans_up_once(self, connection_manager, fake_sftp, laravel_source, file_descriptor):
        driver = mock_driver()
        driver.upload.side_effect = UploadError('S3 upload failed (AccessDenied): denied')

        outcome = make_orchestrator(connection_manager, driver_factory=lambda target, **kw: driver).execute(
            file_descriptor
        )

        assert outcome.status == 'failed'
        assert outcome.artifact is None
        assert outcome.error == 'S3 upload failed (AccessDenied): denied'
        assert fake_sftp.removed == [ARCHIVE_PATH]
        assert 'Temporary server file removed after failed backup operation.' in outcome.messages()
        driver.rotate.assert_not_called()
        driver.close.assert_called_once()

    def test_archive_failure_skips_upload(self, connection_manager, fake_ssh, fake_sftp, file_descriptor):
        fake_sftp.add_file('/var/www/app/index.html', size=10)
        fake_ssh.on('zip -r', exit_code=12, stderr='zip error: Nothing to do!')
        factory = MagicMock()

        outcome = make_orchestrator(connection_manager, driver_factory=factory).execute(file_descriptor)

        assert outcome.status == 'failed'
        assert 'zip exited with status 12' in outcome.error
        assert f'No temporary file found at {ARCHIVE_PATH}; nothing to remove.' in outcome.messages()
        factory.assert_not_called()

    def test_project_detection_error_is_not_fatal(self, connection_manager, fake_sftp, laravel_source,
                                                  file_descriptor):
        stat = fake_sftp.stat

        def failing_stat(path):
            if path.endswith('/artisan'):
                raise OSError('Failure')
            return stat(path)

        fake_sftp.stat = failing_stat
        driver = mock_driver()

        outcome = make_orchestrator(connection_manager, driver_factory=lambda target, **kw: driver).execute(
            file_descriptor
        )

        assert outcome.succeeded, outcome.output
        assert (
            'Project detection failed for /var/www/app: Failure. Continuing without layout-specific exclusions.'
            in outcome.messages(LEVEL_ERROR)
        )
        assert_in_order(outcome.messages(), [
            'No known project layout detected. Archiving the full directory.',
            f'Directory compression complete. Archive location: {ARCHIVE_PATH}.',
            'Backup task completed successfully.',
        ])
        driver.upload.assert_called_once()

    def test_rotation_error_is_not_fatal(self, connection_manager, laravel_source, file_descriptor):
        driver = mock_driver()
        driver.rotate.side_effect = RotationError('S3 list failed (AccessDenied): denied')

        outcome = make_orchestrator(connection_manager, driver_factory=lambda target, **kw: driver).execute(
            file_descriptor
        )

        assert outcome.succeeded
        assert 'Backup rotation failed: S3 list failed (AccessDenied): denied' in outcome.messages(LEVEL_ERROR)
        assert 'Temporary server file removed after successful backup operation.' in outcome.messages()

    def test_cleanup_error_is_not_fatal(self, connection_manager, fake_sftp, laravel_source, file_descriptor):
        fake_sftp.remove = MagicMock(side_effect=PermissionError(13, 'Permission denied'))
        driver = mock_driver()

        outcome = make_orchestrator(connection_manager, driver_factory=lambda target, **kw: driver).execute(
            file_descriptor
        )

        assert outcome.succeeded
        assert any(m.startswith(f'Failed to remove temporary file {ARCHIVE_PATH}')
                   for m in outcome.messages(LEVEL_ERROR))
        fake_sftp.remove.assert_called_once_with(ARCHIVE_PATH)

    def test_unexpected_error_fails_run(self, connection_manager, fake_sftp, laravel_source, file_descriptor):
        driver = mock_driver()
        driver.upload.side_effect = RuntimeError('boom')

        outcome = make_orchestrator(connection_manager, driver_factory=lambda target, **kw: driver).execute(
            file_descriptor
        )

        assert outcome.status == 'failed'
        assert 'Backup task failed with an unexpected error: boom' in outcome.messages(LEVEL_ERROR)
        assert fake_sftp.removed == [ARCHIVE_PATH]

    def test_invalid_destination_type(self, connection_manager, laravel_source, file_descriptor):
        descriptor = replace(file_descriptor, destination=DestinationTarget(type='ftp'))

        outcome = make_orchestrator(connection_manager).execute(descriptor)

        assert outcome.status == 'failed'
        assert outcome.error == 'Invalid destination type: ftp'


class TestAdmissionAndConnection:
    """Test admission control and connection failures."""

    def test_connection_failure(self, connection_manager, file_descriptor):
        connection_manager.connect.side_effect = RemoteConnectionError(
            'Could not connect to web1.example.com:22: connection timed out'
        )
        registry = InMemoryServerRegistry()

        outcome = make_orchestrator(connection_manager, server_registry=registry).execute(file_descriptor)

        assert outcome.status == 'failed'
        assert outcome.error.startswith('Could not connect')
        assert registry.active_task(file_descriptor.server.key) is None

    def test_declined_when_server_busy(self, connection_manager, file_descriptor):
        registry = InMemoryServerRegistry()
        registry.acquire(file_descriptor.server.key, 99)

        outcome = make_orchestrator(connection_manager, server_registry=registry).execute(file_descriptor)

        assert outcome.declined
        assert outcome.messages() == [
            'Another backup task is already running on this remote server. This run has been skipped.'
        ]
        connection_manager.connect.assert_not_called()
        assert registry.active_task(file_descriptor.server.key) == 99

    def test_declined_when_same_task_already_running(self, connection_manager, file_descriptor):
        registry = InMemoryServerRegistry()
        assert registry.acquire(file_descriptor.server.key, file_descriptor.task_id) is True

        outcome = make_orchestrator(connection_manager, server_registry=registry).execute(file_descriptor)

        assert outcome.declined
        connection_manager.connect.assert_not_called()
        assert registry.active_task(file_descriptor.server.key) == file_descriptor.task_id

    def test_registry_released_after_success(self, connection_manager, laravel_source, file_descriptor):
        registry = InMemoryServerRegistry()
        driver = mock_driver()

        outcome = make_orchestrator(connection_manager, driver_factory=lambda target, **kw: driver,
                                    server_registry=registry).execute(file_descriptor)

        assert outcome.succeeded
        assert registry.active_task(file_descriptor.server.key) is None

    def test_unsupported_task_type(self, connection_manager, file_descriptor):
        outcome = make_orchestrator(connection_manager).execute(replace(file_descriptor, type='snapshot'))

        assert outcome.status == 'failed'
        assert outcome.error == 'Unsupported backup task type: snapshot'
        connection_manager.connect.assert_not_called()


class TestDatabaseBackup:
    """Test the database dump workflow."""

    @pytest.fixture
    def database_descriptor(self, file_descriptor):
        return replace(
            file_descriptor,
            type='database',
            source_path=None,
            database_name='shop',
            excluded_tables=('sessions',),
            server=ServerCredentials(host='db1.example.com', username='deploy', password='ssh-pw',
                                     database_username='backup', database_password='db-pw')
        )

    @pytest.fixture
    def mysql_host(self, fake_ssh, fake_sftp):
        fake_ssh.on('mysql --version', stdout='mysql  Ver 8.0.35 for Linux on x86_64')
        fake_ssh.on('mysqldump', effect=lambda command: fake_sftp.add_file(DUMP_PATH, size=4096))

    def test_dump_and_upload(self, connection_manager, fake_ssh, fake_sftp, mysql_host, database_descriptor):
        driver = mock_driver(reference=f'backups/backup_7_{NOW}.sql')

        outcome = make_orchestrator(connection_manager, driver_factory=lambda target, **kw: driver).execute(
            database_descriptor
        )

        assert outcome.succeeded, outcome.output
        assert outcome.size_bytes == 4096
        assert outcome.artifact == f'backups/backup_7_{NOW}.sql'
        assert_in_order(outcome.messages(), [
            'Database type detected: mysql.',
            'Database size will be measured once the dump completes.',
            'Excluding tables from the dump: sessions.',
            f'Database dump complete. Dump location: {DUMP_PATH}.',
            'Backup size: 0.0 MB.',
            f'Database backup has been uploaded to Offsite - S3: backup_7_{NOW}.sql',
        ])

        dump_command = fake_ssh.commands[-1]
        assert dump_command.startswith(f'mysqldump --defaults-extra-file={DUMP_PATH}.cnf')
        assert 'db-pw' not in dump_command
        assert '--user=backup' in dump_command
        assert '--ignore-table=shop.sessions' in dump_command
        assert fake_sftp.removed == [f'{DUMP_PATH}.cnf', DUMP_PATH]

        driver.rotate.assert_called_once()
        assert driver.rotate.call_args.args[:3] == (7, 3, '.sql')

    def test_dump_over_limit_fails_before_upload(self, connection_manager, fake_sftp, mysql_host,
                                                 database_descriptor):
        factory = MagicMock()

        outcome = make_orchestrator(connection_manager, driver_factory=factory, size_limit=1000).execute(
            database_descriptor
        )

        assert outcome.status == 'failed'
        assert 'Backup size exceeds the limit' in outcome.error
        assert fake_sftp.removed == [f'{DUMP_PATH}.cnf', DUMP_PATH]
        factory.assert_not_called()

    def test_no_database_client(self, connection_manager, database_descriptor):
        outcome = make_orchestrator(connection_manager).execute(database_descriptor)

        assert outcome.status == 'failed'
        assert outcome.error == 'Unable to determine the database type on the remote server.'

    def test_missing_database_name(self, connection_manager, database_descriptor):
        outcome = make_orchestrator(connection_manager).execute(replace(database_descriptor, database_name=None))

        assert outcome.status == 'failed'
        assert outcome.error == 'No database name is configured for this task.'


def test_build_orchestrator_from_config(tmp_path):
    config = {
        'SSH_PRIVATE_KEY_PATH': str(tmp_path / 'key'),
        'SSH_PUBLIC_KEY_PATH': str(tmp_path / 'key.pub'),
        'SSH_PASSPHRASE': None,
        'SSH_CONNECT_TIMEOUT': 10,
        'REMOTE_COMMAND_TIMEOUT': 900,
        'REMOTE_TEMP_DIR': '/var/tmp',
        'BACKUP_SIZE_LIMIT': 1024,
    }

    orchestrator = build_orchestrator(config)

    assert orchestrator.size_limit == 1024
    assert orchestrator.remote_temp_dir == '/var/tmp'
    assert orchestrator.connection_manager.timeout == 10
    assert orchestrator.connection_manager.command_timeout == 900
    assert set(orchestrator.strategies) == {'file', 'database'}
    assert orchestrator.strategies['file'].archiver.timeout == 900
