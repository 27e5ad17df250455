"""
Shared pytest fixtures for Vanguard tests.

This module provides fixtures for:
- Flask app and database setup with in-memory SQLite
- Crypto manager and stored server/destination/task fixtures
- An in-memory SFTP tree and scripted SSH client for remote operations
- Mock fixtures for external services (S3)
"""

import errno
import io
import json
import posixpath
import stat
from unittest.mock import MagicMock

import pytest
import boto3
import paramiko
from moto import mock_aws

from vanguard import create_app, db as _db
from vanguard.models import RemoteServer, BackupDestination, BackupTask
from vanguard.utils.crypto import CryptoManager
from vanguard.backup.connection import RemoteSession
from vanguard.backup.descriptor import (
    BackupTaskDescriptor, DestinationTarget, RotationPolicy, ServerCredentials,
)


class FakeSFTPFile(io.BytesIO):
    """File handle returned by FakeSFTP.open; writable handles store their data on close."""

    def __init__(self, sftp, path, data=b'', writable=False):
        super().__init__(data)
        self.sftp = sftp
        self.path = path
        self.writable_handle = writable

    def chmod(self, mode):
        self.sftp.chmod(self.path, mode)

    def write(self, data):
        if isinstance(data, str):
            data = data.encode()
        return super().write(data)

    def close(self):
        if self.writable_handle and not self.closed:
            data = self.getvalue()
            self.sftp.files[self.path] = data
            self.sftp.written[self.path] = data
        super().close()


class FakeSFTP:
    """
    In-memory stand-in for paramiko.SFTPClient.

    Holds files, directories and symlinks keyed by absolute path. Paths in
    `denied` raise PermissionError on stat and listing.
    """

    def __init__(self):
        self.files = {}
        self.dirs = {'/'}
        self.links = {}
        self.denied = set()
        self.removed = []
        self.modes = {}
        self.written = {}
        self.closed = False

    # Tree building helpers

    def add_dir(self, path):
        path = posixpath.normpath(path)
        while path not in self.dirs:
            self.dirs.add(path)
            path = posixpath.dirname(path)
        return path

    def add_file(self, path, data=b'', size=None):
        if size is not None:
            data = b'x' * size
        self.add_dir(posixpath.dirname(path))
        self.files[posixpath.normpath(path)] = data

    def add_link(self, path, target):
        self.add_dir(posixpath.dirname(path))
        self.links[posixpath.normpath(path)] = target

    # Path resolution

    def _resolve(self, path):
        parts = posixpath.normpath(path).strip('/').split('/')
        current = '/'
        for part in parts:
            if not part:
                continue
            current = posixpath.join(current, part)
            hops = 0
            while current in self.links:
                current = posixpath.normpath(posixpath.join(posixpath.dirname(current), self.links[current]))
                hops += 1
                if hops > 20:
                    raise OSError(errno.ELOOP, 'Too many levels of symbolic links', path)
        return current

    def _attrs(self, path, filename=None, lstat=False):
        attrs = paramiko.SFTPAttributes()
        if filename is not None:
            attrs.filename = filename
        if lstat and path in self.links:
            attrs.st_mode = stat.S_IFLNK | 0o777
            attrs.st_size = len(self.links[path])
            return attrs

        resolved = self._resolve(path)
        if resolved in self.dirs:
            attrs.st_mode = stat.S_IFDIR | 0o755
            attrs.st_size = 4096
        else:
            attrs.st_mode = stat.S_IFREG | 0o644
            attrs.st_size = len(self.files.get(resolved, b''))
        return attrs

    def _check(self, resolved, path):
        if resolved in self.denied:
            raise PermissionError(errno.EACCES, 'Permission denied', path)
        if resolved not in self.dirs and resolved not in self.files:
            raise FileNotFoundError(errno.ENOENT, 'No such file', path)

    # paramiko.SFTPClient surface

    def stat(self, path):
        resolved = self._resolve(path)
        self._check(resolved, path)
        return self._attrs(path)

    def normalize(self, path):
        resolved = self._resolve(path)
        if resolved not in self.dirs and resolved not in self.files:
            raise FileNotFoundError(errno.ENOENT, 'No such file', path)
        return resolved

    def listdir_attr(self, path='.'):
        resolved = self._resolve(path)
        self._check(resolved, path)
        if resolved not in self.dirs:
            raise OSError(errno.ENOTDIR, 'Not a directory', path)

        entries = []
        for child in sorted(set(self.dirs) | set(self.files) | set(self.links)):
            if child != '/' and posixpath.dirname(child) == resolved:
                entries.append(self._attrs(child, posixpath.basename(child), lstat=True))
        return entries

    def listdir(self, path='.'):
        return [entry.filename for entry in self.listdir_attr(path)]

    def open(self, filename, mode='r', bufsize=-1):
        if 'w' in mode:
            path = posixpath.normpath(filename)
            self.add_dir(posixpath.dirname(path))
            self.files[path] = b''
            return FakeSFTPFile(self, path, writable=True)

        resolved = self._resolve(filename)
        self._check(resolved, filename)
        return FakeSFTPFile(self, resolved, self.files[resolved])

    def chmod(self, path, mode):
        self.modes[posixpath.normpath(path)] = mode

    def remove(self, path):
        resolved = self._resolve(path)
        if resolved not in self.files:
            raise FileNotFoundError(errno.ENOENT, 'No such file', path)
        del self.files[resolved]
        self.removed.append(path)

    def mkdir(self, path, mode=511):
        self.dirs.add(posixpath.normpath(path))

    def putfo(self, fl, remotepath, file_size=0, callback=None, confirm=True):
        self.files[posixpath.normpath(remotepath)] = fl.read()
        return self.stat(remotepath)

    def close(self):
        self.closed = True


def make_channel_files(exit_code=0, stdout='', stderr=''):
    """Build the (stdin, stdout, stderr) triple returned by exec_command."""
    stdin = MagicMock()
    out = MagicMock()
    out.read.return_value = stdout.encode()
    out.channel.recv_exit_status.return_value = exit_code
    err = MagicMock()
    err.read.return_value = stderr.encode()
    return stdin, out, err


class FakeSSHClient:
    """
    Scripted stand-in for paramiko.SSHClient.

    Commands are matched against registered fragments in order; an
    unmatched command exits 127.
    """

    def __init__(self, sftp):
        self.sftp = sftp
        self.commands = []
        self.handlers = []
        self.closed = False

    def on(self, fragment, exit_code=0, stdout='', stderr='', effect=None):
        self.handlers.append((fragment, exit_code, stdout, stderr, effect))

    def exec_command(self, command, timeout=None):
        self.commands.append(command)
        for fragment, exit_code, stdout, stderr, effect in self.handlers:
            if fragment in command:
                if effect:
                    effect(command)
                return make_channel_files(exit_code, stdout, stderr)
        return make_channel_files(127, '', f'{command.split()[0]}: command not found')

    def open_sftp(self):
        return self.sftp

    def close(self):
        self.closed = True


@pytest.fixture(scope='function')
def app():
    """
    Create Flask app with test configuration.

    Uses in-memory SQLite database for fast, isolated tests.
    """
    app = create_app('testing')
    yield app


@pytest.fixture(scope='function')
def db(app):
    """
    Create database with all tables.

    Each test gets a fresh database.
    """
    with app.app_context():
        _db.create_all()
        yield _db
        _db.session.remove()
        _db.drop_all()


@pytest.fixture(scope='function')
def crypto_manager_initialized():
    """
    Create and initialize a CryptoManager instance.

    Password: test_password_123
    """
    cm = CryptoManager()
    salt = cm.initialize('test_password_123')
    return cm, salt


@pytest.fixture(scope='function')
def remote_server(db, crypto_manager_initialized):
    """Remote server with an encrypted SSH and database password."""
    cm, _ = crypto_manager_initialized

    server = RemoteServer(
        label='web1',
        ip_address='203.0.113.10',
        port=2222,
        username='deploy',
        password_encrypted=cm.encrypt('ssh-secret'),
        database_username='backup',
        database_password_encrypted=cm.encrypt('db-secret')
    )
    db.session.add(server)
    db.session.commit()
    return server


@pytest.fixture(scope='function')
def s3_destination(db, crypto_manager_initialized):
    """S3 destination with an encrypted secret key."""
    cm, _ = crypto_manager_initialized

    destination = BackupDestination(
        label='Offsite',
        type='s3',
        config=json.dumps({
            'access_key': 'test_access_key',
            'bucket': 'test-bucket',
            'region': 'us-east-1'
        }),
        secret_encrypted=cm.encrypt('test_secret_key')
    )
    db.session.add(destination)
    db.session.commit()
    return destination


@pytest.fixture(scope='function')
def file_backup_task(db, remote_server, s3_destination):
    """File backup task keeping the newest 3 backups."""
    task = BackupTask(
        label='Website files',
        type='file',
        remote_server_id=remote_server.id,
        backup_destination_id=s3_destination.id,
        source_path='/var/www/app',
        store_path='backups/web1',
        excluded_directories='storage/logs, .git',
        maximum_backups_to_keep=3
    )
    db.session.add(task)
    db.session.commit()
    return task


@pytest.fixture
def mock_s3():
    """
    Mock AWS S3 service using moto.

    Creates a test bucket 'test-bucket' in us-east-1 region.
    """
    with mock_aws():
        # Create mock S3 resource
        s3 = boto3.resource('s3', region_name='us-east-1')

        # Create test bucket
        s3.create_bucket(Bucket='test-bucket')

        yield s3


@pytest.fixture
def channel_files():
    """Factory for scripted exec_command results."""
    return make_channel_files


@pytest.fixture
def fake_sftp():
    """Empty in-memory SFTP tree."""
    return FakeSFTP()


@pytest.fixture
def destination_sftp():
    """Separate in-memory SFTP tree for an SFTP destination host."""
    return FakeSFTP()


@pytest.fixture
def fake_ssh(fake_sftp):
    """Scripted SSH client sharing the fake SFTP tree."""
    return FakeSSHClient(fake_sftp)


@pytest.fixture
def remote_session(fake_ssh, fake_sftp):
    """RemoteSession over the fake SSH client and SFTP tree."""
    return RemoteSession(fake_ssh, fake_sftp, 'web1.example.com', command_timeout=60)


@pytest.fixture
def server_credentials():
    return ServerCredentials(host='web1.example.com', port=22, username='deploy', password='secret', server_id=1)


@pytest.fixture
def file_descriptor(server_credentials):
    """File backup descriptor for /var/www/app to an S3 destination, keeping 3."""
    return BackupTaskDescriptor(
        task_id=7,
        type='file',
        server=server_credentials,
        destination=DestinationTarget(
            type='s3',
            label='Offsite',
            config={
                'access_key': 'test_access_key',
                'secret_key': 'test_secret_key',
                'bucket': 'test-bucket',
                'region': 'us-east-1'
            }
        ),
        source_path='/var/www/app',
        store_path='backups',
        rotation=RotationPolicy.keep(3),
        label='Website files'
    )
