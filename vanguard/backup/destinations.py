"""
Destination drivers for uploaded backups.

Supports:
- LocalDriver: Store on the source server's own filesystem
- ObjectStorageDriver: Upload to AWS S3 or an S3-compatible service
- RemoteSftpDriver: Upload to a second server over SFTP

Every driver exposes the same capability set (upload, rotate, delete,
is_local_connection) and is selected by the destination's type string.
Uploads read from the artifact on the source server and never hold the
whole file in memory.
"""

import logging
import posixpath
import shlex
from abc import ABC, abstractmethod
from typing import Dict, List, Optional, Type

import boto3
from botocore.config import Config as BotoConfig
from botocore.exceptions import ClientError, BotoCoreError
import paramiko

from .connection import RemoteConnectionManager, RemoteSession, SSHKeyConfig
from .descriptor import DestinationTarget, ServerCredentials
from .exceptions import RemoteCommandError, RemoteConnectionError, RotationError, UploadError
from .naming import BACKUP_PREFIX
from .rotation import RotationEngine, RotationResult

logger = logging.getLogger(__name__)

MULTIPART_THRESHOLD = 100 * 1024 * 1024  # 100MB
MULTIPART_CHUNK_SIZE = 10 * 1024 * 1024  # 10MB


def join_store_path(*parts: Optional[str]) -> str:
    """Join path fragments, ignoring empty ones."""
    cleaned = [p.strip('/') for p in parts if p and p.strip('/')]
    return '/'.join(cleaned)


class DestinationDriver(ABC):
    """Base class for destination drivers."""

    type_name = None
    display_name = None
    is_local = False
    supports_rotation = True

    def __init__(self, target: DestinationTarget, source_session: Optional[RemoteSession] = None,
                 connection_manager: Optional[RemoteConnectionManager] = None):
        self.target = target
        self.config = dict(target.config or {})
        self.source_session = source_session
        self.connection_manager = connection_manager

    @property
    def label(self) -> str:
        return self.target.label or self.type_name

    def describe(self) -> str:
        return f"{self.label} - {self.display_name}"

    def is_local_connection(self) -> bool:
        return self.is_local

    @abstractmethod
    def upload(self, session: RemoteSession, remote_path: str, filename: str,
               store_path: Optional[str] = None) -> str:
        """
        Copy an artifact from the source server to this destination.

        Returns:
            Reference (key or path) of the stored backup

        Raises:
            UploadError: If the upload fails
        """

    @abstractmethod
    def list_artifacts(self, store_path: Optional[str] = None, name_prefix: str = '') -> List[str]:
        """List stored backup references under store_path whose filename starts with name_prefix."""

    @abstractmethod
    def delete(self, reference: str):
        """Delete a stored backup by reference."""

    def rotate(self, task_id: int, max_to_keep: int, suffix: str, prefix: str = BACKUP_PREFIX,
               store_path: Optional[str] = None, engine: Optional[RotationEngine] = None) -> RotationResult:
        """
        Delete a task's oldest backups beyond max_to_keep.

        Raises:
            RotationError: If the destination cannot rotate or cannot be listed
        """
        if not self.supports_rotation:
            raise RotationError(f"{self.display_name} destinations do not support backup rotation")

        engine = engine or RotationEngine()
        scoped = _PrefixScopedDriver(self, f"{prefix}{task_id}_")
        return engine.rotate(scoped, task_id, max_to_keep, suffix, prefix, store_path)

    def close(self):
        """Release any connections held by the driver."""
        pass


class _PrefixScopedDriver:
    """Narrows list_artifacts to one task's filename prefix."""

    def __init__(self, driver: DestinationDriver, name_prefix: str):
        self._driver = driver
        self._name_prefix = name_prefix

    def list_artifacts(self, store_path=None):
        return self._driver.list_artifacts(store_path, self._name_prefix)

    def delete(self, reference):
        return self._driver.delete(reference)


class LocalDriver(DestinationDriver):
    """
    Stores backups on the source server itself.

    Backups land in {path}/{store_path}/{filename} on the same host the
    artifact was built on. Rotation is not supported for this destination.
    """

    type_name = 'local'
    display_name = 'Local'
    is_local = True
    supports_rotation = False

    def _directory(self, store_path: Optional[str]) -> str:
        directory = join_store_path(self.config.get('path'), store_path)
        if not directory:
            raise UploadError("Local destination requires a path or store path")
        return '/' + directory

    def upload(self, session: RemoteSession, remote_path: str, filename: str,
               store_path: Optional[str] = None) -> str:
        self.source_session = session
        directory = self._directory(store_path)
        dest_path = posixpath.join(directory, filename)

        command = f"mkdir -p {shlex.quote(directory)} && cp {shlex.quote(remote_path)} {shlex.quote(dest_path)}"
        try:
            result = session.run(command)
        except RemoteCommandError as e:
            raise UploadError(f"Failed to copy backup to {dest_path}: {e}")

        if not result.ok:
            raise UploadError(f"Failed to copy backup to {dest_path}: {result.stderr or result.exit_code}")

        return dest_path

    def _session(self) -> RemoteSession:
        if self.source_session is None:
            raise UploadError("Local destination has no open session to the source server")
        return self.source_session

    def list_artifacts(self, store_path: Optional[str] = None, name_prefix: str = '') -> List[str]:
        directory = self._directory(store_path)
        try:
            names = self._session().sftp.listdir(directory)
        except FileNotFoundError:
            return []
        return [posixpath.join(directory, n) for n in names if n.startswith(name_prefix)]

    def delete(self, reference: str):
        self._session().remove(reference)


class ObjectStorageDriver(DestinationDriver):
    """
    Uploads backups to S3 or an S3-compatible object store.

    Config keys: access_key, secret_key, bucket, region, endpoint,
    use_path_style_endpoint. Keys are {store_path}/{filename}.
    """

    type_name = 's3'
    display_name = 'S3'

    def __init__(self, target: DestinationTarget, source_session: Optional[RemoteSession] = None,
                 connection_manager: Optional[RemoteConnectionManager] = None):
        super().__init__(target, source_session, connection_manager)

        self.bucket_name = self.config.get('bucket')
        if not self.bucket_name:
            raise UploadError(f"Destination '{self.label}' has no bucket configured")

        self.region = self.config.get('region') or 'us-east-1'
        endpoint = self.config.get('endpoint')

        client_kwargs = {
            'aws_access_key_id': self.config.get('access_key'),
            'aws_secret_access_key': self.config.get('secret_key'),
            'region_name': self.region,
        }
        if endpoint:
            client_kwargs['endpoint_url'] = endpoint
        if self.config.get('use_path_style_endpoint'):
            client_kwargs['config'] = BotoConfig(s3={'addressing_style': 'path'})

        try:
            self.s3_client = boto3.client('s3', **client_kwargs)
        except Exception as e:
            raise UploadError(f"Failed to initialize S3 client: {e}")

    def describe(self) -> str:
        display = 'Custom S3' if self.config.get('endpoint') else self.display_name
        return f"{self.label} - {display}"

    def upload(self, session: RemoteSession, remote_path: str, filename: str,
               store_path: Optional[str] = None) -> str:
        s3_key = join_store_path(store_path, filename)

        try:
            file_size = session.sftp.stat(remote_path).st_size or 0

            with session.sftp.open(remote_path, 'rb') as remote_file:
                if file_size >= MULTIPART_THRESHOLD:
                    self._multipart_upload(remote_file, s3_key)
                else:
                    self.s3_client.put_object(Bucket=self.bucket_name, Key=s3_key, Body=remote_file)

            return s3_key

        except ClientError as e:
            error_code = e.response.get('Error', {}).get('Code', 'Unknown')
            raise UploadError(f"S3 upload failed ({error_code}): {e}")
        except BotoCoreError as e:
            raise UploadError(f"S3 upload failed: {e}")
        except OSError as e:
            raise UploadError(f"Failed to read {remote_path} from source server: {e}")

    def _multipart_upload(self, remote_file, s3_key: str):
        """
        Upload in fixed-size chunks read from the remote file handle.

        Aborts the multipart upload if any part fails.
        """
        response = self.s3_client.create_multipart_upload(Bucket=self.bucket_name, Key=s3_key)
        upload_id = response['UploadId']
        parts = []

        try:
            part_number = 1
            while True:
                data = remote_file.read(MULTIPART_CHUNK_SIZE)
                if not data:
                    break

                response = self.s3_client.upload_part(
                    Bucket=self.bucket_name,
                    Key=s3_key,
                    PartNumber=part_number,
                    UploadId=upload_id,
                    Body=data
                )
                parts.append({'PartNumber': part_number, 'ETag': response['ETag']})
                part_number += 1

            self.s3_client.complete_multipart_upload(
                Bucket=self.bucket_name,
                Key=s3_key,
                UploadId=upload_id,
                MultipartUpload={'Parts': parts}
            )

        except Exception:
            try:
                self.s3_client.abort_multipart_upload(Bucket=self.bucket_name, Key=s3_key, UploadId=upload_id)
            except (ClientError, BotoCoreError) as abort_error:
                logger.warning(f"Failed to abort multipart upload for {s3_key}: {abort_error}")
            raise

    def list_artifacts(self, store_path: Optional[str] = None, name_prefix: str = '') -> List[str]:
        directory = join_store_path(store_path)
        prefix = f"{directory}/{name_prefix}" if directory else name_prefix

        try:
            keys = []
            paginator = self.s3_client.get_paginator('list_objects_v2')
            for page in paginator.paginate(Bucket=self.bucket_name, Prefix=prefix):
                for obj in page.get('Contents', []):
                    keys.append(obj['Key'])
            return keys
        except ClientError as e:
            error_code = e.response.get('Error', {}).get('Code', 'Unknown')
            raise RotationError(f"S3 list failed ({error_code}): {e}")
        except BotoCoreError as e:
            raise RotationError(f"S3 list failed: {e}")

    def delete(self, reference: str):
        try:
            self.s3_client.delete_object(Bucket=self.bucket_name, Key=reference)
        except ClientError as e:
            error_code = e.response.get('Error', {}).get('Code', 'Unknown')
            raise RotationError(f"S3 delete failed ({error_code}): {e}")


class RemoteSftpDriver(DestinationDriver):
    """
    Uploads backups to another server over SFTP.

    Config keys: host, port, username, password, private_key, passphrase,
    path. Opens its own session on first use; close() releases it.
    """

    type_name = 'sftp'
    display_name = 'SFTP'

    def __init__(self, target: DestinationTarget, source_session: Optional[RemoteSession] = None,
                 connection_manager: Optional[RemoteConnectionManager] = None):
        super().__init__(target, source_session, connection_manager)

        if not self.config.get('host'):
            raise UploadError(f"Destination '{self.label}' has no SFTP host configured")

        if self.config.get('private_key') or self.connection_manager is None:
            self.connection_manager = RemoteConnectionManager(
                SSHKeyConfig(
                    private_key_path=self.config.get('private_key'),
                    passphrase=self.config.get('passphrase')
                ),
                timeout=self.config.get('timeout', 30)
            )

        self.session = None

    def _open(self) -> RemoteSession:
        if self.session is None:
            credentials = ServerCredentials(
                host=self.config['host'],
                port=int(self.config.get('port') or 22),
                username=self.config.get('username') or 'root',
                password=self.config.get('password')
            )
            try:
                self.session = self.connection_manager.connect(credentials)
            except RemoteConnectionError as e:
                raise UploadError(f"SFTP destination '{self.label}' unavailable: {e}")
        return self.session

    def _directory(self, store_path: Optional[str]) -> str:
        directory = join_store_path(self.config.get('path'), store_path)
        return '/' + directory if directory else '.'

    def _makedirs(self, sftp, directory: str):
        if directory in ('.', '/'):
            return
        current = ''
        for part in directory.strip('/').split('/'):
            current = f"{current}/{part}"
            try:
                sftp.stat(current)
            except FileNotFoundError:
                sftp.mkdir(current)

    def upload(self, session: RemoteSession, remote_path: str, filename: str,
               store_path: Optional[str] = None) -> str:
        destination = self._open()
        directory = self._directory(store_path)
        dest_path = posixpath.join(directory, filename)

        try:
            self._makedirs(destination.sftp, directory)
            file_size = session.sftp.stat(remote_path).st_size or 0
            with session.sftp.open(remote_path, 'rb') as remote_file:
                destination.sftp.putfo(remote_file, dest_path, file_size=file_size, confirm=True)
        except (OSError, paramiko.SSHException) as e:
            raise UploadError(f"SFTP upload to {dest_path} failed: {e}")

        return dest_path

    def list_artifacts(self, store_path: Optional[str] = None, name_prefix: str = '') -> List[str]:
        destination = self._open()
        directory = self._directory(store_path)
        try:
            names = destination.sftp.listdir(directory)
        except FileNotFoundError:
            return []
        except OSError as e:
            raise RotationError(f"Failed to list {directory} on SFTP destination: {e}")
        return [posixpath.join(directory, n) for n in names if n.startswith(name_prefix)]

    def delete(self, reference: str):
        self._open().remove(reference)

    def close(self):
        if self.session is not None:
            self.session.close()
            self.session = None


_DRIVERS: Dict[str, Type[DestinationDriver]] = {}


def register_driver(type_name: str, driver_cls: Type[DestinationDriver]):
    """Make a driver class available for a destination type string."""
    _DRIVERS[type_name] = driver_cls


def driver_types() -> List[str]:
    return sorted(_DRIVERS)


def create_driver(target: DestinationTarget, source_session: Optional[RemoteSession] = None,
                  connection_manager: Optional[RemoteConnectionManager] = None) -> DestinationDriver:
    """
    Factory function to create the driver for a destination.

    Raises:
        ValueError: If the destination type has no registered driver
    """
    driver_cls = _DRIVERS.get(target.type)
    if driver_cls is None:
        raise ValueError(f"Invalid destination type: {target.type}")
    return driver_cls(target, source_session=source_session, connection_manager=connection_manager)


register_driver('local', LocalDriver)
register_driver('s3', ObjectStorageDriver)
register_driver('custom_s3', ObjectStorageDriver)
register_driver('sftp', RemoteSftpDriver)
