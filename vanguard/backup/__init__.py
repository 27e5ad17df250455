"""
Backup module for Vanguard.

This module handles remote backup execution including:
- SSH/SFTP sessions to remote servers
- Pre-flight probing (path, size, project layout)
- Remote archiving and database dumps
- Destination drivers (local, S3, SFTP)
- Count-based rotation
- Run orchestration and task execution
"""

from .connection import RemoteConnectionManager, RemoteSession, SSHKeyConfig
from .descriptor import BackupOutcome, BackupTaskDescriptor, DestinationTarget, RotationPolicy, ServerCredentials
from .destinations import LocalDriver, ObjectStorageDriver, RemoteSftpDriver, create_driver
from .orchestrator import BackupOrchestrator, build_orchestrator
from .registry import InMemoryServerRegistry
from .rotation import RotationEngine

__all__ = [
    'RemoteConnectionManager',
    'RemoteSession',
    'SSHKeyConfig',
    'BackupOutcome',
    'BackupTaskDescriptor',
    'DestinationTarget',
    'RotationPolicy',
    'ServerCredentials',
    'LocalDriver',
    'ObjectStorageDriver',
    'RemoteSftpDriver',
    'create_driver',
    'BackupOrchestrator',
    'build_orchestrator',
    'InMemoryServerRegistry',
    'RotationEngine'
]
