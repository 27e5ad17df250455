"""
Remote connection management.

RemoteConnectionManager opens an authenticated SSH session (plus an SFTP
channel) to a single remote server. RemoteSession wraps the open handles and
is owned by exactly one orchestrator run.
"""

import logging
import socket
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass
from pathlib import Path
from typing import Optional

import paramiko
from paramiko import SSHClient, AutoAddPolicy

from .descriptor import ServerCredentials
from .exceptions import RemoteConnectionError, RemoteCommandError

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class SSHKeyConfig:
    """Key pair used to authenticate against remote servers."""
    private_key_path: Optional[str] = None
    public_key_path: Optional[str] = None
    passphrase: Optional[str] = None

    def keys_exist(self) -> bool:
        if not self.private_key_path or not self.public_key_path:
            return False
        return Path(self.private_key_path).expanduser().exists() and Path(self.public_key_path).expanduser().exists()

    def public_key(self) -> str:
        return Path(self.public_key_path).expanduser().read_text().strip()


@dataclass(frozen=True)
class CommandResult:
    exit_code: int
    stdout: str
    stderr: str

    @property
    def ok(self) -> bool:
        return self.exit_code == 0


class RemoteSession:
    """
    An open, authenticated handle to one remote host.

    Exposes the SFTP client for filesystem calls and `run()` for remote
    commands. Closing is idempotent.
    """

    def __init__(self, ssh_client: SSHClient, sftp_client, host: str, command_timeout: Optional[float] = None):
        self.ssh_client = ssh_client
        self.sftp = sftp_client
        self.host = host
        self.command_timeout = command_timeout
        self._closed = False

    @property
    def closed(self) -> bool:
        return self._closed

    def run(self, command: str, timeout: Optional[float] = None) -> CommandResult:
        """
        Execute a command on the remote host and wait for it to finish.

        Args:
            command: Shell command line
            timeout: Seconds to wait for output (defaults to the session timeout)

        Returns:
            CommandResult with exit code and decoded output

        Raises:
            RemoteCommandError: If the command cannot be run or times out
        """
        if self._closed:
            raise RemoteCommandError(f"Session to {self.host} is closed")

        if timeout is None:
            timeout = self.command_timeout

        try:
            stdin, stdout, stderr = self.ssh_client.exec_command(command, timeout=timeout)
            stdin.close()
            # Both streams share the channel window; drain stderr alongside stdout.
            with ThreadPoolExecutor(max_workers=1) as pool:
                pending_err = pool.submit(stderr.read)
                out = stdout.read().decode('utf-8', errors='replace')
                err = pending_err.result().decode('utf-8', errors='replace')
            exit_code = stdout.channel.recv_exit_status()
        except socket.timeout:
            raise RemoteCommandError(f"Remote command timed out after {timeout} seconds")
        except paramiko.SSHException as e:
            raise RemoteCommandError(f"Remote command failed: {e}")
        except OSError as e:
            raise RemoteCommandError(f"Remote command failed: {e}")

        return CommandResult(exit_code=exit_code, stdout=out.strip(), stderr=err.strip())

    def remove(self, path: str):
        """Delete a remote file via SFTP."""
        self.sftp.remove(path)

    def close(self):
        """Close SFTP and SSH handles."""
        if self._closed:
            return
        self._closed = True

        for handle in (self.sftp, self.ssh_client):
            if handle is None:
                continue
            try:
                handle.close()
            except Exception as e:
                logger.warning(f"Error closing session handle for {self.host}: {e}")

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc, tb):
        self.close()


class RemoteConnectionManager:
    """
    Opens RemoteSessions.

    A single attempt is made per call; retry policy belongs to the caller.
    """

    def __init__(self, key_config: Optional[SSHKeyConfig] = None, timeout: float = 30,
                 command_timeout: Optional[float] = None):
        """
        Initialize the connection manager.

        Args:
            key_config: Private key used for key-based authentication
            timeout: Seconds allowed for TCP connect, banner and authentication
            command_timeout: Default seconds allowed for remote commands
        """
        self.key_config = key_config or SSHKeyConfig()
        self.timeout = timeout
        self.command_timeout = command_timeout

    def _connect_kwargs(self, server: ServerCredentials) -> dict:
        connect_kwargs = {
            'hostname': server.host,
            'port': server.port,
            'username': server.username,
            'timeout': self.timeout,
            'banner_timeout': self.timeout,
            'auth_timeout': self.timeout,
            'look_for_keys': False,
            'allow_agent': False,
        }

        has_key = False
        if self.key_config.private_key_path:
            key_path = Path(self.key_config.private_key_path).expanduser()
            if key_path.exists():
                connect_kwargs['key_filename'] = str(key_path)
                if self.key_config.passphrase:
                    connect_kwargs['passphrase'] = self.key_config.passphrase
                has_key = True
            elif not server.password:
                raise RemoteConnectionError(f"Private key not found: {self.key_config.private_key_path}")

        if server.password:
            connect_kwargs['password'] = server.password
        elif not has_key:
            raise RemoteConnectionError("Either a password or an SSH private key must be configured")

        return connect_kwargs

    def connect(self, server: ServerCredentials) -> RemoteSession:
        """
        Open an authenticated session to a remote server.

        Args:
            server: Remote server credentials

        Returns:
            Open RemoteSession with an SFTP channel

        Raises:
            RemoteConnectionError: On auth rejection, timeout or unreachable host
        """
        connect_kwargs = self._connect_kwargs(server)
        target = f"{server.host}:{server.port}"

        ssh_client = SSHClient()
        ssh_client.set_missing_host_key_policy(AutoAddPolicy())

        try:
            ssh_client.connect(**connect_kwargs)
            sftp_client = ssh_client.open_sftp()
        except paramiko.AuthenticationException as e:
            ssh_client.close()
            raise RemoteConnectionError(f"Could not connect to {target}: SSH authentication failed: {e}")
        except socket.timeout:
            ssh_client.close()
            raise RemoteConnectionError(f"Could not connect to {target}: connection timed out")
        except paramiko.SSHException as e:
            ssh_client.close()
            raise RemoteConnectionError(f"Could not connect to {target}: SSH connection failed: {e}")
        except OSError as e:
            ssh_client.close()
            raise RemoteConnectionError(f"Could not connect to {target}: {e}")

        logger.debug(f"SSH session opened to {target} as {server.username}")
        return RemoteSession(ssh_client, sftp_client, server.host, command_timeout=self.command_timeout)
