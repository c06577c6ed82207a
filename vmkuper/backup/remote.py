"""
Remote execution sessions over SSH/SFTP.

A RemoteSession is a handle to one host. It runs commands and pulls files
back to the local machine. Callers decide whether a failure is fatal.
"""

import base64
import json
import logging
import stat
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Optional, Tuple

import paramiko
from paramiko import SSHClient, AutoAddPolicy

from .errors import BackupError


logger = logging.getLogger(__name__)

READ_CHUNK_SIZE = 32768
POLL_INTERVAL = 0.1


class RemoteSessionError(BackupError):
    """Raised when a remote session operation fails."""
    pass


@dataclass
class SSHSettings:
    """Connection settings shared by every remote session of a run."""
    username: str
    port: int = 22
    password: Optional[str] = None
    private_key: Optional[str] = None
    timeout: int = 30

    @classmethod
    def from_config(cls, config) -> 'SSHSettings':
        return cls(
            username=config['SSH_USERNAME'],
            port=int(config.get('SSH_PORT', 22)),
            password=config.get('SSH_PASSWORD') or None,
            private_key=config.get('SSH_PRIVATE_KEY') or None,
            timeout=int(config.get('SSH_TIMEOUT', 30))
        )


class RemoteSession:
    """
    SSH session to a single host with an SFTP channel for file transfer.
    """

    def __init__(self, host: str, settings: SSHSettings):
        self.host = host
        self.settings = settings
        self.ssh_client = None
        self.sftp_client = None

    @classmethod
    def open(cls, host: str, settings: SSHSettings) -> 'RemoteSession':
        """
        Open a session to a host.

        Raises:
            RemoteSessionError: If the connection cannot be established
        """
        session = cls(host, settings)
        session._connect()
        return session

    def _connect(self):
        try:
            self.ssh_client = SSHClient()
            self.ssh_client.set_missing_host_key_policy(AutoAddPolicy())

            connect_kwargs = {
                'hostname': self.host,
                'port': self.settings.port,
                'username': self.settings.username,
                'timeout': self.settings.timeout
            }

            if self.settings.password:
                connect_kwargs['password'] = self.settings.password
            elif self.settings.private_key:
                key_path = Path(self.settings.private_key).expanduser()
                if not key_path.exists():
                    raise RemoteSessionError(f"Private key not found: {self.settings.private_key}")
                connect_kwargs['key_filename'] = str(key_path)
            else:
                raise RemoteSessionError("Either SSH password or private key must be configured")

            self.ssh_client.connect(**connect_kwargs)
            self.sftp_client = self.ssh_client.open_sftp()

        except RemoteSessionError:
            self.close()
            raise
        except paramiko.AuthenticationException as e:
            self.close()
            raise RemoteSessionError(f"SSH authentication to {self.host} failed: {e}") from e
        except (paramiko.SSHException, OSError) as e:
            self.close()
            raise RemoteSessionError(f"Failed to connect to {self.host}: {e}") from e

        logger.debug(f"Opened remote session to {self.host}")

    def exec(self, command: str) -> str:
        """
        Run a command and wait for it to finish.

        Returns:
            Standard output of the command

        Raises:
            RemoteSessionError: If the command cannot be run or exits non-zero
        """
        if self.ssh_client is None:
            raise RemoteSessionError(f"Session to {self.host} is closed")

        try:
            _stdin, stdout, _stderr = self.ssh_client.exec_command(command, timeout=None)
            output, errors = self._drain(stdout.channel)
            exit_status = stdout.channel.recv_exit_status()
        except (paramiko.SSHException, OSError) as e:
            raise RemoteSessionError(f"Failed to run command on {self.host}: {e}") from e

        if exit_status != 0:
            raise RemoteSessionError(
                f"Command on {self.host} exited with status {exit_status}: {errors.strip() or output.strip()}"
            )

        return output

    @staticmethod
    def _drain(channel) -> Tuple[str, str]:
        """
        Read stdout and stderr of a channel until the command exits.

        Both streams are read as data arrives so that a full stderr
        window never stalls the command.
        """
        out_chunks = []
        err_chunks = []

        while True:
            received = False
            while channel.recv_ready():
                out_chunks.append(channel.recv(READ_CHUNK_SIZE))
                received = True
            while channel.recv_stderr_ready():
                err_chunks.append(channel.recv_stderr(READ_CHUNK_SIZE))
                received = True

            if channel.exit_status_ready() and not channel.recv_ready() and not channel.recv_stderr_ready():
                break
            if not received:
                time.sleep(POLL_INTERVAL)

        return (
            b''.join(out_chunks).decode('utf-8', errors='replace'),
            b''.join(err_chunks).decode('utf-8', errors='replace')
        )

    def run_powershell(self, script: str) -> Any:
        """
        Run a PowerShell script and parse its JSON output.

        The script is passed base64-encoded (UTF-16LE) so that no quoting
        is needed. Output must be produced with ConvertTo-Json.

        Returns:
            Parsed JSON, or None when the script printed nothing

        Raises:
            RemoteSessionError: If the script fails or prints invalid JSON
        """
        wrapped = f"$ErrorActionPreference = 'Stop'; {script}"
        encoded = base64.b64encode(wrapped.encode('utf-16-le')).decode('ascii')
        output = self.exec(f"powershell -NoProfile -NonInteractive -EncodedCommand {encoded}").strip()

        if not output:
            return None

        try:
            return json.loads(output)
        except json.JSONDecodeError as e:
            raise RemoteSessionError(f"Invalid JSON from {self.host}: {e}") from e

    def copy_from(self, remote_path: str, local_path) -> None:
        """
        Download a file or a directory tree.

        Raises:
            RemoteSessionError: If the transfer fails
        """
        if self.sftp_client is None:
            raise RemoteSessionError(f"Session to {self.host} is closed")

        try:
            attrs = self.sftp_client.stat(remote_path)
            if stat.S_ISDIR(attrs.st_mode):
                self._download_directory(remote_path, Path(local_path))
            else:
                Path(local_path).parent.mkdir(parents=True, exist_ok=True)
                self.sftp_client.get(remote_path, str(local_path))
        except FileNotFoundError as e:
            raise RemoteSessionError(f"Remote path not found on {self.host}: {remote_path}") from e
        except (paramiko.SSHException, OSError) as e:
            raise RemoteSessionError(f"Failed to download {remote_path} from {self.host}: {e}") from e

    def _download_directory(self, remote_path: str, local_path: Path):
        local_path.mkdir(parents=True, exist_ok=True)

        for item in self.sftp_client.listdir_attr(remote_path):
            remote_item = f"{remote_path.rstrip('/')}/{item.filename}"
            local_item = local_path / item.filename

            if stat.S_ISDIR(item.st_mode):
                self._download_directory(remote_item, local_item)
            else:
                self.sftp_client.get(remote_item, str(local_item))

    def close(self):
        """Close SFTP and SSH connections. Safe to call more than once."""
        if self.sftp_client:
            try:
                self.sftp_client.close()
            except (paramiko.SSHException, OSError) as e:
                logger.warning(f"Failed to close SFTP channel to {self.host}: {e}")
            self.sftp_client = None

        if self.ssh_client:
            try:
                self.ssh_client.close()
            except (paramiko.SSHException, OSError) as e:
                logger.warning(f"Failed to close SSH connection to {self.host}: {e}")
            self.ssh_client = None

    @property
    def is_open(self) -> bool:
        return self.ssh_client is not None

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc, tb):
        self.close()
        return False


class RemoteSessionFactory:
    """Opens sessions with the run's SSH settings."""

    def __init__(self, settings: SSHSettings):
        self.settings = settings

    def open(self, host: str) -> RemoteSession:
        return RemoteSession.open(host, self.settings)
