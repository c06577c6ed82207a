"""
Unit tests for remote sessions (vmkuper/backup/remote.py).

Tests RemoteSession against a mocked paramiko SSHClient.
"""

import base64
from unittest.mock import MagicMock, patch

import paramiko
import pytest

from vmkuper.backup.remote import RemoteSession, RemoteSessionError, RemoteSessionFactory, SSHSettings


class FakeChannel:
    """
    Channel handing out output in small chunks.

    With `stderr_first`, stdout stays empty until all of stderr has been
    read, like a command blocked on a full stderr window.
    """

    def __init__(self, stdout=b'', stderr=b'', status=0, chunk=4, stderr_first=False):
        self.stdout = stdout
        self.stderr = stderr
        self.status = status
        self.chunk = chunk
        self.stderr_first = stderr_first

    def recv_ready(self):
        if self.stderr_first and self.stderr:
            return False
        return bool(self.stdout)

    def recv(self, size):
        data, self.stdout = self.stdout[:self.chunk], self.stdout[self.chunk:]
        return data

    def recv_stderr_ready(self):
        return bool(self.stderr)

    def recv_stderr(self, size):
        data, self.stderr = self.stderr[:self.chunk], self.stderr[self.chunk:]
        return data

    def exit_status_ready(self):
        return not self.stdout and not self.stderr

    def recv_exit_status(self):
        return self.status


def make_channel_output(mock_ssh, stdout=b'', stderr=b'', status=0, **kwargs):
    """Make exec_command return the given output and exit status."""
    out = MagicMock()
    out.channel = FakeChannel(stdout, stderr, status, **kwargs)
    mock_ssh.exec_command.return_value = (MagicMock(), out, MagicMock())
    return out.channel


def sftp_attr(filename, mode):
    attr = MagicMock()
    attr.filename = filename
    attr.st_mode = mode
    return attr


DIR_MODE = 0o040755
FILE_MODE = 0o100644


@pytest.fixture
def settings():
    return SSHSettings(username='backup', password='secret')


class TestSSHSettings:
    """Test settings construction from app config."""

    def test_from_config(self):
        """Test values are read from the config mapping."""
        settings = SSHSettings.from_config({
            'SSH_USERNAME': 'svc',
            'SSH_PORT': '2222',
            'SSH_PASSWORD': '',
            'SSH_PRIVATE_KEY': '~/.ssh/key',
            'SSH_TIMEOUT': 10
        })

        assert settings.username == 'svc'
        assert settings.port == 2222
        assert settings.password is None
        assert settings.private_key == '~/.ssh/key'
        assert settings.timeout == 10


class TestRemoteSessionConnect:
    """Test connection establishment."""

    @patch('vmkuper.backup.remote.SSHClient')
    def test_open_with_password(self, mock_ssh_class, mock_ssh_client, settings):
        """Test connection uses host, port, username and password."""
        mock_ssh_class.return_value = mock_ssh_client

        session = RemoteSession.open('node1', settings)

        assert session.is_open
        kwargs = mock_ssh_client.connect.call_args[1]
        assert kwargs['hostname'] == 'node1'
        assert kwargs['port'] == 22
        assert kwargs['username'] == 'backup'
        assert kwargs['password'] == 'secret'
        mock_ssh_client.open_sftp.assert_called_once()

    @patch('vmkuper.backup.remote.SSHClient')
    def test_open_with_private_key(self, mock_ssh_class, mock_ssh_client, tmp_path):
        """Test connection with a private key file."""
        mock_ssh_class.return_value = mock_ssh_client
        key_file = tmp_path / 'id_rsa'
        key_file.write_text('KEY')

        RemoteSession.open('node1', SSHSettings(username='backup', private_key=str(key_file)))

        assert mock_ssh_client.connect.call_args[1]['key_filename'] == str(key_file)

    @patch('vmkuper.backup.remote.SSHClient')
    def test_open_missing_private_key(self, mock_ssh_class, mock_ssh_client):
        """Test a missing key file raises RemoteSessionError."""
        mock_ssh_class.return_value = mock_ssh_client

        with pytest.raises(RemoteSessionError, match='Private key not found'):
            RemoteSession.open('node1', SSHSettings(username='backup', private_key='/nonexistent/key'))

        mock_ssh_client.connect.assert_not_called()

    @patch('vmkuper.backup.remote.SSHClient')
    def test_open_without_credentials(self, mock_ssh_class, mock_ssh_client):
        """Test missing credentials raise RemoteSessionError."""
        mock_ssh_class.return_value = mock_ssh_client

        with pytest.raises(RemoteSessionError, match='password or private key'):
            RemoteSession.open('node1', SSHSettings(username='backup'))

    @patch('vmkuper.backup.remote.SSHClient')
    def test_open_authentication_failure(self, mock_ssh_class, mock_ssh_client, settings):
        """Test authentication failures are wrapped."""
        mock_ssh_class.return_value = mock_ssh_client
        mock_ssh_client.connect.side_effect = paramiko.AuthenticationException('bad password')

        with pytest.raises(RemoteSessionError, match='authentication'):
            RemoteSession.open('node1', settings)

        mock_ssh_client.close.assert_called_once()

    @patch('vmkuper.backup.remote.SSHClient')
    def test_open_network_failure(self, mock_ssh_class, mock_ssh_client, settings):
        """Test socket errors are wrapped."""
        mock_ssh_class.return_value = mock_ssh_client
        mock_ssh_client.connect.side_effect = OSError('No route to host')

        with pytest.raises(RemoteSessionError, match='Failed to connect to node1'):
            RemoteSession.open('node1', settings)

    @patch('vmkuper.backup.remote.SSHClient')
    def test_factory_opens_with_settings(self, mock_ssh_class, mock_ssh_client, settings):
        """Test the factory passes its settings to every session."""
        mock_ssh_class.return_value = mock_ssh_client

        session = RemoteSessionFactory(settings).open('node2')

        assert session.host == 'node2'
        assert session.settings is settings


class TestRemoteSessionExec:
    """Test command execution."""

    @patch('vmkuper.backup.remote.SSHClient')
    def test_exec_returns_stdout(self, mock_ssh_class, mock_ssh_client, settings):
        """Test stdout is returned on success."""
        mock_ssh_class.return_value = mock_ssh_client
        make_channel_output(mock_ssh_client, stdout=b'hello\n')

        session = RemoteSession.open('node1', settings)

        assert session.exec('echo hello') == 'hello\n'

    @patch('vmkuper.backup.remote.SSHClient')
    def test_exec_nonzero_exit(self, mock_ssh_class, mock_ssh_client, settings):
        """Test a non-zero exit status raises with stderr."""
        mock_ssh_class.return_value = mock_ssh_client
        make_channel_output(mock_ssh_client, stderr=b'access denied', status=1)

        session = RemoteSession.open('node1', settings)

        with pytest.raises(RemoteSessionError, match='status 1: access denied'):
            session.exec('whoami')

    @patch('vmkuper.backup.remote.SSHClient')
    def test_exec_reads_stderr_while_running(self, mock_ssh_class, mock_ssh_client, settings):
        """Test a command flooding stderr before its stdout still completes."""
        mock_ssh_class.return_value = mock_ssh_client
        noise = b'WARNING: slow disk\n' * 500
        make_channel_output(mock_ssh_client, stdout=b'{"Id": "a"}', stderr=noise, stderr_first=True)

        session = RemoteSession.open('node1', settings)

        assert session.exec('Export-VMSnapshot') == '{"Id": "a"}'

    @patch('vmkuper.backup.remote.SSHClient')
    def test_exec_transport_error(self, mock_ssh_class, mock_ssh_client, settings):
        """Test transport errors are wrapped."""
        mock_ssh_class.return_value = mock_ssh_client
        mock_ssh_client.exec_command.side_effect = paramiko.SSHException('channel closed')

        session = RemoteSession.open('node1', settings)

        with pytest.raises(RemoteSessionError, match='channel closed'):
            session.exec('whoami')

    def test_exec_on_closed_session(self, settings):
        """Test exec on a never-opened session raises."""
        with pytest.raises(RemoteSessionError, match='closed'):
            RemoteSession('node1', settings).exec('whoami')

    @patch('vmkuper.backup.remote.SSHClient')
    def test_run_powershell_encodes_script(self, mock_ssh_class, mock_ssh_client, settings):
        """Test scripts are sent base64-encoded in UTF-16LE."""
        mock_ssh_class.return_value = mock_ssh_client
        make_channel_output(mock_ssh_client, stdout=b'{"Name": "web01"}')

        session = RemoteSession.open('node1', settings)
        result = session.run_powershell("Get-VM -Name 'web01' | ConvertTo-Json")

        assert result == {'Name': 'web01'}
        command = mock_ssh_client.exec_command.call_args[0][0]
        assert command.startswith('powershell -NoProfile -NonInteractive -EncodedCommand ')
        decoded = base64.b64decode(command.split()[-1]).decode('utf-16-le')
        assert "Get-VM -Name 'web01'" in decoded
        assert "$ErrorActionPreference = 'Stop'" in decoded

    @patch('vmkuper.backup.remote.SSHClient')
    def test_run_powershell_empty_output(self, mock_ssh_class, mock_ssh_client, settings):
        """Test empty output returns None."""
        mock_ssh_class.return_value = mock_ssh_client
        make_channel_output(mock_ssh_client, stdout=b'  \r\n')

        session = RemoteSession.open('node1', settings)

        assert session.run_powershell('Remove-Item x') is None

    @patch('vmkuper.backup.remote.SSHClient')
    def test_run_powershell_invalid_json(self, mock_ssh_class, mock_ssh_client, settings):
        """Test non-JSON output raises."""
        mock_ssh_class.return_value = mock_ssh_client
        make_channel_output(mock_ssh_client, stdout=b'WARNING: something')

        session = RemoteSession.open('node1', settings)

        with pytest.raises(RemoteSessionError, match='Invalid JSON'):
            session.run_powershell('Get-VM')


class TestRemoteSessionCopy:
    """Test pull-style file transfer."""

    @patch('vmkuper.backup.remote.SSHClient')
    def test_copy_file(self, mock_ssh_class, mock_ssh_client, settings, tmp_path):
        """Test a single file is downloaded."""
        mock_ssh_class.return_value = mock_ssh_client
        sftp = mock_ssh_client.open_sftp.return_value
        sftp.stat.return_value = sftp_attr('disk.vhdx', FILE_MODE)

        session = RemoteSession.open('node1', settings)
        session.copy_from('C:/VMBackupTemp/disk.vhdx', tmp_path / 'out' / 'disk.vhdx')

        sftp.get.assert_called_once_with('C:/VMBackupTemp/disk.vhdx', str(tmp_path / 'out' / 'disk.vhdx'))
        assert (tmp_path / 'out').is_dir()

    @patch('vmkuper.backup.remote.SSHClient')
    def test_copy_directory_tree(self, mock_ssh_class, mock_ssh_client, settings, tmp_path):
        """Test directories are downloaded recursively."""
        mock_ssh_class.return_value = mock_ssh_client
        sftp = mock_ssh_client.open_sftp.return_value
        sftp.stat.return_value = sftp_attr('web01', DIR_MODE)
        listings = {
            'C:/VMBackupTemp/web01': [sftp_attr('Virtual Hard Disks', DIR_MODE), sftp_attr('config.vmcx', FILE_MODE)],
            'C:/VMBackupTemp/web01/Virtual Hard Disks': [sftp_attr('disk.vhdx', FILE_MODE)],
        }
        sftp.listdir_attr.side_effect = lambda path: listings[path]

        session = RemoteSession.open('node1', settings)
        session.copy_from('C:/VMBackupTemp/web01', tmp_path / 'gen')

        fetched = sorted(call.args[0] for call in sftp.get.call_args_list)
        assert fetched == [
            'C:/VMBackupTemp/web01/Virtual Hard Disks/disk.vhdx',
            'C:/VMBackupTemp/web01/config.vmcx'
        ]
        assert (tmp_path / 'gen' / 'Virtual Hard Disks').is_dir()

    @patch('vmkuper.backup.remote.SSHClient')
    def test_copy_missing_remote_path(self, mock_ssh_class, mock_ssh_client, settings, tmp_path):
        """Test a missing remote path raises RemoteSessionError."""
        mock_ssh_class.return_value = mock_ssh_client
        sftp = mock_ssh_client.open_sftp.return_value
        sftp.stat.side_effect = FileNotFoundError(2, 'No such file')

        session = RemoteSession.open('node1', settings)

        with pytest.raises(RemoteSessionError, match='not found'):
            session.copy_from('C:/VMBackupTemp/web01', tmp_path / 'gen')

    @patch('vmkuper.backup.remote.SSHClient')
    def test_copy_transfer_error(self, mock_ssh_class, mock_ssh_client, settings, tmp_path):
        """Test an interrupted transfer raises RemoteSessionError."""
        mock_ssh_class.return_value = mock_ssh_client
        sftp = mock_ssh_client.open_sftp.return_value
        sftp.stat.return_value = sftp_attr('disk.vhdx', FILE_MODE)
        sftp.get.side_effect = paramiko.SSHException('connection reset')

        session = RemoteSession.open('node1', settings)

        with pytest.raises(RemoteSessionError, match='connection reset'):
            session.copy_from('C:/VMBackupTemp/disk.vhdx', tmp_path / 'disk.vhdx')


class TestRemoteSessionClose:
    """Test session shutdown."""

    @patch('vmkuper.backup.remote.SSHClient')
    def test_close_is_idempotent(self, mock_ssh_class, mock_ssh_client, settings):
        """Test closing twice closes the connections once."""
        mock_ssh_class.return_value = mock_ssh_client
        sftp = mock_ssh_client.open_sftp.return_value

        session = RemoteSession.open('node1', settings)
        session.close()
        session.close()

        sftp.close.assert_called_once()
        mock_ssh_client.close.assert_called_once()
        assert not session.is_open

    @patch('vmkuper.backup.remote.SSHClient')
    def test_context_manager_closes(self, mock_ssh_class, mock_ssh_client, settings):
        """Test leaving the with-block closes the session."""
        mock_ssh_class.return_value = mock_ssh_client

        with RemoteSession.open('node1', settings) as session:
            assert session.is_open

        assert not session.is_open
        mock_ssh_client.close.assert_called_once()

    @patch('vmkuper.backup.remote.SSHClient')
    def test_close_swallows_transport_errors(self, mock_ssh_class, mock_ssh_client, settings):
        """Test close errors are logged, not raised."""
        mock_ssh_class.return_value = mock_ssh_client
        mock_ssh_client.close.side_effect = OSError('already closed')

        session = RemoteSession.open('node1', settings)
        session.close()

        assert not session.is_open
