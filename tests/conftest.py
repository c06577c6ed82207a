"""
Shared pytest fixtures for vmkuper tests.

This module provides fixtures for:
- Flask app and test client
- Database setup with in-memory SQLite
- Backup store in a temporary directory
- Fake collaborators for the hypervisor and remote sessions
- Backup run records
"""

import os
import itertools
from pathlib import Path
from unittest.mock import MagicMock

import pytest

from vmkuper import create_app, db as _db
from vmkuper.models import BackupRun
from vmkuper.backup.hypervisor import Checkpoint, HypervisorError
from vmkuper.backup.inventory import MachineDescriptor
from vmkuper.backup.provenance import CheckpointProvenance
from vmkuper.backup.remote import RemoteSessionError
from vmkuper.backup.retention import RetentionManager
from vmkuper.backup.storage import BackupStore


@pytest.fixture(scope='function')
def app(tmp_path):
    """
    Create Flask app with test configuration.

    Uses in-memory SQLite database and temporary store/log directories.
    """
    app = create_app('testing', config_overrides={
        'BACKUP_STORE_DIR': str(tmp_path / 'store'),
        'LOCAL_LOG_DIR': str(tmp_path / 'logs'),
        'RETAIN_COUNT': 2,
        'CHECKPOINT_PREFIX': 'vmkuper-',
        'REMOTE_STAGING_DIR': 'C:/VMBackupTemp',
        'CLUSTER_HOST': 'cluster.example.com',
    })

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
def client(app):
    """Flask test client for making HTTP requests."""
    return app.test_client()


@pytest.fixture(scope='function')
def runner(app):
    """Flask CLI test runner."""
    return app.test_cli_runner()


@pytest.fixture
def store(app):
    """Backup store rooted in the app's temporary store directory."""
    return BackupStore(app.config['BACKUP_STORE_DIR'], app.config['STORE_LOG_SUBDIR'])


@pytest.fixture
def retention(store):
    return RetentionManager(store, 2)


@pytest.fixture
def provenance(db):
    return CheckpointProvenance('vmkuper-')


@pytest.fixture
def backup_run(db):
    """A running BackupRun record for workflows to report against."""
    run = BackupRun(run_date='2024-01-15', status='running')
    db.session.add(run)
    db.session.commit()
    return run


@pytest.fixture
def machine():
    return MachineDescriptor(name='web01', owner_host='node1', backup_priority=3)


@pytest.fixture
def make_generation():
    """Factory creating a generation directory with a fixed timestamp."""

    def _make(store, machine_name, run_date, mtime):
        path = store.generation_path(machine_name, run_date)
        path.mkdir(parents=True)
        (path / 'disk.vhdx').write_bytes(b'x' * 16)
        os.utime(path, (mtime, mtime))
        return path

    return _make


class FakeHypervisor:
    """
    In-memory hypervisor.

    Set `fail` to a dict of method name -> machine names (or '*') to make
    calls raise HypervisorError. Machines in `lose_reply` get their
    checkpoint created but the call still raises. Every call is recorded
    in `calls`.
    """

    def __init__(self):
        self.checkpoints = {}
        self.checkpoint_types = {}
        self.calls = []
        self.fail = {}
        self.reject_types = set()
        self.lose_reply = set()
        self._ids = itertools.count(1)

    def _maybe_fail(self, method, machine):
        targets = self.fail.get(method, ())
        if '*' in targets or machine.name in targets:
            raise HypervisorError(f"{method} failed for {machine.name}")

    def set_checkpoint_type(self, machine, checkpoint_type):
        self.calls.append(('set_checkpoint_type', machine.name, checkpoint_type))
        if checkpoint_type in self.reject_types:
            raise HypervisorError(f"{checkpoint_type.value} not supported")
        self._maybe_fail('set_checkpoint_type', machine)
        self.checkpoint_types[machine.name] = checkpoint_type

    def create_checkpoint(self, machine, name):
        self.calls.append(('create_checkpoint', machine.name, name))
        self._maybe_fail('create_checkpoint', machine)
        checkpoint = Checkpoint(id=f"id-{next(self._ids)}", name=name, machine=machine.name)
        self.checkpoints.setdefault(machine.name, []).append(checkpoint)
        if machine.name in self.lose_reply:
            raise HypervisorError(f"Checkpoint {name} on {machine.name} was not reported back")
        return checkpoint

    def add_foreign_checkpoint(self, machine_name, name):
        checkpoint = Checkpoint(id=f"foreign-{next(self._ids)}", name=name, machine=machine_name)
        self.checkpoints.setdefault(machine_name, []).append(checkpoint)
        return checkpoint

    def export_checkpoint(self, machine, name, dest_path):
        self.calls.append(('export_checkpoint', machine.name, name, dest_path))
        self._maybe_fail('export_checkpoint', machine)

    def list_checkpoints(self, machine):
        self.calls.append(('list_checkpoints', machine.name))
        self._maybe_fail('list_checkpoints', machine)
        return list(self.checkpoints.get(machine.name, []))

    def delete_checkpoint(self, machine, checkpoint):
        self.calls.append(('delete_checkpoint', machine.name, checkpoint.id))
        self._maybe_fail('delete_checkpoint', machine)
        self.checkpoints[machine.name] = [
            cp for cp in self.checkpoints.get(machine.name, []) if cp.id != checkpoint.id
        ]

    def calls_named(self, method):
        return [call for call in self.calls if call[0] == method]


class FakeSession:
    """Remote session that writes a fake export on copy_from."""

    def __init__(self, host, fail_copy=False, fail_powershell=False, fail_close=False):
        self.host = host
        self.fail_copy = fail_copy
        self.fail_powershell = fail_powershell
        self.fail_close = fail_close
        self.scripts = []
        self.copies = []
        self.close_count = 0

    def run_powershell(self, script):
        self.scripts.append(script)
        if self.fail_powershell:
            raise RemoteSessionError("powershell failed")
        return None

    def exec(self, command):
        return ''

    def copy_from(self, remote_path, local_path):
        self.copies.append((remote_path, str(local_path)))
        if self.fail_copy:
            Path(local_path).mkdir(parents=True, exist_ok=True)
            (Path(local_path) / 'partial.vhdx').write_bytes(b'p')
            raise RemoteSessionError("connection reset during transfer")
        export_dir = Path(local_path) / Path(remote_path).name
        export_dir.mkdir(parents=True, exist_ok=True)
        (export_dir / 'disk.vhdx').write_bytes(b'd' * 1024)

    def close(self):
        self.close_count += 1
        if self.fail_close:
            raise RemoteSessionError("close failed")

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc, tb):
        self.close()
        return False


class FakeSessionFactory:
    """Opens FakeSessions; hosts listed in `unreachable` fail to connect."""

    def __init__(self, **session_kwargs):
        self.session_kwargs = session_kwargs
        self.unreachable = set()
        self.opened = []

    def open(self, host):
        if host in self.unreachable:
            raise RemoteSessionError(f"Failed to connect to {host}")
        session = FakeSession(host, **self.session_kwargs)
        self.opened.append(session)
        return session


@pytest.fixture
def hypervisor():
    return FakeHypervisor()


@pytest.fixture
def sessions():
    return FakeSessionFactory()


@pytest.fixture
def mock_ssh_client():
    """
    MagicMock standing in for paramiko.SSHClient with an SFTP channel.
    """
    mock_ssh = MagicMock()
    mock_sftp = MagicMock()
    mock_ssh.open_sftp.return_value = mock_sftp
    return mock_ssh


@pytest.fixture
def make_sessions():
    """Factory for session factories with failure switches, e.g. make_sessions(fail_copy=True)."""
    return FakeSessionFactory
