"""
Backup store handling.

Layout of the store:
{base_path}/{machine}/{machine}-{run_date}/...   one directory per generation
{base_path}/{log_subdir}/                        copied run logs

- StorageAccessChecker: preflight check that required locations are writable
- BackupStore: generation directories, listing and deletion
"""

import os
import shutil
import uuid
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path
from typing import Iterable, List

from .errors import BackupError, RunFatalError


class StorageError(BackupError):
    """Raised when a backup store operation fails."""
    pass


class InaccessibleLocation(RunFatalError):
    """Raised when a required location cannot be created or written."""

    def __init__(self, location, reason):
        self.location = Path(location)
        self.reason = reason
        super().__init__(f"Location is not accessible: {location} ({reason})")


@dataclass
class BackupGeneration:
    """One retained backup of a machine."""
    name: str
    path: Path
    created_at: datetime


def creation_time(path: Path) -> datetime:
    """
    Get the creation timestamp of a path.

    Falls back to the modification time on filesystems that do not
    record a birth time. Generation directories are not modified after
    the transfer, so both orderings agree.
    """
    stat = path.stat()
    timestamp = getattr(stat, 'st_birthtime', None)
    if timestamp is None:
        timestamp = stat.st_mtime
    return datetime.fromtimestamp(timestamp)


class StorageAccessChecker:
    """
    Verifies that every required location exists and is writable.
    """

    MARKER_PREFIX = '.vmkuper_write_test_'

    def check(self, locations: Iterable) -> None:
        """
        Check all locations, creating missing ones.

        Args:
            locations: Paths that must be usable before the run starts

        Raises:
            InaccessibleLocation: On the first location that is not usable
        """
        for location in sorted({Path(loc) for loc in locations}):
            self._check_location(location)

    def _check_location(self, location: Path):
        try:
            is_file = location.exists() and not location.is_dir()
        except OSError as e:
            raise InaccessibleLocation(location, f"cannot inspect location: {e}") from e

        if is_file:
            raise InaccessibleLocation(location, "not a directory")

        try:
            location.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            raise InaccessibleLocation(location, f"cannot create directory: {e}") from e

        marker = location / f"{self.MARKER_PREFIX}{uuid.uuid4().hex}"
        try:
            marker.touch(exist_ok=False)
            marker.unlink()
        except OSError as e:
            raise InaccessibleLocation(location, f"not writable: {e}") from e


class BackupStore:
    """
    Handler for the backup store directory tree.
    """

    def __init__(self, base_path, log_subdir: str = '_logs'):
        """
        Initialize backup store handler.

        Args:
            base_path: Root directory of the backup store
            log_subdir: Subdirectory receiving copied run logs
        """
        self.base_path = Path(base_path)
        self.log_subdir = log_subdir

    @property
    def log_dir(self) -> Path:
        return self.base_path / self.log_subdir

    def machine_dir(self, machine: str) -> Path:
        return self.base_path / machine

    @staticmethod
    def generation_name(machine: str, run_date: str) -> str:
        return f"{machine}-{run_date}"

    def generation_path(self, machine: str, run_date: str) -> Path:
        return self.machine_dir(machine) / self.generation_name(machine, run_date)

    def prepare_target_dir(self, machine: str, run_date: str) -> Path:
        """
        Ensure the machine directory exists and today's generation slot is free.

        An existing generation with the same run date is deleted so that a
        re-run on the same day replaces it instead of duplicating it.

        Returns:
            Path of the (not yet existing) generation directory

        Raises:
            StorageError: If the directory cannot be prepared
        """
        machine_dir = self.machine_dir(machine)
        target = self.generation_path(machine, run_date)

        try:
            machine_dir.mkdir(parents=True, exist_ok=True)
            for path in (target, self.incoming_path(machine, run_date)):
                if path.is_dir():
                    shutil.rmtree(path)
                elif path.exists():
                    path.unlink()
        except OSError as e:
            raise StorageError(f"Failed to prepare {target}: {e}") from e

        return target

    def incoming_path(self, machine: str, run_date: str) -> Path:
        """
        Directory receiving a transfer in progress.

        Its name does not start with "{machine}-", so it is never listed
        as a generation.
        """
        return self.machine_dir(machine) / f".incoming-{self.generation_name(machine, run_date)}"

    def commit_generation(self, machine: str, run_date: str) -> Path:
        """
        Turn a completed transfer into a generation.

        Raises:
            StorageError: If the rename fails
        """
        incoming = self.incoming_path(machine, run_date)
        target = self.generation_path(machine, run_date)

        try:
            incoming.rename(target)
        except OSError as e:
            raise StorageError(f"Failed to commit generation {target}: {e}") from e

        return target

    def discard_incoming(self, machine: str, run_date: str):
        """
        Remove a partial transfer.

        Raises:
            StorageError: If the removal fails
        """
        incoming = self.incoming_path(machine, run_date)
        try:
            if incoming.exists():
                shutil.rmtree(incoming)
        except OSError as e:
            raise StorageError(f"Failed to remove partial transfer {incoming}: {e}") from e

    def list_generations(self, machine: str) -> List[BackupGeneration]:
        """
        List all generations of a machine.

        Only directories named "{machine}-..." are generations; anything else
        in the machine directory is left alone.

        Raises:
            StorageError: If listing fails
        """
        machine_dir = self.machine_dir(machine)

        if not machine_dir.exists():
            return []

        prefix = f"{machine}-"
        try:
            generations = []
            for entry in machine_dir.iterdir():
                if entry.is_dir() and entry.name.startswith(prefix):
                    generations.append(BackupGeneration(
                        name=entry.name,
                        path=entry,
                        created_at=creation_time(entry)
                    ))
            return generations

        except OSError as e:
            raise StorageError(f"Failed to list generations of {machine}: {e}") from e

    def delete_generation(self, generation: BackupGeneration):
        """
        Delete a generation directory.

        Raises:
            StorageError: If deletion fails
        """
        try:
            if generation.path.exists():
                shutil.rmtree(generation.path)
        except OSError as e:
            raise StorageError(f"Failed to delete generation {generation.path}: {e}") from e

    def store_log(self, log_path) -> Path:
        """
        Copy a run log into the store's log directory.

        Raises:
            StorageError: If the copy fails
        """
        source = Path(log_path)
        dest = self.log_dir / source.name

        try:
            self.log_dir.mkdir(parents=True, exist_ok=True)
            shutil.copy2(source, dest)
        except OSError as e:
            raise StorageError(f"Failed to copy log {source} to {dest}: {e}") from e

        return dest

    def size_of(self, path) -> int:
        """Total size in bytes of all files below path."""
        total = 0
        for root, _dirs, files in os.walk(path):
            for name in files:
                total += os.path.getsize(os.path.join(root, name))
        return total
