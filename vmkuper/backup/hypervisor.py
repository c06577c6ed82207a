"""
Hyper-V control through PowerShell over a remote session.

Every command is sent to the cluster control host and targets the
machine's owning node with -ComputerName, so checkpoints and exports
happen in the owning host's context.
"""

import logging
from dataclasses import dataclass
from enum import Enum
from typing import Any, List, Optional

from .errors import BackupError
from .inventory import MachineDescriptor
from .remote import RemoteSession, RemoteSessionError


logger = logging.getLogger(__name__)


class HypervisorError(BackupError):
    """Raised when a hypervisor command fails."""
    pass


class CheckpointType(Enum):
    PRODUCTION = 'Production'
    STANDARD = 'Standard'


@dataclass
class Checkpoint:
    """A point-in-time capture of a machine."""
    id: str
    name: str
    machine: str
    checkpoint_type: Optional[CheckpointType] = None


def ps_quote(value: str) -> str:
    """Quote a value as a PowerShell single-quoted string literal."""
    return "'" + str(value).replace("'", "''") + "'"


def as_list(result: Any) -> list:
    """ConvertTo-Json emits a bare object for one item and nothing for none."""
    if result is None:
        return []
    if isinstance(result, list):
        return result
    return [result]


CHECKPOINT_FIELDS = "Select-Object @{n='Id';e={$_.Id.ToString()}}, Name, VMName"


class HypervisorControl:
    """
    Checkpoint and export operations for cluster machines.
    """

    def __init__(self, session: RemoteSession):
        """
        Args:
            session: Open session to the cluster control host
        """
        self.session = session

    def _run(self, script: str, action: str) -> Any:
        try:
            return self.session.run_powershell(script)
        except RemoteSessionError as e:
            raise HypervisorError(f"Failed to {action}: {e}") from e

    @staticmethod
    def _target(machine: MachineDescriptor) -> str:
        return f"-ComputerName {ps_quote(machine.owner_host)}"

    def set_checkpoint_type(self, machine: MachineDescriptor, checkpoint_type: CheckpointType):
        """
        Raises:
            HypervisorError: If the machine rejects the checkpoint type
        """
        self._run(
            f"Set-VM {self._target(machine)} -Name {ps_quote(machine.name)} "
            f"-CheckpointType {checkpoint_type.value}",
            f"set checkpoint type {checkpoint_type.value} on {machine.name}"
        )

    def create_checkpoint(self, machine: MachineDescriptor, name: str) -> Checkpoint:
        """
        Create a checkpoint and return it with its hypervisor id.

        Raises:
            HypervisorError: If the checkpoint is not created
        """
        result = self._run(
            f"Checkpoint-VM {self._target(machine)} -Name {ps_quote(machine.name)} "
            f"-SnapshotName {ps_quote(name)} -Passthru | {CHECKPOINT_FIELDS} | ConvertTo-Json",
            f"create checkpoint {name} on {machine.name}"
        )

        items = as_list(result)
        if not items or not items[0].get('Id'):
            raise HypervisorError(f"Checkpoint {name} on {machine.name} was not reported back")

        item = items[0]
        return Checkpoint(id=item['Id'], name=item.get('Name', name), machine=machine.name)

    def export_checkpoint(self, machine: MachineDescriptor, name: str, dest_path: str):
        """
        Export a checkpoint into a directory on the owning host.

        Raises:
            HypervisorError: If the export fails
        """
        self._run(
            f"Export-VMSnapshot {self._target(machine)} -VMName {ps_quote(machine.name)} "
            f"-Name {ps_quote(name)} -Path {ps_quote(dest_path)}",
            f"export checkpoint {name} of {machine.name}"
        )

    def list_checkpoints(self, machine: MachineDescriptor) -> List[Checkpoint]:
        """
        Raises:
            HypervisorError: If the checkpoints cannot be listed
        """
        result = self._run(
            f"Get-VMSnapshot {self._target(machine)} -VMName {ps_quote(machine.name)} "
            f"| {CHECKPOINT_FIELDS} | ConvertTo-Json",
            f"list checkpoints of {machine.name}"
        )

        return [
            Checkpoint(id=item['Id'], name=item.get('Name', ''), machine=item.get('VMName') or machine.name)
            for item in as_list(result)
        ]

    def delete_checkpoint(self, machine: MachineDescriptor, checkpoint: Checkpoint):
        """
        Delete a checkpoint by id.

        Raises:
            HypervisorError: If the deletion fails
        """
        self._run(
            f"Get-VMSnapshot {self._target(machine)} -VMName {ps_quote(machine.name)} "
            f"| Where-Object {{ $_.Id.ToString() -eq {ps_quote(checkpoint.id)} }} | Remove-VMSnapshot",
            f"delete checkpoint {checkpoint.name} of {machine.name}"
        )


def clear_staging(session: RemoteSession, path: str):
    """
    Delete a staging directory on the session's host if it exists.

    Raises:
        RemoteSessionError: If the deletion fails
    """
    session.run_powershell(
        f"if (Test-Path -LiteralPath {ps_quote(path)}) "
        f"{{ Remove-Item -LiteralPath {ps_quote(path)} -Recurse -Force }}"
    )
