"""
Cluster inventory - lists the machines that need a backup.
"""

import logging
from dataclasses import dataclass
from typing import List

from .errors import RunFatalError
from .remote import RemoteSession, RemoteSessionError


logger = logging.getLogger(__name__)


class InventoryUnavailable(RunFatalError):
    """Raised when the cluster cannot be queried."""
    pass


@dataclass(frozen=True)
class MachineDescriptor:
    """A protected machine as reported by the cluster."""
    name: str
    owner_host: str
    backup_priority: int
    checkpoint_capable: bool = True


INVENTORY_SCRIPT = (
    "Get-ClusterGroup | Where-Object { $_.GroupType -eq 'VirtualMachine' } "
    "| Select-Object @{n='Name';e={$_.Name}}, "
    "@{n='OwnerNode';e={$_.OwnerNode.Name}}, "
    "@{n='Priority';e={[int]$_.Priority}} "
    "| ConvertTo-Json"
)


def sort_by_priority(machines: List[MachineDescriptor]) -> List[MachineDescriptor]:
    """Highest priority first. sorted() is stable, so ties keep cluster order."""
    return sorted(machines, key=lambda m: m.backup_priority, reverse=True)


class ClusterInventory:
    """
    Queries the failover cluster for virtual machine groups.
    """

    def __init__(self, session: RemoteSession):
        """
        Args:
            session: Open session to the cluster control host
        """
        self.session = session

    def list(self) -> List[MachineDescriptor]:
        """
        List protected machines, highest backup priority first.

        Returns:
            Machine descriptors; empty if the cluster has no machines

        Raises:
            InventoryUnavailable: If the cluster cannot be queried
        """
        try:
            result = self.session.run_powershell(INVENTORY_SCRIPT)
        except RemoteSessionError as e:
            raise InventoryUnavailable(f"Cluster inventory query failed: {e}") from e

        if result is None:
            items = []
        elif isinstance(result, list):
            items = result
        else:
            items = [result]

        machines = []
        for item in items:
            try:
                machines.append(MachineDescriptor(
                    name=item['Name'],
                    owner_host=item['OwnerNode'],
                    backup_priority=int(item.get('Priority') or 0)
                ))
            except (KeyError, TypeError, ValueError) as e:
                raise InventoryUnavailable(f"Unexpected cluster group entry {item!r}: {e}") from e

        logger.info(f"Cluster reports {len(machines)} protected machines")
        return sort_by_priority(machines)
