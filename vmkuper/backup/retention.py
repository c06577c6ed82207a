"""
Retention policy enforcement for backup generations.

Keeps the newest `retain_count` generations of a machine and evicts the
rest, oldest first.
"""

import logging
from typing import List, Sequence

from .storage import BackupStore, BackupGeneration


logger = logging.getLogger(__name__)


def sort_generations(generations: Sequence[BackupGeneration]) -> List[BackupGeneration]:
    """
    Order generations oldest first.

    Generations sharing a creation timestamp are ordered by name, which
    embeds the run date, so the order is total and repeatable.
    """
    return sorted(generations, key=lambda g: (g.created_at, g.name))


class RetentionManager:
    """
    Evicts the oldest backup generations beyond the retention count.
    """

    def __init__(self, store: BackupStore, retain_count: int):
        """
        Initialize retention manager.

        Args:
            store: Backup store holding the generations
            retain_count: Number of generations to keep per machine (>= 1)
        """
        if retain_count < 1:
            raise ValueError(f"retain_count must be at least 1, got {retain_count}")

        self.store = store
        self.retain_count = retain_count

    def evict(self, generations: Sequence[BackupGeneration], keep: int = None) -> List[BackupGeneration]:
        """
        Delete the oldest generations until at most `keep` remain.

        Args:
            generations: Generations of one machine
            keep: Number to keep (defaults to the configured retain count)

        Returns:
            List of deleted generations

        Raises:
            StorageError: If a deletion fails; generations deleted before
                the failure stay deleted
        """
        if keep is None:
            keep = self.retain_count

        remaining = sort_generations(generations)
        deleted = []

        while len(remaining) > keep:
            oldest = remaining[0]
            self.store.delete_generation(oldest)
            logger.info(f"Evicted generation {oldest.name} (created {oldest.created_at.isoformat()})")
            deleted.append(oldest)
            remaining.pop(0)

        return deleted

    def enforce(self, machine: str) -> List[BackupGeneration]:
        """
        Enforce the retention count on a machine's directory in the store.

        Returns:
            List of deleted generations

        Raises:
            StorageError: If listing or deletion fails
        """
        generations = self.store.list_generations(machine)
        logger.debug(f"{machine}: {len(generations)} generations, keeping {self.retain_count}")
        return self.evict(generations)
