"""
Checkpoint provenance.

Every checkpoint vmkuper creates is recorded with its hypervisor id and
the configured tag. Cleanup deletes only checkpoints whose id is recorded
here, so checkpoints created by anyone else are never touched, whatever
their name.
"""

from datetime import datetime
from typing import Optional, Set

from vmkuper import db
from vmkuper.models import CheckpointRecord
from .hypervisor import Checkpoint


class CheckpointProvenance:
    """
    Database-backed registry of checkpoints owned by vmkuper.
    """

    def __init__(self, tag: str):
        """
        Args:
            tag: Provenance tag stored with each record (the checkpoint prefix)
        """
        self.tag = tag

    def record(self, checkpoint: Checkpoint, run_id: Optional[int] = None) -> CheckpointRecord:
        """Record a freshly created checkpoint."""
        record = CheckpointRecord.query.filter_by(checkpoint_id=checkpoint.id).first()
        if record is None:
            record = CheckpointRecord(
                machine_name=checkpoint.machine,
                checkpoint_id=checkpoint.id,
                checkpoint_name=checkpoint.name,
                tag=self.tag,
                run_id=run_id
            )
            db.session.add(record)
        else:
            record.deleted_at = None
        db.session.commit()
        return record

    def owned_ids(self, machine: str) -> Set[str]:
        """Ids of live checkpoints on a machine carrying this tag."""
        records = CheckpointRecord.query.filter_by(
            machine_name=machine,
            tag=self.tag,
            deleted_at=None
        ).all()
        return {record.checkpoint_id for record in records}

    def recorded_ids(self, machine: str) -> Set[str]:
        """Ids of every checkpoint ever recorded on a machine, under any tag."""
        records = CheckpointRecord.query.filter_by(machine_name=machine).all()
        return {record.checkpoint_id for record in records}

    def mark_deleted(self, checkpoint_id: str):
        record = CheckpointRecord.query.filter_by(checkpoint_id=checkpoint_id).first()
        if record and record.deleted_at is None:
            record.deleted_at = datetime.utcnow()
            db.session.commit()

    def forget_missing(self, machine: str, present_ids: Set[str]) -> int:
        """
        Mark records whose checkpoint no longer exists on the hypervisor.

        Returns:
            Number of records marked deleted
        """
        count = 0
        for checkpoint_id in self.owned_ids(machine) - set(present_ids):
            self.mark_deleted(checkpoint_id)
            count += 1
        return count
