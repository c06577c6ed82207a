"""
Snapshot workflow - backs up one machine.

Steps, each gated on the previous one:
1. Prepare the machine's directory in the backup store
2. Select the checkpoint type (production, falling back to standard)
3. Create the checkpoint
4. Open a remote session to the owning host
5. Clear stale remote staging (best effort)
6. Export the checkpoint to remote staging
7. Transfer the export into the backup store as a new generation

Cleanup runs after the last step or the first failing one: clear remote
staging, close the session, delete vmkuper's checkpoints of the machine
and enforce retention. Cleanup failures are logged and never propagate.
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from pathlib import Path
from typing import Callable, List, Optional

from vmkuper import db
from vmkuper.models import MachineBackup
from .errors import BestEffortError, MachineFatalError
from .hypervisor import Checkpoint, CheckpointType, HypervisorControl, HypervisorError, clear_staging
from .inventory import MachineDescriptor
from .provenance import CheckpointProvenance
from .remote import RemoteSession, RemoteSessionFactory
from .retention import RetentionManager
from .storage import BackupStore


logger = logging.getLogger(__name__)


class WorkflowState(Enum):
    PENDING = 'pending'
    PREPARE_TARGET_DIR = 'prepare_target_dir'
    SELECT_CHECKPOINT_TYPE = 'select_checkpoint_type'
    CREATE_CHECKPOINT = 'create_checkpoint'
    OPEN_REMOTE_SESSION = 'open_remote_session'
    CLEAR_REMOTE_STAGING = 'clear_remote_staging'
    EXPORT_CHECKPOINT = 'export_checkpoint'
    TRANSFER_TO_STORE = 'transfer_to_store'
    COMPLETE = 'complete'
    FAILED = 'failed'
    CLEANUP = 'cleanup'


@dataclass
class WorkflowContext:
    """
    Everything one machine's workflow knows, passed to every step.

    Fields set by a step stay None when that step never ran, and cleanup
    only acts on what is actually there.
    """
    machine: MachineDescriptor
    run_date: str
    checkpoint_name: str
    staging_path: str
    state: WorkflowState = WorkflowState.PENDING
    transitions: List[WorkflowState] = field(default_factory=list)
    generation_path: Optional[Path] = None
    checkpoint_type: Optional[CheckpointType] = None
    checkpoint: Optional[Checkpoint] = None
    session: Optional[RemoteSession] = None
    error: Optional[MachineFatalError] = None
    cleanup_errors: List[BestEffortError] = field(default_factory=list)
    deleted_checkpoints: List[Checkpoint] = field(default_factory=list)
    evicted: List[str] = field(default_factory=list)

    def transition(self, state: WorkflowState):
        self.state = state
        self.transitions.append(state)

    @property
    def succeeded(self) -> bool:
        return self.error is None and WorkflowState.COMPLETE in self.transitions


class SnapshotWorkflow:
    """
    Runs the backup steps for one machine and guarantees cleanup.
    """

    def __init__(self, machine: MachineDescriptor, run_date: str, *,
                 run_id: int,
                 store: BackupStore,
                 retention: RetentionManager,
                 hypervisor: HypervisorControl,
                 sessions: RemoteSessionFactory,
                 provenance: CheckpointProvenance,
                 checkpoint_prefix: str,
                 staging_root: str):
        """
        Initialize workflow for one machine.

        Args:
            machine: Machine to back up
            run_date: Run date string, part of checkpoint and generation names
            run_id: BackupRun id the outcome is recorded against
            store: Backup store
            retention: Retention manager applied at cleanup
            hypervisor: Checkpoint and export operations
            sessions: Opens sessions to the owning host
            provenance: Registry of checkpoints created by vmkuper
            checkpoint_prefix: Prefix of checkpoint names
            staging_root: Remote staging root on the owning host
        """
        self.run_id = run_id
        self.store = store
        self.retention = retention
        self.hypervisor = hypervisor
        self.sessions = sessions
        self.provenance = provenance

        self.context = WorkflowContext(
            machine=machine,
            run_date=run_date,
            checkpoint_name=f"{checkpoint_prefix}{run_date}",
            staging_path=f"{staging_root.rstrip('/')}/{machine.name}"
        )
        self.history_record = None
        self.logs = []

    def execute(self) -> MachineBackup:
        """
        Execute the workflow.

        Returns:
            MachineBackup record with the outcome
        """
        ctx = self.context
        machine = ctx.machine

        self.history_record = MachineBackup(
            run_id=self.run_id,
            machine_name=machine.name,
            owner_host=machine.owner_host,
            priority=machine.backup_priority,
            status='running',
            started_at=datetime.utcnow()
        )
        db.session.add(self.history_record)
        db.session.commit()

        self._log(f"Starting backup of {machine.name} (owner: {machine.owner_host}, priority: {machine.backup_priority})")

        try:
            self._execute_steps(ctx)
            ctx.transition(WorkflowState.COMPLETE)
            self._log("Backup completed successfully")

        except MachineFatalError as e:
            ctx.error = e
            ctx.transition(WorkflowState.FAILED)
            self._log(f"Backup failed: {e}")

        finally:
            self._cleanup(ctx)
            self._finish_record(ctx)

        return self.history_record

    def _execute_steps(self, ctx: WorkflowContext):
        self._step(ctx, WorkflowState.PREPARE_TARGET_DIR, self._prepare_target_dir)
        self._step(ctx, WorkflowState.SELECT_CHECKPOINT_TYPE, self._select_checkpoint_type)
        self._step(ctx, WorkflowState.CREATE_CHECKPOINT, self._create_checkpoint)
        self._step(ctx, WorkflowState.OPEN_REMOTE_SESSION, self._open_remote_session)

        ctx.transition(WorkflowState.CLEAR_REMOTE_STAGING)
        self._best_effort(ctx, "clear stale remote staging", self._clear_staging, record=False)

        self._step(ctx, WorkflowState.EXPORT_CHECKPOINT, self._export_checkpoint)
        self._step(ctx, WorkflowState.TRANSFER_TO_STORE, self._transfer_to_store)

    def _step(self, ctx: WorkflowContext, state: WorkflowState, action: Callable[[WorkflowContext], None]):
        """
        Run a fatal step.

        Raises:
            MachineFatalError: If the step raises anything
        """
        ctx.transition(state)
        try:
            action(ctx)
        except Exception as e:
            raise MachineFatalError(ctx.machine.name, state.value, str(e)) from e
        finally:
            self._flush_logs_to_db()

    def _prepare_target_dir(self, ctx: WorkflowContext):
        ctx.generation_path = self.store.prepare_target_dir(ctx.machine.name, ctx.run_date)
        self._log(f"Target directory: {ctx.generation_path}")

    def _select_checkpoint_type(self, ctx: WorkflowContext):
        if ctx.machine.checkpoint_capable:
            try:
                self.hypervisor.set_checkpoint_type(ctx.machine, CheckpointType.PRODUCTION)
                ctx.checkpoint_type = CheckpointType.PRODUCTION
                self._log("Checkpoint type: Production")
                return
            except HypervisorError as e:
                self._log(f"Production checkpoints unavailable, falling back to Standard: {e}")

        self.hypervisor.set_checkpoint_type(ctx.machine, CheckpointType.STANDARD)
        ctx.checkpoint_type = CheckpointType.STANDARD
        self._log("Checkpoint type: Standard")

    def _create_checkpoint(self, ctx: WorkflowContext):
        self._log(f"Creating checkpoint {ctx.checkpoint_name}")
        try:
            checkpoint = self.hypervisor.create_checkpoint(ctx.machine, ctx.checkpoint_name)
        except Exception:
            # The checkpoint may exist even though its id never came back
            self._best_effort(ctx, "look up unreported checkpoint", self._adopt_unreported_checkpoint,
                              record=False)
            raise

        checkpoint.checkpoint_type = ctx.checkpoint_type
        ctx.checkpoint = checkpoint
        self.provenance.record(checkpoint, run_id=self.run_id)
        self._log(f"Checkpoint created: {checkpoint.name} ({checkpoint.id})")

    def _adopt_unreported_checkpoint(self, ctx: WorkflowContext):
        """Record checkpoints named exactly as this run's one that nobody has recorded yet."""
        recorded = self.provenance.recorded_ids(ctx.machine.name)
        for checkpoint in self.hypervisor.list_checkpoints(ctx.machine):
            if checkpoint.name != ctx.checkpoint_name or checkpoint.id in recorded:
                continue
            self.provenance.record(checkpoint, run_id=self.run_id)
            self._log(f"Recorded unreported checkpoint {checkpoint.name} ({checkpoint.id})")

    def _open_remote_session(self, ctx: WorkflowContext):
        ctx.session = self.sessions.open(ctx.machine.owner_host)
        self._log(f"Opened remote session to {ctx.machine.owner_host}")

    def _clear_staging(self, ctx: WorkflowContext):
        clear_staging(ctx.session, ctx.staging_path)
        self._log(f"Cleared remote staging {ctx.staging_path}")

    def _export_checkpoint(self, ctx: WorkflowContext):
        self._log(f"Exporting checkpoint to {ctx.staging_path}")
        self.hypervisor.export_checkpoint(ctx.machine, ctx.checkpoint_name, ctx.staging_path)
        self._log("Export finished")

    def _transfer_to_store(self, ctx: WorkflowContext):
        machine = ctx.machine.name
        incoming = self.store.incoming_path(machine, ctx.run_date)

        self._log(f"Transferring {ctx.staging_path} from {ctx.machine.owner_host}")
        try:
            ctx.session.copy_from(ctx.staging_path, incoming)
        except Exception:
            self._best_effort(ctx, "remove partial transfer",
                              lambda c: self.store.discard_incoming(machine, c.run_date), record=False)
            raise

        ctx.generation_path = self.store.commit_generation(machine, ctx.run_date)
        size = self.store.size_of(ctx.generation_path)
        self.history_record.generation_path = str(ctx.generation_path)
        self.history_record.size_bytes = size
        self._log(f"Stored generation {ctx.generation_path.name} ({size / 1024 / 1024:.2f} MB)")

    def _cleanup(self, ctx: WorkflowContext):
        """Release everything the steps acquired. Never raises."""
        ctx.transitions.append(WorkflowState.CLEANUP)

        if ctx.session is not None:
            self._best_effort(ctx, "clear remote staging", self._clear_staging)
            self._best_effort(ctx, "close remote session", self._close_session)

        self._best_effort(ctx, "delete checkpoints", self._delete_checkpoints)
        self._best_effort(ctx, "enforce retention", self._enforce_retention)

    def _close_session(self, ctx: WorkflowContext):
        session = ctx.session
        ctx.session = None
        session.close()
        self._log("Closed remote session")

    def _delete_checkpoints(self, ctx: WorkflowContext):
        owned = set(self.provenance.owned_ids(ctx.machine.name))
        if ctx.checkpoint is not None:
            owned.add(ctx.checkpoint.id)

        if not owned:
            return

        present = self.hypervisor.list_checkpoints(ctx.machine)
        for checkpoint in present:
            if checkpoint.id not in owned:
                continue
            self._best_effort(ctx, f"delete checkpoint {checkpoint.name}",
                              lambda c, cp=checkpoint: self._delete_checkpoint(c, cp))

        stale = self.provenance.forget_missing(ctx.machine.name, {cp.id for cp in present})
        if stale:
            self._log(f"Forgot {stale} checkpoint records no longer present on the hypervisor")

    def _delete_checkpoint(self, ctx: WorkflowContext, checkpoint: Checkpoint):
        self.hypervisor.delete_checkpoint(ctx.machine, checkpoint)
        self.provenance.mark_deleted(checkpoint.id)
        ctx.deleted_checkpoints.append(checkpoint)
        self._log(f"Deleted checkpoint {checkpoint.name} ({checkpoint.id})")

    def _enforce_retention(self, ctx: WorkflowContext):
        evicted = self.retention.enforce(ctx.machine.name)
        ctx.evicted.extend(generation.name for generation in evicted)
        for generation in evicted:
            self._log(f"Evicted generation {generation.name}")

    def _best_effort(self, ctx: WorkflowContext, description: str,
                     action: Callable[[WorkflowContext], None], record: bool = True):
        """Run an action whose failure is logged and suppressed."""
        try:
            action(ctx)
        except Exception as e:
            error = BestEffortError(f"Failed to {description}: {e}")
            if record:
                ctx.cleanup_errors.append(error)
            self._log(f"Warning: {error}")
            logger.warning(f"{ctx.machine.name}: {error}")

    def _finish_record(self, ctx: WorkflowContext):
        record = self.history_record
        record.completed_at = datetime.utcnow()
        record.checkpoint_type = ctx.checkpoint_type.value if ctx.checkpoint_type else None

        if ctx.succeeded:
            record.status = 'success'
        else:
            record.status = 'failed'
            record.failed_step = ctx.error.step if ctx.error else None
            record.error_message = str(ctx.error) if ctx.error else None

        record.logs = '\n'.join(self.logs)
        db.session.commit()

    def _log(self, message: str):
        """
        Add a log message with timestamp.

        Args:
            message: Log message
        """
        timestamp = datetime.utcnow().strftime('%Y-%m-%d %H:%M:%S UTC')
        self.logs.append(f"[{timestamp}] {message}")
        logger.info(f"{self.context.machine.name}: {message}")

    def _flush_logs_to_db(self):
        """Flush accumulated logs to database for real-time visibility."""
        if self.history_record:
            self.history_record.logs = '\n'.join(self.logs)
            db.session.commit()
