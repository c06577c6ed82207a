"""
Backup orchestrator - runs the snapshot workflow across the cluster.

Workflow:
1. Open the per-run log artifact
2. Check that the backup store and log locations are writable
3. Open a control session and list protected machines
4. Run the snapshot workflow for each machine, highest priority first
5. Record the run outcome and copy the run log into the store

A failure in steps 2-3 aborts the run. A failure of one machine never
stops the others.
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from typing import Callable, Dict, List, Optional

from flask import current_app

from vmkuper import db
from vmkuper.models import BackupRun
from .errors import RunFatalError
from .hypervisor import HypervisorControl
from .inventory import ClusterInventory, InventoryUnavailable, MachineDescriptor
from .provenance import CheckpointProvenance
from .remote import RemoteSessionError, RemoteSessionFactory, SSHSettings
from .retention import RetentionManager
from .storage import BackupStore, StorageAccessChecker, StorageError
from .workflow import SnapshotWorkflow


logger = logging.getLogger(__name__)

EXIT_OK = 0
EXIT_RUN_FAILED = 1
EXIT_MACHINES_FAILED = 2


@dataclass
class RunSummary:
    """Outcome of one run."""
    run_date: str
    status: str = 'running'  # success, partial, failed, empty
    run_id: Optional[int] = None
    succeeded: List[str] = field(default_factory=list)
    failed: Dict[str, str] = field(default_factory=dict)
    error: Optional[str] = None
    log_path: Optional[str] = None

    @property
    def exit_code(self) -> int:
        if self.status == 'failed':
            return EXIT_RUN_FAILED
        if self.status == 'partial':
            return EXIT_MACHINES_FAILED
        return EXIT_OK


class RunLog:
    """
    Per-run log file, attached to the vmkuper logger for the run's duration.
    """

    FORMAT = '[%(asctime)s] %(levelname)s [%(name)s] %(message)s'

    def __init__(self, log_dir, run_date: str, logger_name: str = 'vmkuper'):
        started = datetime.now().strftime('%H%M%S')
        self.path = Path(log_dir) / f"vmkuper-{run_date}-{started}.log"
        self.logger_name = logger_name
        self.handler = None
        self._previous_level = None

    def start(self):
        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            self.handler = logging.FileHandler(self.path, encoding='utf-8')
        except OSError as e:
            logger.warning(f"Run log unavailable at {self.path}: {e}")
            self.handler = None
            return

        self.handler.setLevel(logging.INFO)
        self.handler.setFormatter(logging.Formatter(self.FORMAT))

        run_logger = logging.getLogger(self.logger_name)
        if run_logger.getEffectiveLevel() > logging.INFO:
            self._previous_level = run_logger.level
            run_logger.setLevel(logging.INFO)
        run_logger.addHandler(self.handler)

    def stop(self):
        if self.handler is None:
            return
        run_logger = logging.getLogger(self.logger_name)
        run_logger.removeHandler(self.handler)
        if self._previous_level is not None:
            run_logger.setLevel(self._previous_level)
            self._previous_level = None
        self.handler.close()
        self.handler = None

    @property
    def exists(self) -> bool:
        return self.path.exists()


class BackupOrchestrator:
    """
    Drives one backup run.
    """

    def __init__(self, *,
                 store: BackupStore,
                 checker: StorageAccessChecker,
                 required_dirs,
                 sessions: RemoteSessionFactory,
                 control_host: str,
                 retention: RetentionManager,
                 provenance: CheckpointProvenance,
                 checkpoint_prefix: str,
                 staging_root: str,
                 run_date: str,
                 run_log: Optional[RunLog] = None,
                 inventory_factory: Callable = ClusterInventory,
                 hypervisor_factory: Callable = HypervisorControl,
                 workflow_factory: Callable = SnapshotWorkflow):
        self.store = store
        self.checker = checker
        self.required_dirs = set(required_dirs)
        self.sessions = sessions
        self.control_host = control_host
        self.retention = retention
        self.provenance = provenance
        self.checkpoint_prefix = checkpoint_prefix
        self.staging_root = staging_root
        self.run_date = run_date
        self.run_log = run_log
        self.inventory_factory = inventory_factory
        self.hypervisor_factory = hypervisor_factory
        self.workflow_factory = workflow_factory

        self.run_record = None
        self.summary = RunSummary(run_date=run_date)

    def run(self) -> RunSummary:
        """
        Execute the run.

        Returns:
            RunSummary of the run

        Raises:
            RunFatalError: If the store is not usable or the cluster
                cannot be queried; no machine is processed in that case
        """
        if self.run_log:
            self.run_log.start()

        self.run_record = BackupRun(
            run_date=self.run_date,
            status='running',
            started_at=datetime.utcnow()
        )
        db.session.add(self.run_record)
        db.session.commit()
        self.summary.run_id = self.run_record.id

        logger.info(f"Starting backup run {self.run_date}")

        try:
            self._execute_run()

        except RunFatalError as e:
            self.summary.status = 'failed'
            self.summary.error = str(e)
            logger.error(f"Backup run aborted: {e}")
            raise

        finally:
            self._finish_run()

        return self.summary

    def _execute_run(self):
        self.checker.check(self.required_dirs)
        logger.info(f"Storage locations verified: {', '.join(str(p) for p in sorted(self.required_dirs))}")

        try:
            control_session = self.sessions.open(self.control_host)
        except RemoteSessionError as e:
            raise InventoryUnavailable(f"Cannot reach cluster control host {self.control_host}: {e}") from e

        with control_session:
            machines = self.inventory_factory(control_session).list()

            if not machines:
                self.summary.status = 'empty'
                logger.info("No protected machines found, nothing to back up")
                return

            logger.info(f"Backing up {len(machines)} machines: {', '.join(m.name for m in machines)}")
            hypervisor = self.hypervisor_factory(control_session)

            for machine in machines:
                self._run_machine(machine, hypervisor)

        self.summary.status = 'partial' if self.summary.failed else 'success'

    def _run_machine(self, machine: MachineDescriptor, hypervisor):
        try:
            workflow = self.workflow_factory(
                machine,
                self.run_date,
                run_id=self.run_record.id,
                store=self.store,
                retention=self.retention,
                hypervisor=hypervisor,
                sessions=self.sessions,
                provenance=self.provenance,
                checkpoint_prefix=self.checkpoint_prefix,
                staging_root=self.staging_root
            )
            record = workflow.execute()

        except Exception as e:
            db.session.rollback()
            self.summary.failed[machine.name] = f"Unexpected error: {e}"
            logger.exception(f"{machine.name}: workflow raised unexpectedly")
            return

        if record.status == 'success':
            self.summary.succeeded.append(machine.name)
        else:
            self.summary.failed[machine.name] = record.error_message or 'failed'

    def _finish_run(self):
        summary = self.summary
        record = self.run_record

        if summary.status == 'running':
            summary.status = 'failed'
            summary.error = summary.error or 'Run interrupted'

        logger.info(
            f"Backup run {self.run_date} finished: {summary.status}. "
            f"Succeeded: {len(summary.succeeded)}, Failed: {len(summary.failed)}"
        )
        for name, error in summary.failed.items():
            logger.warning(f"{name}: {error}")

        if self.run_log:
            self.run_log.stop()
            if self.run_log.exists:
                try:
                    summary.log_path = str(self.store.store_log(self.run_log.path))
                except StorageError as e:
                    logger.warning(f"Failed to copy run log into the backup store: {e}")

        record.status = summary.status
        record.completed_at = datetime.utcnow()
        record.machines_total = len(summary.succeeded) + len(summary.failed)
        record.machines_failed = len(summary.failed)
        record.error_message = summary.error
        record.log_path = summary.log_path
        db.session.commit()


def required_dirs(config) -> set:
    """Locations that must be writable before a run starts."""
    store_root = Path(config['BACKUP_STORE_DIR'])
    return {
        store_root,
        store_root / config['STORE_LOG_SUBDIR'],
        Path(config['LOCAL_LOG_DIR'])
    }


def create_orchestrator(config, run_date: Optional[str] = None) -> BackupOrchestrator:
    """
    Build an orchestrator from application configuration.

    Args:
        config: Flask config mapping
        run_date: Override of the run date (defaults to today)
    """
    if run_date is None:
        run_date = datetime.now().strftime(config['RUN_DATE_FORMAT'])

    store = BackupStore(config['BACKUP_STORE_DIR'], config['STORE_LOG_SUBDIR'])

    return BackupOrchestrator(
        store=store,
        checker=StorageAccessChecker(),
        required_dirs=required_dirs(config),
        sessions=RemoteSessionFactory(SSHSettings.from_config(config)),
        control_host=config['CLUSTER_HOST'],
        retention=RetentionManager(store, int(config['RETAIN_COUNT'])),
        provenance=CheckpointProvenance(config['CHECKPOINT_PREFIX']),
        checkpoint_prefix=config['CHECKPOINT_PREFIX'],
        staging_root=config['REMOTE_STAGING_DIR'],
        run_date=run_date,
        run_log=RunLog(config['LOCAL_LOG_DIR'], run_date)
    )


def execute_backup_run(run_date: Optional[str] = None) -> RunSummary:
    """
    Execute one backup run with the current app's configuration.

    Must be called inside an application context. Run-fatal errors are
    returned as a failed summary instead of being raised.

    Returns:
        RunSummary of the run
    """
    orchestrator = create_orchestrator(current_app.config, run_date)
    try:
        return orchestrator.run()
    except RunFatalError:
        return orchestrator.summary
