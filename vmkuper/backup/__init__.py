"""
Backup module for vmkuper.

This module handles the core backup functionality including:
- Storage preflight checks and the backup store layout
- Cluster inventory
- Hypervisor checkpoints and exports
- Remote sessions (SSH/SFTP)
- The per-machine snapshot workflow
- Retention of backup generations
- Run orchestration
"""

from .errors import BackupError, RunFatalError, MachineFatalError, BestEffortError
from .storage import StorageAccessChecker, BackupStore, BackupGeneration, InaccessibleLocation, StorageError
from .inventory import ClusterInventory, MachineDescriptor, InventoryUnavailable
from .hypervisor import HypervisorControl, Checkpoint, CheckpointType, HypervisorError
from .remote import RemoteSession, RemoteSessionFactory, RemoteSessionError, SSHSettings
from .retention import RetentionManager
from .workflow import SnapshotWorkflow, WorkflowContext, WorkflowState
from .orchestrator import BackupOrchestrator, RunSummary, execute_backup_run

__all__ = [
    'BackupError',
    'RunFatalError',
    'MachineFatalError',
    'BestEffortError',
    'StorageAccessChecker',
    'BackupStore',
    'BackupGeneration',
    'InaccessibleLocation',
    'StorageError',
    'ClusterInventory',
    'MachineDescriptor',
    'InventoryUnavailable',
    'HypervisorControl',
    'Checkpoint',
    'CheckpointType',
    'HypervisorError',
    'RemoteSession',
    'RemoteSessionFactory',
    'RemoteSessionError',
    'SSHSettings',
    'RetentionManager',
    'SnapshotWorkflow',
    'WorkflowContext',
    'WorkflowState',
    'BackupOrchestrator',
    'RunSummary',
    'execute_backup_run'
]
