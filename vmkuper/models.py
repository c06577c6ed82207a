from datetime import datetime
from vmkuper import db


class BackupRun(db.Model):
    """One execution of the orchestrator across all protected machines"""
    __tablename__ = 'backup_runs'

    id = db.Column(db.Integer, primary_key=True)
    run_date = db.Column(db.String(32), nullable=False, index=True)
    status = db.Column(db.String(20), nullable=False)  # running, success, partial, failed, empty
    started_at = db.Column(db.DateTime, default=datetime.utcnow, nullable=False)
    completed_at = db.Column(db.DateTime)
    machines_total = db.Column(db.Integer, default=0, nullable=False)
    machines_failed = db.Column(db.Integer, default=0, nullable=False)
    error_message = db.Column(db.Text)
    log_path = db.Column(db.String(500))  # Copy of the run log in the backup store

    # Relationship
    machines = db.relationship('MachineBackup', back_populates='run', cascade='all, delete-orphan',
                               lazy='dynamic', order_by='MachineBackup.id')

    def __repr__(self):
        return f'<BackupRun {self.run_date} status={self.status}>'


class MachineBackup(db.Model):
    """Outcome of one machine's workflow within a run"""
    __tablename__ = 'machine_backups'

    id = db.Column(db.Integer, primary_key=True)
    run_id = db.Column(db.Integer, db.ForeignKey('backup_runs.id'), nullable=False)
    machine_name = db.Column(db.String(255), nullable=False, index=True)
    owner_host = db.Column(db.String(255))
    priority = db.Column(db.Integer, default=0, nullable=False)
    status = db.Column(db.String(20), nullable=False)  # running, success, failed
    failed_step = db.Column(db.String(50))
    error_message = db.Column(db.Text)
    checkpoint_type = db.Column(db.String(20))
    generation_path = db.Column(db.String(500))
    size_bytes = db.Column(db.BigInteger)
    started_at = db.Column(db.DateTime, default=datetime.utcnow, nullable=False)
    completed_at = db.Column(db.DateTime)
    logs = db.Column(db.Text)  # Workflow transcript

    # Relationship
    run = db.relationship('BackupRun', back_populates='machines')

    def __repr__(self):
        return f'<MachineBackup {self.machine_name} status={self.status}>'


class CheckpointRecord(db.Model):
    """Provenance of checkpoints created by vmkuper"""
    __tablename__ = 'checkpoint_records'

    id = db.Column(db.Integer, primary_key=True)
    machine_name = db.Column(db.String(255), nullable=False, index=True)
    checkpoint_id = db.Column(db.String(64), nullable=False, unique=True)  # Hypervisor id
    checkpoint_name = db.Column(db.String(255), nullable=False)
    tag = db.Column(db.String(100), nullable=False)
    run_id = db.Column(db.Integer, db.ForeignKey('backup_runs.id'))
    created_at = db.Column(db.DateTime, default=datetime.utcnow, nullable=False)
    deleted_at = db.Column(db.DateTime)

    def __repr__(self):
        return f'<CheckpointRecord {self.machine_name}/{self.checkpoint_name} deleted={self.deleted_at is not None}>'
