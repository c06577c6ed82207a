"""
Backup run routes - View backup run history and trigger runs.
"""

from flask import Blueprint, jsonify, request
from datetime import datetime, timedelta

from vmkuper.models import BackupRun, MachineBackup
from vmkuper.scheduler import get_scheduled_jobs, is_scheduler_running, trigger_backup_now


bp = Blueprint('runs', __name__, url_prefix='/api/runs')

RUN_STATUSES = ['running', 'success', 'partial', 'failed', 'empty']


def _isoformat(value):
    return value.isoformat() if value else None


def _run_to_dict(run):
    duration_seconds = None
    if run.completed_at:
        duration_seconds = int((run.completed_at - run.started_at).total_seconds())

    return {
        'id': run.id,
        'run_date': run.run_date,
        'status': run.status,
        'started_at': _isoformat(run.started_at),
        'completed_at': _isoformat(run.completed_at),
        'duration_seconds': duration_seconds,
        'machines_total': run.machines_total,
        'machines_failed': run.machines_failed,
        'error_message': run.error_message,
        'log_path': run.log_path
    }


def _machine_to_dict(machine):
    return {
        'id': machine.id,
        'machine_name': machine.machine_name,
        'owner_host': machine.owner_host,
        'priority': machine.priority,
        'status': machine.status,
        'failed_step': machine.failed_step,
        'error_message': machine.error_message,
        'checkpoint_type': machine.checkpoint_type,
        'generation_path': machine.generation_path,
        'size_mb': round(machine.size_bytes / 1024 / 1024, 2) if machine.size_bytes else None,
        'started_at': _isoformat(machine.started_at),
        'completed_at': _isoformat(machine.completed_at),
        'has_logs': bool(machine.logs)
    }


@bp.route('/', methods=['GET'])
def list_runs():
    """
    Get backup runs with filtering and pagination.

    Query params:
        - status: Filter by run status
        - days: Only show runs from last N days
        - limit: Max number of records (default: 50, max: 200)
        - offset: Number of records to skip (default: 0)

    Returns:
        JSON with run records and metadata
    """
    status_filter = request.args.get('status')
    days_filter = request.args.get('days', type=int)
    limit = request.args.get('limit', 50, type=int)
    offset = request.args.get('offset', 0, type=int)

    # Enforce limits
    limit = max(1, min(limit, 200))
    if offset < 0:
        offset = 0

    query = BackupRun.query

    if status_filter:
        if status_filter not in RUN_STATUSES:
            return jsonify({'error': 'Invalid status filter'}), 400
        query = query.filter(BackupRun.status == status_filter)

    if days_filter and days_filter > 0:
        cutoff_date = datetime.utcnow() - timedelta(days=days_filter)
        query = query.filter(BackupRun.started_at >= cutoff_date)

    total_count = query.count()

    runs = query.order_by(
        BackupRun.started_at.desc(), BackupRun.id.desc()
    ).limit(limit).offset(offset).all()

    return jsonify({
        'records': [_run_to_dict(run) for run in runs],
        'total': total_count,
        'limit': limit,
        'offset': offset
    })


@bp.route('/<int:run_id>', methods=['GET'])
def get_run_detail(run_id):
    """
    Get a run with the outcome of every machine it attempted.
    """
    run = BackupRun.query.get_or_404(run_id)

    data = _run_to_dict(run)
    data['machines'] = [_machine_to_dict(machine) for machine in run.machines]
    return jsonify(data)


@bp.route('/<int:run_id>/machines/<machine_name>/logs', methods=['GET'])
def get_machine_logs(run_id, machine_name):
    """
    Get the workflow transcript of one machine in a run.
    """
    machine = MachineBackup.query.filter_by(run_id=run_id, machine_name=machine_name).first_or_404()

    return jsonify({
        'run_id': run_id,
        'machine_name': machine.machine_name,
        'status': machine.status,
        'logs': machine.logs or 'No logs available'
    })


@bp.route('/summary', methods=['GET'])
def get_runs_summary():
    """
    Get summary statistics for backup runs.

    Query params:
        - days: Calculate summary for last N days (default: 30)
    """
    days = request.args.get('days', 30, type=int)
    if days < 1:
        days = 30
    if days > 365:
        days = 365

    cutoff_date = datetime.utcnow() - timedelta(days=days)
    query = BackupRun.query.filter(BackupRun.started_at >= cutoff_date)

    counts = {status: query.filter(BackupRun.status == status).count() for status in RUN_STATUSES}

    machine_query = MachineBackup.query.filter(MachineBackup.started_at >= cutoff_date)
    machines_success = machine_query.filter(MachineBackup.status == 'success').count()
    machines_failed = machine_query.filter(MachineBackup.status == 'failed').count()

    completed = machines_success + machines_failed
    success_rate = round((machines_success / completed * 100) if completed > 0 else 0, 1)

    recent = BackupRun.query.order_by(BackupRun.started_at.desc(), BackupRun.id.desc()).first()

    return jsonify({
        'days': days,
        'total_runs': query.count(),
        'runs_by_status': counts,
        'machines_successful': machines_success,
        'machines_failed': machines_failed,
        'machine_success_rate': success_rate,
        'most_recent': _run_to_dict(recent) if recent else None
    })


@bp.route('/scheduler', methods=['GET'])
def get_scheduler_status():
    """Scheduler state and scheduled jobs."""
    return jsonify({
        'running': is_scheduler_running(),
        'jobs': get_scheduled_jobs()
    })


@bp.route('/trigger', methods=['POST'])
def trigger_run():
    """
    Start a backup run through the scheduler.

    Returns:
        202 with the scheduler job id, or 503 if the scheduler is not running
    """
    try:
        job_id = trigger_backup_now()
    except RuntimeError as e:
        return jsonify({'error': str(e)}), 503

    return jsonify({'message': 'Backup run triggered', 'job_id': job_id}), 202
