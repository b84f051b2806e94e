"""
Backup routes - list available backups, trigger backups, restore and delete.
"""

import logging
from flask import Blueprint, jsonify, request, current_app

from periodicbackup.models import BackupRun, RunLease, load_configuration, run_lease
from periodicbackup.backup.catalog import available_backups, delete_backup, get_backup, get_backup_by_hash
from periodicbackup.backup.errors import ConfigError, NotFoundError, RunInProgressError
from periodicbackup.backup.executor import launch_backup
from periodicbackup.backup.restore import launch_restore
from periodicbackup.scheduler import is_scheduler_running, trigger_backup_now


bp = Blueprint('backups', __name__, url_prefix='/api/backups')
logger = logging.getLogger(__name__)


def _backup_to_dict(backup) -> dict:
    return {
        'id': backup.backup_id,
        'hash': backup.backup_hash,
        'timestamp': backup.timestamp.isoformat(),
        'archive_file_names': list(backup.archive_file_names),
        'file_manager': backup.file_manager_id,
        'archive_format': backup.archive_format
    }


@bp.route('/', methods=['GET'])
def list_backups():
    """
    Get every backup available in the enabled locations, newest first.

    Returns:
        JSON array of backups
    """
    try:
        config = load_configuration()
    except ConfigError as e:
        return jsonify({'error': str(e)}), 400

    backups = available_backups(config.locations)
    return jsonify([_backup_to_dict(b) for b in reversed(backups)])


@bp.route('/', methods=['POST'])
def create_backup():
    """
    Trigger a backup now.

    Runs on the scheduler when it is active in this process, otherwise on a
    background worker of this process. Either way the run lease keeps it from
    overlapping another backup, restore or delete.

    Returns:
        202 with the scheduler job id or the run id, 409 if a run is in progress
    """
    lease = RunLease.current()
    if lease is not None:
        return jsonify({'error': f'A {lease.kind} run is in progress'}), 409

    if is_scheduler_running():
        job_id = trigger_backup_now()
        return jsonify({'message': 'Creating backup...', 'job_id': job_id}), 202

    try:
        future = launch_backup(current_app._get_current_object())
    except RunInProgressError as e:
        return jsonify({'error': str(e)}), 409
    return jsonify({'message': 'Creating backup...', 'run_id': future.run_id}), 202


@bp.route('/<backup_id>/restore', methods=['POST'])
def restore_backup(backup_id):
    """
    Restore a backup by id in the background.

    Returns:
        202 with the restore run id, 404 if the backup is unknown,
        409 if a run is in progress
    """
    try:
        config = load_configuration()
        backup = get_backup(config.locations, backup_id)
    except NotFoundError as e:
        return jsonify({'error': str(e)}), 404
    except ConfigError as e:
        return jsonify({'error': str(e)}), 400

    return _start_restore(backup, config)


@bp.route('/restore', methods=['POST'])
def restore_backup_by_hash():
    """
    Restore a backup selected by its hash (query param backupHash).

    Returns:
        202 with the restore run id, 400 on a bad hash, 404 if unknown
    """
    backup_hash = request.args.get('backupHash', type=int)
    if backup_hash is None:
        return jsonify({'error': 'backupHash must be an integer'}), 400

    try:
        config = load_configuration()
        backup = get_backup_by_hash(config.locations, backup_hash)
    except NotFoundError as e:
        return jsonify({'error': str(e)}), 404
    except ConfigError as e:
        return jsonify({'error': str(e)}), 400

    return _start_restore(backup, config)


def _start_restore(backup, config):
    try:
        future = launch_restore(current_app._get_current_object(), backup, config)
    except RunInProgressError as e:
        return jsonify({'error': str(e)}), 409
    logger.info(f"Restore of {backup.backup_id} started (run {future.run_id})")
    return jsonify({
        'message': 'Restoring backup...',
        'backup_id': backup.backup_id,
        'run_id': future.run_id
    }), 202


@bp.route('/<backup_id>', methods=['DELETE'])
def remove_backup(backup_id):
    """
    Delete a backup from every enabled location.

    Returns:
        JSON with per-location outcome, 404 if the backup is unknown, 409 if a run is in progress
    """
    try:
        config = load_configuration()
        backup = get_backup(config.locations, backup_id)
    except NotFoundError as e:
        return jsonify({'error': str(e)}), 404
    except ConfigError as e:
        return jsonify({'error': str(e)}), 400

    try:
        with run_lease('delete'):
            run = BackupRun.start('delete', backup_id=backup.backup_id)
            outcome = delete_backup(config.locations, backup)
            run.finish(
                'success' if outcome.ok else 'partial',
                message=f"Backup {backup.backup_id} deleted",
                details=outcome.to_dict()
            )
    except RunInProgressError as e:
        return jsonify({'error': str(e)}), 409

    return jsonify(run.to_dict())


@bp.route('/runs', methods=['GET'])
def list_runs():
    """
    Get run history.

    Query params:
        - kind: Filter by kind (backup/restore/retention/delete)
        - status: Filter by status (running/success/partial/failed)
        - limit: Max number of records (default: 50, max: 200)
        - offset: Number of records to skip (default: 0)

    Returns:
        JSON with run records and metadata
    """
    kind_filter = request.args.get('kind')
    status_filter = request.args.get('status')
    limit = min(request.args.get('limit', 50, type=int), 200)
    offset = max(request.args.get('offset', 0, type=int), 0)

    query = BackupRun.query

    if kind_filter:
        if kind_filter not in ['backup', 'restore', 'retention', 'delete']:
            return jsonify({'error': 'Invalid kind filter'}), 400
        query = query.filter(BackupRun.kind == kind_filter)

    if status_filter:
        if status_filter not in ['running', 'success', 'partial', 'failed']:
            return jsonify({'error': 'Invalid status filter'}), 400
        query = query.filter(BackupRun.status == status_filter)

    total_count = query.count()
    runs = query.order_by(BackupRun.started_at.desc(), BackupRun.id.desc()).limit(limit).offset(offset).all()

    return jsonify({
        'records': [run.to_dict() for run in runs],
        'total': total_count,
        'limit': limit,
        'offset': offset
    })


@bp.route('/runs/<int:run_id>', methods=['GET'])
def get_run(run_id):
    """
    Get a single run including its logs.
    """
    run = BackupRun.query.get_or_404(run_id)
    return jsonify(run.to_dict(include_logs=True))
