"""
Settings routes - backup schedule, retention policy and location management.
"""

import logging
from flask import Blueprint, jsonify, request

from periodicbackup import db
from periodicbackup.models import BackupSettings, BackupLocation
from periodicbackup.backup.compression import FORMATS
from periodicbackup.backup.errors import ConfigError
from periodicbackup.backup.file_manager import FILE_MANAGERS
from periodicbackup.backup.locations import LOCATION_TYPES
from periodicbackup.scheduler import get_scheduled_jobs, is_scheduler_running, sync_backup_schedule, validate_cron


bp = Blueprint('settings', __name__, url_prefix='/api/settings')
logger = logging.getLogger(__name__)

LOCATION_FIELDS = ['enabled', 'directory_path', 'bucket_name', 'tmp_dir', 'region', 'endpoint_url']


def _non_negative_int(data: dict, key: str):
    value = data[key]
    if isinstance(value, bool) or not isinstance(value, int) or value < 0:
        raise ConfigError(f"{key} must be a non-negative integer")
    return value


def _bool_flag(data: dict, key: str, default: bool = True) -> bool:
    value = data.get(key, default)
    if not isinstance(value, bool):
        raise ConfigError(f"{key} must be true or false")
    return value


@bp.route('/', methods=['GET'])
def get_settings():
    """
    Get backup settings and the current schedule.

    Returns:
        JSON with settings, valid options and scheduled jobs
    """
    settings = BackupSettings.query.first()

    return jsonify({
        'configured': settings is not None,
        'settings': settings.to_dict() if settings else None,
        'file_managers': {key: cls.display_name for key, cls in FILE_MANAGERS.items()},
        'archive_formats': list(FORMATS.keys()),
        'location_types': list(LOCATION_TYPES.keys()),
        'scheduler_running': is_scheduler_running(),
        'scheduled_jobs': get_scheduled_jobs()
    })


@bp.route('/', methods=['POST'])
def update_settings():
    """
    Update backup settings.

    Request body (all optional):
        - root_directory, temp_directory: paths
        - cron: Cron expression (empty = manual backups only)
        - cycle_quantity, cycle_days: retention limits (0 = unlimited)
        - file_manager: config_only or full
        - archive_format: zip, tar.gz, tar.bz2, tar.xz, none
        - volume_size: max files per archive (0 = single archive)

    Returns:
        JSON with updated settings
    """
    data = request.get_json(silent=True) or {}
    settings = BackupSettings.query.first()
    if settings is None:
        settings = BackupSettings()
        db.session.add(settings)

    try:
        for key in ('root_directory', 'temp_directory'):
            if key in data:
                if not data[key]:
                    raise ConfigError(f"{key} is required")
                setattr(settings, key, data[key])

        if 'cron' in data:
            cron = (data['cron'] or '').strip()
            if cron:
                try:
                    validate_cron(cron)
                except ValueError as e:
                    raise ConfigError(f"{cron} is not a valid cron syntax! {e}")
            settings.cron = cron or None

        for key in ('cycle_quantity', 'cycle_days', 'volume_size'):
            if key in data:
                setattr(settings, key, _non_negative_int(data, key))

        if 'file_manager' in data:
            if data['file_manager'] not in FILE_MANAGERS:
                raise ConfigError(f"Invalid file manager. Valid options: {list(FILE_MANAGERS.keys())}")
            settings.file_manager = data['file_manager']

        if 'archive_format' in data:
            if data['archive_format'] not in FORMATS:
                raise ConfigError(f"Invalid archive format. Valid options: {list(FORMATS.keys())}")
            settings.archive_format = data['archive_format']

        if not settings.root_directory or not settings.temp_directory:
            raise ConfigError("root_directory and temp_directory are required")

    except ConfigError as e:
        db.session.rollback()
        return jsonify({'error': str(e)}), 400

    db.session.commit()
    logger.info("Backup settings updated")

    if is_scheduler_running():
        sync_backup_schedule()

    return jsonify({'message': 'Settings saved', 'settings': settings.to_dict()})


@bp.route('/validate-cron', methods=['POST'])
def check_cron():
    """
    Validate a cron expression.

    Request body:
        - cron: Cron expression
    """
    data = request.get_json(silent=True) or {}
    cron = data.get('cron', '')

    try:
        validate_cron(cron)
    except ValueError as e:
        return jsonify({'valid': False, 'error': f"{cron} is not a valid cron syntax! {e}"}), 400

    return jsonify({'valid': True, 'message': 'This cron is OK'})


@bp.route('/locations', methods=['GET'])
def list_locations():
    locations = BackupLocation.query.order_by(BackupLocation.id).all()
    return jsonify([location.to_dict() for location in locations])


@bp.route('/locations', methods=['POST'])
def add_location():
    """
    Add a backup location.

    Request body:
        - location_type: 'local' or 's3' (required)
        - enabled: Enable location (default: true)
        - directory_path: Directory (local)
        - bucket_name, tmp_dir, region, endpoint_url: Bucket settings (s3)

    Returns:
        JSON with created location, 400 if invalid
    """
    data = request.get_json(silent=True) or {}

    if data.get('location_type') not in LOCATION_TYPES:
        return jsonify({'error': f"location_type must be one of {list(LOCATION_TYPES.keys())}"}), 400

    try:
        enabled = _bool_flag(data, 'enabled')
    except ConfigError as e:
        return jsonify({'error': str(e)}), 400

    location = BackupLocation(location_type=data['location_type'], enabled=enabled)
    for key in LOCATION_FIELDS[1:]:
        setattr(location, key, data.get(key) or None)

    try:
        location.to_location()
    except ConfigError as e:
        return jsonify({'error': str(e)}), 400

    db.session.add(location)
    db.session.commit()
    logger.info(f"Created backup location {location.id} ({location.location_type})")

    return jsonify(location.to_dict()), 201


@bp.route('/locations/<int:location_id>', methods=['PUT'])
def update_location(location_id):
    """
    Update a backup location.

    Returns:
        JSON with updated location, 400 if invalid
    """
    location = BackupLocation.query.get_or_404(location_id)
    data = request.get_json(silent=True) or {}

    try:
        if 'enabled' in data:
            location.enabled = _bool_flag(data, 'enabled')
        for key in LOCATION_FIELDS[1:]:
            if key in data:
                setattr(location, key, data[key] or None)
        location.to_location()
    except ConfigError as e:
        db.session.rollback()
        return jsonify({'error': str(e)}), 400

    db.session.commit()
    return jsonify(location.to_dict())


@bp.route('/locations/<int:location_id>', methods=['DELETE'])
def delete_location(location_id):
    """
    Remove a backup location (stored backups are left in place).
    """
    location = BackupLocation.query.get_or_404(location_id)
    db.session.delete(location)
    db.session.commit()
    return jsonify({'message': 'Location deleted'})


@bp.route('/locations/<int:location_id>/test', methods=['POST'])
def test_location(location_id):
    """
    Check that a location is reachable and writable.

    Returns:
        JSON with result message, 400 on failure
    """
    location = BackupLocation.query.get_or_404(location_id)

    try:
        message = location.to_location().test_connection()
    except ConfigError as e:
        return jsonify({'ok': False, 'error': str(e)}), 400

    return jsonify({'ok': True, 'message': message})
