import json
import uuid
from contextlib import contextmanager
from datetime import datetime, timedelta, timezone

from flask import current_app
from sqlalchemy import or_, update
from sqlalchemy.exc import IntegrityError

from periodicbackup import db
from periodicbackup.backup.configuration import BackupConfiguration, RetentionPolicy
from periodicbackup.backup.errors import ConfigError, RunInProgressError
from periodicbackup.backup.locations import create_location


def utcnow():
    """Naive UTC timestamp for database columns."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


class BackupSettings(db.Model):
    """Global backup configuration (single row)"""
    __tablename__ = 'backup_settings'

    id = db.Column(db.Integer, primary_key=True)
    root_directory = db.Column(db.String(500), nullable=False)  # Server directory to back up
    temp_directory = db.Column(db.String(500), nullable=False)  # Scratch space, keep outside root_directory
    cron = db.Column(db.String(100))  # Backup schedule (null = manual only)
    cycle_quantity = db.Column(db.Integer, default=0, nullable=False)  # Max backups kept (0 = unlimited)
    cycle_days = db.Column(db.Integer, default=0, nullable=False)  # Max age in days (0 = unlimited)
    file_manager = db.Column(db.String(20), default='config_only', nullable=False)  # config_only, full
    archive_format = db.Column(db.String(20), default='tar.gz', nullable=False)  # zip, tar.gz, tar.bz2, tar.xz, none
    volume_size = db.Column(db.Integer, default=0, nullable=False)  # Max files per archive (0 = single archive)
    updated_at = db.Column(db.DateTime, default=utcnow, onupdate=utcnow, nullable=False)

    def policy(self) -> RetentionPolicy:
        return RetentionPolicy(cycle_quantity=self.cycle_quantity or 0, cycle_days=self.cycle_days or 0)

    def to_dict(self) -> dict:
        return {
            'root_directory': self.root_directory,
            'temp_directory': self.temp_directory,
            'cron': self.cron,
            'cycle_quantity': self.cycle_quantity,
            'cycle_days': self.cycle_days,
            'file_manager': self.file_manager,
            'archive_format': self.archive_format,
            'volume_size': self.volume_size,
            'updated_at': self.updated_at.isoformat() if self.updated_at else None
        }

    def __repr__(self):
        return f'<BackupSettings root={self.root_directory} cron={self.cron}>'


class BackupLocation(db.Model):
    """Configured backup location"""
    __tablename__ = 'backup_locations'

    id = db.Column(db.Integer, primary_key=True)
    location_type = db.Column(db.String(20), nullable=False)  # 'local' or 's3'
    enabled = db.Column(db.Boolean, default=True, nullable=False)
    directory_path = db.Column(db.String(500))  # local only
    bucket_name = db.Column(db.String(255))  # s3 only
    tmp_dir = db.Column(db.String(500))  # s3 only, manifest staging directory
    region = db.Column(db.String(50))  # s3 only
    endpoint_url = db.Column(db.String(500))  # s3 only, for S3-compatible stores
    created_at = db.Column(db.DateTime, default=utcnow, nullable=False)
    updated_at = db.Column(db.DateTime, default=utcnow, onupdate=utcnow, nullable=False)

    def to_location(self):
        """
        Build the runtime Location for this row.

        Raises:
            ConfigError: If required fields are missing
        """
        if self.location_type == 'local':
            return create_location('local', path=self.directory_path, enabled=self.enabled)
        if self.location_type == 's3':
            return create_location(
                's3',
                bucket=self.bucket_name,
                enabled=self.enabled,
                tmp_dir=self.tmp_dir,
                region=self.region or current_app.config.get('AWS_REGION'),
                endpoint_url=self.endpoint_url or current_app.config.get('AWS_ENDPOINT_URL')
            )
        return create_location(self.location_type)

    def to_dict(self) -> dict:
        return {
            'id': self.id,
            'location_type': self.location_type,
            'enabled': self.enabled,
            'directory_path': self.directory_path,
            'bucket_name': self.bucket_name,
            'tmp_dir': self.tmp_dir,
            'region': self.region,
            'endpoint_url': self.endpoint_url,
            'created_at': self.created_at.isoformat(),
            'updated_at': self.updated_at.isoformat()
        }

    def __repr__(self):
        return f'<BackupLocation {self.location_type} enabled={self.enabled}>'


class BackupRun(db.Model):
    """Backup, restore, retention and delete run history"""
    __tablename__ = 'backup_runs'

    id = db.Column(db.Integer, primary_key=True)
    kind = db.Column(db.String(20), nullable=False)  # backup, restore, retention, delete
    status = db.Column(db.String(20), nullable=False)  # running, success, partial, failed
    backup_id = db.Column(db.String(100))
    message = db.Column(db.String(500))
    error_message = db.Column(db.Text)
    details = db.Column(db.Text)  # JSON: per-location outcome
    logs = db.Column(db.Text)
    started_at = db.Column(db.DateTime, default=utcnow, nullable=False)
    completed_at = db.Column(db.DateTime)

    @classmethod
    def start(cls, kind: str, backup_id: str = None) -> 'BackupRun':
        run = cls(kind=kind, status='running', backup_id=backup_id, started_at=utcnow())
        db.session.add(run)
        db.session.commit()
        return run

    @classmethod
    def last_backup_id(cls):
        """backup_id of the most recent backup run that produced one."""
        run = (
            cls.query
            .filter(cls.kind == 'backup', cls.backup_id.isnot(None))
            .order_by(cls.id.desc())
            .first()
        )
        return run.backup_id if run else None

    @classmethod
    def fail_if_running(cls, run_id: int, error, message: str):
        """Close a run left open by a crash."""
        db.session.rollback()
        run = db.session.get(cls, run_id)
        if run is not None and run.status == 'running':
            run.finish('failed', message=message, error_message=str(error))

    def finish(self, status: str, message: str = None, backup_id: str = None,
               error_message: str = None, logs=None, details: dict = None):
        self.status = status
        self.message = message
        if backup_id:
            self.backup_id = backup_id
        self.error_message = error_message
        if logs is not None:
            self.logs = '\n'.join(logs)
        if details is not None:
            self.details = json.dumps(details)
        self.completed_at = utcnow()
        db.session.commit()

    def to_dict(self, include_logs: bool = False) -> dict:
        data = {
            'id': self.id,
            'kind': self.kind,
            'status': self.status,
            'backup_id': self.backup_id,
            'message': self.message,
            'error_message': self.error_message,
            'details': json.loads(self.details) if self.details else None,
            'started_at': self.started_at.isoformat(),
            'completed_at': self.completed_at.isoformat() if self.completed_at else None
        }
        if include_logs:
            data['logs'] = self.logs
        return data

    def __repr__(self):
        return f'<BackupRun {self.kind} status={self.status}>'


class RunLease(db.Model):
    """
    Exclusive lease on the backup locations (single row).

    Backups, restores, deletes and scheduled retention passes hold it while they
    run. It is claimed with a conditional UPDATE, so threads and worker processes
    sharing the database never hold it together. A lease older than
    RUN_LEASE_TIMEOUT seconds belongs to a dead process and can be taken over.
    """
    __tablename__ = 'run_lease'

    LEASE_ID = 1

    id = db.Column(db.Integer, primary_key=True)
    holder = db.Column(db.String(32))  # token of the current holder, null when free
    kind = db.Column(db.String(20))  # backup, restore, retention, delete
    acquired_at = db.Column(db.DateTime)

    @classmethod
    def _stale_before(cls):
        timeout = current_app.config.get('RUN_LEASE_TIMEOUT', 6 * 3600)
        return utcnow() - timedelta(seconds=timeout)

    @classmethod
    def _ensure_row(cls):
        if db.session.get(cls, cls.LEASE_ID) is not None:
            return
        db.session.add(cls(id=cls.LEASE_ID))
        try:
            db.session.commit()
        except IntegrityError:
            # Another process created it first
            db.session.rollback()

    @classmethod
    def acquire(cls, kind: str) -> str:
        """
        Claim the lease.

        Returns:
            Token to pass to release()

        Raises:
            RunInProgressError: If another run holds the lease
        """
        cls._ensure_row()
        token = uuid.uuid4().hex
        claimed = db.session.execute(
            update(cls)
            .where(cls.id == cls.LEASE_ID)
            .where(or_(cls.holder.is_(None), cls.acquired_at < cls._stale_before()))
            .values(holder=token, kind=kind, acquired_at=utcnow())
            .execution_options(synchronize_session=False)
        ).rowcount
        db.session.commit()

        if claimed != 1:
            holder = cls.current()
            running = holder.kind if holder else 'concurrent'
            raise RunInProgressError(f"Cannot start {kind}: a {running} run is in progress")
        return token

    @classmethod
    def release(cls, token: str):
        if not db.session.is_active:
            db.session.rollback()
        db.session.execute(
            update(cls)
            .where(cls.id == cls.LEASE_ID, cls.holder == token)
            .values(holder=None, kind=None, acquired_at=None)
            .execution_options(synchronize_session=False)
        )
        db.session.commit()

    @classmethod
    def current(cls):
        """The live lease, or None when the locations are free."""
        lease = db.session.get(cls, cls.LEASE_ID, populate_existing=True)
        if lease is None or lease.holder is None or lease.acquired_at < cls._stale_before():
            return None
        return lease

    def __repr__(self):
        return f'<RunLease {self.kind or "free"}>'


@contextmanager
def run_lease(kind: str):
    """Hold the run lease for the duration of the block."""
    token = RunLease.acquire(kind)
    try:
        yield token
    finally:
        RunLease.release(token)


def ensure_default_settings(app) -> BackupSettings:
    """Create the settings row from app config if it does not exist yet."""
    settings = BackupSettings.query.first()
    if settings is None:
        settings = BackupSettings(
            root_directory=app.config['SERVER_ROOT'],
            temp_directory=app.config['TEMP_DIR'],
            cron=app.config.get('DEFAULT_CRON'),
            cycle_quantity=0,
            cycle_days=0,
            file_manager=app.config.get('DEFAULT_FILE_MANAGER', 'config_only'),
            archive_format=app.config.get('DEFAULT_ARCHIVE_FORMAT', 'tar.gz'),
            volume_size=0
        )
        db.session.add(settings)
        db.session.commit()
    return settings


def load_configuration() -> BackupConfiguration:
    """
    Snapshot the stored settings and locations for one run.

    Raises:
        ConfigError: If settings are missing or a location is invalid
    """
    settings = BackupSettings.query.first()
    if settings is None:
        raise ConfigError("Backup settings are not configured")

    locations = [row.to_location() for row in BackupLocation.query.order_by(BackupLocation.id).all()]

    return BackupConfiguration(
        root_directory=settings.root_directory,
        temp_directory=settings.temp_directory,
        file_manager=settings.file_manager,
        archive_format=settings.archive_format,
        volume_size=settings.volume_size or 0,
        locations=tuple(locations),
        policy=settings.policy()
    )
