"""
Backup executor - orchestrates one backup run.

Workflow:
1. archiving: pack the selected server files into archive volumes
2. manifesting: build the BackupObject and write its manifest
3. distributing: store archives + manifest in every enabled location
4. cleanup of the scratch directory

A failure on one location does not stop the others. The run fails when
archiving or manifesting fails, or when no location stored the backup.
"""

import os
import shutil
import logging
import tempfile
from concurrent.futures import Future, ThreadPoolExecutor
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import List, Optional

from .backup_object import BackupObject, generate_file_name_base, normalize_timestamp
from .configuration import BackupConfiguration
from .errors import ArchiveError, ConfigError, TransferError
from .file_manager import get_file_manager
from .locations import LocalDirectory
from .results import OperationResult


logger = logging.getLogger(__name__)

# Backups started outside the scheduler process
_backup_pool = ThreadPoolExecutor(max_workers=1, thread_name_prefix='periodicbackup-backup')

IDLE = 'idle'
ARCHIVING = 'archiving'
MANIFESTING = 'manifesting'
DISTRIBUTING = 'distributing'
DONE = 'done'
FAILED = 'failed'


@dataclass
class BackupRunResult:
    state: str = IDLE
    backup: Optional[BackupObject] = None
    locations: OperationResult = field(default_factory=OperationResult)
    error: Optional[str] = None
    logs: List[str] = field(default_factory=list)

    @property
    def status(self) -> str:
        """success, partial or failed"""
        if self.state != DONE:
            return 'failed'
        return 'success' if self.locations.ok else 'partial'


class BackupExecutor:
    """
    Runs a single backup against a configuration snapshot.
    """

    def __init__(self, config: BackupConfiguration, now: Optional[datetime] = None):
        """
        Initialize backup executor.

        Args:
            config: Configuration snapshot for this run
            now: Backup timestamp (default: current UTC time)
        """
        self.config = config
        self.timestamp = normalize_timestamp(now or datetime.now(timezone.utc))
        self.result = BackupRunResult()
        self.scratch_dir = None

    @property
    def logs(self) -> List[str]:
        return self.result.logs

    def execute(self) -> BackupRunResult:
        """
        Execute the backup run.

        Returns:
            BackupRunResult with the final state and per-location outcomes
        """
        self._log(f"Starting backup {generate_file_name_base(self.timestamp)}")

        try:
            self._execute_workflow()
        except (ArchiveError, ConfigError, OSError) as e:
            self.result.state = FAILED
            self.result.error = str(e)
            self._log(f"Backup failed: {e}", level=logging.ERROR)
        finally:
            self._cleanup()

        return self.result

    def _execute_workflow(self):
        self.result.state = ARCHIVING
        os.makedirs(self.config.temp_directory, exist_ok=True)
        self.scratch_dir = tempfile.mkdtemp(prefix='periodicbackup_', dir=self.config.temp_directory)
        archives = self._create_archives()
        self._log(f"Created {len(archives)} archive(s): {', '.join(a.name for a in archives)}")

        self.result.state = MANIFESTING
        backup = BackupObject(
            timestamp=self.timestamp,
            archive_file_names=tuple(a.name for a in archives),
            file_manager_id=self.config.file_manager,
            archive_format=self.config.archive_format
        )
        manifest = backup.write_manifest(self.scratch_dir)
        self.result.backup = backup
        self._log(f"Manifest written: {manifest.name}")

        self.result.state = DISTRIBUTING
        self._distribute(archives, manifest)

        if not self.result.locations.succeeded:
            self.result.state = FAILED
            self.result.error = "Backup was not stored in any location"
            self._log(self.result.error, level=logging.ERROR)
            return

        self.result.state = DONE
        self._log(
            f"Backup {backup.backup_id} completed: "
            f"stored in {len(self.result.locations.succeeded)} location(s), "
            f"{len(self.result.locations.failures)} failed"
        )

    def _create_archives(self) -> List[Path]:
        excluded = [self.config.temp_directory]
        excluded.extend(
            location.path for location in self.config.locations
            if isinstance(location, LocalDirectory)
        )
        file_manager = get_file_manager(self.config.file_manager, excluded_paths=excluded)
        self._log(f"Archiving {self.config.root_directory} ({file_manager.display_name}, {self.config.archive_format})")

        try:
            return file_manager.archive(
                self.config.root_directory,
                self.scratch_dir,
                generate_file_name_base(self.timestamp),
                self.config.archive_format,
                self.config.volume_size
            )
        except ValueError as e:
            raise ConfigError(str(e))

    def _distribute(self, archives: List[Path], manifest: Path):
        outcome = self.result.locations
        for location in self.config.locations:
            name = location.display_name
            if not location.enabled:
                outcome.add_skip(name)
                self._log(f"Skipping disabled location {name}")
                continue
            try:
                if location.store(archives, manifest):
                    outcome.add_success(name)
                    self._log(f"Stored in {name}")
                else:
                    outcome.add_skip(name)
                    self._log(f"Location {name} is unavailable, skipped", level=logging.WARNING)
            except (TransferError, OSError) as e:
                outcome.add_failure(name, e)
                self._log(f"Failed to store in {name}: {e}", level=logging.ERROR)

    def _cleanup(self):
        """Remove the scratch directory."""
        if self.scratch_dir and os.path.exists(self.scratch_dir):
            try:
                shutil.rmtree(self.scratch_dir)
            except OSError as e:
                self._log(f"Warning: Failed to cleanup scratch directory: {e}", level=logging.WARNING)

    def _log(self, message: str, level: int = logging.INFO):
        timestamp = datetime.now(timezone.utc).strftime('%Y-%m-%d %H:%M:%S UTC')
        self.result.logs.append(f"[{timestamp}] {message}")
        logger.log(level, message)


def execute_backup(config: Optional[BackupConfiguration] = None, run_retention: bool = True):
    """
    Run a backup from the stored configuration and record it.

    The run holds the run lease, so it never overlaps another backup, restore or
    delete, in this process or in another worker. Retention is enforced afterwards,
    under the same lease, unless the backup failed.

    Args:
        config: Configuration snapshot (default: loaded from the database)
        run_retention: Whether to rotate old backups after a stored backup

    Returns:
        BackupRun record of the backup

    Raises:
        RunInProgressError: If another run holds the lease; nothing is recorded
    """
    from periodicbackup.models import BackupRun, run_lease

    with run_lease('backup'):
        run = BackupRun.start('backup')
        try:
            _record_backup(run, config, run_retention)
        except Exception as e:
            BackupRun.fail_if_running(run.id, e, "Backup failed")
            raise
    return run


def _next_backup_time(previous_id: Optional[str]) -> datetime:
    """Current UTC time, moved one second on if the previous backup has the same file names."""
    now = normalize_timestamp(datetime.now(timezone.utc))
    if previous_id == generate_file_name_base(now):
        now += timedelta(seconds=1)
    return now


def _record_backup(run, config: Optional[BackupConfiguration], run_retention: bool):
    from periodicbackup.models import BackupRun, load_configuration
    from .retention import enforce_retention

    try:
        config = config or load_configuration()
    except ConfigError as e:
        run.finish('failed', message="Backup failed", error_message=str(e))
        return

    result = BackupExecutor(config, now=_next_backup_time(BackupRun.last_backup_id())).execute()
    run.finish(
        result.status,
        message=_summary(result),
        backup_id=result.backup.backup_id if result.backup else None,
        error_message=result.error,
        logs=result.logs,
        details=result.locations.to_dict()
    )

    if run_retention and result.status != 'failed' and not config.policy.is_unlimited:
        enforce_retention(config)


def _run_launched_backup(app, run_id: int, token: str) -> int:
    from periodicbackup import db
    from periodicbackup.models import BackupRun, RunLease

    with app.app_context():
        try:
            _record_backup(db.session.get(BackupRun, run_id), None, True)
            return run_id
        except Exception as e:
            logger.exception("Backup crashed")
            BackupRun.fail_if_running(run_id, e, "Backup failed")
            raise
        finally:
            RunLease.release(token)


def launch_backup(app) -> Future:
    """
    Start a backup in the background, for processes without the scheduler.

    The run lease is claimed and the BackupRun created before returning.

    Returns:
        Future resolving to the id of the finished BackupRun

    Raises:
        RunInProgressError: If another run holds the lease
    """
    from periodicbackup.models import BackupRun, RunLease

    token = RunLease.acquire('backup')
    try:
        run_id = BackupRun.start('backup').id
        future = _backup_pool.submit(_run_launched_backup, app, run_id, token)
    except Exception:
        RunLease.release(token)
        raise

    future.run_id = run_id
    return future


def _summary(result: BackupRunResult) -> str:
    if result.status == 'failed':
        return "Backup failed"
    if result.status == 'partial':
        return f"Backup {result.backup.backup_id} stored with errors"
    return f"Backup {result.backup.backup_id} created"
