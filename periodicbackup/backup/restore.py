"""
Restore executor - puts a chosen backup back into the server root.

Archives are pulled from every enabled location that holds them into a
scratch directory, merged by filename, and handed to the file manager for
extraction. Restores run on a background worker so the triggering request
returns immediately; the returned Future supervises the run.
"""

import os
import shutil
import logging
import tempfile
from concurrent.futures import Future, ThreadPoolExecutor
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Dict, List, Optional

from .backup_object import BackupObject
from .configuration import BackupConfiguration
from .errors import ArchiveError, ConfigError, TransferError
from .file_manager import get_file_manager
from .results import OperationResult


logger = logging.getLogger(__name__)

# Restores never overlap (see launch_restore); one worker is enough
_restore_pool = ThreadPoolExecutor(max_workers=1, thread_name_prefix='periodicbackup-restore')


@dataclass
class RestoreRunResult:
    backup: BackupObject
    status: str = 'running'
    archives: List[str] = field(default_factory=list)
    restored_files: List[str] = field(default_factory=list)
    locations: OperationResult = field(default_factory=OperationResult)
    error: Optional[str] = None
    logs: List[str] = field(default_factory=list)


class RestoreExecutor:
    """
    Restores one backup using a configuration snapshot.
    """

    def __init__(self, backup: BackupObject, config: BackupConfiguration):
        self.backup = backup
        self.config = config
        self.result = RestoreRunResult(backup=backup)
        self.scratch_dir = None

    @property
    def logs(self) -> List[str]:
        return self.result.logs

    def execute(self) -> RestoreRunResult:
        """
        Execute the restore.

        The run fails when no archive could be retrieved or extraction fails;
        a location that cannot deliver its copy is only recorded.
        """
        self._log(f"Starting restore of backup {self.backup.backup_id}")

        try:
            os.makedirs(self.config.temp_directory, exist_ok=True)
            self.scratch_dir = tempfile.mkdtemp(prefix='periodicbackup_restore_', dir=self.config.temp_directory)

            archives = self._retrieve_archives()
            if not archives:
                raise ArchiveError(f"No archives of backup {self.backup.backup_id} could be retrieved")

            missing = set(self.backup.archive_file_names) - set(archives)
            if missing:
                self._log(f"Missing archives: {', '.join(sorted(missing))}", level=logging.WARNING)

            file_manager = get_file_manager(self.backup.file_manager_id)
            self.result.restored_files = file_manager.restore(
                list(archives.values()),
                self.config.root_directory,
                self.scratch_dir
            )
            self.result.status = 'success' if not missing and self.result.locations.ok else 'partial'
            self._log(f"Restored {len(self.result.restored_files)} files into {self.config.root_directory}")

        except (ArchiveError, ConfigError, OSError) as e:
            self.result.status = 'failed'
            self.result.error = str(e)
            self._log(f"Restore failed: {e}", level=logging.ERROR)
        finally:
            self._cleanup()

        return self.result

    def _retrieve_archives(self) -> Dict[str, Path]:
        """Pull archives from each enabled location, first copy of a filename wins."""
        merged = {}
        for index, location in enumerate(self.config.locations):
            name = location.display_name
            if not location.enabled:
                self.result.locations.add_skip(name)
                continue

            location_dir = os.path.join(self.scratch_dir, f"location_{index}")
            os.makedirs(location_dir, exist_ok=True)
            try:
                retrieved = location.retrieve(self.backup, location_dir)
            except (TransferError, OSError) as e:
                self.result.locations.add_failure(name, e)
                self._log(f"Failed to retrieve from {name}: {e}", level=logging.ERROR)
                continue

            self.result.locations.add_success(name)
            for path in retrieved:
                merged.setdefault(path.name, path)
            self._log(f"Retrieved {len(retrieved)} archive(s) from {name}")

        self.result.archives = sorted(merged)
        return merged

    def _cleanup(self):
        if self.scratch_dir and os.path.exists(self.scratch_dir):
            try:
                shutil.rmtree(self.scratch_dir)
            except OSError as e:
                self._log(f"Warning: Failed to cleanup scratch directory: {e}", level=logging.WARNING)

    def _log(self, message: str, level: int = logging.INFO):
        timestamp = datetime.now(timezone.utc).strftime('%Y-%m-%d %H:%M:%S UTC')
        self.result.logs.append(f"[{timestamp}] {message}")
        logger.log(level, message)


def execute_restore(backup: BackupObject, config: BackupConfiguration, run_id: Optional[int] = None):
    """
    Run a restore and record it.

    Args:
        backup: Backup to restore
        config: Configuration snapshot
        run_id: Existing BackupRun to complete (default: a new record)

    Returns:
        BackupRun record of the restore
    """
    from periodicbackup import db
    from periodicbackup.models import BackupRun

    run = db.session.get(BackupRun, run_id) if run_id is not None else None
    if run is None:
        run = BackupRun.start('restore', backup_id=backup.backup_id)

    result = RestoreExecutor(backup, config).execute()
    run.finish(
        result.status,
        message="Restore failed" if result.status == 'failed' else f"Backup {backup.backup_id} restored",
        error_message=result.error,
        logs=result.logs,
        details=result.locations.to_dict()
    )
    return run


def _run_restore(app, backup: BackupObject, config: BackupConfiguration, run_id: int, token: str) -> int:
    from periodicbackup.models import BackupRun, RunLease

    with app.app_context():
        try:
            return execute_restore(backup, config, run_id=run_id).id
        except Exception as e:
            logger.exception(f"Restore of {backup.backup_id} crashed")
            BackupRun.fail_if_running(run_id, e, "Restore failed")
            raise
        finally:
            RunLease.release(token)


def launch_restore(app, backup: BackupObject, config: BackupConfiguration) -> Future:
    """
    Start a restore in the background.

    The run lease is claimed here, before returning, and released by the worker
    when the restore ends. Restores therefore never overlap each other or a
    backup, in this process or in another worker. A BackupRun record is created
    before returning so callers can report it.

    Returns:
        Future resolving to the id of the finished BackupRun

    Raises:
        RunInProgressError: If another run holds the lease
    """
    from periodicbackup.models import BackupRun, RunLease

    token = RunLease.acquire('restore')
    try:
        run_id = BackupRun.start('restore', backup_id=backup.backup_id).id
        future = _restore_pool.submit(_run_restore, app, backup, config, run_id, token)
    except Exception:
        RunLease.release(token)
        raise

    future.run_id = run_id
    return future
