"""
Retention policy enforcement for backups.

Each enabled location is rotated independently: the backups it lists are
checked against cycle_quantity (keep only the newest N) and cycle_days
(drop anything older than N days). A backup matching either limit is deleted
with all its files.
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Dict, Iterable, List, Optional

from .backup_object import BackupObject
from .configuration import BackupConfiguration, RetentionPolicy
from .errors import ConfigError, TransferError
from .locations import Location, sort_backups
from .results import OperationResult


logger = logging.getLogger(__name__)


def select_expired(
    backups: Iterable[BackupObject],
    policy: RetentionPolicy,
    now: Optional[datetime] = None
) -> List[BackupObject]:
    """
    Pick the backups a retention policy removes.

    Args:
        backups: Backups known to one location
        policy: Retention limits
        now: Reference time (default: current UTC time)

    Returns:
        Backups to delete, oldest first
    """
    ordered = sort_backups(backups)
    now = now or datetime.now(timezone.utc)
    if now.tzinfo is None:
        now = now.replace(tzinfo=timezone.utc)

    expired = []
    if policy.cycle_quantity > 0 and len(ordered) > policy.cycle_quantity:
        expired.extend(ordered[:len(ordered) - policy.cycle_quantity])

    if policy.cycle_days > 0:
        cutoff = now - timedelta(days=policy.cycle_days)
        expired.extend(b for b in ordered if b.timestamp < cutoff)

    selected = []
    for backup in expired:
        if backup not in selected:
            selected.append(backup)
    return sort_backups(selected)


@dataclass
class RetentionResult:
    outcome: OperationResult = field(default_factory=OperationResult)
    deleted: Dict[str, List[str]] = field(default_factory=dict)
    logs: List[str] = field(default_factory=list)

    @property
    def deleted_count(self) -> int:
        return sum(len(ids) for ids in self.deleted.values())


class RetentionManager:
    """
    Manages retention policy enforcement across backup locations.
    """

    def __init__(self, locations: Iterable[Location], policy: RetentionPolicy):
        self.locations = list(locations)
        self.policy = policy
        self.result = RetentionResult()

    @property
    def logs(self) -> List[str]:
        return self.result.logs

    def enforce(self, now: Optional[datetime] = None) -> RetentionResult:
        """
        Enforce the policy on every enabled location.

        Returns:
            RetentionResult with deleted backup ids per location and failures
        """
        if self.policy.is_unlimited:
            self._log("Retention: no limits configured, skipping")
            return self.result

        self._log(
            f"Enforcing retention (cycle_quantity={self.policy.cycle_quantity}, "
            f"cycle_days={self.policy.cycle_days})"
        )

        for location in self.locations:
            if not location.enabled:
                self.result.outcome.add_skip(location.display_name)
                continue
            self.enforce_location(location, now)

        self._log(
            f"Retention enforcement complete. Deleted: {self.result.deleted_count}, "
            f"Errors: {len(self.result.outcome.failures)}"
        )
        return self.result

    def enforce_location(self, location: Location, now: Optional[datetime] = None) -> List[str]:
        """
        Rotate the backups of a single location.

        Returns:
            Ids of the deleted backups
        """
        name = location.display_name
        try:
            backups = location.list_available_backups()
        except (TransferError, OSError) as e:
            self.result.outcome.add_failure(name, e)
            self._log(f"Failed to list backups in {name}: {e}", level=logging.ERROR)
            return []

        deleted = []
        for backup in select_expired(backups, self.policy, now):
            item = f"{name}: {backup.backup_id}"
            try:
                location.delete_backup_files(backup)
                deleted.append(backup.backup_id)
                self.result.outcome.add_success(item)
                self._log(f"Deleted backup {backup.backup_id} from {name}")
            except (TransferError, OSError) as e:
                self.result.outcome.add_failure(item, e)
                self._log(f"Failed to delete backup {backup.backup_id} from {name}: {e}", level=logging.ERROR)

        self.result.deleted[name] = deleted
        return deleted

    def _log(self, message: str, level: int = logging.INFO):
        timestamp = datetime.now(timezone.utc).strftime('%Y-%m-%d %H:%M:%S UTC')
        self.result.logs.append(f"[{timestamp}] {message}")
        logger.log(level, message)


def enforce_retention(config: Optional[BackupConfiguration] = None):
    """
    Enforce the stored retention policy and record the run.

    This function is called after every backup and by the scheduler.

    Returns:
        BackupRun record of the retention pass
    """
    from periodicbackup.models import BackupRun, load_configuration

    run = BackupRun.start('retention')
    try:
        config = config or load_configuration()
    except ConfigError as e:
        run.finish('failed', message="Retention failed", error_message=str(e))
        return run

    result = RetentionManager(config.locations, config.policy).enforce()
    run.finish(
        'success' if result.outcome.ok else 'partial',
        message=f"Retention removed {result.deleted_count} backup(s)",
        logs=result.logs,
        details=result.outcome.to_dict()
    )
    return run
