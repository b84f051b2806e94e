"""
Catalog of the backups available across all configured locations.

The same backup is usually stored in several locations; listings are merged
and deduplicated by BackupObject equality (timestamp + archive set).
"""

import logging
from typing import Iterable, List, Optional

from .backup_object import BackupObject
from .errors import NotFoundError, TransferError
from .locations import Location, sort_backups
from .results import OperationResult


logger = logging.getLogger(__name__)


def available_backups(locations: Iterable[Location]) -> List[BackupObject]:
    """
    List every backup known to any enabled location, oldest first.

    A location whose listing fails is logged and skipped.
    """
    backups = []
    seen = set()
    for location in locations:
        if not location.enabled:
            continue
        try:
            listed = location.list_available_backups()
        except (TransferError, OSError) as e:
            logger.error(f"Failed to list backups in {location.display_name}: {e}")
            continue
        for backup in listed:
            if backup not in seen:
                seen.add(backup)
                backups.append(backup)
    return sort_backups(backups)


def find_by_hash(locations: Iterable[Location], backup_hash: int) -> Optional[BackupObject]:
    for backup in available_backups(locations):
        if backup.backup_hash == backup_hash:
            return backup
    return None


def find_by_id(locations: Iterable[Location], backup_id: str) -> Optional[BackupObject]:
    for backup in available_backups(locations):
        if backup.backup_id == backup_id:
            return backup
    return None


def get_backup(locations: Iterable[Location], backup_id: str) -> BackupObject:
    """
    Look up a backup by id.

    Raises:
        NotFoundError: If no location holds the backup
    """
    backup = find_by_id(locations, backup_id)
    if backup is None:
        raise NotFoundError(f"Backup {backup_id} was not found in any location")
    return backup


def get_backup_by_hash(locations: Iterable[Location], backup_hash: int) -> BackupObject:
    """
    Look up a backup by its hash.

    Raises:
        NotFoundError: If no location holds the backup
    """
    backup = find_by_hash(locations, backup_hash)
    if backup is None:
        raise NotFoundError(f"The provided hash code {backup_hash} was not found")
    return backup


def delete_backup(locations: Iterable[Location], backup: BackupObject) -> OperationResult:
    """
    Delete a backup from every enabled location, best effort.
    """
    outcome = OperationResult()
    for location in locations:
        if not location.enabled:
            outcome.add_skip(location.display_name)
            continue
        try:
            deleted = location.delete_backup_files(backup)
        except (TransferError, OSError) as e:
            logger.error(f"Failed to delete {backup.backup_id} from {location.display_name}: {e}")
            outcome.add_failure(location.display_name, e)
            continue
        if deleted:
            outcome.add_success(location.display_name)
        else:
            outcome.add_skip(location.display_name)
    return outcome
