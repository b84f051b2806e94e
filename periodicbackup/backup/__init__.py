"""
Backup engine for periodicbackup.

This module handles the core backup functionality including:
- BackupObject manifests and canonical filenames
- Locations (local directory and S3)
- Backup execution and distribution
- Restore from locations
- Retention/rotation
"""

from .backup_object import BackupObject
from .catalog import available_backups, find_by_hash, find_by_id
from .configuration import BackupConfiguration, RetentionPolicy
from .executor import BackupExecutor
from .locations import LocalDirectory, S3Location, create_location
from .object_store import ObjectStoreClient
from .restore import RestoreExecutor
from .retention import RetentionManager

__all__ = [
    'BackupObject',
    'available_backups',
    'find_by_hash',
    'find_by_id',
    'BackupConfiguration',
    'RetentionPolicy',
    'BackupExecutor',
    'LocalDirectory',
    'S3Location',
    'create_location',
    'ObjectStoreClient',
    'RestoreExecutor',
    'RetentionManager'
]
