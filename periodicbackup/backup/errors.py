"""
Exception types shared by the backup engine.

Local filesystem failures are reported with the built-in OSError.
"""


class BackupError(Exception):
    """Base class for backup engine errors."""
    pass


class TransferError(BackupError):
    """Raised when an object store or network operation fails."""
    pass


class ManifestError(BackupError):
    """Raised when a backup manifest cannot be read or is incomplete."""
    pass


class NotFoundError(BackupError):
    """Raised when a selected backup is not present in any location."""
    pass


class ConfigError(BackupError):
    """Raised when location or retention configuration is missing or invalid."""
    pass


class ArchiveError(BackupError):
    """Raised when archive creation or extraction fails."""
    pass


class RunInProgressError(BackupError):
    """Raised when a backup, restore or delete is requested while another one runs."""
    pass
