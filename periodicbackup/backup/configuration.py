"""
Immutable configuration snapshots handed to each run.

A run works from the snapshot it was started with; later edits to the stored
settings do not affect it.
"""

from dataclasses import dataclass, field
from typing import Tuple

from .errors import ConfigError
from .locations import Location


@dataclass(frozen=True)
class RetentionPolicy:
    """
    Rotation limits. A value of 0 means unlimited.

    cycle_quantity: maximum number of backups kept per location
    cycle_days: maximum age of a backup in days
    """

    cycle_quantity: int = 0
    cycle_days: int = 0

    def __post_init__(self):
        for name in ('cycle_quantity', 'cycle_days'):
            value = getattr(self, name)
            if not isinstance(value, int) or isinstance(value, bool) or value < 0:
                raise ConfigError(f"{name} must be a non-negative integer, got {value!r}")

    @property
    def is_unlimited(self) -> bool:
        return self.cycle_quantity == 0 and self.cycle_days == 0


@dataclass(frozen=True)
class BackupConfiguration:
    root_directory: str
    temp_directory: str
    file_manager: str = 'config_only'
    archive_format: str = 'tar.gz'
    volume_size: int = 0
    locations: Tuple[Location, ...] = field(default_factory=tuple)
    policy: RetentionPolicy = field(default_factory=RetentionPolicy)

    def __post_init__(self):
        if not self.root_directory:
            raise ConfigError("Root directory is not configured")
        if not self.temp_directory:
            raise ConfigError("Temporary directory is not configured")
        if self.volume_size < 0:
            raise ConfigError("volume_size must be a non-negative integer")
        object.__setattr__(self, 'locations', tuple(self.locations))

    @property
    def enabled_locations(self) -> Tuple[Location, ...]:
        return tuple(location for location in self.locations if location.enabled)
