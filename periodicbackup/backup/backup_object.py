"""
BackupObject: the manifest describing one backup run.

A backup run is identified by its canonical filename base, derived from the
UTC timestamp with fixed-width fields (backup_YYYYMMDD_HHMMSS). The manifest
file and every archive of the run share this base, so locations find a run's
files by substring match. The manifest is written as JSON under the reserved
.pbobj extension.
"""

import json
import hashlib
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Tuple, Union

from .errors import ManifestError


EXTENSION = '.pbobj'
FILE_NAME_PREFIX = 'backup_'
FILE_TIMESTAMP_PATTERN = '%Y%m%d_%H%M%S'
MANIFEST_FORMAT_VERSION = 1


def normalize_timestamp(timestamp: datetime) -> datetime:
    """Convert to UTC and drop sub-second precision (naive values are taken as UTC)."""
    if timestamp.tzinfo is None:
        timestamp = timestamp.replace(tzinfo=timezone.utc)
    return timestamp.astimezone(timezone.utc).replace(microsecond=0)


def format_timestamp(timestamp: datetime) -> str:
    return normalize_timestamp(timestamp).strftime(FILE_TIMESTAMP_PATTERN)


def generate_file_name_base(timestamp: datetime) -> str:
    """
    Build the canonical filename base for a backup timestamp.

    Example: 2024-01-15 12:00:00 UTC -> backup_20240115_120000
    """
    return f"{FILE_NAME_PREFIX}{format_timestamp(timestamp)}"


def is_manifest_name(name: str) -> bool:
    return name.endswith(EXTENSION)


@dataclass(frozen=True, eq=False)
class BackupObject:
    """
    Immutable description of one backup run.

    Two BackupObjects are equal when their timestamps and archive name sets
    match; file_manager_id and archive_format are descriptive only.
    """

    timestamp: datetime
    archive_file_names: Tuple[str, ...]
    file_manager_id: str
    archive_format: str = 'tar.gz'
    _key: Tuple = field(init=False, repr=False, compare=False)

    def __post_init__(self):
        object.__setattr__(self, 'timestamp', normalize_timestamp(self.timestamp))
        object.__setattr__(self, 'archive_file_names', tuple(self.archive_file_names))
        object.__setattr__(self, '_key', (self.timestamp, frozenset(self.archive_file_names)))

    @property
    def file_name_base(self) -> str:
        return generate_file_name_base(self.timestamp)

    @property
    def backup_id(self) -> str:
        """Opaque selector for this backup (its canonical filename base)."""
        return self.file_name_base

    @property
    def manifest_file_name(self) -> str:
        return f"{self.file_name_base}{EXTENSION}"

    @property
    def backup_hash(self) -> int:
        """
        Stable 32-bit selector derived from the timestamp and archive names.

        Unlike the built-in str hash this does not change between processes.
        """
        digest = hashlib.sha256()
        digest.update(format_timestamp(self.timestamp).encode('utf-8'))
        for name in sorted(set(self.archive_file_names)):
            digest.update(b'\0')
            digest.update(name.encode('utf-8'))
        return int.from_bytes(digest.digest()[:4], 'big')

    def __eq__(self, other):
        if not isinstance(other, BackupObject):
            return NotImplemented
        return self._key == other._key

    def __hash__(self):
        return self.backup_hash

    def to_dict(self) -> dict:
        return {
            'format_version': MANIFEST_FORMAT_VERSION,
            'timestamp': self.timestamp.isoformat(),
            'archive_file_names': list(self.archive_file_names),
            'file_manager_id': self.file_manager_id,
            'archive_format': self.archive_format,
        }

    def to_json(self) -> str:
        return json.dumps(self.to_dict(), indent=2)

    def write_manifest(self, directory: Union[str, Path]) -> Path:
        """
        Write the manifest file into a directory.

        Returns:
            Path of the written manifest

        Raises:
            OSError: If the file cannot be written
        """
        manifest_path = Path(directory) / self.manifest_file_name
        manifest_path.write_text(self.to_json(), encoding='utf-8')
        return manifest_path

    @classmethod
    def from_dict(cls, data: dict) -> 'BackupObject':
        if not isinstance(data, dict):
            raise ManifestError("Manifest is not a JSON object")

        missing = [key for key in ('timestamp', 'archive_file_names', 'file_manager_id') if key not in data]
        if missing:
            raise ManifestError(f"Manifest is missing fields: {', '.join(missing)}")

        try:
            timestamp = datetime.fromisoformat(data['timestamp'])
        except (TypeError, ValueError) as e:
            raise ManifestError(f"Invalid manifest timestamp {data['timestamp']!r}: {e}")

        names = data['archive_file_names']
        if not isinstance(names, list) or not all(isinstance(name, str) for name in names):
            raise ManifestError("Manifest archive_file_names must be a list of strings")

        if any(is_manifest_name(name) for name in names):
            raise ManifestError(f"Archive names may not use the reserved {EXTENSION} extension")

        return cls(
            timestamp=timestamp,
            archive_file_names=tuple(names),
            file_manager_id=str(data['file_manager_id']),
            archive_format=str(data.get('archive_format', 'tar.gz')),
        )

    @classmethod
    def from_json(cls, text: Union[str, bytes]) -> 'BackupObject':
        try:
            data = json.loads(text)
        except ValueError as e:
            raise ManifestError(f"Manifest is not valid JSON: {e}")
        return cls.from_dict(data)

    @classmethod
    def from_file(cls, path: Union[str, Path]) -> 'BackupObject':
        """
        Read a manifest file.

        Raises:
            ManifestError: If the file is unreadable or corrupt
        """
        try:
            text = Path(path).read_text(encoding='utf-8')
        except (OSError, UnicodeDecodeError) as e:
            raise ManifestError(f"Unable to read manifest {path}: {e}")
        return cls.from_json(text)
