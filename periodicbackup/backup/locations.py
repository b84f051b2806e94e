"""
Backup locations: places where backup archives and manifests are kept.

Supports:
- LocalDirectory: a directory on the local filesystem
- S3Location: a bucket in an S3-compatible object store

A disabled location is skipped by every operation and performs no I/O.
Within store(), archives are always written before the manifest, so a
manifest is only visible once its archive set is complete.
"""

import os
import shutil
import logging
import tempfile
from pathlib import Path
from typing import Iterable, List, Optional

from .backup_object import BackupObject, is_manifest_name
from .errors import ConfigError, ManifestError, TransferError
from .object_store import ObjectStoreClient


logger = logging.getLogger(__name__)


def sort_backups(backups: Iterable[BackupObject]) -> List[BackupObject]:
    """Sort backups ascending by timestamp (stable)."""
    return sorted(backups, key=lambda b: b.timestamp)


class Location:
    """Base class for backup locations."""

    type_name = None

    def __init__(self, enabled: bool = True):
        self.enabled = bool(enabled)

    @property
    def display_name(self) -> str:
        raise NotImplementedError

    def to_dict(self) -> dict:
        """User-configured fields of this location."""
        raise NotImplementedError

    def list_available_backups(self) -> List[BackupObject]:
        raise NotImplementedError

    def store(self, archives: Iterable[Path], manifest: Path) -> bool:
        raise NotImplementedError

    def retrieve(self, backup: BackupObject, dest_dir: str) -> List[Path]:
        raise NotImplementedError

    def delete_backup_files(self, backup: BackupObject) -> List[str]:
        raise NotImplementedError

    def test_connection(self) -> str:
        raise NotImplementedError

    def __eq__(self, other):
        if not isinstance(other, Location):
            return NotImplemented
        return type(self) is type(other) and self.to_dict() == other.to_dict()

    def __hash__(self):
        return hash((type(self).__name__, tuple(sorted(self.to_dict().items()))))

    def __repr__(self):
        return f'<{type(self).__name__} {self.display_name} enabled={self.enabled}>'


class LocalDirectory(Location):
    """
    Stores backups as flat files in a local directory.

    The directory must already exist; it is never created by store().
    """

    type_name = 'local'

    def __init__(self, path: str, enabled: bool = True):
        super().__init__(enabled)
        if not path:
            raise ConfigError("Local directory location requires a path")
        self.path = path

    @property
    def display_name(self) -> str:
        return f"Local directory: {self.path}"

    def to_dict(self) -> dict:
        return {'path': self.path, 'enabled': self.enabled}

    def _entries(self) -> List[str]:
        return sorted(
            name for name in os.listdir(self.path)
            if os.path.isfile(os.path.join(self.path, name))
        )

    def list_available_backups(self) -> List[BackupObject]:
        """
        Read every manifest in the directory.

        Raises:
            OSError: If the directory exists but cannot be listed
        """
        if not self.enabled:
            return []
        if not os.path.isdir(self.path):
            logger.warning(f"Directory {self.path} does not exist, no backups listed")
            return []

        backups = []
        for name in self._entries():
            if not is_manifest_name(name):
                continue
            try:
                backups.append(BackupObject.from_file(os.path.join(self.path, name)))
            except ManifestError as e:
                logger.warning(f"Skipping manifest {name} in {self.path}: {e}")

        return sort_backups(backups)

    def store(self, archives: Iterable[Path], manifest: Path) -> bool:
        if not self.enabled or not os.path.isdir(self.path):
            logger.warning(f"Skipping location {self.path} since it is disabled or it does not exist")
            return False

        for archive in archives:
            destination = os.path.join(self.path, Path(archive).name)
            shutil.copy2(archive, destination)
            logger.info(f"{Path(archive).name} copied to {destination}")

        destination = os.path.join(self.path, Path(manifest).name)
        shutil.copy2(manifest, destination)
        logger.info(f"{Path(manifest).name} copied to {destination}")
        return True

    def retrieve(self, backup: BackupObject, dest_dir: str) -> List[Path]:
        if not self.enabled or not os.path.isdir(self.path):
            return []

        retrieved = []
        for name in self._entries():
            if backup.file_name_base not in name or is_manifest_name(name):
                continue
            destination = Path(dest_dir) / name
            try:
                shutil.copy2(os.path.join(self.path, name), destination)
                retrieved.append(destination)
            except OSError as e:
                logger.error(f"Failed to copy {name} from {self.path}: {e}")

        return retrieved

    def delete_backup_files(self, backup: BackupObject) -> List[str]:
        """
        Delete every file belonging to a backup, manifest included.

        Raises:
            OSError: If one or more files could not be deleted
        """
        if not self.enabled or not os.path.isdir(self.path):
            return []

        deleted, failed = [], []
        for name in self._entries():
            if backup.file_name_base not in name:
                continue
            try:
                os.remove(os.path.join(self.path, name))
                deleted.append(name)
                logger.info(f"Deleted {name} from {self.path}")
            except OSError as e:
                logger.error(f"Failed to delete {name} from {self.path}: {e}")
                failed.append(name)

        if failed:
            raise OSError(f"Failed to delete {len(failed)} files from {self.path}: {', '.join(failed)}")
        return deleted

    def test_connection(self) -> str:
        if not os.path.isdir(self.path):
            raise ConfigError(f"{self.path} doesn't exist or is not a directory")
        if not os.access(self.path, os.W_OK):
            raise ConfigError(f"{self.path} is not writable")
        return f"Directory \"{self.path}\" OK"


class S3Location(Location):
    """
    Stores backups as objects in an S3 bucket.

    Manifests pass through tmp_dir, a local staging directory created on demand.
    Every call stages in its own subdirectory, so concurrent listings never touch
    each other's files.
    """

    type_name = 's3'

    def __init__(
        self,
        bucket: str,
        enabled: bool = True,
        tmp_dir: Optional[str] = None,
        region: Optional[str] = None,
        endpoint_url: Optional[str] = None,
        client: Optional[ObjectStoreClient] = None
    ):
        super().__init__(enabled)
        if not bucket:
            raise ConfigError("S3 location requires a bucket name")
        if not tmp_dir:
            raise ConfigError("S3 location requires a temporary directory")
        self.bucket = bucket
        self.tmp_dir = tmp_dir
        self.region = region
        self.endpoint_url = endpoint_url
        self._client = client

    @property
    def client(self) -> ObjectStoreClient:
        if self._client is None:
            self._client = ObjectStoreClient(region=self.region, endpoint_url=self.endpoint_url)
        return self._client

    @property
    def display_name(self) -> str:
        return f"S3 bucket: {self.bucket}"

    def to_dict(self) -> dict:
        return {
            'bucket': self.bucket,
            'enabled': self.enabled,
            'tmp_dir': self.tmp_dir,
            'region': self.region,
            'endpoint_url': self.endpoint_url,
        }

    def _staging_area(self) -> tempfile.TemporaryDirectory:
        return tempfile.TemporaryDirectory(prefix='pb_', dir=self._ensure_staging_dir())

    def _ensure_staging_dir(self) -> Path:
        staging = Path(self.tmp_dir)
        try:
            staging.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            logger.warning(f"Unable to make temp directory: {self.tmp_dir}")
            raise OSError(f"Unable to make temp directory {self.tmp_dir}: {e}") from e
        return staging

    def list_available_backups(self) -> List[BackupObject]:
        """
        Download and read every manifest in the bucket.

        Raises:
            TransferError: If the bucket cannot be listed
            OSError: If the staging directory cannot be created
        """
        if not self.enabled:
            return []

        keys = self.client.list_keys(self.bucket)
        manifest_keys = [key for key in keys if is_manifest_name(key)]
        if not manifest_keys:
            return []

        backups = []
        with self._staging_area() as staging:
            for key in manifest_keys:
                staged = Path(staging) / os.path.basename(key)
                try:
                    self.client.download(self.bucket, key, staged)
                    backups.append(BackupObject.from_file(staged))
                except (TransferError, ManifestError, OSError) as e:
                    logger.warning(f"Skipping manifest {key} in bucket {self.bucket}: {e}")

        return sort_backups(backups)

    def store(self, archives: Iterable[Path], manifest: Path) -> bool:
        if not self.enabled or not self.client.bucket_exists(self.bucket):
            logger.warning(f"Skipping location {self.bucket} since it is disabled or it does not exist")
            return False

        for archive in archives:
            name = Path(archive).name
            logger.info(f"{name} copying to s3 bucket {self.bucket}")
            self.client.put(self.bucket, name, archive)
            logger.info(f"{name} copied to s3 bucket {self.bucket}")

        with self._staging_area() as staging:
            staged_manifest = Path(staging) / Path(manifest).name
            shutil.copy2(manifest, staged_manifest)
            self.client.put(self.bucket, staged_manifest.name, staged_manifest)
        logger.info(f"{staged_manifest.name} copied to s3 bucket {self.bucket}")
        return True

    def retrieve(self, backup: BackupObject, dest_dir: str) -> List[Path]:
        """
        Download the archives of a backup into dest_dir.

        Raises:
            TransferError: If the bucket cannot be listed
        """
        if not self.enabled:
            return []

        retrieved = []
        for key in self.client.list_keys(self.bucket):
            if backup.file_name_base not in key or is_manifest_name(key):
                continue
            destination = Path(dest_dir) / os.path.basename(key)
            try:
                self.client.download(self.bucket, key, destination)
                retrieved.append(destination)
            except (TransferError, OSError) as e:
                logger.error(f"Failed to download {key} from bucket {self.bucket}: {e}")

        return retrieved

    def delete_backup_files(self, backup: BackupObject) -> List[str]:
        """
        Delete every object belonging to a backup, manifest included.

        Raises:
            TransferError: If listing fails or one or more objects could not be deleted
        """
        if not self.enabled:
            return []

        logger.info(f"Deleting backup {backup.backup_id} from bucket {self.bucket}")
        deleted, failed = [], []
        for key in self.client.list_keys(self.bucket):
            if backup.file_name_base not in key:
                continue
            try:
                self.client.delete(self.bucket, key)
                deleted.append(key)
                logger.info(f"Deleted {key} from bucket {self.bucket}")
            except TransferError as e:
                logger.error(f"Failed to delete {key} from bucket {self.bucket}: {e}")
                failed.append(key)

        if failed:
            raise TransferError(f"Failed to delete {len(failed)} objects from {self.bucket}: {', '.join(failed)}")
        return deleted

    def test_connection(self) -> str:
        try:
            exists = self.client.bucket_exists(self.bucket)
        except TransferError as e:
            raise ConfigError(f"Unable to check bucket {self.bucket}: {e}")
        if not exists:
            raise ConfigError(f"{self.bucket} doesn't exist or I don't have access to it!")
        return f"bucket \"{self.bucket}\" OK"


LOCATION_TYPES = {
    LocalDirectory.type_name: LocalDirectory,
    S3Location.type_name: S3Location,
}


def create_location(location_type: str, **fields) -> Location:
    """
    Build a location from its type name and configured fields.

    Raises:
        ConfigError: If the type is unknown or required fields are missing
    """
    cls = LOCATION_TYPES.get(location_type)
    if cls is None:
        raise ConfigError(
            f"Unknown location type: {location_type}. "
            f"Valid options: {list(LOCATION_TYPES.keys())}"
        )
    try:
        return cls(**fields)
    except TypeError as e:
        raise ConfigError(f"Invalid fields for {location_type} location: {e}")
