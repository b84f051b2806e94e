"""
File managers decide which server files go into a backup and how a backup
is put back.

- ConfigOnlyFileManager: configuration files only
- FullBackupFileManager: everything under the server root
"""

import os
import shutil
import logging
from pathlib import Path
from typing import Iterable, List, Optional

from .compression import create_archive, extract_archive
from .errors import ArchiveError, ConfigError


logger = logging.getLogger(__name__)

# Directories never worth backing up
EXCLUDED_DIR_NAMES = {'.git', '__pycache__', 'tmp', 'temp', 'cache', '.cache', 'logs'}


class FileManager:
    """Base class for file selection strategies."""

    id = None
    display_name = None

    def __init__(self, excluded_paths: Optional[Iterable[str]] = None):
        """
        Args:
            excluded_paths: Absolute paths to skip (e.g. a temp dir under the root)
        """
        self.excluded_paths = [os.path.realpath(p) for p in (excluded_paths or [])]

    def is_selected(self, relative_path: Path) -> bool:
        raise NotImplementedError

    def select_files(self, root_directory: str) -> List[Path]:
        """
        List files to back up, relative to root_directory, in sorted order.

        Raises:
            ArchiveError: If the root directory does not exist
        """
        root = Path(root_directory)
        if not root.is_dir():
            raise ArchiveError(f"Root directory does not exist: {root_directory}")

        selected = []
        for dirpath, dirnames, filenames in os.walk(root):
            dirnames[:] = sorted(
                d for d in dirnames
                if d not in EXCLUDED_DIR_NAMES and not self._is_excluded(os.path.join(dirpath, d))
            )
            for filename in sorted(filenames):
                full_path = Path(dirpath) / filename
                if self._is_excluded(str(full_path)) or full_path.is_symlink():
                    continue
                relative_path = full_path.relative_to(root)
                if self.is_selected(relative_path):
                    selected.append(relative_path)

        return sorted(selected)

    def _is_excluded(self, path: str) -> bool:
        real = os.path.realpath(path)
        return any(real == p or real.startswith(p + os.sep) for p in self.excluded_paths)

    def archive(
        self,
        root_directory: str,
        scratch_dir: str,
        file_name_base: str,
        archive_format: str = 'tar.gz',
        volume_size: int = 0
    ) -> List[Path]:
        """
        Pack the selected files into one or more archive volumes.

        Volumes are named {file_name_base}_part{N}.{ext}. A volume_size of 0
        puts every file into a single volume; otherwise each volume holds at
        most volume_size files.

        Returns:
            Paths of the created archives, in volume order

        Raises:
            ArchiveError: If nothing is selected or an archive cannot be written
        """
        files = self.select_files(root_directory)
        if not files:
            raise ArchiveError(f"No files selected for backup under {root_directory}")

        if volume_size and volume_size > 0:
            volumes = [files[i:i + volume_size] for i in range(0, len(files), volume_size)]
        else:
            volumes = [files]

        root = Path(root_directory)
        archives = []
        for number, volume in enumerate(volumes, start=1):
            members = [(root / rel, rel.as_posix()) for rel in volume]
            output_base = os.path.join(scratch_dir, f"{file_name_base}_part{number}")
            archives.append(Path(create_archive(members, output_base, archive_format)))
            logger.debug(f"Created volume {number}/{len(volumes)} with {len(volume)} files")

        return archives

    def restore(self, archives: Iterable[Path], root_directory: str, scratch_dir: str) -> List[str]:
        """
        Unpack archives and copy their contents over root_directory.

        Files present in the server root but absent from the backup are left
        untouched.

        Returns:
            Relative paths of the restored files

        Raises:
            ArchiveError: If an archive cannot be extracted
            OSError: If files cannot be copied into place
        """
        extract_dir = os.path.join(scratch_dir, 'extracted')
        for archive in sorted(archives, key=lambda p: Path(p).name):
            extract_archive(str(archive), extract_dir)

        restored = []
        os.makedirs(root_directory, exist_ok=True)
        for dirpath, _, filenames in os.walk(extract_dir):
            for filename in filenames:
                source = Path(dirpath) / filename
                relative_path = source.relative_to(extract_dir)
                target = Path(root_directory) / relative_path
                target.parent.mkdir(parents=True, exist_ok=True)
                shutil.copy2(source, target)
                restored.append(relative_path.as_posix())

        return sorted(restored)


class ConfigOnlyFileManager(FileManager):
    """Backs up configuration files only."""

    id = 'config_only'
    display_name = 'Configuration files only'

    CONFIG_SUFFIXES = {'.xml', '.json', '.yaml', '.yml', '.toml', '.ini', '.cfg', '.conf', '.properties'}

    def is_selected(self, relative_path: Path) -> bool:
        return relative_path.suffix.lower() in self.CONFIG_SUFFIXES


class FullBackupFileManager(FileManager):
    """Backs up every file under the server root."""

    id = 'full'
    display_name = 'Full backup'

    def is_selected(self, relative_path: Path) -> bool:
        return True


FILE_MANAGERS = {
    ConfigOnlyFileManager.id: ConfigOnlyFileManager,
    FullBackupFileManager.id: FullBackupFileManager,
}


def get_file_manager(file_manager_id: str, excluded_paths: Optional[Iterable[str]] = None) -> FileManager:
    """
    Create a file manager by id.

    Raises:
        ConfigError: If the id is unknown
    """
    cls = FILE_MANAGERS.get(file_manager_id)
    if cls is None:
        raise ConfigError(
            f"Unknown file manager: {file_manager_id}. "
            f"Valid options: {list(FILE_MANAGERS.keys())}"
        )
    return cls(excluded_paths=excluded_paths)
