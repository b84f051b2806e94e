"""
Archive codecs for backup volumes.

Supports multiple formats:
- zip: Standard zip compression
- tar.gz: Gzip compressed tar
- tar.bz2: Bzip2 compressed tar
- tar.xz: LZMA compressed tar
- none: No compression (tar only)
"""

import os
import tarfile
import zipfile
from pathlib import Path
from typing import List, Tuple

from .errors import ArchiveError


# format -> (extension, tarfile write mode or None for zip)
FORMATS = {
    'zip': ('zip', None),
    'tar.gz': ('tar.gz', 'w:gz'),
    'tar.bz2': ('tar.bz2', 'w:bz2'),
    'tar.xz': ('tar.xz', 'w:xz'),
    'none': ('tar', 'w'),
}


def get_extension(archive_format: str) -> str:
    """
    Return the filename extension for an archive format.

    Raises:
        ValueError: If archive_format is invalid
    """
    if archive_format not in FORMATS:
        raise ValueError(
            f"Invalid archive format: {archive_format}. "
            f"Valid options: {list(FORMATS.keys())}"
        )
    return FORMATS[archive_format][0]


def create_archive(
    members: List[Tuple[Path, str]],
    output_path: str,
    archive_format: str = 'tar.gz'
) -> str:
    """
    Create an archive from (source file, name inside archive) pairs.

    Args:
        members: Files to include with their archive names
        output_path: Path where archive should be created (without extension)
        archive_format: Format to use ('zip', 'tar.gz', 'tar.bz2', 'tar.xz', 'none')

    Returns:
        Full path to the created archive file

    Raises:
        ArchiveError: If archive creation fails
        ValueError: If archive_format is invalid
    """
    if not members:
        raise ArchiveError("No files provided")

    extension = get_extension(archive_format)
    mode = FORMATS[archive_format][1]
    archive_path = f"{output_path}.{extension}"

    try:
        if mode is None:
            _create_zip(members, archive_path)
        else:
            _create_tar(members, archive_path, mode)
        return archive_path
    except Exception as e:
        # Clean up partial archive on failure
        if os.path.exists(archive_path):
            try:
                os.remove(archive_path)
            except OSError:
                pass
        raise ArchiveError(f"Failed to create archive: {e}")


def _create_zip(members: List[Tuple[Path, str]], archive_path: str):
    with zipfile.ZipFile(archive_path, 'w', zipfile.ZIP_DEFLATED) as zipf:
        for source, arcname in members:
            if not Path(source).is_file():
                raise ArchiveError(f"Invalid path type: {source}")
            zipf.write(source, arcname)


def _create_tar(members: List[Tuple[Path, str]], archive_path: str, mode: str):
    with tarfile.open(archive_path, mode) as tar:
        for source, arcname in members:
            if not Path(source).exists():
                raise ArchiveError(f"Path does not exist: {source}")
            tar.add(source, arcname=arcname, recursive=False)


def extract_archive(archive_path: str, dest_dir: str) -> List[str]:
    """
    Extract an archive into a directory.

    The format is detected from the file contents. Members that would land
    outside dest_dir are rejected.

    Returns:
        Names of the extracted members

    Raises:
        ArchiveError: If the archive is unreadable or unsafe
    """
    os.makedirs(dest_dir, exist_ok=True)

    try:
        if zipfile.is_zipfile(archive_path):
            with zipfile.ZipFile(archive_path) as zipf:
                names = zipf.namelist()
                for name in names:
                    _check_member_path(dest_dir, name)
                zipf.extractall(dest_dir)
                return names

        with tarfile.open(archive_path, 'r:*') as tar:
            names = tar.getnames()
            tar.extractall(dest_dir, filter='data')
            return names

    except ArchiveError:
        raise
    except (tarfile.TarError, zipfile.BadZipFile, OSError) as e:
        raise ArchiveError(f"Failed to extract {os.path.basename(archive_path)}: {e}")


def _check_member_path(dest_dir: str, name: str):
    root = os.path.realpath(dest_dir)
    target = os.path.realpath(os.path.join(dest_dir, name))
    if target != root and not target.startswith(root + os.sep):
        raise ArchiveError(f"Archive member escapes destination: {name}")

