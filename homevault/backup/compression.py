"""
Archive writers for filesystem artifacts.

Supports multiple formats:
- tar.gz: Gzip compressed tar (default)
- tar.bz2: Bzip2 compressed tar
- tar.xz: LZMA compressed tar
- none: No compression (tar only)
- zip: Standard zip compression
"""

import logging
import os
import tarfile
import zipfile
from pathlib import Path
from typing import List

from .errors import BackupError

logger = logging.getLogger(__name__)


class CompressionError(BackupError):
    """Raised when archive creation fails."""
    pass


EXTENSIONS = {
    'tar.gz': 'tar.gz',
    'tar.bz2': 'tar.bz2',
    'tar.xz': 'tar.xz',
    'none': 'tar',
    'zip': 'zip',
}

TAR_MODES = {
    'tar.gz': 'w:gz',
    'tar.bz2': 'w:bz2',
    'tar.xz': 'w:xz',
    'none': 'w',
}


def archive_name(stem: str, compression_format: str = 'tar.gz') -> str:
    """
    File name of an archive artifact.

    Args:
        stem: Artifact name without extension (e.g. 'immich_data')
        compression_format: One of EXTENSIONS

    Raises:
        ValueError: If compression_format is invalid
    """
    if compression_format not in EXTENSIONS:
        raise ValueError(
            f"Invalid compression format: {compression_format}. "
            f"Valid options: {list(EXTENSIONS.keys())}"
        )
    return f"{stem}.{EXTENSIONS[compression_format]}"


def create_archive(
    source_paths: List[str],
    archive_path: str,
    compression_format: str = 'tar.gz'
) -> str:
    """
    Create a compressed archive from source paths.

    Each source is stored under its basename, so `<root>/immich` is archived
    as `immich/...`.

    Args:
        source_paths: List of file/directory paths to include in archive
        archive_path: Full path of the archive to write
        compression_format: Format to use ('tar.gz', 'tar.bz2', 'tar.xz', 'none', 'zip')

    Returns:
        Path to the created archive file

    Raises:
        CompressionError: If archive creation fails
        ValueError: If compression_format is invalid
    """
    if not source_paths:
        raise CompressionError("No source paths provided")

    if compression_format not in EXTENSIONS:
        raise ValueError(
            f"Invalid compression format: {compression_format}. "
            f"Valid options: {list(EXTENSIONS.keys())}"
        )

    handler = _create_zip if compression_format == 'zip' else _create_tar

    try:
        handler(source_paths, archive_path, compression_format)
        return archive_path
    except Exception as e:
        # Clean up partial archive on failure
        if os.path.exists(archive_path):
            try:
                os.remove(archive_path)
            except OSError as cleanup_error:
                logger.warning("Failed to remove partial archive %s: %s", archive_path, cleanup_error)
        if isinstance(e, CompressionError):
            raise
        raise CompressionError(f"Failed to create archive: {e}")


def _create_zip(source_paths: List[str], archive_path: str, compression_format: str):
    """
    Create a ZIP archive.

    Args:
        source_paths: List of paths to include
        archive_path: Output archive path
        compression_format: Not used for zip, kept for interface consistency
    """
    with zipfile.ZipFile(archive_path, 'w', zipfile.ZIP_DEFLATED) as zipf:
        for source_path in source_paths:
            source = Path(source_path)

            if source.is_file():
                zipf.write(source, source.name)
            elif source.is_dir():
                for item in source.rglob('*'):
                    if item.is_file():
                        zipf.write(item, item.relative_to(source.parent))
            else:
                raise CompressionError(f"Path does not exist: {source_path}")


def _create_tar(source_paths: List[str], archive_path: str, compression_format: str):
    """
    Create a TAR archive with optional compression.

    Args:
        source_paths: List of paths to include
        archive_path: Output archive path
        compression_format: Compression format ('tar.gz', 'tar.bz2', 'tar.xz', 'none')
    """
    mode = TAR_MODES[compression_format]

    with tarfile.open(archive_path, mode) as tar:
        for source_path in source_paths:
            source = Path(source_path)

            if not source.exists():
                raise CompressionError(f"Path does not exist: {source_path}")

            tar.add(source, arcname=source.name, recursive=True)
