"""
Compression helpers for dump artifacts.

- stream_to_gzip: gzip a producer's output stream into a single file
- archive_directory: pack a directory-format dump into a .tar.gz
- filename helpers shared by every dump mode
"""

import gzip
import logging
import os
import tarfile
from datetime import datetime
from pathlib import Path
from typing import BinaryIO, Optional

# 1MB reads keep the pipe drained without holding a whole dump in memory
CHUNK_SIZE = 1024 * 1024

logger = logging.getLogger(__name__)

TIMESTAMP_FORMAT = '%Y%m%d_%H%M%S'


class CompressionError(Exception):
    """Raised when archive creation fails."""
    pass


class StreamCancelled(Exception):
    """Raised when a stream copy is interrupted by its cancel event."""
    pass


def stream_to_gzip(
    stream: BinaryIO,
    output_path: str,
    cancel_event=None,
    compresslevel: int = 9
) -> int:
    """
    Copy a byte stream into a gzip file.

    Args:
        stream: Readable binary stream (e.g. a process stdout)
        output_path: Path of the .gz file to create
        cancel_event: Optional threading.Event checked between chunks
        compresslevel: gzip level (default: 9)

    Returns:
        Number of uncompressed bytes written

    Raises:
        CompressionError: If the encoder or the output file fails
        StreamCancelled: If cancel_event was set before the stream ended
    """
    total = 0

    try:
        with gzip.open(output_path, 'wb', compresslevel=compresslevel) as gz:
            while True:
                if cancel_event is not None and cancel_event.is_set():
                    raise StreamCancelled("Stream copy cancelled")

                chunk = stream.read(CHUNK_SIZE)
                if not chunk:
                    break

                gz.write(chunk)
                total += len(chunk)

    except StreamCancelled:
        _remove_partial(output_path)
        raise
    except Exception as e:
        _remove_partial(output_path)
        raise CompressionError(f"Failed to compress stream to {output_path}: {e}")

    return total


def archive_directory(source_dir: str, output_path: str) -> str:
    """
    Recursively archive a directory into a gzip compressed tar file.

    Entries are stored relative to the directory itself ("./toc.dat", ...).

    Args:
        source_dir: Directory to archive
        output_path: Path of the .tar.gz file to create

    Returns:
        output_path

    Raises:
        CompressionError: If the directory is missing or archiving fails
    """
    source = Path(source_dir)

    if not source.is_dir():
        raise CompressionError(f"Directory does not exist: {source_dir}")

    try:
        with tarfile.open(output_path, 'w:gz') as tar:
            tar.add(str(source), arcname='.', recursive=True)
        return output_path
    except Exception as e:
        _remove_partial(output_path)
        raise CompressionError(f"Failed to archive {source_dir}: {e}")


def format_timestamp(moment: Optional[datetime] = None) -> str:
    """Format a datetime (default: now, local time) as YYYYMMDD_HHMMSS."""
    return (moment or datetime.now()).strftime(TIMESTAMP_FORMAT)


def build_filename(filename_prefix: str, timestamp: str, suffix: str) -> str:
    """
    Generate an artifact filename.

    Format: {filename_prefix}{timestamp}{suffix}
    """
    return f"{filename_prefix}{timestamp}{suffix}"


def get_artifact_size(path: str) -> int:
    """
    Get the size of an artifact file in bytes.

    Raises:
        CompressionError: If file doesn't exist or cannot be accessed
    """
    try:
        return os.path.getsize(path)
    except FileNotFoundError:
        raise CompressionError(f"Artifact not found: {path}")
    except OSError as e:
        raise CompressionError(f"Failed to get artifact size: {e}")


def _remove_partial(path: str):
    if os.path.exists(path):
        try:
            os.remove(path)
        except OSError as e:
            logger.warning(f"Failed to remove partial artifact {path}: {e}")
