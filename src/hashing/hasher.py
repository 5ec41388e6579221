# src/hashing/hasher.py — v1
"""Streaming SHA-256 content digests.

Files are read through a fixed-size buffer; no file is ever held in memory
whole. Failures are file-scoped and surface as FileAccessError so the caller
can record them without stopping the scan.
"""

from __future__ import annotations

import errno
import hashlib
import logging
from pathlib import Path
from typing import Callable

from catalogscan.core.models import ErrorKind, normalize_digest

logger = logging.getLogger(__name__)

DEFAULT_BUFFER_SIZE = 64 * 1024

# Called after every buffer read with the number of bytes just consumed.
ProgressCallback = Callable[[int], None]


class FileAccessError(Exception):
    """A single file could not be read or inspected."""

    def __init__(self, path: str | Path, kind: ErrorKind, message: str) -> None:
        self.path = str(path)
        self.kind = kind
        self.message = message
        super().__init__(f"{kind.value}: {path}: {message}")


def classify_os_error(exc: OSError) -> ErrorKind:
    """Map an OSError onto the scan error taxonomy."""
    if isinstance(exc, PermissionError) or exc.errno in (errno.EACCES, errno.EPERM):
        return ErrorKind.PERMISSION_DENIED
    if isinstance(exc, FileNotFoundError) or exc.errno == errno.ENOENT:
        return ErrorKind.NOT_FOUND
    return ErrorKind.IO_ERROR


class ContentHasher:
    """Computes normalized SHA-256 digests by streaming file content."""

    def __init__(self, buffer_size: int = DEFAULT_BUFFER_SIZE) -> None:
        if buffer_size < 1:
            raise ValueError("buffer_size must be >= 1")
        self._buffer_size = buffer_size

    @property
    def buffer_size(self) -> int:
        return self._buffer_size

    def hash_file(
        self,
        path: str | Path,
        on_progress: ProgressCallback | None = None,
    ) -> str:
        """Return the lower-case hex SHA-256 of a file's content.

        Raises:
            FileAccessError: If the file cannot be opened or read.
        """
        digest = hashlib.sha256()
        try:
            with open(path, "rb") as fh:
                while True:
                    chunk = fh.read(self._buffer_size)
                    if not chunk:
                        break
                    digest.update(chunk)
                    if on_progress is not None:
                        on_progress(len(chunk))
        except IsADirectoryError as e:
            raise FileAccessError(path, ErrorKind.IO_ERROR, str(e)) from e
        except OSError as e:
            kind = classify_os_error(e)
            logger.debug("Hashing failed for %s (%s)", path, kind.value)
            raise FileAccessError(path, kind, e.strerror or str(e)) from e
        return normalize_digest(digest.hexdigest())
