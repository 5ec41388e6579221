# src/metadata/extractor.py — v1
"""Basic file attributes and the gated rich-metadata step."""

from __future__ import annotations

import logging
import mimetypes
import os
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Callable

from catalogscan.core.models import ExifMetadata
from catalogscan.discovery.archive import file_extension
from catalogscan.hashing.hasher import FileAccessError, classify_os_error
from catalogscan.metadata.exif import extract_exif

logger = logging.getLogger(__name__)

IMAGE_EXTENSIONS: frozenset[str] = frozenset(
    {"jpg", "jpeg", "png", "tiff", "tif", "heif", "heic", "webp"}
)

# Types the platform mime database commonly lacks.
_EXTRA_TYPES: dict[str, str] = {
    "heic": "image/heic",
    "heif": "image/heif",
    "webp": "image/webp",
    "mkv": "video/x-matroska",
    "7z": "application/x-7z-compressed",
    "rar": "application/vnd.rar",
    "iso": "application/x-iso9660-image",
    "tar.zst": "application/zstd",
    "md": "text/markdown",
}

DEFAULT_CONTENT_TYPE = "application/octet-stream"


@dataclass(frozen=True)
class BasicMetadata:
    """Cheap attributes, always extracted."""

    name: str
    extension: str
    size: int
    modified_at: datetime | None
    created_at: datetime | None
    accessed_at: datetime | None
    content_type: str


def _ts(value: float | None) -> datetime | None:
    if value is None:
        return None
    try:
        return datetime.fromtimestamp(value, tz=timezone.utc)
    except (OverflowError, OSError, ValueError):
        return None


def detect_content_type(name: str) -> str:
    ext = file_extension(name)
    if ext in _EXTRA_TYPES:
        return _EXTRA_TYPES[ext]
    guessed, _ = mimetypes.guess_type(name, strict=False)
    return guessed or DEFAULT_CONTENT_TYPE


def is_image(name: str) -> bool:
    return file_extension(name) in IMAGE_EXTENSIONS


class MetadataExtractor:
    """Basic attributes for every file, rich metadata for images on request.

    ``rich_extractor`` is injectable so callers can observe or replace the
    expensive step.
    """

    def __init__(
        self,
        extract_rich: bool = True,
        rich_extractor: Callable[[Path], ExifMetadata | None] | None = None,
    ) -> None:
        self.extract_rich = extract_rich
        self._rich = rich_extractor or extract_exif

    def basic(self, path: str | Path) -> BasicMetadata:
        """Stat a file.

        Raises:
            FileAccessError: If the file vanished or cannot be stat'ed.
        """
        path = Path(path)
        try:
            st = os.stat(path)
        except OSError as e:
            raise FileAccessError(path, classify_os_error(e), e.strerror or str(e)) from e
        return BasicMetadata(
            name=path.name,
            extension=file_extension(path.name),
            size=st.st_size,
            modified_at=_ts(st.st_mtime),
            created_at=_ts(getattr(st, "st_birthtime", None)),
            accessed_at=_ts(st.st_atime),
            content_type=detect_content_type(path.name),
        )

    def wants_rich(self, name: str) -> bool:
        return self.extract_rich and is_image(name)

    def rich(self, path: str | Path) -> ExifMetadata | None:
        """Run the expensive extraction. Raises FileAccessError on failure."""
        return self._rich(Path(path))
