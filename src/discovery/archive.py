# src/discovery/archive.py — v1
"""Archive recognition, the postponement decision and safe extraction.

``decide_archive`` is a pure function of its inputs; ``ArchiveClassifier``
only adds the single run-scoped auto-postpone flag on top of it.
"""

from __future__ import annotations

import fnmatch
import logging
import shutil
import threading
from dataclasses import dataclass, field
from pathlib import Path
from typing import Callable, Protocol

from catalogscan.core.models import ArchiveDecision, SourceType

logger = logging.getLogger(__name__)

# Compression suffixes that may follow a base extension (archive.tar.gz).
COMPRESSION_EXTENSIONS: frozenset[str] = frozenset(
    {"gz", "bz2", "xz", "zst", "z", "lz", "lzma"}
)
COMPOUND_BASES: frozenset[str] = frozenset({"tar", "backup", "sql"})

ARCHIVE_EXTENSIONS: frozenset[str] = frozenset({
    "zip", "tar", "gz", "bz2", "xz", "7z", "rar",
    "tgz", "tbz", "txz", "iso", "img", "tib", "bak",
    "tar.gz", "tar.bz2", "tar.xz", "tar.zst",
    "backup.gz", "backup.bz2", "sql.gz", "sql.bz2",
    "vhdx", "vmdk",
})


def file_extension(name: str) -> str:
    """Lower-case extension without the dot, compound-aware.

    ``photo.JPG`` -> ``jpg``, ``dump.sql.gz`` -> ``sql.gz``, ``.bashrc`` -> ``""``.
    """
    last = name.rfind(".")
    if last <= 0 or last == len(name) - 1:
        return ""
    ext = name[last + 1:].lower()
    if ext in COMPRESSION_EXTENSIONS:
        prev = name.rfind(".", 0, last)
        if prev > 0:
            base = name[prev + 1:last].lower()
            if base in COMPOUND_BASES:
                return f"{base}.{ext}"
    return ext


def is_archive(name: str) -> bool:
    return file_extension(name) in ARCHIVE_EXTENSIONS


def archive_source_type(name: str) -> SourceType:
    """Map an archive file name onto the child Source type."""
    ext = file_extension(name)
    if ext == "zip":
        return "archive_zip"
    if ext == "tar" or ext.startswith("tar.") or ext in ("tgz", "tbz", "txz"):
        return "archive_tar"
    if ext == "7z":
        return "archive_7z"
    if ext in ("img", "iso", "vhdx", "vmdk"):
        return "archive_img"
    return "archive_other"


class ArchivePrompt(Protocol):
    """Operator decision strategy for a large archive."""

    def prompt_archive_decision(self, path: Path, size: int) -> ArchiveDecision: ...


@dataclass(frozen=True)
class ArchiveRules:
    """Static classification rules."""

    threshold_bytes: int = 100 * 1024 * 1024
    auto_postpone_patterns: tuple[str, ...] = ()

    def requires_decision(self, name: str, size: int) -> bool:
        return is_archive(name) and size > self.threshold_bytes

    def matches_auto_postpone(self, name: str) -> bool:
        lowered = name.lower()
        return any(
            fnmatch.fnmatchcase(lowered, p.lower()) for p in self.auto_postpone_patterns
        )


def decide_archive(
    path: Path,
    size: int,
    rules: ArchiveRules,
    auto_postpone: bool,
    ask: Callable[[Path, int], ArchiveDecision],
) -> ArchiveDecision | None:
    """Decide how an archive-like file is handled.

    Returns None when the file is not subject to the archive special case
    (wrong extension or at/below the threshold).
    """
    if not rules.requires_decision(path.name, size):
        return None
    if auto_postpone or rules.matches_auto_postpone(path.name):
        return ArchiveDecision.POSTPONE
    return ask(path, size)


@dataclass
class ArchiveClassifier:
    """Applies ``decide_archive`` with the run-scoped auto-postpone flag.

    Called only from the discovery side; the lock covers nested scans that
    share one classifier.
    """

    rules: ArchiveRules
    prompt: ArchivePrompt
    auto_postpone: bool = False
    _lock: threading.Lock = field(default_factory=threading.Lock, repr=False)

    @classmethod
    def from_settings(cls, settings, prompt: ArchivePrompt) -> ArchiveClassifier:
        rules = ArchiveRules(
            threshold_bytes=settings.archive_prompt_threshold,
            auto_postpone_patterns=tuple(settings.auto_postpone_patterns_list),
        )
        return cls(rules=rules, prompt=prompt)

    def classify(self, path: Path, size: int) -> ArchiveDecision | None:
        with self._lock:
            decision = decide_archive(
                path, size, self.rules, self.auto_postpone,
                self.prompt.prompt_archive_decision,
            )
            if decision is ArchiveDecision.AUTO_POSTPONE_REST:
                logger.info("Auto-postponing all remaining archives (from %s)", path)
                self.auto_postpone = True
        return decision


def unpack_format(name: str) -> str | None:
    """Name of the shutil unpack format registered for this file name."""
    lowered = name.lower()
    for fmt, extensions, _ in shutil.get_unpack_formats():
        if any(lowered.endswith(ext) for ext in extensions):
            return fmt
    return None


def extract_archive(archive: Path, dest: str | Path) -> None:
    """Unpack ``archive`` into ``dest`` without letting members escape it.

    Tar formats go through the ``data`` extraction filter, which rejects
    absolute names, ``..`` components, links pointing outside ``dest`` and
    device files. Zip extraction already drops such member names.

    Raises:
        shutil.ReadError: Unknown format or unreadable archive.
        tarfile.TarError: Damaged tar, or a member rejected by the filter.
    """
    fmt = unpack_format(archive.name)
    if fmt is None:
        raise shutil.ReadError(f"Unknown archive format: {archive.name}")
    if fmt == "zip":
        shutil.unpack_archive(str(archive), str(dest), format=fmt)
    else:
        shutil.unpack_archive(str(archive), str(dest), format=fmt, filter="data")
