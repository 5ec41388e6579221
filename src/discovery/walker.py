# src/discovery/walker.py — v1
"""Directory traversal producing candidate file paths.

The walker only enumerates. It does not hash, classify or stat beyond what
os.scandir already returns, so it stays cheap enough to run on a single
discovery thread ahead of the hashing pool.
"""

from __future__ import annotations

import fnmatch
import logging
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Callable, Iterator

from catalogscan.core.models import ErrorKind, ScanError

logger = logging.getLogger(__name__)

# Folder names created by operating systems, never user content.
SYSTEM_DIRECTORIES: frozenset[str] = frozenset({
    ".Trash",
    ".Trashes",
    "$RECYCLE.BIN",
    "System Volume Information",
    ".TemporaryItems",
    ".Spotlight-V100",
    ".fseventsd",
})


@dataclass(frozen=True)
class WalkPolicy:
    """Traversal rules for one walk."""

    skip_patterns: tuple[str, ...] = ()
    skip_system_dirs: bool = True
    follow_symlinks: bool = False
    max_depth: int | None = None

    @classmethod
    def from_settings(cls, settings) -> WalkPolicy:
        return cls(
            skip_patterns=tuple(settings.exclude_patterns_list),
            skip_system_dirs=settings.scan_skip_system_dirs,
            follow_symlinks=settings.scan_follow_symlinks,
            max_depth=settings.scan_max_depth,
        )

    def matches_skip_pattern(self, name: str) -> bool:
        return any(fnmatch.fnmatchcase(name, p) for p in self.skip_patterns)

    def should_prune(self, name: str) -> bool:
        """True if a directory with this name must not be descended into."""
        if self.skip_system_dirs and name in SYSTEM_DIRECTORIES:
            return True
        return self.matches_skip_pattern(name)


@dataclass
class WalkedFile:
    """A regular file found by the walker."""

    path: Path
    relative_path: str
    size: int


@dataclass
class _PendingDir:
    path: Path
    depth: int


@dataclass
class DirectoryWalker:
    """Depth-first, lazy enumeration of regular files under a root.

    Each call to walk() starts a fresh traversal. Unreadable directories are
    recorded in ``errors`` with their root-relative path and skipped; their
    siblings are still visited.
    """

    root: Path
    policy: WalkPolicy = field(default_factory=WalkPolicy)
    should_stop: Callable[[], bool] | None = None
    errors: list[ScanError] = field(default_factory=list)

    def walk(self) -> Iterator[WalkedFile]:
        root = Path(self.root)
        visited: set[tuple[int, int]] = set()
        root_key = self._dir_key(root)
        if root_key is not None:
            visited.add(root_key)

        stack: list[_PendingDir] = [_PendingDir(root, 0)]
        while stack:
            if self.should_stop is not None and self.should_stop():
                logger.info("Walk of %s stopped before completion", root)
                return

            current = stack.pop()
            try:
                with os.scandir(current.path) as it:
                    entries = sorted(it, key=lambda e: e.name)
            except OSError as e:
                self._record(current.path, root, e)
                continue

            subdirs: list[_PendingDir] = []
            for entry in entries:
                try:
                    is_link = entry.is_symlink()
                    if is_link and not self.policy.follow_symlinks:
                        continue

                    if entry.is_dir(follow_symlinks=self.policy.follow_symlinks):
                        if self.policy.should_prune(entry.name):
                            logger.debug("Pruned directory %s", entry.path)
                            continue
                        depth = current.depth + 1
                        if self.policy.max_depth is not None and depth > self.policy.max_depth:
                            continue
                        key = self._dir_key(Path(entry.path))
                        if key is not None:
                            if key in visited:
                                logger.debug("Symlink cycle avoided at %s", entry.path)
                                continue
                            visited.add(key)
                        subdirs.append(_PendingDir(Path(entry.path), depth))
                        continue

                    if not entry.is_file(follow_symlinks=self.policy.follow_symlinks):
                        continue
                    if self.policy.matches_skip_pattern(entry.name):
                        continue
                    size = entry.stat(follow_symlinks=self.policy.follow_symlinks).st_size
                except OSError as e:
                    # Dangling link or entry removed mid-walk.
                    logger.debug("Cannot inspect %s: %s", entry.path, e)
                    continue

                path = Path(entry.path)
                yield WalkedFile(
                    path=path,
                    relative_path=path.relative_to(root).as_posix(),
                    size=size,
                )

            # Reverse so the alphabetically first subdirectory is popped next.
            stack.extend(reversed(subdirs))

    def _dir_key(self, path: Path) -> tuple[int, int] | None:
        try:
            st = os.stat(path)
        except OSError:
            return None
        return (st.st_dev, st.st_ino)

    def _record(self, path: Path, root: Path, exc: OSError) -> None:
        error = ScanError(
            path=path.relative_to(root).as_posix(),
            kind=ErrorKind.DIRECTORY_UNREADABLE,
            message=f"{type(exc).__name__}: {exc.strerror or exc}",
        )
        logger.warning("Cannot read directory %s: %s", path, error.message)
        self.errors.append(error)
