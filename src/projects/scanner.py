# src/projects/scanner.py — v1
"""Post-walk pass that finds code project roots under a scanned tree.

Runs after every file has been hashed. Folders are visited top-down; the
first folder a detector recognizes becomes a project root and nothing below
it is searched for further projects. A project's content digest is built
from the digests the main scan already computed, so no file is read twice.
"""

from __future__ import annotations

import hashlib
import logging
import os
import stat
from pathlib import Path
from typing import Callable, Iterable, Mapping

from catalogscan.core.models import CodeProject, ProjectIdentity
from catalogscan.projects.detectors import ProjectDetection, ProjectDetector, is_source_file

logger = logging.getLogger(__name__)

DEFAULT_EXCLUDED_DIRS: frozenset[str] = frozenset({
    "target", "build", "out", "dist", ".gradle",
    "node_modules", "vendor", ".venv", "venv", "__pycache__",
    ".idea", ".vscode", ".eclipse",
    ".git", ".svn", ".hg",
})


def content_digest(digests: Iterable[str]) -> str:
    """SHA-256 over the sorted hex digests of a project's source files."""
    h = hashlib.sha256()
    for digest in sorted(digests):
        h.update(digest.encode("ascii"))
    return h.hexdigest()


def _relative(path: Path, root: Path) -> str:
    return path.relative_to(root).as_posix()


class CodeProjectScanner:
    """Detects code projects below a root.

    Args:
        detectors: Detectors to run; defaults to the built-in set.
        excluded_dirs: Folder names never searched and never counted as
            project content (build output, dependencies, VCS metadata).
        should_stop: Polled between folders; True ends the pass early.
    """

    def __init__(
        self,
        detectors: Iterable[ProjectDetector] | None = None,
        excluded_dirs: Iterable[str] | None = None,
        should_stop: Callable[[], bool] | None = None,
    ) -> None:
        self.detection = ProjectDetection(detectors)
        self.excluded_dirs = (
            DEFAULT_EXCLUDED_DIRS if excluded_dirs is None else frozenset(excluded_dirs)
        )
        self.should_stop = should_stop

    @classmethod
    def from_settings(
        cls,
        settings,
        detectors: Iterable[ProjectDetector] | None = None,
        should_stop: Callable[[], bool] | None = None,
    ) -> CodeProjectScanner:
        return cls(
            detectors=detectors,
            excluded_dirs=settings.code_project_exclude_list,
            should_stop=should_stop,
        )

    def scan(
        self, root: str | Path, source_id: str, digests: Mapping[str, str]
    ) -> list[CodeProject]:
        """Return the projects found under ``root``.

        Args:
            root: Scan root the digests are relative to.
            source_id: Source the projects belong to.
            digests: Root-relative posix path -> content digest, as produced
                by the main scan.
        """
        root = Path(root)
        projects: list[CodeProject] = []

        def on_error(exc: OSError) -> None:
            logger.debug("Cannot access %s: %s", exc.filename, exc.strerror or exc)

        for dirpath, dirnames, _ in os.walk(root, onerror=on_error):
            if self.should_stop is not None and self.should_stop():
                logger.info("Code project detection stopped early")
                break
            folder = Path(dirpath)
            identity = self.detection.detect(folder)
            if identity is not None:
                projects.append(self._build(folder, root, source_id, identity, digests))
                dirnames.clear()
                continue
            dirnames[:] = sorted(d for d in dirnames if d not in self.excluded_dirs)

        logger.info("Found %d code project(s) in %s", len(projects), root)
        return projects

    def _build(
        self,
        project_root: Path,
        root: Path,
        source_id: str,
        identity: ProjectIdentity,
        digests: Mapping[str, str],
    ) -> CodeProject:
        total_files = 0
        total_size = 0
        source_files = 0
        source_digests: list[str] = []

        for dirpath, dirnames, filenames in os.walk(project_root):
            dirnames[:] = [d for d in dirnames if d not in self.excluded_dirs]
            for name in filenames:
                path = Path(dirpath) / name
                try:
                    st = os.lstat(path)
                except OSError:
                    continue
                if not stat.S_ISREG(st.st_mode):
                    continue
                total_files += 1
                total_size += st.st_size
                if not is_source_file(name):
                    continue
                source_files += 1
                digest = digests.get(_relative(path, root))
                if digest is not None:
                    source_digests.append(digest)

        project = CodeProject(
            source_id=source_id,
            root_path=_relative(project_root, root),
            identity=identity,
            content_digest=content_digest(source_digests),
            source_file_count=source_files,
            total_file_count=total_files,
            total_size=total_size,
        )
        logger.info(
            "Detected code project %s (%s) at %s",
            identity.identifier, identity.type.value, project.root_path,
        )
        return project
