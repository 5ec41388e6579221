# src/projects/detectors.py — v1
"""Project detectors: recognize a code project root from the files it holds.

Detection only looks at which marker files exist. Build files are never
parsed, so a project's name is its folder name. A git checkout additionally
reports its branch, head commit and origin remote, read from ``.git``.

Detectors run highest ``priority`` first; the first one that returns an
identity wins.
"""

from __future__ import annotations

import configparser
import logging
import os
import re
from dataclasses import dataclass
from pathlib import Path
from typing import Iterable, Protocol, Sequence

from catalogscan.core.models import ProjectIdentity, ProjectType
from catalogscan.discovery.archive import file_extension

logger = logging.getLogger(__name__)

SOURCE_EXTENSIONS: frozenset[str] = frozenset({
    "java", "kt", "kts",
    "js", "ts", "jsx", "tsx",
    "py", "go", "rs",
    "c", "cpp", "cc", "h", "hpp",
    "cs", "rb", "php", "swift", "scala",
    "sh", "bash",
})

# Configuration files that still count toward a project's source fingerprint.
CONFIG_EXTENSIONS: frozenset[str] = frozenset(
    {"xml", "gradle", "toml", "yaml", "yml", "json", "md"}
)


def is_source_file(name: str) -> bool:
    ext = file_extension(name)
    return ext in SOURCE_EXTENSIONS or ext in CONFIG_EXTENSIONS


class ProjectDetector(Protocol):
    """Recognizes one kind of project root."""

    priority: int

    def can_detect(self, folder: Path) -> bool:
        """Cheap marker check."""
        ...

    def detect(self, folder: Path) -> ProjectIdentity | None:
        """Identity of the project rooted at ``folder``, or None."""
        ...


@dataclass(frozen=True)
class MarkerFileDetector:
    """A project type recognized by any one of its build marker files."""

    project_type: ProjectType
    markers: tuple[str, ...]
    priority: int = 10

    def can_detect(self, folder: Path) -> bool:
        return any((folder / m).is_file() for m in self.markers)

    def detect(self, folder: Path) -> ProjectIdentity | None:
        if not self.can_detect(folder):
            return None
        name = folder.name or str(folder)
        return ProjectIdentity(
            type=self.project_type,
            name=name,
            identifier=f"{self.project_type.value}:{name}",
        )


_REMOTE_NAME = re.compile(r"([^/:]+?)(?:\.git)?/?$")


class GitDetector:
    """A git working tree (``.git`` directory), identified by remote and branch."""

    priority = 5

    def can_detect(self, folder: Path) -> bool:
        return (folder / ".git").is_dir()

    def detect(self, folder: Path) -> ProjectIdentity | None:
        git_dir = folder / ".git"
        if not git_dir.is_dir():
            return None
        try:
            branch, commit = self._head(git_dir)
            remote = self._origin(git_dir)
        except (OSError, UnicodeDecodeError, configparser.Error) as e:
            logger.warning("Cannot read git metadata in %s: %s", folder, e)
            return None

        name = folder.name or str(folder)
        if remote:
            match = _REMOTE_NAME.search(remote)
            if match:
                name = match.group(1)
        branch = branch or "main"
        return ProjectIdentity(
            type=ProjectType.GENERIC,
            name=name,
            identifier=f"{remote or 'unknown'}@{branch}",
            git_remote=remote,
            git_branch=branch,
            git_commit=commit,
        )

    @staticmethod
    def _head(git_dir: Path) -> tuple[str | None, str | None]:
        head_file = git_dir / "HEAD"
        if not head_file.is_file():
            return None, None
        head = head_file.read_text(encoding="utf-8").strip()
        if not head.startswith("ref:"):
            # Detached head holds the commit itself.
            return None, head or None
        ref = head[4:].strip()
        branch = ref.rsplit("/", 1)[-1] if ref.startswith("refs/heads/") else None
        ref_file = git_dir / ref
        commit = ref_file.read_text(encoding="utf-8").strip() if ref_file.is_file() else None
        return branch, commit or None

    @staticmethod
    def _origin(git_dir: Path) -> str | None:
        config_file = git_dir / "config"
        if not config_file.is_file():
            return None
        parser = configparser.ConfigParser(strict=False, interpolation=None)
        parser.read(config_file, encoding="utf-8")
        section = 'remote "origin"'
        if parser.has_section(section):
            return parser.get(section, "url", fallback=None)
        return None


class GenericCodeDetector:
    """Fallback for folders that look like code without a known build system.

    Matches a ``src`` directory, a ``.gitignore``, or at least
    ``min_source_files`` source files directly in the folder.
    """

    priority = 0

    def __init__(self, min_source_files: int = 3) -> None:
        self.min_source_files = min_source_files

    def can_detect(self, folder: Path) -> bool:
        try:
            if (folder / "src").is_dir() or (folder / ".gitignore").is_file():
                return True
            return self._count_source_files(folder) >= self.min_source_files
        except OSError:
            return False

    def detect(self, folder: Path) -> ProjectIdentity | None:
        if not self.can_detect(folder):
            return None
        name = folder.name or str(folder)
        return ProjectIdentity(
            type=ProjectType.GENERIC, name=name, identifier=f"unknown:{name}"
        )

    def _count_source_files(self, folder: Path) -> int:
        count = 0
        with os.scandir(folder) as it:
            for entry in it:
                if not entry.is_file(follow_symlinks=False):
                    continue
                if file_extension(entry.name) in SOURCE_EXTENSIONS:
                    count += 1
        return count


def default_detectors() -> list[ProjectDetector]:
    return [
        MarkerFileDetector(ProjectType.MAVEN, ("pom.xml",)),
        MarkerFileDetector(ProjectType.GRADLE, ("build.gradle", "build.gradle.kts")),
        MarkerFileDetector(ProjectType.NPM, ("package.json",)),
        MarkerFileDetector(ProjectType.GO, ("go.mod",)),
        MarkerFileDetector(ProjectType.PYTHON, ("pyproject.toml", "setup.py", "requirements.txt")),
        MarkerFileDetector(ProjectType.RUST, ("Cargo.toml",)),
        GitDetector(),
        GenericCodeDetector(),
    ]


class ProjectDetection:
    """Runs detectors in priority order and returns the first identity found."""

    def __init__(self, detectors: Iterable[ProjectDetector] | None = None) -> None:
        chosen = default_detectors() if detectors is None else list(detectors)
        # Stable sort: equal priorities keep their given order.
        self.detectors: Sequence[ProjectDetector] = sorted(
            chosen, key=lambda d: d.priority, reverse=True
        )

    def detect(self, folder: Path) -> ProjectIdentity | None:
        for detector in self.detectors:
            if not detector.can_detect(folder):
                continue
            identity = detector.detect(folder)
            if identity is not None:
                logger.debug("Detected %s project at %s", identity.type.value, folder)
                return identity
        return None
