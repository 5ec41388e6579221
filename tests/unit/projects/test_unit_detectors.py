# tests/unit/projects/test_unit_detectors.py — v1
"""Tests for projects/detectors.py — markers, git metadata and priority order."""

from __future__ import annotations

from pathlib import Path

import pytest

from catalogscan.core.models import ProjectIdentity, ProjectType
from catalogscan.projects.detectors import (
    GenericCodeDetector,
    GitDetector,
    MarkerFileDetector,
    ProjectDetection,
    is_source_file,
)

COMMIT = "3f2a" * 10


def _git_checkout(folder: Path, remote: str | None = None, head: str = "ref: refs/heads/develop") -> Path:
    git = folder / ".git"
    (git / "refs" / "heads").mkdir(parents=True)
    (git / "HEAD").write_text(head + "\n")
    (git / "refs" / "heads" / "develop").write_text(COMMIT + "\n")
    if remote is not None:
        (git / "config").write_text(
            "[core]\n\tbare = false\n"
            f'[remote "origin"]\n\turl = {remote}\n\tfetch = +refs/heads/*:refs/remotes/origin/*\n'
        )
    return folder


class TestIsSourceFile:
    @pytest.mark.parametrize("name", ["Main.java", "app.PY", "pom.xml", "Cargo.toml", "README.md"])
    def test_counted(self, name):
        assert is_source_file(name) is True

    @pytest.mark.parametrize("name", ["logo.png", "Makefile", "app.jar"])
    def test_not_counted(self, name):
        assert is_source_file(name) is False


class TestMarkerFileDetector:
    def test_marker_present(self, tmp_path):
        (tmp_path / "go.mod").write_text("module x")
        detector = MarkerFileDetector(ProjectType.GO, ("go.mod",))
        identity = detector.detect(tmp_path)
        assert identity.type is ProjectType.GO
        assert identity.name == tmp_path.name
        assert identity.identifier == f"go:{tmp_path.name}"

    def test_any_marker_matches(self, tmp_path):
        (tmp_path / "build.gradle.kts").write_text("")
        detector = MarkerFileDetector(ProjectType.GRADLE, ("build.gradle", "build.gradle.kts"))
        assert detector.can_detect(tmp_path) is True

    def test_marker_must_be_a_file(self, tmp_path):
        (tmp_path / "pom.xml").mkdir()
        detector = MarkerFileDetector(ProjectType.MAVEN, ("pom.xml",))
        assert detector.detect(tmp_path) is None


class TestGitDetector:
    def test_branch_commit_and_remote(self, tmp_path):
        folder = _git_checkout(tmp_path / "checkout", remote="git@github.com:acme/widgets.git")
        identity = GitDetector().detect(folder)
        assert identity.type is ProjectType.GENERIC
        assert identity.name == "widgets"
        assert identity.git_branch == "develop"
        assert identity.git_commit == COMMIT
        assert identity.git_remote == "git@github.com:acme/widgets.git"
        assert identity.identifier == "git@github.com:acme/widgets.git@develop"

    def test_detached_head(self, tmp_path):
        folder = _git_checkout(tmp_path / "checkout", head=COMMIT)
        identity = GitDetector().detect(folder)
        assert identity.git_commit == COMMIT
        assert identity.git_branch == "main"
        assert identity.identifier == "unknown@main"
        assert identity.name == "checkout"

    def test_no_git_dir(self, tmp_path):
        assert GitDetector().detect(tmp_path) is None


class TestGenericCodeDetector:
    def test_src_dir(self, tmp_path):
        (tmp_path / "src").mkdir()
        identity = GenericCodeDetector().detect(tmp_path)
        assert identity.identifier == f"unknown:{tmp_path.name}"

    def test_source_file_threshold(self, tmp_path):
        for name in ("a.c", "b.c"):
            (tmp_path / name).write_text("")
        detector = GenericCodeDetector(min_source_files=3)
        assert detector.can_detect(tmp_path) is False
        (tmp_path / "c.h").write_text("")
        assert detector.can_detect(tmp_path) is True

    def test_config_files_do_not_count(self, tmp_path):
        for name in ("a.json", "b.yaml", "c.md"):
            (tmp_path / name).write_text("")
        assert GenericCodeDetector().can_detect(tmp_path) is False


class TestProjectDetection:
    def test_build_marker_outranks_git(self, tmp_path):
        folder = _git_checkout(tmp_path / "svc", remote="https://example.org/acme/svc")
        (folder / "pom.xml").write_text("<project/>")
        identity = ProjectDetection().detect(folder)
        assert identity.type is ProjectType.MAVEN

    def test_git_outranks_generic(self, tmp_path):
        folder = _git_checkout(tmp_path / "svc", remote="https://example.org/acme/svc")
        (folder / "src").mkdir()
        identity = ProjectDetection().detect(folder)
        assert identity.git_remote == "https://example.org/acme/svc"
        assert identity.name == "svc"

    def test_plain_folder(self, tmp_path):
        (tmp_path / "notes.txt").write_text("")
        assert ProjectDetection().detect(tmp_path) is None

    def test_custom_detector_ordering(self, tmp_path):
        class _Always:
            def __init__(self, priority, label):
                self.priority = priority
                self.label = label

            def can_detect(self, folder):
                return True

            def detect(self, folder):
                return ProjectIdentity(
                    type=ProjectType.GENERIC, name=folder.name, identifier=self.label
                )

        detection = ProjectDetection([_Always(1, "low"), _Always(50, "high"), _Always(50, "later")])
        assert detection.detect(tmp_path).identifier == "high"
