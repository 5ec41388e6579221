# tests/conftest.py — v1
"""Shared test fixtures for all unit and integration tests.

Provides hermetic settings, sample records, file trees on tmp_path and an
in-memory sink that records every call. No network, no real devices.
"""

from __future__ import annotations

from pathlib import Path

import pytest

from catalogscan.config.settings import Settings
from catalogscan.core.models import (
    ArchiveDecision,
    Batch,
    CodeProject,
    DeviceIdentity,
    FileRecord,
    ScanSummary,
    Source,
)
from catalogscan.logging.context import clear_context
from catalogscan.sinks.base_sink import BaseSink

DIGEST_A = "a" * 64


# === SINKS ===


class RecordingSink(BaseSink):
    """In-memory sink; optionally fails a given number of batch submissions."""

    name = "recording"

    def __init__(
        self,
        fail_batches: int = 0,
        known_digests: set[str] | None = None,
        digest_check: bool = False,
    ) -> None:
        self.sources: dict[str, Source] = {}
        self.batches: list[Batch] = []
        self.completed: list[tuple[Source, ScanSummary]] = []
        self.code_projects: list[CodeProject] = []
        self.digest_queries: list[list[str]] = []
        self._fail_batches = fail_batches
        self._known = known_digests or set()
        self._digest_check = digest_check

    async def create_source(self, source: Source) -> None:
        self.sources[source.id] = source

    async def submit_batch(self, batch: Batch) -> None:
        if self._fail_batches > 0:
            self._fail_batches -= 1
            raise OSError("sink offline")
        self.batches.append(batch)

    async def complete_scan(self, source: Source, summary: ScanSummary) -> None:
        self.completed.append((source, summary))

    async def submit_code_projects(self, source_id: str, projects: list[CodeProject]) -> None:
        self.code_projects.extend(projects)

    @property
    def supports_digest_check(self) -> bool:
        return self._digest_check

    async def check_digests(self, digests: list[str]) -> dict[str, bool]:
        self.digest_queries.append(list(digests))
        return {d: d in self._known for d in digests}

    def records(self, source_id: str | None = None) -> list[FileRecord]:
        return [
            r for b in self.batches for r in b.files
            if source_id is None or r.source_id == source_id
        ]


class RecordingPrompt:
    """Archive prompt returning a fixed answer and remembering each question."""

    def __init__(self, decision: ArchiveDecision = ArchiveDecision.POSTPONE) -> None:
        self.decision = decision
        self.asked: list[tuple[Path, int]] = []

    def prompt_archive_decision(self, path: Path, size: int) -> ArchiveDecision:
        self.asked.append((path, size))
        return self.decision


# === FIXTURES ===


@pytest.fixture(autouse=True)
def _reset_log_context():
    clear_context()
    yield
    clear_context()


@pytest.fixture
def settings(tmp_path: Path) -> Settings:
    """Hermetic settings: no .env, no log file, small batches, no progress."""
    return Settings(
        _env_file=None,
        output_dir=tmp_path / "out",
        log_file=None,
        scan_threads=4,
        scan_batch_size=2,
        progress_enabled=False,
        sink_retry_base_delay_s=0.0,
        sink_max_attempts=2,
        archive_policy="postpone",
    )


@pytest.fixture
def recording_sink() -> RecordingSink:
    return RecordingSink()


@pytest.fixture
def recording_prompt() -> RecordingPrompt:
    return RecordingPrompt()


@pytest.fixture
def make_sink():
    """Factory for RecordingSink with custom failure or digest behavior."""
    return RecordingSink


@pytest.fixture
def make_prompt():
    """Factory for RecordingPrompt with a chosen decision."""
    return RecordingPrompt


@pytest.fixture
def no_probe():
    """Device probe that returns an empty identity with a fixed label."""
    return lambda path: DeviceIdentity(volume_label="TEST_DISK")


@pytest.fixture
def sample_source() -> Source:
    return Source(name="WD-4TB-Blue", root_path="/mnt/disk")


@pytest.fixture
def sample_record(sample_source: Source) -> FileRecord:
    return FileRecord(
        source_id=sample_source.id,
        path="photos/img.jpg",
        name="img.jpg",
        extension="jpg",
        size=1024,
        digest=DIGEST_A,
        content_type="image/jpeg",
    )


@pytest.fixture
def abc_tree(tmp_path: Path) -> Path:
    """Root with a.txt and b.txt sharing content, c.txt distinct."""
    root = tmp_path / "root"
    root.mkdir()
    (root / "a.txt").write_text("hi")
    (root / "b.txt").write_text("hi")
    (root / "c.txt").write_text("bye")
    return root
