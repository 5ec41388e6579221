# src/sinks/replay.py — v1
"""Replay a local scan output directory into another sink.

Used to upload scans made offline: source.json, then every batch file in
batch-number order, then code-projects.json when present, then summary.json.
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass
from pathlib import Path

from catalogscan.core.models import Batch, ScanSummary, Source
from catalogscan.sinks.base_sink import BaseSink
from catalogscan.sinks.local_sink import (
    CODE_PROJECTS_ADAPTER,
    CODE_PROJECTS_FILE,
    FILES_DIR,
    SOURCE_FILE,
    SUMMARY_FILE,
)

logger = logging.getLogger(__name__)

_BATCH_RE = re.compile(r"^batch-(\d+)\.json$")


class ReplayError(Exception):
    """The directory is not a readable local scan output."""


@dataclass
class ReplayResult:
    source_id: str
    batches: int = 0
    files: int = 0
    code_projects: int = 0
    completed: bool = False


def list_batch_files(source_dir: Path) -> list[Path]:
    """Batch files sorted by their embedded number, not by name."""
    files_dir = source_dir / FILES_DIR
    if not files_dir.is_dir():
        return []
    numbered = []
    for path in files_dir.iterdir():
        match = _BATCH_RE.match(path.name)
        if match:
            numbered.append((int(match.group(1)), path))
    return [p for _, p in sorted(numbered)]


async def replay_output(source_dir: str | Path, sink: BaseSink) -> ReplayResult:
    """Submit a local scan output to ``sink``.

    Raises:
        ReplayError: If source.json is missing or unreadable.
        SinkUnavailableError: If the target sink gives up (when wrapped
            in RetryingSink).
    """
    source_dir = Path(source_dir)
    source_file = source_dir / SOURCE_FILE
    if not source_file.is_file():
        raise ReplayError(f"{SOURCE_FILE} not found in {source_dir}")
    try:
        source = Source.model_validate_json(source_file.read_text(encoding="utf-8"))
    except ValueError as e:
        raise ReplayError(f"Invalid {source_file}: {e}") from e

    result = ReplayResult(source_id=source.id)
    await sink.create_source(source)
    logger.info("Replaying source %s (%s)", source.name, source.id)

    for path in list_batch_files(source_dir):
        try:
            batch = Batch.model_validate_json(path.read_text(encoding="utf-8"))
        except ValueError as e:
            raise ReplayError(f"Invalid batch file {path}: {e}") from e
        await sink.submit_batch(batch)
        result.batches += 1
        result.files += len(batch.files)

    projects_file = source_dir / CODE_PROJECTS_FILE
    if projects_file.is_file():
        try:
            projects = CODE_PROJECTS_ADAPTER.validate_json(projects_file.read_bytes())
        except ValueError as e:
            raise ReplayError(f"Invalid {projects_file}: {e}") from e
        await sink.submit_code_projects(source.id, projects)
        result.code_projects = len(projects)

    summary_file = source_dir / SUMMARY_FILE
    if summary_file.is_file():
        summary = ScanSummary.model_validate_json(summary_file.read_text(encoding="utf-8"))
        await sink.complete_scan(source, summary)
        result.completed = True
    else:
        logger.warning("No %s in %s; scan left open on the target", SUMMARY_FILE, source_dir)

    logger.info(
        "Replayed %d batch(es), %d file(s) for %s", result.batches, result.files, source.id
    )
    return result
