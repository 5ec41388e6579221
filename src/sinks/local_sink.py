# src/sinks/local_sink.py — v1
"""Local durable-file sink (default backend).

Layout under the output directory::

    <source_id>/source.json
    <source_id>/files/batch-0001.json
    <source_id>/code-projects.json
    <source_id>/summary.json

Files are written to a temporary sibling and renamed into place, so a
crash never leaves a half-written batch and a repeated write replaces the
previous one.
"""

from __future__ import annotations

import asyncio
import logging
import os
import tempfile
from pathlib import Path

from pydantic import TypeAdapter

from catalogscan.core.models import Batch, CodeProject, ScanSummary, Source
from catalogscan.sinks.base_sink import BaseSink

logger = logging.getLogger(__name__)

SOURCE_FILE = "source.json"
SUMMARY_FILE = "summary.json"
CODE_PROJECTS_FILE = "code-projects.json"
FILES_DIR = "files"

CODE_PROJECTS_ADAPTER = TypeAdapter(list[CodeProject])


def batch_filename(batch_number: int) -> str:
    return f"batch-{batch_number:04d}.json"


def _atomic_write(path: Path, content: str) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    fd, tmp = tempfile.mkstemp(dir=path.parent, prefix=f".{path.name}.", suffix=".tmp")
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as fh:
            fh.write(content)
        os.replace(tmp, path)
    except BaseException:
        if os.path.exists(tmp):
            os.unlink(tmp)
        raise


class LocalSink(BaseSink):
    """Write scan output as JSON files on the local filesystem."""

    name = "local"

    def __init__(self, output_dir: str | Path) -> None:
        self._base = Path(output_dir).expanduser()

    @property
    def output_dir(self) -> Path:
        return self._base

    def source_dir(self, source_id: str) -> Path:
        return self._base / source_id

    async def create_source(self, source: Source) -> None:
        path = self.source_dir(source.id) / SOURCE_FILE
        await asyncio.to_thread(_atomic_write, path, source.model_dump_json(indent=2))
        logger.debug("Wrote %s", path)

    async def submit_batch(self, batch: Batch) -> None:
        path = self.source_dir(batch.source_id) / FILES_DIR / batch_filename(batch.batch_number)
        await asyncio.to_thread(_atomic_write, path, batch.model_dump_json(indent=2))
        logger.debug("Wrote batch %d (%d files) to %s", batch.batch_number, len(batch.files), path)

    async def submit_code_projects(self, source_id: str, projects: list[CodeProject]) -> None:
        path = self.source_dir(source_id) / CODE_PROJECTS_FILE
        content = CODE_PROJECTS_ADAPTER.dump_json(projects, indent=2).decode("utf-8")
        await asyncio.to_thread(_atomic_write, path, content)
        logger.debug("Wrote %d code project(s) to %s", len(projects), path)

    async def complete_scan(self, source: Source, summary: ScanSummary) -> None:
        source_dir = self.source_dir(source.id)
        await asyncio.to_thread(
            _atomic_write, source_dir / SOURCE_FILE, source.model_dump_json(indent=2)
        )
        await asyncio.to_thread(
            _atomic_write, source_dir / SUMMARY_FILE, summary.model_dump_json(indent=2)
        )
        logger.info("Scan output for %s written to %s", source.name, source_dir)
