# src/pipeline/batch_emitter.py — v1
"""Buffers FileRecords and flushes sealed, numbered batches to the sink.

Only the orchestrator's admission point calls into the emitter, so the
buffer needs no lock. Batch numbers start at 1 and are assigned when a
batch is sealed, never reused. Batches reach the sink strictly in number
order: once a flush fails the emitter holds every later record and retries
the backlog a single time from ``close()``.
"""

from __future__ import annotations

import logging
from typing import Awaitable, Callable

from catalogscan.core.models import Batch, FileRecord
from catalogscan.sinks.retry import SinkUnavailableError

logger = logging.getLogger(__name__)

SubmitFn = Callable[[Batch], Awaitable[None]]


class BatchEmitter:
    """Per-source batch assembly."""

    def __init__(self, source_id: str, batch_size: int, submit: SubmitFn) -> None:
        if batch_size < 1:
            raise ValueError("batch_size must be >= 1")
        self.source_id = source_id
        self.batch_size = batch_size
        self._submit = submit
        self._buffer: list[FileRecord] = []
        self._pending: list[Batch] = []
        self._next_number = 1
        self._closed = False
        self.holding = False
        self.last_error: SinkUnavailableError | None = None
        self.batches_emitted = 0
        self.records_emitted = 0
        self.lost_records = 0

    def _seal(self, records: list[FileRecord]) -> Batch:
        batch = Batch(
            source_id=self.source_id,
            batch_number=self._next_number,
            files=tuple(records),
        )
        self._next_number += 1
        return batch

    async def _send(self, batch: Batch) -> None:
        await self._submit(batch)
        self.batches_emitted += 1
        self.records_emitted += len(batch.files)
        logger.debug("Batch %d emitted (%d files)", batch.batch_number, len(batch.files))

    async def add(self, record: FileRecord) -> None:
        """Admit one record; flushes when the buffer reaches batch_size.

        Raises:
            SinkUnavailableError: If the flush triggered by this record failed.
                The batch is kept for the final attempt in close().
        """
        if self._closed:
            raise RuntimeError("BatchEmitter is closed")
        if record.source_id != self.source_id:
            raise ValueError(
                f"Record for source {record.source_id} given to emitter of {self.source_id}"
            )
        self._buffer.append(record)
        if not self.holding and len(self._buffer) >= self.batch_size:
            await self.flush()

    async def flush(self) -> None:
        """Seal the current buffer (if non-empty) and submit it."""
        if not self._buffer:
            return
        batch = self._seal(self._buffer[: self.batch_size])
        del self._buffer[: self.batch_size]
        if self.holding:
            self._pending.append(batch)
            return
        try:
            await self._send(batch)
        except SinkUnavailableError as e:
            logger.error("Flush of batch %d failed: %s", batch.batch_number, e)
            self.holding = True
            self.last_error = e
            self._pending.append(batch)
            raise

    async def close(self) -> int:
        """Seal what is left and make one last attempt at the backlog.

        Returns:
            Number of records that never reached the sink.
        """
        if self._closed:
            return self.lost_records
        self._closed = True

        while self._buffer:
            chunk = self._buffer[: self.batch_size]
            del self._buffer[: self.batch_size]
            self._pending.append(self._seal(chunk))

        backlog, self._pending = self._pending, []
        for index, batch in enumerate(backlog):
            try:
                await self._send(batch)
            except SinkUnavailableError as e:
                self.last_error = e
                unsent = backlog[index:]
                self.lost_records = sum(len(b.files) for b in unsent)
                logger.error(
                    "Giving up on %d batch(es) (%d records) from #%d: %s",
                    len(unsent), self.lost_records, batch.batch_number, e,
                )
                break
        return self.lost_records
