# src/sinks/base_sink.py — v1
"""Abstract output sink interface.

Two interchangeable backends: a local durable-file sink and a remote HTTP
sink. Every operation must be safe to repeat; the retry layer relies on it.
"""

from __future__ import annotations

from abc import ABC, abstractmethod

from catalogscan.core.models import Batch, CodeProject, ScanSummary, Source


class BaseSink(ABC):
    """Unified interface for scan output destinations."""

    name: str = "base"

    @abstractmethod
    async def create_source(self, source: Source) -> None:
        """Register a Source (scan target or postponed archive)."""

    @abstractmethod
    async def submit_batch(self, batch: Batch) -> None:
        """Persist one sealed batch. Re-submitting the same number overwrites."""

    @abstractmethod
    async def complete_scan(self, source: Source, summary: ScanSummary) -> None:
        """Hand off the final Source state and its summary."""

    async def submit_code_projects(self, source_id: str, projects: list[CodeProject]) -> None:
        """Persist the code projects detected for a Source.

        Backends without project storage drop them.
        """

    @property
    def supports_digest_check(self) -> bool:
        return False

    async def check_digests(self, digests: list[str]) -> dict[str, bool]:
        """Report which digests the backend already knows from prior runs.

        Backends without history know none of them.
        """
        return {d: False for d in digests}

    async def aclose(self) -> None:
        """Release backend resources."""
