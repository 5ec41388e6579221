# src/sinks/remote_sink.py — v1
"""Remote catalog server sink over HTTP (httpx).

Endpoints::

    POST /api/sources                      create a source
    POST /api/files/check-hashes           {"hashes": [...]} -> {"results": {digest: bool}}
    POST /api/files/batch                  submit one batch
    POST /api/sources/{id}/complete        completion handoff
    POST /api/code-projects/bulk           detected code projects

Bodies use the server's camelCase field names (see catalogscan.sinks.wire).
"""

from __future__ import annotations

import logging
from typing import Any

import httpx

from catalogscan.core.models import Batch, CodeProject, ScanSummary, Source, normalize_digest
from catalogscan.sinks.base_sink import BaseSink
from catalogscan.sinks.retry import SinkError
from catalogscan.sinks.wire import (
    CodeProjectDto,
    CompleteScanRequest,
    FileBatchDto,
    SourceDto,
)

logger = logging.getLogger(__name__)


class RemoteSink(BaseSink):
    """Submit scan output to a catalog server."""

    name = "remote"

    def __init__(
        self,
        base_url: str,
        api_key: str = "",
        timeout_s: float = 30.0,
        client: httpx.AsyncClient | None = None,
    ) -> None:
        headers = {"Accept": "application/json"}
        if api_key:
            headers["Authorization"] = f"Bearer {api_key}"
        self._owns_client = client is None
        self._client = client or httpx.AsyncClient(
            base_url=base_url.rstrip("/"),
            timeout=timeout_s,
            headers=headers,
        )

    async def _post(self, path: str, payload: Any) -> httpx.Response:
        try:
            response = await self._client.post(path, json=payload)
        except httpx.TransportError as e:
            raise SinkError(f"POST {path}: {type(e).__name__}: {e}", transient=True) from e
        if response.status_code >= 400:
            transient = response.status_code >= 500 or response.status_code == 429
            raise SinkError(
                f"POST {path} returned {response.status_code}: {response.text[:200]}",
                transient=transient,
            )
        return response

    async def create_source(self, source: Source) -> None:
        await self._post("/api/sources", SourceDto.from_source(source).to_wire())
        logger.debug("Registered source %s remotely", source.id)

    async def submit_batch(self, batch: Batch) -> None:
        await self._post("/api/files/batch", FileBatchDto.from_batch(batch).to_wire())
        logger.debug("Submitted batch %d for %s", batch.batch_number, batch.source_id)

    async def complete_scan(self, source: Source, summary: ScanSummary) -> None:
        payload = CompleteScanRequest.from_scan(source, summary).to_wire()
        await self._post(f"/api/sources/{source.id}/complete", payload)

    async def submit_code_projects(self, source_id: str, projects: list[CodeProject]) -> None:
        if not projects:
            return
        payload = [CodeProjectDto.from_project(p).to_wire() for p in projects]
        await self._post("/api/code-projects/bulk", payload)
        logger.debug("Submitted %d code project(s) for %s", len(projects), source_id)

    @property
    def supports_digest_check(self) -> bool:
        return True

    async def check_digests(self, digests: list[str]) -> dict[str, bool]:
        """Ask the server which digests it already holds.

        Server keys are normalized before lookup; digests the server omits
        count as unknown.
        """
        wanted = [normalize_digest(d) for d in digests]
        if not wanted:
            return {}
        response = await self._post("/api/files/check-hashes", {"hashes": wanted})
        try:
            body = response.json()
        except ValueError as e:
            raise SinkError(f"check-hashes returned invalid JSON: {e}", transient=False) from e

        known: dict[str, bool] = {}
        for key, value in (body.get("results") or {}).items():
            try:
                known[normalize_digest(key)] = bool(value)
            except ValueError:
                logger.warning("Ignoring malformed digest from server: %r", key)
        return {d: known.get(d, False) for d in wanted}

    async def aclose(self) -> None:
        if self._owns_client:
            await self._client.aclose()
