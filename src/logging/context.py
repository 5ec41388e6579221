# src/logging/context.py — v1
"""Contextual logging support: attach source_id, scan_state and stage to log records.

Worker threads do not inherit context variables on their own; the
orchestrator submits work through contextvars.copy_context() so records
emitted while hashing still carry the owning source.
"""

from __future__ import annotations

import contextvars
from dataclasses import dataclass
from typing import Any

_source_id: contextvars.ContextVar[str | None] = contextvars.ContextVar(
    "source_id", default=None
)
_scan_state: contextvars.ContextVar[str | None] = contextvars.ContextVar(
    "scan_state", default=None
)
_stage: contextvars.ContextVar[str | None] = contextvars.ContextVar(
    "stage", default=None
)


@dataclass
class LogContext:
    """Snapshot of current logging context."""

    source_id: str | None = None
    scan_state: str | None = None
    stage: str | None = None

    def as_dict(self) -> dict[str, Any]:
        """Return non-None fields as dict for JSON log injection."""
        return {k: v for k, v in self.__dict__.items() if v is not None}


def get_context() -> LogContext:
    """Snapshot current context variables."""
    return LogContext(
        source_id=_source_id.get(),
        scan_state=_scan_state.get(),
        stage=_stage.get(),
    )


def set_source_context(source_id: str) -> None:
    """Set source-level context (once per Source scan)."""
    _source_id.set(source_id)


def set_scan_state(state: str) -> None:
    """Record the orchestrator state on every subsequent record."""
    _scan_state.set(state)


def set_stage(stage: str | None) -> None:
    """Set the pipeline stage (hash, extract, flush...)."""
    _stage.set(stage)


def clear_context() -> None:
    """Reset all context variables."""
    _source_id.set(None)
    _scan_state.set(None)
    _stage.set(None)
