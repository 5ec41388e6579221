# src/pipeline/state.py — v1
"""Scan lifecycle state machine and cooperative cancellation.

Legal transitions::

    INITIALIZING -> WALKING -> PROCESSING -> FINALIZING -> COMPLETED
                                                        -> FAILED
    WALKING -> FINALIZING     (cancelled or fatal error mid-walk)
    any non-terminal -> FAILED

COMPLETED and FAILED are terminal.
"""

from __future__ import annotations

import logging
import threading
from datetime import datetime, timezone
from typing import Callable

from catalogscan.core.models import ScanState

logger = logging.getLogger(__name__)

LEGAL_TRANSITIONS: dict[ScanState, frozenset[ScanState]] = {
    ScanState.INITIALIZING: frozenset({ScanState.WALKING, ScanState.FAILED}),
    ScanState.WALKING: frozenset(
        {ScanState.PROCESSING, ScanState.FINALIZING, ScanState.FAILED}
    ),
    ScanState.PROCESSING: frozenset({ScanState.FINALIZING, ScanState.FAILED}),
    ScanState.FINALIZING: frozenset({ScanState.COMPLETED, ScanState.FAILED}),
    ScanState.COMPLETED: frozenset(),
    ScanState.FAILED: frozenset(),
}


class IllegalTransitionError(Exception):
    """A state change not allowed by LEGAL_TRANSITIONS was requested."""

    def __init__(self, current: ScanState, requested: ScanState) -> None:
        self.current = current
        self.requested = requested
        super().__init__(f"Illegal scan transition {current.value} -> {requested.value}")


class ScanCancelled(Exception):
    """Raised when work is attempted after cancellation was requested."""


TransitionListener = Callable[[ScanState, ScanState], None]


class ScanStateMachine:
    """Current state of one Source scan plus its transition history."""

    def __init__(self, listener: TransitionListener | None = None) -> None:
        self._state = ScanState.INITIALIZING
        self._listener = listener
        self.history: list[tuple[ScanState, datetime]] = [
            (ScanState.INITIALIZING, datetime.now(timezone.utc))
        ]

    @property
    def state(self) -> ScanState:
        return self._state

    @property
    def is_terminal(self) -> bool:
        return self._state.is_terminal

    def can_transition(self, target: ScanState) -> bool:
        return target in LEGAL_TRANSITIONS[self._state]

    def transition(self, target: ScanState) -> None:
        """Move to ``target``.

        Raises:
            IllegalTransitionError: If the move is not allowed.
        """
        if not self.can_transition(target):
            raise IllegalTransitionError(self._state, target)
        previous = self._state
        self._state = target
        self.history.append((target, datetime.now(timezone.utc)))
        logger.debug("Scan state %s -> %s", previous.value, target.value)
        if self._listener is not None:
            self._listener(previous, target)

    def fail(self) -> None:
        """Move to FAILED unless already terminal."""
        if not self.is_terminal:
            self.transition(ScanState.FAILED)


class CancellationToken:
    """Thread-safe cancellation flag shared by walker, workers and nested scans."""

    def __init__(self) -> None:
        self._evt = threading.Event()
        self.reason: str | None = None

    def cancel(self, reason: str = "cancelled") -> None:
        if not self._evt.is_set():
            self.reason = reason
            logger.info("Cancellation requested: %s", reason)
        self._evt.set()

    @property
    def cancelled(self) -> bool:
        return self._evt.is_set()

    def wait(self, timeout: float) -> bool:
        return self._evt.wait(timeout)

    def raise_if_cancelled(self) -> None:
        if self._evt.is_set():
            raise ScanCancelled(self.reason or "cancelled")
