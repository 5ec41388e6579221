# src/pipeline/progress.py — v1
"""Timer-driven progress reporting.

Pipeline stages only bump counters under a short lock. A background timer
polls those counters on a fixed cadence and renders; a tick that finds the
previous render still running is dropped, never queued.
"""

from __future__ import annotations

import logging
import sys
import threading
import time
from collections import deque
from contextlib import contextmanager
from dataclasses import dataclass
from typing import Callable, Iterator, TextIO

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ProgressSnapshot:
    """Counters at one instant plus rates over the rolling window."""

    files_discovered: int
    bytes_discovered: int
    files_completed: int
    files_failed: int
    bytes_completed: int
    bytes_hashed: int
    current_file: str | None
    elapsed_s: float
    files_per_s: float
    bytes_per_s: float


Renderer = Callable[[ProgressSnapshot], None]


def _human_bytes(n: float) -> str:
    for unit in ("B", "KB", "MB", "GB", "TB"):
        if abs(n) < 1024 or unit == "TB":
            return f"{n:.1f} {unit}"
        n /= 1024
    return f"{n:.1f} TB"


class ConsoleRenderer:
    """One self-overwriting status line on a terminal, periodic log lines otherwise."""

    def __init__(self, stream: TextIO | None = None, log_every_s: float = 30.0) -> None:
        self._stream = stream or sys.stderr
        self._log_every_s = log_every_s
        self._last_log = 0.0

    def __call__(self, snap: ProgressSnapshot) -> None:
        line = (
            f"{snap.files_completed}/{snap.files_discovered} files "
            f"({_human_bytes(snap.bytes_completed)}/{_human_bytes(snap.bytes_discovered)}) "
            f"{snap.files_per_s:.1f} files/s {_human_bytes(snap.bytes_per_s)}/s"
        )
        if snap.files_failed:
            line += f" {snap.files_failed} failed"
        isatty = getattr(self._stream, "isatty", None)
        if isatty is not None and isatty():
            self._stream.write("\r\x1b[2K" + line)
            self._stream.flush()
            return
        now = time.monotonic()
        if now - self._last_log >= self._log_every_s:
            self._last_log = now
            logger.info("Progress: %s", line)


class ProgressTracker:
    """Shared counters plus a rendering timer thread."""

    def __init__(
        self,
        interval_s: float = 0.5,
        window_s: float = 5.0,
        renderer: Renderer | None = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        if interval_s <= 0:
            raise ValueError("interval_s must be > 0")
        self.interval_s = interval_s
        self.window_s = window_s
        self._renderer = renderer or ConsoleRenderer()
        self._clock = clock
        self._lock = threading.Lock()
        self._render_lock = threading.Lock()
        self._paused = threading.Event()
        self._stop = threading.Event()
        self._thread: threading.Thread | None = None
        self._started_at = clock()
        self._samples: deque[tuple[float, int, int]] = deque()

        self._files_discovered = 0
        self._bytes_discovered = 0
        self._files_completed = 0
        self._files_failed = 0
        self._bytes_completed = 0
        self._bytes_hashed = 0
        self._current_file: str | None = None

        self.ticks_rendered = 0
        self.ticks_dropped = 0

    # --- counter updates (any thread) ---

    def file_discovered(self, size: int) -> None:
        with self._lock:
            self._files_discovered += 1
            self._bytes_discovered += size

    def file_started(self, path: str) -> None:
        with self._lock:
            self._current_file = path

    def bytes_hashed(self, n: int) -> None:
        with self._lock:
            self._bytes_hashed += n

    def file_completed(self, size: int) -> None:
        with self._lock:
            self._files_completed += 1
            self._bytes_completed += size

    def file_failed(self) -> None:
        with self._lock:
            self._files_failed += 1

    # --- polling side ---

    def snapshot(self) -> ProgressSnapshot:
        now = self._clock()
        with self._lock:
            files_done = self._files_completed + self._files_failed
            bytes_done = self._bytes_completed
            self._samples.append((now, files_done, bytes_done))
            while len(self._samples) > 1 and now - self._samples[0][0] > self.window_s:
                self._samples.popleft()
            t0, f0, b0 = self._samples[0]
            span = now - t0
            return ProgressSnapshot(
                files_discovered=self._files_discovered,
                bytes_discovered=self._bytes_discovered,
                files_completed=self._files_completed,
                files_failed=self._files_failed,
                bytes_completed=bytes_done,
                bytes_hashed=self._bytes_hashed,
                current_file=self._current_file,
                elapsed_s=now - self._started_at,
                files_per_s=(files_done - f0) / span if span > 0 else 0.0,
                bytes_per_s=(bytes_done - b0) / span if span > 0 else 0.0,
            )

    def tick(self) -> bool:
        """Render once unless a render is already in progress.

        Returns:
            True if rendered, False if the tick was dropped.
        """
        if self._paused.is_set() or not self._render_lock.acquire(blocking=False):
            self.ticks_dropped += 1
            return False
        try:
            if self._paused.is_set():
                self.ticks_dropped += 1
                return False
            self._renderer(self.snapshot())
            self.ticks_rendered += 1
        except Exception:  # noqa: BLE001
            logger.debug("Progress render failed", exc_info=True)
        finally:
            self._render_lock.release()
        return True

    @contextmanager
    def paused(self) -> Iterator[None]:
        """Suppress rendering, e.g. while an operator prompt owns the terminal.

        Sets the pause flag, then waits for a render already under way to
        finish. Ticks that start while paused are dropped.
        """
        self._paused.set()
        try:
            with self._render_lock:
                pass
            yield
        finally:
            self._paused.clear()

    def _run(self) -> None:
        while not self._stop.wait(self.interval_s):
            self.tick()

    def start(self) -> None:
        if self._thread is not None:
            return
        self._stop.clear()
        self._thread = threading.Thread(target=self._run, name="progress", daemon=True)
        self._thread.start()

    def stop(self) -> None:
        """Stop the timer and render a final line."""
        if self._thread is None:
            return
        self._stop.set()
        self._thread.join(timeout=self.interval_s * 4)
        self._thread = None
        self.tick()
