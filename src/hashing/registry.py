# src/hashing/registry.py — v1
"""Run-scoped registry of digests already seen (the duplicate gate)."""

from __future__ import annotations

import threading

from catalogscan.core.models import normalize_digest


class DuplicateRegistry:
    """Append-only set of digests with an atomic check-and-insert.

    Only the membership test and insertion happen under the lock; callers
    hash outside of it. Nested archive scans share the parent's registry.
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._seen: set[str] = set()

    def check_and_register(self, digest: str) -> bool:
        """Register a digest; True only for the first caller with it."""
        key = normalize_digest(digest)
        with self._lock:
            if key in self._seen:
                return False
            self._seen.add(key)
            return True

    def __len__(self) -> int:
        with self._lock:
            return len(self._seen)
