# src/interactive/prompts.py — v1
"""Operator interaction: source labelling and archive decisions.

ConsolePrompt blocks on a human; FixedArchivePolicy answers every archive
question the same way for headless runs. Both satisfy the ArchivePrompt
protocol consumed by the classifier.
"""

from __future__ import annotations

import logging
import sys
import threading
from pathlib import Path
from typing import TextIO

from catalogscan.core.models import ArchiveDecision

logger = logging.getLogger(__name__)

_RULE = "-" * 60

_ARCHIVE_CHOICES: dict[str, ArchiveDecision] = {
    "s": ArchiveDecision.SCAN_NOW,
    "p": ArchiveDecision.POSTPONE,
    "a": ArchiveDecision.AUTO_POSTPONE_REST,
    "i": ArchiveDecision.TREAT_AS_ORDINARY,
}

POLICY_DECISIONS: dict[str, ArchiveDecision] = {
    "postpone": ArchiveDecision.POSTPONE,
    "scan_now": ArchiveDecision.SCAN_NOW,
    "ignore": ArchiveDecision.TREAT_AS_ORDINARY,
}


def default_source_name(volume_label: str | None) -> str:
    """Derive a source name from a volume label ('My_Disk 2' -> 'My-Disk-2')."""
    if not volume_label or not volume_label.strip():
        return "Unknown"
    return volume_label.strip().replace("_", "-").replace(" ", "-")


def format_size(num_bytes: int) -> str:
    size = float(num_bytes)
    for unit in ("B", "KB", "MB", "GB", "TB"):
        if size < 1024 or unit == "TB":
            return f"{size:.0f} {unit}" if unit == "B" else f"{size:.1f} {unit}"
        size /= 1024
    return f"{num_bytes} B"


class FixedArchivePolicy:
    """Answers every archive decision with the same value."""

    def __init__(self, decision: ArchiveDecision) -> None:
        self.decision = decision

    @classmethod
    def from_policy(cls, policy: str) -> FixedArchivePolicy:
        try:
            return cls(POLICY_DECISIONS[policy])
        except KeyError:
            raise ValueError(f"No fixed decision for archive policy {policy!r}") from None

    def prompt_archive_decision(self, path: Path, size: int) -> ArchiveDecision:
        logger.debug("Archive %s (%d bytes): %s by policy", path, size, self.decision.value)
        return self.decision


class ConsolePrompt:
    """Line-oriented prompts on a terminal.

    Reads return "" at end of input, which selects each prompt's default.
    Output goes to stderr by default so stdout stays clean for summaries.
    """

    def __init__(
        self,
        stdin: TextIO | None = None,
        stdout: TextIO | None = None,
    ) -> None:
        self._in = stdin or sys.stdin
        self._out = stdout or sys.stderr
        self._lock = threading.Lock()

    def _say(self, text: str = "") -> None:
        print(text, file=self._out)

    def _read(self) -> str:
        self._out.write("> ")
        self._out.flush()
        line = self._in.readline()
        return line.strip() if line else ""

    def prompt_source_name(self, volume_label: str | None) -> str:
        default = default_source_name(volume_label)
        self._say()
        self._say(_RULE)
        self._say(f"Detected volume: {volume_label or '(unknown)'}")
        self._say()
        self._say("Enter a logical name for this source (e.g. 'WD-4TB-Blue')")
        self._say(f"Press ENTER to accept default: [{default}]")
        result = self._read() or default
        self._say(f"Source name: {result}")
        return result

    def prompt_physical_label(self) -> str | None:
        self._say()
        self._say("Enter physical label (sticker on disk), ENTER to skip")
        result = self._read() or None
        self._say(f"Physical label: {result or '(none)'}")
        return result

    def prompt_notes(self) -> str | None:
        self._say()
        self._say("Enter notes about this source, ENTER to skip")
        result = self._read() or None
        self._say(f"Notes: {result or '(none)'}")
        self._say(_RULE)
        return result

    def prompt_archive_decision(self, path: Path, size: int) -> ArchiveDecision:
        """Ask until a valid choice is entered; ENTER or end of input postpones."""
        with self._lock:
            self._say()
            self._say(f"Large archive found: {path} ({format_size(size)})")
            self._say("  [s] scan contents now")
            self._say("  [p] postpone (catalog the archive only)  (default)")
            self._say("  [a] postpone this and every remaining archive")
            self._say("  [i] ignore, treat as an ordinary file")
            while True:
                answer = self._read().lower()
                if not answer:
                    return ArchiveDecision.POSTPONE
                decision = _ARCHIVE_CHOICES.get(answer[0])
                if decision is not None:
                    return decision
                self._say(f"Unknown choice {answer!r}; enter s, p, a or i")
