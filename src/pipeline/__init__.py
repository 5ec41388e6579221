"""Scan orchestration: state machine, batching, progress."""
