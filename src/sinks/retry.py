# src/sinks/retry.py — v1
"""Bounded exponential backoff for sink operations.

Transient failures (network, timeout, 5xx, OSError) are retried up to the
attempt limit with jittered backoff; anything else fails fast. Either way
the caller finally sees a single SinkUnavailableError, which the scan treats
as fatal.
"""

from __future__ import annotations

import asyncio
import logging
import random
from dataclasses import dataclass
from typing import Any, Awaitable, Callable

import httpx

from catalogscan.core.models import Batch, CodeProject, ScanSummary, Source
from catalogscan.sinks.base_sink import BaseSink

logger = logging.getLogger(__name__)


class SinkError(Exception):
    """A sink operation failed. ``transient`` marks it as worth retrying."""

    def __init__(self, message: str, transient: bool = True) -> None:
        self.transient = transient
        super().__init__(message)


class SinkUnavailableError(Exception):
    """A sink operation failed permanently or exhausted its retries."""

    def __init__(self, operation: str, attempts: int, last_error: BaseException):
        self.operation = operation
        self.attempts = attempts
        self.last_error = last_error
        super().__init__(
            f"Sink operation '{operation}' failed after {attempts} attempt(s): "
            f"{type(last_error).__name__}: {last_error}"
        )


@dataclass(frozen=True)
class RetryPolicy:
    """Attempt limit, backoff and per-attempt timeout."""

    max_attempts: int = 3
    base_delay_s: float = 1.0
    backoff_factor: float = 2.0
    jitter: bool = True
    timeout_s: float | None = 30.0

    @classmethod
    def from_settings(cls, settings) -> RetryPolicy:
        return cls(
            max_attempts=settings.sink_max_attempts,
            base_delay_s=settings.sink_retry_base_delay_s,
            backoff_factor=settings.sink_retry_backoff,
            timeout_s=settings.remote_timeout_s,
        )


def is_transient(error: BaseException) -> bool:
    """Classify an exception raised by a sink operation."""
    if isinstance(error, SinkError):
        return error.transient
    if isinstance(error, (asyncio.TimeoutError, TimeoutError)):
        return True
    if isinstance(error, httpx.TransportError):
        return True
    if isinstance(error, httpx.HTTPStatusError):
        status = error.response.status_code
        return status >= 500 or status == 429
    return isinstance(error, OSError)


def _compute_delay(policy: RetryPolicy, attempt: int) -> float:
    """Delay before retry number ``attempt`` (0-based)."""
    delay = policy.base_delay_s * (policy.backoff_factor ** attempt)
    if policy.jitter:
        delay *= 0.5 + random.random()  # noqa: S311
    return delay


async def with_retry(
    fn: Callable[..., Awaitable[Any]],
    *args: Any,
    operation: str = "sink",
    policy: RetryPolicy | None = None,
    **kwargs: Any,
) -> Any:
    """Run an async sink operation under the retry policy.

    Raises:
        SinkUnavailableError: On a permanent error or when attempts run out.
    """
    policy = policy or RetryPolicy()
    attempts = 0

    while True:
        attempts += 1
        try:
            if policy.timeout_s is not None:
                return await asyncio.wait_for(fn(*args, **kwargs), policy.timeout_s)
            return await fn(*args, **kwargs)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            if not is_transient(e) or attempts >= policy.max_attempts:
                raise SinkUnavailableError(operation, attempts, e) from e
            delay = _compute_delay(policy, attempts - 1)
            logger.warning(
                "Sink %s failed (attempt %d/%d): %s; retrying in %.1fs",
                operation, attempts, policy.max_attempts, e, delay,
            )
            await asyncio.sleep(delay)


class RetryingSink(BaseSink):
    """Wraps a sink so every operation goes through with_retry.

    Upstream code only ever sees success or SinkUnavailableError.
    """

    def __init__(self, inner: BaseSink, policy: RetryPolicy | None = None) -> None:
        self.inner = inner
        self.policy = policy or RetryPolicy()
        self.name = f"retrying({inner.name})"

    async def create_source(self, source: Source) -> None:
        await with_retry(
            self.inner.create_source, source, operation="create_source", policy=self.policy
        )

    async def submit_batch(self, batch: Batch) -> None:
        await with_retry(
            self.inner.submit_batch, batch,
            operation=f"submit_batch#{batch.batch_number}", policy=self.policy,
        )

    async def complete_scan(self, source: Source, summary: ScanSummary) -> None:
        await with_retry(
            self.inner.complete_scan, source, summary,
            operation="complete_scan", policy=self.policy,
        )

    async def submit_code_projects(self, source_id: str, projects: list[CodeProject]) -> None:
        await with_retry(
            self.inner.submit_code_projects, source_id, projects,
            operation="submit_code_projects", policy=self.policy,
        )

    @property
    def supports_digest_check(self) -> bool:
        return self.inner.supports_digest_check

    async def check_digests(self, digests: list[str]) -> dict[str, bool]:
        return await with_retry(
            self.inner.check_digests, digests, operation="check_digests", policy=self.policy
        )

    async def aclose(self) -> None:
        await self.inner.aclose()
