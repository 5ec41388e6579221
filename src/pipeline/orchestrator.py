# src/pipeline/orchestrator.py — v1
"""Scan orchestrator: drives one Source through its lifecycle.

INITIALIZING  probe the device, label and register the Source
WALKING       enumerate files on the discovery thread, classify archives,
              dispatch hashing to the worker pool
PROCESSING    drain in-flight work, run nested SCAN_NOW archive scans,
              detect code projects from the admitted digests
FINALIZING    flush the last batch, build the summary, hand off to the sink
COMPLETED / FAILED

Workers only hash, stat, pass the duplicate gate and extract metadata; they
return a FileRecord. Everything that mutates per-source state (Source
counters, the batch buffer, the error list) happens on the event loop, which
is the single admission point.
"""

from __future__ import annotations

import asyncio
import contextvars
import getpass
import logging
import shutil
import socket
import tarfile
import tempfile
import time
import zipfile
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Callable, Sequence

from catalogscan.config.settings import ConfigurationError, Settings
from catalogscan.core.models import (
    ArchiveDecision,
    DeviceIdentity,
    ErrorKind,
    FileRecord,
    ScanError,
    ScanOutcome,
    ScanState,
    ScanSummary,
    Source,
    SourceType,
)
from catalogscan.device.probe import DeviceProbe, probe_device
from catalogscan.discovery.archive import (
    ArchiveClassifier,
    ArchivePrompt,
    archive_source_type,
    extract_archive,
)
from catalogscan.discovery.walker import DirectoryWalker, WalkedFile, WalkPolicy
from catalogscan.hashing.hasher import ContentHasher, FileAccessError
from catalogscan.hashing.registry import DuplicateRegistry
from catalogscan.interactive.prompts import default_source_name
from catalogscan.logging.context import set_scan_state, set_source_context, set_stage
from catalogscan.metadata.extractor import MetadataExtractor
from catalogscan.pipeline.batch_emitter import BatchEmitter
from catalogscan.pipeline.progress import ProgressTracker
from catalogscan.pipeline.state import CancellationToken, ScanCancelled, ScanStateMachine
from catalogscan.projects.detectors import ProjectDetector
from catalogscan.projects.scanner import CodeProjectScanner
from catalogscan.sinks.base_sink import BaseSink
from catalogscan.sinks.retry import SinkUnavailableError
from catalogscan.version import __version__

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class SourceLabels:
    """Operator-supplied identification of a Source."""

    name: str
    physical_label: str | None = None
    notes: str | None = None


LabelResolver = Callable[[DeviceIdentity], SourceLabels]


@dataclass
class _WorkResult:
    record: FileRecord
    warning: ScanError | None = None


@dataclass
class _ScanRun:
    """Mutable bookkeeping of one Source scan, owned by the event loop."""

    source: Source
    emitter: BatchEmitter
    errors: list[ScanError] = field(default_factory=list)
    attempted: int = 0
    succeeded: int = 0
    failed: int = 0
    postponed: int = 0
    in_flight: dict[asyncio.Future, WalkedFile] = field(default_factory=dict)
    scan_now: list[WalkedFile] = field(default_factory=list)
    nested: list[ScanSummary] = field(default_factory=list)
    # Root-relative path -> digest, kept only when code projects are detected.
    digests: dict[str, str] | None = None
    code_projects: int = 0
    fatal: BaseException | None = None


def _scanner_identity() -> tuple[str, str]:
    try:
        host = socket.gethostname()
    except OSError:
        host = ""
    try:
        user = getpass.getuser()
    except (KeyError, OSError):
        user = ""
    return host, user


class ScanOrchestrator:
    """Runs the scan pipeline for one Source.

    Args:
        settings: Scanner settings.
        sink: Output sink (normally wrapped in RetryingSink).
        prompt: Archive decision strategy (console or fixed policy).
        probe: Device identity probe; must not raise.
        label_resolver: Names the Source from its device identity. Defaults
            to the sanitized volume label.
        registry: Duplicate registry; nested scans pass the parent's.
        cancel_token: Cooperative cancellation flag.
        progress: Optional progress tracker (counters only; the caller
            starts and stops its timer).
        hasher: Content hasher.
        extractor: Metadata extractor.
        classifier: Archive classifier; nested scans pass the parent's so
            the auto-postpone flag carries over.
        project_detectors: Code project detectors; defaults to the
            built-in marker-file set.
    """

    def __init__(
        self,
        settings: Settings,
        sink: BaseSink,
        prompt: ArchivePrompt,
        probe: DeviceProbe = probe_device,
        label_resolver: LabelResolver | None = None,
        registry: DuplicateRegistry | None = None,
        cancel_token: CancellationToken | None = None,
        progress: ProgressTracker | None = None,
        hasher: ContentHasher | None = None,
        extractor: MetadataExtractor | None = None,
        classifier: ArchiveClassifier | None = None,
        hash_executor: ThreadPoolExecutor | None = None,
        discovery_executor: ThreadPoolExecutor | None = None,
        project_detectors: Sequence[ProjectDetector] | None = None,
    ) -> None:
        self._settings = settings
        self._sink = sink
        self._prompt = prompt
        self._probe = probe
        self._label_resolver = label_resolver
        self.registry = registry or DuplicateRegistry()
        self.cancel_token = cancel_token or CancellationToken()
        self._progress = progress
        self._hasher = hasher or ContentHasher(settings.hash_buffer_size)
        self._extractor = extractor or MetadataExtractor(
            extract_rich=settings.metadata_extract_exif
        )
        self._classifier = classifier or ArchiveClassifier.from_settings(settings, prompt)
        self._hash_executor = hash_executor
        self._discovery_executor = discovery_executor
        self._project_detectors = project_detectors
        self._owns_executors = hash_executor is None and discovery_executor is None
        self._loop: asyncio.AbstractEventLoop | None = None
        self.fatal_error: BaseException | None = None
        self.state_machine = ScanStateMachine(listener=self._on_transition)

    # ------------------------------------------------------------------
    # Public entry point
    # ------------------------------------------------------------------

    async def run(
        self,
        root: str | Path,
        *,
        name: str | None = None,
        source_type: SourceType = "disk",
        parent_source_id: str | None = None,
        identity: DeviceIdentity | None = None,
        physical_label: str | None = None,
        notes: str | None = None,
        display_root: str | None = None,
    ) -> ScanSummary:
        """Scan ``root`` as one Source and return its summary.

        Fatal errors end in a FAILED summary rather than an exception; the
        cause is logged and carried in ``error_message``.
        """
        root = Path(root).expanduser()
        if self.state_machine.state is not ScanState.INITIALIZING:
            raise RuntimeError("ScanOrchestrator instances run a single scan")
        self._loop = asyncio.get_running_loop()
        started = time.monotonic()
        set_scan_state(ScanState.INITIALIZING.value)

        if self._hash_executor is None:
            self._hash_executor = ThreadPoolExecutor(
                max_workers=self._settings.hash_threads, thread_name_prefix="hash"
            )
        if self._discovery_executor is None:
            self._discovery_executor = ThreadPoolExecutor(
                max_workers=1, thread_name_prefix="discovery"
            )

        try:
            run = await self._initialize(
                root, name, source_type, parent_source_id, identity,
                physical_label, notes, display_root,
            )
            if run.fatal is not None:
                return await self._finalize(run, started)

            self.state_machine.transition(ScanState.WALKING)
            await self._walk(run, root)

            if run.fatal is None and not self.cancel_token.cancelled:
                self.state_machine.transition(ScanState.PROCESSING)
                await self._drain_all(run)
                for walked in run.scan_now:
                    if run.fatal is not None or self.cancel_token.cancelled:
                        break
                    await self._scan_nested(run, walked)
                ready = run.fatal is None and not self.cancel_token.cancelled
                if ready and run.digests is not None:
                    await self._scan_code_projects(run, root)
            else:
                await self._drain_all(run)

            return await self._finalize(run, started)
        except BaseException:
            self.state_machine.fail()
            raise
        finally:
            if self._owns_executors:
                self._hash_executor.shutdown(wait=True)
                self._discovery_executor.shutdown(wait=True)

    # ------------------------------------------------------------------
    # INITIALIZING
    # ------------------------------------------------------------------

    async def _initialize(
        self,
        root: Path,
        name: str | None,
        source_type: SourceType,
        parent_source_id: str | None,
        identity: DeviceIdentity | None,
        physical_label: str | None,
        notes: str | None,
        display_root: str | None,
    ) -> _ScanRun:
        if identity is None:
            identity = await self._in_discovery(self._probe, root)

        if name is None:
            if self._label_resolver is not None:
                labels = await self._prompting(self._label_resolver, identity)
            else:
                labels = SourceLabels(name=default_source_name(identity.volume_label))
            name = labels.name
            physical_label = physical_label or labels.physical_label
            notes = notes or labels.notes

        if physical_label:
            identity = identity.model_copy(update={"physical_label": physical_label})

        source = Source(
            name=name,
            type=source_type,
            root_path=display_root or str(root.resolve()),
            device=identity,
            parent_source_id=parent_source_id,
            status="scanning",
            notes=notes,
            scan_started_at=datetime.now(timezone.utc),
        )
        set_source_context(source.id)
        emitter = BatchEmitter(source.id, self._settings.scan_batch_size, self._sink.submit_batch)
        run = _ScanRun(source=source, emitter=emitter)
        if self._settings.scan_code_projects and parent_source_id is None:
            run.digests = {}

        if not root.is_dir():
            run.fatal = ConfigurationError(f"Scan root is not a directory: {root}")
            logger.error("%s", run.fatal)
            return run

        logger.info("Scanning %s as source '%s' (%s)", root, source.name, source.id)
        try:
            await self._sink.create_source(source)
        except SinkUnavailableError as e:
            logger.error("Cannot register source: %s", e)
            run.fatal = e
        return run

    # ------------------------------------------------------------------
    # WALKING
    # ------------------------------------------------------------------

    async def _walk(self, run: _ScanRun, root: Path) -> None:
        walker = DirectoryWalker(
            root=root,
            policy=WalkPolicy.from_settings(self._settings),
            should_stop=lambda: self.cancel_token.cancelled,
        )
        files = iter(walker.walk())
        limit = self._settings.in_flight_limit
        set_stage("walk")

        try:
            while run.fatal is None:
                self.cancel_token.raise_if_cancelled()
                walked = await self._in_discovery(next, files, None)
                if walked is None:
                    break
                run.source.record_discovered(walked.size)
                if self._progress is not None:
                    self._progress.file_discovered(walked.size)

                archive_source_id = None
                if self._classifier.rules.requires_decision(walked.path.name, walked.size):
                    choice = await self._prompting(
                        self._classifier.classify, walked.path, walked.size
                    )
                    if choice in (ArchiveDecision.POSTPONE, ArchiveDecision.AUTO_POSTPONE_REST):
                        archive_source_id = await self._postpone(run, walked)
                        if archive_source_id is None:
                            break
                    elif choice is ArchiveDecision.SCAN_NOW and self._settings.archive_nested_scan:
                        run.scan_now.append(walked)

                while len(run.in_flight) >= limit and run.fatal is None:
                    await self._drain_one(run)
                if run.fatal is not None:
                    break
                self._dispatch(run, walked, archive_source_id)
        except ScanCancelled as e:
            logger.info("Walk of %s interrupted: %s", root, e)

        await self._in_discovery(files.close)
        # Directory errors are collected on the discovery thread; merge once.
        run.errors.extend(walker.errors)
        set_stage(None)

    async def _postpone(self, run: _ScanRun, walked: WalkedFile) -> str | None:
        """Register a postponed child Source for an archive; returns its id."""
        child = Source(
            name=f"{run.source.name}/{walked.relative_path}",
            type=archive_source_type(walked.path.name),
            root_path=str(walked.path),
            device=run.source.device,
            parent_source_id=run.source.id,
            postponed=True,
            status="postponed",
        )
        try:
            await self._sink.create_source(child)
        except SinkUnavailableError as e:
            logger.error("Cannot register postponed archive %s: %s", walked.path, e)
            run.fatal = e
            return None
        run.postponed += 1
        logger.info("Postponed archive %s as source %s", walked.relative_path, child.id)
        return child.id

    # ------------------------------------------------------------------
    # Worker side (runs on the hash pool)
    # ------------------------------------------------------------------

    def _dispatch(self, run: _ScanRun, walked: WalkedFile, archive_source_id: str | None) -> None:
        ctx = contextvars.copy_context()
        fut = self._loop.run_in_executor(
            self._hash_executor, ctx.run,
            self._process_file, walked, run.source.id, archive_source_id,
        )
        run.in_flight[fut] = walked

    def _process_file(
        self, walked: WalkedFile, source_id: str, archive_source_id: str | None
    ) -> _WorkResult:
        progress = self._progress
        if progress is not None:
            progress.file_started(walked.relative_path)

        set_stage("hash")
        digest = self._hasher.hash_file(
            walked.path, on_progress=progress.bytes_hashed if progress else None
        )

        set_stage("metadata")
        # Stat before the gate: a digest is registered only for a file that
        # goes on to produce a record.
        basic = self._extractor.basic(walked.path)
        first_seen = self.registry.check_and_register(digest)
        exif = None
        warning = None
        if archive_source_id is None and self._extractor.wants_rich(basic.name):
            run_rich = first_seen or not self._settings.metadata_skip_exif_on_duplicate
            if run_rich and first_seen and self._remote_check_enabled():
                run_rich = not self._known_remotely(digest)
            if run_rich:
                try:
                    exif = self._extractor.rich(walked.path)
                except FileAccessError as e:
                    warning = ScanError(path=walked.relative_path, kind=e.kind, message=e.message)

        record = FileRecord(
            source_id=source_id,
            path=walked.relative_path,
            name=basic.name,
            extension=basic.extension,
            size=basic.size,
            digest=digest,
            modified_at=basic.modified_at,
            created_at=basic.created_at,
            accessed_at=basic.accessed_at,
            content_type=basic.content_type,
            exif=exif,
            duplicate=not first_seen,
            archive_source_id=archive_source_id,
        )
        set_stage(None)
        return _WorkResult(record=record, warning=warning)

    def _remote_check_enabled(self) -> bool:
        return (
            self._settings.metadata_remote_digest_check
            and self._sink.supports_digest_check
        )

    def _known_remotely(self, digest: str) -> bool:
        """Ask the sink whether a prior run already cataloged this content.

        Only an optimization: any failure counts as "not known".
        """
        fut = asyncio.run_coroutine_threadsafe(self._sink.check_digests([digest]), self._loop)
        try:
            return fut.result(timeout=self._settings.remote_timeout_s).get(digest, False)
        except Exception as e:  # noqa: BLE001
            fut.cancel()
            logger.debug("Remote digest check failed for %s: %s", digest, e)
            return False

    # ------------------------------------------------------------------
    # Admission point (event loop only)
    # ------------------------------------------------------------------

    async def _drain_one(self, run: _ScanRun) -> None:
        done, _ = await asyncio.wait(run.in_flight.keys(), return_when=asyncio.FIRST_COMPLETED)
        for fut in done:
            walked = run.in_flight.pop(fut)
            await self._admit(run, fut, walked)

    async def _drain_all(self, run: _ScanRun) -> None:
        while run.in_flight:
            await self._drain_one(run)

    def _record_error(self, run: _ScanRun, path: str, kind: ErrorKind, message: str) -> None:
        run.errors.append(ScanError(path=path, kind=kind, message=message))

    async def _admit(self, run: _ScanRun, fut: asyncio.Future, walked: WalkedFile) -> None:
        run.attempted += 1
        try:
            result: _WorkResult = fut.result()
        except FileAccessError as e:
            run.failed += 1
            self._record_error(run, walked.relative_path, e.kind, e.message)
            logger.warning("Skipping %s: %s", walked.relative_path, e.message)
            if self._progress is not None:
                self._progress.file_failed()
            return
        except MemoryError as e:
            run.failed += 1
            run.fatal = run.fatal or e
            logger.error("Out of memory while processing %s", walked.relative_path)
            return
        except Exception as e:  # noqa: BLE001
            run.failed += 1
            self._record_error(
                run, walked.relative_path, ErrorKind.UNEXPECTED, f"{type(e).__name__}: {e}"
            )
            logger.exception("Unexpected error processing %s", walked.relative_path)
            if self._progress is not None:
                self._progress.file_failed()
            return

        record = result.record
        if result.warning is not None:
            run.errors.append(result.warning)
        run.succeeded += 1
        run.source.record_processed(record.size)
        if run.digests is not None:
            run.digests[record.path] = record.digest
        if self._progress is not None:
            self._progress.file_completed(record.size)

        try:
            await run.emitter.add(record)
        except SinkUnavailableError as e:
            run.fatal = run.fatal or e

    # ------------------------------------------------------------------
    # Nested archive scans (SCAN_NOW)
    # ------------------------------------------------------------------

    async def _scan_nested(self, run: _ScanRun, walked: WalkedFile) -> None:
        with tempfile.TemporaryDirectory(prefix="catalogscan-") as tmp:
            try:
                await self._in_discovery(extract_archive, walked.path, tmp)
            except (
                shutil.ReadError, tarfile.TarError, zipfile.BadZipFile,
                ValueError, OSError, EOFError,
            ) as e:
                self._record_error(
                    run, walked.relative_path, ErrorKind.ARCHIVE_ERROR,
                    f"Cannot extract archive: {e}",
                )
                logger.warning("Cannot scan archive %s: %s", walked.relative_path, e)
                return

            child = ScanOrchestrator(
                self._settings,
                self._sink,
                self._prompt,
                registry=self.registry,
                cancel_token=self.cancel_token,
                progress=self._progress,
                hasher=self._hasher,
                extractor=self._extractor,
                classifier=self._classifier,
                hash_executor=self._hash_executor,
                discovery_executor=self._discovery_executor,
            )
            logger.info("Scanning archive %s as nested source", walked.relative_path)
            summary = await child.run(
                tmp,
                name=f"{run.source.name}/{walked.relative_path}",
                source_type=archive_source_type(walked.path.name),
                parent_source_id=run.source.id,
                identity=run.source.device,
                display_root=str(walked.path),
            )

        # Restore this scan's logging context after the child ran.
        set_source_context(run.source.id)
        set_scan_state(self.state_machine.state.value)
        run.nested.append(summary)
        if isinstance(child.fatal_error, SinkUnavailableError):
            run.fatal = run.fatal or child.fatal_error

    # ------------------------------------------------------------------
    # Code projects
    # ------------------------------------------------------------------

    async def _scan_code_projects(self, run: _ScanRun, root: Path) -> None:
        """Detect code project roots using the digests admitted so far."""
        scanner = CodeProjectScanner.from_settings(
            self._settings,
            detectors=self._project_detectors,
            should_stop=lambda: self.cancel_token.cancelled,
        )
        set_stage("projects")
        projects = await self._in_discovery(scanner.scan, root, run.source.id, run.digests)
        set_stage(None)
        run.code_projects = len(projects)
        if not projects:
            return
        try:
            await self._sink.submit_code_projects(run.source.id, projects)
        except SinkUnavailableError as e:
            logger.error("Cannot store code projects: %s", e)
            run.fatal = run.fatal or e

    # ------------------------------------------------------------------
    # FINALIZING
    # ------------------------------------------------------------------

    async def _finalize(self, run: _ScanRun, started: float) -> ScanSummary:
        source = run.source
        if self.state_machine.can_transition(ScanState.FINALIZING):
            self.state_machine.transition(ScanState.FINALIZING)
            set_stage("flush")
            lost = await run.emitter.close()
            if lost and run.fatal is None:
                run.fatal = run.emitter.last_error
            set_stage(None)

        cancelled = self.cancel_token.cancelled
        failed = run.fatal is not None or cancelled
        source.status = "failed" if failed else "completed"
        source.scan_completed_at = datetime.now(timezone.utc)
        summary = self._build_summary(run, started, cancelled)

        if self.state_machine.state is ScanState.FINALIZING:
            try:
                await self._sink.complete_scan(source, summary)
            except SinkUnavailableError as e:
                logger.error("Completion handoff failed: %s", e)
                run.fatal = run.fatal or e
                source.status = "failed"
                summary = self._build_summary(run, started, cancelled)

        self.fatal_error = run.fatal
        self.state_machine.transition(
            ScanState.FAILED if summary.outcome is ScanOutcome.FAILED else ScanState.COMPLETED
        )
        self._log_summary(summary)
        return summary

    def _build_summary(self, run: _ScanRun, started: float, cancelled: bool) -> ScanSummary:
        if run.fatal is not None or cancelled:
            outcome = ScanOutcome.FAILED
        elif run.errors or any(n.outcome is not ScanOutcome.SUCCESS for n in run.nested):
            outcome = ScanOutcome.PARTIAL
        else:
            outcome = ScanOutcome.SUCCESS

        error_message = None
        if run.fatal is not None:
            error_message = f"{type(run.fatal).__name__}: {run.fatal}"
        elif cancelled:
            error_message = f"Scan cancelled: {self.cancel_token.reason or 'cancelled'}"

        errors = sorted(run.errors, key=lambda e: e.occurred_at)
        limit = self._settings.summary_error_limit
        host, user = _scanner_identity()
        completed_at = run.source.scan_completed_at or datetime.now(timezone.utc)
        return ScanSummary(
            source_id=run.source.id,
            source_name=run.source.name,
            outcome=outcome,
            state=ScanState.FAILED if outcome is ScanOutcome.FAILED else ScanState.COMPLETED,
            attempted=run.attempted,
            succeeded=run.succeeded,
            failed=run.failed,
            postponed_archives=run.postponed,
            code_projects=run.code_projects,
            batches_emitted=run.emitter.batches_emitted,
            lost_records=run.emitter.lost_records,
            cancelled=cancelled,
            totals=run.source.totals.model_copy(),
            started_at=run.source.scan_started_at or completed_at,
            completed_at=completed_at,
            duration_seconds=round(time.monotonic() - started, 3),
            error_count=len(errors),
            errors=errors[:limit],
            error_message=error_message,
            nested=run.nested,
            scanner_version=__version__,
            scanner_host=host,
            scanner_user=user,
        )

    def _log_summary(self, summary: ScanSummary) -> None:
        level = logging.ERROR if summary.outcome is ScanOutcome.FAILED else logging.INFO
        logger.log(
            level,
            "Scan of '%s' %s: %d attempted, %d succeeded, %d failed, "
            "%d postponed, %d batches in %.1fs",
            summary.source_name, summary.outcome.value, summary.attempted,
            summary.succeeded, summary.failed, summary.postponed_archives,
            summary.batches_emitted, summary.duration_seconds,
        )
        if summary.error_message:
            logger.error("Scan failure cause: %s", summary.error_message)
        logger.debug("Duplicate registry holds %d digest(s)", len(self.registry))

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _on_transition(self, previous: ScanState, target: ScanState) -> None:
        set_scan_state(target.value)
        logger.info("Scan state: %s -> %s", previous.value, target.value)

    async def _in_discovery(self, fn: Callable[..., Any], *args: Any) -> Any:
        """Run blocking discovery work on the single discovery thread."""
        ctx = contextvars.copy_context()
        return await self._loop.run_in_executor(self._discovery_executor, ctx.run, fn, *args)

    async def _prompting(self, fn: Callable[..., Any], *args: Any) -> Any:
        """Run an operator interaction with progress rendering paused.

        The pause is taken and released on the discovery thread, around the
        blocking call itself; the event loop never holds it.
        """
        if self._progress is None:
            return await self._in_discovery(fn, *args)
        return await self._in_discovery(self._call_paused, fn, *args)

    def _call_paused(self, fn: Callable[..., Any], *args: Any) -> Any:
        with self._progress.paused():
            return fn(*args)
