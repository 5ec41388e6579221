# src/main.py — v1
"""CLI entry point: scan, upload commands.

Usage:
    catalogscan scan <path> [options]
    catalogscan upload <source_dir> [options]

Exit codes: 0 success, 2 partial success (file-level errors), 1 failure,
130 interrupted.
"""

from __future__ import annotations

import argparse
import asyncio
import logging
import signal
import sys
from pathlib import Path

from catalogscan.version import __version__

logger = logging.getLogger(__name__)

EXIT_OK = 0
EXIT_FAILED = 1
EXIT_INTERRUPTED = 130


def main(argv: list[str] | None = None) -> int:
    """Main CLI entry point."""
    parser = _build_parser()
    args = parser.parse_args(argv)

    if not hasattr(args, "func"):
        parser.print_help()
        return EXIT_FAILED

    try:
        return asyncio.run(args.func(args))
    except KeyboardInterrupt:
        logger.info("Interrupted by user")
        return EXIT_INTERRUPTED
    except Exception as exc:
        logger.error("Fatal error: %s", exc, exc_info=args.verbose)
        return EXIT_FAILED


def _build_parser() -> argparse.ArgumentParser:
    """Build CLI argument parser."""
    parser = argparse.ArgumentParser(
        prog="catalogscan",
        description=f"catalogscan v{__version__}: storage device cataloging scanner",
    )
    parser.add_argument(
        "--version", action="version", version=f"%(prog)s {__version__}",
    )
    parser.add_argument(
        "-v", "--verbose", action="store_true",
        help="Enable debug logging",
    )

    subparsers = parser.add_subparsers(dest="command")

    # --- scan ---
    p_scan = subparsers.add_parser("scan", help="Scan a disk, partition or directory")
    p_scan.add_argument("path", type=Path, help="Root path to scan")
    p_scan.add_argument("-n", "--name", default=None, help="Source name (skips the prompt)")
    p_scan.add_argument(
        "-o", "--output", type=Path, default=None,
        help="Output directory for the local sink",
    )
    p_scan.add_argument("--threads", type=int, default=None, help="Hashing threads")
    p_scan.add_argument("--batch-size", type=int, default=None, help="Files per batch")
    p_scan.add_argument(
        "--sink", choices=("local", "remote"), default=None,
        help="Output sink (default: local)",
    )
    p_scan.add_argument("--server-url", default=None, help="Catalog server URL")
    p_scan.add_argument(
        "--archive-policy", choices=("prompt", "postpone", "scan_now", "ignore"),
        default=None, help="How large archives are handled",
    )
    p_scan.add_argument("--physical-label", default=None, help="Sticker label on the disk")
    p_scan.add_argument("--notes", default=None, help="Free-text notes")
    p_scan.add_argument("--no-progress", action="store_true", help="Disable progress output")
    p_scan.add_argument(
        "--no-code-projects", action="store_true", help="Skip code project detection"
    )
    p_scan.add_argument(
        "--non-interactive", action="store_true",
        help="Never prompt; use defaults and the configured archive policy",
    )
    p_scan.add_argument(
        "-v", "--verbose", action="store_true",
        default=argparse.SUPPRESS, help=argparse.SUPPRESS,
    )
    p_scan.set_defaults(func=_cmd_scan)

    # --- upload ---
    p_upload = subparsers.add_parser(
        "upload", help="Upload a local scan output directory to the server",
    )
    p_upload.add_argument("source_dir", type=Path, help="<output>/<source_id> directory")
    p_upload.add_argument("--server-url", default=None, help="Catalog server URL")
    p_upload.add_argument("--timeout", type=float, default=None, help="Request timeout (s)")
    p_upload.add_argument(
        "-v", "--verbose", action="store_true",
        default=argparse.SUPPRESS, help=argparse.SUPPRESS,
    )
    p_upload.set_defaults(func=_cmd_upload)

    return parser


def _load(args: argparse.Namespace, **overrides: object):
    from catalogscan.config.settings import load_settings
    from catalogscan.logging.logger import setup_logging

    if args.verbose:
        overrides["log_level"] = "DEBUG"
    settings = load_settings(**overrides)
    setup_logging(
        level=settings.log_level,
        log_format=settings.log_format,
        log_file=settings.log_file,
        rotation=settings.log_rotation,
        retention=settings.log_retention,
    )
    return settings


def _install_interrupt_handler(token) -> None:
    """First Ctrl-C cancels cooperatively; a second one aborts."""
    loop = asyncio.get_running_loop()

    def _on_sigint() -> None:
        if token.cancelled:
            loop.remove_signal_handler(signal.SIGINT)
            raise KeyboardInterrupt
        print("\nStopping after in-flight files finish (Ctrl-C again to abort)",
              file=sys.stderr)
        token.cancel("interrupted by user")

    try:
        loop.add_signal_handler(signal.SIGINT, _on_sigint)
    except (NotImplementedError, RuntimeError):
        # Windows event loops: KeyboardInterrupt handling in main() applies.
        pass


async def _cmd_scan(args: argparse.Namespace) -> int:
    """Scan one source."""
    from pydantic import ValidationError

    from catalogscan.config.settings import ConfigurationError
    from catalogscan.interactive.prompts import (
        ConsolePrompt,
        FixedArchivePolicy,
        default_source_name,
    )
    from catalogscan.pipeline.orchestrator import ScanOrchestrator, SourceLabels
    from catalogscan.pipeline.progress import ProgressTracker
    from catalogscan.pipeline.state import CancellationToken
    from catalogscan.sinks.sink_factory import create_sink

    try:
        settings = _load(
            args,
            output_dir=args.output,
            scan_threads=args.threads,
            scan_batch_size=args.batch_size,
            sink_type=args.sink,
            remote_url=args.server_url,
            archive_policy=args.archive_policy,
            progress_enabled=False if args.no_progress else None,
            scan_code_projects=False if args.no_code_projects else None,
        )
    except (ConfigurationError, ValidationError) as e:
        print(f"Configuration error: {e}", file=sys.stderr)
        return EXIT_FAILED

    if not args.path.is_dir():
        logger.error("Not a directory: %s", args.path)
        return EXIT_FAILED

    interactive = not args.non_interactive and sys.stdin.isatty()
    console = ConsolePrompt()
    if settings.archive_policy == "prompt" and interactive:
        archive_prompt = console
    elif settings.archive_policy == "prompt":
        archive_prompt = FixedArchivePolicy.from_policy("postpone")
    else:
        archive_prompt = FixedArchivePolicy.from_policy(settings.archive_policy)

    def resolve_labels(identity) -> SourceLabels:
        if interactive:
            return SourceLabels(
                name=console.prompt_source_name(identity.volume_label),
                physical_label=args.physical_label or console.prompt_physical_label(),
                notes=args.notes or console.prompt_notes(),
            )
        return SourceLabels(name=default_source_name(identity.volume_label))

    sink = create_sink(settings)
    token = CancellationToken()
    _install_interrupt_handler(token)
    progress = None
    if settings.progress_enabled:
        progress = ProgressTracker(settings.progress_interval_s, settings.progress_window_s)

    orchestrator = ScanOrchestrator(
        settings,
        sink,
        archive_prompt,
        label_resolver=resolve_labels,
        cancel_token=token,
        progress=progress,
    )
    if progress is not None:
        progress.start()
    try:
        summary = await orchestrator.run(
            args.path,
            name=args.name,
            physical_label=args.physical_label,
            notes=args.notes,
        )
    finally:
        if progress is not None:
            progress.stop()
            print(file=sys.stderr)
        await sink.aclose()

    _print_summary(summary)
    if summary.cancelled:
        return EXIT_INTERRUPTED
    return summary.outcome.exit_code


async def _cmd_upload(args: argparse.Namespace) -> int:
    """Replay a local scan output into the remote sink."""
    from pydantic import ValidationError

    from catalogscan.config.settings import ConfigurationError
    from catalogscan.sinks.replay import ReplayError, replay_output
    from catalogscan.sinks.retry import SinkUnavailableError
    from catalogscan.sinks.sink_factory import create_sink

    try:
        settings = _load(
            args,
            sink_type="remote",
            remote_url=args.server_url,
            remote_timeout_s=args.timeout,
        )
    except (ConfigurationError, ValidationError) as e:
        print(f"Configuration error: {e}", file=sys.stderr)
        return EXIT_FAILED

    sink = create_sink(settings)
    try:
        result = await replay_output(args.source_dir, sink)
    except (ReplayError, SinkUnavailableError) as e:
        logger.error("Upload failed: %s", e)
        return EXIT_FAILED
    finally:
        await sink.aclose()

    print(f"Uploaded source {result.source_id}: {result.batches} batches, {result.files} files")
    return EXIT_OK


def _print_summary(summary) -> None:
    """Print a human-readable scan summary to stdout."""
    headline = {
        "success": "Scan complete",
        "partial": "Scan complete with errors",
        "failed": "Scan FAILED",
    }[summary.outcome.value]
    if summary.cancelled:
        headline = "Scan cancelled"
    print(f"\n{headline}: {summary.source_name} ({summary.source_id})")
    print(f"  Attempted:   {summary.attempted}")
    print(f"  Succeeded:   {summary.succeeded}")
    print(f"  Failed:      {summary.failed}")
    print(f"  Postponed:   {summary.postponed_archives}")
    print(f"  Batches:     {summary.batches_emitted}")
    if summary.code_projects:
        print(f"  Projects:    {summary.code_projects}")
    print(f"  Duration:    {summary.duration_seconds:.1f}s")
    if summary.lost_records:
        print(f"  Lost:        {summary.lost_records} records never reached the sink")
    for nested in summary.nested:
        print(f"  Nested:      {nested.source_name} -> {nested.outcome.value}")
    if summary.error_message:
        print(f"  Cause:       {summary.error_message}")
    if summary.error_count:
        print(f"\nErrors ({summary.error_count}, showing {len(summary.errors)}):")
        for err in summary.errors:
            print(f"  [{err.kind.value}] {err.path}: {err.message}")
