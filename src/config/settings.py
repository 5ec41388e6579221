# src/config/settings.py — v1
"""Typed configuration loaded from the environment and .env via pydantic-settings.

Single source of truth for scanner settings. CLI flags are applied as
overrides through load_settings(). Inconsistent combinations raise
ConfigurationError, which the orchestrator treats as fatal.
"""

from __future__ import annotations

import os
from pathlib import Path
from typing import Literal

from pydantic import field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class ConfigurationError(Exception):
    """Raised when configuration is invalid or internally inconsistent."""


class Settings(BaseSettings):
    """Scanner settings loaded from .env file and environment."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # === Scanning ===
    scan_threads: int = 0  # 0 = available parallelism
    scan_batch_size: int = 1000
    scan_skip_system_dirs: bool = True
    scan_follow_symlinks: bool = False
    scan_max_depth: int | None = None
    scan_exclude_patterns: str = (
        ".Trash,.Trashes,$RECYCLE.BIN,System Volume Information,.DS_Store,*.tmp,*.temp"
    )
    hash_buffer_size: int = 64 * 1024
    max_in_flight: int = 0  # 0 = 4 x hash threads

    # === Archives ===
    archive_prompt_threshold: int = 100 * 1024 * 1024
    archive_auto_postpone_patterns: str = "*.tib,*.vhdx,*.vmdk"
    archive_policy: Literal["prompt", "postpone", "scan_now", "ignore"] = "prompt"
    archive_nested_scan: bool = True

    # === Metadata ===
    metadata_extract_exif: bool = True
    metadata_skip_exif_on_duplicate: bool = True
    metadata_remote_digest_check: bool = False

    # === Code projects ===
    scan_code_projects: bool = True
    code_project_exclude_dirs: str = (
        "target,build,out,dist,.gradle,node_modules,vendor,.venv,venv,__pycache__,"
        ".idea,.vscode,.eclipse,.git,.svn,.hg"
    )

    # === Sink ===
    sink_type: Literal["local", "remote"] = "local"
    output_dir: Path = Path("~/.catalogscan/scans")
    remote_url: str = ""
    remote_api_key: str = ""
    remote_timeout_s: float = 30.0
    sink_max_attempts: int = 3
    sink_retry_base_delay_s: float = 1.0
    sink_retry_backoff: float = 2.0

    # === Summary ===
    summary_error_limit: int = 100

    # === Progress ===
    progress_enabled: bool = True
    progress_interval_s: float = 0.5
    progress_window_s: float = 5.0

    # === Logging ===
    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR"] = "INFO"
    log_format: Literal["json", "text"] = "text"
    log_file: Path | None = Path("~/.catalogscan/logs/scanner.log")
    log_rotation: str = "10MB"
    log_retention: int = 5

    # --- Validators ---

    @field_validator("scan_threads", "max_in_flight")
    @classmethod
    def validate_non_negative(cls, v: int, info) -> int:  # noqa: N805
        if v < 0:
            raise ValueError(f"{info.field_name} must be >= 0")
        return v

    @model_validator(mode="after")
    def validate_config_consistency(self) -> Settings:
        """Validate cross-field consistency rules."""
        errors: list[str] = []

        if self.scan_batch_size < 1:
            errors.append("SCAN_BATCH_SIZE must be >= 1")

        if self.hash_buffer_size < 1:
            errors.append("HASH_BUFFER_SIZE must be >= 1")

        if self.scan_max_depth is not None and self.scan_max_depth < 0:
            errors.append("SCAN_MAX_DEPTH must be >= 0")

        if self.archive_prompt_threshold < 0:
            errors.append("ARCHIVE_PROMPT_THRESHOLD must be >= 0")

        if self.sink_max_attempts < 1:
            errors.append("SINK_MAX_ATTEMPTS must be >= 1")

        if self.remote_timeout_s <= 0:
            errors.append("REMOTE_TIMEOUT_S must be > 0")

        if self.sink_type == "remote" and not self.remote_url:
            errors.append("SINK_TYPE=remote requires REMOTE_URL")

        if self.metadata_remote_digest_check and self.sink_type != "remote":
            errors.append("METADATA_REMOTE_DIGEST_CHECK requires SINK_TYPE=remote")

        if self.progress_interval_s <= 0:
            errors.append("PROGRESS_INTERVAL_S must be > 0")

        if errors:
            raise ConfigurationError("; ".join(errors))

        return self

    # --- Helpers ---

    @property
    def hash_threads(self) -> int:
        """Resolved worker pool size."""
        if self.scan_threads:
            return self.scan_threads
        return os.cpu_count() or 1

    @property
    def in_flight_limit(self) -> int:
        """Maximum number of dispatched, not yet admitted files."""
        return self.max_in_flight or self.hash_threads * 4

    @property
    def exclude_patterns_list(self) -> list[str]:
        """Parse comma-separated exclude globs."""
        return [p.strip() for p in self.scan_exclude_patterns.split(",") if p.strip()]

    @property
    def auto_postpone_patterns_list(self) -> list[str]:
        """Parse comma-separated auto-postpone globs."""
        return [
            p.strip() for p in self.archive_auto_postpone_patterns.split(",") if p.strip()
        ]

    @property
    def code_project_exclude_list(self) -> list[str]:
        """Parse comma-separated folder names skipped by project detection."""
        return [p.strip() for p in self.code_project_exclude_dirs.split(",") if p.strip()]

    @property
    def resolved_output_dir(self) -> Path:
        return self.output_dir.expanduser()


def load_settings(**overrides: object) -> Settings:
    """Load settings from .env with optional overrides.

    Args:
        **overrides: Field-level overrides (CLI flags, tests). None values
            are ignored so unset CLI options fall through to the environment.

    Returns:
        Validated Settings instance.

    Raises:
        ConfigurationError: If configuration is internally inconsistent.
    """
    applied = {k: v for k, v in overrides.items() if v is not None}
    return Settings(**applied)  # type: ignore[arg-type]
