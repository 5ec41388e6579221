# src/core/models.py — v1
"""Shared Pydantic domain models used across modules.

Source, FileRecord, Batch, CodeProject, ScanError and ScanSummary are defined
here and nowhere else. FileRecord and Batch are frozen: once a record is placed
into a batch it cannot change. Source identity fields are frozen; only its
running counters and lifecycle fields move.
"""

from __future__ import annotations

import re
import uuid
from datetime import datetime, timezone
from enum import Enum
from typing import Literal

from pydantic import BaseModel, ConfigDict, Field, field_validator

_SHA256_HEX = re.compile(r"^[0-9a-f]{64}$")


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _new_id() -> str:
    return str(uuid.uuid4())


def normalize_digest(value: str) -> str:
    """Return the canonical form of a SHA-256 hex digest.

    Upstream stores sometimes hand back digests upper-cased or padded to a
    fixed column width (spaces or NULs). Comparing those raw strings silently
    defeats duplicate detection, so every boundary funnels through here.

    Raises:
        ValueError: If the value is not 64 hex characters once normalized.
    """
    if not isinstance(value, str):
        raise ValueError(f"Digest must be a string, got {type(value).__name__}")
    normalized = value.strip().strip("\x00").strip().lower()
    if not _SHA256_HEX.match(normalized):
        raise ValueError(f"Invalid SHA-256 digest: {value!r}")
    return normalized


# === ENUMS ===


class ScanState(str, Enum):
    """Lifecycle of one Source scan."""

    INITIALIZING = "initializing"
    WALKING = "walking"
    PROCESSING = "processing"
    FINALIZING = "finalizing"
    COMPLETED = "completed"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in (ScanState.COMPLETED, ScanState.FAILED)


class ArchiveDecision(str, Enum):
    """Operator decision for an archive-like file above the size threshold."""

    SCAN_NOW = "scan_now"
    POSTPONE = "postpone"
    AUTO_POSTPONE_REST = "auto_postpone_rest"
    TREAT_AS_ORDINARY = "treat_as_ordinary"


class ErrorKind(str, Enum):
    """Classification attached to every ScanError."""

    PERMISSION_DENIED = "permission_denied"
    NOT_FOUND = "not_found"
    IO_ERROR = "io_error"
    DIRECTORY_UNREADABLE = "directory_unreadable"
    METADATA_ERROR = "metadata_error"
    ARCHIVE_ERROR = "archive_error"
    UNEXPECTED = "unexpected"


class ScanOutcome(str, Enum):
    """Completion signal of a scan, mapped onto process exit codes."""

    SUCCESS = "success"
    PARTIAL = "partial"
    FAILED = "failed"

    @property
    def exit_code(self) -> int:
        return {"success": 0, "partial": 2, "failed": 1}[self.value]


SourceType = Literal[
    "disk",
    "partition",
    "archive_zip",
    "archive_tar",
    "archive_7z",
    "archive_img",
    "archive_other",
]
SourceStatus = Literal["pending", "scanning", "postponed", "completed", "failed"]


# === RICH METADATA ===


class GpsCoordinates(BaseModel):
    """GPS position read from image capture metadata."""

    latitude: float | None = None
    longitude: float | None = None
    altitude: float | None = None


class ExifMetadata(BaseModel):
    """Capture metadata embedded in an image file."""

    camera_make: str | None = None
    camera_model: str | None = None
    date_time_original: datetime | None = None
    width: int | None = None
    height: int | None = None
    orientation: int | None = None
    gps: GpsCoordinates | None = None
    lens_model: str | None = None
    focal_length: float | None = None
    aperture: float | None = None
    shutter_speed: str | None = None
    iso: int | None = None
    flash: bool | None = None


# === SOURCE ===


class DeviceIdentity(BaseModel):
    """Best-effort physical identification of the scanned device.

    Every field may be absent; a missing field never blocks a scan.
    """

    disk_id: str | None = None
    partition_id: str | None = None
    volume_label: str | None = None
    serial_number: str | None = None
    filesystem_type: str | None = None
    mount_point: str | None = None
    capacity_bytes: int | None = None
    used_bytes: int | None = None
    physical_label: str | None = None
    notes: str | None = None


class ScanTotals(BaseModel):
    """Discovered vs. processed counters of a Source."""

    files_discovered: int = 0
    bytes_discovered: int = 0
    files_processed: int = 0
    bytes_processed: int = 0


class Source(BaseModel):
    """One scan target: a disk, partition or archive."""

    id: str = Field(default_factory=_new_id, frozen=True)
    name: str = Field(frozen=True)
    type: SourceType = Field(default="disk", frozen=True)
    root_path: str = Field(frozen=True)
    device: DeviceIdentity = Field(default_factory=DeviceIdentity, frozen=True)
    parent_source_id: str | None = Field(default=None, frozen=True)
    postponed: bool = Field(default=False, frozen=True)
    status: SourceStatus = "pending"
    totals: ScanTotals = Field(default_factory=ScanTotals)
    created_at: datetime = Field(default_factory=_utcnow)
    scan_started_at: datetime | None = None
    scan_completed_at: datetime | None = None
    notes: str | None = None

    def record_discovered(self, size: int) -> None:
        self.totals.files_discovered += 1
        self.totals.bytes_discovered += size

    def record_processed(self, size: int) -> None:
        self.totals.files_processed += 1
        self.totals.bytes_processed += size


# === FILES AND BATCHES ===


class FileRecord(BaseModel):
    """Cataloged representation of one file. Immutable once built."""

    model_config = ConfigDict(frozen=True)

    id: str = Field(default_factory=_new_id)
    source_id: str
    path: str
    name: str
    extension: str = ""
    size: int
    digest: str
    modified_at: datetime | None = None
    created_at: datetime | None = None
    accessed_at: datetime | None = None
    content_type: str = "application/octet-stream"
    exif: ExifMetadata | None = None
    duplicate: bool = False
    archive_source_id: str | None = None
    scanned_at: datetime = Field(default_factory=_utcnow)

    @field_validator("digest")
    @classmethod
    def _normalize_digest(cls, v: str) -> str:
        return normalize_digest(v)


class Batch(BaseModel):
    """Sealed, numbered group of FileRecords for one Source."""

    model_config = ConfigDict(frozen=True)

    source_id: str
    batch_number: int = Field(ge=1)
    files: tuple[FileRecord, ...]
    sealed_at: datetime = Field(default_factory=_utcnow)


# === CODE PROJECTS ===


class ProjectType(str, Enum):
    """Build system or ecosystem a code project was recognized by."""

    MAVEN = "maven"
    GRADLE = "gradle"
    NPM = "npm"
    GO = "go"
    PYTHON = "python"
    RUST = "rust"
    GENERIC = "generic"


class ProjectIdentity(BaseModel):
    """What a detector could tell about a project root."""

    type: ProjectType
    name: str
    identifier: str
    version: str | None = None
    group_id: str | None = None
    git_remote: str | None = None
    git_branch: str | None = None
    git_commit: str | None = None


class CodeProject(BaseModel):
    """A detected code project root and the content fingerprint of its sources.

    ``root_path`` is relative to the scan root (``.`` for the root itself).
    ``content_digest`` is the SHA-256 over the sorted digests of the
    project's source files, so two copies of the same code compare equal
    wherever they live.
    """

    model_config = ConfigDict(frozen=True)

    id: str = Field(default_factory=_new_id)
    source_id: str
    root_path: str
    identity: ProjectIdentity
    content_digest: str
    source_file_count: int = Field(ge=0)
    total_file_count: int = Field(ge=0)
    total_size: int = Field(ge=0)
    scanned_at: datetime = Field(default_factory=_utcnow)

    @field_validator("content_digest")
    @classmethod
    def _normalize_digest(cls, v: str) -> str:
        return normalize_digest(v)


# === ERRORS AND SUMMARY ===


class ScanError(BaseModel):
    """A file- or directory-scoped failure. Never blocks other files."""

    path: str
    kind: ErrorKind
    message: str
    occurred_at: datetime = Field(default_factory=_utcnow)


class ScanSummary(BaseModel):
    """Final report of one Source scan, built once from its terminal state."""

    source_id: str
    source_name: str
    outcome: ScanOutcome
    state: ScanState
    attempted: int
    succeeded: int
    failed: int
    postponed_archives: int = 0
    code_projects: int = 0
    batches_emitted: int = 0
    lost_records: int = 0
    cancelled: bool = False
    totals: ScanTotals = Field(default_factory=ScanTotals)
    started_at: datetime
    completed_at: datetime
    duration_seconds: float
    error_count: int = 0
    errors: list[ScanError] = Field(default_factory=list)
    error_message: str | None = None
    nested: list[ScanSummary] = Field(default_factory=list)
    scanner_version: str = ""
    scanner_host: str = ""
    scanner_user: str = ""

    @property
    def success(self) -> bool:
        return self.outcome is not ScanOutcome.FAILED


ScanSummary.model_rebuild()
