# src/sinks/wire.py — v1
"""JSON wire format of the remote catalog API.

The server speaks camelCase and names some fields differently from the
domain models (``sha256`` for the digest, ``mimeType``, ``isDuplicate``,
``physicalId``). These models own that mapping; the domain models stay
snake_case and keep serving the local sink unchanged.
"""

from __future__ import annotations

from datetime import datetime
from typing import Any

from pydantic import BaseModel, ConfigDict
from pydantic.alias_generators import to_camel

from catalogscan.core.models import (
    Batch,
    CodeProject,
    DeviceIdentity,
    ExifMetadata,
    FileRecord,
    ScanSummary,
    Source,
)

# Source types the server has no own value for.
_SOURCE_TYPE_FALLBACK = "ARCHIVE_OTHER"
_SERVER_SOURCE_TYPES = frozenset(
    {"DISK", "PARTITION", "ARCHIVE_TAR", "ARCHIVE_ZIP", "ARCHIVE_IMG", "ARCHIVE_OTHER"}
)


class WireModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    def to_wire(self) -> dict[str, Any]:
        return self.model_dump(mode="json", by_alias=True, exclude_none=True)


class PhysicalIdDto(WireModel):
    disk_uuid: str | None = None
    partition_uuid: str | None = None
    volume_label: str | None = None
    serial_number: str | None = None
    mount_point: str | None = None
    filesystem_type: str | None = None
    capacity: int | None = None
    used_space: int | None = None
    physical_label: str | None = None
    notes: str | None = None

    @classmethod
    def from_device(cls, device: DeviceIdentity) -> PhysicalIdDto:
        return cls(
            disk_uuid=device.disk_id,
            partition_uuid=device.partition_id,
            volume_label=device.volume_label,
            serial_number=device.serial_number,
            mount_point=device.mount_point,
            filesystem_type=device.filesystem_type,
            capacity=device.capacity_bytes,
            used_space=device.used_bytes,
            physical_label=device.physical_label,
            notes=device.notes,
        )


class SourceDto(WireModel):
    id: str
    name: str
    type: str
    root_path: str
    physical_id: PhysicalIdDto | None = None
    parent_source_id: str | None = None
    status: str
    postponed: bool = False
    total_files: int = 0
    total_size: int = 0
    processed_files: int = 0
    processed_size: int = 0
    scan_started_at: datetime | None = None
    scan_completed_at: datetime | None = None
    created_at: datetime | None = None
    notes: str | None = None

    @classmethod
    def from_source(cls, source: Source) -> SourceDto:
        source_type = source.type.upper()
        if source_type not in _SERVER_SOURCE_TYPES:
            source_type = _SOURCE_TYPE_FALLBACK
        totals = source.totals
        return cls(
            id=source.id,
            name=source.name,
            type=source_type,
            root_path=source.root_path,
            physical_id=PhysicalIdDto.from_device(source.device),
            parent_source_id=source.parent_source_id,
            status=source.status.upper(),
            postponed=source.postponed,
            total_files=totals.files_discovered,
            total_size=totals.bytes_discovered,
            processed_files=totals.files_processed,
            processed_size=totals.bytes_processed,
            scan_started_at=source.scan_started_at,
            scan_completed_at=source.scan_completed_at,
            created_at=source.created_at,
            notes=source.notes,
        )


class GpsCoordinatesDto(WireModel):
    latitude: float | None = None
    longitude: float | None = None
    altitude: float | None = None


class ExifMetadataDto(WireModel):
    camera_make: str | None = None
    camera_model: str | None = None
    date_time_original: datetime | None = None
    width: int | None = None
    height: int | None = None
    orientation: int | None = None
    gps: GpsCoordinatesDto | None = None
    lens_model: str | None = None
    focal_length: float | None = None
    aperture: float | None = None
    shutter_speed: str | None = None
    iso: int | None = None
    flash: bool | None = None

    @classmethod
    def from_exif(cls, exif: ExifMetadata) -> ExifMetadataDto:
        return cls.model_validate(exif.model_dump())


class FileDto(WireModel):
    id: str
    source_id: str
    path: str
    name: str
    extension: str
    size: int
    sha256: str
    modified_at: datetime | None = None
    created_at: datetime | None = None
    accessed_at: datetime | None = None
    mime_type: str
    exif: ExifMetadataDto | None = None
    status: str = "HASHED"
    is_duplicate: bool = False
    scanned_at: datetime

    @classmethod
    def from_record(cls, record: FileRecord) -> FileDto:
        return cls(
            id=record.id,
            source_id=record.source_id,
            path=record.path,
            name=record.name,
            extension=record.extension,
            size=record.size,
            sha256=record.digest,
            modified_at=record.modified_at,
            created_at=record.created_at,
            accessed_at=record.accessed_at,
            mime_type=record.content_type,
            exif=ExifMetadataDto.from_exif(record.exif) if record.exif else None,
            is_duplicate=record.duplicate,
            scanned_at=record.scanned_at,
        )


class FileBatchDto(WireModel):
    source_id: str
    batch_number: int
    files: list[FileDto]

    @classmethod
    def from_batch(cls, batch: Batch) -> FileBatchDto:
        return cls(
            source_id=batch.source_id,
            batch_number=batch.batch_number,
            files=[FileDto.from_record(r) for r in batch.files],
        )


class CompleteScanRequest(WireModel):
    total_files: int
    total_size: int
    success: bool

    @classmethod
    def from_scan(cls, source: Source, summary: ScanSummary) -> CompleteScanRequest:
        return cls(
            total_files=source.totals.files_processed,
            total_size=source.totals.bytes_processed,
            success=summary.success,
        )


class ProjectIdentityDto(WireModel):
    type: str
    name: str
    identifier: str
    version: str | None = None
    group_id: str | None = None
    git_remote: str | None = None
    git_branch: str | None = None
    git_commit: str | None = None


class CodeProjectDto(WireModel):
    source_id: str
    root_path: str
    identity: ProjectIdentityDto
    content_hash: str
    source_file_count: int
    total_file_count: int
    total_size_bytes: int
    scanned_at: datetime | None = None

    @classmethod
    def from_project(cls, project: CodeProject) -> CodeProjectDto:
        identity = project.identity
        return cls(
            source_id=project.source_id,
            root_path=project.root_path,
            identity=ProjectIdentityDto(
                type=identity.type.value.upper(),
                name=identity.name,
                identifier=identity.identifier,
                version=identity.version,
                group_id=identity.group_id,
                git_remote=identity.git_remote,
                git_branch=identity.git_branch,
                git_commit=identity.git_commit,
            ),
            content_hash=project.content_digest,
            source_file_count=project.source_file_count,
            total_file_count=project.total_file_count,
            total_size_bytes=project.total_size,
            scanned_at=project.scanned_at,
        )
