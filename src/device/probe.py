# src/device/probe.py — v1
"""Best-effort physical identification of the device holding a path.

psutil supplies the mount point, filesystem type and usage on every
platform. On Linux, ``lsblk --json`` adds UUIDs, the volume label and the
serial number. Every step may fail; missing data leaves the field empty and
never blocks a scan.
"""

from __future__ import annotations

import json
import logging
import os
import platform
import shutil
import subprocess
from pathlib import Path
from typing import Any, Callable, Iterator

import psutil

from catalogscan.core.models import DeviceIdentity

logger = logging.getLogger(__name__)

LSBLK_TIMEOUT_S = 5.0
_LSBLK_COLUMNS = "NAME,PATH,UUID,PARTUUID,LABEL,SERIAL,FSTYPE,MOUNTPOINT,TYPE"

DeviceProbe = Callable[[Path], DeviceIdentity]


def _find_partition(path: Path) -> Any | None:
    """Return the psutil partition entry with the longest matching mount point."""
    target = os.path.realpath(path)
    best = None
    best_len = -1
    try:
        partitions = psutil.disk_partitions(all=True)
    except (OSError, RuntimeError) as e:
        logger.debug("disk_partitions failed: %s", e)
        return None
    for part in partitions:
        mount = part.mountpoint
        if not mount:
            continue
        prefix = mount if mount.endswith(os.sep) else mount + os.sep
        if (target == mount or target.startswith(prefix)) and len(mount) > best_len:
            best = part
            best_len = len(mount)
    return best


def _walk_lsblk(
    devices: list[dict[str, Any]], parent: dict[str, Any] | None = None
) -> Iterator[tuple[dict[str, Any], dict[str, Any] | None]]:
    for dev in devices:
        yield dev, parent
        yield from _walk_lsblk(dev.get("children") or [], dev)


def _lsblk_lookup(device_path: str) -> dict[str, str | None]:
    """Query lsblk for one block device. Returns {} when unavailable."""
    if platform.system() != "Linux" or not shutil.which("lsblk"):
        return {}
    try:
        proc = subprocess.run(  # noqa: S603
            ["lsblk", "--json", "-o", _LSBLK_COLUMNS],
            capture_output=True,
            text=True,
            timeout=LSBLK_TIMEOUT_S,
            check=False,
        )
    except (OSError, subprocess.TimeoutExpired) as e:
        logger.debug("lsblk failed: %s", e)
        return {}
    if proc.returncode != 0:
        return {}
    try:
        data = json.loads(proc.stdout)
    except json.JSONDecodeError:
        return {}

    real_device = os.path.realpath(device_path)
    for dev, parent in _walk_lsblk(data.get("blockdevices") or []):
        dev_path = dev.get("path") or f"/dev/{dev.get('name', '')}"
        if dev_path not in (device_path, real_device):
            continue
        serial = dev.get("serial") or (parent or {}).get("serial")
        return {
            "disk_id": dev.get("uuid"),
            "partition_id": dev.get("partuuid"),
            "volume_label": dev.get("label"),
            "serial_number": serial.strip() if isinstance(serial, str) else None,
            "filesystem_type": dev.get("fstype"),
        }
    return {}


def probe_device(path: str | Path) -> DeviceIdentity:
    """Identify the device holding ``path``. Never raises."""
    path = Path(path)
    fields: dict[str, Any] = {}
    try:
        part = _find_partition(path)
        if part is not None:
            fields["mount_point"] = part.mountpoint
            fields["filesystem_type"] = part.fstype or None
            try:
                usage = psutil.disk_usage(part.mountpoint)
                fields["capacity_bytes"] = usage.total
                fields["used_bytes"] = usage.used
            except OSError as e:
                logger.debug("disk_usage failed for %s: %s", part.mountpoint, e)
            if part.device and part.device.startswith("/dev/"):
                for key, value in _lsblk_lookup(part.device).items():
                    if value:
                        fields[key] = value
    except Exception as e:  # noqa: BLE001
        logger.warning("Device probe failed for %s: %s", path, e)

    identity = DeviceIdentity(**fields)
    logger.debug("Device identity for %s: %s", path, identity.model_dump(exclude_none=True))
    return identity
