# src/metadata/exif.py — v1
"""Image capture metadata via Pillow.

Reads IFD0 (make, model, orientation), the Exif sub-IFD (capture settings)
and the GPS IFD. Returns None when the image carries no EXIF at all.
"""

from __future__ import annotations

import logging
import warnings
from datetime import datetime
from pathlib import Path
from typing import Any

from PIL import ExifTags, Image, UnidentifiedImageError

from catalogscan.core.models import ErrorKind, ExifMetadata, GpsCoordinates
from catalogscan.hashing.hasher import FileAccessError

logger = logging.getLogger(__name__)

_EXIF_DATETIME = "%Y:%m:%d %H:%M:%S"


def _text(value: Any) -> str | None:
    if value is None:
        return None
    if isinstance(value, bytes):
        value = value.decode("utf-8", errors="replace")
    text = str(value).strip().strip("\x00").strip()
    return text or None


def _float(value: Any) -> float | None:
    if value is None:
        return None
    try:
        result = float(value)
    except (TypeError, ValueError, ZeroDivisionError):
        return None
    # IFDRational with a zero denominator yields nan
    return None if result != result else result


def _int(value: Any) -> int | None:
    if isinstance(value, (tuple, list)):
        value = value[0] if value else None
    f = _float(value)
    return int(f) if f is not None else None


def _datetime(value: Any) -> datetime | None:
    text = _text(value)
    if not text:
        return None
    try:
        return datetime.strptime(text, _EXIF_DATETIME)
    except ValueError:
        return None


def _shutter_speed(value: Any) -> str | None:
    seconds = _float(value)
    if seconds is None or seconds <= 0:
        return None
    if seconds >= 1:
        return f"{seconds:g} sec"
    return f"1/{round(1 / seconds)} sec"


def _dms_to_degrees(dms: Any, ref: Any) -> float | None:
    if not dms or len(dms) != 3:
        return None
    parts = [_float(v) for v in dms]
    if any(p is None for p in parts):
        return None
    degrees = parts[0] + parts[1] / 60.0 + parts[2] / 3600.0
    if _text(ref) in ("S", "W"):
        degrees = -degrees
    return degrees


def _gps(gps_ifd: dict[int, Any]) -> GpsCoordinates | None:
    if not gps_ifd:
        return None
    lat = _dms_to_degrees(
        gps_ifd.get(ExifTags.GPS.GPSLatitude), gps_ifd.get(ExifTags.GPS.GPSLatitudeRef)
    )
    lon = _dms_to_degrees(
        gps_ifd.get(ExifTags.GPS.GPSLongitude), gps_ifd.get(ExifTags.GPS.GPSLongitudeRef)
    )
    alt = _float(gps_ifd.get(ExifTags.GPS.GPSAltitude))
    if alt is not None and gps_ifd.get(ExifTags.GPS.GPSAltitudeRef) in (1, b"\x01"):
        alt = -alt
    if lat is None and lon is None and alt is None:
        return None
    return GpsCoordinates(latitude=lat, longitude=lon, altitude=alt)


def extract_exif(path: str | Path) -> ExifMetadata | None:
    """Read EXIF from an image file.

    Raises:
        FileAccessError: (kind ``metadata_error``) if the image cannot be
            decoded or its metadata cannot be read.
    """
    try:
        with warnings.catch_warnings():
            warnings.simplefilter("ignore", Image.DecompressionBombWarning)
            with Image.open(path) as img:
                exif = img.getexif()
                if not exif:
                    return None
                sub = exif.get_ifd(ExifTags.IFD.Exif)
                gps_ifd = exif.get_ifd(ExifTags.IFD.GPSInfo)
    except (UnidentifiedImageError, OSError, SyntaxError, ValueError) as e:
        logger.debug("EXIF read failed for %s: %s", path, e)
        raise FileAccessError(path, ErrorKind.METADATA_ERROR, str(e)) from e

    flash = _int(sub.get(ExifTags.Base.Flash))
    return ExifMetadata(
        camera_make=_text(exif.get(ExifTags.Base.Make)),
        camera_model=_text(exif.get(ExifTags.Base.Model)),
        date_time_original=_datetime(sub.get(ExifTags.Base.DateTimeOriginal)),
        width=_int(sub.get(ExifTags.Base.ExifImageWidth)),
        height=_int(sub.get(ExifTags.Base.ExifImageHeight)),
        orientation=_int(exif.get(ExifTags.Base.Orientation)),
        gps=_gps(gps_ifd),
        lens_model=_text(sub.get(ExifTags.Base.LensModel)),
        focal_length=_float(sub.get(ExifTags.Base.FocalLength)),
        aperture=_float(sub.get(ExifTags.Base.FNumber)),
        shutter_speed=_shutter_speed(sub.get(ExifTags.Base.ExposureTime)),
        iso=_int(sub.get(ExifTags.Base.ISOSpeedRatings)),
        flash=bool(flash & 0x1) if flash is not None else None,
    )
