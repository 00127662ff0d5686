"""Map sidecar records onto the canonical ``items`` row.

The row always carries every column, with None for anything the sidecar
does not provide, and the content hash is taken over that row (bookkeeping
timestamps excluded) plus the sorted folder and tag sets. The same sidecar
content therefore always hashes the same, whatever order its fields were
written in.
"""
from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from pathlib import Path
from typing import Any, Callable, Iterable, Optional

from mediaindex.lib.filetype import resolve_media_type
from mediaindex.lib.hashing import canonical_json, content_hash
from mediaindex.lib.timeutil import now_utc, parse_timestamp, to_db, to_utc
from mediaindex.services.library import ItemLocation, SidecarRecord, read_sidecar

# Columns that record when we wrote the row, not what the item is.
BOOKKEEPING_FIELDS = ("created_at", "updated_at", "content_hash")

EXIF_DATE_TAGS = (
    "DateTimeOriginal", "CreateDate", "DateCreated", "DateTime", "ModifyDate",
)
CAMERA_TAGS = ("Make", "Model", "Manufacturer")


@dataclass(frozen=True)
class NormalizedItem:
    item_id: str
    row: dict
    folders: tuple
    tags: tuple
    content_hash: str


def _as_int(value: Any) -> Optional[int]:
    if value is None or isinstance(value, bool):
        return None
    try:
        return int(float(value))
    except (TypeError, ValueError):
        return None


def _as_float(value: Any) -> Optional[float]:
    if value is None or isinstance(value, bool):
        return None
    try:
        return float(value)
    except (TypeError, ValueError):
        return None


def _as_text(value: Any) -> Optional[str]:
    if value is None:
        return None
    s = str(value).strip()
    return s or None


def parse_exif_date(val: Any) -> Optional[datetime]:
    """Parse EXIF-style ('2021:06:01 10:00:00') or ISO date strings."""
    if not val or not isinstance(val, str):
        return None
    s = val.strip()
    if len(s) >= 19 and s[4] == ":" and s[7] == ":":
        s = s.replace(":", "-", 2)
    s = s.replace(" ", "T", 1)
    if s.endswith("Z"):
        s = s[:-1] + "+00:00"
    try:
        return to_utc(datetime.fromisoformat(s))
    except ValueError:
        return None


def parse_dms(value: Any) -> Optional[float]:
    """Convert a GPS coordinate to decimal degrees.

    Accepts plain numbers and DMS strings such as ``51 deg 30' 26.00" N``.
    """
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        return float(value)
    s = str(value).strip()
    if not s:
        return None
    direction = None
    if s[-1] in "NSEW":
        direction = s[-1]
        s = s[:-1].strip()
    for token in ("deg", "°", '"', "'"):
        s = s.replace(token, " ")
    try:
        parts = [float(p) for p in s.split()]
    except ValueError:
        return None
    if not parts:
        return None
    val = abs(parts[0])
    if len(parts) > 1:
        val += parts[1] / 60.0
    if len(parts) > 2:
        val += parts[2] / 3600.0
    if parts[0] < 0 or direction in ("S", "W"):
        val = -val
    return val


def _exif_lookup(exif: Optional[dict], tags: Iterable[str]) -> Any:
    """Find the first present tag, looking at the top level and one level of
    grouping ('image', 'exif', ...)."""
    if not exif:
        return None
    scopes = [exif] + [v for _, v in sorted(exif.items()) if isinstance(v, dict)]
    for tag in tags:
        for scope in scopes:
            if scope.get(tag):
                return scope[tag]
    return None


def _clean_labels(values: Iterable[Any]) -> tuple:
    labels = set()
    for v in values:
        if isinstance(v, (str, int)) and not isinstance(v, bool):
            s = str(v).strip()
            if s:
                labels.add(s)
    return tuple(sorted(labels))


def normalize(
    record: SidecarRecord,
    item_id: str,
    mtime_override: Optional[datetime] = None,
    media_path: Optional[Path] = None,
    written_at: Optional[datetime] = None,
) -> NormalizedItem:
    """Produce the canonical row for ``record``.

    ``item_id`` is the directory-derived ID and always wins over any id in the
    sidecar. ``mtime_override`` (from the external last-modified map) replaces
    the sidecar's own mtime.
    """
    written_at = written_at or now_utc()
    ext = record.ext.strip().lstrip(".")

    mtime = mtime_override or parse_timestamp(record.mtime) or parse_timestamp(record.modification_time)
    btime = parse_timestamp(record.btime)
    taken_at = parse_exif_date(record.date_time) or parse_exif_date(_exif_lookup(record.exif, EXIF_DATE_TAGS))

    gps = record.gps
    row = {
        "id": item_id,
        "name": record.name.strip(),
        "ext": ext,
        "size": _as_int(record.size) or 0,
        "mtime": to_db(mtime),
        "media_type": resolve_media_type(record.type, ext, media_path),
        "width": _as_int(record.width),
        "height": _as_int(record.height),
        "duration": _as_float(record.duration),
        "fps": _as_text(record.fps),
        "codec": _as_text(record.codec),
        "audio_codec": _as_text(record.audio_codec),
        "bitrate": _as_int(record.bitrate),
        "sample_rate": _as_int(record.sample_rate),
        "channels": _as_int(record.channels),
        "exif_data": canonical_json(record.exif) if record.exif else None,
        "camera": _as_text(record.camera) or _as_text(_exif_lookup(record.exif, CAMERA_TAGS)),
        "taken_at": to_db(taken_at),
        "gps_latitude": parse_dms(gps.latitude) if gps else None,
        "gps_longitude": parse_dms(gps.longitude) if gps else None,
        "gps_altitude": _as_float(gps.altitude) if gps else None,
        "btime": to_db(btime),
        "url": record.url or "",
        "annotation": record.annotation or "",
    }
    folders = _clean_labels(record.folders)
    tags = _clean_labels(record.tags)

    digest = content_hash({"row": row, "folders": folders, "tags": tags})
    row["content_hash"] = digest
    row["created_at"] = to_db(btime or written_at)
    row["updated_at"] = to_db(written_at)
    return NormalizedItem(item_id, row, folders, tags, digest)


class ItemLoader:
    """Read and normalize one library item.

    ``extractor`` takes the item directory and returns a SidecarRecord; it
    defaults to reading the JSON sidecar.
    """

    def __init__(
        self,
        sidecar_name: str = "metadata.json",
        mtime_map: Optional[dict] = None,
        extractor: Optional[Callable[[Path], SidecarRecord]] = None,
        written_at: Optional[datetime] = None,
    ):
        self.sidecar_name = sidecar_name
        self.mtime_map = mtime_map or {}
        self.extractor = extractor or (lambda item_dir: read_sidecar(item_dir, self.sidecar_name))
        self.written_at = written_at or now_utc()

    def load(self, location: ItemLocation) -> NormalizedItem:
        """Raises ExtractionUnavailable when the sidecar cannot be used."""
        record = self.extractor(location.path)
        media_path = location.path / f"{record.name.strip()}.{record.ext.strip().lstrip('.')}"
        return normalize(
            record,
            location.item_id,
            mtime_override=self.mtime_map.get(location.item_id),
            media_path=media_path,
            written_at=self.written_at,
        )
