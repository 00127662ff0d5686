"""On-disk library layout.

A library root holds an items directory (``images/`` by default) with one
sub-directory per item, named ``<id><suffix>`` (``<id>.info``). Each item
directory contains the media file and a JSON sidecar (``metadata.json``).
An optional ``mtime.json`` at the root maps item IDs to last-modified times.
"""
from __future__ import annotations

import json
import os
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from typing import Any, Optional

from mediaindex.lib.errors import ExtractionUnavailable, LibraryUnavailable
from mediaindex.lib.timeutil import parse_timestamp


@dataclass(frozen=True)
class ItemLocation:
    item_id: str
    path: Path


@dataclass(frozen=True)
class GpsFix:
    latitude: Any = None
    longitude: Any = None
    altitude: Any = None


@dataclass(frozen=True)
class SidecarRecord:
    """Explicit shape of a sidecar record.

    Every optional field is present with an explicit None (or empty
    container) when the source omits it, so two reads of the same content
    always produce equal records.
    """
    name: str
    ext: str
    size: Optional[int] = None
    mtime: Any = None
    btime: Any = None
    modification_time: Any = None
    type: Optional[str] = None
    width: Optional[int] = None
    height: Optional[int] = None
    duration: Optional[float] = None
    fps: Any = None
    codec: Optional[str] = None
    audio_codec: Optional[str] = None
    bitrate: Optional[int] = None
    sample_rate: Optional[int] = None
    channels: Optional[int] = None
    exif: Optional[dict] = None
    gps: Optional[GpsFix] = None
    camera: Optional[str] = None
    date_time: Optional[str] = None
    url: Optional[str] = None
    annotation: Optional[str] = None
    folders: tuple = field(default_factory=tuple)
    tags: tuple = field(default_factory=tuple)

    @classmethod
    def from_dict(cls, data: Any) -> SidecarRecord:
        """Build a record from parsed sidecar JSON.

        Raises:
            ExtractionUnavailable: when the payload is not an object or lacks
                a usable ``name``/``ext``.
        """
        if not isinstance(data, dict):
            raise ExtractionUnavailable(f"sidecar is a {type(data).__name__}, expected an object")
        name = data.get("name")
        ext = data.get("ext")
        missing = [k for k, v in (("name", name), ("ext", ext)) if not isinstance(v, str) or not v.strip()]
        if missing:
            raise ExtractionUnavailable(f"sidecar missing {', '.join(missing)}", details={"missing": missing})

        gps_raw = data.get("gps")
        gps = None
        if isinstance(gps_raw, dict):
            gps = GpsFix(gps_raw.get("latitude"), gps_raw.get("longitude"), gps_raw.get("altitude"))

        exif = data.get("exif")
        return cls(
            name=name,
            ext=ext,
            size=data.get("size"),
            mtime=data.get("mtime"),
            btime=data.get("btime"),
            modification_time=data.get("modificationTime"),
            type=data.get("type"),
            width=data.get("width"),
            height=data.get("height"),
            duration=data.get("duration"),
            fps=data.get("fps"),
            codec=data.get("codec"),
            audio_codec=data.get("audioCodec"),
            bitrate=data.get("bitrate"),
            sample_rate=data.get("sampleRate"),
            channels=data.get("channels"),
            exif=exif if isinstance(exif, dict) else None,
            gps=gps,
            camera=data.get("camera"),
            date_time=data.get("dateTime"),
            url=data.get("url"),
            annotation=data.get("annotation"),
            folders=tuple(data["folders"]) if isinstance(data.get("folders"), list) else (),
            tags=tuple(data["tags"]) if isinstance(data.get("tags"), list) else (),
        )


@dataclass(frozen=True)
class LibraryLayout:
    root: Path
    items_dir: str = "images"
    item_suffix: str = ".info"
    sidecar_name: str = "metadata.json"
    mtime_map_name: str = "mtime.json"

    @property
    def items_path(self) -> Path:
        return self.root / self.items_dir

    @property
    def mtime_map_path(self) -> Path:
        return self.root / self.mtime_map_name

    def validate(self) -> None:
        """Check the library is reachable.

        Raises:
            LibraryUnavailable: if the root or its items directory is missing.
        """
        if not self.root.is_dir():
            raise LibraryUnavailable(f"Library path not found: {self.root}", details={"path": str(self.root)})
        if not self.items_path.is_dir():
            raise LibraryUnavailable(
                f"Items directory not found: {self.items_path}", details={"path": str(self.items_path)}
            )

    def list_items(self) -> list[ItemLocation]:
        """One listing of the items directory, sorted by ID.

        Entries without the item suffix, and non-directories, are ignored.
        """
        locations = []
        try:
            with os.scandir(self.items_path) as it:
                for entry in it:
                    if not entry.name.endswith(self.item_suffix):
                        continue
                    try:
                        if not entry.is_dir():
                            continue
                    except OSError:
                        continue
                    item_id = entry.name[: -len(self.item_suffix)]
                    if item_id:
                        locations.append(ItemLocation(item_id, Path(entry.path)))
        except OSError as exc:
            raise LibraryUnavailable(f"Cannot list {self.items_path}: {exc}", cause=exc) from exc
        locations.sort(key=lambda loc: loc.item_id)
        return locations

    def load_mtime_map(self) -> dict[str, datetime]:
        """Load the external last-modified map, or {} when absent.

        Raises:
            ValueError / OSError: when the file exists but cannot be used; the
                caller decides whether that matters.
        """
        path = self.mtime_map_path
        if not path.exists():
            return {}
        with path.open("r", encoding="utf-8") as fh:
            raw = json.load(fh)
        if not isinstance(raw, dict):
            raise ValueError(f"{path.name} is not an object")
        out = {}
        for key, value in raw.items():
            ts = parse_timestamp(value)
            if ts is not None:
                out[str(key)] = ts
        return out


def read_sidecar(item_dir: Path, sidecar_name: str = "metadata.json") -> SidecarRecord:
    """Default metadata source: parse the JSON sidecar in ``item_dir``.

    Raises:
        ExtractionUnavailable: when the sidecar is missing, unreadable or malformed.
    """
    path = item_dir / sidecar_name
    try:
        with path.open("r", encoding="utf-8") as fh:
            data = json.load(fh)
    except FileNotFoundError as exc:
        raise ExtractionUnavailable(f"sidecar not found: {path}", cause=exc) from exc
    except (OSError, UnicodeDecodeError, json.JSONDecodeError) as exc:
        raise ExtractionUnavailable(f"cannot read sidecar {path}: {exc}", cause=exc) from exc
    return SidecarRecord.from_dict(data)
