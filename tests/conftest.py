import json
import os
import shutil
from datetime import datetime, timezone
from pathlib import Path

import pytest

OLD = datetime(2020, 1, 1, tzinfo=timezone.utc)


def set_mtime(path: Path, when: datetime) -> None:
    ts = when.timestamp()
    os.utime(path, (ts, ts))


class LibraryBuilder:
    """Builds a library tree on disk: <root>/images/<id>.info/{media, metadata.json}.

    Every write back-dates the touched directory and sidecar to ``OLD`` unless
    told otherwise, so runs clocked after 2020 see them as untouched.
    """

    def __init__(self, root: Path):
        self.root = root
        self.items = root / "images"
        self.items.mkdir(parents=True)

    def item_dir(self, item_id: str) -> Path:
        return self.items / f"{item_id}.info"

    def add(self, item_id, name="photo", ext="jpg", folders=(), tags=(), when=OLD, **extra) -> Path:
        record = {"id": item_id, "name": name, "ext": ext, "size": 10, "mtime": 1577836800000,
                  "folders": list(folders), "tags": list(tags)}
        record.update(extra)
        d = self.item_dir(item_id)
        d.mkdir(exist_ok=True)
        (d / f"{name}.{ext}").write_bytes(b"\x00" * 10)
        return self.write_sidecar(item_id, record, when=when)

    def write_sidecar(self, item_id, data, when=OLD) -> Path:
        d = self.item_dir(item_id)
        d.mkdir(exist_ok=True)
        sidecar = d / "metadata.json"
        text = data if isinstance(data, str) else json.dumps(data)
        sidecar.write_text(text, encoding="utf-8")
        self.touch(item_id, when)
        return d

    def touch(self, item_id, when: datetime) -> None:
        d = self.item_dir(item_id)
        set_mtime(d / "metadata.json", when)
        set_mtime(d, when)

    def remove(self, item_id) -> None:
        shutil.rmtree(self.item_dir(item_id))

    def write_mtime_map(self, mapping: dict) -> None:
        (self.root / "mtime.json").write_text(json.dumps(mapping), encoding="utf-8")


@pytest.fixture
def library(tmp_path):
    return LibraryBuilder(tmp_path / "library")
