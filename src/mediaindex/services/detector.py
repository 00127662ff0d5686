"""Per-item change detection.

Signals are checked cheapest first and the first positive one wins:

1. no index row                                  -> NEW
   (an index row marked STALE_HASH                -> MODIFIED)
2. item directory mtime after the baseline       -> MODIFIED
3. external last-modified entry after baseline   -> MODIFIED
4. sidecar mtime after the baseline              -> MODIFIED
5. re-normalized content hash differs from index -> MODIFIED, else UNCHANGED

A sidecar that cannot be stat'ed, read or parsed yields ERRORED.
Deletions are not decided here; see SyncApplier.apply_deletions.
"""
from __future__ import annotations

import enum
import os
from dataclasses import dataclass
from datetime import datetime
from typing import Optional

from mediaindex.lib.errors import ExtractionUnavailable
from mediaindex.lib.timeutil import EPOCH, from_timestamp, to_utc
from mediaindex.services.library import ItemLocation
from mediaindex.services.normalizer import ItemLoader, NormalizedItem

# Written over content_hash when an item's links could not be rebuilt, so the
# next run rewrites it. Never equal to a real SHA-1 digest.
STALE_HASH = "stale"


class ChangeStatus(str, enum.Enum):
    NEW = "new"
    MODIFIED = "modified"
    UNCHANGED = "unchanged"
    ERRORED = "errored"


@dataclass(frozen=True)
class IndexedState:
    """What the index remembers about an item."""
    content_hash: Optional[str] = None
    updated_at: Optional[datetime] = None


@dataclass(frozen=True)
class Detection:
    location: ItemLocation
    status: ChangeStatus
    reason: str = ""
    # Set when step 5 already normalized the sidecar, so it is not read twice.
    normalized: Optional[NormalizedItem] = None
    error: Optional[str] = None

    @property
    def item_id(self) -> str:
        return self.location.item_id


def _mtime(path) -> datetime:
    return from_timestamp(os.stat(path).st_mtime)


class ChangeDetector:
    """Classify items against an index snapshot.

    Args:
        snapshot: item id -> IndexedState for every indexed item
        cursor: last successful refresh, or None when never recorded
        loader: reads and normalizes sidecars (used by the hash check)
        mtime_map: external item id -> last-modified map
        hash_comparison: enable step 5

    Safe to call from several threads at once: it only reads shared state.
    """

    def __init__(
        self,
        snapshot: dict[str, IndexedState],
        cursor: Optional[datetime],
        loader: ItemLoader,
        mtime_map: Optional[dict[str, datetime]] = None,
        hash_comparison: bool = True,
    ):
        self.snapshot = snapshot
        self.cursor = to_utc(cursor) if cursor else None
        self.loader = loader
        self.mtime_map = mtime_map or {}
        self.hash_comparison = hash_comparison

    def baseline_for(self, indexed: IndexedState) -> datetime:
        if self.cursor is not None:
            return self.cursor
        if indexed.updated_at is not None:
            return to_utc(indexed.updated_at)
        return EPOCH

    def detect(self, location: ItemLocation) -> Detection:
        indexed = self.snapshot.get(location.item_id)
        if indexed is None:
            return Detection(location, ChangeStatus.NEW, "not indexed")
        if indexed.content_hash == STALE_HASH:
            return Detection(location, ChangeStatus.MODIFIED, "stale links")

        baseline = self.baseline_for(indexed)
        try:
            if _mtime(location.path) > baseline:
                return Detection(location, ChangeStatus.MODIFIED, "directory")

            external = self.mtime_map.get(location.item_id)
            if external is not None and external > baseline:
                return Detection(location, ChangeStatus.MODIFIED, "mtime map")

            if _mtime(location.path / self.loader.sidecar_name) > baseline:
                return Detection(location, ChangeStatus.MODIFIED, "sidecar")
        except OSError as exc:
            return Detection(location, ChangeStatus.ERRORED, error=f"cannot stat: {exc}")

        if not (self.hash_comparison and indexed.content_hash):
            return Detection(location, ChangeStatus.UNCHANGED, "timestamps")

        try:
            normalized = self.loader.load(location)
        except ExtractionUnavailable as exc:
            return Detection(location, ChangeStatus.ERRORED, error=str(exc))
        if normalized.content_hash != indexed.content_hash:
            return Detection(location, ChangeStatus.MODIFIED, "content hash", normalized=normalized)
        return Detection(location, ChangeStatus.UNCHANGED, "content hash")
