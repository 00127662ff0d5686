"""Write a classified changeset to the index.

Four steps, each safe to repeat: deletions, batched upserts, relationship
rebuild and finalize. Per-item and per-batch failures are returned as
ItemError records; only ``finalize`` raises.
"""
from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from typing import Callable, Iterable, Optional, Sequence

from mediaindex.lib.errors import FinalizeError
from mediaindex.services.normalizer import NormalizedItem
from mediaindex.services.repository import IndexStore, RelationKind


@dataclass(frozen=True)
class ItemError:
    item_id: Optional[str]
    phase: str
    message: str


@dataclass
class ApplyOutcome:
    done: list = field(default_factory=list)
    errors: list = field(default_factory=list)

    @property
    def failed_ids(self) -> set:
        return {e.item_id for e in self.errors if e.item_id is not None}


def _batches(values: Sequence, size: int):
    for i in range(0, len(values), size):
        yield values[i:i + size]


class SyncApplier:
    """Apply a changeset through an IndexStore.

    Args:
        store: the index store
        batch_size: rows per upsert (and per deletion) call
        relationship_batch_size: pairs per relationship insert
        log: line sink for diagnostics
        report: progress sink, ``report(phase, processed, total)``
    """

    def __init__(
        self,
        store: IndexStore,
        batch_size: int = 1000,
        relationship_batch_size: int = 20000,
        log: Callable[[str], None] = print,
        report: Optional[Callable[[str, int, int], None]] = None,
    ):
        self.store = store
        self.batch_size = max(1, batch_size)
        self.relationship_batch_size = max(1, relationship_batch_size)
        self.log = log
        self.report = report or (lambda phase, processed, total: None)

    def apply_deletions(self, ids: Iterable[str]) -> ApplyOutcome:
        """Remove items and their relationships, relationships first."""
        ids = sorted(set(ids))
        outcome = ApplyOutcome()
        for n, batch in enumerate(_batches(ids, self.batch_size), start=1):
            try:
                self.store.delete_relationships(RelationKind.FOLDER, batch)
                self.store.delete_relationships(RelationKind.TAG, batch)
                self.store.delete_items(batch)
            except Exception as exc:
                self.log(f"ERROR: deletion batch {n} ({len(batch)} items) failed: {exc}")
                outcome.errors.extend(ItemError(i, "delete", str(exc)) for i in batch)
                continue
            outcome.done.extend(batch)
            self.report("Deleting", len(outcome.done) + len(outcome.errors), len(ids))
        return outcome

    def upsert(self, items: Sequence[NormalizedItem]) -> ApplyOutcome:
        """Write rows in ``batch_size`` batches.

        A failed batch is rolled back and all of its items are reported as
        errors; the remaining batches are still attempted.
        """
        outcome = ApplyOutcome()
        total = len(items)
        for n, batch in enumerate(_batches(list(items), self.batch_size), start=1):
            try:
                self.store.upsert_items([it.row for it in batch])
            except Exception as exc:
                self.log(f"ERROR: upsert batch {n} ({len(batch)} items) failed: {exc}")
                outcome.errors.extend(ItemError(it.item_id, "upsert", str(exc)) for it in batch)
            else:
                outcome.done.extend(it.item_id for it in batch)
            self.report("Upserting", len(outcome.done) + len(outcome.errors), total)
        return outcome

    def rebuild_relationships(self, items: Sequence[NormalizedItem]) -> ApplyOutcome:
        """Replace the folder and tag links of ``items``.

        Prior links are removed for every item before any new link is
        inserted. If that removal fails nothing is inserted, so an item never
        ends up with a mix of stale and fresh links.
        """
        outcome = ApplyOutcome()
        if not items:
            return outcome
        ids = [it.item_id for it in items]
        try:
            self.store.delete_relationships(RelationKind.FOLDER, ids)
            self.store.delete_relationships(RelationKind.TAG, ids)
        except Exception as exc:
            self.log(f"ERROR: clearing previous relationships failed: {exc}")
            outcome.errors.extend(ItemError(i, "relate", str(exc)) for i in ids)
            self._mark_stale(ids)
            return outcome

        failed: set = set()
        for kind, attr in ((RelationKind.FOLDER, "folders"), (RelationKind.TAG, "tags")):
            pairs = sorted({(it.item_id, label) for it in items for label in getattr(it, attr)})
            inserted = 0
            for batch in _batches(pairs, self.relationship_batch_size):
                try:
                    inserted += self.store.insert_relationships(kind, batch)
                except Exception as exc:
                    self.log(f"WARNING: {kind.value} batch of {len(batch)} links failed ({exc}); retrying per item")
                    inserted += self._insert_per_item(kind, batch, outcome, failed)
            self.log(f"Linked {inserted} {kind.value} relationships for {len(items)} items")
        outcome.done.extend(i for i in ids if i not in failed)
        if failed:
            self._mark_stale(sorted(failed))
        return outcome

    def _mark_stale(self, ids: Sequence[str]) -> None:
        # The rows already carry their new hash; without this the next run
        # would see them as unchanged and never repair their links.
        try:
            self.store.mark_stale(ids)
        except Exception as exc:
            self.log(f"ERROR: could not mark {len(ids)} items for re-linking: {exc}")

    def _insert_per_item(self, kind: RelationKind, batch, outcome: ApplyOutcome, failed: set) -> int:
        by_item: dict = {}
        for item_id, label in batch:
            by_item.setdefault(item_id, []).append((item_id, label))
        inserted = 0
        for item_id, pairs in by_item.items():
            try:
                inserted += self.store.insert_relationships(kind, pairs)
            except Exception as exc:
                failed.add(item_id)
                outcome.errors.append(ItemError(item_id, "relate", f"{kind.value} links rejected: {exc}"))
        return inserted

    def finalize(self, cursor: datetime) -> int:
        """Record the sync cursor and item count together.

        Raises:
            FinalizeError: if either value cannot be written. Nothing is
                written in that case.
        """
        try:
            count = self.store.count_items()
            self.store.set_cursor(cursor, item_count=count)
        except Exception as exc:
            raise FinalizeError(f"Could not record sync cursor: {exc}", cause=exc) from exc
        return count
