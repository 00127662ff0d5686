"""Index store: reads and writes items, their links and the sync cursor."""
from __future__ import annotations

import enum
from datetime import datetime
from typing import Iterable, Optional, Sequence

from sqlalchemy import delete, func, insert, select, text, update
from sqlalchemy.orm import Session

from mediaindex.lib.timeutil import parse_timestamp, to_iso
from mediaindex.models.cache_info import CacheInfo
from mediaindex.models.item import Item
from mediaindex.models.item_folder import ItemFolder
from mediaindex.models.item_tag import ItemTag
from mediaindex.services.detector import STALE_HASH, IndexedState

# Keep IN (...) lists well under SQLite's bound-parameter limit.
IN_CLAUSE_CHUNK = 500

CURSOR_KEY = "last_refresh"
ITEM_COUNT_KEY = "total_items"


class RelationKind(str, enum.Enum):
    FOLDER = "folder"
    TAG = "tag"


_RELATION_MODELS = {
    RelationKind.FOLDER: (ItemFolder, "folder_id"),
    RelationKind.TAG: (ItemTag, "tag"),
}


def _chunks(values: Sequence, size: int):
    for i in range(0, len(values), size):
        yield values[i:i + size]


class IndexStore:
    """Index store over a SQLAlchemy session.

    Each public write method commits on success and rolls back before
    re-raising on failure, so it is atomic on its own. Nothing here composes
    calls into larger transactions; ordering across calls is the caller's job.
    """

    def __init__(self, session: Session):
        self.session = session

    def ping(self) -> None:
        self.session.execute(text("SELECT 1"))

    # Items
    def get_all_item_ids(self) -> set[str]:
        return set(self.session.scalars(select(Item.id)))

    def get_index_snapshot(self) -> dict[str, IndexedState]:
        rows = self.session.execute(select(Item.id, Item.content_hash, Item.updated_at))
        return {r.id: IndexedState(r.content_hash, r.updated_at) for r in rows}

    def get_item(self, item_id: str) -> Optional[Item]:
        return self.session.get(Item, item_id, populate_existing=True)

    def count_items(self) -> int:
        return self.session.scalar(select(func.count()).select_from(Item)) or 0

    def upsert_items(self, rows: Sequence[dict]) -> int:
        """Insert new rows and replace existing ones with the same ID.

        An existing row keeps its ``created_at`` when the new row has no
        ``btime`` to derive one from.
        """
        if not rows:
            return 0
        try:
            ids = [r["id"] for r in rows]
            existing = set()
            for part in _chunks(ids, IN_CLAUSE_CHUNK):
                existing.update(self.session.scalars(select(Item.id).where(Item.id.in_(part))))
            inserts = [r for r in rows if r["id"] not in existing]
            updates = []
            for r in rows:
                if r["id"] in existing:
                    r = dict(r)
                    if r.get("btime") is None:
                        r.pop("created_at", None)
                    updates.append(r)
            if inserts:
                self.session.execute(insert(Item), inserts)
            if updates:
                self.session.execute(update(Item), updates)
            self.session.commit()
        except Exception:
            self.session.rollback()
            raise
        return len(rows)

    def delete_items(self, ids: Iterable[str]) -> int:
        ids = list(ids)
        removed = 0
        try:
            for part in _chunks(ids, IN_CLAUSE_CHUNK):
                removed += self.session.execute(delete(Item).where(Item.id.in_(part))).rowcount or 0
            self.session.commit()
        except Exception:
            self.session.rollback()
            raise
        return removed

    def mark_stale(self, ids: Iterable[str]) -> int:
        """Overwrite the content hash of ``ids`` so the next run rewrites them."""
        ids = list(ids)
        marked = 0
        try:
            for part in _chunks(ids, IN_CLAUSE_CHUNK):
                stmt = update(Item).where(Item.id.in_(part)).values(content_hash=STALE_HASH)
                marked += self.session.execute(stmt).rowcount or 0
            self.session.commit()
        except Exception:
            self.session.rollback()
            raise
        return marked

    # Relationships
    def delete_relationships(self, kind: RelationKind, ids: Iterable[str]) -> int:
        model, _ = _RELATION_MODELS[RelationKind(kind)]
        ids = list(ids)
        removed = 0
        try:
            for part in _chunks(ids, IN_CLAUSE_CHUNK):
                removed += self.session.execute(delete(model).where(model.item_id.in_(part))).rowcount or 0
            self.session.commit()
        except Exception:
            self.session.rollback()
            raise
        return removed

    def insert_relationships(self, kind: RelationKind, pairs: Iterable[tuple[str, str]]) -> int:
        """Insert (item_id, label) pairs, ignoring pairs that already exist."""
        model, column = _RELATION_MODELS[RelationKind(kind)]
        unique = sorted(set(pairs))
        if not unique:
            return 0
        stmt = self._insert_ignore(model)
        try:
            self.session.execute(stmt, [{"item_id": item_id, column: label} for item_id, label in unique])
            self.session.commit()
        except Exception:
            self.session.rollback()
            raise
        return len(unique)

    def _insert_ignore(self, model):
        dialect = self.session.get_bind().dialect.name
        if dialect == "sqlite":
            from sqlalchemy.dialects.sqlite import insert as sqlite_insert

            return sqlite_insert(model).on_conflict_do_nothing()
        if dialect in ("mysql", "mariadb"):
            return insert(model).prefix_with("IGNORE")
        if dialect == "postgresql":
            from sqlalchemy.dialects.postgresql import insert as pg_insert

            return pg_insert(model).on_conflict_do_nothing()
        return insert(model)

    def get_relationships(self, kind: RelationKind, item_id: str) -> list[str]:
        model, column = _RELATION_MODELS[RelationKind(kind)]
        label = getattr(model, column)
        return list(self.session.scalars(select(label).where(model.item_id == item_id).order_by(label)))

    def count_relationships(self, kind: RelationKind, item_ids: Optional[Iterable[str]] = None) -> int:
        model, _ = _RELATION_MODELS[RelationKind(kind)]
        if item_ids is None:
            return self.session.scalar(select(func.count()).select_from(model)) or 0
        total = 0
        for part in _chunks(list(item_ids), IN_CLAUSE_CHUNK):
            total += self.session.scalar(select(func.count()).select_from(model).where(model.item_id.in_(part))) or 0
        return total

    def count_distinct_labels(self, kind: RelationKind) -> int:
        model, column = _RELATION_MODELS[RelationKind(kind)]
        return self.session.scalar(select(func.count(func.distinct(getattr(model, column))))) or 0

    # Cache info / sync cursor
    def get_cache_info(self, key: str) -> Optional[str]:
        row = self.session.get(CacheInfo, key)
        return row.value if row else None

    def update_cache_info(self, entries: dict[str, str]) -> None:
        """Write several cache entries in a single commit."""
        try:
            for key, value in entries.items():
                self.session.merge(CacheInfo(key=key, value=str(value)))
            self.session.commit()
        except Exception:
            self.session.rollback()
            raise

    def get_cursor(self) -> Optional[datetime]:
        return parse_timestamp(self.get_cache_info(CURSOR_KEY))

    def set_cursor(self, ts: datetime, item_count: Optional[int] = None) -> None:
        entries = {CURSOR_KEY: to_iso(ts)}
        if item_count is not None:
            entries[ITEM_COUNT_KEY] = str(item_count)
        self.update_cache_info(entries)

    def clear_all(self) -> None:
        """Remove every item, relationship and cache entry (full rebuild)."""
        try:
            self.session.execute(delete(ItemTag))
            self.session.execute(delete(ItemFolder))
            self.session.execute(delete(Item))
            self.session.execute(delete(CacheInfo))
            self.session.commit()
        except Exception:
            self.session.rollback()
            raise
