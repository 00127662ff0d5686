from datetime import datetime, timezone

from mediaindex.lib.database import get_engine, get_sessionmaker, init_db
from mediaindex.models.item import Item
from mediaindex.services.repository import IndexStore, RelationKind


def make_session():
    engine = get_engine("sqlite:///:memory:")
    init_db(engine)
    Session = get_sessionmaker(engine)
    return Session()


def _row(item_id, name="a", **extra):
    row = {"id": item_id, "name": name, "ext": "jpg", "size": 1, "media_type": "image",
           "content_hash": f"h-{item_id}-{name}", "btime": None,
           "created_at": datetime(2024, 1, 1), "updated_at": datetime(2024, 1, 1)}
    row.update(extra)
    return row


def test_upsert_inserts_then_replaces():
    store = IndexStore(make_session())
    assert store.upsert_items([_row("A"), _row("B")]) == 2
    assert store.get_all_item_ids() == {"A", "B"}

    store.upsert_items([_row("A", name="renamed", created_at=datetime(2030, 1, 1), updated_at=datetime(2024, 2, 1))])
    item = store.get_item("A")
    assert item.name == "renamed"
    assert item.updated_at == datetime(2024, 2, 1)
    # no btime: the original creation time is kept
    assert item.created_at == datetime(2024, 1, 1)
    assert store.count_items() == 2


def test_snapshot_carries_hash_and_write_time():
    store = IndexStore(make_session())
    store.upsert_items([_row("A")])
    snap = store.get_index_snapshot()
    assert snap["A"].content_hash == "h-A-a"
    assert snap["A"].updated_at == datetime(2024, 1, 1)


def test_relationships_ignore_duplicates_and_delete_by_item():
    store = IndexStore(make_session())
    store.upsert_items([_row("A"), _row("B")])
    store.insert_relationships(RelationKind.FOLDER, [("A", "F1"), ("A", "F1"), ("B", "F1")])
    store.insert_relationships(RelationKind.FOLDER, [("A", "F1"), ("A", "F2")])
    store.insert_relationships(RelationKind.TAG, [("A", "sky")])

    assert store.get_relationships(RelationKind.FOLDER, "A") == ["F1", "F2"]
    assert store.count_relationships(RelationKind.FOLDER) == 3
    assert store.count_distinct_labels(RelationKind.FOLDER) == 2

    assert store.delete_relationships(RelationKind.FOLDER, ["A"]) == 2
    assert store.count_relationships(RelationKind.FOLDER, ["A"]) == 0
    assert store.count_relationships(RelationKind.FOLDER, ["B"]) == 1
    assert store.get_relationships(RelationKind.TAG, "A") == ["sky"]


def test_delete_items_is_set_based_and_idempotent():
    store = IndexStore(make_session())
    store.upsert_items([_row("A"), _row("B")])
    assert store.delete_items(["A", "missing"]) == 1
    assert store.delete_items(["A"]) == 0
    assert store.get_all_item_ids() == {"B"}


def test_cursor_and_item_count_round_trip():
    store = IndexStore(make_session())
    assert store.get_cursor() is None
    ts = datetime(2024, 5, 6, 7, 8, 9, tzinfo=timezone.utc)
    store.set_cursor(ts, item_count=42)
    assert store.get_cursor() == ts
    assert store.get_cache_info("total_items") == "42"
    store.set_cursor(ts)
    assert store.get_cache_info("total_items") == "42"


def test_clear_all_empties_the_index():
    session = make_session()
    store = IndexStore(session)
    store.upsert_items([_row("A")])
    store.insert_relationships(RelationKind.TAG, [("A", "t")])
    store.set_cursor(datetime(2024, 1, 1, tzinfo=timezone.utc), item_count=1)
    store.clear_all()
    assert session.query(Item).count() == 0
    assert store.count_relationships(RelationKind.TAG) == 0
    assert store.get_cursor() is None
