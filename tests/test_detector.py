from datetime import datetime, timezone

from conftest import OLD, set_mtime

from mediaindex.services.detector import STALE_HASH, ChangeDetector, ChangeStatus, IndexedState
from mediaindex.services.library import ItemLocation
from mediaindex.services.normalizer import ItemLoader

CURSOR = datetime(2024, 1, 1, tzinfo=timezone.utc)
AFTER = datetime(2024, 6, 1, tzinfo=timezone.utc)


def _indexed(library, item_id, **sidecar):
    library.add(item_id, **sidecar)
    loc = ItemLocation(item_id, library.item_dir(item_id))
    normalized = ItemLoader().load(loc)
    return loc, IndexedState(normalized.content_hash, datetime(2023, 1, 1))


def test_unindexed_item_is_new(library):
    library.add("A")
    detector = ChangeDetector({}, CURSOR, ItemLoader())
    d = detector.detect(ItemLocation("A", library.item_dir("A")))
    assert d.status is ChangeStatus.NEW


def test_untouched_item_with_matching_hash_is_unchanged(library):
    loc, state = _indexed(library, "A")
    d = ChangeDetector({"A": state}, CURSOR, ItemLoader()).detect(loc)
    assert d.status is ChangeStatus.UNCHANGED
    assert d.reason == "content hash"


def test_directory_mtime_after_cursor_is_modified(library):
    loc, state = _indexed(library, "A")
    library.touch("A", AFTER)
    d = ChangeDetector({"A": state}, CURSOR, ItemLoader()).detect(loc)
    assert d.status is ChangeStatus.MODIFIED
    assert d.reason == "directory"


def test_external_mtime_map_entry_after_cursor_is_modified(library):
    loc, state = _indexed(library, "A")
    mtime_map = {"A": AFTER}
    d = ChangeDetector({"A": state}, CURSOR, ItemLoader(mtime_map=mtime_map), mtime_map).detect(loc)
    assert d.status is ChangeStatus.MODIFIED
    assert d.reason == "mtime map"


def test_sidecar_mtime_after_cursor_is_modified(library):
    loc, state = _indexed(library, "A")
    library.touch("A", OLD)
    set_mtime(loc.path / "metadata.json", AFTER)
    d = ChangeDetector({"A": state}, CURSOR, ItemLoader()).detect(loc)
    assert d.status is ChangeStatus.MODIFIED
    assert d.reason == "sidecar"


def test_hash_mismatch_is_modified_and_keeps_normalized_row(library):
    loc, state = _indexed(library, "A")
    library.add("A", tags=["new-tag"])
    d = ChangeDetector({"A": state}, CURSOR, ItemLoader()).detect(loc)
    assert d.status is ChangeStatus.MODIFIED
    assert d.reason == "content hash"
    assert d.normalized is not None
    assert d.normalized.tags == ("new-tag",)


def test_stale_row_is_modified_without_reading_sidecar(library):
    loc, _ = _indexed(library, "A")
    state = IndexedState(STALE_HASH, datetime(2023, 1, 1))
    d = ChangeDetector({"A": state}, CURSOR, ItemLoader(), hash_comparison=False).detect(loc)
    assert d.status is ChangeStatus.MODIFIED
    assert d.reason == "stale links"
    assert d.normalized is None


def test_without_stored_hash_timestamps_decide(library):
    loc, _ = _indexed(library, "A")
    library.add("A", tags=["changed"])
    d = ChangeDetector({"A": IndexedState(None, None)}, CURSOR, ItemLoader()).detect(loc)
    assert d.status is ChangeStatus.UNCHANGED
    assert d.reason == "timestamps"


def test_hash_comparison_can_be_disabled(library):
    loc, state = _indexed(library, "A")
    library.add("A", tags=["changed"])
    d = ChangeDetector({"A": state}, CURSOR, ItemLoader(), hash_comparison=False).detect(loc)
    assert d.status is ChangeStatus.UNCHANGED


def test_corrupt_sidecar_is_errored(library):
    loc, state = _indexed(library, "A")
    library.write_sidecar("A", "{not json")
    d = ChangeDetector({"A": state}, CURSOR, ItemLoader()).detect(loc)
    assert d.status is ChangeStatus.ERRORED
    assert "sidecar" in d.error


def test_missing_sidecar_is_errored(library):
    loc, state = _indexed(library, "A")
    (loc.path / "metadata.json").unlink()
    set_mtime(loc.path, OLD)
    d = ChangeDetector({"A": state}, CURSOR, ItemLoader()).detect(loc)
    assert d.status is ChangeStatus.ERRORED


def test_baseline_falls_back_to_last_write_then_epoch():
    detector = ChangeDetector({}, None, ItemLoader())
    written = datetime(2023, 3, 3)
    assert detector.baseline_for(IndexedState("h", written)) == datetime(2023, 3, 3, tzinfo=timezone.utc)
    assert detector.baseline_for(IndexedState("h", None)).year == 1970
    assert ChangeDetector({}, CURSOR, ItemLoader()).baseline_for(IndexedState("h", written)) == CURSOR
