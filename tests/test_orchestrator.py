import threading
import time
from datetime import datetime, timezone

import pytest

from mediaindex.lib.database import InMemoryAdapter
from mediaindex.lib.db_lock import SYNC_LOCK, DatabaseLock
from mediaindex.lib.errors import FinalizeError, InvalidTransition, LibraryUnavailable
from mediaindex.models.item import Item
from mediaindex.services.library import read_sidecar
from mediaindex.services.orchestrator import (
    RunContext,
    SyncConfig,
    SyncMode,
    SyncOrchestrator,
    SyncState,
)
from mediaindex.services.repository import IndexStore, RelationKind

T1 = datetime(2024, 1, 1, tzinfo=timezone.utc)
AFTER_T1 = datetime(2024, 3, 1, tzinfo=timezone.utc)
T2 = datetime(2024, 6, 1, tzinfo=timezone.utc)
T3 = datetime(2024, 9, 1, tzinfo=timezone.utc)


def run_sync(library, session, when, mode=SyncMode.INCREMENTAL, lines=None, extractor=None, **cfg):
    cfg.setdefault("concurrency", 4)
    config = SyncConfig(library_path=str(library.root), **cfg)
    printer = lines.append if lines is not None else (lambda line: None)
    return SyncOrchestrator(config, session=session, extractor=extractor, mode=mode, printer=printer, clock=lambda: when).run()


def test_example_scenario_new_modified_unchanged_deleted(library):
    session = InMemoryAdapter().session()
    store = IndexStore(session)
    library.add("A", folders=["F1"], tags=["a"])
    library.add("B", folders=["F1"], tags=["b-old"])
    library.add("D", folders=["F2"], tags=["d"])
    first = run_sync(library, session, T1)
    assert first.state is SyncState.COMPLETED
    assert sorted(first.ids["new"]) == ["A", "B", "D"]

    library.add("B", folders=["F2"], tags=["b-new"], when=AFTER_T1)
    library.add("C", tags=["c"])
    library.remove("D")
    result = run_sync(library, session, T2)

    assert result.state is SyncState.COMPLETED
    assert result.ids["new"] == ["C"]
    assert result.ids["modified"] == ["B"]
    assert result.ids["unchanged"] == ["A"]
    assert result.ids["deleted"] == ["D"]
    assert result.errors == []
    assert store.get_all_item_ids() == {"A", "B", "C"}
    assert store.get_relationships(RelationKind.FOLDER, "B") == ["F2"]
    assert store.get_relationships(RelationKind.TAG, "B") == ["b-new"]
    assert store.get_cursor() == T2
    assert result.cursor == T2
    assert store.get_cache_info("total_items") == "3"


def test_second_run_without_changes_is_empty(library):
    session = InMemoryAdapter().session()
    for i in range(6):
        library.add(f"I{i}", folders=["F"], tags=[f"t{i}"])
    run_sync(library, session, T1)
    again = run_sync(library, session, T2)
    assert again.state is SyncState.COMPLETED
    assert (again.new, again.modified, again.deleted) == (0, 0, 0)
    assert again.unchanged == 6
    assert again.summary().startswith("Nothing to do")
    assert IndexStore(session).get_cursor() == T2


def test_index_matches_disk_after_run(library):
    session = InMemoryAdapter().session()
    for i in range(5):
        library.add(f"I{i}")
    run_sync(library, session, T1)
    library.remove("I3")
    library.add("I9")
    run_sync(library, session, T2)
    ids = [row.id for row in session.query(Item).order_by(Item.id)]
    assert ids == ["I0", "I1", "I2", "I4", "I9"]


def test_deleted_item_leaves_no_relationships(library):
    session = InMemoryAdapter().session()
    store = IndexStore(session)
    library.add("A", folders=["F1", "F2"], tags=["x", "y"])
    library.add("B", folders=["F1"])
    run_sync(library, session, T1)
    library.remove("A")
    result = run_sync(library, session, T2)
    assert result.ids["deleted"] == ["A"]
    assert store.count_relationships(RelationKind.FOLDER, ["A"]) == 0
    assert store.count_relationships(RelationKind.TAG, ["A"]) == 0
    assert store.count_relationships(RelationKind.FOLDER, ["B"]) == 1


def test_single_corrupt_sidecar_is_isolated(library):
    session = InMemoryAdapter().session()
    for i in range(5):
        library.add(f"I{i}")
    library.write_sidecar("I2", "{this is not json")
    result = run_sync(library, session, T1)
    assert result.state is SyncState.COMPLETED
    assert result.ids["errored"] == ["I2"]
    assert result.new == 4
    assert len(result.errors) == 1 and result.errors[0].item_id == "I2"
    assert result.summary().startswith("Partial success with 1 errors")
    assert IndexStore(session).get_all_item_ids() == {"I0", "I1", "I3", "I4"}


def test_corrupted_indexed_item_is_kept_and_reported(library):
    session = InMemoryAdapter().session()
    library.add("A")
    library.add("B")
    run_sync(library, session, T1)
    library.write_sidecar("B", "[]")
    result = run_sync(library, session, T2)
    assert result.state is SyncState.COMPLETED
    assert result.ids["errored"] == ["B"]
    assert result.ids["unchanged"] == ["A"]
    assert result.deleted == 0
    assert IndexStore(session).get_all_item_ids() == {"A", "B"}


def test_workers_stay_within_concurrency(library):
    session = InMemoryAdapter().session()
    for i in range(24):
        library.add(f"I{i:02d}")
    active = [0]
    peak = [0]
    lock = threading.Lock()

    def extractor(item_dir):
        with lock:
            active[0] += 1
            peak[0] = max(peak[0], active[0])
        time.sleep(0.002)
        try:
            return read_sidecar(item_dir)
        finally:
            with lock:
                active[0] -= 1

    result = run_sync(library, session, T1, extractor=extractor, concurrency=3, chunk_size=10)
    assert result.new == 24
    assert 1 <= peak[0] <= 3

    peak[0] = 0
    again = run_sync(library, session, T2, extractor=extractor, concurrency=3, chunk_size=10)
    assert again.unchanged == 24
    assert 1 <= peak[0] <= 3


def test_mtime_map_entry_marks_item_modified(library):
    session = InMemoryAdapter().session()
    library.add("A")
    library.add("B")
    run_sync(library, session, T1)
    library.write_mtime_map({"A": int(AFTER_T1.timestamp() * 1000)})
    result = run_sync(library, session, T2)
    assert result.ids["modified"] == ["A"]
    assert result.ids["unchanged"] == ["B"]
    assert IndexStore(session).get_item("A").mtime == datetime(2024, 3, 1)


def test_unreadable_mtime_map_is_ignored(library):
    session = InMemoryAdapter().session()
    library.add("A")
    (library.root / "mtime.json").write_text("{oops", encoding="utf-8")
    lines = []
    result = run_sync(library, session, T1, lines=lines)
    assert result.state is SyncState.COMPLETED
    assert any("ignoring mtime.json" in line for line in lines)


def test_force_rewrites_every_item(library):
    session = InMemoryAdapter().session()
    library.add("A")
    library.add("B")
    library.add("D")
    run_sync(library, session, T1)
    library.add("C")
    library.remove("D")
    result = run_sync(library, session, T2, mode=SyncMode.FORCE)
    assert result.ids["modified"] == ["A", "B"]
    assert result.ids["new"] == ["C"]
    assert result.ids["deleted"] == ["D"]
    assert IndexStore(session).get_item("A").updated_at == datetime(2024, 6, 1)


def test_rebuild_clears_and_reindexes(library):
    session = InMemoryAdapter().session()
    store = IndexStore(session)
    library.add("A", tags=["keep"])
    library.add("D", tags=["gone"])
    run_sync(library, session, T1)
    library.remove("D")
    result = run_sync(library, session, T2, mode=SyncMode.REBUILD)
    assert result.state is SyncState.COMPLETED
    assert result.ids["new"] == ["A"]
    assert result.ids["deleted"] == ["D"]
    assert store.get_all_item_ids() == {"A"}
    assert store.count_relationships(RelationKind.TAG) == 1
    assert store.get_cursor() == T2


def test_missing_library_fails_to_start(tmp_path):
    config = SyncConfig(library_path=str(tmp_path / "nope"))
    result = SyncOrchestrator(config, session=InMemoryAdapter().session(), printer=lambda line: None).run()
    assert result.state is SyncState.FAILED
    assert result.failed_in is SyncState.VALIDATING
    assert isinstance(result.error, LibraryUnavailable)
    assert result.summary().startswith("Failed to start")


def test_unreachable_index_fails_to_start(library, tmp_path):
    library.add("A")
    blocker = tmp_path / "not-a-dir"
    blocker.write_text("x")
    config = SyncConfig(library_path=str(library.root), database=str(blocker / "index.db"))
    result = SyncOrchestrator(config, printer=lambda line: None).run()
    assert result.state is SyncState.FAILED
    assert result.failed_in is SyncState.CONNECTING


def test_held_lock_fails_the_run(library):
    session = InMemoryAdapter().session()
    library.add("A")
    other = DatabaseLock(session, SYNC_LOCK)
    other.acquire()
    try:
        result = run_sync(library, session, T1)
    finally:
        other.release()
    assert result.state is SyncState.FAILED
    assert result.failed_in is SyncState.CONNECTING
    assert IndexStore(session).get_all_item_ids() == set()
    assert run_sync(library, session, T2).state is SyncState.COMPLETED


def test_finalize_failure_leaves_cursor_untouched(library, monkeypatch):
    session = InMemoryAdapter().session()
    library.add("A")
    run_sync(library, session, T1)

    def boom(self, ts, item_count=None):
        raise RuntimeError("write refused")

    monkeypatch.setattr(IndexStore, "set_cursor", boom)
    result = run_sync(library, session, T2)
    assert result.state is SyncState.FAILED
    assert result.failed_in is SyncState.FINALIZING
    assert isinstance(result.error, FinalizeError)
    monkeypatch.undo()
    assert IndexStore(session).get_cursor() == T1


def test_sync_lock_released_after_run(library):
    session = InMemoryAdapter().session()
    library.add("A")
    run_sync(library, session, T1)
    lock = DatabaseLock(session, SYNC_LOCK)
    lock.acquire()
    lock.release()


def test_run_context_enforces_transitions():
    lines = []
    ctx = RunContext(printer=lines.append)
    ctx.transition(SyncState.VALIDATING)
    with pytest.raises(InvalidTransition):
        ctx.transition(SyncState.UPSERTING)
    ctx.transition(SyncState.FAILED)
    with pytest.raises(InvalidTransition):
        ctx.transition(SyncState.FAILED)
    assert any("Validating finished in" in line for line in lines)


def test_run_context_progress_and_log_cap():
    ticks = iter([0.0, 0.0, 60.0])
    ctx = RunContext(printer=lambda line: None, clock=lambda: next(ticks))
    ctx.report("Detecting", 50, 100)
    assert ctx.percent == 50
    assert ctx.eta == "1m"
    for i in range(250):
        ctx.log(f"line {i}")
    assert len(ctx.logs) == 200
    assert ctx.logs[-1].endswith("line 249")


def test_links_rejected_in_one_run_are_repaired_by_the_next(library, monkeypatch):
    session = InMemoryAdapter().session()
    store = IndexStore(session)
    library.add("A", folders=["F1"], tags=["a"])

    def refuse(self, kind, pairs):
        raise RuntimeError("links refused")

    monkeypatch.setattr(IndexStore, "insert_relationships", refuse)
    first = run_sync(library, session, T1)
    assert first.state is SyncState.COMPLETED
    assert {e.phase for e in first.errors} == {"relate"}
    monkeypatch.undo()
    assert store.get_relationships(RelationKind.FOLDER, "A") == []

    second = run_sync(library, session, T2)
    assert second.ids["modified"] == ["A"]
    assert second.errors == []
    assert store.get_relationships(RelationKind.FOLDER, "A") == ["F1"]
    assert store.get_relationships(RelationKind.TAG, "A") == ["a"]
    assert run_sync(library, session, T3).ids["unchanged"] == ["A"]
