"""Sync orchestration: drive one run through its phases.

    Idle -> Validating -> Connecting -> Scanning -> Detecting
         -> Deleting -> Upserting -> Relating -> Finalizing -> Completed

Detecting goes straight to Finalizing when there is nothing to write or
delete, and Deleting does the same when only deletions were found. Any
non-terminal state may move to Failed. Per-item problems never fail a run;
they are collected on the SyncResult.
"""
from __future__ import annotations

import enum
import os
import time
from collections import deque
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from typing import Callable, Optional

from sqlalchemy.exc import SQLAlchemyError

from mediaindex.lib.database import (
    default_database_url,
    ensure_sqlite_parent,
    get_engine,
    get_sessionmaker,
    init_db,
    mask_db_url,
    normalize_db_url,
)
from mediaindex.lib.db_lock import SYNC_LOCK, DatabaseLock, LockAcquisitionError
from mediaindex.lib.errors import IndexUnavailable, InvalidTransition, SyncFatalError
from mediaindex.lib.runner import BoundedRunner, UnitTimeout
from mediaindex.lib.timeutil import format_duration, format_eta, now_utc, to_iso
from mediaindex.services.applier import ItemError, SyncApplier
from mediaindex.services.detector import ChangeDetector, ChangeStatus, Detection
from mediaindex.services.library import LibraryLayout
from mediaindex.services.normalizer import ItemLoader
from mediaindex.services.repository import IndexStore

MAX_LOG_LINES = 200


def default_concurrency() -> int:
    return min(200, (os.cpu_count() or 1) * 12)


class SyncState(str, enum.Enum):
    IDLE = "Idle"
    VALIDATING = "Validating"
    CONNECTING = "Connecting"
    SCANNING = "Scanning"
    DETECTING = "Detecting"
    DELETING = "Deleting"
    UPSERTING = "Upserting"
    RELATING = "Relating"
    FINALIZING = "Finalizing"
    COMPLETED = "Completed"
    FAILED = "Failed"

    @property
    def terminal(self) -> bool:
        return self in (SyncState.COMPLETED, SyncState.FAILED)


TRANSITIONS = {
    SyncState.IDLE: {SyncState.VALIDATING},
    SyncState.VALIDATING: {SyncState.CONNECTING},
    SyncState.CONNECTING: {SyncState.SCANNING},
    SyncState.SCANNING: {SyncState.DETECTING},
    SyncState.DETECTING: {SyncState.DELETING, SyncState.FINALIZING},
    SyncState.DELETING: {SyncState.UPSERTING, SyncState.FINALIZING},
    SyncState.UPSERTING: {SyncState.RELATING},
    SyncState.RELATING: {SyncState.FINALIZING},
    SyncState.FINALIZING: {SyncState.COMPLETED},
}


class SyncMode(str, enum.Enum):
    INCREMENTAL = "incremental"
    FORCE = "force"
    REBUILD = "rebuild"


@dataclass
class SyncConfig:
    library_path: str
    database: Optional[str] = None
    items_dir: str = "images"
    item_suffix: str = ".info"
    sidecar_name: str = "metadata.json"
    mtime_map_name: str = "mtime.json"
    chunk_size: int = 2000
    concurrency: int = field(default_factory=default_concurrency)
    batch_size: int = 1000
    relationship_batch_size: int = 20000
    hash_comparison: bool = True
    deletion_detection: bool = True
    item_timeout: Optional[float] = 30.0
    lock_timeout: int = 3600

    def layout(self) -> LibraryLayout:
        return LibraryLayout(
            Path(self.library_path),
            items_dir=self.items_dir,
            item_suffix=self.item_suffix,
            sidecar_name=self.sidecar_name,
            mtime_map_name=self.mtime_map_name,
        )

    def database_url(self) -> str:
        return normalize_db_url(self.database or default_database_url(self.library_path))


class RunContext:
    """Progress and log state for one run, passed explicitly to each phase.

    ``printer`` receives every diagnostic line; the last ``MAX_LOG_LINES``
    are also kept (with timestamps) for display.
    """

    def __init__(self, printer: Callable[[str], None] = print, clock: Callable[[], float] = time.monotonic):
        self.printer = printer
        self.clock = clock
        self.state = SyncState.IDLE
        self.logs: deque = deque(maxlen=MAX_LOG_LINES)
        self.phase: Optional[str] = None
        self.processed = 0
        self.total = 0
        self.percent = 0
        self.eta: Optional[str] = None
        self.phase_durations: dict = {}
        self._state_started = clock()
        self._phase_started = self._state_started

    def log(self, message: str) -> None:
        self.logs.append(f"{to_iso(now_utc())} {message}")
        self.printer(message)

    def report(self, phase: str, processed: int, total: int) -> None:
        if phase != self.phase:
            self.phase = phase
            self._phase_started = self.clock()
        self.processed = processed
        self.total = total
        self.percent = round(processed * 100 / total) if total else 100
        self.eta = format_eta(processed, total, self.clock() - self._phase_started)
        eta = f", ETA {self.eta}" if self.eta else ""
        self.log(f"{phase}: {processed:,}/{total:,} ({self.percent}%{eta})")

    def transition(self, new_state: SyncState) -> None:
        """Move to ``new_state``, logging how long the previous state took.

        Raises:
            InvalidTransition: if the state machine does not allow the move.
        """
        allowed = TRANSITIONS.get(self.state, set())
        if new_state is SyncState.FAILED and not self.state.terminal:
            allowed = allowed | {SyncState.FAILED}
        if new_state not in allowed:
            raise InvalidTransition(
                f"Cannot move from {self.state.value} to {new_state.value}",
                details={"from": self.state.value, "to": new_state.value},
            )
        now = self.clock()
        if self.state is not SyncState.IDLE:
            elapsed_ms = (now - self._state_started) * 1000
            self.phase_durations[self.state.value] = elapsed_ms
            self.log(f"{self.state.value} finished in {format_duration(elapsed_ms)}")
        self.state = new_state
        self._state_started = now


@dataclass
class SyncResult:
    mode: SyncMode
    state: SyncState = SyncState.IDLE
    ids: dict = field(default_factory=lambda: {s: [] for s in ("new", "modified", "unchanged", "errored", "deleted")})
    errors: list = field(default_factory=list)
    error: Optional[BaseException] = None
    failed_in: Optional[SyncState] = None
    elapsed_ms: float = 0.0
    cursor: Optional[datetime] = None
    item_count: Optional[int] = None

    @property
    def counts(self) -> dict:
        return {k: len(v) for k, v in self.ids.items()}

    @property
    def new(self) -> int:
        return len(self.ids["new"])

    @property
    def modified(self) -> int:
        return len(self.ids["modified"])

    @property
    def unchanged(self) -> int:
        return len(self.ids["unchanged"])

    @property
    def errored(self) -> int:
        return len(self.ids["errored"])

    @property
    def deleted(self) -> int:
        return len(self.ids["deleted"])

    @property
    def ok(self) -> bool:
        return self.state is SyncState.COMPLETED

    def summary(self) -> str:
        took = format_duration(self.elapsed_ms)
        if self.state is SyncState.FAILED:
            where = self.failed_in.value if self.failed_in else "startup"
            if self.failed_in in (None, SyncState.IDLE, SyncState.VALIDATING, SyncState.CONNECTING):
                return f"Failed to start ({where}): {self.error}"
            return f"Failed during {where} after {took}: {self.error}"
        c = self.counts
        line = (
            f"new={c['new']} modified={c['modified']} deleted={c['deleted']} "
            f"unchanged={c['unchanged']} errored={c['errored']}"
        )
        if self.errors:
            return f"Partial success with {len(self.errors)} errors in {took}: {line}"
        if not (c["new"] or c["modified"] or c["deleted"]):
            return f"Nothing to do: {c['unchanged']} items unchanged ({took})"
        return f"Completed in {took}: {line}"


class SyncOrchestrator:
    """Run one synchronization of a library into its index.

    Args:
        config: SyncConfig
        session: an open SQLAlchemy session to use instead of connecting to
            ``config.database`` (tests pass an in-memory one)
        extractor: optional metadata source, ``extractor(item_dir) -> SidecarRecord``
        mode: incremental (default), force or rebuild
        printer: diagnostic line sink
        clock: wall clock, used for the sync cursor
    """

    def __init__(
        self,
        config: SyncConfig,
        session=None,
        extractor=None,
        mode: SyncMode = SyncMode.INCREMENTAL,
        printer: Callable[[str], None] = print,
        clock: Callable[[], datetime] = now_utc,
    ):
        self.config = config
        self.session = session
        self.extractor = extractor
        self.mode = SyncMode(mode)
        self.clock = clock
        self.printer = printer
        self.ctx = RunContext(printer=printer)
        self._owned_session = None
        self._lock: Optional[DatabaseLock] = None

    def run(self) -> SyncResult:
        """Run every phase and return the result. Never raises for run failures."""
        ctx = self.ctx = RunContext(printer=self.printer)
        result = SyncResult(mode=self.mode)
        started = time.monotonic()
        try:
            try:
                self._run_phases(result)
            except (SyncFatalError, LockAcquisitionError) as exc:
                self._fail(result, exc)
            except Exception as exc:
                failed_in = ctx.state.value
                self._fail(result, SyncFatalError(f"Unexpected error during {failed_in}: {exc}", cause=exc))
        finally:
            self._release()
            result.elapsed_ms = (time.monotonic() - started) * 1000
            result.state = ctx.state
            ctx.log(result.summary())
        return result

    def _fail(self, result: SyncResult, exc: BaseException) -> None:
        result.failed_in = self.ctx.state
        result.error = exc
        session = self.session or self._owned_session
        if session is not None:
            try:
                session.rollback()
            except SQLAlchemyError as rollback_exc:
                self.ctx.log(f"WARNING: rollback failed: {rollback_exc}")
        self.ctx.log(f"ERROR: {exc}")
        self.ctx.transition(SyncState.FAILED)

    def _release(self) -> None:
        try:
            if self._lock is not None:
                try:
                    self._lock.release()
                except SQLAlchemyError as exc:
                    self.ctx.log(f"WARNING: could not release sync lock: {exc}")
                self._lock = None
        finally:
            if self._owned_session is not None:
                self._owned_session.close()
                self._owned_session = None

    def _run_phases(self, result: SyncResult) -> None:
        ctx = self.ctx
        cfg = self.config
        layout = cfg.layout()

        ctx.transition(SyncState.VALIDATING)
        ctx.log(f"Sync ({self.mode.value}) of {layout.root}")
        layout.validate()
        mtime_map = self._load_mtime_map(layout)

        ctx.transition(SyncState.CONNECTING)
        store = self._connect()
        lock = DatabaseLock(store.session, SYNC_LOCK, timeout_seconds=cfg.lock_timeout, purpose=self.mode.value)
        lock.acquire()
        self._lock = lock

        ctx.transition(SyncState.SCANNING)
        run_started = self.clock()
        locations = layout.list_items()
        snapshot = store.get_index_snapshot()
        cursor = store.get_cursor()
        on_disk = {loc.item_id for loc in locations}
        ctx.log(
            f"Found {len(locations):,} items on disk, {len(snapshot):,} indexed, "
            f"last refresh {to_iso(cursor) if cursor else 'never'}"
        )

        ctx.transition(SyncState.DETECTING)
        loader = ItemLoader(cfg.sidecar_name, mtime_map, self.extractor, written_at=run_started)
        detections = self._classify(locations, snapshot, cursor, loader, mtime_map)
        normalized = {}
        for d in detections:
            result.ids[d.status.value].append(d.item_id)
            if d.status is ChangeStatus.ERRORED:
                result.errors.append(ItemError(d.item_id, "detect", d.error or "unknown error"))
            elif d.normalized is not None:
                normalized[d.item_id] = d.normalized
        if cfg.deletion_detection or self.mode is SyncMode.REBUILD:
            result.ids["deleted"] = sorted(set(snapshot) - on_disk)
        ctx.log(
            "Detected new={new} modified={modified} unchanged={unchanged} errored={errored} deleted={deleted}".format(
                **result.counts
            )
        )

        to_write = [d for d in detections if d.status in (ChangeStatus.NEW, ChangeStatus.MODIFIED)]
        applier = SyncApplier(
            store,
            batch_size=cfg.batch_size,
            relationship_batch_size=cfg.relationship_batch_size,
            log=ctx.log,
            report=ctx.report,
        )

        if to_write or result.ids["deleted"] or self.mode is SyncMode.REBUILD:
            ctx.transition(SyncState.DELETING)
            self._delete(store, applier, result)
            if to_write:
                ctx.transition(SyncState.UPSERTING)
                items = self._process(to_write, normalized, loader, result)
                outcome = applier.upsert(items)
                self._move_to_errored(result, outcome.errors)
                written = set(outcome.done)

                ctx.transition(SyncState.RELATING)
                outcome = applier.rebuild_relationships([it for it in items if it.item_id in written])
                result.errors.extend(outcome.errors)

        ctx.transition(SyncState.FINALIZING)
        result.item_count = applier.finalize(run_started)
        result.cursor = run_started
        ctx.log(f"Index holds {result.item_count:,} items; cursor set to {to_iso(run_started)}")
        ctx.transition(SyncState.COMPLETED)

    def _load_mtime_map(self, layout: LibraryLayout) -> dict:
        try:
            mtime_map = layout.load_mtime_map()
        except (OSError, ValueError) as exc:
            self.ctx.log(f"WARNING: ignoring {layout.mtime_map_path.name}: {exc}")
            return {}
        if mtime_map:
            self.ctx.log(f"Loaded {len(mtime_map):,} entries from {layout.mtime_map_path.name}")
        return mtime_map

    def _connect(self) -> IndexStore:
        session = self.session
        try:
            if session is None:
                url = self.config.database_url()
                self.ctx.log(f"Opening index {mask_db_url(url)}")
                ensure_sqlite_parent(url)
                engine = get_engine(url)
                init_db(engine)
                session = self._owned_session = get_sessionmaker(engine)()
            store = IndexStore(session)
            store.ping()
        except (SQLAlchemyError, OSError) as exc:
            raise IndexUnavailable(f"Index store unavailable: {exc}", cause=exc) from exc
        return store

    def _runner(self, phase: str) -> BoundedRunner:
        cfg = self.config
        return BoundedRunner(
            cfg.concurrency,
            chunk_size=cfg.chunk_size,
            timeout=cfg.item_timeout,
            on_chunk=lambda n, chunks, done, total, _results: self.ctx.report(phase, done, total),
        )

    def _classify(self, locations, snapshot, cursor, loader, mtime_map) -> list[Detection]:
        if self.mode is SyncMode.REBUILD:
            return [Detection(loc, ChangeStatus.NEW, "rebuild") for loc in locations]
        if self.mode is SyncMode.FORCE:
            return [
                Detection(loc, ChangeStatus.MODIFIED if loc.item_id in snapshot else ChangeStatus.NEW, "forced")
                for loc in locations
            ]

        detector = ChangeDetector(snapshot, cursor, loader, mtime_map, hash_comparison=self.config.hash_comparison)
        runner = self._runner("Detecting")
        detections = []
        for res in runner.run(locations, detector.detect):
            if res.ok:
                detections.append(res.value)
            else:
                detections.append(Detection(res.item, ChangeStatus.ERRORED, error=self._describe(res.error)))
        self.ctx.log(f"Detection peak concurrency {runner.peak_in_flight}/{runner.concurrency}")
        return detections

    def _process(self, to_write: list, normalized: dict, loader: ItemLoader, result: SyncResult) -> list:
        """Normalize every item to write, reusing rows built during detection."""
        pending = [d.location for d in to_write if d.item_id not in normalized]
        failed = []
        if pending:
            for res in self._runner("Processing").run(pending, loader.load):
                if res.ok:
                    normalized[res.item.item_id] = res.value
                else:
                    failed.append(ItemError(res.item.item_id, "normalize", self._describe(res.error)))
        self._move_to_errored(result, failed)
        return [normalized[d.item_id] for d in to_write if d.item_id in normalized]

    def _delete(self, store: IndexStore, applier: SyncApplier, result: SyncResult) -> None:
        if self.mode is SyncMode.REBUILD:
            self.ctx.log("Clearing index for full rebuild")
            try:
                store.clear_all()
            except SQLAlchemyError as exc:
                raise SyncFatalError(f"Could not clear index for rebuild: {exc}", cause=exc) from exc
            return
        if not result.ids["deleted"]:
            return
        outcome = applier.apply_deletions(result.ids["deleted"])
        result.errors.extend(outcome.errors)
        if outcome.errors:
            # Still indexed; they are retried on the next run.
            failed = outcome.failed_ids
            result.ids["deleted"] = [i for i in result.ids["deleted"] if i not in failed]
            result.ids["errored"].extend(sorted(failed))
        self.ctx.log(f"Deleted {len(outcome.done):,} items no longer on disk")

    @staticmethod
    def _move_to_errored(result: SyncResult, errors: list) -> None:
        if not errors:
            return
        result.errors.extend(errors)
        failed = {e.item_id for e in errors}
        for key in ("new", "modified"):
            result.ids[key] = [i for i in result.ids[key] if i not in failed]
        result.ids["errored"].extend(sorted(failed))

    @staticmethod
    def _describe(exc: Optional[BaseException]) -> str:
        if isinstance(exc, UnitTimeout):
            return f"timed out: {exc}"
        return f"{type(exc).__name__}: {exc}"
