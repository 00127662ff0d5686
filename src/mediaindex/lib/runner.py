"""Bounded execution of many independent units of work.

A run is split into sequential chunks. Each chunk is served by a fixed pool
of at most ``concurrency`` worker threads that pull the next index from a
shared cursor until the chunk is exhausted, so no per-unit futures pile up.
Results are written into a chunk-local slot list (one slot per unit, each
written by exactly one worker), which is dropped once the chunk has been
handed back.

The ceiling is held by a run-wide semaphore rather than by the pool size: a
unit abandoned by a stalled chunk keeps its permit until it really returns,
so later chunks cannot push the number of running units past ``concurrency``.
"""
from __future__ import annotations

import concurrent.futures
import threading
from dataclasses import dataclass
from typing import Callable, Generic, Optional, Sequence, TypeVar

T = TypeVar("T")
R = TypeVar("R")


@dataclass
class TaskResult(Generic[T, R]):
    index: int
    item: T
    value: Optional[R] = None
    error: Optional[BaseException] = None

    @property
    def ok(self) -> bool:
        return self.error is None


class UnitTimeout(TimeoutError):
    """Recorded for units that were still running when their chunk stalled."""


class BoundedRunner(Generic[T, R]):
    """Run ``work(item)`` for every item with at most ``concurrency`` in flight.

    Args:
        concurrency: worker ceiling (C)
        chunk_size: items per sequential chunk
        timeout: seconds a chunk may go without any unit completing before the
            remaining units are given up on and recorded as ``UnitTimeout``.
            None waits forever.
        on_chunk: called after each chunk with
            ``(chunk_number, total_chunks, done, total, chunk_results)``

    An exception raised by a unit is captured on its TaskResult; it never
    stops sibling units or the runner.
    """

    def __init__(
        self,
        concurrency: int,
        chunk_size: int = 2000,
        timeout: Optional[float] = None,
        on_chunk: Optional[Callable[[int, int, int, int, list], None]] = None,
    ):
        if concurrency < 1:
            raise ValueError("concurrency must be >= 1")
        if chunk_size < 1:
            raise ValueError("chunk_size must be >= 1")
        self.concurrency = concurrency
        self.chunk_size = chunk_size
        self.timeout = timeout
        self.on_chunk = on_chunk
        self._permits = threading.BoundedSemaphore(concurrency)
        self._gauge = threading.Lock()
        self.in_flight = 0
        self.peak_in_flight = 0

    def run(self, items: Sequence[T], work: Callable[[T], R]) -> list[TaskResult[T, R]]:
        total = len(items)
        total_chunks = (total + self.chunk_size - 1) // self.chunk_size
        results: list[TaskResult[T, R]] = []
        for n, start in enumerate(range(0, total, self.chunk_size), start=1):
            chunk = items[start:start + self.chunk_size]
            chunk_results = self._run_chunk(chunk, start, work)
            results.extend(chunk_results)
            if self.on_chunk is not None:
                self.on_chunk(n, total_chunks, start + len(chunk), total, chunk_results)
        return results

    def _run_chunk(self, chunk: Sequence[T], offset: int, work: Callable[[T], R]) -> list[TaskResult[T, R]]:
        slots: list[Optional[TaskResult[T, R]]] = [None] * len(chunk)
        cursor_lock = threading.Lock()
        cursor = [0]
        completed = [0]
        stop = threading.Event()

        def next_index() -> Optional[int]:
            with cursor_lock:
                if stop.is_set() or cursor[0] >= len(chunk):
                    return None
                idx = cursor[0]
                cursor[0] += 1
                return idx

        def worker() -> None:
            while True:
                if not self._claim_permit(stop):
                    return
                idx = next_index()
                if idx is None:
                    self._permits.release()
                    return
                item = chunk[idx]
                self._enter()
                try:
                    slots[idx] = TaskResult(offset + idx, item, value=work(item))
                except Exception as exc:
                    slots[idx] = TaskResult(offset + idx, item, error=exc)
                finally:
                    self._leave()
                    self._permits.release()
                    with cursor_lock:
                        completed[0] += 1

        workers = min(self.concurrency, len(chunk))
        executor = concurrent.futures.ThreadPoolExecutor(max_workers=workers, thread_name_prefix="mediaindex-worker")
        pending = {executor.submit(worker) for _ in range(workers)}
        stalled = False
        last_completed = 0
        try:
            while pending:
                done, pending = concurrent.futures.wait(pending, timeout=self.timeout)
                for fut in done:
                    # worker() never raises; surface anything that escaped anyway
                    fut.result()
                with cursor_lock:
                    now_completed = completed[0]
                if pending and not done and now_completed == last_completed:
                    stalled = True
                    break
                last_completed = now_completed
        finally:
            stop.set()
            executor.shutdown(wait=not stalled, cancel_futures=True)

        out: list[TaskResult[T, R]] = []
        for idx, slot in enumerate(slots):
            if slot is None:
                slot = TaskResult(offset + idx, chunk[idx], error=UnitTimeout(f"no result after {self.timeout}s"))
            out.append(slot)
        return out

    def _claim_permit(self, stop: threading.Event) -> bool:
        # Poll so a worker waiting behind an abandoned unit can notice its
        # chunk was given up on.
        while not self._permits.acquire(timeout=0.05):
            if stop.is_set():
                return False
        return True

    def _enter(self) -> None:
        with self._gauge:
            self.in_flight += 1
            if self.in_flight > self.peak_in_flight:
                self.peak_in_flight = self.in_flight

    def _leave(self) -> None:
        with self._gauge:
            self.in_flight -= 1
