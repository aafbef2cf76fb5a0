from __future__ import annotations

import os
import time
from concurrent.futures import (
    FIRST_COMPLETED,
    Executor,
    Future,
    ProcessPoolExecutor,
    ThreadPoolExecutor,
    wait,
)
from dataclasses import dataclass, field
from typing import Any, Callable, Hashable, Sequence

from .errors import ItemFailure


@dataclass
class DispatchResult:
    results: dict[Hashable, Any] = field(default_factory=dict)
    failures: list[ItemFailure] = field(default_factory=list)

    @property
    def n_ok(self) -> int:
        return len(self.results)

    @property
    def n_failed(self) -> int:
        return len(self.failures)

    def failed_keys(self) -> set[Hashable]:
        return {f.key for f in self.failures}


def resolve_worker_bound(requested: int | None = None, ceiling: int | None = None) -> int:
    """Number of concurrent jobs: the request (default all cores) capped by the core count."""
    available = max(1, os.cpu_count() or 1)
    bound = available if requested is None or requested <= 0 else int(requested)
    bound = min(bound, available)
    if ceiling is not None and ceiling > 0:
        bound = min(bound, int(ceiling))
    return max(1, bound)


def _failure(key: Hashable, exc: BaseException) -> ItemFailure:
    return ItemFailure(key=key, reason=f"worker_exception:{exc}", error_type=type(exc).__name__)


def _run_serial(
    items: Sequence[Any],
    keys: list[Hashable],
    job_fn: Callable[[Any], Any],
    progress: Callable[[int, int], None] | None,
) -> tuple[dict[Hashable, Any], dict[Hashable, ItemFailure]]:
    done: dict[Hashable, Any] = {}
    failed: dict[Hashable, ItemFailure] = {}
    for count, (key, item) in enumerate(zip(keys, items), start=1):
        try:
            done[key] = job_fn(item)
        except Exception as exc:
            failed[key] = _failure(key, exc)
        if progress is not None:
            progress(count, len(items))
    return done, failed


def _poll_interval(timeout_sec: float | None) -> float | None:
    if timeout_sec is None:
        return None
    return min(1.0, max(0.01, float(timeout_sec) / 10.0))


def _run_pool(
    executor: Executor,
    items: Sequence[Any],
    keys: list[Hashable],
    job_fn: Callable[[Any], Any],
    timeout_sec: float | None,
    progress: Callable[[int, int], None] | None,
) -> tuple[dict[Hashable, Any], dict[Hashable, ItemFailure]]:
    done: dict[Hashable, Any] = {}
    failed: dict[Hashable, ItemFailure] = {}
    fut_to_key: dict[Future, Hashable] = {
        executor.submit(job_fn, item): key for key, item in zip(keys, items)
    }
    pending = set(fut_to_key)
    # Each job's clock starts when a worker picks it up; queued jobs never expire.
    started: dict[Future, float] = {}
    poll = _poll_interval(timeout_sec)
    finished = 0

    def _tick() -> None:
        nonlocal finished
        finished += 1
        if progress is not None:
            progress(finished, len(items))

    while pending:
        ready, pending = wait(pending, timeout=poll, return_when=FIRST_COMPLETED)
        for fut in ready:
            key = fut_to_key[fut]
            try:
                done[key] = fut.result()
            except Exception as exc:
                failed[key] = _failure(key, exc)
            _tick()
        if timeout_sec is None:
            continue
        now = time.monotonic()
        expired = []
        for fut in pending:
            if fut.running():
                began = started.setdefault(fut, now)
                if now - began > timeout_sec:
                    expired.append(fut)
        for fut in expired:
            # A running thread cannot be interrupted; stop waiting on it.
            fut.cancel()
            pending.discard(fut)
            key = fut_to_key[fut]
            failed[key] = ItemFailure(key=key, reason="timeout", error_type="TimeoutError")
            _tick()
    return done, failed


def dispatch(
    items: Sequence[Any],
    job_fn: Callable[[Any], Any],
    *,
    worker_bound: int,
    key: Callable[[Any], Hashable] | None = None,
    timeout_sec: float | None = None,
    backend: str = "thread",
    progress: Callable[[int, int], None] | None = None,
) -> DispatchResult:
    """Run ``job_fn`` over ``items`` with at most ``worker_bound`` concurrent jobs.

    Returns once every job has finished, failed or timed out. Results and
    failures are keyed by ``key(item)`` (the item index by default) and listed
    in input order regardless of completion order. A raising job becomes an
    ``ItemFailure`` and never stops its siblings; nothing is retried.
    """
    if worker_bound < 1:
        raise ValueError("worker_bound must be >= 1.")
    if backend not in {"thread", "process"}:
        raise ValueError(f"Unknown dispatch backend: {backend}")

    keys = [key(item) if key is not None else idx for idx, item in enumerate(items)]
    if len(set(keys)) != len(keys):
        raise ValueError("Dispatch keys must be unique.")
    if not items:
        return DispatchResult()

    jobs = min(worker_bound, len(items))
    if jobs == 1 and timeout_sec is None:
        done, failed = _run_serial(items, keys, job_fn, progress)
    else:
        pool_cls = ThreadPoolExecutor if backend == "thread" else ProcessPoolExecutor
        try:
            executor = pool_cls(max_workers=jobs)
        except (PermissionError, OSError):
            # Restricted environments may forbid process pools; run serially.
            done, failed = _run_serial(items, keys, job_fn, progress)
        else:
            try:
                done, failed = _run_pool(executor, items, keys, job_fn, timeout_sec, progress)
            finally:
                executor.shutdown(wait=False, cancel_futures=True)

    out = DispatchResult()
    for k in keys:
        if k in done:
            out.results[k] = done[k]
        else:
            out.failures.append(failed[k])
    return out
