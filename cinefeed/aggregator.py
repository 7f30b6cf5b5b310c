from __future__ import annotations

import logging
import time
from concurrent.futures import Future, ThreadPoolExecutor
from concurrent.futures import TimeoutError as FuturesTimeout
from concurrent.futures import wait
from dataclasses import dataclass
from typing import Any, Callable, List, Optional, Sequence

logger = logging.getLogger(__name__)


class Deadline:
    """A point in time after which waiting stops.

    A child deadline never outlives its parent."""

    def __init__(
        self,
        seconds: float,
        parent: Optional["Deadline"] = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._clock = clock
        at = clock() + max(0.0, seconds)
        if parent is not None:
            at = min(at, parent.at)
        self.at = at

    def remaining(self) -> float:
        return max(0.0, self.at - self._clock())

    @property
    def expired(self) -> bool:
        return self.remaining() <= 0.0

    def child(self, seconds: float) -> "Deadline":
        return Deadline(seconds, parent=self, clock=self._clock)


@dataclass(frozen=True)
class SubTask:
    name: str
    fn: Callable[[], Any]
    fallback: Any = None


class ConcurrentAggregator:
    """Fans sub-tasks out over a thread pool and joins them in input order.

    Every sub-task owns the result slot matching its input index. A slot
    whose task raises or misses its deadline resolves to the task's
    fallback; the failure is logged and never reaches the caller.

    Timed-out work cannot be interrupted and keeps running in its worker
    thread; its result is discarded.
    """

    def __init__(self, max_workers: int = 32, inner_workers: Optional[int] = None) -> None:
        self._executor = ThreadPoolExecutor(max_workers=max_workers, thread_name_prefix="cinefeed-agg")
        # nested races get their own pool so a saturated outer pool cannot starve them
        self._inner = ThreadPoolExecutor(
            max_workers=inner_workers or max_workers, thread_name_prefix="cinefeed-inner"
        )

    def run(
        self,
        subtasks: Sequence[SubTask],
        per_task_timeout: Optional[float] = None,
        deadline: Optional[Deadline] = None,
    ) -> List[Any]:
        """Run every sub-task concurrently and return results in input order."""
        bounds: List[Optional[Deadline]] = []
        futures: List[Future] = []
        for task in subtasks:
            bounds.append(_bound(per_task_timeout, deadline))
            futures.append(self._executor.submit(task.fn))

        return [
            _collect(task.name, fut, bound, task.fallback)
            for task, fut, bound in zip(subtasks, futures, bounds)
        ]

    def race(
        self,
        calls: Sequence[Callable[[], Any]],
        timeout: Optional[float],
        fallbacks: Sequence[Any],
        deadline: Optional[Deadline] = None,
        name: str = "race",
    ) -> List[Any]:
        """Start all calls and wait for the first of (all done) or (timeout).

        Calls still running at the timeout, or that raised, resolve to the
        fallback at the same index."""
        if len(calls) != len(fallbacks):
            raise ValueError("calls and fallbacks must have the same length")
        bound = _bound(timeout, deadline)
        futures = [self._inner.submit(call) for call in calls]
        wait(futures, timeout=None if bound is None else bound.remaining())
        results = []
        for idx, (fut, fallback) in enumerate(zip(futures, fallbacks)):
            results.append(_collect(f"{name}[{idx}]", fut, Deadline(0.0), fallback))
        return results

    def close(self) -> None:
        self._executor.shutdown(wait=False, cancel_futures=True)
        self._inner.shutdown(wait=False, cancel_futures=True)

    def __enter__(self) -> "ConcurrentAggregator":
        return self

    def __exit__(self, *exc_info: Any) -> None:
        self.close()


def _bound(timeout: Optional[float], parent: Optional[Deadline]) -> Optional[Deadline]:
    if timeout is None:
        return parent
    if parent is None:
        return Deadline(timeout)
    return parent.child(timeout)


def _collect(name: str, fut: Future, bound: Optional[Deadline], fallback: Any) -> Any:
    try:
        return fut.result(timeout=None if bound is None else bound.remaining())
    except FuturesTimeout:
        fut.cancel()
        logger.warning("Sub-task timed out, using fallback: task=%s", name)
        return fallback
    except Exception as exc:  # noqa: BLE001
        logger.warning("Sub-task failed, using fallback: task=%s error=%r", name, exc)
        return fallback
