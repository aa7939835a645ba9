"""Fixed-size batch execution on worker threads.

Every fleet-wide operation runs through ``run_in_batches``: the item list is
split into chunks of N, each chunk runs fully in parallel, and the next chunk
starts only after every item of the current one has finished (successfully
or not). This bounds simultaneous SSH sessions and HTTP polls regardless of
fleet size.
"""

from __future__ import annotations

import threading
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Optional, Sequence, TypeVar

from .log import log

T = TypeVar("T")

DEFAULT_BATCH_SIZE = 5


@dataclass
class BatchResult:
    """Outcome of one item: its return value or the exception it raised."""

    item: Any
    value: Any = None
    error: Optional[BaseException] = None

    @property
    def ok(self) -> bool:
        return self.error is None


def chunked(items: Sequence[T], size: int) -> List[List[T]]:
    size = max(1, int(size))
    return [list(items[i:i + size]) for i in range(0, len(items), size)]


def _capture(fn: Callable[[Any], Any], item: Any) -> BatchResult:
    try:
        return BatchResult(item=item, value=fn(item))
    except Exception as exc:
        return BatchResult(item=item, error=exc)


def _run_batch(batch: List[Any], fn: Callable[[Any], Any], name: str) -> List[BatchResult]:
    results: List[Optional[BatchResult]] = [None] * len(batch)
    claimed: Dict[int, bool] = {}
    claim_lock = threading.Lock()

    def task(index: int) -> None:
        with claim_lock:
            if claimed.get(index):
                return
            claimed[index] = True
        results[index] = _capture(fn, batch[index])

    try:
        with ThreadPoolExecutor(max_workers=len(batch), thread_name_prefix=name) as executor:
            for index in range(len(batch)):
                executor.submit(task, index)
    except RuntimeError as exc:
        log(f"[{name}] Cannot start worker threads ({exc}); continuing sequentially")

    # Executor exit waits for queued work, so only never-claimed items remain
    for index in range(len(batch)):
        task(index)
    return [r for r in results if r is not None]


def run_in_batches(
    items: Sequence[Any],
    fn: Callable[[Any], Any],
    batch_size: int = DEFAULT_BATCH_SIZE,
    stop_event: Optional[threading.Event] = None,
    name: str = "batch",
) -> List[BatchResult]:
    """Apply ``fn`` to every item, ``batch_size`` items at a time.

    Args:
        items: Work items (nodes)
        fn: Callable run once per item on a worker thread
        batch_size: Maximum number of items in flight
        stop_event: When set, no further batches are submitted; in-flight
            work is left to finish
        name: Thread name prefix and log tag

    Returns:
        One BatchResult per processed item, in submission order.
    """
    results: List[BatchResult] = []
    batches = chunked(list(items), batch_size)
    for index, batch in enumerate(batches):
        if stop_event is not None and stop_event.is_set():
            skipped = sum(len(b) for b in batches[index:])
            log(f"[{name}] Stop requested; {skipped} items not submitted")
            break
        results.extend(_run_batch(batch, fn, name))
    return results
