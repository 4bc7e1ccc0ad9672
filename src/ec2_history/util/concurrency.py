from __future__ import annotations

import threading
from concurrent.futures import FIRST_COMPLETED, Future, ThreadPoolExecutor, wait
from typing import Callable, Dict, Iterable, List, Optional, Sequence, TypeVar

T = TypeVar("T")
R = TypeVar("R")


def parallel_map_ordered(
    func: Callable[[T], R],
    items: Sequence[T] | Iterable[T],
    max_workers: int,
    *,
    cancel_event: Optional[threading.Event] = None,
    on_result: Optional[Callable[[R], None]] = None,
) -> List[R]:
    """
    Execute func over items in a thread pool and return results preserving the
    input order. Exceptions from workers are propagated.

    Uses a sliding window of futures so at most max_workers items are in flight.
    When cancel_event is set (or the caller is interrupted), no further items are
    submitted and queued futures are cancelled; running workers are expected to
    observe cancel_event and return early.
    """
    if max_workers < 1:
        max_workers = 1
    results: List[R] = []
    iterator = iter(items)
    inflight: Dict[Future[R], int] = {}
    pending: Dict[int, R] = {}
    next_index = 0
    submitted = 0

    def _cancelled() -> bool:
        return cancel_event is not None and cancel_event.is_set()

    def _submit_next() -> bool:
        nonlocal submitted
        if _cancelled():
            return False
        try:
            item = next(iterator)
        except StopIteration:
            return False
        inflight[executor.submit(func, item)] = submitted
        submitted += 1
        return True

    with ThreadPoolExecutor(max_workers=max_workers) as executor:
        try:
            for _ in range(max_workers):
                if not _submit_next():
                    break

            while inflight:
                done, _ = wait(inflight.keys(), return_when=FIRST_COMPLETED)
                for fut in done:
                    idx = inflight.pop(fut)
                    result = fut.result()
                    if on_result is not None:
                        on_result(result)
                    pending[idx] = result
                for _ in range(len(done)):
                    if not _submit_next():
                        break
                while next_index in pending:
                    results.append(pending.pop(next_index))
                    next_index += 1
        except BaseException:
            if cancel_event is not None:
                cancel_event.set()
            for fut in inflight:
                fut.cancel()
            raise

    return results
