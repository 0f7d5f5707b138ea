"""
Bounded worker pool shared by the list, detail and gap stages.

Workers are plain loops pulling the next index from a shared cursor. Everything
runs on one event loop, so the cursor and the result slots need no locking: a
single logical writer per pool invocation.
"""
from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Awaitable, Callable, Dict, Generic, List, Optional, Sequence, TypeVar

from ..errors import CrawlCancelled, FetchTimeout

logger = logging.getLogger(__name__)

T = TypeVar("T")
U = TypeVar("U")


class CancelToken:
    """Run-scoped cooperative cancellation flag."""

    def __init__(self) -> None:
        self._event = asyncio.Event()

    def cancel(self) -> None:
        self._event.set()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    async def wait(self) -> None:
        await self._event.wait()


@dataclass
class PoolRun(Generic[U]):
    results: List[Optional[U]]
    errors: Dict[int, BaseException] = field(default_factory=dict)
    dispatched: int = 0
    peak_active: int = 0

    @property
    def undispatched(self) -> int:
        return len(self.results) - self.dispatched


async def run_pool(
    items: Sequence[T],
    worker: Callable[[T, CancelToken], Awaitable[U]],
    concurrency: int,
    cancel: CancelToken,
) -> PoolRun[U]:
    """
    Run ``worker`` over ``items`` with at most ``min(concurrency, len(items))``
    workers. A failing item is recorded in ``PoolRun.errors`` and does not stop
    the others. Once ``cancel`` is set no further item is dispatched.
    """
    total = len(items)
    run: PoolRun[U] = PoolRun(results=[None] * total)
    if total == 0:
        return run

    cursor = 0
    active = 0

    async def _worker() -> None:
        nonlocal cursor, active
        while cursor < total and not cancel.cancelled:
            index = cursor
            cursor += 1
            run.dispatched += 1
            active += 1
            run.peak_active = max(run.peak_active, active)
            try:
                run.results[index] = await worker(items[index], cancel)
            except Exception as exc:  # per-item failure; keep the pool moving
                run.errors[index] = exc
                logger.debug("Worker error on item %s: %r", index, exc)
            finally:
                active -= 1

    workers = [asyncio.create_task(_worker()) for _ in range(min(concurrency, total))]
    await asyncio.gather(*workers)
    return run


async def run_with_deadline(
    operation: Awaitable[U],
    timeout: float,
    cancel: CancelToken,
) -> U:
    """
    Race ``operation`` against a deadline and the cancel token.

    Raises FetchTimeout or CrawlCancelled when those win. The losing operation is
    cancelled and its result discarded.
    """
    op_task = asyncio.ensure_future(operation)
    cancel_task = asyncio.ensure_future(cancel.wait())
    try:
        done, _ = await asyncio.wait(
            {op_task, cancel_task}, timeout=timeout, return_when=asyncio.FIRST_COMPLETED
        )
        if op_task in done:
            return op_task.result()
        if cancel_task in done:
            raise CrawlCancelled("Aborted")
        raise FetchTimeout(f"Timeout after {timeout:g}s")
    finally:
        for task in (op_task, cancel_task):
            if not task.done():
                task.cancel()
        # Let cancelled tasks unwind so no stray exception is reported later.
        await asyncio.gather(op_task, cancel_task, return_exceptions=True)
