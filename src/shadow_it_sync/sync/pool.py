"""
Batch / Concurrency Controller

- BoundedWorkerPool: bounded fan-out for provider lookups with a fixed
  inter-call delay
- run_in_batches: chunked database mutations with a delay between chunks;
  a failing chunk is abandoned and reported, the rest still run
"""

import asyncio
from dataclasses import dataclass, field
from typing import Awaitable, Callable, Iterable, List, Sequence, TypeVar

from src.utils.error_handling import PersistenceError
from src.utils.logging import logger

T = TypeVar("T")
R = TypeVar("R")


class BoundedWorkerPool:
    """
    Run coroutines over a list of items with at most `concurrency_limit`
    in flight. Each worker sleeps `call_delay` after its call before
    releasing its slot, so a limit of 1 gives sequential calls spaced by
    the delay.
    """

    def __init__(self, concurrency_limit: int = 1, call_delay: float = 0.0, name: str = "pool"):
        if concurrency_limit < 1:
            raise ValueError("concurrency_limit must be at least 1")
        if call_delay < 0:
            raise ValueError("call_delay cannot be negative")
        self.concurrency_limit = concurrency_limit
        self.call_delay = call_delay
        self.name = name
        self._semaphore = asyncio.Semaphore(concurrency_limit)
        self.in_flight = 0
        self.max_in_flight = 0

    async def run(self, func: Callable[[T], Awaitable[R]], item: T) -> R:
        async with self._semaphore:
            self.in_flight += 1
            self.max_in_flight = max(self.max_in_flight, self.in_flight)
            try:
                return await func(item)
            finally:
                self.in_flight -= 1
                if self.call_delay:
                    await asyncio.sleep(self.call_delay)

    async def map(self, func: Callable[[T], Awaitable[R]], items: Iterable[T]) -> List[R]:
        """Apply func to every item; results keep input order. First error propagates."""
        items = list(items)
        if not items:
            return []
        logger.debug(f"[{self.name}] dispatching {len(items)} calls (limit={self.concurrency_limit})")
        tasks = [asyncio.ensure_future(self.run(func, item)) for item in items]
        try:
            return list(await asyncio.gather(*tasks))
        except BaseException:
            for task in tasks:
                task.cancel()
            await asyncio.gather(*tasks, return_exceptions=True)
            raise


def chunked(items: Sequence[T], size: int) -> List[Sequence[T]]:
    if size < 1:
        raise ValueError("chunk size must be at least 1")
    return [items[i:i + size] for i in range(0, len(items), size)]


@dataclass
class BatchReport:
    operation: str
    processed: int = 0
    failed: int = 0
    errors: List[PersistenceError] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return not self.errors


async def run_in_batches(
    items: Sequence[T],
    processor: Callable[[Sequence[T]], Awaitable[None]],
    batch_size: int,
    delay: float = 0.0,
    operation: str = "batch",
) -> BatchReport:
    """
    Feed `items` to `processor` in chunks of `batch_size`.

    A PersistenceError abandons that chunk only; it is recorded in the
    report and processing continues. Any other exception propagates.
    """
    report = BatchReport(operation=operation)
    batches = chunked(list(items), batch_size)
    for index, batch in enumerate(batches, start=1):
        try:
            await processor(batch)
            report.processed += len(batch)
        except PersistenceError as e:
            e.add_context(batch_index=index, batch_count=len(batches))
            e.log()
            report.failed += len(batch)
            report.errors.append(e)
        if delay and index < len(batches):
            await asyncio.sleep(delay)
    if batches:
        logger.debug(f"{operation}: {report.processed} processed, {report.failed} failed in {len(batches)} batches")
    return report
