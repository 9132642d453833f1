"""Chunked, bounded-concurrency execution of async workers."""

import asyncio
import logging
from collections.abc import Awaitable, Callable, Sequence
from dataclasses import dataclass
from typing import Generic, TypeVar

logger = logging.getLogger(__name__)

T = TypeVar("T")
R = TypeVar("R")


@dataclass
class Outcome(Generic[T, R]):
    """Result of one worker invocation.

    Exactly one of value or error is meaningful; ok tells which.
    """

    item: T
    value: R | None = None
    error: BaseException | None = None

    @property
    def ok(self) -> bool:
        return self.error is None


class ConcurrencyController:
    """Runs a worker over items in chunks of at most `limit` at a time.

    Each chunk is awaited in full before the next starts. A worker's
    exception is captured in its Outcome and never cancels siblings.
    """

    def __init__(self, limit: int) -> None:
        if limit < 1:
            raise ValueError(f"Concurrency limit must be >= 1, got {limit}")
        self.limit = limit

    async def run(
        self,
        items: Sequence[T],
        worker: Callable[[T], Awaitable[R]],
        on_chunk_done: Callable[[list[Outcome[T, R]]], Awaitable[None]] | None = None,
    ) -> list[Outcome[T, R]]:
        """Invoke worker on every item with bounded parallelism.

        Args:
            items: Work items.
            worker: Async callable applied to each item.
            on_chunk_done: Optional hook awaited after each chunk with that
                chunk's outcomes. Exceptions from the hook propagate.

        Returns:
            Outcomes in input order.
        """
        outcomes: list[Outcome[T, R]] = []
        for start in range(0, len(items), self.limit):
            chunk = items[start:start + self.limit]
            results = await asyncio.gather(
                *(worker(item) for item in chunk),
                return_exceptions=True,
            )

            chunk_outcomes: list[Outcome[T, R]] = []
            for item, result in zip(chunk, results):
                if isinstance(result, asyncio.CancelledError):
                    raise result
                if isinstance(result, BaseException):
                    logger.warning("Worker failed for item %r: %s", item, result)
                    chunk_outcomes.append(Outcome(item=item, error=result))
                else:
                    chunk_outcomes.append(Outcome(item=item, value=result))

            outcomes.extend(chunk_outcomes)
            if on_chunk_done is not None:
                await on_chunk_done(chunk_outcomes)
        return outcomes

