from __future__ import annotations

import concurrent.futures
import logging
from dataclasses import dataclass
from typing import Callable, Generic, Iterable, List, Optional, TypeVar

logger = logging.getLogger(__name__)

T = TypeVar("T")
R = TypeVar("R")

DEFAULT_CONCURRENCY = 3


@dataclass
class TaskOutcome(Generic[T, R]):
    item: T
    value: Optional[R] = None
    error: Optional[BaseException] = None

    @property
    def ok(self) -> bool:
        return self.error is None


class ConcurrencyLimiter:
    """Runs at most ``limit`` tasks at once across every caller.

    Work is queued on one shared executor, so waiting tasks start in submission
    order as soon as any slot frees up.
    """

    def __init__(self, limit: int = DEFAULT_CONCURRENCY, *, name: str = "streamgrab-limiter") -> None:
        if limit < 1:
            raise ValueError("limit must be at least 1")
        self.limit = limit
        self._executor = concurrent.futures.ThreadPoolExecutor(max_workers=limit, thread_name_prefix=name)

    def submit(self, task: Callable[[], R]) -> "concurrent.futures.Future[R]":
        return self._executor.submit(task)

    def run(self, task: Callable[[], R]) -> R:
        return self.submit(task).result()

    def settle(self, func: Callable[[T], R], items: Iterable[T]) -> List[TaskOutcome[T, R]]:
        """Apply func to every item under the limit; one failure never stops the rest.

        Outcomes come back in the order of ``items``.
        """
        pending = [(item, self._executor.submit(func, item)) for item in items]
        outcomes: List[TaskOutcome[T, R]] = []
        for item, future in pending:
            try:
                outcomes.append(TaskOutcome(item=item, value=future.result()))
            except Exception as exc:
                logger.debug("Limited task failed for %r: %s", item, exc)
                outcomes.append(TaskOutcome(item=item, error=exc))
        return outcomes

    def shutdown(self, wait: bool = True) -> None:
        self._executor.shutdown(wait=wait)
