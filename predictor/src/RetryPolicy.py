"""RetryPolicy: Bounded retry with a fixed backoff schedule.

Every upstream call (exchange REST, chain RPC) goes through one of these so
the attempt budget and delays are configured in one place.

.. code-block:: python

    >>> policy = RetryPolicy(max_attempts=3, delays=(0.2, 0.5, 1.0))
    >>> list(policy.schedule())
    [0.2, 0.5]
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import Awaitable, Callable, Iterator
from dataclasses import dataclass
from typing import TypeVar

logger = logging.getLogger(__name__)

T = TypeVar("T")


@dataclass(frozen=True)
class RetryPolicy:
    """Retry budget shared by all upstream calls.

    :ivar max_attempts: Total attempts including the first one.
    :ivar delays: Sleep before each retry; the last entry repeats if the
        schedule is shorter than ``max_attempts - 1``.
    :ivar retry_on: Exception types that count as transient.
    """

    max_attempts: int = 3
    delays: tuple[float, ...] = (0.2, 0.5, 1.0)
    retry_on: tuple[type[BaseException], ...] = (Exception,)

    def __post_init__(self) -> None:
        if self.max_attempts < 1:
            raise ValueError("max_attempts must be at least 1")
        if any(d < 0 for d in self.delays):
            raise ValueError("delays must be non-negative")

    def schedule(self) -> Iterator[float]:
        """Yield the delay before each retry (``max_attempts - 1`` values)."""
        for attempt in range(self.max_attempts - 1):
            if not self.delays:
                yield 0.0
            else:
                yield self.delays[min(attempt, len(self.delays) - 1)]

    def call(self, fn: Callable[[], T], *, what: str = "call") -> T:
        """Run a blocking callable under the policy.

        :param fn: Zero-argument callable.
        :param what: Label for log lines.
        :returns: The callable's result.
        :raises Exception: The last error once the budget is spent.
        """
        delays = list(self.schedule())
        for attempt in range(self.max_attempts):
            try:
                return fn()
            except self.retry_on as exc:
                if attempt == self.max_attempts - 1:
                    logger.warning(f"{what} failed after {self.max_attempts} attempts: {exc}")
                    raise
                logger.debug(
                    f"{what} failed (attempt {attempt + 1}/{self.max_attempts}): {exc}"
                )
                time.sleep(delays[attempt])
        raise AssertionError("unreachable")

    async def call_async(
        self, fn: Callable[[], Awaitable[T]], *, what: str = "call"
    ) -> T:
        """Async twin of :meth:`call`."""
        delays = list(self.schedule())
        for attempt in range(self.max_attempts):
            try:
                return await fn()
            except self.retry_on as exc:
                if attempt == self.max_attempts - 1:
                    logger.warning(f"{what} failed after {self.max_attempts} attempts: {exc}")
                    raise
                logger.debug(
                    f"{what} failed (attempt {attempt + 1}/{self.max_attempts}): {exc}"
                )
                await asyncio.sleep(delays[attempt])
        raise AssertionError("unreachable")
