"""Wall-clock budgets for long-latency capability calls."""

from __future__ import annotations

import logging
import time
from collections.abc import Callable
from concurrent.futures import ThreadPoolExecutor
from typing import TypeVar

from workflow_agent_orchestrator.core.errors import ExecutionTimeout

logger = logging.getLogger(__name__)

T = TypeVar("T")


class Deadline:
    """A fixed point in time after which calls are no longer started or awaited.

    ``seconds=None`` means unbounded.
    """

    def __init__(self, seconds: float | None, *, clock: Callable[[], float] = time.monotonic) -> None:
        if seconds is not None and seconds <= 0:
            raise ValueError("seconds must be positive")
        self._clock = clock
        self._seconds = seconds
        self._expires_at = None if seconds is None else clock() + seconds

    @staticmethod
    def earliest(first: Deadline, *others: Deadline) -> Deadline:
        """Whichever deadline leaves the least time; unbounded ones never win."""
        bounded = [d for d in (first, *others) if d.remaining() is not None]
        if not bounded:
            return first
        return min(bounded, key=lambda d: d.remaining() or 0.0)

    @property
    def seconds(self) -> float | None:
        return self._seconds

    def remaining(self) -> float | None:
        if self._expires_at is None:
            return None
        return max(0.0, self._expires_at - self._clock())

    def expired(self) -> bool:
        remaining = self.remaining()
        return remaining is not None and remaining <= 0

    def check(self, what: str) -> None:
        """Raise :class:`ExecutionTimeout` if the budget is spent."""
        if self.expired():
            raise ExecutionTimeout(what, self._seconds or 0.0)

    def run(self, what: str, func: Callable[..., T], *args: object, **kwargs: object) -> T:
        """Call ``func`` and wait at most the remaining budget for it.

        The call runs on a worker thread. On timeout the worker is abandoned
        (Python threads can't be killed) and :class:`ExecutionTimeout` is raised;
        whatever it eventually returns is discarded.
        """
        remaining = self.remaining()
        if remaining is None:
            return func(*args, **kwargs)
        if remaining <= 0:
            raise ExecutionTimeout(what, self._seconds or 0.0)

        pool = ThreadPoolExecutor(max_workers=1, thread_name_prefix="capability")
        future = pool.submit(func, *args, **kwargs)
        try:
            return future.result(timeout=remaining)
        except TimeoutError as e:
            if future.done() and future.exception() is e:
                # The call itself raised a TimeoutError; not ours to translate.
                raise
            future.cancel()
            logger.warning(
                "Capability call exceeded deadline",
                extra={"capability": what, "budget_seconds": self._seconds},
            )
            raise ExecutionTimeout(what, self._seconds or 0.0) from e
        finally:
            pool.shutdown(wait=False, cancel_futures=True)
