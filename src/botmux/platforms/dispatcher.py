"""Per-destination outbound queue with adaptive pacing.

Every outbound call to one destination goes through a single
:class:`ChannelDispatcher`, which runs them one at a time in FIFO order and
sleeps between calls. The sleep grows with the number of calls made inside
the platform's rate-limit window: an idle destination answers almost
immediately, a saturated one waits up to twice the steady-state interval.
"""

import asyncio
import logging
import time
from collections import deque
from dataclasses import dataclass
from typing import Any, Awaitable, Callable

logger = logging.getLogger(__name__)

# 대기 시간 하한 (초)
MIN_DELAY = 0.05

Call = Callable[[], Awaitable[Any]]


@dataclass(frozen=True)
class RateLimit:
    """At most ``max_calls`` calls per ``window_seconds`` for one destination."""

    max_calls: int
    window_seconds: float

    def __post_init__(self) -> None:
        if self.max_calls < 1 or self.window_seconds <= 0:
            raise ValueError("Rate limit needs max_calls >= 1 and a positive window")

    @property
    def interval(self) -> float:
        """Steady-state seconds between calls."""
        return self.window_seconds / self.max_calls


def _retrieve_exception(future: asyncio.Future) -> None:
    # failures are logged by the worker; don't warn again when nobody awaits
    if not future.cancelled():
        future.exception()


class ChannelDispatcher:
    def __init__(
        self,
        destination_id: str,
        rate_limit: RateLimit,
        *,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ) -> None:
        self.destination_id = destination_id
        self.rate_limit = rate_limit
        self.stopping = False
        self._clock = clock
        self._sleep = sleep
        self._queue: deque[tuple[Call, asyncio.Future]] = deque()
        self._history: deque[float] = deque(maxlen=rate_limit.max_calls)
        self._worker: asyncio.Task | None = None

    @property
    def pending(self) -> int:
        return len(self._queue)

    @property
    def busy(self) -> bool:
        return self._worker is not None and not self._worker.done()

    def submit(self, call: Call) -> asyncio.Future:
        """Queue ``call`` and return a future for its result."""
        future = asyncio.get_running_loop().create_future()
        future.add_done_callback(_retrieve_exception)
        if self.stopping:
            logger.warning("Channel %s is stopping, call dropped", self.destination_id)
            future.cancel()
            return future

        self._queue.append((call, future))
        if not self.busy:
            self._worker = asyncio.create_task(
                self._run(), name=f"channel-{self.destination_id}"
            )
        return future

    def compute_delay(self) -> float:
        """Seconds to wait after a call, given the recent call history."""
        cutoff = self._clock() - self.rate_limit.window_seconds
        while self._history and self._history[0] <= cutoff:
            self._history.popleft()

        n = len(self._history)
        delay = self.rate_limit.interval * (2 * n / self.rate_limit.max_calls)
        return max(MIN_DELAY, delay)

    def stop(self) -> None:
        """Stop after the in-flight call; queued calls are cancelled."""
        self.stopping = True
        if not self.busy:
            self._cancel_pending()

    async def drain(self) -> None:
        """Wait until the current worker has emptied the queue."""
        while self.busy:
            await asyncio.shield(self._worker)

    async def _run(self) -> None:
        while self._queue and not self.stopping:
            call, future = self._queue.popleft()
            if future.cancelled():
                continue

            try:
                result = await call()
            except Exception as exc:
                logger.exception("Outbound call to %s failed", self.destination_id)
                if not future.done():
                    future.set_exception(exc)
            else:
                if not future.done():
                    future.set_result(result)

            self._history.append(self._clock())
            await self._sleep(self.compute_delay())

        if self.stopping:
            self._cancel_pending()

    def _cancel_pending(self) -> None:
        while self._queue:
            _, future = self._queue.popleft()
            future.cancel()
