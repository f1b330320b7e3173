"""
Outbound request throttle, one per upstream provider.

Work items queue FIFO and are dispatched one at a time by a single worker
task; after each call completes the worker sleeps ``min_interval`` before
dispatching the next, so dispatches are always at least ``min_interval``
apart no matter how many coroutines are waiting. Provider clients are
blocking (googlemaps, requests), so calls run on a shared thread pool.
"""

import asyncio
import concurrent.futures
import functools
import logging
import time
from collections import deque
from typing import Any, Awaitable, Callable, Deque, List, Optional, TypeVar

from .errors import ProviderError

logger = logging.getLogger(__name__)

T = TypeVar('T')


class _WorkItem:
    __slots__ = ('call', 'future', 'dispatched', 'enqueued_at')

    def __init__(self, call: Callable[[], Any], future: 'asyncio.Future', enqueued_at: float):
        self.call = call
        self.future = future
        self.dispatched = False
        self.enqueued_at = enqueued_at

    def cancel(self) -> bool:
        """Withdraw the item if it has not been dispatched yet."""
        if self.dispatched:
            return False
        self.future.cancel()
        return True


class OutboundThrottle:
    """FIFO gate enforcing a minimum spacing between calls to one provider.

    Must be used from a single event loop (the engine's background loop).
    """

    def __init__(
        self,
        name: str,
        min_interval: float = 0.5,
        call_timeout: Optional[float] = 10.0,
        executor: Optional[concurrent.futures.Executor] = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.name = name
        self.min_interval = max(0.0, min_interval)
        self.call_timeout = call_timeout
        self._executor = executor
        self._clock = clock
        self._queue: Deque[_WorkItem] = deque()
        self._worker: Optional['asyncio.Task'] = None
        self._last_completed: Optional[float] = None
        self.dispatch_times: Deque[float] = deque(maxlen=256)

    @property
    def pending(self) -> int:
        return sum(1 for item in self._queue if not item.future.done())

    def enqueue(self, fn: Callable[..., T], *args: Any, **kwargs: Any) -> _WorkItem:
        loop = asyncio.get_running_loop()
        item = _WorkItem(functools.partial(fn, *args, **kwargs), loop.create_future(), self._clock())
        self._queue.append(item)
        if self._worker is None or self._worker.done():
            self._worker = loop.create_task(self._drain())
        return item

    async def submit(self, fn: Callable[..., T], *args: Any, **kwargs: Any) -> T:
        """Queue ``fn(*args, **kwargs)`` and wait for its result.

        Cancelling the caller before dispatch removes the item from the queue.
        After dispatch the call still runs to completion on the worker, but the
        cancelled caller gets its ``CancelledError``.
        """
        return await self._wait(self.enqueue(fn, *args, **kwargs), detached=False)

    async def submit_detached(self, fn: Callable[..., T], *args: Any, **kwargs: Any) -> T:
        """Like ``submit``, except that a caller cancelled after dispatch waits
        for the call and returns its result.

        Used by cache suppliers, so that work already sent upstream still
        lands in the cache when every requester has gone away.
        """
        return await self._wait(self.enqueue(fn, *args, **kwargs), detached=True)

    async def _wait(self, item: _WorkItem, detached: bool) -> Any:
        try:
            return await asyncio.shield(item.future)
        except asyncio.CancelledError:
            if item.cancel():
                logger.debug(f"[{self.name}] withdrew queued call before dispatch")
                raise
            if not detached:
                raise
            return await item.future

    async def _drain(self) -> None:
        loop = asyncio.get_running_loop()
        while self._queue:
            item = self._queue.popleft()
            if item.future.done():
                continue
            if self._last_completed is not None:
                # The loop may fire timers up to one clock tick early
                while True:
                    wait = self._last_completed + self.min_interval - self._clock()
                    if wait <= 0:
                        break
                    await asyncio.sleep(wait)
                if item.future.done():
                    continue

            item.dispatched = True
            self.dispatch_times.append(self._clock())
            try:
                call = loop.run_in_executor(self._executor, item.call)
                if self.call_timeout:
                    result = await asyncio.wait_for(call, self.call_timeout)
                else:
                    result = await call
            except asyncio.TimeoutError:
                logger.warning(f"[{self.name}] call exceeded {self.call_timeout}s")
                self._settle(item, exc=ProviderError(
                    f"{self.name} call timed out after {self.call_timeout}s",
                    provider=self.name, timeout=True))
            except Exception as e:
                self._settle(item, exc=e)
            else:
                self._settle(item, result=result)
            finally:
                self._last_completed = self._clock()

    @staticmethod
    def _settle(item: _WorkItem, result: Any = None, exc: Optional[BaseException] = None) -> None:
        if item.future.done():
            return
        if exc is not None:
            item.future.set_exception(exc)
            # Nobody may be waiting any more; mark the exception as seen
            item.future.add_done_callback(lambda f: f.exception())
        else:
            item.future.set_result(result)


async def call_with_retry(
    fn: Callable[[], Awaitable[T]],
    attempts: int = 2,
    backoff: float = 0.5,
    label: str = 'provider call',
) -> T:
    """Await ``fn()`` and retry retryable ``ProviderError``s with exponential backoff."""
    errors: List[ProviderError] = []
    for attempt in range(max(1, attempts)):
        try:
            return await fn()
        except ProviderError as e:
            errors.append(e)
            if not e.retryable or attempt + 1 >= attempts:
                raise
            delay = backoff * (2 ** attempt)
            logger.info(f"{label} failed ({e.message}); retrying in {delay:.2f}s")
            await asyncio.sleep(delay)
    raise errors[-1]
