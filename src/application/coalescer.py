import asyncio
import itertools
import logging
import time
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Dict, List, TypeVar

from src.domain.cache_keys import CacheKey

logger = logging.getLogger(__name__)

T = TypeVar("T")

REQUEST_TIMEOUT = 10.0  # Seconds before an unresolved in-flight request stops being shared


@dataclass
class _InFlight:
    task: "asyncio.Future[Any]"
    started_at: float
    request_id: str
    reused: bool = False


class RequestCoalescer:
    """
    Shares one in-flight producer call between every concurrent caller of the same key.

    The shared task is shielded from its callers: a caller that gives up (is cancelled)
    does not cancel the fetch, which still completes for whoever awaits it next.
    Tracking entries older than `timeout` are dropped even if the task never finished,
    so a wedged fetch cannot block its key forever.
    """

    def __init__(self, timeout: float = REQUEST_TIMEOUT, clock: Callable[[], float] = time.monotonic):
        self.timeout = timeout
        self._clock = clock
        self._in_flight: Dict[CacheKey, _InFlight] = {}
        self._counter = itertools.count(1)

    def _cleanup_stale(self) -> None:
        now = self._clock()
        for key, entry in list(self._in_flight.items()):
            if now - entry.started_at > self.timeout:
                logger.warning(f"Dropping stale request {entry.request_id} for {key}.")
                del self._in_flight[key]

    def in_flight(self) -> List[CacheKey]:
        self._cleanup_stale()
        return list(self._in_flight.keys())

    async def run(self, key: CacheKey, producer: Callable[[], Awaitable[T]]) -> T:
        self._cleanup_stale()

        entry = self._in_flight.get(key)
        if entry is not None:
            if not entry.reused:
                logger.debug(f"Reusing request {entry.request_id} for {key}.")
                entry.reused = True
            return await asyncio.shield(entry.task)

        request_id = f"req_{next(self._counter)}"
        task = asyncio.ensure_future(producer())
        entry = _InFlight(task=task, started_at=self._clock(), request_id=request_id)
        self._in_flight[key] = entry
        task.add_done_callback(lambda finished: self._release(key, entry))
        logger.debug(f"Started request {request_id} for {key}.")

        return await asyncio.shield(task)

    def _release(self, key: CacheKey, entry: _InFlight) -> None:
        # A newer request may already own the key if this one went stale.
        if self._in_flight.get(key) is entry:
            del self._in_flight[key]
        if not entry.task.cancelled() and entry.task.exception() is not None:
            logger.debug(f"Request {entry.request_id} for {key} failed: {entry.task.exception()!r}")
