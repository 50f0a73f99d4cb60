"""Coalescing of identical concurrent requests.

Two entry points share one pair of maps (in-flight work and a short-lived
result cache):

- ``deduplicate`` for awaitable operations: concurrent callers with the same
  key await a single task.
- ``share_stream`` for streamed responses: the first caller starts a
  ``SharedStream`` and every duplicate subscribes to the same buffered events,
  replaying what was already produced and then following live.
"""

from __future__ import annotations

import asyncio
import hashlib
import json
import logging
import time
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any, Generic, TypeVar

from gateway.core.async_utils import cancel_and_wait
from gateway.observability.metrics import record_dedup_hit

if TYPE_CHECKING:
    from collections.abc import AsyncIterator, Awaitable, Callable, Sequence

    from gateway.models.llm.llm_models import ChatMessage

logger = logging.getLogger(__name__)

T = TypeVar("T")
E = TypeVar("E")


def build_dedup_key(
    caller_id: str,
    messages: Sequence[ChatMessage],
    image_ids: Sequence[str] = (),
    idempotency_key: str | None = None,
) -> str:
    """Stable SHA-256 key for a request.

    A caller-supplied idempotency key replaces the content hash so a client
    can retry after editing nothing but transport details.
    """
    if idempotency_key:
        material: Any = {"caller": caller_id, "idempotency_key": idempotency_key}
    else:
        material = {
            "caller": caller_id,
            "messages": [[m.role, m.content] for m in messages],
            "images": list(image_ids),
        }
    encoded = json.dumps(material, separators=(",", ":"), ensure_ascii=False)
    return hashlib.sha256(encoded.encode("utf-8")).hexdigest()


class SharedStreamCancelledError(RuntimeError):
    """Producer of a shared stream was cancelled while subscribers remained."""


class SharedStream(Generic[E]):
    """Replayable event buffer fed by one producer task.

    Subscribers each get their own cursor into the buffer. When the last
    subscriber leaves before the producer has finished, the producer is
    cancelled; nobody is left to receive its output.
    """

    def __init__(self, source: AsyncIterator[E], *, name: str = "shared_stream") -> None:
        self._source = source
        self._name = name
        self._events: list[E] = []
        self._done = False
        self._error: BaseException | None = None
        self._wakeup = asyncio.Event()
        self._subscribers = 0
        self._abandoned = False
        self._task: asyncio.Task[None] | None = None

    @property
    def task(self) -> asyncio.Task[None]:
        if self._task is None:
            msg = "SharedStream has not been started"
            raise RuntimeError(msg)
        return self._task

    @property
    def done(self) -> bool:
        return self._done

    @property
    def abandoned(self) -> bool:
        return self._abandoned

    @property
    def events(self) -> list[E]:
        return list(self._events)

    def start(self) -> asyncio.Task[None]:
        if self._task is None:
            self._task = asyncio.create_task(self._pump(), name=self._name)
            self._task.add_done_callback(self._on_finished)
        return self._task

    async def subscribe(self) -> AsyncIterator[E]:
        """Yield every event from the beginning, then follow the producer."""
        self._subscribers += 1
        cursor = 0
        try:
            while True:
                if cursor < len(self._events):
                    event = self._events[cursor]
                    cursor += 1
                    yield event
                    continue
                if self._done:
                    if self._error is not None:
                        raise self._error
                    return
                await self._wakeup.wait()
        finally:
            self._subscribers -= 1
            if self._subscribers == 0 and not self._done and self._task is not None:
                self._abandoned = True
                self._task.cancel()

    async def _pump(self) -> None:
        try:
            async for event in self._source:
                self._events.append(event)
                self._notify()
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            self._error = exc

    def _on_finished(self, task: asyncio.Task[None]) -> None:
        if task.cancelled() and self._error is None:
            self._error = SharedStreamCancelledError(f"{self._name} was cancelled")
        self._done = True
        self._notify()

    def _notify(self) -> None:
        # Waiters hold the old event; swap in a fresh one for the next round
        self._wakeup.set()
        self._wakeup = asyncio.Event()


@dataclass
class PendingRequest:
    key: str
    task: asyncio.Task[Any]
    started_at: float
    handle: Any = None


@dataclass
class CacheEntry:
    value: Any
    expires_at: float
    stored_at: float = field(default=0.0)


class RequestDeduplicator:
    """Process-wide in-flight map plus TTL cache keyed by request hash."""

    def __init__(
        self,
        *,
        ttl_seconds: float = 5.0,
        max_request_duration: float = 200.0,
        enabled: bool = True,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._ttl = ttl_seconds
        self._max_request_duration = max_request_duration
        self._enabled = enabled
        self._clock = clock
        self._pending: dict[str, PendingRequest] = {}
        self._cache: dict[str, CacheEntry] = {}

    @property
    def enabled(self) -> bool:
        return self._enabled

    @property
    def in_flight_count(self) -> int:
        return len(self._pending)

    @property
    def cache_size(self) -> int:
        return len(self._cache)

    def is_in_flight(self, key: str) -> bool:
        return key in self._pending

    async def deduplicate(self, key: str, operation: Callable[[], Awaitable[T]]) -> T:
        """Run ``operation`` at most once for concurrent callers with ``key``.

        A waiter that is cancelled does not cancel the shared task.
        """
        if not self._enabled:
            return await operation()

        cached = self._get_cached(key)
        if cached is not None:
            record_dedup_hit("cache")
            logger.debug("dedup_cache_hit", extra={"dedup_key": key[:16]})
            return cached.value

        pending = self._pending.get(key)
        if pending is None:
            task: asyncio.Task[T] = asyncio.ensure_future(operation())
            pending = self._register(key, task, handle=task, cache_result=True)
        else:
            record_dedup_hit("in_flight")
            logger.debug("dedup_in_flight_hit", extra={"dedup_key": key[:16]})

        return await asyncio.shield(pending.task)

    def share_stream(
        self,
        key: str,
        factory: Callable[[], AsyncIterator[E]],
        *,
        cacheable: Callable[[SharedStream[E]], bool] | None = None,
    ) -> tuple[SharedStream[E], bool]:
        """Return the stream for ``key``, starting it if needed.

        Returns:
            The shared stream and whether this call joined existing work.
        """
        if self._enabled:
            cached = self._get_cached(key)
            if cached is not None:
                record_dedup_hit("cache")
                logger.debug("dedup_cache_hit", extra={"dedup_key": key[:16]})
                return cached.value, True

            pending = self._pending.get(key)
            if pending is not None and not pending.handle.abandoned:
                record_dedup_hit("in_flight")
                logger.debug("dedup_in_flight_hit", extra={"dedup_key": key[:16]})
                return pending.handle, True

        stream: SharedStream[E] = SharedStream(factory(), name=f"shared_stream:{key[:12]}")
        task = stream.start()
        if self._enabled:
            self._register(key, task, handle=stream, cache_result=True, cacheable=cacheable)
        return stream, False

    def sweep(self) -> tuple[int, int]:
        """Drop expired cache entries and give up on stale in-flight work.

        Returns:
            Number of (stale in-flight, expired cache) entries removed
        """
        now = self._clock()
        expired = [key for key, entry in self._cache.items() if entry.expires_at <= now]
        for key in expired:
            del self._cache[key]

        stale = [
            key
            for key, pending in self._pending.items()
            if now - pending.started_at > self._max_request_duration
        ]
        for key in stale:
            pending = self._pending.pop(key)
            pending.task.cancel()
            logger.warning(
                "dedup_stale_request_evicted",
                extra={"dedup_key": key[:16], "age_sec": round(now - pending.started_at, 1)},
            )

        if expired or stale:
            logger.debug(
                "dedup_sweep", extra={"expired_cache": len(expired), "stale_pending": len(stale)}
            )
        return len(stale), len(expired)

    async def aclose(self) -> None:
        pending = list(self._pending.values())
        self._pending.clear()
        self._cache.clear()
        for entry in pending:
            await cancel_and_wait(entry.task)

    def _get_cached(self, key: str) -> CacheEntry | None:
        entry = self._cache.get(key)
        if entry is None:
            return None
        if entry.expires_at <= self._clock():
            del self._cache[key]
            return None
        return entry

    def _register(
        self,
        key: str,
        task: asyncio.Task[Any],
        *,
        handle: Any,
        cache_result: bool,
        cacheable: Callable[[Any], bool] | None = None,
    ) -> PendingRequest:
        pending = PendingRequest(key=key, task=task, started_at=self._clock(), handle=handle)
        self._pending[key] = pending

        def _on_done(done: asyncio.Task[Any]) -> None:
            if self._pending.get(key) is pending:
                del self._pending[key]
            if not cache_result or done.cancelled() or done.exception() is not None:
                return
            value = done.result() if handle is done else handle
            if cacheable is not None and not cacheable(value):
                return
            now = self._clock()
            self._cache[key] = CacheEntry(value=value, expires_at=now + self._ttl, stored_at=now)

        task.add_done_callback(_on_done)
        return pending
