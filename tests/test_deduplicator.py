"""Tests for request coalescing and shared streams."""

from __future__ import annotations

import asyncio
from collections.abc import AsyncIterator

import pytest
from conftest import FakeClock

from gateway.models.llm.llm_models import ChatMessage
from gateway.services.deduplicator import (
    RequestDeduplicator,
    SharedStream,
    SharedStreamCancelledError,
    build_dedup_key,
)


async def _collect(iterator: AsyncIterator[str]) -> list[str]:
    return [item async for item in iterator]


async def _gated(gate: asyncio.Event, *items: str) -> AsyncIterator[str]:
    for item in items:
        await gate.wait()
        yield item


class TestBuildDedupKey:
    def test_same_content_same_key(self) -> None:
        messages = [ChatMessage(role="user", content="hi")]
        key = build_dedup_key("caller-1", messages)
        assert key == build_dedup_key("caller-1", list(messages))

    def test_key_depends_on_caller_messages_and_images(self) -> None:
        messages = [ChatMessage(role="user", content="hi")]
        base = build_dedup_key("caller-1", messages)

        assert build_dedup_key("caller-2", messages) != base
        assert build_dedup_key("caller-1", [ChatMessage(role="user", content="hey")]) != base
        assert build_dedup_key("caller-1", messages, image_ids=["img-1"]) != base

    def test_idempotency_key_replaces_content_hash(self) -> None:
        first = build_dedup_key(
            "caller-1", [ChatMessage(role="user", content="a")], idempotency_key="k1"
        )
        second = build_dedup_key(
            "caller-1", [ChatMessage(role="user", content="b")], idempotency_key="k1"
        )
        assert first == second
        assert len(first) == 64


class TestDeduplicate:
    @pytest.mark.asyncio
    async def test_concurrent_callers_share_one_execution(self) -> None:
        dedup = RequestDeduplicator()
        calls = 0
        gate = asyncio.Event()

        async def operation() -> str:
            nonlocal calls
            calls += 1
            await gate.wait()
            return "result"

        waiters = [asyncio.create_task(dedup.deduplicate("key", operation)) for _ in range(5)]
        await asyncio.sleep(0)
        assert dedup.is_in_flight("key")
        gate.set()

        results = await asyncio.gather(*waiters)

        assert results == ["result"] * 5
        assert calls == 1
        assert dedup.in_flight_count == 0

    @pytest.mark.asyncio
    async def test_result_is_cached_until_ttl(self, clock: FakeClock) -> None:
        dedup = RequestDeduplicator(ttl_seconds=5.0, clock=clock)
        calls = 0

        async def operation() -> int:
            nonlocal calls
            calls += 1
            return calls

        assert await dedup.deduplicate("key", operation) == 1
        clock.advance(4)
        assert await dedup.deduplicate("key", operation) == 1
        clock.advance(1)
        assert await dedup.deduplicate("key", operation) == 2

    @pytest.mark.asyncio
    async def test_failures_are_not_cached(self) -> None:
        dedup = RequestDeduplicator()
        attempts = 0

        async def operation() -> str:
            nonlocal attempts
            attempts += 1
            if attempts == 1:
                raise RuntimeError("boom")
            return "ok"

        with pytest.raises(RuntimeError):
            await dedup.deduplicate("key", operation)
        assert dedup.cache_size == 0
        assert await dedup.deduplicate("key", operation) == "ok"

    @pytest.mark.asyncio
    async def test_cancelled_waiter_does_not_cancel_shared_work(self) -> None:
        dedup = RequestDeduplicator()
        gate = asyncio.Event()

        async def operation() -> str:
            await gate.wait()
            return "done"

        first = asyncio.create_task(dedup.deduplicate("key", operation))
        second = asyncio.create_task(dedup.deduplicate("key", operation))
        await asyncio.sleep(0)
        first.cancel()
        gate.set()

        assert await second == "done"
        assert first.cancelled()

    @pytest.mark.asyncio
    async def test_disabled_runs_every_call(self) -> None:
        dedup = RequestDeduplicator(enabled=False)
        calls = 0

        async def operation() -> None:
            nonlocal calls
            calls += 1

        await asyncio.gather(*(dedup.deduplicate("key", operation) for _ in range(3)))

        assert calls == 3


class TestSharedStream:
    @pytest.mark.asyncio
    async def test_late_subscriber_replays_from_start(self) -> None:
        gate = asyncio.Event()
        stream: SharedStream[str] = SharedStream(_gated(gate, "a", "b", "c"))
        stream.start()

        first = stream.subscribe()
        gate.set()
        assert await anext(first) == "a"

        late = await _collect(stream.subscribe())
        rest = await _collect(first)

        assert late == ["a", "b", "c"]
        assert rest == ["b", "c"]
        assert stream.done

    @pytest.mark.asyncio
    async def test_producer_error_reaches_every_subscriber(self) -> None:
        async def failing() -> AsyncIterator[str]:
            yield "partial"
            raise ValueError("upstream broke")

        stream: SharedStream[str] = SharedStream(failing())
        stream.start()
        await stream.task

        for _ in range(2):
            received: list[str] = []
            with pytest.raises(ValueError, match="upstream broke"):
                async for item in stream.subscribe():
                    received.append(item)
            assert received == ["partial"]

    @pytest.mark.asyncio
    async def test_last_subscriber_leaving_cancels_producer(self) -> None:
        stream: SharedStream[str] = SharedStream(_gated(asyncio.Event(), "never"))
        stream.start()
        subscriber = stream.subscribe()
        waiter = asyncio.create_task(anext(subscriber))
        await asyncio.sleep(0)

        waiter.cancel()
        with pytest.raises(asyncio.CancelledError):
            await waiter
        await subscriber.aclose()
        await asyncio.sleep(0)

        assert stream.abandoned
        assert stream.task.cancelled()

    @pytest.mark.asyncio
    async def test_cancelled_producer_fails_remaining_subscribers(self) -> None:
        stream: SharedStream[str] = SharedStream(_gated(asyncio.Event(), "never"))
        stream.start()
        consumer = asyncio.create_task(_collect(stream.subscribe()))
        await asyncio.sleep(0)

        stream.task.cancel()

        with pytest.raises(SharedStreamCancelledError):
            await consumer


class TestShareStream:
    @pytest.mark.asyncio
    async def test_duplicate_joins_in_flight_stream(self) -> None:
        dedup = RequestDeduplicator()
        gate = asyncio.Event()
        produced = 0

        def factory() -> AsyncIterator[str]:
            nonlocal produced
            produced += 1
            return _gated(gate, "x", "y")

        stream, joined = dedup.share_stream("key", factory)
        duplicate, duplicate_joined = dedup.share_stream("key", factory)

        assert not joined
        assert duplicate_joined
        assert duplicate is stream
        gate.set()
        assert await _collect(stream.subscribe()) == ["x", "y"]
        assert produced == 1

    @pytest.mark.asyncio
    async def test_completed_stream_is_served_from_cache(self, clock: FakeClock) -> None:
        dedup = RequestDeduplicator(ttl_seconds=5.0, clock=clock)
        gate = asyncio.Event()
        gate.set()
        stream, _ = dedup.share_stream("key", lambda: _gated(gate, "x"))
        await stream.task
        await asyncio.sleep(0)

        cached, joined = dedup.share_stream("key", lambda: _gated(gate, "other"))

        assert joined
        assert await _collect(cached.subscribe()) == ["x"]

        clock.advance(5)
        fresh, joined = dedup.share_stream("key", lambda: _gated(gate, "other"))
        assert not joined
        assert await _collect(fresh.subscribe()) == ["other"]

    @pytest.mark.asyncio
    async def test_cacheable_predicate_rejects_result(self) -> None:
        dedup = RequestDeduplicator()
        gate = asyncio.Event()
        gate.set()
        stream, _ = dedup.share_stream(
            "key", lambda: _gated(gate, "error"), cacheable=lambda s: s.events[-1] != "error"
        )
        await stream.task
        await asyncio.sleep(0)

        assert dedup.cache_size == 0
        assert dedup.in_flight_count == 0

    @pytest.mark.asyncio
    async def test_abandoned_stream_is_not_joined(self) -> None:
        dedup = RequestDeduplicator()
        stream, _ = dedup.share_stream("key", lambda: _gated(asyncio.Event(), "never"))
        subscriber = stream.subscribe()
        waiter = asyncio.create_task(anext(subscriber))
        await asyncio.sleep(0)
        waiter.cancel()
        with pytest.raises(asyncio.CancelledError):
            await waiter
        await subscriber.aclose()

        gate = asyncio.Event()
        gate.set()
        fresh, joined = dedup.share_stream("key", lambda: _gated(gate, "again"))

        assert not joined
        assert fresh is not stream
        assert await _collect(fresh.subscribe()) == ["again"]


class TestSweep:
    @pytest.mark.asyncio
    async def test_sweep_expires_cache_and_evicts_stale_work(self, clock: FakeClock) -> None:
        dedup = RequestDeduplicator(ttl_seconds=5.0, max_request_duration=30.0, clock=clock)

        async def quick() -> str:
            return "cached"

        await dedup.deduplicate("cached", quick)
        stuck, _ = dedup.share_stream("stuck", lambda: _gated(asyncio.Event(), "never"))

        clock.advance(31)
        stale, expired = dedup.sweep()
        await asyncio.sleep(0)

        assert (stale, expired) == (1, 1)
        assert dedup.cache_size == 0
        assert dedup.in_flight_count == 0
        assert stuck.task.cancelled()

    @pytest.mark.asyncio
    async def test_aclose_cancels_pending(self) -> None:
        dedup = RequestDeduplicator()
        stream, _ = dedup.share_stream("key", lambda: _gated(asyncio.Event(), "never"))

        await dedup.aclose()

        assert stream.task.cancelled()
        assert dedup.in_flight_count == 0
