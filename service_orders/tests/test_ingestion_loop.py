"""
Unit tests for the order ingestion loop.
"""

import asyncio
import json

import pytest
from unittest.mock import ANY, AsyncMock, call, patch
from kafka.errors import KafkaError
from structlog.testing import capture_logs

import sys
import os
sys.path.append(os.path.join(os.path.dirname(__file__), '..', '..'))

from service_orders.app.cache import OrderCache
from service_orders.app.ingestion import IngestionOutcome, OrderIngestionLoop
from shared.test_helpers import OrderDataFactory
from conftest import FakeOrderSource, InMemoryOrderStore, make_message


async def run_until_drained(loop: OrderIngestionLoop, source: FakeOrderSource, timeout: float = 5.0):
    source.on_drained = loop.stop
    await asyncio.wait_for(loop.run(), timeout=timeout)


class TestProcessMessage:
    """Test cases for single-message processing."""

    @pytest.fixture
    def store(self):
        return InMemoryOrderStore()

    @pytest.fixture
    def cache(self):
        return OrderCache(10)

    @pytest.mark.asyncio
    async def test_valid_message_is_saved_cached_and_committed(self, store, cache):
        source = FakeOrderSource()
        loop = OrderIngestionLoop(source, store, cache, backoff_seconds=0)
        message = make_message(OrderDataFactory.create_order_payload("uid-1"), offset=7)

        outcome = await loop.process_message(message)

        assert outcome is IngestionOutcome.COMMITTED
        assert [o.order_uid for o in store.save_calls] == ["uid-1"]
        assert cache.get("uid-1") == store.orders["uid-1"]
        assert source.commits == [message]
        assert loop.stats()["processed"] == 1

    @pytest.mark.asyncio
    async def test_message_without_order_uid_is_committed_and_skipped(self, store, cache):
        payload = OrderDataFactory.create_order_dict("ignored")
        del payload["order_uid"]
        message = make_message(json.dumps(payload).encode())
        source = FakeOrderSource()

        with capture_logs() as logs:
            loop = OrderIngestionLoop(source, store, cache, backoff_seconds=0)
            outcome = await loop.process_message(message)

        assert outcome is IngestionOutcome.SKIPPED
        assert len(logs) == 1
        assert logs[0]["log_level"] == "error"
        assert source.commits == [message]
        assert store.save_calls == []
        assert len(cache) == 0

    @pytest.mark.asyncio
    async def test_undecodable_payload_is_committed_and_skipped(self, store, cache):
        source = FakeOrderSource()
        loop = OrderIngestionLoop(source, store, cache, backoff_seconds=0)
        message = make_message(b"\x00\x01 definitely not json", offset=3)

        outcome = await loop.process_message(message)

        assert outcome is IngestionOutcome.SKIPPED
        assert source.commits == [message]
        assert store.save_calls == []
        assert len(cache) == 0

    @pytest.mark.asyncio
    async def test_persistence_failures_retry_same_message_until_success(self, store, cache):
        store.save_failures = 3
        source = FakeOrderSource()
        loop = OrderIngestionLoop(source, store, cache, backoff_seconds=0)
        message = make_message(OrderDataFactory.create_order_payload("retry-me"))

        outcome = await loop.process_message(message)

        assert outcome is IngestionOutcome.COMMITTED
        assert len(store.save_calls) == 4
        assert len({o.model_dump_json() for o in store.save_calls}) == 1
        assert source.commits == [message]
        assert "retry-me" in cache
        assert loop.stats()["retries"] == 3

    @pytest.mark.asyncio
    async def test_no_commit_or_cache_before_persistence_succeeds(self, store, cache):
        store.save_failures = 1
        source = FakeOrderSource()
        loop = OrderIngestionLoop(source, store, cache, backoff_seconds=0.05)
        message = make_message(OrderDataFactory.create_order_payload("slow"))

        task = asyncio.create_task(loop.process_message(message))
        await asyncio.sleep(0.01)

        # First attempt failed, loop is backing off
        assert len(store.save_calls) == 1
        assert source.commits == []
        assert "slow" not in cache

        assert await task is IngestionOutcome.COMMITTED
        assert source.commits == [message]

    @pytest.mark.asyncio
    async def test_stop_during_persistence_retry_abandons_message(self, store, cache):
        store.save_failures = 1000
        source = FakeOrderSource()
        loop = OrderIngestionLoop(source, store, cache, backoff_seconds=10)
        message = make_message(OrderDataFactory.create_order_payload("stuck"))

        task = asyncio.create_task(loop.process_message(message))
        await asyncio.sleep(0.01)
        loop.stop()

        assert await asyncio.wait_for(task, timeout=1) is IngestionOutcome.ABANDONED
        assert source.commits == []
        assert "stuck" not in cache

    @pytest.mark.asyncio
    async def test_commit_failure_still_counts_as_processed(self, store, cache):
        source = FakeOrderSource()
        source.commit_error = KafkaError("coordinator not available")
        loop = OrderIngestionLoop(source, store, cache, backoff_seconds=0)
        message = make_message(OrderDataFactory.create_order_payload("committed-ish"))

        outcome = await loop.process_message(message)

        assert outcome is IngestionOutcome.COMMITTED
        assert len(source.commits) == 1
        assert "committed-ish" in cache
        assert loop.stats()["commit_failures"] == 1

    @pytest.mark.asyncio
    async def test_cache_full_does_not_block_commit(self, store):
        cache = OrderCache(0)
        source = FakeOrderSource()
        loop = OrderIngestionLoop(source, store, cache, backoff_seconds=0)
        message = make_message(OrderDataFactory.create_order_payload("no-room"))

        assert await loop.process_message(message) is IngestionOutcome.COMMITTED
        assert source.commits == [message]
        assert "no-room" in store.orders


class TestRunLoop:
    """Test cases for the consume loop."""

    @pytest.mark.asyncio
    async def test_processes_messages_in_delivery_order(self):
        payloads = [OrderDataFactory.create_order_payload(f"o-{i}") for i in range(5)]
        source = FakeOrderSource(payloads)
        store = InMemoryOrderStore()
        loop = OrderIngestionLoop(source, store, OrderCache(10), backoff_seconds=0)

        await run_until_drained(loop, source)

        assert [m.offset for m in source.commits] == [0, 1, 2, 3, 4]
        assert [o.order_uid for o in store.save_calls] == [f"o-{i}" for i in range(5)]

    @pytest.mark.asyncio
    async def test_mixed_stream_skips_poison_and_keeps_going(self):
        payloads = [
            OrderDataFactory.create_order_payload("good-1"),
            b"garbage",
            b'{"track_number": "no uid"}',
            OrderDataFactory.create_order_payload("good-2"),
        ]
        source = FakeOrderSource(payloads)
        store = InMemoryOrderStore()
        cache = OrderCache(10)
        loop = OrderIngestionLoop(source, store, cache, backoff_seconds=0)

        await run_until_drained(loop, source)

        assert [m.offset for m in source.commits] == [0, 1, 2, 3]
        assert sorted(store.orders) == ["good-1", "good-2"]
        assert len(cache) == 2
        assert loop.stats()["skipped"] == 2

    @pytest.mark.asyncio
    async def test_fetch_error_backs_off_and_retries_without_commit(self):
        source = FakeOrderSource([OrderDataFactory.create_order_payload("after-error")])
        source.fetch_failures.append(KafkaError("broker unavailable"))
        store = InMemoryOrderStore()
        loop = OrderIngestionLoop(source, store, OrderCache(10), backoff_seconds=0)

        await run_until_drained(loop, source)

        assert loop.stats()["fetch_errors"] == 1
        assert [m.offset for m in source.commits] == [0]
        assert "after-error" in store.orders

    @pytest.mark.asyncio
    async def test_stop_interrupts_blocking_fetch(self):
        class BlockingSource(FakeOrderSource):
            async def fetch(self):
                self.fetch_calls += 1
                await asyncio.sleep(60)

        source = BlockingSource()
        loop = OrderIngestionLoop(source, InMemoryOrderStore(), OrderCache(10), backoff_seconds=0)

        task = asyncio.create_task(loop.run())
        await asyncio.sleep(0.01)
        loop.stop()

        await asyncio.wait_for(task, timeout=1)
        assert source.fetch_calls == 1
        assert source.commits == []

    @pytest.mark.asyncio
    async def test_stop_interrupts_fetch_backoff(self):
        source = FakeOrderSource()
        source.fetch_failures.append(KafkaError("broker unavailable"))
        loop = OrderIngestionLoop(source, InMemoryOrderStore(), OrderCache(10), backoff_seconds=30)

        task = asyncio.create_task(loop.run())
        await asyncio.sleep(0.01)
        loop.stop()

        await asyncio.wait_for(task, timeout=1)
        assert loop.stats()["fetch_errors"] == 1

    @pytest.mark.asyncio
    async def test_unexpected_error_propagates_to_supervisor(self):
        class BrokenCache(OrderCache):
            def set(self, order):
                raise RuntimeError("bug")

        source = FakeOrderSource([OrderDataFactory.create_order_payload("boom")])
        loop = OrderIngestionLoop(source, InMemoryOrderStore(), BrokenCache(1), backoff_seconds=0)

        with pytest.raises(RuntimeError):
            await asyncio.wait_for(loop.run(), timeout=1)
        assert source.commits == []

    @pytest.mark.asyncio
    async def test_each_failure_pauses_for_fixed_backoff(self):
        source = FakeOrderSource([OrderDataFactory.create_order_payload("paused")])
        source.fetch_failures.append(KafkaError("broker unavailable"))
        store = InMemoryOrderStore()
        store.save_failures = 2
        loop = OrderIngestionLoop(source, store, OrderCache(10), backoff_seconds=0.25)
        pause = AsyncMock(return_value=False)

        with patch("service_orders.app.ingestion.loop.sleep_or_stop", new=pause):
            await run_until_drained(loop, source)

        # One pause for the fetch error, one per failed save
        assert pause.await_args_list == [call(0.25, ANY)] * 3
        assert all(args[1] is loop._stop for args, _ in pause.await_args_list)
        assert [m.offset for m in source.commits] == [0]
        assert len(store.save_calls) == 3

    @pytest.mark.asyncio
    async def test_backoff_pause_is_real_time(self):
        source = FakeOrderSource([OrderDataFactory.create_order_payload("slow-retry")])
        store = InMemoryOrderStore()
        store.save_failures = 1
        loop = OrderIngestionLoop(source, store, OrderCache(10), backoff_seconds=0.2)

        started = asyncio.get_running_loop().time()
        assert await loop.process_message(source.messages.popleft()) is IngestionOutcome.COMMITTED
        elapsed = asyncio.get_running_loop().time() - started

        assert elapsed >= 0.15
