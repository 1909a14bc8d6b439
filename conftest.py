"""
Shared pytest fixtures and in-memory fakes for the Orders Service.
"""

import asyncio
from collections import deque
from typing import Callable, Dict, Iterable, List, Optional

import pytest

from service_orders.app.kafka import KafkaMessage
from service_orders.app.models import Order
from service_orders.app.persistence import OrderStore
from shared.errors import OrderNotFoundError, StoreUnavailableError
from shared.test_helpers import OrderDataFactory


def make_message(value: Optional[bytes], offset: int = 0, topic: str = "orders", partition: int = 0) -> KafkaMessage:
    return KafkaMessage(
        topic=topic,
        partition=partition,
        offset=offset,
        key=None,
        value=value,
        timestamp=1640995200000,
        headers=None
    )


class FakeOrderSource:
    """In-memory stand-in for KafkaOrderSource."""

    def __init__(self, payloads: Iterable[Optional[bytes]] = ()):
        self.messages = deque(make_message(p, offset=i) for i, p in enumerate(payloads))
        self.fetch_failures: deque = deque()
        self.commits: List[KafkaMessage] = []
        self.commit_error: Optional[Exception] = None
        self.on_drained: Optional[Callable[[], None]] = None
        self.fetch_calls = 0
        self.started = False
        self.stopped = False

    async def start(self):
        self.started = True

    async def stop(self):
        self.stopped = True

    async def fetch(self) -> Optional[KafkaMessage]:
        self.fetch_calls += 1
        if self.fetch_failures:
            raise self.fetch_failures.popleft()
        if self.messages:
            return self.messages.popleft()
        if self.on_drained is not None:
            self.on_drained()
        await asyncio.sleep(0.01)
        return None

    async def commit(self, message: KafkaMessage):
        self.commits.append(message)
        if self.commit_error is not None:
            raise self.commit_error

    def is_running(self) -> bool:
        return self.started and not self.stopped


class InMemoryOrderStore(OrderStore):
    """Dict-backed order store with injectable failures."""

    def __init__(self, orders: Iterable[Order] = ()):
        self.orders: Dict[str, Order] = {o.order_uid: o for o in orders}
        self.save_calls: List[Order] = []
        self.load_calls: List[str] = []
        self.save_failures = 0
        self.load_error: Optional[Exception] = None
        self.load_delay = 0.0
        self.recent_error: Optional[Exception] = None
        self.started = False
        self.stopped = False

    async def start(self):
        self.started = True

    async def stop(self):
        self.stopped = True

    async def save_order(self, order: Order) -> None:
        self.save_calls.append(order)
        if self.save_failures > 0:
            self.save_failures -= 1
            raise StoreUnavailableError("database is down")
        self.orders[order.order_uid] = order

    async def load_by_key(self, order_uid: str) -> Order:
        self.load_calls.append(order_uid)
        if self.load_delay:
            await asyncio.sleep(self.load_delay)
        if self.load_error is not None:
            raise self.load_error
        if order_uid not in self.orders:
            raise OrderNotFoundError(order_uid)
        return self.orders[order_uid]

    async def load_recent(self, limit: int) -> List[Order]:
        if self.recent_error is not None:
            raise self.recent_error
        ordered = sorted(self.orders.values(), key=lambda o: o.date_created, reverse=True)
        return ordered[:limit]

    async def health_check(self) -> bool:
        return self.started and not self.stopped


@pytest.fixture
def order_factory():
    """Build Order models from the sample payload."""
    def _make(order_uid: Optional[str] = None, **overrides) -> Order:
        return Order.model_validate(OrderDataFactory.create_order_dict(order_uid, **overrides))
    return _make


@pytest.fixture
def memory_store():
    return InMemoryOrderStore()


@pytest.fixture
def fake_source_factory():
    return FakeOrderSource
