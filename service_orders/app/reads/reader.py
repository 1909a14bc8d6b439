"""
Cache-first order lookups for the HTTP read API.
"""

import asyncio
import time
from typing import Optional, TYPE_CHECKING

from shared.logging import get_logger
from shared.errors import (
    LookupTimeoutError,
    OrderNotFoundError,
    StoreUnavailableError,
    ValidationError,
)
from ..cache import OrderCache
from ..models import Order
from ..persistence import OrderStore

if TYPE_CHECKING:  # pragma: no cover - imported for typing only
    from shared.metrics import MetricsCollector


class OrderReader:
    """Serves orders from the cache, falling back to the store on a miss."""

    def __init__(
        self,
        cache: OrderCache,
        store: OrderStore,
        timeout_seconds: float = 3.0,
        metrics: Optional["MetricsCollector"] = None,
    ):
        self.cache = cache
        self.store = store
        self.timeout_seconds = timeout_seconds
        self.metrics = metrics
        self.logger = get_logger("orders.reads")

    async def get_order(self, order_uid: str) -> Order:
        """Return the order for ``order_uid``.

        Raises ValidationError for a blank identifier, OrderNotFoundError when
        the store has no such order, LookupTimeoutError when the store does not
        answer in time, and StoreUnavailableError for any other store failure.
        """
        if not order_uid or not order_uid.strip():
            raise ValidationError("missing order_uid")

        cached = self.cache.get(order_uid)
        if cached is not None:
            self._record_lookup("hit")
            return cached
        self._record_lookup("miss")

        start_time = time.time()
        try:
            order = await asyncio.wait_for(self.store.load_by_key(order_uid), timeout=self.timeout_seconds)
        except OrderNotFoundError:
            raise
        except asyncio.TimeoutError:
            self.logger.error("Order lookup timed out", order_uid=order_uid, timeout=self.timeout_seconds)
            raise LookupTimeoutError(self.timeout_seconds, {"order_uid": order_uid})
        except StoreUnavailableError:
            raise
        except Exception as e:
            self.logger.error("Order lookup failed", order_uid=order_uid, error=str(e))
            raise StoreUnavailableError("Order lookup failed", {"order_uid": order_uid}) from e
        finally:
            if self.metrics:
                self.metrics.observe_histogram("order_store_lookup_duration_seconds", time.time() - start_time)

        self.cache.set(order)
        if self.metrics:
            self.metrics.set_gauge("order_cache_size", len(self.cache))
        return order

    async def warm_up(self, limit: int) -> int:
        """Fill the cache from the most recent stored orders.

        Any failure leaves the cache as it is (cold start); never raises.
        Returns the number of orders admitted.
        """
        if limit <= 0:
            return 0

        try:
            recent = await self.store.load_recent(limit)
        except Exception as e:
            self.logger.error("Failed to load recent orders, starting with a cold cache", error=str(e))
            return 0

        admitted = sum(1 for order in recent if self.cache.set(order))
        if self.metrics:
            self.metrics.set_gauge("order_cache_size", len(self.cache))
        self.logger.info("Cache warmup", loaded=len(recent), admitted=admitted)
        return admitted

    def _record_lookup(self, result: str):
        if self.metrics:
            self.metrics.increment_counter("order_cache_lookups_total", result=result)
