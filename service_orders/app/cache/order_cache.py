"""
Bounded in-memory order cache shared by the ingestion loop and the read path.
"""

from typing import Any, Dict, Optional

from shared.logging import get_logger
from ..models import Order
from .rwlock import ReadWriteLock


class OrderCache:
    """Capacity-limited ``order_uid -> Order`` map.

    Admission is reject-on-full: once ``limit`` distinct orders are held, new
    keys are silently dropped and nothing is ever evicted. Existing keys are
    always overwritten. Stored orders are frozen models, so the values handed
    out by :meth:`get` are safe to share between readers.
    """

    def __init__(self, limit: int):
        if limit < 0:
            raise ValueError(f"cache limit must be >= 0, got {limit}")
        self._limit = limit
        self._orders: Dict[str, Order] = {}
        self._lock = ReadWriteLock()
        self.logger = get_logger("orders.cache")

        self.hits = 0
        self.misses = 0
        self.rejected = 0

    @property
    def limit(self) -> int:
        return self._limit

    def get(self, order_uid: str) -> Optional[Order]:
        """Return the cached order or None."""
        with self._lock.read_locked():
            order = self._orders.get(order_uid)
        # Counters are advisory; unsynchronised increments may undercount.
        if order is None:
            self.misses += 1
        else:
            self.hits += 1
        return order

    def set(self, order: Order) -> bool:
        """Insert or overwrite ``order``. Returns False if a new key was rejected."""
        with self._lock.write_locked():
            if order.order_uid not in self._orders and len(self._orders) >= self._limit:
                self.rejected += 1
                admitted = False
            else:
                self._orders[order.order_uid] = order
                admitted = True

        if not admitted:
            self.logger.debug("Cache full, order not admitted", order_uid=order.order_uid, limit=self._limit)
        return admitted

    def __len__(self) -> int:
        with self._lock.read_locked():
            return len(self._orders)

    def __contains__(self, order_uid: object) -> bool:
        with self._lock.read_locked():
            return order_uid in self._orders

    def stats(self) -> Dict[str, Any]:
        """Get cache statistics."""
        return {
            "size": len(self),
            "limit": self._limit,
            "hits": self.hits,
            "misses": self.misses,
            "rejected": self.rejected,
        }
