"""
Order store contract consumed by the ingestion loop and the read path.
"""

from abc import ABC, abstractmethod
from typing import List

from ..models import Order


class OrderStore(ABC):
    """Durable order storage.

    Implementations must make ``save_order`` atomic across the order row and
    its delivery, payment and item rows: readers never observe a mix of two
    versions of one order.
    """

    @abstractmethod
    async def save_order(self, order: Order) -> None:
        """Upsert ``order`` and replace its nested records. Raises on failure."""

    @abstractmethod
    async def load_by_key(self, order_uid: str) -> Order:
        """Load one order. Raises OrderNotFoundError when it does not exist."""

    @abstractmethod
    async def load_recent(self, limit: int) -> List[Order]:
        """Load up to ``limit`` orders, most recently created first."""

    async def start(self):
        """Open connections."""

    async def stop(self):
        """Release connections."""

    async def health_check(self) -> bool:
        return True
