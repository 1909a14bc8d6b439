from .order_cache import OrderCache
from .rwlock import ReadWriteLock

__all__ = ["OrderCache", "ReadWriteLock"]
