from .reader import OrderReader

__all__ = ["OrderReader"]
