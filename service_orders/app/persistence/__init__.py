from .store import OrderStore
from .postgres import PostgresOrderStore

__all__ = ["OrderStore", "PostgresOrderStore"]
