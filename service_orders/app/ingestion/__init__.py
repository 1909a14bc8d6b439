from .loop import IngestionOutcome, OrderIngestionLoop, decode_order

__all__ = ["IngestionOutcome", "OrderIngestionLoop", "decode_order"]
