from .consumer import KafkaMessage, KafkaOrderSource

__all__ = ["KafkaMessage", "KafkaOrderSource"]
