"""
Kafka consumer for Orders Service.
"""

import asyncio
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass
from typing import Dict, Optional

import kafka
from kafka import TopicPartition
from kafka.errors import KafkaError
from kafka.structs import OffsetAndMetadata

from shared.logging import get_logger
from shared.errors import OrdersServiceException


@dataclass(frozen=True)
class KafkaMessage:
    """Kafka message wrapper."""
    topic: str
    partition: int
    offset: int
    key: Optional[bytes]
    value: bytes
    timestamp: Optional[int]
    headers: Optional[Dict[str, bytes]]


class KafkaOrderSource:
    """One-message-at-a-time Kafka consumer with manual offset commits.

    kafka-python is blocking, so every consumer call runs on a single
    dedicated worker thread; calls are therefore serialised.
    """

    def __init__(self, bootstrap_servers: str, topic: str, group_id: str,
                 poll_timeout_ms: int = 1000):
        self.bootstrap_servers = bootstrap_servers
        self.topic = topic
        self.group_id = group_id
        self.poll_timeout_ms = poll_timeout_ms
        self.logger = get_logger("orders.kafka.consumer")
        self.consumer: Optional[kafka.KafkaConsumer] = None
        self._executor = ThreadPoolExecutor(max_workers=1, thread_name_prefix="kafka-consumer")
        self._started = False

    async def _call(self, func, *args, **kwargs):
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(self._executor, lambda: func(*args, **kwargs))

    async def start(self):
        """Subscribe to the orders topic.

        An unreachable broker is not fatal: the consumer is built again on
        the next ``fetch`` and the failure surfaces there as a KafkaError.
        """
        self._started = True
        try:
            await self._connect()
        except KafkaError as e:
            self.logger.warning("Kafka unavailable at startup, will retry on fetch", error=str(e))

    async def _connect(self):
        self.consumer = await self._call(
            kafka.KafkaConsumer,
            self.topic,
            bootstrap_servers=self.bootstrap_servers,
            group_id=self.group_id,
            value_deserializer=lambda x: x,
            key_deserializer=lambda x: x,
            auto_offset_reset="earliest",
            enable_auto_commit=False,
            max_poll_records=1,
            session_timeout_ms=30000,
            heartbeat_interval_ms=10000
        )
        self.logger.info("Kafka consumer started", topic=self.topic, group_id=self.group_id)

    async def stop(self):
        """Close the consumer without committing anything further."""
        self._started = False
        if self.consumer:
            consumer, self.consumer = self.consumer, None
            try:
                await self._call(consumer.close, autocommit=False)
            except KafkaError as e:
                self.logger.warning("Error closing Kafka consumer", error=str(e))
            self.logger.info("Kafka consumer stopped")
        self._executor.shutdown(wait=False)

    async def fetch(self) -> Optional[KafkaMessage]:
        """Poll for the next message; None when the poll window elapsed empty.

        Broker failures, including failing to connect, propagate as KafkaError.
        """
        if not self._started:
            raise OrdersServiceException("KAFKA_CONSUMER_NOT_STARTED", "Consumer not started")
        if self.consumer is None:
            await self._connect()

        batch = await self._call(self.consumer.poll, timeout_ms=self.poll_timeout_ms, max_records=1)
        for records in (batch or {}).values():
            for record in records:
                return KafkaMessage(
                    topic=record.topic,
                    partition=record.partition,
                    offset=record.offset,
                    key=record.key,
                    value=record.value,
                    timestamp=record.timestamp,
                    headers=dict(record.headers) if record.headers else None
                )
        return None

    async def commit(self, message: KafkaMessage):
        """Commit the offset just past ``message`` for its partition."""
        if not self.consumer:
            raise OrdersServiceException("KAFKA_CONSUMER_NOT_STARTED", "Consumer not started")

        offsets = {
            TopicPartition(message.topic, message.partition): OffsetAndMetadata(message.offset + 1, None, -1)
        }
        await self._call(self.consumer.commit, offsets)

    def is_running(self) -> bool:
        return self.consumer is not None
