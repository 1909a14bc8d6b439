"""
Order ingestion loop: broker -> validate -> persist -> cache -> commit.
"""

import asyncio
from enum import Enum
from typing import Any, Dict, Optional, TYPE_CHECKING

from pydantic import ValidationError as PayloadValidationError

from shared.logging import get_logger, set_order_context
from shared.errors import PoisonMessageError
from shared.retry import sleep_or_stop
from ..cache import OrderCache
from ..kafka import KafkaMessage
from ..models import Order
from ..persistence import OrderStore

if TYPE_CHECKING:  # pragma: no cover - imported for typing only
    from shared.metrics import MetricsCollector


class IngestionOutcome(str, Enum):
    """Terminal state of one broker message."""
    COMMITTED = "committed"
    SKIPPED = "skipped"
    ABANDONED = "abandoned"


def decode_order(message: KafkaMessage) -> Order:
    """Decode and validate a broker payload, raising PoisonMessageError if it can never succeed."""
    if not message.value:
        raise PoisonMessageError("Empty message payload")

    try:
        order = Order.from_json(message.value)
    except PayloadValidationError as e:
        raise PoisonMessageError("Invalid order payload", {"errors": e.error_count(), "error": str(e)})

    if not order.order_uid.strip():
        raise PoisonMessageError("Message missing order_uid")

    return order


class OrderIngestionLoop:
    """Single-stream consumer of order messages with at-least-once semantics.

    Messages are handled strictly one at a time. Poison messages (undecodable
    or without ``order_uid``) are committed and skipped. Persistence failures
    are retried on the same message with a fixed backoff until they succeed or
    the loop is stopped; the offset is committed only after the order has been
    saved and cached. Fetch errors back off and poll again.
    """

    def __init__(
        self,
        source,
        store: OrderStore,
        cache: OrderCache,
        backoff_seconds: float = 1.0,
        metrics: Optional["MetricsCollector"] = None,
    ):
        self.source = source
        self.store = store
        self.cache = cache
        self.backoff_seconds = backoff_seconds
        self.metrics = metrics
        self.logger = get_logger("orders.ingestion")
        self._stop = asyncio.Event()

        self.processed = 0
        self.skipped = 0
        self.abandoned = 0
        self.retries = 0
        self.commit_failures = 0
        self.fetch_errors = 0

    def stop(self):
        """Signal the loop to finish after the current step."""
        self._stop.set()

    @property
    def stopping(self) -> bool:
        return self._stop.is_set()

    async def run(self):
        """Consume until stopped. Per-message failures are handled here and never raised."""
        self.logger.info("Ingestion loop started", backoff_seconds=self.backoff_seconds)
        try:
            while not self._stop.is_set():
                message = await self._fetch()
                if message is None:
                    continue
                await self.process_message(message)
        finally:
            set_order_context(None)
            self.logger.info("Ingestion loop stopped", **self.stats())

    async def _fetch(self) -> Optional[KafkaMessage]:
        fetch_task = asyncio.ensure_future(self.source.fetch())
        stop_task = asyncio.ensure_future(self._stop.wait())
        try:
            await asyncio.wait({fetch_task, stop_task}, return_when=asyncio.FIRST_COMPLETED)
        except asyncio.CancelledError:
            fetch_task.cancel()
            raise
        finally:
            stop_task.cancel()

        if not fetch_task.done():
            # Stopped mid-poll; any record the poll returns stays uncommitted and is redelivered
            fetch_task.cancel()
            return None

        try:
            return fetch_task.result()
        except asyncio.CancelledError:
            raise
        except Exception as e:
            self.fetch_errors += 1
            self.logger.error("Fetch message error", error=str(e))
            await sleep_or_stop(self.backoff_seconds, self._stop)
            return None

    async def process_message(self, message: KafkaMessage) -> IngestionOutcome:
        """Drive one message to a terminal state."""
        set_order_context(None)
        try:
            order = decode_order(message)
        except PoisonMessageError as e:
            self.logger.error(
                "Skipping poison message",
                reason=e.message,
                details=e.details,
                topic=message.topic,
                partition=message.partition,
                offset=message.offset
            )
            await self._commit(message)
            return self._finish(IngestionOutcome.SKIPPED)

        set_order_context(order.order_uid)

        if not await self._persist(order, message):
            self.logger.warning(
                "Stopped while retrying order; leaving offset uncommitted",
                order_uid=order.order_uid,
                offset=message.offset
            )
            return self._finish(IngestionOutcome.ABANDONED)

        self.cache.set(order)
        if await self._commit(message):
            self.logger.info(
                "Message processed and committed",
                order_uid=order.order_uid,
                partition=message.partition,
                offset=message.offset
            )
        return self._finish(IngestionOutcome.COMMITTED)

    async def _persist(self, order: Order, message: KafkaMessage) -> bool:
        """Save until success. Returns False if stopped while backing off."""
        attempt = 0
        while True:
            attempt += 1
            try:
                await self.store.save_order(order)
                return True
            except asyncio.CancelledError:
                raise
            except Exception as e:
                self.retries += 1
                if self.metrics:
                    self.metrics.increment_counter("orders_ingest_retries_total")
                self.logger.error(
                    "Failed to save order",
                    order_uid=order.order_uid,
                    offset=message.offset,
                    attempt=attempt,
                    error=str(e)
                )
                if await sleep_or_stop(self.backoff_seconds, self._stop):
                    return False

    async def _commit(self, message: KafkaMessage) -> bool:
        try:
            await self.source.commit(message)
            return True
        except asyncio.CancelledError:
            raise
        except Exception as e:
            # Treated as processed; a later rebalance may redeliver it
            self.commit_failures += 1
            self.logger.error(
                "Commit message failed",
                topic=message.topic,
                partition=message.partition,
                offset=message.offset,
                error=str(e)
            )
            return False

    def _finish(self, outcome: IngestionOutcome) -> IngestionOutcome:
        if outcome is IngestionOutcome.COMMITTED:
            self.processed += 1
        elif outcome is IngestionOutcome.SKIPPED:
            self.skipped += 1
        else:
            self.abandoned += 1

        if self.metrics:
            self.metrics.increment_counter("orders_ingested_total", outcome=outcome.value)
            self.metrics.set_gauge("order_cache_size", len(self.cache))
        return outcome

    def stats(self) -> Dict[str, Any]:
        """Get ingestion statistics."""
        return {
            "processed": self.processed,
            "skipped": self.skipped,
            "abandoned": self.abandoned,
            "retries": self.retries,
            "commit_failures": self.commit_failures,
            "fetch_errors": self.fetch_errors,
        }
