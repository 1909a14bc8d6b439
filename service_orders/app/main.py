"""
Orders service: Kafka ingestion, PostgreSQL persistence and a cached HTTP read API.
"""

import asyncio
import os
import sys
from typing import Any, Dict, Optional

# Add repository root to path
sys.path.append(os.path.join(os.path.dirname(__file__), '..', '..'))

from fastapi import Path

from shared.base_service import BaseService
from shared.config import ServiceConfig
from shared.errors import ValidationError

from .cache import OrderCache
from .ingestion import OrderIngestionLoop
from .kafka import KafkaOrderSource
from .persistence import OrderStore, PostgresOrderStore
from .reads import OrderReader


DEFAULT_PORT = 8080


class OrdersService(BaseService):
    """Orders service implementation."""

    def __init__(
        self,
        config: Optional[ServiceConfig] = None,
        store: Optional[OrderStore] = None,
        source=None,
        cache: Optional[OrderCache] = None,
    ):
        port = int(os.getenv("ORDERS_PORT", DEFAULT_PORT))
        super().__init__("orders", port, config=config)

        self.store = store or PostgresOrderStore(
            self.config.postgres_dsn,
            min_size=self.config.postgres_min_pool,
            max_size=self.config.postgres_max_pool,
            command_timeout=self.config.postgres_command_timeout,
            connect_attempts=self.config.postgres_connect_attempts,
        )
        self.source = source or KafkaOrderSource(
            bootstrap_servers=self.config.kafka_bootstrap,
            topic=self.config.kafka_topic,
            group_id=self.config.kafka_group_id,
            poll_timeout_ms=self.config.kafka_poll_timeout_ms,
        )
        self.cache = cache if cache is not None else OrderCache(self.config.cache_limit)
        self.reader = OrderReader(
            self.cache,
            self.store,
            timeout_seconds=self.config.read_timeout_seconds,
            metrics=self.metrics,
        )
        self.ingestion = OrderIngestionLoop(
            self.source,
            self.store,
            self.cache,
            backoff_seconds=self.config.ingest_backoff_seconds,
            metrics=self.metrics,
        )

        self._ingestion_task: Optional[asyncio.Task] = None
        self._loop: Optional[asyncio.AbstractEventLoop] = None

        self._setup_order_routes()
        self.app.state.orders_service = self

    def _setup_order_routes(self):
        """Set up order read routes."""

        @self.app.get("/")
        async def root():
            """Root endpoint."""
            return {
                "service": "orders",
                "message": "Orders Service",
                "version": "1.0.0",
                "topic": self.config.kafka_topic,
            }

        @self.app.get("/orders/")
        async def get_order_missing_uid():
            """Reject lookups without an identifier."""
            raise ValidationError("missing order_uid")

        @self.app.get("/orders/{order_uid}")
        async def get_order(order_uid: str = Path(..., description="Order identifier")):
            """Return one order, from the cache when possible."""
            order = await self.reader.get_order(order_uid)
            return order.model_dump(mode="json")

    async def start(self):
        """Start components in order: store, cache warm-up, consumer, ingestion."""
        self._loop = asyncio.get_running_loop()

        # A store that cannot start is fatal; let the exception abort startup
        await self.store.start()

        await self.reader.warm_up(self.config.startup_load)

        await self.source.start()
        self._ingestion_task = asyncio.create_task(self.ingestion.run(), name="orders-ingestion")
        self._ingestion_task.add_done_callback(self._on_ingestion_done)

        self.logger.info(
            "Orders service components started",
            cache_size=len(self.cache),
            cache_limit=self.cache.limit,
            topic=self.config.kafka_topic
        )

    def on_exit_signal(self):
        """Stop fetching as soon as a shutdown signal arrives."""
        self.logger.info("Shutdown signal received, stopping ingestion")
        if self._loop is not None:
            self._loop.call_soon_threadsafe(self.ingestion.stop)
        else:
            self.ingestion.stop()

    def _on_ingestion_done(self, task: asyncio.Task):
        if task.cancelled():
            return
        error = task.exception()
        if error is not None:
            self.logger.critical(
                "Ingestion loop terminated unexpectedly",
                error=str(error),
                exc_info=(type(error), error, error.__traceback__)
            )
            self.metrics.record_error("INGESTION_TERMINATED")
            self.request_exit()
        elif not self.ingestion.stopping:
            self.logger.error("Ingestion loop exited without a stop request")
            self.request_exit()

    async def stop(self):
        """Stop ingestion, then release the consumer and the store pool."""
        self.ingestion.stop()

        if self._ingestion_task is not None:
            try:
                await asyncio.wait_for(
                    asyncio.shield(self._ingestion_task),
                    timeout=self.config.shutdown_grace_seconds
                )
            except asyncio.TimeoutError:
                self.logger.warning("Ingestion loop did not stop within grace period, cancelling")
                self._ingestion_task.cancel()
                try:
                    await self._ingestion_task
                except asyncio.CancelledError:
                    pass
            except Exception as e:
                # Already reported by the done callback
                self.logger.debug("Ingestion loop ended with error", error=str(e))

        await self.source.stop()
        await self.store.stop()

        self.logger.info("Orders service components stopped")

    async def _check_dependencies(self) -> Dict[str, str]:
        """Check orders service dependencies."""
        dependencies = {}

        dependencies["postgres"] = "ok" if await self.store.health_check() else "error"
        dependencies["kafka"] = "ok" if self.source.is_running() else "error"

        if self._ingestion_task is None:
            dependencies["ingestion"] = "not_started"
        elif self._ingestion_task.done():
            dependencies["ingestion"] = "error"
        else:
            dependencies["ingestion"] = "ok"

        return dependencies

    def _health_details(self) -> Dict[str, Any]:
        return {
            "cache": self.cache.stats(),
            "ingestion": self.ingestion.stats(),
        }


def create_app():
    """Create orders service application."""
    service = OrdersService()
    return service.app


def main():
    """Console entry point."""
    OrdersService().run()


if __name__ == "__main__":
    main()
