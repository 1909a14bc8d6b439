#!/usr/bin/env python3
"""
Publish order documents to the orders topic.

Useful for exercising the ingestion pipeline from a developer workstation:
send JSON files, generated sample orders, or a deliberately malformed
message to check that poison messages are skipped.
"""

import argparse
import json
from pathlib import Path
from typing import Any, Dict, Iterable, List
import sys
import os

sys.path.append(os.path.join(os.path.dirname(__file__), '..'))

from kafka import KafkaProducer  # noqa: E402
from kafka.errors import KafkaError  # noqa: E402

from shared.logging import configure_logging, get_logger  # noqa: E402
from shared.test_helpers import OrderDataFactory  # noqa: E402


logger = get_logger("orders.scripts.publish")


def load_documents(paths: Iterable[Path]) -> List[Dict[str, Any]]:
    """Read one order object or a list of orders from each file."""
    documents: List[Dict[str, Any]] = []
    for path in paths:
        data = json.loads(path.read_text(encoding="utf-8"))
        if isinstance(data, list):
            documents.extend(data)
        else:
            documents.append(data)
    return documents


def publish(bootstrap: str, topic: str, documents: List[Dict[str, Any]], raw: List[bytes]) -> int:
    """Send every document and raw payload; returns the number acknowledged."""
    producer = KafkaProducer(
        bootstrap_servers=bootstrap,
        value_serializer=lambda x: x if isinstance(x, bytes) else json.dumps(x).encode('utf-8'),
        key_serializer=lambda x: x.encode('utf-8') if x else None,
        acks='all',
        retries=3,
        linger_ms=10
    )

    sent = 0
    try:
        for value in [*documents, *raw]:
            key = value.get("order_uid") if isinstance(value, dict) else None
            try:
                metadata = producer.send(topic, value=value, key=key).get(timeout=10)
            except KafkaError as e:
                logger.error("Failed to publish message", topic=topic, order_uid=key, error=str(e))
                continue
            sent += 1
            logger.info(
                "Published message",
                topic=topic,
                order_uid=key,
                partition=metadata.partition,
                offset=metadata.offset
            )
    finally:
        producer.flush()
        producer.close()
    return sent


def _parse_args() -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Publish order JSON documents to Kafka.")
    parser.add_argument("files", nargs="*", type=Path, help="JSON files holding an order or a list of orders")
    parser.add_argument("--bootstrap", default=os.getenv("KAFKA_BROKER", "localhost:9092"), help="Kafka bootstrap servers")
    parser.add_argument("--topic", default=os.getenv("ORDERS_KAFKA_TOPIC", "orders"), help="Target topic")
    parser.add_argument("--generate", type=int, default=0, help="Also publish N generated sample orders")
    parser.add_argument("--poison", action="store_true", help="Also publish one undecodable message")
    parser.add_argument("--log-level", default="info")
    return parser.parse_args()


def main() -> int:
    args = _parse_args()
    configure_logging("orders", args.log_level)

    documents = load_documents(args.files)
    documents.extend(OrderDataFactory.create_order_dict() for _ in range(args.generate))
    raw = [b"{not json"] if args.poison else []

    if not documents and not raw:
        logger.warning("Nothing to publish")
        return 1

    sent = publish(args.bootstrap, args.topic, documents, raw)
    return 0 if sent == len(documents) + len(raw) else 2


if __name__ == "__main__":
    sys.exit(main())
