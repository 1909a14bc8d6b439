"""
Unit tests for order models and payload decoding.
"""

import json
from datetime import datetime, timezone

import pytest

import sys
import os
sys.path.append(os.path.join(os.path.dirname(__file__), '..', '..'))

from service_orders.app.ingestion import decode_order
from service_orders.app.models import Order, EPOCH
from shared.errors import PoisonMessageError
from shared.test_helpers import OrderDataFactory
from conftest import make_message


class TestOrderModel:
    """Test cases for Order."""

    def test_decodes_full_payload(self):
        order = Order.from_json(OrderDataFactory.create_order_payload("uid-1"))

        assert order.order_uid == "uid-1"
        assert order.delivery.city == "Kiryat Mozkin"
        assert order.payment.amount == 1817
        assert len(order.items) == 1
        assert order.items[0].brand == "Vivienne Sabo"
        assert order.date_created == datetime(2021, 11, 26, 6, 22, 19, tzinfo=timezone.utc)

    def test_unknown_fields_ignored(self):
        payload = OrderDataFactory.create_order_dict("uid-2")
        payload["unexpected"] = {"nested": True}

        order = Order.from_json(json.dumps(payload).encode())
        assert order.order_uid == "uid-2"

    def test_defaults_for_missing_sections(self):
        order = Order.from_json(b'{"order_uid": "bare"}')

        assert order.items == ()
        assert order.delivery.name == ""
        assert order.payment.amount == 0
        assert order.date_created == EPOCH

    def test_json_roundtrip_preserves_content(self):
        original = Order.from_json(OrderDataFactory.create_order_payload("uid-3"))
        assert Order.from_json(original.to_json()) == original


class TestDecodeOrder:
    """Test cases for decode_order."""

    def test_valid_message(self):
        order = decode_order(make_message(OrderDataFactory.create_order_payload("ok")))
        assert order.order_uid == "ok"

    @pytest.mark.parametrize("payload", [
        b"{not json",
        b"[]",
        b'{"order_uid": 42, "items": "nope"}',
        b'{"order_uid": "x", "sm_id": "not-a-number"}',
    ])
    def test_undecodable_payload_is_poison(self, payload):
        with pytest.raises(PoisonMessageError) as exc_info:
            decode_order(make_message(payload))
        assert exc_info.value.code == "POISON_MESSAGE"

    @pytest.mark.parametrize("payload", [
        b"{}",
        b'{"order_uid": ""}',
        b'{"order_uid": "   "}',
    ])
    def test_missing_order_uid_is_poison(self, payload):
        with pytest.raises(PoisonMessageError) as exc_info:
            decode_order(make_message(payload))
        assert "order_uid" in exc_info.value.message

    def test_empty_payload_is_poison(self):
        with pytest.raises(PoisonMessageError):
            decode_order(make_message(None))

    @pytest.mark.parametrize("overrides", [
        {"sm_id": 2 ** 63},
        {"sm_id": -(2 ** 63) - 1},
        {"payment": {"amount": 10 ** 20}},
        {"items": [{"chrt_id": 1, "status": 2 ** 64}]},
        {"locale": "en\u0000"},
    ])
    def test_values_postgres_cannot_store_are_poison(self, overrides):
        payload = json.dumps(OrderDataFactory.create_order_dict("too-big", **overrides)).encode()

        with pytest.raises(PoisonMessageError):
            decode_order(make_message(payload))

    def test_bigint_bounds_accepted(self):
        payload = OrderDataFactory.create_order_payload("edge", sm_id=2 ** 63 - 1)

        assert decode_order(make_message(payload)).sm_id == 2 ** 63 - 1

    def test_long_strings_accepted(self):
        payload = OrderDataFactory.create_order_payload("long", locale="x" * 500, shardkey="9" * 100)

        order = decode_order(make_message(payload))
        assert len(order.locale) == 500
