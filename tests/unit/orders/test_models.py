"""Unit tests for Order, OrderItem and OrderRecord models."""

from __future__ import annotations

import re
from datetime import datetime, timezone
from decimal import Decimal

import pytest
from pydantic import ValidationError

from modules.orders.constants import OrderStatus, Role
from modules.orders.models import Order, OrderItem, OrderRecord, StatusChange

pytestmark = pytest.mark.unit


class TestOrderItem:
    def test_subtotal(self):
        item = OrderItem(id="f1", title="Egusi", price=Decimal("7.50"), quantity=3)
        assert item.subtotal == Decimal("22.50")

    def test_zero_quantity_rejected(self):
        with pytest.raises(ValidationError, match="Quantity must be at least 1"):
            OrderItem(id="f1", title="Egusi", price=Decimal("7.50"), quantity=0)

    def test_negative_price_rejected(self):
        with pytest.raises(ValidationError, match="Price must not be negative"):
            OrderItem(id="f1", title="Egusi", price=Decimal("-1"))


class TestOrder:
    def test_total_price_is_items_plus_fees(self, make_order):
        order = make_order(fees=Decimal("2.50"))

        # 2 x 12.00 + 1 x 3.25 + 2.50
        assert order.items_total == Decimal("27.25")
        assert order.total_price == Decimal("29.75")

    def test_total_price_is_serialized(self, make_order):
        data = make_order().model_dump(mode="json")
        assert Decimal(data["total_price"]) == Decimal("29.75")

    def test_empty_items_rejected(self, make_order):
        order = make_order()
        with pytest.raises(ValidationError, match="at least one item"):
            Order.model_validate({**order.model_dump(), "items": []})

    def test_naive_timestamps_are_read_as_utc(self, make_order):
        data = make_order().model_dump()
        data["order_date"] = datetime(2024, 1, 15, 12, 0)
        data["last_modified"] = "2024-01-15T12:05:00"

        order = Order.model_validate(data)

        assert order.order_date == datetime(2024, 1, 15, 12, 0, tzinfo=timezone.utc)
        assert order.last_modified.tzinfo == timezone.utc
        assert order.last_modified > make_order().last_modified

    def test_order_is_immutable(self, make_order):
        order = make_order()
        with pytest.raises(ValidationError):
            order.status = OrderStatus.READY

    def test_with_status_stamps_a_new_version(self, make_order):
        order = make_order()
        at = datetime(2024, 2, 1, tzinfo=timezone.utc)

        moved = order.with_status(OrderStatus.PREPARING, at=at)

        assert moved.status == OrderStatus.PREPARING
        assert moved.last_modified == at
        assert order.status == OrderStatus.CONFIRMED

    def test_delivery_sets_actual_delivery_time(self, make_order):
        order = make_order(status=OrderStatus.PICKED_UP)
        at = datetime(2024, 2, 1, 19, 5, tzinfo=timezone.utc)

        delivered = order.with_status(OrderStatus.DELIVERED, at=at)

        assert delivered.actual_delivery_time == at
        assert delivered.is_terminal

    def test_can_transition_to(self, make_order):
        order = make_order()
        assert order.can_transition_to(OrderStatus.PREPARING)
        assert not order.can_transition_to(OrderStatus.DELIVERED)

    def test_is_local(self, make_order):
        assert make_order(order_id="local-abc").is_local
        assert not make_order(order_id="ord-9").is_local

    def test_unknown_fields_are_ignored(self, make_order):
        data = make_order().model_dump(mode="json")
        data["added_in_a_later_release"] = True

        assert Order.model_validate(data).order_id == "ord-1"

    def test_tracking_number_format(self):
        now = datetime(2024, 3, 9, tzinfo=timezone.utc)
        number = Order.generate_tracking_number(now)

        assert re.fullmatch(r"HF-20240309-[0-9A-F]{6}", number)

    def test_str(self, make_order):
        assert str(make_order()) == "HF-20240115-0ORD-1 (confirmed)"


class TestOrderRecord:
    def test_flat_round_trip_keeps_metadata(self, make_order):
        record = OrderRecord(
            order=make_order(),
            pending=True,
            history=[
                StatusChange(
                    old_status=None,
                    new_status=OrderStatus.CONFIRMED,
                    actor_role=Role.CUSTOMER,
                    changed_at=datetime(2024, 1, 15, tzinfo=timezone.utc),
                )
            ],
        )

        flat = record.to_flat()
        restored = OrderRecord.from_flat(flat)

        assert flat["order_id"] == "ord-1"
        assert flat["pending"] is True
        assert restored == record

    def test_visible_follows_tombstone(self, make_order):
        record = OrderRecord(order=make_order())
        assert record.visible
        assert not record.model_copy(update={"tombstoned": True}).visible

    def test_status_change_str(self):
        change = StatusChange(
            old_status=OrderStatus.READY,
            new_status=OrderStatus.PICKED_UP,
            changed_at=datetime(2024, 1, 15, tzinfo=timezone.utc),
        )
        assert str(change) == "ready -> picked_up"
