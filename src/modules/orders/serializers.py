"""Remote wire-format serializers.

The backend stores orders as snake_case rows (``total_amount``,
``created_at``, ``updated_at``, ``estimated_delivery_time`` and nested
``items`` with ``food_id`` / ``food_title``).  These helpers translate
between those rows and the domain models.  Unknown keys are ignored.
"""

from __future__ import annotations

from decimal import Decimal, InvalidOperation
from typing import Any, Dict, Optional

from pydantic import TypeAdapter, ValidationError

from modules.orders.dtos import OrderDraft
from modules.orders.models import Order, OrderItem
from modules.orders.realtime.interfaces import FeedEvent


class MalformedRecord(ValueError):
    """A remote row or feed envelope could not be mapped to the domain."""


_feed_event_adapter: TypeAdapter[FeedEvent] = TypeAdapter(FeedEvent)


def _decimal(value: Any, default: Optional[Decimal] = None) -> Optional[Decimal]:
    if value is None:
        return default
    try:
        return Decimal(str(value))
    except InvalidOperation as exc:
        raise MalformedRecord(f"Invalid amount {value!r}.") from exc


def item_from_row(row: Dict[str, Any]) -> OrderItem:
    if not isinstance(row, dict):
        raise MalformedRecord("Order item is not an object.")
    return OrderItem(
        id=str(row.get("id") or row.get("food_id")),
        title=row.get("food_title") or row.get("title") or "",
        price=_decimal(row.get("price"), Decimal("0.00")),
        quantity=row.get("quantity", 1),
        special_instructions=row.get("special_instructions"),
    )


def order_from_row(row: Dict[str, Any]) -> Order:
    """Build an ``Order`` from a backend row.

    ``fees`` is read when present; otherwise it is the difference between
    ``total_amount`` and the items total, floored at zero.

    Raises:
        MalformedRecord: required keys are missing or invalid.
    """
    if not isinstance(row, dict):
        raise MalformedRecord("Order row is not an object.")
    try:
        raw_items = row.get("items") or row.get("order_items") or []
        if not isinstance(raw_items, list):
            raise MalformedRecord("Order items are not a list.")
        items = [item_from_row(item) for item in raw_items]
        items_total = sum((item.subtotal for item in items), Decimal("0.00"))

        fees = _decimal(row.get("fees"))
        if fees is None:
            total_amount = _decimal(row.get("total_amount"), items_total)
            fees = max(total_amount - items_total, Decimal("0.00"))

        return Order(
            order_id=str(row["id"]),
            tracking_number=row["tracking_number"],
            cook_id=str(row["cook_id"]),
            customer_id=str(row["customer_id"]),
            items=items,
            status=row.get("status", "confirmed"),
            fees=fees,
            delivery_address=row.get("delivery_address") or "",
            delivery_instructions=row.get("delivery_instructions"),
            delivery_time=row.get("estimated_delivery_time"),
            actual_delivery_time=row.get("actual_delivery_time"),
            order_date=row["created_at"],
            last_modified=row.get("updated_at"),
        )
    except KeyError as exc:
        raise MalformedRecord(f"Order row is missing {exc.args[0]!r}.") from exc
    except ValidationError as exc:
        raise MalformedRecord(f"Order row is invalid: {exc.error_count()} error(s).") from exc


def order_to_row(order: Order) -> Dict[str, Any]:
    """Serialize an ``Order`` to a backend row (used by tests and fakes)."""
    return {
        "id": order.order_id,
        "tracking_number": order.tracking_number,
        "cook_id": order.cook_id,
        "customer_id": order.customer_id,
        "status": order.status.value,
        "total_amount": str(order.total_price),
        "fees": str(order.fees),
        "delivery_address": order.delivery_address,
        "delivery_instructions": order.delivery_instructions,
        "estimated_delivery_time": order.delivery_time,
        "actual_delivery_time": (
            order.actual_delivery_time.isoformat() if order.actual_delivery_time else None
        ),
        "created_at": order.order_date.isoformat(),
        "updated_at": order.last_modified.isoformat() if order.last_modified else None,
        "items": [
            {
                "id": item.id,
                "food_id": item.id,
                "food_title": item.title,
                "price": str(item.price),
                "quantity": item.quantity,
                "special_instructions": item.special_instructions,
            }
            for item in order.items
        ],
    }


def draft_to_row(draft: OrderDraft, tracking_number: str) -> Dict[str, Any]:
    """Serialize an ``OrderDraft`` as the body of ``POST /orders``."""
    return {
        "tracking_number": tracking_number,
        "cook_id": draft.cook_id,
        "customer_id": draft.customer_id,
        "status": "confirmed",
        "total_amount": str(draft.items_total + draft.fees),
        "fees": str(draft.fees),
        "delivery_address": draft.delivery_address,
        "delivery_instructions": draft.delivery_instructions,
        "estimated_delivery_time": draft.delivery_time,
        "items": [
            {
                "food_id": item.id,
                "food_title": item.title,
                "price": str(item.price),
                "quantity": item.quantity,
                "special_instructions": item.special_instructions,
            }
            for item in draft.items
        ],
    }


def feed_event_from_envelope(envelope: Dict[str, Any]) -> FeedEvent:
    """Parse a realtime envelope ``{kind, order_id, snapshot}``.

    Raises:
        MalformedRecord: unknown ``kind`` or an unusable snapshot.
    """
    raw_snapshot = envelope.get("snapshot")
    snapshot = order_from_row(raw_snapshot) if raw_snapshot else None
    order_id = envelope.get("order_id") or (snapshot.order_id if snapshot else None)
    try:
        return _feed_event_adapter.validate_python(
            {
                "kind": envelope.get("kind"),
                "order_id": order_id,
                "snapshot": snapshot,
            }
        )
    except ValidationError as exc:
        raise MalformedRecord(f"Feed envelope is invalid: {exc.error_count()} error(s).") from exc
