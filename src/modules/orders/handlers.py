"""Event handlers for order domain events."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import List

import structlog

from modules.orders.events import (
    OrderCancelled,
    OrderCreated,
    OrderDelivered,
    OrderStatusChanged,
)
from shared.domain.bus import IEventBus, IEventHandler

logger = structlog.get_logger(__name__)


class OrderCreatedHandler(IEventHandler[OrderCreated]):
    def handle(self, event: OrderCreated) -> None:
        logger.info(
            f"Processing creation of order {event.aggregate_id}",
            order_id=event.aggregate_id,
            pending=event.pending,
        )


class OrderCancelledHandler(IEventHandler[OrderCancelled]):
    def handle(self, event: OrderCancelled) -> None:
        logger.info(
            f"Processing cancellation of order {event.aggregate_id}",
            order_id=event.aggregate_id,
        )


class OrderDeliveredHandler(IEventHandler[OrderDelivered]):
    def handle(self, event: OrderDelivered) -> None:
        logger.info(
            f"Processing delivery of order {event.aggregate_id}",
            order_id=event.aggregate_id,
        )


class OrderStatusChangedHandler(IEventHandler[OrderStatusChanged]):
    def handle(self, event: OrderStatusChanged) -> None:
        logger.info(
            f"Processing status change of order {event.aggregate_id}",
            order_id=event.aggregate_id,
            old_status=event.old_status,
            new_status=event.new_status,
        )


@dataclass(frozen=True)
class CookNotification:
    cook_id: str
    order_id: str
    tracking_number: str
    message: str
    created_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    is_read: bool = False


class CookNotificationHandler(IEventHandler[OrderCreated]):
    """Keeps an in-memory inbox of "new order" notifications per cook."""

    def __init__(self) -> None:
        self._inbox: List[CookNotification] = []

    def handle(self, event: OrderCreated) -> None:
        notification = CookNotification(
            cook_id=event.cook_id,
            order_id=event.aggregate_id,
            tracking_number=event.tracking_number,
            message=(
                f"New order received! Order #{event.tracking_number} "
                f"for ${event.total_price:.2f}"
            ),
        )
        self._inbox.insert(0, notification)
        logger.info("notification.cook_new_order", cook_id=event.cook_id, order_id=event.aggregate_id)

    def for_cook(self, cook_id: str) -> List[CookNotification]:
        return [n for n in self._inbox if n.cook_id == cook_id]


def register_order_handlers(bus: IEventBus) -> CookNotificationHandler:
    """Subscribe the order handlers to *bus*; returns the notification inbox."""
    notifications = CookNotificationHandler()
    bus.subscribe(OrderCreated, OrderCreatedHandler())
    bus.subscribe(OrderCreated, notifications)
    bus.subscribe(OrderStatusChanged, OrderStatusChangedHandler())
    bus.subscribe(OrderCancelled, OrderCancelledHandler())
    bus.subscribe(OrderDelivered, OrderDeliveredHandler())
    return notifications
