"""Domain events for the order lifecycle."""

from __future__ import annotations

from dataclasses import dataclass
from decimal import Decimal
from typing import Optional

from shared.domain.events import DomainEvent


@dataclass(frozen=True)
class OrderCreated(DomainEvent):
    """Raised when an order is placed (confirmed or queued offline)."""

    cook_id: str = ""
    customer_id: str = ""
    tracking_number: str = ""
    total_price: Decimal = Decimal("0.00")
    pending: bool = False


@dataclass(frozen=True)
class OrderStatusChanged(DomainEvent):
    """Raised when this actor moves an order to a new status."""

    old_status: Optional[str] = None
    new_status: str = ""
    pending: bool = False


@dataclass(frozen=True)
class OrderCancelled(DomainEvent):
    """Raised when this actor cancels an order."""


@dataclass(frozen=True)
class OrderDelivered(DomainEvent):
    """Raised when this actor marks an order delivered."""
