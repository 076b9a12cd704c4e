"""Order, OrderItem, StatusChange and OrderRecord models.

Invariants implemented:
- An order has at least one item; every item quantity is at least 1.
- ``total_price`` is always ``Σ(price × quantity) + fees`` (derived, never
  stored on its own).
- Models are immutable (``frozen=True``); changes go through
  ``model_copy`` so a cached record is never mutated in place.
- Unknown fields are ignored on read so older builds can load records
  written by newer ones.

``OrderRecord`` wraps an ``Order`` with the local synchronization
metadata the store keeps next to it: the optimistic ``pending`` flag, the
delete ``tombstoned`` flag and the status history.
"""

from __future__ import annotations

import secrets
from datetime import datetime, timezone
from decimal import Decimal
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, computed_field, field_validator

from modules.orders.constants import (
    LOCAL_ID_PREFIX,
    TERMINAL_STATES,
    TRACKING_NUMBER_PREFIX,
    VALID_TRANSITIONS,
    OrderStatus,
    Role,
)


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def as_utc(value: Optional[datetime]) -> Optional[datetime]:
    """Naive timestamps are read as UTC."""
    if value is None or value.tzinfo is not None:
        return value
    return value.replace(tzinfo=timezone.utc)


class OrderItem(BaseModel):
    """A single line of an order.

    ``price`` is the unit price snapshot taken at checkout.
    """

    model_config = ConfigDict(frozen=True, extra="ignore")

    id: str
    title: str
    price: Decimal
    quantity: int = 1
    special_instructions: Optional[str] = None

    @field_validator("quantity")
    @classmethod
    def quantity_must_be_positive(cls, v: int) -> int:
        if v < 1:
            raise ValueError("Quantity must be at least 1.")
        return v

    @field_validator("price")
    @classmethod
    def price_must_not_be_negative(cls, v: Decimal) -> Decimal:
        if v < 0:
            raise ValueError("Price must not be negative.")
        return v

    @property
    def subtotal(self) -> Decimal:
        return self.price * self.quantity


class Order(BaseModel):
    """Order aggregate as seen by the current actor.

    ``order_id`` is assigned by the remote service; orders created while
    offline carry a provisional ``local-`` id until the server confirms
    them.  ``last_modified`` is the version marker used by reconciliation.
    """

    model_config = ConfigDict(frozen=True, extra="ignore")

    order_id: str
    tracking_number: str
    cook_id: str
    customer_id: str
    items: List[OrderItem]
    status: OrderStatus = OrderStatus.CONFIRMED
    fees: Decimal = Decimal("0.00")
    delivery_address: str
    delivery_instructions: Optional[str] = None
    delivery_time: Optional[str] = None
    actual_delivery_time: Optional[datetime] = None
    order_date: datetime
    last_modified: Optional[datetime] = None

    @field_validator("order_date", "last_modified", "actual_delivery_time")
    @classmethod
    def timestamps_are_utc(cls, v: Optional[datetime]) -> Optional[datetime]:
        return as_utc(v)

    @field_validator("items")
    @classmethod
    def items_must_not_be_empty(cls, v: List[OrderItem]) -> List[OrderItem]:
        if not v:
            raise ValueError("Order must have at least one item.")
        return v

    # ------------------------------------------------------------------
    # Pricing
    # ------------------------------------------------------------------

    @property
    def items_total(self) -> Decimal:
        return sum((item.subtotal for item in self.items), Decimal("0.00"))

    @computed_field  # type: ignore[prop-decorator]
    @property
    def total_price(self) -> Decimal:
        return self.items_total + self.fees

    # ------------------------------------------------------------------
    # State Machine helpers
    # ------------------------------------------------------------------

    @property
    def is_terminal(self) -> bool:
        """Return ``True`` if the order is in a terminal state."""
        return self.status in TERMINAL_STATES

    @property
    def is_local(self) -> bool:
        """Return ``True`` while the order only has a provisional id."""
        return self.order_id.startswith(LOCAL_ID_PREFIX)

    def can_transition_to(self, new_status: OrderStatus) -> bool:
        """Check whether transitioning to *new_status* is a graph edge."""
        return new_status in VALID_TRANSITIONS.get(self.status, set())

    def with_status(self, status: OrderStatus, at: Optional[datetime] = None) -> Order:
        """Return a copy moved to *status* and stamped with a new version."""
        at = at or utcnow()
        update: Dict[str, Any] = {"status": status, "last_modified": at}
        if status == OrderStatus.DELIVERED and self.actual_delivery_time is None:
            update["actual_delivery_time"] = at
        return self.model_copy(update=update)

    # ------------------------------------------------------------------
    # Identifiers
    # ------------------------------------------------------------------

    @staticmethod
    def generate_tracking_number(now: Optional[datetime] = None) -> str:
        """Generate a human-readable tracking number: ``HF-YYYYMMDD-XXXXXX``."""
        now = now or utcnow()
        suffix = secrets.token_hex(3).upper()
        return f"{TRACKING_NUMBER_PREFIX}-{now:%Y%m%d}-{suffix}"

    def __str__(self) -> str:
        return f"{self.tracking_number} ({self.status.value})"


class StatusChange(BaseModel):
    """Append-only audit entry for one status transition.

    ``actor_role`` is ``None`` when the change arrived from another actor
    through the remote service or the realtime feed.
    """

    model_config = ConfigDict(frozen=True, extra="ignore")

    old_status: Optional[OrderStatus]
    new_status: OrderStatus
    actor_role: Optional[Role] = None
    changed_at: datetime

    @field_validator("changed_at")
    @classmethod
    def changed_at_is_utc(cls, v: datetime) -> datetime:
        return as_utc(v)

    def __str__(self) -> str:
        old = self.old_status.value if self.old_status else "-"
        return f"{old} -> {self.new_status.value}"


class OrderRecord(BaseModel):
    """An ``Order`` plus the local synchronization metadata."""

    model_config = ConfigDict(frozen=True, extra="ignore")

    order: Order
    pending: bool = False
    tombstoned: bool = False
    history: List[StatusChange] = []

    @property
    def order_id(self) -> str:
        return self.order.order_id

    @property
    def visible(self) -> bool:
        return not self.tombstoned

    def to_flat(self) -> Dict[str, Any]:
        """Serialize as one flat JSON record keyed by ``order_id``."""
        data = self.order.model_dump(mode="json")
        data["pending"] = self.pending
        data["tombstoned"] = self.tombstoned
        data["history"] = [change.model_dump(mode="json") for change in self.history]
        return data

    @classmethod
    def from_flat(cls, data: Dict[str, Any]) -> OrderRecord:
        return cls(
            order=Order.model_validate(data),
            pending=bool(data.get("pending", False)),
            tombstoned=bool(data.get("tombstoned", False)),
            history=[StatusChange.model_validate(h) for h in data.get("history", [])],
        )
