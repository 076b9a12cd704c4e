"""Order DTOs for the facade.

Pydantic v2 data transfer objects; all are immutable (``frozen=True``).

- ``OrderDraft``: input for order creation, as produced by checkout.
- ``RoleFilter``: the role scope of a remote ``list()`` and of the feed.
- ``StatusUpdateResult``: typed outcome of ``update_order_status``.
- ``ConnectionHealth``: connectivity snapshot exposed to the UI.
"""

from __future__ import annotations

from decimal import Decimal
from typing import Dict, List, Optional

from pydantic import BaseModel, ConfigDict, field_validator, model_validator

from modules.orders.constants import OrderStatus
from modules.orders.exceptions import OrderError
from modules.orders.models import Order, OrderItem


class OrderDraft(BaseModel):
    """Immutable DTO for order creation requests.

    Validates:
    - ``items`` must contain at least one item.
    - ``fees`` must not be negative.
    """

    model_config = ConfigDict(frozen=True)

    cook_id: str
    customer_id: str
    items: List[OrderItem]
    delivery_address: str
    delivery_instructions: Optional[str] = None
    delivery_time: Optional[str] = None
    fees: Decimal = Decimal("0.00")

    @field_validator("items")
    @classmethod
    def items_must_not_be_empty(cls, v: List[OrderItem]) -> List[OrderItem]:
        if not v:
            raise ValueError("Order must have at least one item.")
        return v

    @field_validator("fees")
    @classmethod
    def fees_must_not_be_negative(cls, v: Decimal) -> Decimal:
        if v < 0:
            raise ValueError("Fees must not be negative.")
        return v

    @property
    def items_total(self) -> Decimal:
        return sum((item.subtotal for item in self.items), Decimal("0.00"))


class RoleFilter(BaseModel):
    """Role scope: at most one of ``cook_id`` / ``customer_id``.

    An empty filter is the unscoped admin view.
    """

    model_config = ConfigDict(frozen=True)

    cook_id: Optional[str] = None
    customer_id: Optional[str] = None

    @model_validator(mode="after")
    def single_scope(self):
        if self.cook_id is not None and self.customer_id is not None:
            raise ValueError("A role filter scopes by cook_id or customer_id, not both.")
        return self

    def matches(self, order: Order) -> bool:
        if self.cook_id is not None:
            return order.cook_id == self.cook_id
        if self.customer_id is not None:
            return order.customer_id == self.customer_id
        return True

    def to_query_params(self) -> Dict[str, str]:
        if self.cook_id is not None:
            return {"cook_id": self.cook_id}
        if self.customer_id is not None:
            return {"customer_id": self.customer_id}
        return {}


class StatusUpdateResult(BaseModel):
    """Outcome of a status update request.

    ``status`` is the status the caller should render: the new status on
    success, the unchanged one on rejection, the authoritative one after
    a conflict.  ``pending`` means the change is applied locally but not
    yet confirmed by the remote service.
    """

    model_config = ConfigDict(frozen=True, arbitrary_types_allowed=True)

    order_id: str
    status: Optional[OrderStatus]
    changed: bool = False
    pending: bool = False
    error: Optional[OrderError] = None

    @property
    def ok(self) -> bool:
        return self.error is None


class ConnectionHealth(BaseModel):
    """Connectivity snapshot."""

    model_config = ConfigDict(frozen=True)

    realtime_enabled: bool
    remote_reachable: bool
    pending_writes: int = 0

    @property
    def connected(self) -> bool:
        return self.realtime_enabled and self.remote_reachable
