"""Order domain constants.

Defines status and role choices, the valid status transitions of the
order lifecycle and which role may issue each target status.
"""

from __future__ import annotations

from enum import Enum


class OrderStatus(str, Enum):
    CONFIRMED = "confirmed"
    PREPARING = "preparing"
    READY = "ready"
    PICKED_UP = "picked_up"
    DELIVERED = "delivered"
    CANCELLED = "cancelled"


class Role(str, Enum):
    CUSTOMER = "customer"
    COOK = "cook"
    DELIVERY = "delivery"
    ADMIN = "admin"


VALID_TRANSITIONS: dict[OrderStatus, set[OrderStatus]] = {
    OrderStatus.CONFIRMED: {OrderStatus.PREPARING, OrderStatus.CANCELLED},
    OrderStatus.PREPARING: {OrderStatus.READY, OrderStatus.CANCELLED},
    OrderStatus.READY: {OrderStatus.PICKED_UP},
    OrderStatus.PICKED_UP: {OrderStatus.DELIVERED},
    OrderStatus.DELIVERED: set(),
    OrderStatus.CANCELLED: set(),
}

TERMINAL_STATES: set[OrderStatus] = {OrderStatus.DELIVERED, OrderStatus.CANCELLED}

# Roles allowed to request each target status.
STATUS_ISSUERS: dict[OrderStatus, set[Role]] = {
    OrderStatus.PREPARING: {Role.COOK},
    OrderStatus.READY: {Role.COOK},
    OrderStatus.PICKED_UP: {Role.DELIVERY},
    OrderStatus.DELIVERED: {Role.DELIVERY},
    OrderStatus.CANCELLED: {Role.CUSTOMER, Role.ADMIN},
}

# Ordinal position along the lifecycle, used when a record carries no
# ``last_modified`` marker.  Both terminal states share the last rank.
STATUS_RANK: dict[OrderStatus, int] = {
    OrderStatus.CONFIRMED: 0,
    OrderStatus.PREPARING: 1,
    OrderStatus.READY: 2,
    OrderStatus.PICKED_UP: 3,
    OrderStatus.DELIVERED: 4,
    OrderStatus.CANCELLED: 4,
}

LOCAL_ID_PREFIX = "local-"

TRACKING_NUMBER_PREFIX = "HF"
TRACKING_NUMBER_MAX_RETRIES = 5
