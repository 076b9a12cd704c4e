"""Order lifecycle state machine.

Pure validation of status transitions: no I/O, no logging, never raises.
Callers receive a ``TransitionOutcome`` and decide what to do with it.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Optional

from modules.orders.constants import (
    STATUS_ISSUERS,
    STATUS_RANK,
    TERMINAL_STATES,
    VALID_TRANSITIONS,
    OrderStatus,
    Role,
)
from modules.orders.exceptions import InvalidTransition, UnauthorizedTransition


@dataclass(frozen=True)
class TransitionOutcome:
    status: OrderStatus
    changed: bool
    error: Optional[InvalidTransition] = None

    @property
    def ok(self) -> bool:
        return self.error is None


def transition(
    current: OrderStatus, requested: OrderStatus, actor_role: Role
) -> TransitionOutcome:
    """Validate moving an order from *current* to *requested*.

    Rules, in order:
    1. ``requested == current`` is an idempotent no-op success.
    2. Nothing leaves a terminal state.
    3. The edge must exist in ``VALID_TRANSITIONS``.
    4. The actor's role must be allowed to issue *requested*.

    On rejection ``status`` is *current*.
    """
    if requested == current:
        return TransitionOutcome(status=current, changed=False)

    if current in TERMINAL_STATES:
        return TransitionOutcome(
            status=current,
            changed=False,
            error=InvalidTransition(
                f"Order is {current.value}; no further transitions are allowed."
            ),
        )

    if requested not in VALID_TRANSITIONS.get(current, set()):
        return TransitionOutcome(
            status=current,
            changed=False,
            error=InvalidTransition(
                f"Cannot transition from {current.value} to {requested.value}."
            ),
        )

    if actor_role not in STATUS_ISSUERS.get(requested, set()):
        return TransitionOutcome(
            status=current,
            changed=False,
            error=UnauthorizedTransition(
                f"Role {actor_role.value} may not set status {requested.value}."
            ),
        )

    return TransitionOutcome(status=requested, changed=True)


def status_rank(status: OrderStatus) -> int:
    """Ordinal position of *status* along the lifecycle."""
    return STATUS_RANK[status]
