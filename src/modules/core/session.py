"""Actor session.

The explicit "who is using the core" object.  It scopes the order store,
the feed subscription and the reload timer to one login; nothing in the
order modules reads a global current user.
"""

from __future__ import annotations

import uuid

import structlog
from pydantic import BaseModel, ConfigDict, Field

from modules.orders.constants import Role
from modules.orders.dtos import RoleFilter


class Session(BaseModel):
    """Immutable identity of the current actor.

    ``actor_id`` is the cook id for cooks, the customer id for customers
    and the id of the kitchen delivered for by delivery actors.  Admins
    are unscoped.
    """

    model_config = ConfigDict(frozen=True)

    actor_id: str
    role: Role
    session_id: str = Field(default_factory=lambda: str(uuid.uuid4()))

    @property
    def role_filter(self) -> RoleFilter:
        if self.role in (Role.COOK, Role.DELIVERY):
            return RoleFilter(cook_id=self.actor_id)
        if self.role == Role.CUSTOMER:
            return RoleFilter(customer_id=self.actor_id)
        return RoleFilter()

    def bind_log_context(self) -> None:
        """Bind the session identity into every subsequent log line."""
        structlog.contextvars.bind_contextvars(
            session_id=self.session_id,
            actor_id=self.actor_id,
            role=self.role.value,
        )

    def clear_log_context(self) -> None:
        structlog.contextvars.unbind_contextvars("session_id", "actor_id", "role")
