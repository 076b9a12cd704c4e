"""Realtime feed contract.

A feed hands out role-scoped subscriptions.  A subscription is a lazy,
infinite, non-restartable async iterator of ``FeedEvent`` values in the
order the transport emitted them.  It holds a live channel and must be
released with ``aclose()`` (or by leaving its ``async with`` block) when
the session ends.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from typing import TYPE_CHECKING, Annotated, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field

from modules.orders.models import Order

if TYPE_CHECKING:
    from modules.orders.dtos import RoleFilter


class InsertEvent(BaseModel):
    model_config = ConfigDict(frozen=True)

    kind: Literal["insert"] = "insert"
    order_id: str
    snapshot: Order


class UpdateEvent(BaseModel):
    model_config = ConfigDict(frozen=True)

    kind: Literal["update"] = "update"
    order_id: str
    snapshot: Order


class DeleteEvent(BaseModel):
    model_config = ConfigDict(frozen=True)

    kind: Literal["delete"] = "delete"
    order_id: str
    snapshot: Optional[Order] = None


FeedEvent = Annotated[
    Union[InsertEvent, UpdateEvent, DeleteEvent], Field(discriminator="kind")
]


class FeedSubscription(ABC):
    """Scoped handle on one feed channel.

    Iterating raises ``FeedDisconnected`` when the channel drops.
    """

    def __aiter__(self) -> FeedSubscription:
        return self

    @abstractmethod
    async def __anext__(self) -> FeedEvent:
        """Wait for the next event."""

    @abstractmethod
    async def aclose(self) -> None:
        """Release the channel.  Safe to call more than once."""

    async def __aenter__(self) -> FeedSubscription:
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.aclose()


class IRealtimeFeed(ABC):
    @abstractmethod
    async def subscribe(self, role_filter: RoleFilter) -> FeedSubscription:
        """Open a subscription scoped to *role_filter*.

        Raises:
            FeedDisconnected: the channel could not be attached.
        """
