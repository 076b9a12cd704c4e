"""Event bus contracts.

Order events are published synchronously on the event loop, after the
store write they describe.  Handlers must not block or await.
"""

from __future__ import annotations

from typing import Generic, Protocol, Type, TypeVar

from shared.domain.events import DomainEvent

E = TypeVar("E", bound=DomainEvent, contravariant=True)


class IEventHandler(Protocol, Generic[E]):
    def handle(self, event: E) -> None:
        """React to *event*.  Exceptions are logged by the bus."""
        ...


class IEventBus(Protocol):
    """Dispatches an event to the handlers subscribed to its exact type."""

    def publish(self, event: DomainEvent) -> None: ...

    def subscribe(self, event_class: Type[E], handler: IEventHandler[E]) -> None:
        """Register *handler*; subscribing the same handler twice is a no-op."""
        ...

    def unsubscribe(self, event_class: Type[E], handler: IEventHandler[E]) -> None: ...
