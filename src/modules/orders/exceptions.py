"""Order domain exceptions.

Adapters raise these; ``OrderFacade`` absorbs the transient ones and
returns the validation and conflict ones inside ``StatusUpdateResult``
so callers can render role-appropriate messaging.
"""

from __future__ import annotations

from typing import TYPE_CHECKING, Optional

if TYPE_CHECKING:
    from modules.orders.models import Order


class OrderError(Exception):
    """Base class for order synchronization errors."""


class OrderNotFound(OrderError):
    """The requested order is not known to the local store."""


class InvalidTransition(OrderError):
    """The requested status change is not an edge of the lifecycle graph."""


class UnauthorizedTransition(InvalidTransition):
    """The actor's role may not issue the requested status."""


class NetworkError(OrderError):
    """Transient failure talking to the remote service or feed."""


class ConflictError(OrderError):
    """The remote order was already moved to an incompatible state.

    ``current`` carries the authoritative snapshot when the remote
    service returned one.
    """

    def __init__(self, message: str, current: Optional[Order] = None) -> None:
        super().__init__(message)
        self.current = current


class RemoteValidationError(OrderError):
    """The remote service rejected the request as invalid."""


class StorageError(OrderError):
    """Writing the local cache failed."""


class FeedDisconnected(NetworkError):
    """The realtime feed dropped or could not be attached."""
