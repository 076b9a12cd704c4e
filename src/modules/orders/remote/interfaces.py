"""Remote order service contract.

The authoritative backend.  Every call is asynchronous and may fail
transiently; the synchronization core never assumes success.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from typing import TYPE_CHECKING, List

if TYPE_CHECKING:
    from modules.orders.constants import OrderStatus
    from modules.orders.dtos import OrderDraft, RoleFilter
    from modules.orders.models import Order


class IRemoteOrderService(ABC):
    """Contract consumed by ``OrderFacade`` and ``ReconciliationEngine``.

    Every method may raise ``NetworkError``.
    """

    @abstractmethod
    async def create(self, draft: OrderDraft, tracking_number: str) -> Order:
        """Create an order at status ``confirmed``.

        Raises:
            RemoteValidationError: the backend rejected the draft.
        """

    @abstractmethod
    async def update_status(self, order_id: str, new_status: OrderStatus) -> Order:
        """Move an order to *new_status*.

        Raises:
            ConflictError: the order was already moved to an incompatible state.
            RemoteValidationError: the backend rejected the change.
        """

    @abstractmethod
    async def list(self, role_filter: RoleFilter) -> List[Order]:
        """List every order visible under *role_filter*."""

    @abstractmethod
    async def get(self, order_id: str) -> Order:
        """Fetch the authoritative record of one order.

        Raises:
            RemoteValidationError: the order does not exist remotely.
        """

    async def aclose(self) -> None:
        """Release transport resources."""
