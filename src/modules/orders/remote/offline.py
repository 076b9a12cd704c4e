"""Remote service used when the backend is not configured.

Every call fails with ``NetworkError`` so the core runs from the local
cache only: reads are served from the store and writes are queued.
"""

from __future__ import annotations

from typing import List

from modules.orders.constants import OrderStatus
from modules.orders.dtos import OrderDraft, RoleFilter
from modules.orders.exceptions import NetworkError
from modules.orders.models import Order
from modules.orders.remote.interfaces import IRemoteOrderService

_MESSAGE = "Remote order service is not configured."


class OfflineRemoteOrderService(IRemoteOrderService):
    async def create(self, draft: OrderDraft, tracking_number: str) -> Order:
        raise NetworkError(_MESSAGE)

    async def update_status(self, order_id: str, new_status: OrderStatus) -> Order:
        raise NetworkError(_MESSAGE)

    async def list(self, role_filter: RoleFilter) -> List[Order]:
        raise NetworkError(_MESSAGE)

    async def get(self, order_id: str) -> Order:
        raise NetworkError(_MESSAGE)
