"""Feed used when no realtime endpoint is configured.

Every subscription attempt fails, so the engine stays on the poll path
and reports ``realtime_enabled = False``.
"""

from __future__ import annotations

from modules.orders.dtos import RoleFilter
from modules.orders.exceptions import FeedDisconnected
from modules.orders.realtime.interfaces import FeedSubscription, IRealtimeFeed


class OfflineRealtimeFeed(IRealtimeFeed):
    async def subscribe(self, role_filter: RoleFilter) -> FeedSubscription:
        raise FeedDisconnected("Realtime feed is not configured.")
