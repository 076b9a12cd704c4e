"""Composition root for the order facade.

Wires the adapters selected by configuration: the HTTP remote service
and the WebSocket feed when the backend is configured, the offline
adapters otherwise (the store then serves the cached snapshot only).
"""

from __future__ import annotations

from pathlib import Path
from typing import Optional, Tuple

import structlog

from config import settings
from modules.core.session import Session
from modules.orders.handlers import CookNotificationHandler, register_order_handlers
from modules.orders.realtime.interfaces import IRealtimeFeed
from modules.orders.realtime.offline import OfflineRealtimeFeed
from modules.orders.realtime.websocket_feed import WebSocketRealtimeFeed
from modules.orders.remote.http_service import HttpRemoteOrderService
from modules.orders.remote.interfaces import IRemoteOrderService
from modules.orders.remote.offline import OfflineRemoteOrderService
from modules.orders.repositories import OrderJsonRepository
from modules.orders.services import OrderFacade
from shared.domain.bus import IEventBus
from shared.infrastructure.bus import InMemoryEventBus

logger = structlog.get_logger(__name__)


def build_adapters() -> Tuple[IRemoteOrderService, IRealtimeFeed]:
    if not settings.remote_is_configured(settings.ORDERS_API_URL, settings.ORDERS_API_KEY):
        logger.warning("orders.offline_mode", reason="remote service not configured")
        return OfflineRemoteOrderService(), OfflineRealtimeFeed()

    remote = HttpRemoteOrderService(
        settings.ORDERS_API_URL,
        settings.ORDERS_API_KEY,
        timeout=settings.ORDERS_REQUEST_TIMEOUT,
    )
    if settings.ORDERS_REALTIME_URL:
        feed: IRealtimeFeed = WebSocketRealtimeFeed(
            settings.ORDERS_REALTIME_URL,
            api_key=settings.ORDERS_API_KEY,
            open_timeout=settings.ORDERS_REQUEST_TIMEOUT,
        )
    else:
        feed = OfflineRealtimeFeed()
    return remote, feed


def build_facade(
    session: Session,
    cache_dir: Optional[Path] = None,
    event_bus: Optional[IEventBus] = None,
) -> Tuple[OrderFacade, CookNotificationHandler]:
    """Return a facade for *session* and its cook notification inbox.

    Each session gets its own cache directory so one login never sees
    another's cached orders.
    """
    bus = event_bus or InMemoryEventBus()
    notifications = register_order_handlers(bus)
    remote, feed = build_adapters()
    store = OrderJsonRepository(
        Path(cache_dir or settings.ORDERS_CACHE_DIR) / f"{session.role.value}-{session.actor_id}"
    )
    facade = OrderFacade(
        session=session,
        store=store,
        remote=remote,
        feed=feed,
        event_bus=bus,
        reload_interval=settings.ORDERS_RELOAD_INTERVAL,
        poll_interval=settings.ORDERS_POLL_INTERVAL,
    )
    return facade, notifications
