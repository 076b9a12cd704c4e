"""WebSocket implementation of the realtime order feed.

Connects to ``{realtime_url}?cook_id=…`` (or ``customer_id=…``), sends a
subscribe frame and yields one ``FeedEvent`` per text frame.  Frames are
envelopes ``{"kind", "order_id", "snapshot"}`` with the snapshot in the
backend row format.
"""

from __future__ import annotations

import json
from typing import Any, Dict, Optional
from urllib.parse import urlencode

import structlog
from websockets.asyncio.client import ClientConnection, connect
from websockets.exceptions import ConnectionClosed, InvalidHandshake, InvalidURI

from modules.orders.dtos import RoleFilter
from modules.orders.exceptions import FeedDisconnected
from modules.orders.realtime.interfaces import FeedEvent, FeedSubscription, IRealtimeFeed
from modules.orders.serializers import MalformedRecord, feed_event_from_envelope

logger = structlog.get_logger(__name__)


class WebSocketSubscription(FeedSubscription):
    def __init__(self, connection: ClientConnection, role_filter: RoleFilter) -> None:
        self._connection = connection
        self._role_filter = role_filter
        self._closed = False

    async def __anext__(self) -> FeedEvent:
        while True:
            if self._closed:
                raise StopAsyncIteration
            try:
                frame = await self._connection.recv()
            except ConnectionClosed as exc:
                if self._closed:
                    raise StopAsyncIteration
                raise FeedDisconnected(f"Realtime channel closed: {exc}") from exc

            event = self._parse(frame)
            if event is not None:
                return event

    def _parse(self, frame: Any) -> Optional[FeedEvent]:
        try:
            envelope = json.loads(frame)
            if not isinstance(envelope, dict):
                raise MalformedRecord("Feed frame is not an object.")
            if envelope.get("type") in ("subscribed", "heartbeat"):
                return None
            return feed_event_from_envelope(envelope)
        except (ValueError, TypeError, AttributeError) as exc:
            logger.warning("realtime.frame_skipped", reason=str(exc))
            return None

    async def aclose(self) -> None:
        if self._closed:
            return
        self._closed = True
        await self._connection.close()
        logger.info("realtime.unsubscribed", **self._role_filter.to_query_params())


class WebSocketRealtimeFeed(IRealtimeFeed):
    """Realtime feed over a persistent WebSocket channel."""

    def __init__(self, url: str, api_key: str = "", open_timeout: float = 10.0) -> None:
        self._url = url
        self._api_key = api_key
        self._open_timeout = open_timeout

    def _channel_url(self, role_filter: RoleFilter) -> str:
        params = role_filter.to_query_params()
        if not params:
            return self._url
        separator = "&" if "?" in self._url else "?"
        return f"{self._url}{separator}{urlencode(params)}"

    def _headers(self) -> Dict[str, str]:
        if not self._api_key:
            return {}
        return {"apikey": self._api_key, "Authorization": f"Bearer {self._api_key}"}

    async def subscribe(self, role_filter: RoleFilter) -> FeedSubscription:
        url = self._channel_url(role_filter)
        try:
            connection = await connect(
                url,
                additional_headers=self._headers(),
                open_timeout=self._open_timeout,
            )
            await connection.send(
                json.dumps(
                    {
                        "type": "subscribe",
                        "table": "orders",
                        "filter": role_filter.to_query_params(),
                    }
                )
            )
        except (OSError, TimeoutError, InvalidURI, InvalidHandshake, ConnectionClosed) as exc:
            raise FeedDisconnected(f"Cannot attach realtime channel: {exc}") from exc

        logger.info("realtime.subscribed", **role_filter.to_query_params())
        return WebSocketSubscription(connection, role_filter)
