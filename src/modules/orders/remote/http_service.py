"""HTTP implementation of the remote order service.

Endpoints (relative to the configured base URL):

- ``POST   /orders``                     create, returns the stored row
- ``PATCH  /orders/{id}``                ``{"status": …}``, returns the row
- ``GET    /orders?cook_id=…``           role-scoped list
- ``GET    /orders/{id}``                authoritative single row

Error mapping:

- transport errors, timeouts and 5xx  -> ``NetworkError``
- 409                                 -> ``ConflictError`` (with ``current``
  when the body carries the authoritative row)
- other 4xx and unusable bodies       -> ``RemoteValidationError``
"""

from __future__ import annotations

from typing import Any, Dict, List, Optional

import httpx
import structlog

from modules.orders.constants import OrderStatus
from modules.orders.dtos import OrderDraft, RoleFilter
from modules.orders.exceptions import ConflictError, NetworkError, RemoteValidationError
from modules.orders.models import Order
from modules.orders.remote.interfaces import IRemoteOrderService
from modules.orders.serializers import MalformedRecord, draft_to_row, order_from_row

logger = structlog.get_logger(__name__)


class HttpRemoteOrderService(IRemoteOrderService):
    """Remote order service over HTTP/JSON using ``httpx.AsyncClient``."""

    def __init__(
        self,
        base_url: str,
        api_key: str,
        timeout: float = 10.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self._client = httpx.AsyncClient(
            base_url=base_url.rstrip("/"),
            headers={
                "apikey": api_key,
                "Authorization": f"Bearer {api_key}",
                "Accept": "application/json",
            },
            timeout=timeout,
            transport=transport,
        )

    # ------------------------------------------------------------------
    # Commands
    # ------------------------------------------------------------------

    async def create(self, draft: OrderDraft, tracking_number: str) -> Order:
        body = await self._request("POST", "/orders", json=draft_to_row(draft, tracking_number))
        order = self._to_order(body)
        logger.info("remote.order_created", order_id=order.order_id)
        return order

    async def update_status(self, order_id: str, new_status: OrderStatus) -> Order:
        body = await self._request(
            "PATCH", f"/orders/{order_id}", json={"status": new_status.value}
        )
        return self._to_order(body)

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    async def list(self, role_filter: RoleFilter) -> List[Order]:
        body = await self._request("GET", "/orders", params=role_filter.to_query_params())
        rows = body.get("orders") if isinstance(body, dict) else body
        if not isinstance(rows, list):
            raise RemoteValidationError("GET /orders did not return a list of rows.")
        orders: List[Order] = []
        for row in rows:
            try:
                orders.append(order_from_row(row))
            except MalformedRecord as exc:
                row_id = row.get("id") if isinstance(row, dict) else None
                logger.warning("remote.row_skipped", reason=str(exc), row_id=row_id)
        return orders

    async def get(self, order_id: str) -> Order:
        body = await self._request("GET", f"/orders/{order_id}")
        return self._to_order(body)

    async def aclose(self) -> None:
        await self._client.aclose()

    # ------------------------------------------------------------------
    # Transport helpers
    # ------------------------------------------------------------------

    async def _request(self, method: str, path: str, **kwargs: Any) -> Any:
        log = logger.bind(method=method, path=path)
        try:
            response = await self._client.request(method, path, **kwargs)
        except httpx.TransportError as exc:
            log.warning("remote.transport_error", error=str(exc))
            raise NetworkError(f"{method} {path} failed: {exc}") from exc

        if response.status_code >= 500:
            log.warning("remote.server_error", status_code=response.status_code)
            raise NetworkError(f"{method} {path} returned {response.status_code}.")

        if response.status_code == 409:
            current = self._conflict_snapshot(response)
            log.info("remote.conflict", has_snapshot=current is not None)
            raise ConflictError(f"{method} {path} conflicted.", current=current)

        if response.status_code >= 400:
            log.warning("remote.rejected", status_code=response.status_code)
            raise RemoteValidationError(
                f"{method} {path} rejected with {response.status_code}: {response.text}"
            )

        try:
            return response.json()
        except ValueError as exc:
            raise RemoteValidationError(f"{method} {path} returned a non-JSON body.") from exc

    @staticmethod
    def _single_row(body: Any) -> Dict[str, Any]:
        # Some backends return the affected rows as a one-element list.
        if isinstance(body, list):
            if len(body) != 1:
                raise MalformedRecord(f"Expected one row, got {len(body)}.")
            body = body[0]
        if not isinstance(body, dict):
            raise MalformedRecord("Expected a JSON object.")
        return body

    def _to_order(self, body: Any) -> Order:
        try:
            return order_from_row(self._single_row(body))
        except MalformedRecord as exc:
            raise RemoteValidationError(str(exc)) from exc

    def _conflict_snapshot(self, response: httpx.Response) -> Optional[Order]:
        try:
            body = response.json()
        except ValueError:
            return None
        row = body.get("current") if isinstance(body, dict) else None
        if not row:
            return None
        try:
            return order_from_row(row)
        except MalformedRecord:
            return None
