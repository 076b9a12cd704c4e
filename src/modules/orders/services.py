"""Order facade (Use Cases).

The single public surface consumed by UI collaborators: create, update,
role/status queries, refresh and connection health.

Mutations follow an explicit optimistic-apply / rollback protocol:
1. Validate the transition locally (``InvalidTransition`` never reaches
   the network).
2. Apply the change to the store as ``pending``.
3. Call the remote service.
4. Confirm with the server snapshot, queue a retry on ``NetworkError``,
   roll back on a hard rejection, or roll back and adopt the
   authoritative record on ``ConflictError``.

Reads are pure filtered views over the store; they never block on I/O.
Every store write goes through ``ReconciliationEngine``.
"""

from __future__ import annotations

import asyncio
from collections import defaultdict
from typing import Any, Dict, List, Mapping, Optional, Union

import structlog
import uuid6

from modules.core.session import Session
from modules.orders.constants import (
    LOCAL_ID_PREFIX,
    TRACKING_NUMBER_MAX_RETRIES,
    OrderStatus,
)
from modules.orders.dtos import ConnectionHealth, OrderDraft, StatusUpdateResult
from modules.orders.events import (
    OrderCancelled,
    OrderCreated,
    OrderDelivered,
    OrderStatusChanged,
)
from modules.orders.exceptions import (
    ConflictError,
    NetworkError,
    OrderNotFound,
    RemoteValidationError,
)
from modules.orders.models import Order, OrderRecord, StatusChange, utcnow
from modules.orders.outbox import PendingWriteOutbox
from modules.orders.realtime.interfaces import IRealtimeFeed
from modules.orders.reconciliation import OptimisticWrite, ReconciliationEngine
from modules.orders.remote.interfaces import IRemoteOrderService
from modules.orders.repositories.interfaces import IOrderStore
from modules.orders.state_machine import transition
from shared.domain.bus import IEventBus
from shared.infrastructure.bus import InMemoryEventBus

logger = structlog.get_logger(__name__)


class OrderFacade:
    """Session-scoped entry point to the order synchronization core.

    Receives its collaborators via constructor injection (DIP).  Use as
    an async context manager so the feed subscription and the reload
    timer are released when the session ends::

        async with OrderFacade(session, store, remote, feed) as orders:
            order_id = await orders.create_order(draft)
    """

    def __init__(
        self,
        session: Session,
        store: IOrderStore,
        remote: IRemoteOrderService,
        feed: IRealtimeFeed,
        event_bus: Optional[IEventBus] = None,
        reload_interval: float = 30.0,
        poll_interval: float = 5.0,
    ) -> None:
        self._session = session
        self._store = store
        self._remote = remote
        self._bus = event_bus or InMemoryEventBus()
        self._outbox = PendingWriteOutbox(store)
        self._engine = ReconciliationEngine(
            store=store,
            remote=remote,
            feed=feed,
            role_filter=session.role_filter,
            outbox=self._outbox,
            reload_interval=reload_interval,
            poll_interval=poll_interval,
        )
        self._locks: Dict[str, asyncio.Lock] = defaultdict(asyncio.Lock)
        self._open = False
        self._closed = False

    @property
    def session(self) -> Session:
        return self._session

    @property
    def engine(self) -> ReconciliationEngine:
        return self._engine

    # ------------------------------------------------------------------
    # Session lifecycle
    # ------------------------------------------------------------------

    async def start(self) -> None:
        """Load the cache and attach the feed and the reload timer.

        Raises:
            RuntimeError: the facade was closed; build a new one instead.
        """
        if self._open:
            return
        if self._closed:
            raise RuntimeError("Order session is closed.")
        self._session.bind_log_context()
        self._store.load()
        self._outbox.load()
        self._open = True
        await self._engine.start()
        logger.info("orders.session_opened", cached=len(self._store.list()))

    async def close(self) -> None:
        """End the session for good: stop the engine, release the remote client."""
        if not self._open:
            return
        self._open = False
        self._closed = True
        await self._engine.stop()
        await self._remote.aclose()
        logger.info("orders.session_closed", pending_writes=len(self._outbox))
        self._session.clear_log_context()

    async def __aenter__(self) -> OrderFacade:
        await self.start()
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.close()

    def _ensure_open(self) -> None:
        if not self._open:
            raise RuntimeError("Order session is closed.")

    # ------------------------------------------------------------------
    # Commands
    # ------------------------------------------------------------------

    async def create_order(self, draft: Union[OrderDraft, Mapping[str, Any]]) -> str:
        """Place a new order and return its id.

        When the remote service is unreachable the order is stored locally
        under a provisional ``local-`` id, queued for retry and re-keyed to
        the server id once the retry succeeds.

        Raises:
            pydantic.ValidationError: the draft is invalid (e.g. no items).
            RemoteValidationError: the remote service rejected the draft.
        """
        self._ensure_open()
        if not isinstance(draft, OrderDraft):
            draft = OrderDraft.model_validate(draft)

        tracking_number = self._new_tracking_number()
        log = logger.bind(customer_id=draft.customer_id, cook_id=draft.cook_id)
        log.info("order.creation_started", tracking_number=tracking_number)

        generation = self._engine.generation
        try:
            order = await self._remote.create(draft, tracking_number)
        except NetworkError as exc:
            order = self._local_order(draft, tracking_number)
            self._engine.insert_local(order, self._session.role)
            self._outbox.enqueue(
                "create",
                order.order_id,
                {"draft": draft.model_dump(mode="json"), "tracking_number": tracking_number},
            )
            log.warning("order.created_offline", order_id=order.order_id, error=str(exc))
            self._publish_created(order, pending=True)
            return order.order_id

        if not self._engine.is_current(generation):
            log.info("order.create_result_discarded", order_id=order.order_id)
            return order.order_id

        self._engine.apply_remote(order, source="create")
        log.info("order.created", order_id=order.order_id)
        self._publish_created(order, pending=False)
        return order.order_id

    async def update_order_status(
        self, order_id: str, new_status: Union[OrderStatus, str]
    ) -> StatusUpdateResult:
        """Move an order to *new_status* on behalf of the session's actor.

        Never raises for validation or conflict outcomes; they come back in
        ``StatusUpdateResult.error``.
        """
        self._ensure_open()
        new_status = OrderStatus(new_status)
        record = self._visible_record(order_id)
        if record is None:
            return StatusUpdateResult(
                order_id=order_id,
                status=None,
                error=OrderNotFound(f"Order {order_id} not found."),
            )

        async with self._locks[record.order_id]:
            return await self._update_locked(record.order_id, new_status)

    async def _update_locked(self, order_id: str, new_status: OrderStatus) -> StatusUpdateResult:
        record = self._store.get_by_id(order_id)
        if record is None or record.tombstoned:
            return StatusUpdateResult(
                order_id=order_id,
                status=None,
                error=OrderNotFound(f"Order {order_id} not found."),
            )
        current = record.order
        log = logger.bind(
            order_id=order_id,
            current_status=current.status.value,
            new_status=new_status.value,
        )

        outcome = transition(current.status, new_status, self._session.role)
        if not outcome.ok:
            log.warning("order.invalid_transition", reason=str(outcome.error))
            return StatusUpdateResult(
                order_id=order_id, status=current.status, error=outcome.error
            )
        if not outcome.changed:
            log.info("order.status_unchanged")
            return StatusUpdateResult(
                order_id=order_id, status=current.status, pending=record.pending
            )

        write = self._engine.apply_optimistic(order_id, new_status, self._session.role)

        # Writes for an order with queued writes must wait their turn.
        if current.is_local or self._outbox.has_pending(order_id):
            return self._queue_write(write, reason="earlier writes pending")

        generation = self._engine.generation
        try:
            server_order = await self._remote.update_status(order_id, new_status)
        except NetworkError as exc:
            return self._queue_write(write, reason=str(exc))
        except ConflictError as exc:
            return await self._resolve_conflict(write, exc)
        except RemoteValidationError as exc:
            self._engine.rollback(write)
            log.warning("order.update_rejected", error=str(exc))
            return StatusUpdateResult(
                order_id=order_id, status=write.previous_status, error=exc
            )

        if not self._engine.is_current(generation):
            log.info("order.update_result_discarded")
            return StatusUpdateResult(order_id=order_id, status=server_order.status, changed=True)

        self._engine.confirm(write, server_order)
        log.info("order.status_updated")
        self._publish_status_change(write, pending=False)
        return StatusUpdateResult(
            order_id=order_id,
            status=server_order.status,
            changed=True,
            pending=self.is_pending(order_id),
        )

    def _queue_write(self, write: OptimisticWrite, reason: str) -> StatusUpdateResult:
        self._outbox.enqueue("update_status", write.order_id, write.to_payload())
        self._engine.release(write.order_id)
        logger.warning(
            "order.update_queued",
            order_id=write.order_id,
            new_status=write.status.value,
            reason=reason,
        )
        self._publish_status_change(write, pending=True)
        return StatusUpdateResult(
            order_id=write.order_id, status=write.status, changed=True, pending=True
        )

    async def _resolve_conflict(
        self, write: OptimisticWrite, exc: ConflictError
    ) -> StatusUpdateResult:
        self._engine.rollback(write)
        authoritative = await self._engine.resolve_conflict(write.order_id, exc)
        if authoritative is not None:
            status = authoritative.status
        else:
            status = self._store.get_by_id(write.order_id).order.status
        logger.warning(
            "order.update_conflict",
            order_id=write.order_id,
            requested=write.status.value,
            authoritative=status.value,
        )
        return StatusUpdateResult(order_id=write.order_id, status=status, error=exc)

    async def refresh_orders(self) -> bool:
        """Force a full reload; joins a reload already in flight.

        Returns ``False`` when the remote service was unreachable; reads
        keep serving the cached snapshot either way.
        """
        return await self._engine.reload()

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def orders_by_status(self, status: Union[OrderStatus, str]) -> List[Order]:
        status = OrderStatus(status)
        return self._scoped(r for r in self._store.list({"status": status}))

    def orders_by_role_id(self, role_id: str) -> List[Order]:
        """Orders where *role_id* is the cook or the customer, within scope."""
        return self._scoped(
            r
            for r in self._store.list()
            if role_id in (r.order.cook_id, r.order.customer_id)
        )

    def all_orders(self) -> List[Order]:
        return self._scoped(self._store.list())

    def get_order(self, order_id: str) -> Optional[Order]:
        record = self._visible_record(order_id)
        return record.order if record else None

    def is_pending(self, order_id: str) -> bool:
        record = self._visible_record(order_id)
        return bool(record and record.pending)

    def status_history(self, order_id: str) -> List[StatusChange]:
        record = self._visible_record(order_id)
        return list(record.history) if record else []

    def connection_health(self) -> ConnectionHealth:
        return ConnectionHealth(
            realtime_enabled=self._engine.realtime_enabled,
            remote_reachable=self._engine.remote_reachable,
            pending_writes=len(self._outbox),
        )

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _visible_record(self, order_id: str) -> Optional[OrderRecord]:
        record = self._store.get_by_id(order_id)
        if record is None or record.tombstoned:
            return None
        if not self._session.role_filter.matches(record.order):
            return None
        return record

    def _scoped(self, records) -> List[Order]:
        role_filter = self._session.role_filter
        orders = [r.order for r in records if role_filter.matches(r.order)]
        return sorted(orders, key=lambda o: o.order_date, reverse=True)

    def _new_tracking_number(self) -> str:
        taken = {r.order.tracking_number for r in self._store.list({"include_tombstoned": True})}
        for _ in range(TRACKING_NUMBER_MAX_RETRIES):
            candidate = Order.generate_tracking_number()
            if candidate not in taken:
                return candidate
        raise RuntimeError(
            f"Failed to generate unique tracking_number after "
            f"{TRACKING_NUMBER_MAX_RETRIES} attempts"
        )

    @staticmethod
    def _local_order(draft: OrderDraft, tracking_number: str) -> Order:
        now = utcnow()
        return Order(
            order_id=f"{LOCAL_ID_PREFIX}{uuid6.uuid7()}",
            tracking_number=tracking_number,
            cook_id=draft.cook_id,
            customer_id=draft.customer_id,
            items=draft.items,
            status=OrderStatus.CONFIRMED,
            fees=draft.fees,
            delivery_address=draft.delivery_address,
            delivery_instructions=draft.delivery_instructions,
            delivery_time=draft.delivery_time,
            order_date=now,
            last_modified=now,
        )

    # ------------------------------------------------------------------
    # Domain Event Hooks
    # ------------------------------------------------------------------

    def _publish_created(self, order: Order, pending: bool) -> None:
        self._bus.publish(
            OrderCreated(
                aggregate_id=order.order_id,
                cook_id=order.cook_id,
                customer_id=order.customer_id,
                tracking_number=order.tracking_number,
                total_price=order.total_price,
                pending=pending,
            )
        )

    def _publish_status_change(self, write: OptimisticWrite, pending: bool) -> None:
        self._bus.publish(
            OrderStatusChanged(
                aggregate_id=write.order_id,
                old_status=write.previous_status.value,
                new_status=write.status.value,
                pending=pending,
            )
        )
        if write.status == OrderStatus.CANCELLED:
            self._bus.publish(OrderCancelled(aggregate_id=write.order_id))
        elif write.status == OrderStatus.DELIVERED:
            self._bus.publish(OrderDelivered(aggregate_id=write.order_id))
