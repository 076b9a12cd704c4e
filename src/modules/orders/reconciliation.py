"""Reconciliation engine.

Merges three views of the same orders into the local store:

- realtime feed events (insert / update / delete),
- periodic or on-demand full reloads from the remote service,
- the facade's own optimistic writes and their remote outcomes.

The engine is the single writer of the order store.  Every write method
is synchronous, so within one event loop the compare-and-replace of a
record can never interleave with another write to the same record.

Merge rule, per order:
1. Compare ``last_modified``; when either side lacks it, compare the
   status rank along the lifecycle.
2. Strictly newer incoming records replace the cached one.
3. Anything else (duplicate or stale re-delivery) is discarded, which
   makes event application idempotent.
4. Delete events tombstone the record; history is never erased.
5. A confirmed terminal record never changes status again.

Concurrent updates from different roles resolve last-writer-wins on
``last_modified``.
"""

from __future__ import annotations

import asyncio
import contextlib
from dataclasses import dataclass, replace
from datetime import datetime
from typing import Any, Dict, Iterable, List, Optional

import structlog

from modules.orders.constants import OrderStatus, Role
from modules.orders.dtos import OrderDraft, RoleFilter
from modules.orders.exceptions import (
    ConflictError,
    FeedDisconnected,
    NetworkError,
    OrderError,
    OrderNotFound,
    RemoteValidationError,
)
from modules.orders.models import Order, OrderRecord, StatusChange, as_utc, utcnow
from modules.orders.outbox import PendingWrite, PendingWriteOutbox
from modules.orders.realtime.interfaces import (
    DeleteEvent,
    FeedEvent,
    FeedSubscription,
    IRealtimeFeed,
)
from modules.orders.remote.interfaces import IRemoteOrderService
from modules.orders.repositories.interfaces import IOrderStore
from modules.orders.state_machine import status_rank

logger = structlog.get_logger(__name__)


def _iso(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value else None


def _parse_iso(value: Optional[str]) -> Optional[datetime]:
    return as_utc(datetime.fromisoformat(value)) if value else None


@dataclass(frozen=True)
class OptimisticWrite:
    """A locally applied, not yet confirmed status change."""

    order_id: str
    previous_status: OrderStatus
    previous_last_modified: Optional[datetime]
    status: OrderStatus
    last_modified: datetime

    def to_payload(self) -> Dict[str, Any]:
        return {
            "status": self.status.value,
            "last_modified": _iso(self.last_modified),
            "previous_status": self.previous_status.value,
            "previous_last_modified": _iso(self.previous_last_modified),
        }

    @classmethod
    def from_entry(cls, entry: PendingWrite) -> OptimisticWrite:
        payload = entry.payload
        return cls(
            order_id=entry.order_id,
            previous_status=OrderStatus(payload["previous_status"]),
            previous_last_modified=_parse_iso(payload.get("previous_last_modified")),
            status=OrderStatus(payload["status"]),
            last_modified=_parse_iso(payload["last_modified"]),
        )


class ReconciliationEngine:
    """Keeps the order store eventually consistent with the remote service.

    Owns two background tasks (feed drain and reload timer) that start
    and stop together; ``stop()`` also bumps ``generation`` so results of
    remote calls issued before teardown can be recognised and dropped.
    """

    def __init__(
        self,
        store: IOrderStore,
        remote: IRemoteOrderService,
        feed: IRealtimeFeed,
        role_filter: RoleFilter,
        outbox: PendingWriteOutbox,
        reload_interval: float = 30.0,
        poll_interval: float = 5.0,
    ) -> None:
        self._store = store
        self._remote = remote
        self._feed = feed
        self._role_filter = role_filter
        self._outbox = outbox
        self._reload_interval = reload_interval
        self._poll_interval = poll_interval

        self.realtime_enabled = False
        self.remote_reachable = False
        self.generation = 0

        self._inflight: set[str] = set()
        self._subscription: Optional[FeedSubscription] = None
        self._feed_task: Optional[asyncio.Task] = None
        self._poll_task: Optional[asyncio.Task] = None
        self._reload_task: Optional[asyncio.Future] = None
        self._flush_lock = asyncio.Lock()
        self._wake = asyncio.Event()
        self._running = False

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    @property
    def running(self) -> bool:
        return self._running

    def is_current(self, generation: int) -> bool:
        return self._running and generation == self.generation

    async def start(self) -> None:
        if self._running:
            return
        self._running = True
        self._wake.set()
        self._feed_task = asyncio.create_task(self._run_feed(), name="orders-feed")
        self._poll_task = asyncio.create_task(self._run_poll(), name="orders-reload")
        logger.info("reconciliation.started", **self._role_filter.to_query_params())

    async def stop(self) -> None:
        """Cancel the feed drain, the reload timer and any in-flight reload."""
        if not self._running:
            return
        self._running = False
        self.generation += 1

        tasks = [t for t in (self._feed_task, self._poll_task, self._reload_task) if t]
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        self._feed_task = self._poll_task = self._reload_task = None

        if self._subscription is not None:
            await self._subscription.aclose()
            self._subscription = None
        self.realtime_enabled = False
        logger.info("reconciliation.stopped", generation=self.generation)

    async def __aenter__(self) -> ReconciliationEngine:
        await self.start()
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.stop()

    # ------------------------------------------------------------------
    # Merge rule
    # ------------------------------------------------------------------

    @staticmethod
    def is_newer(incoming: Order, cached: Order) -> bool:
        if incoming.last_modified is not None and cached.last_modified is not None:
            return incoming.last_modified > cached.last_modified
        return status_rank(incoming.status) > status_rank(cached.status)

    def apply_remote(self, order: Order, source: str = "reload") -> bool:
        """Merge one authoritative snapshot.  Returns ``True`` if stored."""
        log = logger.bind(order_id=order.order_id, source=source, status=order.status.value)
        record = self._store.get_by_id(order.order_id)

        if record is None:
            self._store.save(
                OrderRecord(
                    order=order,
                    pending=self._is_pending(order.order_id),
                    history=[
                        StatusChange(
                            old_status=None,
                            new_status=order.status,
                            changed_at=order.last_modified or order.order_date,
                        )
                    ],
                )
            )
            log.info("reconciliation.order_added")
            return True

        cached = record.order
        if cached.is_terminal and not record.pending and order.status != cached.status:
            log.warning("reconciliation.terminal_kept", cached_status=cached.status.value)
            return False

        if not self.is_newer(order, cached):
            log.debug("reconciliation.stale_discarded", cached_status=cached.status.value)
            return False

        history = list(record.history)
        if order.status != cached.status:
            history.append(
                StatusChange(
                    old_status=cached.status,
                    new_status=order.status,
                    changed_at=order.last_modified or utcnow(),
                )
            )
        self._store.save(
            record.model_copy(
                update={
                    "order": order,
                    "pending": self._is_pending(order.order_id),
                    "history": history,
                }
            )
        )
        log.info("reconciliation.order_replaced", cached_status=cached.status.value)
        return True

    def apply_event(self, event: FeedEvent) -> bool:
        if isinstance(event, DeleteEvent):
            return self._apply_delete(event)
        if not self._role_filter.matches(event.snapshot):
            logger.warning("reconciliation.out_of_scope", order_id=event.order_id)
            return False
        return self.apply_remote(event.snapshot, source=f"feed.{event.kind}")

    def apply_batch(self, orders: Iterable[Order]) -> int:
        applied = 0
        for order in orders:
            if not self._role_filter.matches(order):
                logger.warning("reconciliation.out_of_scope", order_id=order.order_id)
                continue
            if self.apply_remote(order, source="reload"):
                applied += 1
        return applied

    def _apply_delete(self, event: DeleteEvent) -> bool:
        if self._store.get_by_id(event.order_id) is None:
            if event.snapshot is None:
                return False
            if not self._role_filter.matches(event.snapshot):
                logger.warning("reconciliation.out_of_scope", order_id=event.order_id)
                return False
            # Keep the history of orders first seen through their deletion.
            self.apply_remote(event.snapshot, source="feed.delete")
        return self._store.delete(event.order_id)

    # ------------------------------------------------------------------
    # Local writes handed over by the facade
    # ------------------------------------------------------------------

    def insert_local(self, order: Order, actor_role: Role) -> OrderRecord:
        """Store an order created while offline (pending until confirmed)."""
        record = OrderRecord(
            order=order,
            pending=True,
            history=[
                StatusChange(
                    old_status=None,
                    new_status=order.status,
                    actor_role=actor_role,
                    changed_at=order.order_date,
                )
            ],
        )
        self._store.save(record)
        logger.info("reconciliation.local_order_added", order_id=order.order_id)
        return record

    def apply_optimistic(
        self, order_id: str, new_status: OrderStatus, actor_role: Role
    ) -> OptimisticWrite:
        record = self._store.get_by_id(order_id)
        if record is None:
            raise OrderNotFound(f"Order {order_id} not found.")

        current = record.order
        updated = current.with_status(new_status)
        write = OptimisticWrite(
            order_id=current.order_id,
            previous_status=current.status,
            previous_last_modified=current.last_modified,
            status=new_status,
            last_modified=updated.last_modified,
        )
        self._inflight.add(current.order_id)
        self._store.save(
            record.model_copy(
                update={
                    "order": updated,
                    "pending": True,
                    "history": [
                        *record.history,
                        StatusChange(
                            old_status=current.status,
                            new_status=new_status,
                            actor_role=actor_role,
                            changed_at=updated.last_modified,
                        ),
                    ],
                }
            )
        )
        logger.info(
            "reconciliation.optimistic_applied",
            order_id=current.order_id,
            old_status=current.status.value,
            new_status=new_status.value,
        )
        return write

    def release(self, order_id: str) -> None:
        """The direct remote call ended; the write is queued or resolved."""
        self._inflight.discard(order_id)
        self._refresh_pending(order_id)

    def confirm(self, write: OptimisticWrite, server_order: Order) -> None:
        """The remote service accepted *write* and returned *server_order*."""
        self._inflight.discard(write.order_id)
        record = self._store.get_by_id(write.order_id)
        if record is not None and record.order.last_modified == write.last_modified:
            history = list(record.history)
            if server_order.status != record.order.status:
                history.append(
                    StatusChange(
                        old_status=record.order.status,
                        new_status=server_order.status,
                        changed_at=server_order.last_modified or utcnow(),
                    )
                )
            self._store.save(
                record.model_copy(
                    update={
                        "order": server_order,
                        "pending": self._is_pending(write.order_id),
                        "history": history,
                    }
                )
            )
            logger.info("reconciliation.write_confirmed", order_id=write.order_id)
        elif self._is_pending(write.order_id):
            # Later local writes are still queued; the last one confirms.
            logger.info("reconciliation.write_acknowledged", order_id=write.order_id)
        else:
            self.apply_remote(server_order, source="confirm")
            self._refresh_pending(write.order_id)

    def rollback(self, first: OptimisticWrite, last: Optional[OptimisticWrite] = None, steps: int = 1) -> bool:
        """Undo optimistic writes *first* … *last* if nothing newer replaced them.

        Restores the status and version held before *first* and removes
        the history entries the writes appended.
        """
        last = last or first
        self._inflight.discard(first.order_id)
        record = self._store.get_by_id(first.order_id)
        if record is None:
            return False

        current = record.order
        if current.last_modified != last.last_modified or current.status != last.status:
            logger.info("reconciliation.rollback_superseded", order_id=first.order_id)
            self._refresh_pending(first.order_id)
            return False

        update: Dict[str, Any] = {
            "status": first.previous_status,
            "last_modified": first.previous_last_modified,
        }
        if first.previous_status != OrderStatus.DELIVERED:
            update["actual_delivery_time"] = None
        restored = current.model_copy(update=update)
        history = record.history[:-steps] if steps else list(record.history)
        self._store.save(
            record.model_copy(
                update={
                    "order": restored,
                    "pending": self._is_pending(first.order_id),
                    "history": history,
                }
            )
        )
        logger.warning(
            "reconciliation.rolled_back",
            order_id=first.order_id,
            restored_status=first.previous_status.value,
            steps=steps,
        )
        return True

    def confirm_create(self, local_id: str, server_order: Order) -> OrderRecord:
        """Re-key a provisional order under the id the server assigned."""
        self._outbox.retarget(local_id, server_order.order_id)
        record = self._store.get_by_id(local_id)
        if record is None:
            self.apply_remote(server_order, source="confirm_create")
            return self._store.get_by_id(server_order.order_id)

        if self._outbox.has_pending(server_order.order_id):
            # Later offline writes are still queued: keep showing them.
            order = record.order.model_copy(update={"order_id": server_order.order_id})
            rekeyed = record.model_copy(update={"order": order, "pending": True})
        else:
            rekeyed = record.model_copy(update={"order": server_order, "pending": False})
        self._store.rekey(local_id, rekeyed)
        logger.info(
            "reconciliation.create_confirmed",
            local_id=local_id,
            order_id=server_order.order_id,
        )
        return rekeyed

    def _is_pending(self, order_id: str) -> bool:
        return order_id in self._inflight or self._outbox.has_pending(order_id)

    def _refresh_pending(self, order_id: str) -> None:
        record = self._store.get_by_id(order_id)
        if record is None:
            return
        pending = self._is_pending(record.order_id)
        if record.pending != pending:
            self._store.save(record.model_copy(update={"pending": pending}))

    # ------------------------------------------------------------------
    # Reload path
    # ------------------------------------------------------------------

    async def reload(self) -> bool:
        """Run one full reload, joining the one already in flight if any."""
        if self._reload_task is None or self._reload_task.done():
            self._reload_task = asyncio.ensure_future(self._reload_once())
        return await asyncio.shield(self._reload_task)

    async def _reload_once(self) -> bool:
        generation = self.generation
        log = logger.bind(generation=generation, **self._role_filter.to_query_params())
        try:
            orders = await self._remote.list(self._role_filter)
        except NetworkError as exc:
            self.remote_reachable = False
            log.warning("reconciliation.reload_failed", error=str(exc))
            return False
        except OrderError as exc:
            self.remote_reachable = False
            log.error("reconciliation.reload_rejected", error=str(exc))
            return False

        if generation != self.generation:
            log.info("reconciliation.reload_discarded")
            return False

        self.remote_reachable = True
        applied = self.apply_batch(orders)
        log.info("reconciliation.reloaded", received=len(orders), applied=applied)
        await self.flush_outbox()
        return True

    # ------------------------------------------------------------------
    # Outbox replay
    # ------------------------------------------------------------------

    async def flush_outbox(self) -> int:
        """Replay queued writes oldest first.  Returns how many succeeded."""
        flushed = 0
        async with self._flush_lock:
            generation = self.generation
            for entry in self._outbox.entries():
                if generation != self.generation:
                    break
                if not any(e.entry_id == entry.entry_id for e in self._outbox.entries()):
                    continue  # dropped by an earlier conflict on the same order
                try:
                    await self._replay(entry, generation)
                except NetworkError as exc:
                    self.remote_reachable = False
                    self._outbox.mark_failed(entry.entry_id, str(exc))
                    logger.warning(
                        "reconciliation.flush_interrupted",
                        entry=str(entry),
                        error=str(exc),
                    )
                    break
                except ConflictError as exc:
                    if entry.kind == "create":
                        self._resolve_create_conflict(entry, exc)
                    else:
                        await self._drop_and_resolve(entry, exc)
                except RemoteValidationError as exc:
                    self._drop_rejected(entry, str(exc))
                else:
                    flushed += 1
        if flushed:
            logger.info("reconciliation.outbox_flushed", flushed=flushed, remaining=len(self._outbox))
        return flushed

    async def _replay(self, entry: PendingWrite, generation: int) -> None:
        if entry.kind == "create":
            draft = OrderDraft.model_validate(entry.payload["draft"])
            server_order = await self._remote.create(draft, entry.payload["tracking_number"])
            if generation != self.generation:
                return
            self._outbox.remove(entry.entry_id)
            self.confirm_create(entry.order_id, server_order)
            return

        order_id = self._store.resolve_id(entry.order_id)
        write = replace(OptimisticWrite.from_entry(entry), order_id=order_id)
        server_order = await self._remote.update_status(order_id, write.status)
        if generation != self.generation:
            return
        self._outbox.remove(entry.entry_id)
        self.confirm(write, server_order)

    def _dropped_writes(self, order_id: str) -> List[OptimisticWrite]:
        return [
            OptimisticWrite.from_entry(e)
            for e in self._outbox.drop_for(order_id)
            if e.kind == "update_status"
        ]

    def _drop_rejected(self, entry: PendingWrite, reason: str) -> None:
        order_id = self._store.resolve_id(entry.order_id)
        if entry.kind == "create":
            self._outbox.drop_for(order_id)
            self._store.delete(order_id)
            self._refresh_pending(order_id)
            logger.error("reconciliation.create_rejected", order_id=order_id, reason=reason)
            return
        writes = self._dropped_writes(order_id)
        if writes:
            self.rollback(writes[0], writes[-1], steps=len(writes))
        logger.error("reconciliation.write_rejected", order_id=order_id, reason=reason)

    def _resolve_create_conflict(self, entry: PendingWrite, exc: ConflictError) -> None:
        """A replayed create collided with an order the server already holds.

        This happens when an earlier attempt committed but its response was
        lost.  The local order is re-keyed onto the server's copy; without
        that copy it is dropped like a rejected create.
        """
        if exc.current is None:
            self._drop_rejected(entry, str(exc))
            return
        self._outbox.remove(entry.entry_id)
        self.confirm_create(entry.order_id, exc.current)

    async def _drop_and_resolve(self, entry: PendingWrite, exc: ConflictError) -> None:
        order_id = self._store.resolve_id(entry.order_id)
        writes = self._dropped_writes(order_id)
        if writes:
            self.rollback(writes[0], writes[-1], steps=len(writes))
        await self.resolve_conflict(order_id, exc)

    async def resolve_conflict(self, order_id: str, exc: ConflictError) -> Optional[Order]:
        """Fetch and store the authoritative record after a conflict."""
        authoritative = exc.current
        if authoritative is None:
            try:
                authoritative = await self._remote.get(order_id)
            except (NetworkError, RemoteValidationError) as fetch_exc:
                logger.warning(
                    "reconciliation.conflict_refetch_failed",
                    order_id=order_id,
                    error=str(fetch_exc),
                )
                return None
        self.apply_remote(authoritative, source="conflict")
        logger.info(
            "reconciliation.conflict_resolved",
            order_id=order_id,
            status=authoritative.status.value,
        )
        return authoritative

    # ------------------------------------------------------------------
    # Workers
    # ------------------------------------------------------------------

    def _set_realtime(self, enabled: bool, reason: str = "") -> None:
        if self.realtime_enabled == enabled:
            return
        self.realtime_enabled = enabled
        # Reload right away: catch up after attaching, start polling after dropping.
        self._wake.set()
        if enabled:
            logger.info("reconciliation.realtime_attached")
        else:
            logger.warning("reconciliation.realtime_detached", reason=reason)

    async def _run_feed(self) -> None:
        while self._running:
            try:
                subscription = await self._feed.subscribe(self._role_filter)
            except FeedDisconnected as exc:
                self._set_realtime(False, str(exc))
                await asyncio.sleep(self._poll_interval)
                continue

            self._subscription = subscription
            self._set_realtime(True)
            reason = "subscription ended"
            try:
                async with subscription:
                    async for event in subscription:
                        self.apply_event(event)
            except FeedDisconnected as exc:
                reason = str(exc)
            except Exception as exc:
                logger.exception("reconciliation.feed_failed")
                reason = str(exc)
            finally:
                self._subscription = None

            self._set_realtime(False, reason)
            await asyncio.sleep(self._poll_interval)

    async def _run_poll(self) -> None:
        while self._running:
            interval = self._reload_interval if self.realtime_enabled else self._poll_interval
            with contextlib.suppress(asyncio.TimeoutError):
                await asyncio.wait_for(self._wake.wait(), timeout=interval)
            self._wake.clear()
            try:
                await self.reload()
            except Exception:
                logger.exception("reconciliation.reload_crashed")
