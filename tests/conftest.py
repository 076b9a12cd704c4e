"""Shared fixtures: in-memory fakes of the remote service and the feed."""

from __future__ import annotations

import asyncio
from datetime import datetime, timedelta, timezone
from decimal import Decimal
from typing import Callable, Dict, List, Optional

import pytest

from modules.core.session import Session
from modules.orders.constants import OrderStatus, Role
from modules.orders.dtos import OrderDraft, RoleFilter
from modules.orders.exceptions import (
    ConflictError,
    FeedDisconnected,
    NetworkError,
    RemoteValidationError,
)
from modules.orders.models import Order, OrderItem, utcnow
from modules.orders.outbox import PendingWriteOutbox
from modules.orders.realtime.interfaces import FeedSubscription, IRealtimeFeed
from modules.orders.reconciliation import ReconciliationEngine
from modules.orders.remote.interfaces import IRemoteOrderService
from modules.orders.repositories import OrderJsonRepository
from modules.orders.services import OrderFacade
from shared.infrastructure.bus import InMemoryEventBus

BASE_TIME = datetime(2024, 1, 15, 12, 0, tzinfo=timezone.utc)


# ---------------------------------------------------------------------------
# Fakes
# ---------------------------------------------------------------------------


class FakeRemoteOrderService(IRemoteOrderService):
    """Authoritative backend kept in a dict.

    ``offline`` makes every call fail with ``NetworkError``; exceptions
    queued in ``fail_next`` are raised by the next calls, one each.
    """

    def __init__(self) -> None:
        self.orders: Dict[str, Order] = {}
        self.calls: List[tuple] = []
        self.offline = False
        self.fail_next: List[Exception] = []
        self._seq = 0

    def seed(self, order: Order) -> Order:
        self.orders[order.order_id] = order
        return order

    def _check(self, *call) -> None:
        self.calls.append(call)
        if self.fail_next:
            raise self.fail_next.pop(0)
        if self.offline:
            raise NetworkError("remote offline")

    def calls_named(self, name: str) -> List[tuple]:
        return [c for c in self.calls if c[0] == name]

    async def create(self, draft: OrderDraft, tracking_number: str) -> Order:
        self._check("create", tracking_number)
        self._seq += 1
        now = utcnow()
        order = Order(
            order_id=f"ord-{self._seq}",
            tracking_number=tracking_number,
            cook_id=draft.cook_id,
            customer_id=draft.customer_id,
            items=draft.items,
            fees=draft.fees,
            delivery_address=draft.delivery_address,
            delivery_instructions=draft.delivery_instructions,
            delivery_time=draft.delivery_time,
            order_date=now,
            last_modified=now,
        )
        return self.seed(order)

    async def update_status(self, order_id: str, new_status: OrderStatus) -> Order:
        self._check("update_status", order_id, new_status)
        order = self.orders.get(order_id)
        if order is None:
            raise RemoteValidationError(f"Unknown order {order_id}.")
        if order.status == new_status:
            return order
        if not order.can_transition_to(new_status):
            raise ConflictError("Order moved on.", current=order)
        return self.seed(order.with_status(new_status))

    async def list(self, role_filter: RoleFilter) -> List[Order]:
        self._check("list", role_filter)
        return [o for o in self.orders.values() if role_filter.matches(o)]

    async def get(self, order_id: str) -> Order:
        self._check("get", order_id)
        if order_id not in self.orders:
            raise RemoteValidationError(f"Unknown order {order_id}.")
        return self.orders[order_id]


class FakeSubscription(FeedSubscription):
    def __init__(self, queue: asyncio.Queue) -> None:
        self._queue = queue
        self.closed = False

    async def __anext__(self):
        if self.closed:
            raise StopAsyncIteration
        item = await self._queue.get()
        if isinstance(item, Exception):
            raise item
        return item

    async def aclose(self) -> None:
        self.closed = True


class FakeRealtimeFeed(IRealtimeFeed):
    """Feed whose events are pushed by the test."""

    def __init__(self, available: bool = True) -> None:
        self.available = available
        self.queue: asyncio.Queue = asyncio.Queue()
        self.subscriptions: List[FakeSubscription] = []
        self.filters: List[RoleFilter] = []

    async def subscribe(self, role_filter: RoleFilter) -> FeedSubscription:
        if not self.available:
            raise FeedDisconnected("feed unavailable")
        self.filters.append(role_filter)
        subscription = FakeSubscription(self.queue)
        self.subscriptions.append(subscription)
        return subscription

    async def push(self, event) -> None:
        await self.queue.put(event)

    async def drop(self) -> None:
        self.available = False
        await self.queue.put(FeedDisconnected("channel dropped"))


async def wait_until(predicate: Callable[[], bool], timeout: float = 2.0) -> None:
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("condition not reached in time")
        await asyncio.sleep(0.01)


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------


@pytest.fixture()
def make_order() -> Callable[..., Order]:
    def _make(
        order_id: str = "ord-1",
        status: OrderStatus = OrderStatus.CONFIRMED,
        cook_id: str = "cook-1",
        customer_id: str = "cust-1",
        minutes: Optional[int] = 0,
        fees: Decimal = Decimal("2.50"),
    ) -> Order:
        return Order(
            order_id=order_id,
            tracking_number=f"HF-20240115-{order_id[-6:].upper():0>6}",
            cook_id=cook_id,
            customer_id=customer_id,
            items=[
                OrderItem(id="food-1", title="Jollof Rice", price=Decimal("12.00"), quantity=2),
                OrderItem(id="food-2", title="Plantain", price=Decimal("3.25")),
            ],
            status=status,
            fees=fees,
            delivery_address="12 Market Street",
            order_date=BASE_TIME,
            last_modified=None if minutes is None else BASE_TIME + timedelta(minutes=minutes),
        )

    return _make


@pytest.fixture()
def draft() -> OrderDraft:
    return OrderDraft(
        cook_id="cook-1",
        customer_id="cust-1",
        items=[
            OrderItem(id="food-1", title="Jollof Rice", price=Decimal("12.00"), quantity=2),
        ],
        delivery_address="12 Market Street",
        delivery_instructions="Ring twice",
        delivery_time="18:30",
        fees=Decimal("2.50"),
    )


@pytest.fixture()
def remote() -> FakeRemoteOrderService:
    return FakeRemoteOrderService()


@pytest.fixture()
def feed() -> FakeRealtimeFeed:
    return FakeRealtimeFeed()


@pytest.fixture()
def offline_feed() -> FakeRealtimeFeed:
    return FakeRealtimeFeed(available=False)


@pytest.fixture()
def store(tmp_path) -> OrderJsonRepository:
    repository = OrderJsonRepository(tmp_path / "cache")
    repository.load()
    return repository


@pytest.fixture()
def outbox(store) -> PendingWriteOutbox:
    return PendingWriteOutbox(store)


@pytest.fixture()
def engine(store, remote, feed, outbox) -> ReconciliationEngine:
    return ReconciliationEngine(
        store=store,
        remote=remote,
        feed=feed,
        role_filter=RoleFilter(cook_id="cook-1"),
        outbox=outbox,
        reload_interval=60.0,
        poll_interval=60.0,
    )


@pytest.fixture()
def bus() -> InMemoryEventBus:
    return InMemoryEventBus()


@pytest.fixture()
async def open_facade(tmp_path, remote, bus):
    """Factory: open a facade for an actor against the shared fake remote."""
    opened: List[OrderFacade] = []

    async def _open(
        actor_id: str,
        role: Role,
        feed: Optional[FakeRealtimeFeed] = None,
        cache_name: Optional[str] = None,
    ) -> OrderFacade:
        facade = OrderFacade(
            session=Session(actor_id=actor_id, role=role),
            store=OrderJsonRepository(tmp_path / (cache_name or f"{role.value}-{actor_id}")),
            remote=remote,
            feed=feed or FakeRealtimeFeed(available=False),
            event_bus=bus,
            reload_interval=60.0,
            poll_interval=60.0,
        )
        await facade.start()
        opened.append(facade)
        await wait_until(lambda: facade.engine.remote_reachable or remote.offline)
        return facade

    yield _open

    for facade in opened:
        await facade.close()


@pytest.fixture()
def cook_session() -> Session:
    return Session(actor_id="cook-1", role=Role.COOK)


@pytest.fixture()
def new_feed() -> Callable[..., FakeRealtimeFeed]:
    return FakeRealtimeFeed


@pytest.fixture()
def eventually():
    return wait_until
