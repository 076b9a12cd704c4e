"""Unit tests for OrderFacade.

Covers:
- Happy path across customer and cook sessions.
- Rejected transitions never reach the network.
- Offline create with provisional id and re-key on replay.
- Network failures queue writes; conflicts adopt the authoritative record.
- Role isolation of every query.
- Domain events and cook notifications.
- Cache survives a restart.
"""

from __future__ import annotations

from datetime import timedelta

import pytest
from pydantic import ValidationError

from modules.orders.constants import OrderStatus, Role
from modules.orders.events import OrderCancelled, OrderStatusChanged
from modules.orders.exceptions import (
    ConflictError,
    InvalidTransition,
    OrderNotFound,
    RemoteValidationError,
    UnauthorizedTransition,
)
from modules.orders.handlers import register_order_handlers
from modules.orders.realtime.interfaces import InsertEvent, UpdateEvent
from shared.domain.bus import IEventHandler

pytestmark = pytest.mark.unit


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------


class Recorder(IEventHandler):
    def __init__(self):
        self.events = []

    def handle(self, event):
        self.events.append(event)


@pytest.fixture()
async def cook(open_facade, remote, make_order):
    remote.seed(make_order("ord-1"))
    facade = await open_facade("cook-1", Role.COOK)
    assert facade.get_order("ord-1") is not None
    return facade


@pytest.fixture()
async def customer(open_facade):
    return await open_facade("cust-1", Role.CUSTOMER)


# ---------------------------------------------------------------------------
# End-to-end scenarios
# ---------------------------------------------------------------------------


class TestHappyPath:
    async def test_order_flows_between_customer_and_cook(
        self, open_facade, remote, new_feed, draft, eventually
    ):
        customer_feed, cook_feed = new_feed(), new_feed()
        customer = await open_facade("cust-1", Role.CUSTOMER, feed=customer_feed)
        cook = await open_facade("cook-1", Role.COOK, feed=cook_feed)

        order_id = await customer.create_order(draft)

        assert not order_id.startswith("local-")
        assert customer.get_order(order_id).status == OrderStatus.CONFIRMED
        assert not customer.is_pending(order_id)

        await cook_feed.push(InsertEvent(order_id=order_id, snapshot=remote.orders[order_id]))
        await eventually(lambda: cook.get_order(order_id) is not None)
        assert [o.order_id for o in cook.orders_by_status("confirmed")] == [order_id]

        result = await cook.update_order_status(order_id, OrderStatus.PREPARING)

        assert result.ok
        assert result.changed is True
        assert result.pending is False
        assert result.status == OrderStatus.PREPARING

        await customer_feed.push(UpdateEvent(order_id=order_id, snapshot=remote.orders[order_id]))
        await eventually(lambda: customer.get_order(order_id).status == OrderStatus.PREPARING)

    async def test_created_order_round_trips(self, customer, draft):
        order_id = await customer.create_order(draft)

        order = customer.get_order(order_id)
        assert order.items == draft.items
        assert order.total_price == draft.items_total + draft.fees
        assert order.delivery_instructions == "Ring twice"
        assert order.tracking_number.startswith("HF-")

    async def test_create_accepts_a_mapping(self, customer, draft):
        order_id = await customer.create_order(draft.model_dump())
        assert customer.get_order(order_id).cook_id == "cook-1"

    async def test_full_lifecycle(self, open_facade, remote, make_order):
        remote.seed(make_order())
        cook = await open_facade("cook-1", Role.COOK)
        rider = await open_facade("cook-1", Role.DELIVERY)

        await cook.update_order_status("ord-1", OrderStatus.PREPARING)
        await cook.update_order_status("ord-1", OrderStatus.READY)
        await rider.refresh_orders()
        await rider.update_order_status("ord-1", OrderStatus.PICKED_UP)
        result = await rider.update_order_status("ord-1", OrderStatus.DELIVERED)

        assert result.status == OrderStatus.DELIVERED
        assert rider.get_order("ord-1").actual_delivery_time is not None
        assert [str(c) for c in rider.status_history("ord-1")][-2:] == [
            "ready -> picked_up",
            "picked_up -> delivered",
        ]


class TestRejectedTransitions:
    async def test_cook_cannot_skip_states(self, cook, remote):
        await cook.update_order_status("ord-1", OrderStatus.PREPARING)
        calls_before = len(remote.calls_named("update_status"))

        result = await cook.update_order_status("ord-1", OrderStatus.PICKED_UP)

        assert isinstance(result.error, InvalidTransition)
        assert result.status == OrderStatus.PREPARING
        assert cook.get_order("ord-1").status == OrderStatus.PREPARING
        assert len(remote.calls_named("update_status")) == calls_before

    async def test_customer_cannot_cancel_ready_order(self, open_facade, remote, make_order):
        remote.seed(make_order(status=OrderStatus.READY))
        customer = await open_facade("cust-1", Role.CUSTOMER)

        result = await customer.update_order_status("ord-1", OrderStatus.CANCELLED)

        assert isinstance(result.error, InvalidTransition)
        assert result.status == OrderStatus.READY
        assert remote.calls_named("update_status") == []

    async def test_customer_cannot_start_cooking(self, open_facade, remote, make_order):
        remote.seed(make_order())
        customer = await open_facade("cust-1", Role.CUSTOMER)

        result = await customer.update_order_status("ord-1", "preparing")

        assert isinstance(result.error, UnauthorizedTransition)
        assert result.changed is False

    async def test_same_status_is_idempotent(self, cook, remote):
        first = await cook.update_order_status("ord-1", OrderStatus.PREPARING)
        second = await cook.update_order_status("ord-1", OrderStatus.PREPARING)

        assert first.changed is True
        assert second.changed is False
        assert second.ok
        assert len(remote.calls_named("update_status")) == 1
        assert len(cook.status_history("ord-1")) == 2

    async def test_unknown_order(self, cook):
        result = await cook.update_order_status("ghost", OrderStatus.PREPARING)

        assert isinstance(result.error, OrderNotFound)
        assert result.status is None


# ---------------------------------------------------------------------------
# Offline and failure handling
# ---------------------------------------------------------------------------


class TestOfflineCreate:
    async def test_create_while_offline_then_rekey(self, open_facade, remote, draft):
        remote.offline = True
        customer = await open_facade("cust-1", Role.CUSTOMER)

        local_id = await customer.create_order(draft)

        assert local_id.startswith("local-")
        assert customer.is_pending(local_id)
        assert customer.get_order(local_id).status == OrderStatus.CONFIRMED
        health = customer.connection_health()
        assert health.pending_writes == 1
        assert health.remote_reachable is False

        remote.offline = False
        assert await customer.refresh_orders() is True

        order = customer.get_order(local_id)
        assert order.order_id == "ord-1"
        assert not customer.is_pending(local_id)
        assert [o.order_id for o in customer.orders_by_role_id("cust-1")] == ["ord-1"]
        assert customer.connection_health().pending_writes == 0

    async def test_offline_cancel_follows_the_create(self, open_facade, remote, draft):
        remote.offline = True
        customer = await open_facade("cust-1", Role.CUSTOMER)
        local_id = await customer.create_order(draft)

        result = await customer.update_order_status(local_id, OrderStatus.CANCELLED)
        assert result.pending is True

        remote.offline = False
        await customer.refresh_orders()

        assert remote.orders["ord-1"].status == OrderStatus.CANCELLED
        assert customer.get_order(local_id).status == OrderStatus.CANCELLED
        assert not customer.is_pending("ord-1")

    async def test_rejected_create_raises(self, customer, remote, draft):
        remote.fail_next.append(RemoteValidationError("kitchen closed"))

        with pytest.raises(RemoteValidationError):
            await customer.create_order(draft)

        assert customer.all_orders() == []

    async def test_invalid_draft_raises(self, customer, draft):
        with pytest.raises(ValidationError):
            await customer.create_order({**draft.model_dump(), "items": []})


class TestUpdateFailures:
    async def test_network_error_queues_the_write(self, cook, remote):
        remote.offline = True

        result = await cook.update_order_status("ord-1", OrderStatus.PREPARING)

        assert result.ok
        assert result.pending is True
        assert result.status == OrderStatus.PREPARING
        assert cook.is_pending("ord-1")
        assert cook.connection_health().pending_writes == 1

        remote.offline = False
        await cook.refresh_orders()

        assert not cook.is_pending("ord-1")
        assert remote.orders["ord-1"].status == OrderStatus.PREPARING

    async def test_queued_writes_replay_in_order(self, cook, remote):
        remote.offline = True
        await cook.update_order_status("ord-1", OrderStatus.PREPARING)
        remote.offline = False

        result = await cook.update_order_status("ord-1", OrderStatus.READY)
        assert result.pending is True
        await cook.refresh_orders()

        assert [c[2] for c in remote.calls_named("update_status")][-2:] == [
            OrderStatus.PREPARING,
            OrderStatus.READY,
        ]
        assert remote.orders["ord-1"].status == OrderStatus.READY
        assert cook.get_order("ord-1").status == OrderStatus.READY

    async def test_conflict_adopts_authoritative_state(self, cook, remote, make_order):
        remote.seed(make_order(status=OrderStatus.CANCELLED, minutes=5))

        result = await cook.update_order_status("ord-1", OrderStatus.PREPARING)

        assert isinstance(result.error, ConflictError)
        assert result.status == OrderStatus.CANCELLED
        assert cook.get_order("ord-1").status == OrderStatus.CANCELLED
        assert not cook.is_pending("ord-1")

    async def test_hard_rejection_rolls_back(self, cook, remote):
        history_before = cook.status_history("ord-1")
        remote.fail_next.append(RemoteValidationError("no"))

        result = await cook.update_order_status("ord-1", OrderStatus.PREPARING)

        assert isinstance(result.error, RemoteValidationError)
        assert result.status == OrderStatus.CONFIRMED
        assert cook.get_order("ord-1").status == OrderStatus.CONFIRMED
        assert cook.status_history("ord-1") == history_before
        assert not cook.is_pending("ord-1")

    async def test_result_after_session_end_is_discarded(self, customer, remote, draft):
        create = remote.create

        async def create_then_end_session(*args):
            order = await create(*args)
            await customer.engine.stop()
            return order

        remote.create = create_then_end_session

        order_id = await customer.create_order(draft)

        assert order_id == "ord-1"
        assert customer.get_order(order_id) is None


# ---------------------------------------------------------------------------
# Queries
# ---------------------------------------------------------------------------


class TestRoleIsolation:
    @pytest.fixture()
    def two_kitchens(self, remote, make_order):
        remote.seed(make_order("ord-1", cook_id="cook-1", customer_id="cust-1"))
        remote.seed(make_order("ord-2", cook_id="cook-2", customer_id="cust-1"))
        remote.seed(make_order("ord-3", cook_id="cook-2", customer_id="cust-2"))

    async def test_cook_sees_only_own_orders(self, two_kitchens, open_facade):
        cook = await open_facade("cook-1", Role.COOK)

        assert [o.order_id for o in cook.all_orders()] == ["ord-1"]
        assert cook.orders_by_role_id("cook-2") == []
        assert cook.get_order("ord-2") is None

    async def test_customer_sees_own_orders_across_kitchens(self, two_kitchens, open_facade):
        customer = await open_facade("cust-1", Role.CUSTOMER)

        assert sorted(o.order_id for o in customer.orders_by_role_id("cust-1")) == ["ord-1", "ord-2"]
        assert [o.order_id for o in customer.orders_by_role_id("cook-2")] == ["ord-2"]

    async def test_admin_is_unscoped(self, two_kitchens, open_facade):
        admin = await open_facade("admin-1", Role.ADMIN)
        assert len(admin.all_orders()) == 3

    async def test_foreign_order_cannot_be_updated(self, two_kitchens, open_facade):
        cook = await open_facade("cook-1", Role.COOK)

        result = await cook.update_order_status("ord-2", OrderStatus.PREPARING)

        assert isinstance(result.error, OrderNotFound)

    async def test_orders_sorted_newest_first(self, open_facade, remote, make_order):
        older = make_order("ord-1")
        newer = make_order("ord-2").model_copy(
            update={"order_date": older.order_date + timedelta(hours=1)}
        )
        remote.seed(older)
        remote.seed(newer)
        cook = await open_facade("cook-1", Role.COOK)

        assert [o.order_id for o in cook.orders_by_status(OrderStatus.CONFIRMED)] == [
            "ord-2",
            "ord-1",
        ]


class TestConnectionHealth:
    async def test_connected_with_feed(self, open_facade, new_feed, eventually):
        facade = await open_facade("cook-1", Role.COOK, feed=new_feed())
        await eventually(lambda: facade.connection_health().connected)

    async def test_polling_without_feed(self, cook):
        health = cook.connection_health()
        assert health.realtime_enabled is False
        assert health.remote_reachable is True
        assert not health.connected

    async def test_unreachable_remote_serves_cached_snapshot(self, cook, remote):
        remote.offline = True

        assert await cook.refresh_orders() is False

        assert [o.order_id for o in cook.orders_by_role_id("cook-1")] == ["ord-1"]
        assert cook.get_order("ord-1").status == OrderStatus.CONFIRMED
        health = cook.connection_health()
        assert health.remote_reachable is False
        assert not health.connected

    async def test_rejected_refresh_is_reported_not_raised(self, cook, remote):
        remote.fail_next.append(RemoteValidationError("403 forbidden"))

        assert await cook.refresh_orders() is False

        assert [o.order_id for o in cook.all_orders()] == ["ord-1"]
        assert cook.connection_health().remote_reachable is False


# ---------------------------------------------------------------------------
# Events, lifecycle, persistence
# ---------------------------------------------------------------------------


class TestDomainEvents:
    async def test_cook_is_notified_of_new_orders(self, bus, customer, draft):
        notifications = register_order_handlers(bus)

        order_id = await customer.create_order(draft)

        (notification,) = notifications.for_cook("cook-1")
        tracking = customer.get_order(order_id).tracking_number
        assert notification.message == f"New order received! Order #{tracking} for $26.50"
        assert notifications.for_cook("cook-2") == []

    async def test_cancellation_publishes_events(self, bus, open_facade, remote, make_order):
        remote.seed(make_order())
        customer = await open_facade("cust-1", Role.CUSTOMER)
        changed, cancelled = Recorder(), Recorder()
        bus.subscribe(OrderStatusChanged, changed)
        bus.subscribe(OrderCancelled, cancelled)

        await customer.update_order_status("ord-1", OrderStatus.CANCELLED)

        assert [(e.old_status, e.new_status) for e in changed.events] == [("confirmed", "cancelled")]
        assert [e.aggregate_id for e in cancelled.events] == ["ord-1"]

    async def test_rejected_transition_publishes_nothing(self, bus, cook):
        changed = Recorder()
        bus.subscribe(OrderStatusChanged, changed)

        await cook.update_order_status("ord-1", OrderStatus.DELIVERED)

        assert changed.events == []


class TestLifecycle:
    async def test_cache_survives_restart(self, open_facade, remote, draft):
        customer = await open_facade("cust-1", Role.CUSTOMER, cache_name="shared")
        order_id = await customer.create_order(draft)
        await customer.close()

        remote.offline = True
        reopened = await open_facade("cust-1", Role.CUSTOMER, cache_name="shared")

        assert reopened.get_order(order_id) is not None
        assert reopened.connection_health().remote_reachable is False

    async def test_pending_writes_survive_restart(self, open_facade, remote, draft):
        remote.offline = True
        customer = await open_facade("cust-1", Role.CUSTOMER, cache_name="shared")
        local_id = await customer.create_order(draft)
        await customer.close()

        remote.offline = False
        reopened = await open_facade("cust-1", Role.CUSTOMER, cache_name="shared")
        await reopened.refresh_orders()

        assert reopened.get_order(local_id).order_id == "ord-1"
        assert reopened.connection_health().pending_writes == 0

    async def test_closed_facade_rejects_writes(self, customer, draft):
        await customer.close()

        with pytest.raises(RuntimeError, match="closed"):
            await customer.create_order(draft)

    async def test_closed_facade_cannot_be_restarted(self, customer):
        await customer.close()

        with pytest.raises(RuntimeError, match="closed"):
            await customer.start()
