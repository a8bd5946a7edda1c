import json
import queue
from decimal import Decimal

import pytest

from kaung.infra.events import hub, OrderEventHub, INSERT, UPDATE
from kaung.infra.models import db, Order
from kaung.infra.repository import get_product
from kaung.services.dashboard_service import (
    DashboardState, dashboard_stats, build_order_notification, order_event_stream
)
from kaung.services.moderation_service import transition_order_service
from kaung.services.order_service import build_line_item, create_orders
from kaung.services.preference_service import set_preference


@pytest.fixture
def subscription():
    q = hub.subscribe()
    yield q
    hub.unsubscribe(q)


def drain(q):
    events = []
    while True:
        try:
            events.append(q.get_nowait())
        except queue.Empty:
            return events


def place(seed, product_id, commit=True):
    line = build_line_item(get_product(product_id), 1)
    return create_orders(seed.buyer, [line], "cod", {"phone_number": "09", "delivery_address": "Yangon"}, commit=commit)[0]


def test_events_are_published_after_commit(seed, subscription):
    order = place(seed, seed.item_a, commit=False)
    assert drain(subscription) == []
    db.session.commit()

    events = drain(subscription)
    assert [e["type"] for e in events] == [INSERT]
    assert events[0]["order"]["id"] == order.id

    transition_order_service(order.id, "approved", seed.admin)
    events = drain(subscription)
    assert [e["type"] for e in events] == [UPDATE]
    assert events[0]["order"]["status"] == "approved"


def test_rolled_back_rows_are_never_published(seed, subscription):
    place(seed, seed.item_a, commit=False)
    db.session.rollback()
    assert drain(subscription) == []
    place(seed, seed.item_b)
    assert len(drain(subscription)) == 1


def test_slow_subscriber_drops_oldest():
    h = OrderEventHub(maxsize=2)
    q = h.subscribe()
    for i in range(3):
        h.publish({"n": i})
    assert [e["n"] for e in drain(q)] == [1, 2]
    h.unsubscribe(q)
    assert h.subscriber_count() == 0


def test_notification_carries_product_name_and_sound_preference(seed):
    order = place(seed, seed.item_a)
    evt = {"type": INSERT, "order": order.to_dict()}

    note = build_order_notification(evt, seed.admin)
    assert note["product_name"] == "Item A"
    assert note["play_sound"] is True

    set_preference(seed.admin, "admin_sound_enabled", False)
    assert build_order_notification(evt, seed.admin)["play_sound"] is False
    assert build_order_notification({"type": UPDATE, "order": order.to_dict()}, seed.admin)["play_sound"] is False


def test_event_stream_yields_server_sent_events(seed):
    h = OrderEventHub()
    order = place(seed, seed.item_b)
    stream = order_event_stream(seed.admin, event_hub=h, timeout=0.01, limit=1)

    assert next(stream) == ": connected\n\n"
    assert h.subscriber_count() == 1
    h.publish({"type": INSERT, "order": order.to_dict()})
    chunks = list(stream)

    assert len(chunks) == 1
    assert chunks[0].startswith("event: order\ndata: ")
    data = json.loads(chunks[0].split("data: ", 1)[1])
    assert data["product_name"] == "Item B"
    assert data["order"]["id"] == order.id
    assert h.subscriber_count() == 0


def test_event_stream_keeps_alive_when_idle(seed):
    h = OrderEventHub()
    stream = order_event_stream(seed.admin, event_hub=h, timeout=0.01)
    next(stream)
    assert next(stream) == ": keepalive\n\n"
    stream.close()
    assert h.subscriber_count() == 0


def test_dashboard_stats(seed):
    a = place(seed, seed.item_a)
    b = place(seed, seed.item_b)
    place(seed, seed.item_b)
    transition_order_service(a.id, "approved", seed.admin)
    transition_order_service(b.id, "finished", seed.admin, confirmed=True)

    stats = dashboard_stats()
    assert stats["total_orders"] == 3
    assert stats["pending_orders"] == 1
    assert stats["total_users"] == 3
    assert stats["total_products"] == 7
    assert Decimal(stats["total_revenue"]) == Decimal("3000")
    assert len(stats["chart"]) == 7
    today = stats["chart"][-1]
    assert today["orders"] == 3
    assert Decimal(today["revenue"]) == Decimal("3000")


def test_dashboard_state_merges_single_rows(seed):
    state = DashboardState.load()
    assert state.stats["total_orders"] == 0

    order = place(seed, seed.item_a)
    state.apply({"type": INSERT, "order": order.to_dict()})
    assert state.stats["total_orders"] == 1
    assert state.stats["pending_orders"] == 1
    assert state.orders[0]["id"] == order.id

    transition_order_service(order.id, "approved", seed.admin)
    state.apply({"type": UPDATE, "order": db.session.get(Order, order.id).to_dict()})
    assert state.stats["pending_orders"] == 0
    assert state.stats["total_revenue"] == Decimal("1000")
    assert len(state.orders) == 1
    assert state.orders[0]["status"] == "approved"

    snap = state.snapshot()
    assert Decimal(snap["stats"]["total_revenue"]) == Decimal("1000")
    assert snap["stats"]["total_orders"] == dashboard_stats()["total_orders"]


def test_event_stream_sees_preference_changes_between_events(seed):
    h = OrderEventHub()
    evt = {"type": INSERT, "order": place(seed, seed.item_a).to_dict()}
    stream = order_event_stream(seed.admin, event_hub=h, timeout=0.01, limit=2)
    next(stream)

    h.publish(evt)
    first = json.loads(next(stream).split("data: ", 1)[1])
    assert first["play_sound"] is True
    assert not db.session.in_transaction()

    set_preference(seed.admin, "admin_sound_enabled", False)
    h.publish(evt)
    second = json.loads(next(stream).split("data: ", 1)[1])
    assert second["play_sound"] is False
    stream.close()
    assert h.subscriber_count() == 0
