from sqlalchemy import update

from kaung.infra.ledger import POINTS, ledger_sum
from kaung.infra.models import db, Order, Profile, PointTransaction
from kaung.infra.repository import get_product, list_orders
from kaung.services.moderation_service import (
    transition_order_service, bulk_transition_service, award_order_points, payment_proof_url_service
)
from kaung.services.order_service import build_line_item, create_orders


def place(seed, product_id, quantity=1, user_id=None, **kwargs):
    line = build_line_item(get_product(product_id), quantity)
    return create_orders(user_id or seed.buyer, [line], "cod", {"phone_number": "09", "delivery_address": "Yangon"}, **kwargs)[0]


def test_finish_needs_confirmation(seed):
    order = place(seed, seed.item_a)
    res = transition_order_service(order.id, "finished", seed.admin)
    assert res["error"] == "confirmation_required"
    assert db.session.get(Order, order.id).status == "pending"
    assert transition_order_service(order.id, "cancelled", seed.admin)["error"] == "confirmation_required"


def test_finishing_awards_points_exactly_once(seed):
    order = place(seed, seed.item_a, quantity=2)

    assert transition_order_service(order.id, "approved", seed.admin)["points_awarded"] == 0
    res = transition_order_service(order.id, "finished", seed.admin, confirmed=True)
    assert res["ok"]
    assert res["points_awarded"] == 10
    assert res["order"]["points_awarded_at"] is not None
    assert db.session.get(Profile, seed.buyer).points == 10

    again = transition_order_service(order.id, "finished", seed.admin, confirmed=True)
    assert again["error"] == "invalid_transition"
    assert award_order_points(db.session.get(Order, order.id)) == 0
    db.session.commit()

    assert db.session.get(Profile, seed.buyer).points == 10
    rows = PointTransaction.query.filter_by(user_id=seed.buyer).all()
    assert len(rows) == 1
    assert rows[0].transaction_type == "order_reward"
    assert rows[0].reference_id == order.id
    assert rows[0].balance_after == 10
    assert ledger_sum(POINTS, seed.buyer) == 10


def commit_elsewhere(stmt):
    # 另一个管理员的事务，走独立连接提交
    with db.engine.begin() as conn:
        conn.execute(stmt)


def test_stale_read_cannot_reopen_finished_order(seed):
    order = place(seed, seed.item_a)
    stale = db.session.get(Order, order.id)
    assert stale.status == "pending"

    commit_elsewhere(update(Order).where(Order.id == order.id).values(status="finished"))

    res = transition_order_service(order.id, "cancelled", seed.admin, confirmed=True)
    assert res["error"] == "invalid_transition"
    db.session.expire_all()
    assert db.session.get(Order, order.id).status == "finished"


def test_bulk_skips_rows_changed_by_another_admin(seed):
    a = place(seed, seed.item_a)
    b = place(seed, seed.item_b)
    assert db.session.get(Order, b.id).status == "pending"

    commit_elsewhere(update(Order).where(Order.id == b.id).values(status="rejected"))

    res = bulk_transition_service([a.id, b.id], "approved", seed.admin)
    assert res["updated"] == [a.id]
    assert res["skipped"] == [{"id": b.id, "reason": "invalid_transition"}]
    db.session.expire_all()
    assert db.session.get(Order, b.id).status == "rejected"


def test_illegal_transitions(seed):
    order = place(seed, seed.item_a)
    assert transition_order_service(order.id, "rejected", seed.admin)["ok"]
    assert transition_order_service(order.id, "approved", seed.admin)["error"] == "invalid_transition"
    assert transition_order_service(order.id, "shipped", seed.admin)["error"] == "invalid_status"
    assert transition_order_service("missing", "approved", seed.admin)["error"] == "not_found"
    assert db.session.get(Profile, seed.buyer).points == 0


def test_bulk_transition_reports_each_skipped_id(seed):
    a = place(seed, seed.item_a)
    b = place(seed, seed.item_b)
    transition_order_service(b.id, "rejected", seed.admin)

    res = bulk_transition_service([a.id, b.id, "nope", a.id], "approved", seed.admin)
    assert res["ok"]
    assert res["updated"] == [a.id]
    assert res["skipped"] == [
        {"id": b.id, "reason": "invalid_transition"},
        {"id": "nope", "reason": "not_found"},
    ]
    assert db.session.get(Order, a.id).status == "approved"
    assert db.session.get(Order, b.id).status == "rejected"


def test_bulk_finish_awards_each_row(seed):
    a = place(seed, seed.item_a)
    b = place(seed, seed.item_b)
    assert bulk_transition_service([a.id, b.id], "finished", seed.admin)["error"] == "confirmation_required"
    res = bulk_transition_service([a.id, b.id], "finished", seed.admin, confirmed=True)
    assert sorted(res["updated"]) == sorted([a.id, b.id])
    assert db.session.get(Profile, seed.buyer).points == 15
    assert bulk_transition_service([], "approved", seed.admin)["error"] == "empty_selection"


def test_listing_is_stable_and_read_only(seed):
    lines = [build_line_item(get_product(seed.item_a), 1), build_line_item(get_product(seed.item_b), 1)]
    orders = create_orders(seed.buyer, lines, "cod", {"phone_number": "09", "delivery_address": "Yangon"})

    first = list_orders()
    second = list_orders()
    assert first == second
    # 同一时间创建的订单按 id 倒序
    assert [o["id"] for o in first] == sorted([o.id for o in orders], reverse=True)
    assert first[0]["user_name"] == "Buyer"
    assert {o["product"]["name"] for o in first} == {"Item A", "Item B"}
    assert list_orders("PENDING") == first
    assert list_orders("finished") == []
    assert Order.query.count() == 2


def test_proof_url_is_signed_on_demand(seed):
    order = place(seed, seed.item_a, proof_path="buyer/1-abc.jpg", transaction_id="123456")
    res = payment_proof_url_service(order.id)
    assert res["ok"]
    assert "/api/storage/payment-proofs/buyer/1-abc.jpg?token=" in res["url"]

    plain = place(seed, seed.item_b)
    assert payment_proof_url_service(plain.id)["error"] == "not_found"
