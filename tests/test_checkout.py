import os

from sqlalchemy.exc import SQLAlchemyError

from kaung.infra.models import db, Order, CartItem, Product, Profile
from kaung.services import order_service
from kaung.services.order_service import (
    checkout_service, add_to_cart_service, update_cart_item_service, remove_cart_item_service, cart_summary
)


DELIVERY = {"phone_number": "09123456789", "delivery_address": "Yangon"}
PROOF = {"filename": "proof.jpg", "data": b"\xff\xd8fake-jpeg", "content_type": "image/jpeg"}


def stored_files(app):
    root = os.environ["STORAGE_LOCAL_DIR"]
    found = []
    for dirpath, _, files in os.walk(root):
        found.extend(os.path.join(dirpath, f) for f in files)
    return found


def test_cash_on_delivery_checkout(app, seed):
    payload = dict(DELIVERY, payment_method="cod", items=[
        {"product_id": seed.item_a, "quantity": 1},
        {"product_id": seed.item_b, "quantity": 1},
    ])
    res = checkout_service(seed.buyer, payload)

    assert res["ok"]
    assert len(res["orders"]) == 2
    assert {o["status"] for o in res["orders"]} == {"pending"}
    assert {o["payment_method"] for o in res["orders"]} == {"cod"}
    assert res["receipt"]["total_price"] == "3000.00"
    assert res["receipt"]["points_to_earn"] == 15
    assert all(o["payment_proof_url"] is None for o in res["orders"])
    assert stored_files(app) == []


def test_price_comes_from_catalog(seed):
    payload = dict(DELIVERY, items=[{"product_id": seed.item_b, "quantity": 2, "price": "1"}])
    res = checkout_service(seed.buyer, payload)
    assert res["orders"][0]["price"] == "4000.00"


def test_missing_delivery_details(seed):
    res = checkout_service(seed.buyer, {"items": [{"product_id": seed.item_a}]})
    assert res["error"] == "missing_fields"
    assert res["fields"] == ["phone_number", "delivery_address"]
    assert Order.query.count() == 0


def test_transfer_needs_proof_and_transaction_id(app, seed):
    base = dict(DELIVERY, payment_method="kbzpay", items=[{"product_id": seed.item_a}])

    assert checkout_service(seed.buyer, dict(base, transaction_id="123456"))["error"] == "payment_proof_required"
    res = checkout_service(seed.buyer, dict(base, transaction_id="12a45"), PROOF)
    assert res["error"] == "invalid_transaction_id"
    assert Order.query.count() == 0
    assert stored_files(app) == []

    res = checkout_service(seed.buyer, dict(base, transaction_id="12-34-56"), PROOF)
    assert res["ok"]
    order = res["orders"][0]
    assert order["transaction_id"] == "123456"
    assert order["payment_proof_url"].startswith("buyer/")
    assert order["payment_proof_url"].endswith(".jpg")
    files = stored_files(app)
    assert len(files) == 1
    assert files[0].endswith(order["payment_proof_url"])


def test_failed_insert_removes_uploaded_proof(app, seed, monkeypatch):
    def boom(*args, **kwargs):
        raise SQLAlchemyError("insert failed")

    monkeypatch.setattr(order_service, "delete_cart_items", boom)
    payload = dict(DELIVERY, payment_method="wavepay", transaction_id="654321",
                   items=[{"product_id": seed.item_a}, {"product_id": seed.item_b}])
    res = checkout_service(seed.buyer, payload, PROOF)

    assert res["error"] == "order_failed"
    assert Order.query.count() == 0
    assert stored_files(app) == []


def test_out_of_stock_rolls_back_every_line(seed):
    payload = dict(DELIVERY, items=[
        {"product_id": seed.item_a, "quantity": 1},
        {"product_id": seed.limited, "quantity": 2},
    ])
    res = checkout_service(seed.buyer, payload)
    assert res["error"] == "out_of_stock"
    assert Order.query.count() == 0
    assert db.session.get(Product, seed.limited).stock_quantity == 1


def test_finite_stock_is_decremented(seed):
    res = checkout_service(seed.buyer, dict(DELIVERY, items=[{"product_id": seed.limited}]))
    assert res["ok"]
    assert db.session.get(Product, seed.limited).stock_quantity == 0
    assert checkout_service(seed.buyer, dict(DELIVERY, items=[{"product_id": seed.limited}]))["error"] == "out_of_stock"


def test_invalid_lines(seed):
    assert checkout_service(seed.buyer, dict(DELIVERY, items=[{"product_id": 999}]))["error"] == "product_not_found"
    assert checkout_service(seed.buyer, dict(DELIVERY, items=[{"product_id": seed.item_a, "quantity": 0}]))["error"] == "invalid_quantity"
    db.session.get(Product, seed.item_b).is_active = False
    db.session.commit()
    assert checkout_service(seed.buyer, dict(DELIVERY, items=[{"product_id": seed.item_b}]))["error"] == "product_inactive"
    assert checkout_service(seed.buyer, dict(DELIVERY))["error"] == "empty_cart"


def test_premium_product_needs_membership(seed):
    res = checkout_service(seed.buyer, dict(DELIVERY, items=[{"product_id": seed.premium}]))
    assert res["error"] == "forbidden"
    assert res["reason"] == "premium_required"


def test_restricted_account_cannot_checkout(seed):
    db.session.get(Profile, seed.buyer).account_status = "banned"
    db.session.commit()
    res = checkout_service(seed.buyer, dict(DELIVERY, items=[{"product_id": seed.item_a}]))
    assert res == {"error": "forbidden", "reason": "account_restricted"}


def test_repeated_submission_returns_existing_orders(seed):
    payload = dict(DELIVERY, submission_key="sub-1", items=[
        {"product_id": seed.item_a}, {"product_id": seed.item_b},
    ])
    first = checkout_service(seed.buyer, payload)
    second = checkout_service(seed.buyer, payload)

    assert second["duplicate"] is True
    assert {o["id"] for o in second["orders"]} == {o["id"] for o in first["orders"]}
    assert second["receipt"]["total_price"] == first["receipt"]["total_price"]
    assert Order.query.count() == 2



def test_repeated_product_lines_become_one_order(seed):
    payload = dict(DELIVERY, submission_key="sub-2", items=[
        {"product_id": seed.item_a, "quantity": 1}, {"product_id": seed.item_a, "quantity": 2},
    ])
    res = checkout_service(seed.buyer, payload)
    assert [(o["product_id"], o["quantity"], o["price"]) for o in res["orders"]] == [(seed.item_a, 3, "3000.00")]
    assert res["receipt"]["total_price"] == "3000.00"

    again = checkout_service(seed.buyer, payload)
    assert again["duplicate"] is True
    assert [o["id"] for o in again["orders"]] == [o["id"] for o in res["orders"]]
    assert Order.query.count() == 1

def test_cart_checkout_clears_cart(seed):
    add_to_cart_service(seed.buyer, seed.item_a, 1)
    assert add_to_cart_service(seed.buyer, seed.item_a, 2)["quantity"] == 3
    add_to_cart_service(seed.buyer, seed.item_b)
    summary = cart_summary(seed.buyer)
    assert summary["total_price"] == "5000.00"
    assert summary["points_to_earn"] == 25

    res = checkout_service(seed.buyer, dict(DELIVERY))
    assert res["ok"]
    assert res["receipt"]["total_price"] == "5000.00"
    assert CartItem.query.filter_by(user_id=seed.buyer).count() == 0


def test_cart_edits(seed):
    assert add_to_cart_service(seed.buyer, 999)["error"] == "product_not_found"
    add_to_cart_service(seed.buyer, seed.item_a)
    assert update_cart_item_service(seed.buyer, seed.item_a, 4)["quantity"] == 4
    assert update_cart_item_service(seed.buyer, seed.item_a, -1)["error"] == "invalid_quantity"
    assert update_cart_item_service(seed.buyer, seed.item_b, 1)["error"] == "not_found"
    remove_cart_item_service(seed.buyer, seed.item_a)
    assert cart_summary(seed.buyer)["items"] == []
    assert cart_summary(seed.buyer)["total_price"] == "0"
