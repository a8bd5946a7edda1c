from decimal import Decimal

from sqlalchemy.exc import SQLAlchemyError

from conftest import make_user
from kaung.infra.ledger import WALLET, read_balance, ledger_sum
from kaung.infra.models import db, Order, WalletTransaction, Profile
from kaung.services import payment_service
from kaung.services.payment_service import quick_buy_service

MLBB = {"game_id": "123456789", "server_id": "2001"}


def test_insufficient_balance_writes_nothing(seed):
    res = quick_buy_service(seed.buyer, dict(MLBB, product_id=seed.diamonds))
    assert res["error"] == "insufficient_balance"
    assert Order.query.count() == 0
    assert WalletTransaction.query.count() == 0
    assert read_balance(seed.buyer, WALLET) == Decimal("500.00")


def test_successful_purchase_debits_once_with_ledger(seed):
    make_user("rich", wallet="5000")
    res = quick_buy_service("rich", dict(MLBB, product_id=seed.diamonds))

    assert res["ok"]
    assert res["wallet_balance"] == "4000.00"
    order = res["order"]
    assert order["status"] == "pending"
    assert order["payment_method"] == "wallet"
    assert order["game_id"] == "123456789"
    assert order["server_id"] == "2001"
    assert order["game_name"] == "MLBB Diamonds"

    entries = WalletTransaction.query.filter_by(user_id="rich").all()
    assert len(entries) == 1
    assert entries[0].transaction_type == "purchase"
    assert entries[0].reference_id == order["id"]
    assert entries[0].amount == Decimal("-1000.00")
    assert entries[0].balance_after == Decimal("4000.00")
    assert Decimal("5000") + ledger_sum(WALLET, "rich") == read_balance("rich", WALLET)


def test_category_required_fields(seed):
    make_user("rich", wallet="5000")
    res = quick_buy_service("rich", {"product_id": seed.diamonds, "game_id": "1"})
    assert res["error"] == "missing_fields"
    assert res["fields"] == ["server_id"]

    res = quick_buy_service("rich", {"product_id": seed.topup, "phone_number": "09123456789"})
    assert res["fields"] == ["operator"]

    res = quick_buy_service("rich", {"product_id": seed.topup, "phone_number": "09123456789", "operator": "MPT"})
    assert res["ok"]
    assert res["order"]["operator"] == "MPT"

    res = quick_buy_service("rich", {"product_id": seed.uc, "game_id": "55"})
    assert res["ok"]
    assert Order.query.count() == 2


def test_restricted_and_premium_rules(seed):
    make_user("banned", wallet="5000", status="temporary_ban")
    assert quick_buy_service("banned", dict(MLBB, product_id=seed.diamonds))["reason"] == "account_restricted"
    make_user("rich", wallet="5000")
    assert quick_buy_service("rich", {"product_id": seed.premium})["reason"] == "premium_required"


def test_repeated_submission_debits_once(seed):
    make_user("rich", wallet="5000")
    payload = dict(MLBB, product_id=seed.diamonds, submission_key="qb-1")
    first = quick_buy_service("rich", payload)
    second = quick_buy_service("rich", payload)

    assert second["duplicate"] is True
    assert second["order"]["id"] == first["order"]["id"]
    assert second["wallet_balance"] == "4000.00"
    assert Order.query.count() == 1
    assert WalletTransaction.query.count() == 1


def test_debit_rechecks_floor_after_precheck(seed, monkeypatch):
    # 预检查时读到的余额已过期（另一个会话刚扣过款）
    monkeypatch.setattr(payment_service, "read_balance", lambda *args, **kwargs: Decimal("99999"))
    res = quick_buy_service(seed.buyer, dict(MLBB, product_id=seed.diamonds))
    assert res["error"] == "insufficient_balance"
    assert Order.query.count() == 0
    assert WalletTransaction.query.count() == 0
    assert read_balance(seed.buyer, WALLET) == Decimal("500.00")


def test_ledger_failure_rolls_back_debit_and_order(seed, monkeypatch):
    make_user("rich", wallet="5000")

    def boom(*args, **kwargs):
        raise SQLAlchemyError("ledger insert failed")

    monkeypatch.setattr(payment_service, "write_ledger_entry", boom)
    res = quick_buy_service("rich", dict(MLBB, product_id=seed.diamonds))
    assert res["error"] == "order_failed"
    assert Order.query.count() == 0
    assert read_balance("rich", WALLET) == Decimal("5000.00")
    assert db.session.get(Profile, "rich").wallet_balance == Decimal("5000.00")


def test_unknown_product(seed):
    assert quick_buy_service(seed.buyer, {"product_id": 12345})["error"] == "product_not_found"
