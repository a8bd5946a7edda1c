import time
from decimal import Decimal
from types import SimpleNamespace

import pytest

from kaung import create_app
from kaung.infra.models import db, Profile, Product, WithdrawalSettings, WithdrawalItem
from kaung.infra.repository import add_role


@pytest.fixture
def app(tmp_path, monkeypatch):
    monkeypatch.setenv("STORAGE_DRIVER", "LOCAL")
    monkeypatch.setenv("STORAGE_LOCAL_DIR", str(tmp_path / "storage"))
    monkeypatch.delenv("STORAGE_PUBLIC_BASE", raising=False)
    app = create_app({
        "TESTING": True,
        "SQLALCHEMY_DATABASE_URI": "sqlite://",
        "SEED_DEMO_DATA": False,
        "SECRET_KEY": "test-secret",
    })
    with app.app_context():
        yield app
        db.session.remove()
        db.drop_all()


@pytest.fixture
def client(app):
    return app.test_client()


def make_user(user_id, wallet="0", points=0, roles=(), status="good", name=None):
    p = Profile(
        id=user_id,
        name=name or user_id.title(),
        phone_number="09123456789",
        points=points,
        wallet_balance=Decimal(wallet),
        account_status=status,
        created_at=int(time.time()),
    )
    db.session.add(p)
    db.session.commit()
    for role in roles:
        add_role(user_id, role)
    return p


def make_product(name, price, points_value=0, category="Accessories", **kwargs):
    p = Product(name=name, category=category, price=Decimal(price), points_value=points_value, **kwargs)
    db.session.add(p)
    db.session.commit()
    return p


@pytest.fixture
def seed(app):
    """
    买家 / 另一个用户 / 管理员，以及各类目的商品
    """
    buyer = make_user("buyer", wallet="500")
    other = make_user("other")
    admin = make_user("admin", roles=("admin",))
    item_a = make_product("Item A", "1000", 5)
    item_b = make_product("Item B", "2000", 10)
    diamonds = make_product("86 Diamonds", "1000", 5, category="MLBB Diamonds")
    uc = make_product("60 UC", "300", 3, category="PUBG UC")
    topup = make_product("Top-up 1000", "1000", 1, category="Phone Top-up")
    premium = make_product("VIP Pack", "100", 1, is_premium=True)
    limited = make_product("Gaming Mouse", "200", 2, stock_quantity=1)
    db.session.add(WithdrawalSettings(enabled=True, minimum_points=10, exchange_rate=Decimal("1")))
    db.session.add(WithdrawalItem(name="1000 Ks Bill", points_required=20, value_amount=Decimal("1000")))
    db.session.commit()
    return SimpleNamespace(
        buyer=buyer.id, other=other.id, admin=admin.id,
        item_a=item_a.id, item_b=item_b.id, diamonds=diamonds.id, uc=uc.id,
        topup=topup.id, premium=premium.id, limited=limited.id,
    )


def headers(user_id):
    return {"X-User-ID": user_id}
