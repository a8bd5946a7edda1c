from typing import Dict, Any, List, Optional
import time
import uuid
import logging
from decimal import Decimal
from sqlalchemy import func
from sqlalchemy.exc import SQLAlchemyError
from .models import (
    db, Profile, UserRole, PremiumMembership, PremiumPlan, PremiumPurchaseRequest, Product, CartItem, Order,
    Report, Message, WithdrawalSettings, WithdrawalItem, WalletDeposit
)
from ..domain.policy import Actor

logger = logging.getLogger('log')


def new_id() -> str:
    return uuid.uuid4().hex


def _ensure_seed_db():
    """
    初始化示例数据到数据库（开发环境）
    """
    if Product.query.first():
        return

    db.session.add_all([
        Product(name="86 Diamonds", category="MLBB Diamonds", price=Decimal("5500"), points_value=5),
        Product(name="60 UC", category="PUBG UC", price=Decimal("4000"), points_value=4),
        Product(name="Top-up 5000 Ks", category="Phone Top-up", price=Decimal("5000"), points_value=5),
        Product(name="Gaming Mouse", category="Accessories", price=Decimal("25000"), points_value=25, stock_quantity=10),
    ])
    db.session.add(WithdrawalSettings(enabled=True, minimum_points=1000, exchange_rate=Decimal("1")))
    db.session.add(WithdrawalItem(name="1000 Ks Bill", points_required=1000, value_amount=Decimal("1000")))
    db.session.add_all([
        PremiumPlan(name="1 Month", plan_type="subscription", duration_days=30, price_mmk=Decimal("3000"), price_points=3000),
        PremiumPlan(name="1 Day Pass", plan_type="microtransaction", duration_days=1, price_mmk=Decimal("200"), price_points=200),
    ])

    try:
        db.session.commit()
    except SQLAlchemyError as e:
        db.session.rollback()
        logger.warning("Seed error: %s", e)

# --- Profile ---

def get_profile(user_id: str) -> Optional[Profile]:
    if not user_id:
        return None
    return db.session.get(Profile, user_id)

def ensure_profile(user_id: str, name: str = "", phone_number: str = "", email: Optional[str] = None) -> Profile:
    """
    认证平台注册后同步 profile 行（不存在则创建）
    """
    p = db.session.get(Profile, user_id)
    if not p:
        p = Profile(
            id=user_id,
            name=name or "User" + user_id[:6],
            phone_number=phone_number,
            email=email,
            points=0,
            wallet_balance=Decimal("0"),
            account_status="good",
            created_at=int(time.time()),
        )
        db.session.add(p)
        db.session.commit()
    return p

def get_roles(user_id: str) -> List[str]:
    rows = UserRole.query.filter_by(user_id=user_id).all()
    return [r.role for r in rows]

def add_role(user_id: str, role: str) -> None:
    if not UserRole.query.filter_by(user_id=user_id, role=role).first():
        db.session.add(UserRole(user_id=user_id, role=role))
        db.session.commit()

def active_membership(user_id: str) -> Optional[PremiumMembership]:
    now = int(time.time())
    return (
        PremiumMembership.query.filter(
            PremiumMembership.user_id == user_id,
            PremiumMembership.expires_at > now,
        )
        .order_by(PremiumMembership.expires_at.desc())
        .first()
    )

def load_actor(user_id: Optional[str]) -> Actor:
    """
    组装权限判定所需的操作人信息
    """
    if not user_id:
        return Actor(user_id=None)
    p = get_profile(user_id)
    return Actor(
        user_id=user_id,
        roles=frozenset(get_roles(user_id)),
        account_status=p.account_status if p else "good",
        is_premium=active_membership(user_id) is not None,
    )

def profile_names(user_ids) -> Dict[str, str]:
    ids = {u for u in user_ids if u}
    if not ids:
        return {}
    rows = Profile.query.filter(Profile.id.in_(ids)).all()
    return {p.id: p.name for p in rows}

def get_premium_plan(plan_id) -> Optional[PremiumPlan]:
    try:
        return db.session.get(PremiumPlan, int(plan_id))
    except (TypeError, ValueError):
        return None

def list_premium_plans() -> List[Dict[str, Any]]:
    rows = PremiumPlan.query.filter_by(is_active=True).order_by(PremiumPlan.duration_days, PremiumPlan.id).all()
    return [r.to_dict() for r in rows]

def list_premium_requests(status: Optional[str] = None, user_id: Optional[str] = None) -> List[Dict[str, Any]]:
    q = PremiumPurchaseRequest.query
    if status and status != "all":
        q = q.filter_by(status=status)
    if user_id:
        q = q.filter_by(user_id=user_id)
    rows = q.order_by(PremiumPurchaseRequest.created_at.desc(), PremiumPurchaseRequest.id.desc()).all()
    names = profile_names(r.user_id for r in rows)
    plans = {p.id: p.name for p in PremiumPlan.query.all()}
    res = []
    for r in rows:
        item = r.to_dict()
        item["user_name"] = names.get(r.user_id, "")
        item["plan_name"] = plans.get(r.plan_id, "")
        res.append(item)
    return res

# --- Product ---

def get_product(product_id) -> Optional[Product]:
    try:
        pid = int(product_id)
    except (TypeError, ValueError):
        return None
    return db.session.get(Product, pid)

def list_products(category: Optional[str] = None, include_inactive: bool = False) -> List[Dict[str, Any]]:
    q = Product.query
    if not include_inactive:
        q = q.filter_by(is_active=True)
    if category:
        q = q.filter_by(category=category)
    return [p.to_dict() for p in q.order_by(Product.id).all()]

# --- Cart ---

def list_cart_items(user_id: str) -> List[CartItem]:
    return CartItem.query.filter_by(user_id=user_id).order_by(CartItem.id).all()

def get_cart_item(user_id: str, product_id: int) -> Optional[CartItem]:
    return CartItem.query.filter_by(user_id=user_id, product_id=product_id).first()

def delete_cart_items(user_id: str, product_ids) -> int:
    """
    删除已结算的购物车行，不提交
    """
    if not product_ids:
        return 0
    return CartItem.query.filter(
        CartItem.user_id == user_id,
        CartItem.product_id.in_(list(product_ids)),
    ).delete(synchronize_session="evaluate")

# --- Message ---

def get_message(message_id) -> Optional[Message]:
    try:
        mid = int(message_id)
    except (TypeError, ValueError):
        return None
    return db.session.get(Message, mid)

# --- Order ---

def get_order(order_id: str) -> Optional[Order]:
    if not order_id:
        return None
    return db.session.get(Order, order_id)

def find_orders_by_submission(user_id: str, submission_key: Optional[str]) -> List[Order]:
    if not submission_key:
        return []
    return (
        Order.query.filter_by(user_id=user_id, submission_key=submission_key)
        .order_by(Order.created_at, Order.id)
        .all()
    )

def list_orders(status: Optional[str] = None, user_id: Optional[str] = None) -> List[Dict[str, Any]]:
    """
    订单列表（新订单在前），附带商品和下单人信息
    只读，不产生任何写入
    """
    q = Order.query
    if status and status != "all":
        q = q.filter(func.lower(Order.status) == func.lower(status))
    if user_id:
        q = q.filter_by(user_id=user_id)
    orders = q.order_by(Order.created_at.desc(), Order.id.desc()).all()

    product_ids = {o.product_id for o in orders}
    products = {}
    if product_ids:
        products = {p.id: p for p in Product.query.filter(Product.id.in_(product_ids)).all()}
    names = profile_names(o.user_id for o in orders)

    res = []
    for o in orders:
        d = o.to_dict()
        p = products.get(o.product_id)
        d["product"] = {
            "name": p.name if p else "",
            "image_url": p.image_url if p else "",
            "points_value": p.points_value if p else 0,
            "category": p.category if p else "",
        }
        d["user_name"] = names.get(o.user_id, "")
        res.append(d)
    return res

# --- Report ---

def list_reports(status: Optional[str] = "pending") -> List[Dict[str, Any]]:
    q = Report.query
    if status and status != "all":
        q = q.filter_by(status=status)
    reports = q.order_by(Report.created_at.desc(), Report.id.desc()).all()

    names = profile_names(
        [r.reporter_id for r in reports] + [r.reported_user_id for r in reports]
    )
    message_ids = [r.message_id for r in reports if r.message_id]
    contents = {}
    if message_ids:
        contents = {m.id: m.content for m in Message.query.filter(Message.id.in_(message_ids)).all()}

    res = []
    for r in reports:
        d = r.to_dict()
        d["reporter_name"] = names.get(r.reporter_id, "")
        d["reported_user_name"] = names.get(r.reported_user_id, "")
        d["message_content"] = contents.get(r.message_id) if r.message_id else None
        res.append(d)
    return res

# --- Wallet deposits / withdrawals ---

def list_deposits(status: Optional[str] = None, user_id: Optional[str] = None) -> List[Dict[str, Any]]:
    q = WalletDeposit.query
    if status and status != "all":
        q = q.filter_by(status=status)
    if user_id:
        q = q.filter_by(user_id=user_id)
    rows = q.order_by(WalletDeposit.created_at.desc(), WalletDeposit.id.desc()).all()
    names = profile_names(d.user_id for d in rows)
    res = []
    for d in rows:
        item = d.to_dict()
        item["user_name"] = names.get(d.user_id, "")
        res.append(item)
    return res

def get_withdrawal_settings() -> Optional[WithdrawalSettings]:
    return WithdrawalSettings.query.order_by(WithdrawalSettings.id).first()

def list_withdrawal_items() -> List[Dict[str, Any]]:
    rows = WithdrawalItem.query.filter_by(is_active=True).order_by(WithdrawalItem.points_required).all()
    return [r.to_dict() for r in rows]
