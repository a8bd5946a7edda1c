from typing import Dict, Any, List, Optional
import logging
import time
from dataclasses import replace

from sqlalchemy import update
from sqlalchemy.exc import SQLAlchemyError

from ..domain.order import (
    OrderStatus, LineItem, Receipt, PAYMENT_COD,
    normalize_transaction_id, is_valid_transaction_id, missing_delivery_fields, parse_quantity
)
from ..domain.policy import authorize
from ..infra.models import db, Order, Product, CartItem
from ..infra.repository import (
    new_id, get_product, load_actor, list_cart_items, get_cart_item, delete_cart_items,
    find_orders_by_submission
)
from .storage_service import upload_file, discard_file, StorageError, BUCKET_PAYMENT_PROOFS

logger = logging.getLogger('log')


class OrderError(Exception):
    """
    下单失败（校验或库存），携带错误码
    """
    def __init__(self, code: str, message: str = ""):
        super().__init__(message or code)
        self.code = code
        self.message = message or code

    def to_dict(self) -> Dict[str, Any]:
        return {"error": self.code, "message": self.message}


def build_line_item(product: Optional[Product], quantity: Any) -> LineItem:
    """
    从商品表构建订单行快照，不信任前端传来的价格
    """
    if product is None:
        raise OrderError("product_not_found", "商品不存在")
    if not product.is_active:
        raise OrderError("product_inactive", f"商品已下架: {product.name}")
    qty = parse_quantity(quantity)
    if qty is None:
        raise OrderError("invalid_quantity", "数量必须为正整数")
    return LineItem(
        product_id=product.id,
        name=product.name,
        quantity=qty,
        unit_price=product.price,
        points_value=product.points_value or 0,
        category=product.category or "",
    )


def _reserve_stock(product_id: int, quantity: int) -> None:
    """
    有限库存的商品做带下限的条件扣减；stock_quantity 为空表示不限量
    """
    res = db.session.execute(
        update(Product)
        .where(
            Product.id == product_id,
            Product.stock_quantity.isnot(None),
            Product.stock_quantity >= quantity,
        )
        .values(stock_quantity=Product.stock_quantity - quantity)
        .execution_options(synchronize_session=False)
    )
    if res.rowcount == 1:
        product = db.session.identity_map.get(db.session.identity_key(Product, product_id))
        if product is not None:
            db.session.expire(product, ["stock_quantity"])
        return
    stock = db.session.query(Product.stock_quantity).filter(Product.id == product_id).scalar()
    if stock is not None:
        raise OrderError("out_of_stock", "库存不足")


def create_orders(user_id: str, lines: List[LineItem], payment_method: str,
                  delivery: Optional[Dict[str, Any]] = None, proof_path: Optional[str] = None,
                  transaction_id: Optional[str] = None, submission_key: Optional[str] = None,
                  status: OrderStatus = OrderStatus.PENDING, commit: bool = True) -> List[Order]:
    """
    创建订单（每个订单行一行）
    只负责插入订单和扣库存，积分 / 余额由调用方处理
    :param commit: False 时只 flush，由调用方在同一个事务里提交
    :return: 创建的订单行（含生成的 id 和时间，用于回执）
    """
    delivery = delivery or {}
    now = int(time.time())
    created = []
    for line in lines:
        _reserve_stock(line.product_id, line.quantity)
        o = Order(
            id=new_id(),
            user_id=user_id,
            product_id=line.product_id,
            quantity=line.quantity,
            price=line.price,
            status=status.value,
            payment_method=payment_method,
            payment_proof_url=proof_path,
            transaction_id=transaction_id,
            phone_number=str(delivery.get("phone_number") or ""),
            delivery_address=str(delivery.get("delivery_address") or ""),
            game_id=delivery.get("game_id") or None,
            server_id=delivery.get("server_id") or None,
            game_name=delivery.get("game_name") or None,
            operator=delivery.get("operator") or None,
            submission_key=submission_key,
            created_at=now,
            updated_at=now,
        )
        db.session.add(o)
        created.append(o)
    db.session.flush()
    if commit:
        db.session.commit()
    for o in created:
        logger.info("order created id=%s user=%s product=%s price=%s", o.id, user_id, o.product_id, o.price)
    return created


def _merge_lines(lines: List[LineItem]) -> List[LineItem]:
    """
    同一商品的多行合并成一行（数量相加），一次提交里每个商品只有一个订单
    """
    merged: Dict[int, LineItem] = {}
    for line in lines:
        prev = merged.get(line.product_id)
        merged[line.product_id] = replace(prev, quantity=prev.quantity + line.quantity) if prev else line
    return list(merged.values())


def _lines_from_payload(user_id: str, payload: Dict[str, Any]) -> List[LineItem]:
    items = payload.get("items")
    if items:
        return _merge_lines([build_line_item(get_product(it.get("product_id")), it.get("quantity", 1)) for it in items])
    # 没传 items 时结算整个购物车
    return [build_line_item(get_product(ci.product_id), ci.quantity) for ci in list_cart_items(user_id)]


def _receipt_for(orders: List[Order]) -> Receipt:
    lines = []
    for o in orders:
        p = get_product(o.product_id)
        lines.append(LineItem(
            product_id=o.product_id,
            name=p.name if p else "",
            quantity=o.quantity,
            unit_price=o.price / o.quantity,
            points_value=p.points_value if p else 0,
            category=p.category if p else "",
        ))
    return Receipt(lines)


def checkout_service(user_id: str, payload: Dict[str, Any], proof: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
    """
    购物车结算
    1. 校验配送信息、支付方式、转账凭证和 6 位交易号
    2. 非货到付款时上传凭证，只保存存储路径
    3. 一个事务内创建所有订单行并清理已结算的购物车
    4. 插入失败时回滚并删除已上传的凭证
    :param proof: {"filename", "data", "content_type"}
    :return: 订单列表和回执（总价、可得积分）
    """
    decision = authorize(load_actor(user_id), "order.checkout")
    if not decision:
        return {"error": "forbidden", "reason": decision.reason}

    submission_key = payload.get("submission_key") or None
    existing = find_orders_by_submission(user_id, submission_key)
    if existing:
        return {
            "ok": True,
            "duplicate": True,
            "orders": [o.to_dict() for o in existing],
            "receipt": _receipt_for(existing).to_dict(),
        }

    missing = missing_delivery_fields(payload)
    if missing:
        return {"error": "missing_fields", "message": "请填写必填信息", "fields": missing}

    payment_method = str(payload.get("payment_method") or PAYMENT_COD).strip().lower()
    transaction_id = None
    if payment_method != PAYMENT_COD:
        if not proof or not proof.get("data"):
            return {"error": "payment_proof_required", "message": "请上传转账凭证"}
        transaction_id = normalize_transaction_id(payload.get("transaction_id"))
        if not is_valid_transaction_id(transaction_id):
            return {"error": "invalid_transaction_id", "message": "交易号必须是 6 位数字"}

    try:
        lines = _lines_from_payload(user_id, payload)
    except OrderError as e:
        return e.to_dict()
    if not lines:
        return {"error": "empty_cart", "message": "购物车为空"}

    for line in lines:
        allowed = authorize(load_actor(user_id), "product.purchase_premium", get_product(line.product_id).to_dict())
        if not allowed:
            return {"error": "forbidden", "reason": allowed.reason}

    proof_path = None
    if payment_method != PAYMENT_COD:
        try:
            proof_path = upload_file(
                BUCKET_PAYMENT_PROOFS, user_id,
                proof.get("filename") or "proof.jpg", proof["data"], proof.get("content_type"),
            )
        except StorageError as e:
            logger.warning("payment proof upload failed user=%s: %s", user_id, e)
            return {"error": "upload_failed", "message": str(e)}

    delivery = {
        "phone_number": str(payload.get("phone_number")).strip(),
        "delivery_address": str(payload.get("delivery_address")).strip(),
    }
    try:
        orders = create_orders(
            user_id, lines, payment_method, delivery,
            proof_path=proof_path, transaction_id=transaction_id,
            submission_key=submission_key, commit=False,
        )
        delete_cart_items(user_id, [l.product_id for l in lines])
        db.session.commit()
    except OrderError as e:
        db.session.rollback()
        discard_file(BUCKET_PAYMENT_PROOFS, proof_path)
        return e.to_dict()
    except SQLAlchemyError:
        db.session.rollback()
        logger.exception("checkout failed user=%s", user_id)
        discard_file(BUCKET_PAYMENT_PROOFS, proof_path)
        return {"error": "order_failed", "message": "下单失败，请重试"}

    receipt = Receipt(lines)
    logger.info("checkout done user=%s orders=%d total=%s", user_id, len(orders), receipt.total_price)
    return {
        "ok": True,
        "orders": [o.to_dict() for o in orders],
        "receipt": receipt.to_dict(),
    }


# --- Cart ---

def add_to_cart_service(user_id: str, product_id: Any, quantity: Any = 1) -> Dict[str, Any]:
    """
    加入购物车：已存在则累加数量
    """
    product = get_product(product_id)
    if not product or not product.is_active:
        return {"error": "product_not_found"}
    qty = parse_quantity(quantity)
    if qty is None:
        return {"error": "invalid_quantity"}

    now = int(time.time())
    item = get_cart_item(user_id, product.id)
    if item:
        item.quantity += qty
        item.updated_at = now
    else:
        item = CartItem(user_id=user_id, product_id=product.id, quantity=qty, created_at=now, updated_at=now)
        db.session.add(item)
    db.session.commit()
    return {"ok": True, "product_id": product.id, "quantity": item.quantity}


def update_cart_item_service(user_id: str, product_id: Any, quantity: Any) -> Dict[str, Any]:
    item = get_cart_item(user_id, product_id)
    if not item:
        return {"error": "not_found"}
    qty = parse_quantity(quantity)
    if qty is None:
        return {"error": "invalid_quantity"}
    item.quantity = qty
    item.updated_at = int(time.time())
    db.session.commit()
    return {"ok": True, "product_id": item.product_id, "quantity": item.quantity}


def remove_cart_item_service(user_id: str, product_id: Any) -> Dict[str, Any]:
    item = get_cart_item(user_id, product_id)
    if item:
        db.session.delete(item)
        db.session.commit()
    return {"ok": True}


def cart_summary(user_id: str) -> Dict[str, Any]:
    items = []
    lines = []
    for ci in list_cart_items(user_id):
        p = get_product(ci.product_id)
        if not p:
            continue
        d = p.to_dict()
        d["quantity"] = ci.quantity
        items.append(d)
        if p.is_active:
            lines.append(build_line_item(p, ci.quantity))
    receipt = Receipt(lines)
    return {
        "items": items,
        "total_price": str(receipt.total_price),
        "points_to_earn": receipt.points_to_earn,
    }
