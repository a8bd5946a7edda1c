import logging
from decimal import Decimal
from typing import Any, Dict

from sqlalchemy.exc import SQLAlchemyError

from ..domain.order import (
    PAYMENT_WALLET, PAYMENT_POINTS, GAME_CATEGORIES, MOBILE_CATEGORIES,
    missing_quick_buy_fields, missing_delivery_fields
)
from ..domain.policy import authorize
from ..infra.ledger import WALLET, POINTS, apply_balance_delta, read_balance, write_ledger_entry
from ..infra.models import db
from ..infra.repository import get_product, load_actor, find_orders_by_submission
from .order_service import OrderError, build_line_item, create_orders

logger = logging.getLogger('log')


def quick_buy_service(user_id: str, payload: Dict[str, Any]) -> Dict[str, Any]:
    """
    钱包余额快速购买（游戏 / 话费充值）
    1. 按类目校验必填项
    2. 余额预检查，不足直接返回，不产生任何写入
    3. 一个事务内：条件扣款 -> 创建订单 -> 写扣款流水，任何一步失败全部回滚
    :param payload: product_id, quantity, game_id, server_id, operator, phone_number, submission_key
    :return: 订单和扣款后余额，或错误信息
    """
    actor = load_actor(user_id)
    decision = authorize(actor, "order.quick_buy")
    if not decision:
        return {"error": "forbidden", "reason": decision.reason}

    submission_key = payload.get("submission_key") or None
    existing = find_orders_by_submission(user_id, submission_key)
    if existing:
        # 重复提交：直接返回已创建的订单，不再扣款
        return {
            "ok": True,
            "duplicate": True,
            "order": existing[0].to_dict(),
            "wallet_balance": str(read_balance(user_id, WALLET)),
        }

    product = get_product(payload.get("product_id"))
    try:
        line = build_line_item(product, payload.get("quantity", 1))
    except OrderError as e:
        return e.to_dict()

    decision = authorize(actor, "product.purchase_premium", product.to_dict())
    if not decision:
        return {"error": "forbidden", "reason": decision.reason}

    missing = missing_quick_buy_fields(line.category, payload)
    if missing:
        return {"error": "missing_fields", "message": "请填写必填信息", "fields": missing}

    balance = read_balance(user_id, WALLET)
    if balance is None:
        return {"error": "not_found", "message": "用户不存在"}
    price = line.price
    if balance < price:
        return {"error": "insufficient_balance", "message": "余额不足", "wallet_balance": str(balance), "price": str(price)}

    delivery = {
        "game_id": payload.get("game_id"),
        "server_id": payload.get("server_id"),
        "game_name": line.category,
        "operator": payload.get("operator"),
        "phone_number": payload.get("phone_number") or "",
    }
    try:
        new_balance = apply_balance_delta(user_id, WALLET, -price)
        if new_balance is None:
            # 预检查之后余额被其他会话扣减
            db.session.rollback()
            return {"error": "insufficient_balance", "message": "余额不足"}
        orders = create_orders(
            user_id, [line], PAYMENT_WALLET, delivery,
            submission_key=submission_key, commit=False,
        )
        order = orders[0]
        write_ledger_entry(
            WALLET, user_id, -price, "purchase",
            reference_id=order.id,
            description=f"Purchase: {line.name}",
            balance_after=new_balance,
        )
        db.session.commit()
    except OrderError as e:
        db.session.rollback()
        return e.to_dict()
    except SQLAlchemyError:
        db.session.rollback()
        logger.exception("quick buy failed user=%s product=%s", user_id, line.product_id)
        return {"error": "order_failed", "message": "购买失败，余额未扣除"}

    logger.info("quick buy user=%s order=%s price=%s balance=%s", user_id, order.id, price, new_balance)
    return {
        "ok": True,
        "order": order.to_dict(),
        "wallet_balance": str(Decimal(new_balance)),
    }


def purchase_with_points_service(user_id: str, payload: Dict[str, Any]) -> Dict[str, Any]:
    """
    积分购买：只有设置了 points_price 的商品可以用积分支付
    游戏 / 话费类目按快速购买校验必填项，其他商品需要手机号和地址
    条件扣积分 -> 创建订单 -> 写积分流水，一个事务
    """
    actor = load_actor(user_id)
    decision = authorize(actor, "order.points_purchase")
    if not decision:
        return {"error": "forbidden", "reason": decision.reason}

    submission_key = payload.get("submission_key") or None
    existing = find_orders_by_submission(user_id, submission_key)
    if existing:
        return {
            "ok": True,
            "duplicate": True,
            "order": existing[0].to_dict(),
            "points": read_balance(user_id, POINTS),
        }

    product = get_product(payload.get("product_id"))
    try:
        line = build_line_item(product, payload.get("quantity", 1))
    except OrderError as e:
        return e.to_dict()
    if not product.points_price or product.points_price <= 0:
        return {"error": "points_not_accepted", "message": "该商品不支持积分购买"}

    decision = authorize(actor, "product.purchase_premium", product.to_dict())
    if not decision:
        return {"error": "forbidden", "reason": decision.reason}

    if line.category in GAME_CATEGORIES or line.category in MOBILE_CATEGORIES:
        missing = missing_quick_buy_fields(line.category, payload)
    else:
        missing = missing_delivery_fields(payload)
    if missing:
        return {"error": "missing_fields", "message": "请填写必填信息", "fields": missing}

    cost = product.points_price * line.quantity
    points = read_balance(user_id, POINTS)
    if points is None:
        return {"error": "not_found", "message": "用户不存在"}
    if points < cost:
        return {"error": "insufficient_points", "message": f"需要 {cost} 积分", "points": points}

    delivery = {
        "phone_number": payload.get("phone_number") or "",
        "delivery_address": payload.get("delivery_address") or "",
        "game_id": payload.get("game_id"),
        "server_id": payload.get("server_id"),
        "game_name": line.category if line.category in GAME_CATEGORIES else None,
        "operator": payload.get("operator"),
    }
    try:
        new_points = apply_balance_delta(user_id, POINTS, -cost)
        if new_points is None:
            db.session.rollback()
            return {"error": "insufficient_points", "message": f"需要 {cost} 积分"}
        order = create_orders(
            user_id, [line], PAYMENT_POINTS, delivery,
            submission_key=submission_key, commit=False,
        )[0]
        write_ledger_entry(
            POINTS, user_id, -cost, "purchase",
            reference_id=order.id,
            description=f"Purchase: {line.name}",
            balance_after=new_points,
        )
        db.session.commit()
    except OrderError as e:
        db.session.rollback()
        return e.to_dict()
    except SQLAlchemyError:
        db.session.rollback()
        logger.exception("points purchase failed user=%s product=%s", user_id, line.product_id)
        return {"error": "order_failed", "message": "购买失败，积分未扣除"}

    logger.info("points purchase user=%s order=%s cost=%s points=%s", user_id, order.id, cost, new_points)
    return {"ok": True, "order": order.to_dict(), "points": new_points}
