from typing import Dict, Any, Iterable, List, Optional
import logging
import time

from sqlalchemy import update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm.attributes import set_committed_value

from ..domain.order import OrderStatus, can_transition, CONFIRM_REQUIRED
from ..infra.events import UPDATE, queue_order_event
from ..infra.ledger import POINTS, apply_balance_delta, write_ledger_entry
from ..infra.models import db, Order
from ..infra.repository import get_order, get_product
from .storage_service import create_signed_url, StorageError, BUCKET_PAYMENT_PROOFS

logger = logging.getLogger('log')


def _parse_status(value) -> Optional[OrderStatus]:
    try:
        return OrderStatus(str(value).lower())
    except ValueError:
        return None


def award_order_points(order: Order) -> int:
    """
    订单完成后发放积分：product.points_value x quantity
    用 points_awarded_at IS NULL 做条件更新，同一订单最多发放一次
    不提交，由调用方统一提交
    :return: 本次发放的积分（已发放过则为 0）
    """
    now = int(time.time())
    res = db.session.execute(
        update(Order)
        .where(Order.id == order.id, Order.points_awarded_at.is_(None))
        .values(points_awarded_at=now)
        .execution_options(synchronize_session=False)
    )
    if res.rowcount != 1:
        logger.info("points already awarded order=%s", order.id)
        return 0
    set_committed_value(order, "points_awarded_at", now)

    product = get_product(order.product_id)
    points = (product.points_value or 0) * order.quantity if product else 0
    if points <= 0:
        return 0
    new_points = apply_balance_delta(order.user_id, POINTS, points)
    if new_points is None:
        # 下单人已不存在
        return 0
    write_ledger_entry(
        POINTS, order.user_id, points, "order_reward",
        reference_id=order.id,
        description=f"Order completed: {product.name}",
        balance_after=new_points,
    )
    return points


def _apply_transition(order: Order, target: OrderStatus):
    """
    单个订单的流转；不提交
    :return: (失败原因, 发放的积分)
    """
    current = _parse_status(order.status)
    if current is None or not can_transition(current, target):
        return "invalid_transition", 0

    # 条件更新：库里的状态必须仍是读到的状态，否则说明已被其他管理员处理
    now = int(time.time())
    res = db.session.execute(
        update(Order)
        .where(Order.id == order.id, Order.status == current.value)
        .values(status=target.value, updated_at=now)
        .execution_options(synchronize_session=False)
    )
    if res.rowcount != 1:
        logger.info("order %s changed concurrently, expected %s", order.id, current.value)
        return "invalid_transition", 0
    set_committed_value(order, "status", target.value)
    set_committed_value(order, "updated_at", now)
    queue_order_event(order, UPDATE)

    if target == OrderStatus.FINISHED:
        return None, award_order_points(order)
    return None, 0


def transition_order_service(order_id: str, target_value: Any, admin_id: str, confirmed: bool = False) -> Dict[str, Any]:
    """
    管理员变更订单状态
    pending -> approved / finished / rejected / cancelled
    approved -> finished / rejected / cancelled
    取消和完成需要二次确认；完成时给下单人发放积分
    """
    target = _parse_status(target_value)
    if target is None:
        return {"error": "invalid_status", "message": f"未知状态: {target_value}"}
    if target in CONFIRM_REQUIRED and not confirmed:
        return {"error": "confirmation_required", "message": f"请确认将订单标记为 {target.value}"}

    order = get_order(order_id)
    if not order:
        return {"error": "not_found"}

    previous = order.status
    try:
        reason, points = _apply_transition(order, target)
        if reason:
            db.session.rollback()
            return {"error": reason, "message": f"{previous} -> {target.value} 不允许"}
        db.session.commit()
    except SQLAlchemyError:
        db.session.rollback()
        logger.exception("order transition failed order=%s target=%s", order_id, target.value)
        return {"error": "update_failed", "message": "订单状态更新失败"}

    logger.info("order %s %s -> %s by %s", order_id, previous, target.value, admin_id)
    return {"ok": True, "order": order.to_dict(), "points_awarded": points}


def bulk_transition_service(order_ids: Iterable[str], target_value: Any, admin_id: str, confirmed: bool = False) -> Dict[str, Any]:
    """
    批量变更订单状态（一个事务）
    合法的订单全部更新，不合法 / 不存在的订单逐个返回原因
    """
    target = _parse_status(target_value)
    if target is None:
        return {"error": "invalid_status", "message": f"未知状态: {target_value}"}
    if target in CONFIRM_REQUIRED and not confirmed:
        return {"error": "confirmation_required", "message": f"请确认将订单标记为 {target.value}"}

    ids: List[str] = []
    for oid in order_ids or []:
        if oid and oid not in ids:
            ids.append(str(oid))
    if not ids:
        return {"error": "empty_selection", "message": "请选择订单"}

    orders = {o.id: o for o in Order.query.filter(Order.id.in_(ids)).all()}
    updated, skipped = [], []
    try:
        for oid in ids:
            order = orders.get(oid)
            if not order:
                skipped.append({"id": oid, "reason": "not_found"})
                continue
            reason, _ = _apply_transition(order, target)
            if reason:
                skipped.append({"id": oid, "reason": reason})
                continue
            updated.append(oid)
        db.session.commit()
    except SQLAlchemyError:
        db.session.rollback()
        logger.exception("bulk transition failed target=%s", target.value)
        return {"error": "update_failed", "message": "批量更新失败，未做任何修改"}

    logger.info("bulk %s by %s: updated=%d skipped=%d", target.value, admin_id, len(updated), len(skipped))
    return {"ok": True, "status": target.value, "updated": updated, "skipped": skipped}


def payment_proof_url_service(order_id: str) -> Dict[str, Any]:
    """
    按需为转账凭证生成签名链接（1 小时有效）
    """
    order = get_order(order_id)
    if not order:
        return {"error": "not_found"}
    if not order.payment_proof_url:
        return {"error": "not_found", "message": "该订单没有转账凭证"}
    try:
        url = create_signed_url(BUCKET_PAYMENT_PROOFS, order.payment_proof_url)
    except StorageError as e:
        logger.warning("sign proof failed order=%s: %s", order_id, e)
        return {"error": "sign_failed", "message": str(e)}
    return {"ok": True, "url": url}
