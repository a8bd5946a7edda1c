"""
会员购买申请

用户选套餐并留手机号提交申请，线下付款后由管理员审核；
通过时按套餐天数开通 / 顺延会员，同一用户同时只能有一个待审核申请。
"""
from typing import Dict, Any, Optional
import logging
import time

from sqlalchemy import update
from sqlalchemy.exc import SQLAlchemyError

from ..infra.models import db, PremiumPurchaseRequest
from ..infra.repository import new_id, get_profile, get_premium_plan
from .profile_service import extend_membership

logger = logging.getLogger('log')

DEFAULT_REJECTION_REASON = "Request rejected by admin"


def request_premium_service(user_id: str, payload: Dict[str, Any]) -> Dict[str, Any]:
    profile = get_profile(user_id)
    if not profile:
        return {"error": "not_found"}
    plan = get_premium_plan(payload.get("plan_id"))
    if not plan or not plan.is_active:
        return {"error": "not_found", "message": "套餐不存在"}
    phone = str(payload.get("phone_number") or profile.phone_number or "").strip()
    if not phone:
        return {"error": "missing_fields", "fields": ["phone_number"]}

    pending = PremiumPurchaseRequest.query.filter_by(user_id=user_id, status="pending").first()
    if pending:
        return {"error": "request_pending", "message": "已有待审核的申请", "request": pending.to_dict()}

    now = int(time.time())
    req = PremiumPurchaseRequest(
        id=new_id(),
        user_id=user_id,
        plan_id=plan.id,
        phone_number=phone,
        status="pending",
        created_at=now,
        updated_at=now,
    )
    try:
        db.session.add(req)
        db.session.commit()
    except SQLAlchemyError:
        db.session.rollback()
        logger.exception("premium request failed user=%s plan=%s", user_id, plan.id)
        return {"error": "request_failed", "message": "提交失败"}
    logger.info("premium requested user=%s plan=%s id=%s", user_id, plan.id, req.id)
    return {"ok": True, "request": req.to_dict()}


def _resolve_pending(request_id: str, **values) -> bool:
    res = db.session.execute(
        update(PremiumPurchaseRequest)
        .where(PremiumPurchaseRequest.id == request_id, PremiumPurchaseRequest.status == "pending")
        .values(**values)
        .execution_options(synchronize_session=False)
    )
    return res.rowcount == 1


def approve_premium_request_service(request_id: str, admin_id: str) -> Dict[str, Any]:
    """
    审核通过：认领申请 + 开通 / 顺延会员，一个事务
    """
    req = db.session.get(PremiumPurchaseRequest, request_id)
    if not req:
        return {"error": "not_found"}
    if req.status != "pending":
        return {"error": "already_resolved", "message": "该申请已处理"}
    plan = get_premium_plan(req.plan_id)
    if not plan:
        return {"error": "not_found", "message": "套餐不存在"}

    try:
        now = int(time.time())
        if not _resolve_pending(req.id, status="approved", approved_by=admin_id, approved_at=now, updated_at=now):
            db.session.rollback()
            return {"error": "already_resolved", "message": "该申请已处理"}
        membership = extend_membership(req.user_id, plan.duration_days, admin_id, plan.name)
        db.session.commit()
    except SQLAlchemyError:
        db.session.rollback()
        logger.exception("approve premium request failed id=%s", request_id)
        return {"error": "update_failed", "message": "审核失败"}

    logger.info("premium request approved id=%s by %s expires=%s", request_id, admin_id, membership.expires_at)
    return {"ok": True, "request": req.to_dict(), "membership": membership.to_dict()}


def reject_premium_request_service(request_id: str, admin_id: str, reason: Optional[str] = None) -> Dict[str, Any]:
    req = db.session.get(PremiumPurchaseRequest, request_id)
    if not req:
        return {"error": "not_found"}
    if req.status != "pending":
        return {"error": "already_resolved", "message": "该申请已处理"}
    now = int(time.time())
    try:
        if not _resolve_pending(req.id, status="rejected", rejected_at=now, updated_at=now,
                                rejection_reason=(reason or "").strip() or DEFAULT_REJECTION_REASON):
            db.session.rollback()
            return {"error": "already_resolved", "message": "该申请已处理"}
        db.session.commit()
    except SQLAlchemyError:
        db.session.rollback()
        logger.exception("reject premium request failed id=%s", request_id)
        return {"error": "update_failed", "message": "驳回失败"}
    logger.info("premium request rejected id=%s by %s", request_id, admin_id)
    return {"ok": True, "request": req.to_dict()}
