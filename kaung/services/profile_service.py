from typing import Dict, Any, Optional
import logging
import time

from sqlalchemy.exc import SQLAlchemyError

from ..domain.policy import authorize
from ..infra.ledger import POINTS, WALLET, list_ledger
from ..infra.models import db, PremiumMembership
from ..infra.repository import get_profile, load_actor, active_membership
from .storage_service import upload_file, discard_file, refresh_signed_url, StorageError, BUCKET_AVATARS

logger = logging.getLogger('log')

DAY = 24 * 3600


def is_premium(user_id: str) -> bool:
    return active_membership(user_id) is not None


def extend_membership(user_id: str, days: int, admin_id: str, plan_name: str = "Premium") -> PremiumMembership:
    """
    已有有效会员时从到期时间往后顺延，否则新开一段；不提交
    """
    now = int(time.time())
    current = active_membership(user_id)
    if current:
        current.expires_at += days * DAY
        current.granted_by = admin_id
        return current
    m = PremiumMembership(
        user_id=user_id,
        plan_name=plan_name or "Premium",
        starts_at=now,
        expires_at=now + days * DAY,
        granted_by=admin_id,
    )
    db.session.add(m)
    return m


def grant_premium_service(user_id: str, days: Any, admin_id: str, plan_name: str = "Premium") -> Dict[str, Any]:
    """
    开通 / 续期会员
    """
    try:
        days = int(days)
    except (TypeError, ValueError):
        return {"error": "invalid_amount", "message": "天数必须为正整数"}
    if days <= 0:
        return {"error": "invalid_amount", "message": "天数必须为正整数"}
    if not get_profile(user_id):
        return {"error": "not_found"}

    m = extend_membership(user_id, days, admin_id, plan_name)
    db.session.commit()
    logger.info("premium granted user=%s days=%s by %s expires=%s", user_id, days, admin_id, m.expires_at)
    return {"ok": True, "membership": m.to_dict()}


def profile_view(user_id: str) -> Dict[str, Any]:
    p = get_profile(user_id)
    if not p:
        return {"error": "not_found"}
    d = p.to_dict()
    d["is_premium"] = is_premium(user_id)
    d["avatar_signed_url"] = None
    if p.avatar_url:
        try:
            d["avatar_signed_url"] = refresh_signed_url(BUCKET_AVATARS, p.avatar_url)
        except StorageError as e:
            logger.warning("sign avatar failed user=%s: %s", user_id, e)
    return {"ok": True, "profile": d}


def update_profile_service(user_id: str, payload: Dict[str, Any], avatar: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
    """
    修改资料
    - 手机号随时可改
    - 改名需要会员
    - 头像上传到 avatars 桶，只保存路径
    """
    p = get_profile(user_id)
    if not p:
        return {"error": "not_found"}

    name = payload.get("name")
    if name is not None:
        name = str(name).strip()
        if not name:
            return {"error": "missing_fields", "fields": ["name"]}
        if name != p.name:
            decision = authorize(load_actor(user_id), "profile.change_name")
            if not decision:
                return {"error": "forbidden", "reason": decision.reason}

    new_avatar = None
    if avatar and avatar.get("data"):
        try:
            new_avatar = upload_file(
                BUCKET_AVATARS, user_id, avatar.get("filename") or "avatar.jpg",
                avatar["data"], avatar.get("content_type"),
            )
        except StorageError as e:
            return {"error": "upload_failed", "message": str(e)}

    old_avatar = p.avatar_url
    if name is not None:
        p.name = name
    if payload.get("phone_number") is not None:
        p.phone_number = str(payload.get("phone_number")).strip()
    if new_avatar:
        p.avatar_url = new_avatar
    try:
        db.session.commit()
    except SQLAlchemyError:
        db.session.rollback()
        logger.exception("profile update failed user=%s", user_id)
        discard_file(BUCKET_AVATARS, new_avatar)
        return {"error": "update_failed", "message": "保存失败"}

    if new_avatar and old_avatar:
        discard_file(BUCKET_AVATARS, old_avatar)
    logger.info("profile updated user=%s", user_id)
    return profile_view(user_id)


def wallet_view(user_id: str) -> Dict[str, Any]:
    p = get_profile(user_id)
    if not p:
        return {"error": "not_found"}
    return {
        "ok": True,
        "wallet_balance": str(p.wallet_balance),
        "points": p.points,
        "wallet_transactions": list_ledger(WALLET, user_id),
        "point_transactions": list_ledger(POINTS, user_id),
    }
