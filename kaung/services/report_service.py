from typing import Dict, Any, Optional
import logging
import time

from sqlalchemy import update
from sqlalchemy.exc import SQLAlchemyError

from ..domain.policy import authorize
from ..domain.report import (
    ReportStatus, ModerationAction, REPORT_TYPES, parse_action, parse_account_status
)
from ..infra.models import db, Report
from ..infra.repository import new_id, get_profile, get_message, load_actor

logger = logging.getLogger('log')


def create_report_service(reporter_id: str, payload: Dict[str, Any]) -> Dict[str, Any]:
    """
    用户举报（用户或消息）
    """
    reported_user_id = str(payload.get("reported_user_id") or "").strip()
    reason = str(payload.get("reason") or "").strip()
    report_type = str(payload.get("report_type") or "user").strip()
    message_id = payload.get("message_id") or None

    if not reported_user_id or not reason:
        return {"error": "missing_fields", "message": "请选择举报原因", "fields": [k for k, v in (("reported_user_id", reported_user_id), ("reason", reason)) if not v]}
    if report_type not in REPORT_TYPES:
        return {"error": "invalid_report_type"}

    decision = authorize(load_actor(reporter_id), "report.create", {"reported_user_id": reported_user_id})
    if not decision:
        return {"error": "forbidden", "reason": decision.reason}
    if not get_profile(reported_user_id):
        return {"error": "not_found", "message": "被举报用户不存在"}

    if report_type == "message":
        msg = get_message(message_id)
        if not msg or msg.sender_id != reported_user_id:
            return {"error": "not_found", "message": "被举报消息不存在"}
        message_id = msg.id
    else:
        message_id = None

    r = Report(
        id=new_id(),
        reporter_id=reporter_id,
        reported_user_id=reported_user_id,
        message_id=message_id,
        report_type=report_type,
        reason=reason,
        description=str(payload.get("description") or "").strip() or None,
        status=ReportStatus.PENDING.value,
        created_at=int(time.time()),
    )
    db.session.add(r)
    db.session.commit()
    logger.info("report created id=%s reporter=%s reported=%s", r.id, reporter_id, reported_user_id)
    return {"ok": True, "report": r.to_dict()}


def process_report_service(report_id: str, action_value: Any, admin_id: str, notes: Optional[str] = None) -> Dict[str, Any]:
    """
    处理举报
    - 举报状态改为 actioned，记录处理人、处理时间、动作和备注
    - 动作不是 dismiss 时，被举报用户的 account_status 改为动作值
    两处修改在同一个事务里提交
    temporary_ban 没有到期时间，需管理员手动解除（set_account_status_service）
    """
    action = parse_action(action_value)
    if action is None:
        return {"error": "invalid_action", "message": f"未知动作: {action_value}"}

    report = db.session.get(Report, report_id)
    if not report:
        return {"error": "not_found"}
    if report.status != ReportStatus.PENDING.value:
        return {"error": "already_resolved", "message": "该举报已处理"}

    try:
        # 条件更新认领这条举报，两个管理员同时处理时只有一个生效
        res = db.session.execute(
            update(Report)
            .where(Report.id == report.id, Report.status == ReportStatus.PENDING.value)
            .values(
                status=ReportStatus.ACTIONED.value,
                admin_action=action.value,
                admin_notes=(notes or "").strip() or None,
                resolved_at=int(time.time()),
                resolved_by=admin_id,
            )
            .execution_options(synchronize_session=False)
        )
        if res.rowcount != 1:
            db.session.rollback()
            return {"error": "already_resolved", "message": "该举报已处理"}

        if action != ModerationAction.DISMISS:
            profile = get_profile(report.reported_user_id)
            if not profile:
                db.session.rollback()
                return {"error": "not_found", "message": "被举报用户不存在"}
            profile.account_status = action.value
        db.session.commit()
    except SQLAlchemyError:
        db.session.rollback()
        logger.exception("process report failed id=%s", report_id)
        return {"error": "update_failed", "message": "处理失败"}

    logger.info("report %s %s by %s", report_id, action.value, admin_id)
    return {"ok": True, "report": report.to_dict()}


def set_account_status_service(user_id: str, status_value: Any, admin_id: str) -> Dict[str, Any]:
    """
    管理员直接设置账号状态（解除封禁等）
    """
    status = parse_account_status(status_value)
    if status is None:
        return {"error": "invalid_status"}
    profile = get_profile(user_id)
    if not profile:
        return {"error": "not_found"}
    profile.account_status = status.value
    db.session.commit()
    logger.info("account status user=%s -> %s by %s", user_id, status.value, admin_id)
    return {"ok": True, "profile": profile.to_dict()}
