from typing import Dict, Any, Optional
from decimal import Decimal, InvalidOperation
import logging
import time

from sqlalchemy import update
from sqlalchemy.exc import SQLAlchemyError

from ..infra.ledger import (
    POINTS, WALLET, apply_balance_delta, read_balance, write_balance, write_ledger_entry
)
from ..infra.models import db, WalletDeposit, WithdrawalItem, PointWithdrawal
from ..infra.repository import new_id, get_profile, get_withdrawal_settings
from .storage_service import (
    upload_file, discard_file, create_signed_url, StorageError, BUCKET_DEPOSIT_SCREENSHOTS
)

logger = logging.getLogger('log')


def _parse_amount(value: Any) -> Optional[Decimal]:
    try:
        amount = Decimal(str(value))
    except (InvalidOperation, TypeError, ValueError):
        return None
    if not amount.is_finite() or amount <= 0:
        return None
    return amount.quantize(Decimal("0.01"))


def request_deposit_service(user_id: str, payload: Dict[str, Any], screenshot: Optional[Dict[str, Any]]) -> Dict[str, Any]:
    """
    钱包充值申请：上传转账截图，等待管理员审核
    """
    amount = _parse_amount(payload.get("amount"))
    payment_method = str(payload.get("payment_method") or "").strip()
    if amount is None:
        return {"error": "invalid_amount", "message": "请输入正确的金额"}
    if not payment_method or not screenshot or not screenshot.get("data"):
        return {"error": "missing_fields", "message": "请填写所有字段"}
    if not get_profile(user_id):
        return {"error": "not_found"}

    try:
        path = upload_file(
            BUCKET_DEPOSIT_SCREENSHOTS, user_id,
            screenshot.get("filename") or "screenshot.jpg", screenshot["data"], screenshot.get("content_type"),
        )
    except StorageError as e:
        return {"error": "upload_failed", "message": str(e)}

    now = int(time.time())
    deposit = WalletDeposit(
        id=new_id(),
        user_id=user_id,
        amount=amount,
        payment_method=payment_method,
        screenshot_url=path,
        status="pending",
        created_at=now,
        updated_at=now,
    )
    try:
        db.session.add(deposit)
        db.session.commit()
    except SQLAlchemyError:
        db.session.rollback()
        logger.exception("deposit insert failed user=%s", user_id)
        discard_file(BUCKET_DEPOSIT_SCREENSHOTS, path)
        return {"error": "deposit_failed", "message": "提交失败"}
    logger.info("deposit requested id=%s user=%s amount=%s", deposit.id, user_id, amount)
    return {"ok": True, "deposit": deposit.to_dict()}


def _resolve_pending(deposit_id: str, **values) -> bool:
    """
    只有仍是 pending 的充值才能被处理；并发审核时只有一个会成功
    """
    res = db.session.execute(
        update(WalletDeposit)
        .where(WalletDeposit.id == deposit_id, WalletDeposit.status == "pending")
        .values(**values)
        .execution_options(synchronize_session=False)
    )
    return res.rowcount == 1


def approve_deposit_service(deposit_id: str, admin_id: str, notes: Optional[str] = None) -> Dict[str, Any]:
    """
    审核通过：入账 + 流水 + 状态，一个事务
    """
    deposit = db.session.get(WalletDeposit, deposit_id)
    if not deposit:
        return {"error": "not_found"}
    if deposit.status != "pending":
        return {"error": "already_resolved", "message": "该充值已处理"}

    try:
        now = int(time.time())
        if not _resolve_pending(deposit.id, status="approved", admin_notes=(notes or "").strip() or None,
                                approved_by=admin_id, approved_at=now, updated_at=now):
            db.session.rollback()
            return {"error": "already_resolved", "message": "该充值已处理"}
        new_balance = apply_balance_delta(deposit.user_id, WALLET, deposit.amount)
        if new_balance is None:
            db.session.rollback()
            return {"error": "not_found", "message": "用户不存在"}
        write_ledger_entry(
            WALLET, deposit.user_id, deposit.amount, "deposit",
            reference_id=deposit.id,
            description="Deposit approved",
            balance_after=new_balance,
        )
        db.session.commit()
    except SQLAlchemyError:
        db.session.rollback()
        logger.exception("approve deposit failed id=%s", deposit_id)
        return {"error": "update_failed", "message": "审核失败"}

    logger.info("deposit approved id=%s by %s balance=%s", deposit_id, admin_id, new_balance)
    return {"ok": True, "deposit": deposit.to_dict(), "wallet_balance": str(new_balance)}


def reject_deposit_service(deposit_id: str, admin_id: str, notes: Optional[str]) -> Dict[str, Any]:
    if not (notes or "").strip():
        return {"error": "notes_required", "message": "请填写驳回原因"}
    deposit = db.session.get(WalletDeposit, deposit_id)
    if not deposit:
        return {"error": "not_found"}
    if deposit.status != "pending":
        return {"error": "already_resolved", "message": "该充值已处理"}
    now = int(time.time())
    try:
        if not _resolve_pending(deposit.id, status="rejected", admin_notes=notes.strip(), rejected_at=now, updated_at=now):
            db.session.rollback()
            return {"error": "already_resolved", "message": "该充值已处理"}
        db.session.commit()
    except SQLAlchemyError:
        db.session.rollback()
        logger.exception("reject deposit failed id=%s", deposit_id)
        return {"error": "update_failed", "message": "驳回失败"}
    logger.info("deposit rejected id=%s by %s", deposit_id, admin_id)
    return {"ok": True, "deposit": deposit.to_dict()}


def deposit_screenshot_url_service(deposit_id: str) -> Dict[str, Any]:
    deposit = db.session.get(WalletDeposit, deposit_id)
    if not deposit:
        return {"error": "not_found"}
    try:
        return {"ok": True, "url": create_signed_url(BUCKET_DEPOSIT_SCREENSHOTS, deposit.screenshot_url)}
    except StorageError as e:
        return {"error": "sign_failed", "message": str(e)}


def admin_set_wallet_balance_service(user_id: str, value: Any, admin_id: str, note: Optional[str] = None) -> Dict[str, Any]:
    """
    管理员纠正余额：加行锁读取 -> 写入绝对值 -> 差额记一条 adjustment 流水
    """
    try:
        target = Decimal(str(value)).quantize(Decimal("0.01"))
    except (InvalidOperation, TypeError, ValueError):
        return {"error": "invalid_amount"}
    if not target.is_finite() or target < 0:
        return {"error": "invalid_amount"}

    try:
        current = read_balance(user_id, WALLET, for_update=True)
        if current is None:
            db.session.rollback()
            return {"error": "not_found"}
        diff = target - current
        if diff == 0:
            db.session.rollback()
            return {"ok": True, "wallet_balance": str(current), "adjustment": "0.00"}
        write_balance(user_id, WALLET, target)
        write_ledger_entry(
            WALLET, user_id, diff, "adjustment",
            description=(note or "").strip() or f"Adjusted by admin {admin_id}",
            balance_after=target,
        )
        db.session.commit()
    except SQLAlchemyError:
        db.session.rollback()
        logger.exception("balance adjustment failed user=%s", user_id)
        return {"error": "update_failed"}

    logger.info("wallet adjusted user=%s %s -> %s by %s", user_id, current, target, admin_id)
    return {"ok": True, "wallet_balance": str(target), "adjustment": str(diff)}


def exchange_points_service(user_id: str, item_id: Any) -> Dict[str, Any]:
    """
    积分兑换：检查开关和最低积分 -> 条件扣积分 + 兑换申请 + 流水，一个事务
    """
    settings = get_withdrawal_settings()
    if not settings or not settings.enabled:
        return {"error": "exchange_disabled", "message": "兑换暂未开放"}
    try:
        item = db.session.get(WithdrawalItem, int(item_id))
    except (TypeError, ValueError):
        item = None
    if not item or not item.is_active:
        return {"error": "not_found"}

    points = read_balance(user_id, POINTS)
    if points is None:
        return {"error": "not_found"}
    if points < settings.minimum_points:
        return {"error": "below_minimum_points", "message": f"至少需要 {settings.minimum_points} 积分", "points": points}
    if points < item.points_required:
        return {"error": "insufficient_points", "message": f"需要 {item.points_required} 积分", "points": points}

    try:
        new_points = apply_balance_delta(user_id, POINTS, -item.points_required)
        if new_points is None:
            db.session.rollback()
            return {"error": "insufficient_points"}
        withdrawal = PointWithdrawal(
            id=new_id(),
            user_id=user_id,
            withdrawal_item_id=item.id,
            points_withdrawn=item.points_required,
            status="pending",
            created_at=int(time.time()),
        )
        db.session.add(withdrawal)
        write_ledger_entry(
            POINTS, user_id, -item.points_required, "withdrawal",
            reference_id=withdrawal.id,
            description=f"Exchanged for {item.name}",
            balance_after=new_points,
        )
        db.session.commit()
    except SQLAlchemyError:
        db.session.rollback()
        logger.exception("points exchange failed user=%s item=%s", user_id, item_id)
        return {"error": "exchange_failed"}

    logger.info("points exchanged user=%s item=%s points=%s", user_id, item.id, item.points_required)
    return {"ok": True, "withdrawal": withdrawal.to_dict(), "points": new_points}
