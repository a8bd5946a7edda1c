"""
余额与流水

- 所有余额变动都走 apply_balance_delta：一条带下限校验的条件 UPDATE，
  由数据库保证并发扣减不会读到旧值。
- 流水只追加，不修改、不删除；和余额变动在同一个事务里提交，
  是否 commit 由调用方（service 层）决定。
"""
import logging
import time
from decimal import Decimal
from typing import Optional, Union

from sqlalchemy import func, select, update
from sqlalchemy.orm.attributes import set_committed_value

from .models import db, Profile, PointTransaction, WalletTransaction

logger = logging.getLogger('log')

Number = Union[int, Decimal]

POINTS = "points"
WALLET = "wallet"

_FIELDS = {
    POINTS: Profile.points,
    WALLET: Profile.wallet_balance,
}


def _column(field: str):
    if field not in _FIELDS:
        raise ValueError(f"unknown balance field: {field}")
    return _FIELDS[field]


def _sync_loaded(user_id: str, field: str, value: Number) -> None:
    # 条件 UPDATE 不经过 ORM，已加载的 Profile 需要同步成库里的值
    profile = db.session.identity_map.get(db.session.identity_key(Profile, user_id))
    if profile is not None:
        set_committed_value(profile, _column(field).key, value)


def read_balance(user_id: str, field: str, for_update: bool = False) -> Optional[Number]:
    """
    读取当前余额；for_update=True 时加行锁（MySQL 下生效）
    """
    stmt = select(_column(field)).where(Profile.id == user_id)
    if for_update:
        stmt = stmt.with_for_update()
    return db.session.execute(stmt).scalar_one_or_none()


def write_balance(user_id: str, field: str, value: Number) -> None:
    """
    直接写入余额绝对值（读-改-写）
    只用于管理员纠正余额，且必须先 read_balance(for_update=True)
    """
    if value < 0:
        raise ValueError("balance cannot be negative")
    db.session.execute(
        update(Profile)
        .where(Profile.id == user_id)
        .values({_column(field).key: value})
        .execution_options(synchronize_session=False)
    )
    _sync_loaded(user_id, field, value)


def apply_balance_delta(user_id: str, field: str, delta: Number) -> Optional[Number]:
    """
    原子增减余额
    UPDATE profiles SET f = f + :delta WHERE id = :id AND f + :delta >= 0
    :return: 变动后的余额；余额不足或用户不存在时返回 None
    """
    col = _column(field)
    res = db.session.execute(
        update(Profile)
        .where(Profile.id == user_id, col + delta >= 0)
        .values({col.key: col + delta})
        .execution_options(synchronize_session=False)
    )
    if res.rowcount != 1:
        logger.info("balance floor check failed user=%s field=%s delta=%s", user_id, field, delta)
        return None
    new_value = read_balance(user_id, field)
    _sync_loaded(user_id, field, new_value)
    return new_value


def write_ledger_entry(kind: str, user_id: str, amount: Number, transaction_type: str,
                       reference_id: Optional[str] = None, description: Optional[str] = None,
                       balance_after: Optional[Number] = None):
    """
    追加一条流水（积分或钱包），不提交
    """
    model = PointTransaction if kind == POINTS else WalletTransaction
    entry = model(
        user_id=user_id,
        amount=amount,
        transaction_type=transaction_type,
        reference_id=reference_id,
        description=description,
        balance_after=balance_after,
        created_at=int(time.time()),
    )
    db.session.add(entry)
    return entry


def ledger_sum(kind: str, user_id: str) -> Number:
    model = PointTransaction if kind == POINTS else WalletTransaction
    total = db.session.query(func.sum(model.amount)).filter(model.user_id == user_id).scalar()
    if total is None:
        return 0 if kind == POINTS else Decimal("0")
    return total


def list_ledger(kind: str, user_id: str, limit: int = 100):
    model = PointTransaction if kind == POINTS else WalletTransaction
    rows = (
        model.query.filter_by(user_id=user_id)
        .order_by(model.created_at.desc(), model.id.desc())
        .limit(limit)
        .all()
    )
    return [r.to_dict() for r in rows]
