from dataclasses import dataclass, field
from decimal import Decimal
from enum import Enum
from typing import List, Dict, Any, Optional
import re


class OrderStatus(str, Enum):
    """
    订单状态枚举
    PENDING: 已下单，待审核
    APPROVED: 已确认付款，处理中
    FINISHED: 已完成（触发积分奖励）
    REJECTED: 已驳回
    CANCELLED: 已取消
    """
    PENDING = "pending"
    APPROVED = "approved"
    FINISHED = "finished"
    REJECTED = "rejected"
    CANCELLED = "cancelled"


TERMINAL_STATUSES = {OrderStatus.FINISHED, OrderStatus.REJECTED, OrderStatus.CANCELLED}

# 影响余额或不可逆的流转，需要管理员二次确认
CONFIRM_REQUIRED = {OrderStatus.CANCELLED, OrderStatus.FINISHED}

PAYMENT_COD = "cod"
PAYMENT_WALLET = "wallet"
PAYMENT_POINTS = "points"

# 游戏充值类目
MLBB_CATEGORY = "MLBB Diamonds"
GAME_CATEGORIES = {MLBB_CATEGORY, "PUBG UC", "Free Fire", "Genshin", "Gift Cards"}
# 话费 / 流量类目
MOBILE_CATEGORIES = {"Phone Top-up", "Data Plans"}

TRANSACTION_ID_RE = re.compile(r"^\d{6}$")


def can_transition(current: OrderStatus, target: OrderStatus) -> bool:
    """
    订单状态机校验
    :param current: 当前状态
    :param target: 目标状态
    :return: 是否允许流转
    """
    if current in TERMINAL_STATUSES:
        return False
    # 待审核 -> 已确认 / 已完成 / 已驳回 / 已取消
    if current == OrderStatus.PENDING and target in {OrderStatus.APPROVED, OrderStatus.FINISHED, OrderStatus.REJECTED, OrderStatus.CANCELLED}:
        return True
    # 已确认 -> 已完成 / 已驳回 / 已取消
    if current == OrderStatus.APPROVED and target in {OrderStatus.FINISHED, OrderStatus.REJECTED, OrderStatus.CANCELLED}:
        return True
    return False


def normalize_transaction_id(raw: Optional[str]) -> str:
    """
    只保留数字，最多 6 位
    """
    digits = "".join(c for c in str(raw or "") if c.isdigit())
    return digits[:6]


def is_valid_transaction_id(value: Optional[str]) -> bool:
    return bool(value) and TRANSACTION_ID_RE.match(value) is not None


@dataclass
class LineItem:
    """
    订单行快照
    下单时刻锁定单价和积分，防止后续改价影响历史订单
    """
    product_id: int
    name: str
    quantity: int
    unit_price: Decimal
    points_value: int
    category: str = ""

    @property
    def price(self) -> Decimal:
        return self.unit_price * self.quantity

    @property
    def points_to_earn(self) -> int:
        return self.points_value * self.quantity


@dataclass
class Receipt:
    lines: List[LineItem] = field(default_factory=list)

    @property
    def total_price(self) -> Decimal:
        return sum((l.price for l in self.lines), Decimal("0"))

    @property
    def points_to_earn(self) -> int:
        return sum(l.points_to_earn for l in self.lines)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "total_price": str(self.total_price),
            "points_to_earn": self.points_to_earn,
            "lines": [
                {
                    "product_id": l.product_id,
                    "name": l.name,
                    "quantity": l.quantity,
                    "unit_price": str(l.unit_price),
                    "price": str(l.price),
                    "points_to_earn": l.points_to_earn,
                }
                for l in self.lines
            ],
        }


def missing_delivery_fields(payload: Dict[str, Any]) -> List[str]:
    """
    购物车结算：手机号和地址必填
    """
    missing = []
    for key in ("phone_number", "delivery_address"):
        if not str(payload.get(key) or "").strip():
            missing.append(key)
    return missing


def missing_quick_buy_fields(category: str, payload: Dict[str, Any]) -> List[str]:
    """
    按商品类目校验快速购买的必填项
    - 游戏类目需要 game_id，MLBB 还需要 server_id
    - 话费 / 流量类目需要运营商和手机号
    """
    def blank(key):
        return not str(payload.get(key) or "").strip()

    missing = []
    if category in GAME_CATEGORIES:
        if blank("game_id"):
            missing.append("game_id")
        if category == MLBB_CATEGORY and blank("server_id"):
            missing.append("server_id")
    elif category in MOBILE_CATEGORIES:
        if blank("operator"):
            missing.append("operator")
        if blank("phone_number"):
            missing.append("phone_number")
    return missing


def parse_quantity(value: Any) -> Optional[int]:
    try:
        qty = int(value)
    except (TypeError, ValueError):
        return None
    return qty if qty > 0 else None
