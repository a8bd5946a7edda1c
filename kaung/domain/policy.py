"""
统一的权限判定

各处接口不再自行拼装 is_admin / is_premium 之类的布尔判断，
统一调用 authorize(actor, action, resource)。
"""
from dataclasses import dataclass, field
from typing import Any, Dict, FrozenSet, Optional

from .report import RESTRICTED_STATUSES


@dataclass(frozen=True)
class Actor:
    user_id: Optional[str]
    roles: FrozenSet[str] = field(default_factory=frozenset)
    account_status: str = "good"
    is_premium: bool = False

    @property
    def is_admin(self) -> bool:
        return "admin" in self.roles


@dataclass(frozen=True)
class Decision:
    allowed: bool
    reason: str = ""

    def __bool__(self):
        return self.allowed


ALLOW = Decision(True)


def deny(reason: str) -> Decision:
    return Decision(False, reason)


def _restricted(actor: Actor) -> bool:
    return actor.account_status in RESTRICTED_STATUSES


def authorize(actor: Actor, action: str, resource: Optional[Dict[str, Any]] = None) -> Decision:
    """
    :param actor: 当前操作人
    :param action: 动作名，如 order.checkout
    :param resource: 被操作对象的字典形式（消息、商品等）
    """
    resource = resource or {}

    if not actor.user_id:
        return deny("unauthenticated")

    if action == "admin.access":
        return ALLOW if actor.is_admin else deny("admin_required")

    if action in ("order.checkout", "order.quick_buy", "order.points_purchase", "chat.send"):
        if _restricted(actor):
            return deny("account_restricted")
        return ALLOW

    if action == "product.purchase_premium":
        if resource.get("is_premium") and not actor.is_premium:
            return deny("premium_required")
        return ALLOW

    if action == "profile.change_name":
        return ALLOW if actor.is_premium else deny("premium_required")

    if action in ("message.edit", "message.delete"):
        if resource.get("sender_id") != actor.user_id:
            return deny("not_sender")
        if resource.get("is_deleted"):
            return deny("message_deleted")
        return ALLOW

    if action == "message.read":
        participants = resource.get("participants") or ()
        if actor.user_id not in participants:
            return deny("not_participant")
        return ALLOW

    if action == "report.create":
        if resource.get("reported_user_id") == actor.user_id:
            return deny("cannot_report_self")
        return ALLOW

    return deny("unknown_action")
