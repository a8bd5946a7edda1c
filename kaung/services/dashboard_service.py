"""
管理后台统计与实时订单通知

首次加载走 dashboard_stats() 全量统计；之后每个订单事件只把变化的那一行
合并进 DashboardState，不再重新统计。
"""
from typing import Dict, Any, List, Optional
from decimal import Decimal
import datetime
import json
import logging
import queue
import time

from sqlalchemy import func

from ..domain.order import OrderStatus
from ..infra.events import INSERT, hub
from ..infra.models import db, Order, Product, Profile
from ..infra.repository import get_product, list_orders
from .preference_service import get_preference

logger = logging.getLogger('log')

REVENUE_STATUSES = (OrderStatus.APPROVED.value, OrderStatus.FINISHED.value)
CHART_DAYS = 7


def _day(ts: int) -> str:
    return datetime.datetime.fromtimestamp(ts).strftime("%Y-%m-%d")


def _chart_days(now: int) -> List[str]:
    today = datetime.datetime.fromtimestamp(now).date()
    return [(today - datetime.timedelta(days=i)).isoformat() for i in range(CHART_DAYS - 1, -1, -1)]


def dashboard_stats(now: Optional[int] = None) -> Dict[str, Any]:
    """
    商品数、订单数、用户数、待处理订单数、营收（approved + finished），
    以及最近 7 天每天的订单数和营收
    """
    now = now or int(time.time())
    revenue = (
        db.session.query(func.coalesce(func.sum(Order.price), 0))
        .filter(Order.status.in_(REVENUE_STATUSES))
        .scalar()
    )
    days = _chart_days(now)
    chart = {d: {"date": d, "orders": 0, "revenue": Decimal("0")} for d in days}
    since = now - CHART_DAYS * 24 * 3600
    for created_at, status, price in (
        db.session.query(Order.created_at, Order.status, Order.price)
        .filter(Order.created_at >= since)
        .all()
    ):
        bucket = chart.get(_day(created_at))
        if bucket is None:
            continue
        bucket["orders"] += 1
        if status in REVENUE_STATUSES:
            bucket["revenue"] += Decimal(price)

    return {
        "total_products": Product.query.count(),
        "total_orders": Order.query.count(),
        "total_users": Profile.query.count(),
        "pending_orders": Order.query.filter_by(status=OrderStatus.PENDING.value).count(),
        "total_revenue": str(Decimal(revenue)),
        "chart": [{**chart[d], "revenue": str(chart[d]["revenue"])} for d in days],
    }


def build_order_notification(evt: Dict[str, Any], admin_id: Optional[str]) -> Dict[str, Any]:
    """
    推送给管理员的事件：附带商品名；新订单按管理员偏好决定是否响铃
    """
    order = evt["order"]
    product = get_product(order.get("product_id"))
    play_sound = False
    if evt["type"] == INSERT and admin_id:
        play_sound = bool(get_preference(admin_id, "admin_sound_enabled"))
    return {
        "type": evt["type"],
        "order": order,
        "product_name": product.name if product else "",
        "play_sound": play_sound,
    }


class DashboardState:
    """
    管理后台缓存的订单列表和统计
    apply() 只合并一行变化，不回源数据库
    """

    def __init__(self, orders: List[Dict[str, Any]], stats: Dict[str, Any]):
        self.orders = list(orders)
        self.stats = dict(stats)
        self.stats["total_revenue"] = Decimal(str(self.stats.get("total_revenue") or "0"))

    @classmethod
    def load(cls) -> "DashboardState":
        return cls(list_orders(), dashboard_stats())

    def _index(self, order_id: str) -> Optional[int]:
        for i, o in enumerate(self.orders):
            if o["id"] == order_id:
                return i
        return None

    def _count(self, status: Optional[str], sign: int) -> None:
        if status == OrderStatus.PENDING.value:
            self.stats["pending_orders"] = self.stats.get("pending_orders", 0) + sign

    def _revenue(self, row: Dict[str, Any], sign: int) -> None:
        if row.get("status") in REVENUE_STATUSES:
            self.stats["total_revenue"] += sign * Decimal(row.get("price") or "0")

    def apply(self, evt: Dict[str, Any]) -> None:
        row = evt["order"]
        idx = self._index(row["id"])
        if evt["type"] == INSERT and idx is None:
            self.orders.insert(0, dict(row))
            self.stats["total_orders"] = self.stats.get("total_orders", 0) + 1
            self._count(row.get("status"), 1)
            self._revenue(row, 1)
            return
        if idx is None:
            # 不在缓存里的旧订单：只更新统计无法还原原状态，忽略
            logger.debug("dashboard: skip unknown order %s", row["id"])
            return
        old = self.orders[idx]
        self._count(old.get("status"), -1)
        self._revenue(old, -1)
        merged = dict(old)
        merged.update(row)
        self.orders[idx] = merged
        self._count(merged.get("status"), 1)
        self._revenue(merged, 1)

    def snapshot(self) -> Dict[str, Any]:
        stats = dict(self.stats)
        stats["total_revenue"] = str(stats["total_revenue"])
        return {"orders": self.orders, "stats": stats}


def order_event_stream(admin_id: Optional[str], event_hub=None, timeout: float = 15.0,
                       limit: Optional[int] = None):
    """
    Server-Sent Events 生成器
    第一次迭代时才订阅；连接断开（生成器关闭）时取消订阅
    :param limit: 推送多少个事件后结束，None 表示一直推送
    """
    event_hub = event_hub or hub
    q = event_hub.subscribe()
    sent = 0
    try:
        yield ": connected\n\n"
        while limit is None or sent < limit:
            try:
                evt = q.get(timeout=timeout)
            except queue.Empty:
                yield ": keepalive\n\n"
                continue
            data = build_order_notification(evt, admin_id)
            # 每条通知读完即结束事务，长连接不持有数据库连接，下一条读到最新偏好
            db.session.rollback()
            yield "event: order\ndata: {}\n\n".format(json.dumps(data, ensure_ascii=False))
            sent += 1
    finally:
        event_hub.unsubscribe(q)
