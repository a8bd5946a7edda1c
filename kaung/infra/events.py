"""
订单实时事件

Order 行的插入 / 更新在 flush 时记录到 session.info，
事务提交后再推送给订阅者；回滚时丢弃，保证推送出去的都是已落库的数据。
没有积压和重放：离线期间的事件不会补发。
"""
import logging
import queue
import threading
from typing import Any, Dict, List

from sqlalchemy import event
from sqlalchemy.orm import Session, object_session

from .models import Order

logger = logging.getLogger('log')

_PENDING_KEY = "order_events"

INSERT = "INSERT"
UPDATE = "UPDATE"


class OrderEventHub:
    """
    进程内的发布 / 订阅
    每个订阅者一个有界队列，队列满时丢弃最旧的事件
    """

    def __init__(self, maxsize: int = 100):
        self._lock = threading.Lock()
        self._subscribers: List[queue.Queue] = []
        self._maxsize = maxsize

    def subscribe(self) -> queue.Queue:
        q = queue.Queue(maxsize=self._maxsize)
        with self._lock:
            self._subscribers.append(q)
        return q

    def unsubscribe(self, q: queue.Queue) -> None:
        with self._lock:
            if q in self._subscribers:
                self._subscribers.remove(q)

    def subscriber_count(self) -> int:
        with self._lock:
            return len(self._subscribers)

    def publish(self, evt: Dict[str, Any]) -> None:
        with self._lock:
            subscribers = list(self._subscribers)
        for q in subscribers:
            try:
                q.put_nowait(evt)
            except queue.Full:
                try:
                    q.get_nowait()
                except queue.Empty:
                    pass
                q.put_nowait(evt)


hub = OrderEventHub()


def queue_order_event(target: Order, kind: str) -> None:
    """
    记录一条待推送事件，提交后发出
    不经过 ORM flush 的条件 UPDATE 需要手动调用
    """
    session = object_session(target)
    if session is None:
        return
    session.info.setdefault(_PENDING_KEY, []).append({"type": kind, "order": target.to_dict()})


@event.listens_for(Order, "after_insert")
def _order_inserted(mapper, connection, target):
    queue_order_event(target, INSERT)


@event.listens_for(Order, "after_update")
def _order_updated(mapper, connection, target):
    queue_order_event(target, UPDATE)


@event.listens_for(Session, "after_commit")
def _publish_after_commit(session):
    events = session.info.pop(_PENDING_KEY, [])
    for evt in events:
        logger.debug("order event %s %s", evt["type"], evt["order"]["id"])
        hub.publish(evt)


@event.listens_for(Session, "after_soft_rollback")
def _discard_after_rollback(session, previous_transaction):
    session.info.pop(_PENDING_KEY, None)
