"""
變更推播（Change Feed）

取代短輪詢：每次 daily_street_status / street_status_entries 的寫入 commit 之後，
把變更推給訂閱同一條街道的所有客戶端（包含發起修改的那一個）。

設計：
- 訂閱只依 street_id 篩選，不依日期（日期由客戶端的 Reconciler 自己過濾）
- 至少送達一次（at-least-once）；同一筆資料的事件依寫入順序送出
- 透過 SQLAlchemy session events 收集變更：after_flush 收集，commit 後才推播，
  rollback 的變更不會送出
- publish 可以從任何執行緒呼叫（FastAPI 的 sync endpoint 跑在 threadpool），
  事件透過 call_soon_threadsafe 交給訂閱者所在的 event loop
"""
import asyncio
import enum
import logging
import threading
from collections import defaultdict
from dataclasses import dataclass, field
from typing import Any, Dict, Optional

from sqlalchemy import event, inspect
from sqlalchemy.orm import Session

from models import RoundEntry, StatusRecord

logger = logging.getLogger(__name__)

STATUS_TABLE = StatusRecord.__tablename__
ROUNDS_TABLE = RoundEntry.__tablename__
TRACKED_MODELS = (StatusRecord, RoundEntry)

_PENDING_KEY = "pending_change_events"
_CLOSED = object()


class ChangeType(str, enum.Enum):
    UPSERT = "upsert"
    DELETE = "delete"


@dataclass(frozen=True)
class ChangeEvent:
    event_type: ChangeType
    table: str
    street_id: str
    row: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "event_type": self.event_type.value,
            "table": self.table,
            "street_id": self.street_id,
            "row": dict(self.row),
        }


def row_to_dict(obj) -> Dict[str, Any]:
    row = {}
    for attr in inspect(obj).mapper.column_attrs:
        value = getattr(obj, attr.key)
        row[attr.key] = list(value) if isinstance(value, list) else value
    return row


class Subscription:
    """單一訂閱；可用 async for 逐一取得事件，close() 之後迭代結束"""

    def __init__(self, feed: "ChangeFeed", street_id: str, loop: asyncio.AbstractEventLoop):
        self.feed = feed
        self.street_id = street_id
        self.closed = False
        self._loop = loop
        self._queue: asyncio.Queue = asyncio.Queue()
        self._drained = False

    def deliver(self, change: ChangeEvent) -> None:
        if self.closed:
            return
        try:
            self._loop.call_soon_threadsafe(self._put, change)
        except RuntimeError:
            # event loop 已經關閉，這個訂閱不可能再被讀取
            logger.warning(f"Dropping subscription for street {self.street_id}: event loop closed")
            self.feed.unsubscribe(self)
            self.closed = True

    def _put(self, item) -> None:
        self._queue.put_nowait(item)

    async def get(self) -> Optional[ChangeEvent]:
        """
        等待下一個事件；訂閱關閉後返回 None

        close() 之前已經送出的事件仍會依序取得
        """
        if self._drained:
            return None
        item = await self._queue.get()
        if item is _CLOSED:
            self._drained = True
            return None
        return item

    def __aiter__(self):
        return self

    async def __anext__(self) -> ChangeEvent:
        item = await self.get()
        if item is None:
            raise StopAsyncIteration
        return item

    def close(self) -> None:
        if self.closed:
            return
        self.closed = True
        self.feed.unsubscribe(self)
        try:
            self._loop.call_soon_threadsafe(self._put, _CLOSED)
        except RuntimeError:
            pass


class ChangeFeed:
    """依 street_id 分組的 pub/sub"""

    def __init__(self):
        self._subscriptions = defaultdict(set)
        self._lock = threading.Lock()

    def subscribe(self, street_id: str) -> Subscription:
        """
        訂閱一條街道的變更

        必須在 event loop 內呼叫（事件會送到這個 loop）
        """
        subscription = Subscription(self, street_id, asyncio.get_running_loop())
        with self._lock:
            self._subscriptions[street_id].add(subscription)
        logger.debug(f"Subscribed to street {street_id}")
        return subscription

    def unsubscribe(self, subscription: Subscription) -> None:
        with self._lock:
            subscribers = self._subscriptions.get(subscription.street_id)
            if subscribers is None:
                return
            subscribers.discard(subscription)
            if not subscribers:
                del self._subscriptions[subscription.street_id]

    def subscriber_count(self, street_id: str) -> int:
        with self._lock:
            return len(self._subscriptions.get(street_id, ()))

    def publish(self, change: ChangeEvent) -> None:
        with self._lock:
            targets = list(self._subscriptions.get(change.street_id, ()))
        for subscription in targets:
            subscription.deliver(change)


change_feed = ChangeFeed()


def get_change_feed() -> ChangeFeed:
    return change_feed


# ============ SQLAlchemy change capture ============

def _pending(session: Session) -> dict:
    return session.info.setdefault(_PENDING_KEY, {})


@event.listens_for(Session, "after_flush")
def _capture_changes(session: Session, flush_context) -> None:
    pending = _pending(session)
    for obj in list(session.new) + list(session.dirty):
        if isinstance(obj, TRACKED_MODELS):
            row = row_to_dict(obj)
            # 同一筆資料在一個 transaction 內多次 flush，只保留最後的版本
            key = (obj.__tablename__, row["id"])
            pending.pop(key, None)
            pending[key] = ChangeEvent(ChangeType.UPSERT, obj.__tablename__, obj.street_id, row)
    for obj in session.deleted:
        if isinstance(obj, TRACKED_MODELS):
            row = row_to_dict(obj)
            key = (obj.__tablename__, row["id"])
            pending.pop(key, None)
            pending[key] = ChangeEvent(ChangeType.DELETE, obj.__tablename__, obj.street_id, row)


@event.listens_for(Session, "after_commit")
def _publish_committed(session: Session) -> None:
    # SAVEPOINT release 也會觸發 after_commit，只在最外層 commit 時推播
    if session.in_nested_transaction():
        return
    pending = session.info.pop(_PENDING_KEY, None)
    if not pending:
        return
    for change in pending.values():
        change_feed.publish(change)


@event.listens_for(Session, "after_soft_rollback")
def _discard_rolled_back(session: Session, previous_transaction) -> None:
    if previous_transaction.nested:
        return
    session.info.pop(_PENDING_KEY, None)
