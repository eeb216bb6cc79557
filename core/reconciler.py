"""
Realtime Reconciler：讓客戶端的本地狀態跟資料庫保持一致（不靠輪詢）

每個顯示中的 (street_id, date) 都有一份本地投影（StatusProjection），
Reconciler 訂閱該街道的 change feed，收到事件就套用：

- daily_street_status upsert：日期不同 → 忽略；日期相同 → 整筆覆蓋（後到的事件為準，不做欄位合併）
- daily_street_status delete：不論日期，直接回到預設的 OPEN 狀態（資料列已經不存在）
- street_status_entries upsert：日期相同 → 依 round_number 取代本地歷史中的那一筆

同一個事件套用兩次的結果和套用一次相同（at-least-once 推播下必須冪等）。
(street_id, date) 改變時重新訂閱；close() 之後不會再觸發任何 callback。
"""
import asyncio
import logging
from dataclasses import dataclass, field, replace
from datetime import date, datetime
from typing import Callable, Dict, List, Optional, Tuple

from models import StreetStatus
from core.change_feed import (
    ChangeEvent,
    ChangeFeed,
    ChangeType,
    ROUNDS_TABLE,
    STATUS_TABLE,
    Subscription,
)

logger = logging.getLogger(__name__)


def _as_date(value) -> Optional[date]:
    if value is None or isinstance(value, date) and not isinstance(value, datetime):
        return value
    if isinstance(value, datetime):
        return value.date()
    return date.fromisoformat(str(value))


def _as_datetime(value) -> Optional[datetime]:
    if value is None or isinstance(value, datetime):
        return value
    return datetime.fromisoformat(str(value))


@dataclass(frozen=True)
class RoundSnapshot:
    round_number: int
    status: StreetStatus
    started_at: Optional[datetime] = None
    finished_at: Optional[datetime] = None
    assigned_users: frozenset = frozenset()

    @classmethod
    def from_row(cls, row: dict) -> "RoundSnapshot":
        return cls(
            round_number=int(row["round_number"]),
            status=StreetStatus(row["status"]),
            started_at=_as_datetime(row.get("started_at")),
            finished_at=_as_datetime(row.get("finished_at")),
            assigned_users=frozenset(row.get("assigned_users") or ()),
        )


@dataclass(frozen=True)
class StatusProjection:
    """客戶端看到的一條街道在某天的狀態"""
    street_id: str
    date: date
    status: StreetStatus = StreetStatus.OPEN
    current_round: int = 1
    total_rounds: int = 1
    started_at: Optional[datetime] = None
    finished_at: Optional[datetime] = None
    assigned_users: frozenset = frozenset()
    changed_by: Optional[str] = None
    updated_at: Optional[datetime] = None
    rounds: Tuple[RoundSnapshot, ...] = field(default_factory=tuple)

    @classmethod
    def default(cls, street_id: str, on_date: date) -> "StatusProjection":
        return cls(street_id=street_id, date=on_date)

    @classmethod
    def from_row(cls, row: dict, rounds: Tuple[RoundSnapshot, ...] = ()) -> "StatusProjection":
        return cls(
            street_id=row["street_id"],
            date=_as_date(row["date"]),
            status=StreetStatus(row["status"]),
            current_round=int(row.get("current_round") or 1),
            total_rounds=int(row.get("total_rounds") or 1),
            started_at=_as_datetime(row.get("started_at")),
            finished_at=_as_datetime(row.get("finished_at")),
            assigned_users=frozenset(row.get("assigned_users") or ()),
            changed_by=row.get("changed_by"),
            updated_at=_as_datetime(row.get("updated_at")),
            rounds=tuple(rounds),
        )

    @property
    def completed_rounds(self) -> List[RoundSnapshot]:
        return [entry for entry in self.rounds if entry.status == StreetStatus.DONE]


Listener = Callable[[StatusProjection], None]


class RealtimeReconciler:
    """單一畫面（一條街道、一天）的本地狀態管理"""

    def __init__(self, feed: ChangeFeed):
        self.feed = feed
        self.projection: Optional[StatusProjection] = None
        self._subscription: Optional[Subscription] = None
        self._consumer: Optional[asyncio.Task] = None
        self._listeners: List[Listener] = []

    # ============ 訂閱管理 ============

    @property
    def key(self) -> Optional[Tuple[str, date]]:
        if self.projection is None:
            return None
        return self.projection.street_id, self.projection.date

    def watch(self, street_id: str, on_date: date, initial: Optional[StatusProjection] = None) -> None:
        """
        開始顯示某條街道某一天的狀態

        (street_id, date) 改變才重新訂閱；先取消舊訂閱，確保舊頻道的事件不會再套用
        """
        new_key = (street_id, on_date)
        key_changed = new_key != self.key
        if key_changed or self._subscription is None:
            self._stop()
            self._subscription = self.feed.subscribe(street_id)
            self._consumer = asyncio.get_running_loop().create_task(
                self._consume(self._subscription)
            )
            logger.debug(f"Reconciler watching street {street_id} on {on_date}")

        if initial is not None:
            self._set(initial)
        elif key_changed:
            self._set(StatusProjection.default(street_id, on_date))

    def add_listener(self, listener: Listener) -> None:
        self._listeners.append(listener)

    def remove_listener(self, listener: Listener) -> None:
        if listener in self._listeners:
            self._listeners.remove(listener)

    async def close(self) -> None:
        """結束顯示：取消訂閱並等待背景工作結束"""
        consumer = self._consumer
        self._stop()
        self._listeners.clear()
        if consumer is not None:
            try:
                await consumer
            except asyncio.CancelledError:
                pass

    def _stop(self) -> None:
        if self._subscription is not None:
            self._subscription.close()
            self._subscription = None
        if self._consumer is not None:
            self._consumer.cancel()
            self._consumer = None

    async def _consume(self, subscription: Subscription) -> None:
        async for change in subscription:
            # 訂閱已經被換掉的話，殘留的事件一律丟棄
            if subscription is not self._subscription:
                return
            self.apply(change)

    # ============ 套用事件 ============

    def apply(self, change: ChangeEvent) -> bool:
        """
        套用一個變更事件

        返回：
            True 如果本地狀態有改變
        """
        if self.projection is None:
            return False

        if change.table == STATUS_TABLE:
            if change.event_type == ChangeType.DELETE:
                updated = replace(
                    StatusProjection.default(self.projection.street_id, self.projection.date),
                    rounds=self.projection.rounds
                )
            else:
                if _as_date(change.row.get("date")) != self.projection.date:
                    return False
                updated = StatusProjection.from_row(change.row, self.projection.rounds)
        elif change.table == ROUNDS_TABLE:
            if _as_date(change.row.get("date")) != self.projection.date:
                return False
            updated = replace(self.projection, rounds=self._merge_round(change))
        else:
            return False

        return self._set(updated)

    def apply_local(self, **changes) -> StatusProjection:
        """樂觀更新：本地先改，之後可能被 feed 的事件覆蓋"""
        if self.projection is None:
            raise RuntimeError("Reconciler is not watching any street")
        if "assigned_users" in changes:
            changes["assigned_users"] = frozenset(changes["assigned_users"] or ())
        self._set(replace(self.projection, **changes))
        return self.projection

    def _merge_round(self, change: ChangeEvent) -> Tuple[RoundSnapshot, ...]:
        rounds: Dict[int, RoundSnapshot] = {entry.round_number: entry for entry in self.projection.rounds}
        round_number = int(change.row["round_number"])
        if change.event_type == ChangeType.DELETE:
            rounds.pop(round_number, None)
        else:
            rounds[round_number] = RoundSnapshot.from_row(change.row)
        return tuple(rounds[number] for number in sorted(rounds))

    def _set(self, projection: StatusProjection) -> bool:
        if projection == self.projection:
            return False
        self.projection = projection
        for listener in list(self._listeners):
            listener(projection)
        return True
