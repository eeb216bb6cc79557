"""
Batch Coordinator：把同一個操作套用到多條街道

從使用者的角度是一次操作（一個 roster、一個時長），實際上每條街道各自寫入：
- 沒有跨街道的 transaction，某條失敗不會回滾已經成功的街道
- 每條街道的寫入各自有重試（見 core.retry）
- 權限只在一開始檢查一次，沒有權限就整批拒絕
- 單一街道的狀態與 roster 在同一個 transaction 內寫入，不會只寫一半

complete 時依選取順序排出首尾相接的工時區間，模擬實際上是一條接一條清除。
"""
import enum
import logging
from dataclasses import dataclass, field
from datetime import date, datetime, time
from typing import Dict, Iterable, List, Optional, Sequence

from sqlalchemy.orm import Session

from core.exceptions import (
    InvalidTimeWindow,
    PartialBatchFailure,
    StreetStatusException,
)
from core.status_manager import StatusManager
from services.permission_service import ensure_capability
from services.time_window_service import TimeWindow

logger = logging.getLogger(__name__)


class BatchAction(str, enum.Enum):
    START = "start"
    COMPLETE = "complete"
    RESET = "reset"


@dataclass
class BatchResult:
    action: BatchAction
    succeeded: List[str] = field(default_factory=list)
    failed: Dict[str, str] = field(default_factory=dict)
    windows: Dict[str, TimeWindow] = field(default_factory=dict)

    @property
    def ok(self) -> bool:
        return not self.failed

    def raise_for_failures(self) -> "BatchResult":
        if self.failed:
            raise PartialBatchFailure(self)
        return self


class BatchOperationCoordinator:
    """批次操作協調器"""

    @staticmethod
    def run(
        db: Session,
        action: BatchAction,
        street_ids: Sequence[str],
        on_date: date,
        actor_id: str,
        roster: Optional[Iterable[str]] = None,
        duration: Optional[int] = None,
        durations: Optional[Dict[str, int]] = None,
        explicit_start: Optional[time] = None,
        notes: Optional[str] = None,
        now: Optional[datetime] = None
    ) -> BatchResult:
        """
        執行批次操作

        參數：
            action: start / complete / reset
            street_ids: 選取的街道（順序即清除順序）
            roster: 共用的 roster
            duration: 每條街道的分鐘數（complete 用）
            durations: 個別街道的分鐘數，覆蓋 duration
            explicit_start: 使用者指定的第一條街道開始時間

        返回：
            BatchResult（成功與失敗的街道）

        異常：
            PermissionDenied: 操作者沒有寫入權限（整批都不執行）
            InvalidTimeWindow: complete 缺少時長
        """
        ensure_capability(db, actor_id)
        now = now or datetime.now()
        action = BatchAction(action)

        # 重複選取的街道只處理一次，保留第一次出現的順序
        street_ids = list(dict.fromkeys(street_ids))
        roster = list(roster) if roster is not None else None
        result = BatchResult(action=action)

        if action == BatchAction.COMPLETE:
            per_street = BatchOperationCoordinator._durations(street_ids, duration, durations)
            windows = StatusManager.propose_batch_windows(
                db, actor_id, on_date, per_street, explicit_start, now
            )
            result.windows = dict(zip(street_ids, windows))

        for street_id in street_ids:
            try:
                if action == BatchAction.START:
                    StatusManager.start(db, street_id, on_date, actor_id, roster=roster, now=now)
                elif action == BatchAction.COMPLETE:
                    StatusManager.complete(
                        db, street_id, on_date, actor_id, result.windows[street_id],
                        roster=roster, notes=notes, now=now
                    )
                else:
                    StatusManager.reset(db, street_id, on_date, actor_id, now=now)
                result.succeeded.append(street_id)
            except StreetStatusException as e:
                logger.warning(f"Batch {action.value} failed for street {street_id}: {e}")
                result.failed[street_id] = str(e)

        logger.info(
            f"Batch {action.value} on {on_date} by {actor_id}: "
            f"{len(result.succeeded)} succeeded, {len(result.failed)} failed"
        )
        return result

    @staticmethod
    def _durations(
        street_ids: List[str],
        duration: Optional[int],
        durations: Optional[Dict[str, int]]
    ) -> List[int]:
        durations = durations or {}
        per_street = []
        for street_id in street_ids:
            value = durations.get(street_id, duration)
            if value is None:
                raise InvalidTimeWindow(f"No duration given for street {street_id}")
            per_street.append(value)
        return per_street
