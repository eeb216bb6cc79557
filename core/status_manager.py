"""
Status Manager：管理街道每日狀態的完整生命週期

職責：
1. 讀取（不存在時建立）某條街道某天的狀態
2. 狀態操作：start / complete / reset / set_roster
3. 開始新回合（同一天再次下雪）
4. 每個操作同時寫入 StatusRecord 與當前回合的 RoundEntry（同一個 transaction）

原則：
- 所有狀態變更經過 StatusStateMachine
- 沒有資料列鎖；並發寫入以整筆覆蓋、後寫為準（last write wins）
- 寫入 commit 後由 change feed 推播給所有客戶端
"""
from dataclasses import dataclass
from datetime import date, datetime, time
from typing import Iterable, List, Optional

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session
import logging

from models import StatusRecord, RoundEntry, StreetStatus
from core.state_machine import StatusStateMachine, StatusAction
from core.round_ledger import RoundLedger
from core.retry import retry_read, retry_write
from core import change_feed  # noqa: F401  註冊 session events
from services.permission_service import ensure_capability
from services.time_window_service import (
    TimeWindow,
    compute_window,
    compute_batch_windows,
    find_last_work_end,
)
from services.work_log_service import record_completion, delete_street_work_logs
from database import transactional

logger = logging.getLogger(__name__)


@dataclass
class StatusView:
    """讀取用的投影：當前狀態 + 回合歷史"""
    record: StatusRecord
    history: List[RoundEntry]

    @property
    def completed_rounds(self) -> List[RoundEntry]:
        return [entry for entry in self.history if entry.status == StreetStatus.DONE]


class StatusManager:
    """街道狀態生命週期管理器"""

    @staticmethod
    def find_record(db: Session, street_id: str, on_date: date) -> Optional[StatusRecord]:
        return db.query(StatusRecord).filter(
            StatusRecord.street_id == street_id,
            StatusRecord.date == on_date
        ).first()

    @staticmethod
    def get_or_create_record(
        db: Session,
        street_id: str,
        on_date: date,
        actor_id: Optional[str] = None,
        now: Optional[datetime] = None
    ) -> StatusRecord:
        """
        取得狀態紀錄，不存在就建立（OPEN、round 1）

        注意：
            - 兩個客戶端同時建立同一筆時，UniqueConstraint 會擋下其中一個，
              失敗的那個改為讀取已經存在的資料列
            - 不 commit，由外層的 transaction 處理
        """
        record = StatusManager.find_record(db, street_id, on_date)
        if record:
            return record

        now = now or datetime.now()
        try:
            with db.begin_nested():
                record = StatusRecord(
                    street_id=street_id,
                    date=on_date,
                    status=StreetStatus.OPEN,
                    current_round=1,
                    total_rounds=1,
                    assigned_users=[],
                    changed_by=actor_id,
                    created_at=now,
                    updated_at=now
                )
                db.add(record)
                db.flush()
                RoundLedger.open_first_round(db, record)
        except IntegrityError:
            logger.warning(f"Status record for street {street_id} on {on_date} created concurrently, reloading")
            record = StatusManager.find_record(db, street_id, on_date)
            if record is None:
                raise
        else:
            logger.info(f"Created status record for street {street_id} on {on_date}")
        return record

    @staticmethod
    @retry_read
    @transactional
    def get_status_view(db: Session, street_id: str, on_date: date) -> StatusView:
        """
        讀取當前狀態與回合歷史（第一次讀取時會建立 OPEN 狀態）

        返回：
            StatusView
        """
        record = StatusManager.get_or_create_record(db, street_id, on_date)
        history = RoundLedger.history(db, street_id, on_date)
        return StatusView(record=record, history=history)

    @staticmethod
    @retry_write
    @transactional
    def start(
        db: Session,
        street_id: str,
        on_date: date,
        actor_id: str,
        roster: Optional[Iterable[str]] = None,
        now: Optional[datetime] = None
    ) -> StatusRecord:
        """
        出發（OPEN -> EN_ROUTE）

        參數：
            roster: 一起出發的同事；有給就在同一個 transaction 內取代 roster

        異常：
            PermissionDenied: 操作者沒有寫入權限
            InvalidTransition: 目前狀態不是 OPEN
        """
        ensure_capability(db, actor_id)
        now = now or datetime.now()

        record = StatusManager.get_or_create_record(db, street_id, on_date, actor_id, now)
        StatusStateMachine.start(record, actor_id, now)
        if roster is not None:
            StatusStateMachine.set_roster(record, actor_id, now, roster)
        RoundLedger.sync_live_entry(db, record)

        logger.info(f"Street {street_id} on {on_date} en route (round {record.current_round}) by {actor_id}")
        return record

    @staticmethod
    @retry_write
    @transactional
    def complete(
        db: Session,
        street_id: str,
        on_date: date,
        actor_id: str,
        window: TimeWindow,
        roster: Optional[Iterable[str]] = None,
        notes: Optional[str] = None,
        now: Optional[datetime] = None
    ) -> StatusRecord:
        """
        完成（OPEN / EN_ROUTE -> DONE）

        流程：
        1. 權限檢查
        2. 透過 StateMachine 更新狀態、roster 與時間
        3. 同步當前回合的 RoundEntry
        4. roster 內每個人各產生一筆工時紀錄

        參數：
            window: 由 time_window_service 推算出的工時區間
            roster: 一起完成的同事（會取代原本的 roster，操作者一定在內）
            notes: 工時紀錄的備註

        異常：
            PermissionDenied: 操作者沒有寫入權限
            InvalidTransition: 目前狀態已經是 DONE
        """
        ensure_capability(db, actor_id)
        now = now or datetime.now()

        record = StatusManager.get_or_create_record(db, street_id, on_date, actor_id, now)
        started_at, finished_at = window.to_timestamps(on_date)
        StatusStateMachine.complete(record, actor_id, now, started_at, finished_at, roster)
        if notes is not None:
            record.notes = notes
        RoundLedger.sync_live_entry(db, record)

        work_logs = record_completion(
            db, street_id, on_date, window, record.roster, actor_id, notes
        )

        logger.info(
            f"Street {street_id} on {on_date} done (round {record.current_round}) "
            f"{window.start:%H:%M}-{window.end:%H:%M}, {len(work_logs)} work logs"
        )
        return record

    @staticmethod
    @retry_write
    @transactional
    def reset(
        db: Session,
        street_id: str,
        on_date: date,
        actor_id: str,
        now: Optional[datetime] = None
    ) -> StatusRecord:
        """
        重設（EN_ROUTE / DONE -> OPEN）

        除了清掉狀態之外，也會刪除這條街道當天所有的工時紀錄
        （明確的補償動作，不是資料庫 cascade）
        """
        ensure_capability(db, actor_id)
        now = now or datetime.now()

        record = StatusManager.get_or_create_record(db, street_id, on_date, actor_id, now)
        StatusStateMachine.reset(record, actor_id, now)
        RoundLedger.sync_live_entry(db, record)
        removed = delete_street_work_logs(db, street_id, on_date)

        logger.info(f"Street {street_id} on {on_date} reset by {actor_id}, removed {removed} work logs")
        return record

    @staticmethod
    @retry_write
    @transactional
    def set_roster(
        db: Session,
        street_id: str,
        on_date: date,
        actor_id: str,
        user_ids: Iterable[str],
        now: Optional[datetime] = None
    ) -> StatusRecord:
        """取代 roster（只能在 EN_ROUTE / DONE 時）"""
        ensure_capability(db, actor_id)
        now = now or datetime.now()

        record = StatusManager.get_or_create_record(db, street_id, on_date, actor_id, now)
        StatusStateMachine.set_roster(record, actor_id, now, user_ids)
        RoundLedger.sync_live_entry(db, record)
        return record

    @staticmethod
    @retry_write
    @transactional
    def start_new_round(
        db: Session,
        street_id: str,
        on_date: date,
        actor_id: str,
        now: Optional[datetime] = None
    ) -> StatusRecord:
        """
        開始新回合（同一天再次下雪）

        前置條件：
        - 目前狀態必須是 DONE

        效果：
        - 新增 round n+1 的 RoundEntry（OPEN）
        - StatusRecord 回到 OPEN，current_round / total_rounds 推進到 n+1
        - 舊回合的紀錄保留在歷史中
        """
        ensure_capability(db, actor_id)
        now = now or datetime.now()

        record = StatusManager.get_or_create_record(db, street_id, on_date, actor_id, now)
        StatusStateMachine.ensure_allowed(record, StatusAction.NEW_ROUND)

        RoundLedger.append_round(db, street_id, on_date, record.current_round + 1, actor_id, now)
        StatusStateMachine.advance_round(record, actor_id, now)
        RoundLedger.sync_live_entry(db, record)

        logger.info(f"Street {street_id} on {on_date} started round {record.current_round}")
        return record

    # ============ 時間區間 ============

    @staticmethod
    @retry_read
    def propose_window(
        db: Session,
        actor_id: str,
        on_date: date,
        duration: int,
        explicit_start: Optional[time] = None,
        now: Optional[datetime] = None
    ) -> TimeWindow:
        """推算單一街道的工時區間（含智慧接續）"""
        now = now or datetime.now()
        last_end = None if explicit_start else find_last_work_end(db, actor_id, on_date)
        return compute_window(duration, now, explicit_start, last_end)

    @staticmethod
    @retry_read
    def propose_batch_windows(
        db: Session,
        actor_id: str,
        on_date: date,
        durations: List[int],
        explicit_start: Optional[time] = None,
        now: Optional[datetime] = None
    ) -> List[TimeWindow]:
        """推算批次的工時區間（依選取順序首尾相接）"""
        now = now or datetime.now()
        last_end = None if explicit_start else find_last_work_end(db, actor_id, on_date)
        return compute_batch_windows(durations, now, explicit_start, last_end)
