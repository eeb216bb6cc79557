"""
狀態機：集中管理街道狀態的所有轉換

狀態：OPEN → EN_ROUTE → DONE，另外 DONE → OPEN（重設，或開始新回合）

所有轉換都必須經過這裡，API 層與 Manager 不直接改 status 欄位。
這裡只處理「欄位怎麼變」，不碰資料庫，寫入由 StatusManager 負責。
"""
import enum
from datetime import datetime
from typing import Iterable, Optional

from models import StatusRecord, StreetStatus, normalize_roster
from core.exceptions import InvalidTransition


class StatusAction(str, enum.Enum):
    START = "start"
    COMPLETE = "complete"
    RESET = "reset"
    SET_ROSTER = "set_roster"
    NEW_ROUND = "new_round"


class StatusStateMachine:
    """街道狀態機"""

    # 每個操作允許的來源狀態
    ALLOWED_FROM = {
        StatusAction.START: {StreetStatus.OPEN},
        StatusAction.COMPLETE: {StreetStatus.OPEN, StreetStatus.EN_ROUTE},
        StatusAction.RESET: {StreetStatus.EN_ROUTE, StreetStatus.DONE},
        StatusAction.SET_ROSTER: {StreetStatus.EN_ROUTE, StreetStatus.DONE},
        StatusAction.NEW_ROUND: {StreetStatus.DONE},
    }

    @classmethod
    def can(cls, action: StatusAction, status: StreetStatus) -> bool:
        return status in cls.ALLOWED_FROM[action]

    @classmethod
    def ensure_allowed(cls, record: StatusRecord, action: StatusAction) -> None:
        """
        檢查操作是否允許

        異常：
            InvalidTransition: 目前狀態不允許此操作
        """
        if not cls.can(action, record.status):
            raise InvalidTransition(action.value, record.status)

    @staticmethod
    def _touch(record: StatusRecord, actor_id: str, now: datetime) -> None:
        record.changed_by = actor_id
        record.updated_at = now

    @classmethod
    def start(cls, record: StatusRecord, actor_id: str, now: datetime) -> StatusRecord:
        """OPEN -> EN_ROUTE；roster 維持原樣（空的就留空，由前端另外設定）"""
        cls.ensure_allowed(record, StatusAction.START)
        record.status = StreetStatus.EN_ROUTE
        if record.started_at is None:
            record.started_at = now
        cls._touch(record, actor_id, now)
        return record

    @classmethod
    def complete(
        cls,
        record: StatusRecord,
        actor_id: str,
        now: datetime,
        started_at: datetime,
        finished_at: datetime,
        roster: Optional[Iterable[str]] = None,
    ) -> StatusRecord:
        """
        OPEN / EN_ROUTE -> DONE

        - roster 有給就取代原本的 roster（操作者一定保留在內）
        - 直接從 OPEN 完成：started_at 先設為 now，並確保操作者在 roster 內
        - 最後以時間區間覆蓋 started_at / finished_at
        """
        cls.ensure_allowed(record, StatusAction.COMPLETE)

        if roster is not None:
            record.assigned_users = normalize_roster(list(roster) + [actor_id])

        if record.status == StreetStatus.OPEN:
            record.started_at = now
            if actor_id not in record.roster:
                record.assigned_users = normalize_roster(list(record.roster) + [actor_id])

        record.status = StreetStatus.DONE
        record.started_at = started_at
        record.finished_at = finished_at
        cls._touch(record, actor_id, now)
        return record

    @classmethod
    def reset(cls, record: StatusRecord, actor_id: str, now: datetime) -> StatusRecord:
        """EN_ROUTE / DONE -> OPEN，清掉時間與 roster"""
        cls.ensure_allowed(record, StatusAction.RESET)
        cls._clear(record)
        cls._touch(record, actor_id, now)
        return record

    @classmethod
    def set_roster(
        cls,
        record: StatusRecord,
        actor_id: str,
        now: datetime,
        user_ids: Iterable[str],
    ) -> StatusRecord:
        cls.ensure_allowed(record, StatusAction.SET_ROSTER)
        record.assigned_users = normalize_roster(user_ids)
        cls._touch(record, actor_id, now)
        return record

    @classmethod
    def advance_round(cls, record: StatusRecord, actor_id: str, now: datetime) -> StatusRecord:
        """
        DONE -> OPEN 並推進回合數

        與 reset 的差別：reset 回到同一個回合，這裡開新回合並保留舊回合的歷史
        """
        cls.ensure_allowed(record, StatusAction.NEW_ROUND)
        record.current_round += 1
        record.total_rounds = record.current_round
        cls._clear(record)
        cls._touch(record, actor_id, now)
        return record

    @staticmethod
    def _clear(record: StatusRecord) -> None:
        record.status = StreetStatus.OPEN
        record.started_at = None
        record.finished_at = None
        record.assigned_users = []
