"""
Round Ledger：每條街道每天的回合歷史

規則：
- 每個 (street_id, date, round_number) 只有一筆
- round n+1 只能在 round n 已經 DONE 之後新增
- 紀錄只新增不刪除；當前回合那一筆會跟著 StatusRecord 一起改寫
- 前端顯示的「已完成回合」= status 為 DONE 的紀錄，依 round_number 遞增排序
"""
from datetime import date, datetime
from typing import List, Optional

from sqlalchemy.orm import Session
import logging

from models import RoundEntry, StatusRecord, StreetStatus, normalize_roster
from core.exceptions import InvalidTransition

logger = logging.getLogger(__name__)


class RoundLedger:
    """回合歷史管理器"""

    @staticmethod
    def get_entry(db: Session, street_id: str, on_date: date, round_number: int) -> Optional[RoundEntry]:
        return db.query(RoundEntry).filter(
            RoundEntry.street_id == street_id,
            RoundEntry.date == on_date,
            RoundEntry.round_number == round_number
        ).first()

    @staticmethod
    def open_first_round(db: Session, record: StatusRecord) -> RoundEntry:
        """建立 StatusRecord 時一併建立 round 1"""
        entry = RoundEntry(
            street_id=record.street_id,
            date=record.date,
            round_number=record.current_round,
            status=StreetStatus.OPEN,
            assigned_users=[],
            changed_by=record.changed_by,
            created_at=record.created_at,
            updated_at=record.updated_at
        )
        db.add(entry)
        db.flush()
        return entry

    @staticmethod
    def sync_live_entry(db: Session, record: StatusRecord) -> RoundEntry:
        """
        把 StatusRecord 的內容寫進當前回合的紀錄（upsert）

        參數：
            db: SQLAlchemy Session
            record: 已經改好的 StatusRecord

        返回：
            當前回合的 RoundEntry

        注意：
            - 不 commit，由外層的 transaction 處理
        """
        entry = RoundLedger.get_entry(db, record.street_id, record.date, record.current_round)
        if entry is None:
            entry = RoundEntry(
                street_id=record.street_id,
                date=record.date,
                round_number=record.current_round,
                created_at=record.updated_at
            )
            db.add(entry)

        entry.status = record.status
        entry.started_at = record.started_at
        entry.finished_at = record.finished_at
        entry.assigned_users = normalize_roster(record.assigned_users)
        entry.notes = record.notes
        entry.changed_by = record.changed_by
        entry.updated_at = record.updated_at
        return entry

    @staticmethod
    def append_round(
        db: Session,
        street_id: str,
        on_date: date,
        round_number: int,
        actor_id: str,
        now: datetime
    ) -> RoundEntry:
        """
        新增下一個回合

        異常：
            InvalidTransition: 上一個回合還沒完成，或這個回合已經存在
        """
        if round_number > 1:
            previous = RoundLedger.get_entry(db, street_id, on_date, round_number - 1)
            if previous is None or previous.status != StreetStatus.DONE:
                raise InvalidTransition(
                    "new_round",
                    previous.status if previous else None,
                    f"round {round_number - 1} is not done"
                )

        if RoundLedger.get_entry(db, street_id, on_date, round_number):
            raise InvalidTransition("new_round", None, f"round {round_number} already exists")

        entry = RoundEntry(
            street_id=street_id,
            date=on_date,
            round_number=round_number,
            status=StreetStatus.OPEN,
            assigned_users=[],
            changed_by=actor_id,
            created_at=now,
            updated_at=now
        )
        db.add(entry)
        db.flush()
        logger.info(f"Appended round {round_number} for street {street_id} on {on_date}")
        return entry

    @staticmethod
    def history(db: Session, street_id: str, on_date: date) -> List[RoundEntry]:
        return db.query(RoundEntry).filter(
            RoundEntry.street_id == street_id,
            RoundEntry.date == on_date
        ).order_by(RoundEntry.round_number).all()

    @staticmethod
    def completed_rounds(db: Session, street_id: str, on_date: date) -> List[RoundEntry]:
        return db.query(RoundEntry).filter(
            RoundEntry.street_id == street_id,
            RoundEntry.date == on_date,
            RoundEntry.status == StreetStatus.DONE
        ).order_by(RoundEntry.round_number).all()
