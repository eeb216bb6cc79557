"""
資料模型

三張核心資料表：
- daily_street_status：每條街道每天一筆的「當前狀態」（StatusRecord）
- street_status_entries：每個回合一筆的歷史紀錄（RoundEntry，只新增不刪除）
- work_logs：完成清除後產生的工時紀錄（WorkLogEntry）

users 只是外部擁有的參考資料，用來判斷操作者的角色。
"""
import enum
from datetime import datetime
from uuid import uuid4

from sqlalchemy import (
    Column,
    String,
    Integer,
    Date,
    Time,
    DateTime,
    Text,
    JSON,
    Enum,
    UniqueConstraint,
    Index,
)

from database import Base


def _uuid() -> str:
    return str(uuid4())


def normalize_roster(user_ids) -> list[str]:
    """
    把任意的 user id 集合整理成排序、去重的 list

    assigned_users 在語意上是「集合」（順序不重要），統一在寫入前整理，
    讓兩個內容相同的 roster 永遠產生相同的資料列。
    """
    if not user_ids:
        return []
    return sorted({str(user_id) for user_id in user_ids})


class StreetStatus(str, enum.Enum):
    OPEN = "open"
    EN_ROUTE = "en_route"
    DONE = "done"


class UserRole(str, enum.Enum):
    ADMIN = "admin"
    WORKER = "worker"
    GUEST = "guest"


class User(Base):
    __tablename__ = "users"

    id = Column(String(36), primary_key=True, default=_uuid)
    name = Column(String(120), nullable=False)
    role = Column(Enum(UserRole), nullable=False, default=UserRole.GUEST)
    created_at = Column(DateTime, nullable=False, default=datetime.now)


class StatusRecord(Base):
    """一條街道在某一天的當前狀態（只反映最新的回合）"""
    __tablename__ = "daily_street_status"
    __table_args__ = (
        UniqueConstraint("street_id", "date", name="uq_daily_street_status_street_date"),
    )

    id = Column(String(36), primary_key=True, default=_uuid)
    street_id = Column(String(36), nullable=False, index=True)
    date = Column(Date, nullable=False, index=True)
    status = Column(Enum(StreetStatus), nullable=False, default=StreetStatus.OPEN)
    current_round = Column(Integer, nullable=False, default=1)
    total_rounds = Column(Integer, nullable=False, default=1)
    started_at = Column(DateTime, nullable=True)
    finished_at = Column(DateTime, nullable=True)
    assigned_users = Column(JSON, nullable=False, default=list)
    notes = Column(Text, nullable=True)
    changed_by = Column(String(36), nullable=True)
    created_at = Column(DateTime, nullable=False, default=datetime.now)
    updated_at = Column(DateTime, nullable=False, default=datetime.now)

    @property
    def roster(self) -> frozenset:
        return frozenset(self.assigned_users or [])


class RoundEntry(Base):
    """單一回合的紀錄（Open → EnRoute → Done 一次循環）"""
    __tablename__ = "street_status_entries"
    __table_args__ = (
        UniqueConstraint(
            "street_id", "date", "round_number",
            name="uq_street_status_entries_street_date_round"
        ),
    )

    id = Column(String(36), primary_key=True, default=_uuid)
    street_id = Column(String(36), nullable=False, index=True)
    date = Column(Date, nullable=False)
    round_number = Column(Integer, nullable=False, default=1)
    status = Column(Enum(StreetStatus), nullable=False, default=StreetStatus.OPEN)
    started_at = Column(DateTime, nullable=True)
    finished_at = Column(DateTime, nullable=True)
    assigned_users = Column(JSON, nullable=False, default=list)
    notes = Column(Text, nullable=True)
    changed_by = Column(String(36), nullable=True)
    created_at = Column(DateTime, nullable=False, default=datetime.now)
    updated_at = Column(DateTime, nullable=False, default=datetime.now)


class WorkLogEntry(Base):
    """工時紀錄；street_id 為空代表手動輸入的自由工時"""
    __tablename__ = "work_logs"
    __table_args__ = (
        Index("ix_work_logs_user_date", "user_id", "date"),
        Index("ix_work_logs_street_date", "street_id", "date"),
    )

    id = Column(String(36), primary_key=True, default=_uuid)
    user_id = Column(String(36), nullable=False)
    street_id = Column(String(36), nullable=True)
    date = Column(Date, nullable=False)
    start_time = Column(Time, nullable=False)
    end_time = Column(Time, nullable=True)
    duration_minutes = Column(Integer, nullable=True)
    # 錨定後的時間點；跨過午夜時 start_time / end_time 本身看不出是哪一天
    started_at = Column(DateTime, nullable=True)
    finished_at = Column(DateTime, nullable=True)
    activity_type = Column(String(50), nullable=False, default="winter_service")
    notes = Column(Text, nullable=True)
    created_at = Column(DateTime, nullable=False, default=datetime.now)
    updated_at = Column(DateTime, nullable=False, default=datetime.now)
