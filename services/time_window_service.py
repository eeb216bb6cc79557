"""
時間區間服務：推算工時的開始與結束時間

純計算邏輯，不涉及狀態轉換（唯一的 DB 查詢是找「上一次工作結束」的訊號）

推算順序（單一街道）：
1. 使用者有指定開始時間 → start = 指定時間，end = start + duration（不做四捨五入）
2. 智慧接續：同一天內使用者最近一次的工作結束時間，距離現在 ≤ 30 分鐘 → 從那裡接著算
3. 否則 end = 現在（取整到 5 分鐘），start = end - duration

批次（N 條街道）：先用同樣的規則算出 base start（第 3 步改用總時長），
之後每條街道依選取順序一條接一條排下去，模擬實際上是依序清除而不是同時進行。

時鐘時間以「一天中的分鐘數」計算，跨過午夜時以 1440 取餘數；
開始時間落在哪一天另外記在 TimeWindow.start_day_offset（相對於工作日期）。
"""
from dataclasses import dataclass
from datetime import date, datetime, time, timedelta
from typing import List, Optional, Sequence

from sqlalchemy import func
from sqlalchemy.orm import Session

from models import StatusRecord, StreetStatus, WorkLogEntry
from core.exceptions import InvalidTimeWindow

MINUTES_PER_DAY = 24 * 60
ROUNDING_INTERVAL_MINUTES = 5
SMART_CONTINUATION_MAX_AGE_MINUTES = 30
# 上一次結束時間在「未來」時（例如批次排到現在之後），最多接受這麼遠
SMART_CONTINUATION_MAX_LEAD_MINUTES = 30


@dataclass(frozen=True)
class TimeWindow:
    start: time
    end: time
    # -1：從前一天開始（現在往回推跨過午夜）；1：整個區間在隔天
    start_day_offset: int = 0

    @property
    def duration_minutes(self) -> int:
        return minutes_between(self.start, self.end)

    def to_timestamps(self, on_date: date) -> tuple[datetime, datetime]:
        """
        把時鐘時間錨定到日期上

        範例（on_date = 1/15）：
            23:50-00:10（offset 0）  -> 1/15 23:50 到 1/16 00:10
            23:45-00:05（offset -1） -> 1/14 23:45 到 1/15 00:05
        """
        started_at = datetime.combine(on_date, self.start) + timedelta(days=self.start_day_offset)
        return started_at, started_at + timedelta(minutes=self.duration_minutes)


def to_minutes(value: time) -> int:
    return value.hour * 60 + value.minute


def from_minutes(minutes: int) -> time:
    minutes %= MINUTES_PER_DAY
    return time(minutes // 60, minutes % 60)


def minutes_between(start: time, end: time) -> int:
    return (to_minutes(end) - to_minutes(start)) % MINUTES_PER_DAY


def round_to_interval(minutes: int, interval: int = ROUNDING_INTERVAL_MINUTES) -> int:
    """
    取整到最接近的 interval 倍數（四捨五入，剛好一半時進位）

    範例：
        round_to_interval(482) -> 480   (08:02 -> 08:00)
        round_to_interval(483) -> 485   (08:03 -> 08:05)
    """
    return ((2 * minutes + interval) // (2 * interval)) * interval


def _validate_duration(duration: int) -> None:
    if duration <= 0 or duration >= MINUTES_PER_DAY:
        raise InvalidTimeWindow(
            f"Duration must be between 1 and {MINUTES_PER_DAY - 1} minutes, got {duration}"
        )


def _window_at(start_minutes: int, duration: int) -> TimeWindow:
    """start_minutes 是相對於當天 00:00 的分鐘數，可以是負數或超過 1440"""
    return TimeWindow(
        from_minutes(start_minutes),
        from_minutes(start_minutes + duration),
        start_minutes // MINUTES_PER_DAY
    )


def window_from_duration(start: time, duration: int) -> TimeWindow:
    """從開始時間與分鐘數建立區間（跨過午夜時取餘數）"""
    _validate_duration(duration)
    return _window_at(to_minutes(start), duration)


def window_between(start: time, end: time) -> TimeWindow:
    """
    從開始與結束時間建立區間；end 早於 start 代表結束在隔天

    異常：
        InvalidTimeWindow: 開始與結束相同（0 分鐘）
    """
    _validate_duration(minutes_between(start, end))
    return TimeWindow(start, end)


def continuation_start(now: datetime, last_work_end: Optional[datetime]) -> Optional[time]:
    """
    智慧接續：如果上一次工作結束距離現在不超過 30 分鐘，就從那個時間接著算

    上一次結束時間在「未來」（例如批次排程排到現在之後）也可以接續，
    但最多只接受 30 分鐘以內
    """
    if last_work_end is None:
        return None
    age_minutes = (now - last_work_end).total_seconds() / 60
    if age_minutes > SMART_CONTINUATION_MAX_AGE_MINUTES:
        return None
    if age_minutes < -SMART_CONTINUATION_MAX_LEAD_MINUTES:
        return None
    return time(last_work_end.hour, last_work_end.minute)


def _continuation_minutes(now: datetime, last_work_end: Optional[datetime]) -> Optional[int]:
    """智慧接續的開始分鐘數（相對於 now 當天的 00:00）"""
    smart_start = continuation_start(now, last_work_end)
    if smart_start is None:
        return None
    day_offset = (last_work_end.date() - now.date()).days
    return day_offset * MINUTES_PER_DAY + to_minutes(smart_start)


def _fallback_start(now: datetime, total_duration: int) -> int:
    """end = 現在取整；start 可能是負數（代表從前一天開始）"""
    end = round_to_interval(to_minutes(now.time()))
    return round_to_interval(end - total_duration)


def compute_window(
    duration: int,
    now: datetime,
    explicit_start: Optional[time] = None,
    last_work_end: Optional[datetime] = None,
) -> TimeWindow:
    """
    推算單一街道的工時區間

    參數：
        duration: 工作分鐘數（1..1439）
        now: 現在時間
        explicit_start: 使用者手動輸入的開始時間（不做取整）
        last_work_end: 使用者當天最近一次工作結束的時間點

    返回：
        TimeWindow
    """
    _validate_duration(duration)

    if explicit_start is not None:
        return window_from_duration(explicit_start, duration)

    start = _continuation_minutes(now, last_work_end)
    if start is None:
        start = _fallback_start(now, duration)
    return _window_at(start, duration)


def compute_batch_windows(
    durations: Sequence[int],
    now: datetime,
    explicit_start: Optional[time] = None,
    last_work_end: Optional[datetime] = None,
) -> List[TimeWindow]:
    """
    推算批次的工時區間：依選取順序首尾相接、不重疊

    範例（3 條街道、每條 10 分鐘、base start 08:00）：
        [08:00-08:10, 08:10-08:20, 08:20-08:30]
    """
    if not durations:
        return []
    for duration in durations:
        _validate_duration(duration)

    if explicit_start is not None:
        base = to_minutes(explicit_start)
    else:
        base = _continuation_minutes(now, last_work_end)
        if base is None:
            base = _fallback_start(now, sum(durations))

    windows = []
    offset = 0
    for duration in durations:
        windows.append(_window_at(base + offset, duration))
        offset += duration
    return windows


def find_last_work_end(db: Session, user_id: str, on_date: date) -> Optional[datetime]:
    """
    找出使用者在某天最近一次「工作結束」的時間點

    取以下兩者較晚的一個：
    - 使用者當天最晚結束的工時紀錄（work_logs.finished_at）
    - 使用者在 roster 內、當天已完成的街道的 finished_at
    """
    candidates: List[datetime] = []

    last_logged = db.query(func.max(WorkLogEntry.finished_at)).filter(
        WorkLogEntry.user_id == user_id,
        WorkLogEntry.date == on_date
    ).scalar()
    if last_logged is not None:
        candidates.append(last_logged)

    # assigned_users 是 JSON 欄位，不同資料庫的 contains 語法不一樣，直接在 Python 過濾
    done_records = (
        db.query(StatusRecord)
        .filter(
            StatusRecord.date == on_date,
            StatusRecord.status == StreetStatus.DONE,
            StatusRecord.finished_at.isnot(None),
        )
        .all()
    )
    finished = [record.finished_at for record in done_records if user_id in record.roster]
    if finished:
        candidates.append(max(finished))

    return max(candidates) if candidates else None
