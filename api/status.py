"""
Street Status API Endpoints

職責：
1. 讀取某條街道某天的狀態與回合歷史
2. 狀態操作：start / complete / reset / roster
3. 開始新回合
4. 預覽工時區間

所有業務邏輯集中在 StatusManager；這裡只負責把異常轉成 HTTP 狀態碼。
狀態變更 commit 後會經由 change feed 推播（見 /ws/streets/{street_id}）。
"""
from datetime import date, datetime, time
from typing import List, Optional

from fastapi import APIRouter, Depends, HTTPException, Query
from sqlalchemy.orm import Session
import logging

from database import get_db
from schemas import (
    ActorRequest,
    CompleteRequest,
    RosterRequest,
    StartRequest,
    StatusResponse,
    StreetWindowResponse,
)
from core.status_manager import StatusManager
from core.exceptions import (
    PermissionDenied,
    InvalidTransition,
    InvalidTimeWindow,
    FetchFailed,
    WriteFailed,
)
from services.history_service import build_status_payload
from services.time_window_service import TimeWindow

router = APIRouter(prefix="/api", tags=["status"])
logger = logging.getLogger(__name__)


def _status_response(db: Session, street_id: str, on_date: date) -> StatusResponse:
    view = StatusManager.get_status_view(db, street_id, on_date)
    return StatusResponse(**build_status_payload(view.record, view.history))


def _window_response(window: TimeWindow, street_id: Optional[str] = None) -> StreetWindowResponse:
    return StreetWindowResponse(
        street_id=street_id,
        start_time=window.start,
        end_time=window.end,
        duration_minutes=window.duration_minutes
    )


def _raise_http(e: Exception, action: str, db: Session):
    """把業務異常轉成 HTTPException"""
    if isinstance(e, PermissionDenied):
        raise HTTPException(status_code=403, detail=str(e))
    if isinstance(e, InvalidTransition):
        raise HTTPException(status_code=409, detail=str(e))
    if isinstance(e, InvalidTimeWindow):
        raise HTTPException(status_code=422, detail=str(e))
    if isinstance(e, (FetchFailed, WriteFailed)):
        raise HTTPException(status_code=503, detail=str(e))
    logger.error(f"Failed to {action}: {e}", exc_info=True)
    db.rollback()
    raise HTTPException(status_code=500, detail="Internal error")


@router.get("/streets/{street_id}/status", response_model=StatusResponse)
def get_street_status(
    street_id: str,
    date: date = Query(...),
    db: Session = Depends(get_db)
):
    """
    取得街道當天的狀態

    第一次讀取時會建立 OPEN 狀態的紀錄（round 1）

    返回：
        - 當前狀態（status, current_round, roster, 時間）
        - completed_rounds: 已完成的回合（依回合數遞增）
        - rounds: 全部回合
    """
    try:
        return _status_response(db, street_id, date)
    except Exception as e:
        _raise_http(e, "get street status", db)


@router.post("/streets/{street_id}/status/start", response_model=StatusResponse)
def start_street(street_id: str, data: StartRequest, db: Session = Depends(get_db)):
    """出發（OPEN -> EN_ROUTE），可以同時設定 roster"""
    try:
        StatusManager.start(db, street_id, data.date, data.actor_id, roster=data.roster)
        return _status_response(db, street_id, data.date)
    except Exception as e:
        _raise_http(e, "start street", db)


@router.post("/streets/{street_id}/status/complete", response_model=StatusResponse)
def complete_street(street_id: str, data: CompleteRequest, db: Session = Depends(get_db)):
    """
    完成（OPEN / EN_ROUTE -> DONE）

    流程：
    1. 推算工時區間（手動開始時間 > 智慧接續 > 現在往回推）
    2. 更新狀態並替 roster 內每個人建立工時紀錄
    """
    try:
        window = StatusManager.propose_window(
            db, data.actor_id, data.date, data.duration_minutes, data.start_time
        )
        StatusManager.complete(
            db, street_id, data.date, data.actor_id, window,
            roster=data.roster, notes=data.notes
        )
        return _status_response(db, street_id, data.date)
    except Exception as e:
        _raise_http(e, "complete street", db)


@router.post("/streets/{street_id}/status/reset", response_model=StatusResponse)
def reset_street(street_id: str, data: ActorRequest, db: Session = Depends(get_db)):
    """重設（回到 OPEN，刪除當天這條街道的工時紀錄）"""
    try:
        StatusManager.reset(db, street_id, data.date, data.actor_id)
        return _status_response(db, street_id, data.date)
    except Exception as e:
        _raise_http(e, "reset street", db)


@router.put("/streets/{street_id}/status/roster", response_model=StatusResponse)
def set_street_roster(street_id: str, data: RosterRequest, db: Session = Depends(get_db)):
    """更新 roster（EN_ROUTE / DONE 時）"""
    try:
        StatusManager.set_roster(db, street_id, data.date, data.actor_id, data.user_ids)
        return _status_response(db, street_id, data.date)
    except Exception as e:
        _raise_http(e, "set roster", db)


@router.post("/streets/{street_id}/rounds", response_model=StatusResponse)
def start_new_round(street_id: str, data: ActorRequest, db: Session = Depends(get_db)):
    """
    開始新回合（同一天再次下雪）

    前置條件：
    - 當前回合必須是 DONE
    """
    try:
        StatusManager.start_new_round(db, street_id, data.date, data.actor_id)
        return _status_response(db, street_id, data.date)
    except Exception as e:
        _raise_http(e, "start new round", db)


@router.get("/time-windows/preview", response_model=List[StreetWindowResponse])
def preview_time_windows(
    actor_id: str = Query(...),
    date: date = Query(...),
    duration_minutes: int = Query(..., gt=0),
    street_ids: Optional[List[str]] = Query(None),
    start_time: Optional[time] = Query(None),
    db: Session = Depends(get_db)
):
    """
    預覽工時區間（不寫入）

    有給 street_ids 時按照批次規則排出首尾相接的區間，否則返回單一區間
    """
    try:
        now = datetime.now()
        if street_ids:
            windows = StatusManager.propose_batch_windows(
                db, actor_id, date, [duration_minutes] * len(street_ids), start_time, now
            )
            return [_window_response(w, s) for s, w in zip(street_ids, windows)]

        window = StatusManager.propose_window(db, actor_id, date, duration_minutes, start_time, now)
        return [_window_response(window)]
    except Exception as e:
        _raise_http(e, "preview time windows", db)
