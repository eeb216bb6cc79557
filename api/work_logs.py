"""
Work Log API Endpoints

職責：
1. 查詢工時紀錄（自己的，或管理員查全部）
2. 手動新增自由工時（不綁街道）
3. 刪除工時紀錄
"""
from datetime import date
from typing import List, Optional

from fastapi import APIRouter, Depends, HTTPException, Query
from sqlalchemy.orm import Session
import logging

from database import get_db
from schemas import WorkLogCreate, WorkLogResponse, ActionResponse
from core.exceptions import PermissionDenied, WorkLogNotFound, InvalidTimeWindow
from services.permission_service import (
    ensure_capability,
    has_capability,
    WORKLOGS_CREATE,
    WORKLOGS_CREATE_ALL,
    WORKLOGS_DELETE_ALL,
    WORKLOGS_DELETE_OWN,
    WORKLOGS_VIEW_ALL,
    WORKLOGS_VIEW_OWN,
)
from services.time_window_service import window_between, window_from_duration
from services import work_log_service

router = APIRouter(prefix="/api/work-logs", tags=["work-logs"])
logger = logging.getLogger(__name__)


@router.get("", response_model=List[WorkLogResponse])
def list_work_logs(
    actor_id: str = Query(...),
    user_id: Optional[str] = Query(None),
    date: Optional[date] = Query(None),
    db: Session = Depends(get_db)
):
    """
    查詢工時紀錄

    - 沒有 worklogs:view_all 的人只能看自己的
    """
    try:
        actor = ensure_capability(db, actor_id, WORKLOGS_VIEW_OWN)
        target = user_id or actor_id
        if target != actor_id and not has_capability(actor.role, WORKLOGS_VIEW_ALL):
            raise PermissionDenied(actor_id, WORKLOGS_VIEW_ALL)
        return work_log_service.list_work_logs(db, target, date)

    except PermissionDenied as e:
        raise HTTPException(status_code=403, detail=str(e))
    except Exception as e:
        logger.error(f"Failed to list work logs: {e}", exc_info=True)
        raise HTTPException(status_code=500, detail="Internal error")


@router.post("", response_model=WorkLogResponse)
def create_work_log(data: WorkLogCreate, db: Session = Depends(get_db)):
    """
    手動新增工時

    end_time 與 duration_minutes 擇一；都有給時以 end_time 為準
    替別人新增需要 worklogs:create_all
    """
    try:
        actor = ensure_capability(db, data.actor_id, WORKLOGS_CREATE)
        user_id = data.user_id or data.actor_id
        if user_id != data.actor_id and not has_capability(actor.role, WORKLOGS_CREATE_ALL):
            raise PermissionDenied(data.actor_id, WORKLOGS_CREATE_ALL)

        if data.end_time is not None:
            window = window_between(data.start_time, data.end_time)
        elif data.duration_minutes is not None:
            window = window_from_duration(data.start_time, data.duration_minutes)
        else:
            raise InvalidTimeWindow("Either end_time or duration_minutes is required")

        entry = work_log_service.create_manual_work_log(
            db, user_id, data.date, window, street_id=data.street_id, notes=data.notes
        )
        db.commit()
        db.refresh(entry)

        logger.info(f"Work log {entry.id} created for user {user_id} on {data.date}")
        return entry

    except PermissionDenied as e:
        raise HTTPException(status_code=403, detail=str(e))
    except InvalidTimeWindow as e:
        raise HTTPException(status_code=422, detail=str(e))
    except Exception as e:
        logger.error(f"Failed to create work log: {e}", exc_info=True)
        db.rollback()
        raise HTTPException(status_code=500, detail="Internal error")


@router.delete("/{work_log_id}", response_model=ActionResponse)
def delete_work_log(
    work_log_id: str,
    actor_id: str = Query(...),
    db: Session = Depends(get_db)
):
    """刪除工時紀錄（自己的，或有 worklogs:delete_all 時任何人的）"""
    try:
        actor = ensure_capability(db, actor_id, WORKLOGS_DELETE_OWN)
        entry = work_log_service.get_work_log(db, work_log_id)
        if entry.user_id != actor_id and not has_capability(actor.role, WORKLOGS_DELETE_ALL):
            raise PermissionDenied(actor_id, WORKLOGS_DELETE_ALL)

        db.delete(entry)
        db.commit()
        return ActionResponse(status="ok")

    except PermissionDenied as e:
        raise HTTPException(status_code=403, detail=str(e))
    except WorkLogNotFound:
        raise HTTPException(status_code=404, detail="Work log not found")
    except Exception as e:
        logger.error(f"Failed to delete work log: {e}", exc_info=True)
        db.rollback()
        raise HTTPException(status_code=500, detail="Internal error")
