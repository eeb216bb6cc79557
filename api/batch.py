"""
Batch API Endpoint

一次對多條街道執行 start / complete / reset。
全部成功返回 200；部分失敗返回 207，body 內列出成功與失敗的街道（成功的不會回滾）。
"""
from fastapi import APIRouter, Depends, HTTPException
from fastapi.responses import JSONResponse
from sqlalchemy.orm import Session
import logging

from database import get_db
from schemas import BatchRequest, BatchResponse, StreetWindowResponse
from core.batch_coordinator import BatchOperationCoordinator, BatchResult
from core.exceptions import (
    PermissionDenied,
    InvalidTimeWindow,
    FetchFailed,
    PartialBatchFailure,
)

router = APIRouter(prefix="/api/status", tags=["batch"])
logger = logging.getLogger(__name__)


def _batch_response(result: BatchResult) -> BatchResponse:
    return BatchResponse(
        action=result.action,
        succeeded=result.succeeded,
        failed=result.failed,
        windows=[
            StreetWindowResponse(
                street_id=street_id,
                start_time=window.start,
                end_time=window.end,
                duration_minutes=window.duration_minutes
            )
            for street_id, window in result.windows.items()
        ]
    )


@router.post("/batch", response_model=BatchResponse)
def run_batch(data: BatchRequest, db: Session = Depends(get_db)):
    """
    批次操作

    參數：
        action: start / complete / reset
        street_ids: 選取的街道（順序即清除順序，complete 的工時依序排列）
        roster: 共用的 roster
        duration_minutes / durations: complete 的時長
        start_time: 第一條街道的開始時間（不給就自動推算）
    """
    try:
        result = BatchOperationCoordinator.run(
            db,
            data.action,
            data.street_ids,
            data.date,
            data.actor_id,
            roster=data.roster,
            duration=data.duration_minutes,
            durations=data.durations,
            explicit_start=data.start_time,
            notes=data.notes
        )
        result.raise_for_failures()
        return _batch_response(result)

    except PartialBatchFailure as e:
        logger.warning(str(e))
        return JSONResponse(
            status_code=207,
            content=_batch_response(e.result).model_dump(mode="json")
        )
    except PermissionDenied as e:
        raise HTTPException(status_code=403, detail=str(e))
    except InvalidTimeWindow as e:
        raise HTTPException(status_code=422, detail=str(e))
    except FetchFailed as e:
        raise HTTPException(status_code=503, detail=str(e))
    except Exception as e:
        logger.error(f"Failed to run batch: {e}", exc_info=True)
        db.rollback()
        raise HTTPException(status_code=500, detail="Internal error")
