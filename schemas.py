"""
API 的請求與回應格式（Pydantic）
"""
from datetime import date as date_type, datetime, time
from typing import Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field

from models import StreetStatus
from core.batch_coordinator import BatchAction

MAX_DURATION_MINUTES = 24 * 60 - 1


# ============ Street status ============

class ActorRequest(BaseModel):
    actor_id: str
    date: date_type


class StartRequest(ActorRequest):
    roster: Optional[List[str]] = None


class CompleteRequest(ActorRequest):
    duration_minutes: int = Field(gt=0, le=MAX_DURATION_MINUTES)
    start_time: Optional[time] = None
    roster: Optional[List[str]] = None
    notes: Optional[str] = None


class RosterRequest(ActorRequest):
    user_ids: List[str]


class RoundEntryResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    round_number: int
    status: StreetStatus
    started_at: Optional[datetime] = None
    finished_at: Optional[datetime] = None
    assigned_users: List[str] = []
    changed_by: Optional[str] = None
    updated_at: Optional[datetime] = None


class StatusResponse(BaseModel):
    street_id: str
    date: date_type
    status: StreetStatus
    current_round: int
    total_rounds: int
    started_at: Optional[datetime] = None
    finished_at: Optional[datetime] = None
    assigned_users: List[str] = []
    notes: Optional[str] = None
    changed_by: Optional[str] = None
    updated_at: Optional[datetime] = None
    completed_rounds: List[RoundEntryResponse] = []
    rounds: List[RoundEntryResponse] = []


# ============ Time windows ============

class TimeWindowResponse(BaseModel):
    start_time: time
    end_time: time
    duration_minutes: int


class StreetWindowResponse(TimeWindowResponse):
    street_id: Optional[str] = None


# ============ Batch ============

class BatchRequest(BaseModel):
    action: BatchAction
    actor_id: str
    date: date_type
    street_ids: List[str] = Field(min_length=1)
    roster: Optional[List[str]] = None
    duration_minutes: Optional[int] = Field(default=None, gt=0, le=MAX_DURATION_MINUTES)
    durations: Optional[Dict[str, int]] = None
    start_time: Optional[time] = None
    notes: Optional[str] = None


class BatchResponse(BaseModel):
    action: BatchAction
    succeeded: List[str]
    failed: Dict[str, str]
    windows: List[StreetWindowResponse] = []


# ============ Work logs ============

class WorkLogCreate(BaseModel):
    actor_id: str
    user_id: Optional[str] = None
    date: date_type
    start_time: time
    end_time: Optional[time] = None
    duration_minutes: Optional[int] = Field(default=None, gt=0, le=MAX_DURATION_MINUTES)
    street_id: Optional[str] = None
    notes: Optional[str] = None


class WorkLogResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    user_id: str
    street_id: Optional[str] = None
    date: date_type
    start_time: time
    end_time: Optional[time] = None
    duration_minutes: Optional[int] = None
    started_at: Optional[datetime] = None
    finished_at: Optional[datetime] = None
    activity_type: str
    notes: Optional[str] = None


class ActionResponse(BaseModel):
    status: str
