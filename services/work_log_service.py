"""
Work log service.

Writes the billable time records produced by completed streets, removes them
again when a street is reset, and serves the per-user listing used by the
work-hours view.
"""
import logging
from datetime import date
from typing import Iterable, List, Optional

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from database import get_settings
from models import WorkLogEntry
from core.exceptions import WorkLogNotFound
from services.time_window_service import TimeWindow

logger = logging.getLogger(__name__)


def _build_entry(
    user_id: str,
    street_id: Optional[str],
    on_date: date,
    window: TimeWindow,
    notes: Optional[str],
) -> WorkLogEntry:
    started_at, finished_at = window.to_timestamps(on_date)
    return WorkLogEntry(
        user_id=user_id,
        street_id=street_id,
        date=on_date,
        start_time=window.start,
        end_time=window.end,
        duration_minutes=window.duration_minutes,
        started_at=started_at,
        finished_at=finished_at,
        notes=notes,
    )


def create_team_work_logs(
    db: Session,
    street_id: str,
    on_date: date,
    window: TimeWindow,
    user_ids: Iterable[str],
    notes: Optional[str] = None,
) -> List[WorkLogEntry]:
    """
    Batch-write procedure: one work log per user for the same window.

    A user that already has an identical entry (same street, date and
    window) is skipped, so replaying the call does not double-bill.
    """
    created = []
    for user_id in sorted(set(user_ids)):
        existing = db.query(WorkLogEntry).filter(
            WorkLogEntry.user_id == user_id,
            WorkLogEntry.street_id == street_id,
            WorkLogEntry.date == on_date,
            WorkLogEntry.start_time == window.start,
            WorkLogEntry.end_time == window.end,
        ).first()
        if existing:
            continue
        entry = _build_entry(user_id, street_id, on_date, window, notes)
        db.add(entry)
        created.append(entry)

    db.flush()
    return created


def record_completion(
    db: Session,
    street_id: str,
    on_date: date,
    window: TimeWindow,
    user_ids: Iterable[str],
    actor_id: str,
    notes: Optional[str] = None,
) -> List[WorkLogEntry]:
    """
    Emit the work logs for a completed street.

    Goes through the team procedure inside a savepoint; when the procedure is
    disabled or fails, falls back to a single entry for the acting user so
    the surrounding status transition can still commit.
    """
    user_ids = list(user_ids)

    if get_settings().team_work_log_procedure_enabled:
        try:
            with db.begin_nested():
                return create_team_work_logs(db, street_id, on_date, window, user_ids, notes)
        except SQLAlchemyError as e:
            logger.warning(
                "Team work log procedure failed for street %s on %s, "
                "falling back to single entry: %s",
                street_id, on_date, e
            )

    entry = _build_entry(actor_id, street_id, on_date, window, notes)
    db.add(entry)
    db.flush()
    return [entry]


def delete_street_work_logs(db: Session, street_id: str, on_date: date) -> int:
    """Remove every work log for a (street, date) pair. Returns the number removed."""
    deleted = db.query(WorkLogEntry).filter(
        WorkLogEntry.street_id == street_id,
        WorkLogEntry.date == on_date,
    ).delete(synchronize_session="fetch")
    db.flush()
    return deleted


def list_work_logs(db: Session, user_id: Optional[str] = None, on_date: Optional[date] = None) -> List[WorkLogEntry]:
    query = db.query(WorkLogEntry)
    if user_id is not None:
        query = query.filter(WorkLogEntry.user_id == user_id)
    if on_date is not None:
        query = query.filter(WorkLogEntry.date == on_date)
    return query.order_by(WorkLogEntry.date, WorkLogEntry.start_time).all()


def create_manual_work_log(
    db: Session,
    user_id: str,
    on_date: date,
    window: TimeWindow,
    street_id: Optional[str] = None,
    notes: Optional[str] = None,
) -> WorkLogEntry:
    entry = _build_entry(user_id, street_id, on_date, window, notes)
    db.add(entry)
    db.flush()
    return entry


def get_work_log(db: Session, work_log_id: str) -> WorkLogEntry:
    entry = db.query(WorkLogEntry).filter(WorkLogEntry.id == work_log_id).first()
    if not entry:
        raise WorkLogNotFound(work_log_id)
    return entry
