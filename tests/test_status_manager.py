"""StatusManager against a real (in-memory) database."""
from datetime import date, datetime, time

import pytest

from core.exceptions import InvalidTransition, PermissionDenied
from core.round_ledger import RoundLedger
from core.status_manager import StatusManager
from database import get_settings
from models import StreetStatus, WorkLogEntry
from services.time_window_service import TimeWindow

DAY = date(2025, 1, 15)
NOW = datetime(2025, 1, 15, 9, 0)
WINDOW = TimeWindow(time(8, 40), time(9, 0))


def work_logs(db, street_id="s-1"):
    return db.query(WorkLogEntry).filter(
        WorkLogEntry.street_id == street_id,
        WorkLogEntry.date == DAY
    ).all()


def test_first_read_creates_open_record(db_session):
    view = StatusManager.get_status_view(db_session, "s-1", DAY)

    assert view.record.status == StreetStatus.OPEN
    assert view.record.current_round == 1
    assert [entry.round_number for entry in view.history] == [1]
    assert view.completed_rounds == []


def test_start_moves_to_en_route_and_syncs_round(db_session, users):
    record = StatusManager.start(db_session, "s-1", DAY, users["worker"], now=NOW)

    assert record.status == StreetStatus.EN_ROUTE
    assert record.started_at == NOW
    entry = RoundLedger.get_entry(db_session, "s-1", DAY, 1)
    assert entry.status == StreetStatus.EN_ROUTE
    assert entry.changed_by == users["worker"]


def test_start_twice_raises_invalid_transition(db_session, users):
    StatusManager.start(db_session, "s-1", DAY, users["worker"], now=NOW)

    with pytest.raises(InvalidTransition):
        StatusManager.start(db_session, "s-1", DAY, users["worker"], now=NOW)
    assert StatusManager.find_record(db_session, "s-1", DAY).status == StreetStatus.EN_ROUTE


def test_guest_cannot_write(db_session, users):
    with pytest.raises(PermissionDenied):
        StatusManager.start(db_session, "s-1", DAY, users["guest"], now=NOW)

    assert StatusManager.find_record(db_session, "s-1", DAY) is None


def test_unknown_actor_cannot_write(db_session, users):
    with pytest.raises(PermissionDenied):
        StatusManager.complete(db_session, "s-1", DAY, "nobody", WINDOW, now=NOW)


def test_complete_from_open_records_actor_and_work_log(db_session, users):
    record = StatusManager.complete(db_session, "s-1", DAY, users["worker"], WINDOW, now=NOW)

    assert record.status == StreetStatus.DONE
    assert record.roster == {users["worker"]}
    assert record.started_at == datetime(2025, 1, 15, 8, 40)
    assert record.finished_at == datetime(2025, 1, 15, 9, 0)

    logs = work_logs(db_session)
    assert len(logs) == 1
    assert logs[0].user_id == users["worker"]
    assert logs[0].duration_minutes == 20


def test_complete_writes_one_work_log_per_roster_member(db_session, users):
    StatusManager.start(db_session, "s-1", DAY, users["worker"], now=NOW)
    StatusManager.complete(
        db_session, "s-1", DAY, users["worker"], WINDOW,
        roster=[users["worker2"]], notes="north side", now=NOW
    )

    logs = work_logs(db_session)
    assert sorted(log.user_id for log in logs) == sorted([users["worker"], users["worker2"]])
    assert all(log.start_time == time(8, 40) and log.end_time == time(9, 0) for log in logs)
    assert all(log.notes == "north side" for log in logs)


def test_complete_without_team_procedure_logs_actor_only(db_session, users, monkeypatch):
    monkeypatch.setattr(get_settings(), "team_work_log_procedure_enabled", False)

    StatusManager.complete(
        db_session, "s-1", DAY, users["worker"], WINDOW,
        roster=[users["worker2"]], now=NOW
    )

    assert [log.user_id for log in work_logs(db_session)] == [users["worker"]]


def test_complete_twice_is_rejected(db_session, users):
    StatusManager.complete(db_session, "s-1", DAY, users["worker"], WINDOW, now=NOW)

    with pytest.raises(InvalidTransition):
        StatusManager.complete(db_session, "s-1", DAY, users["worker"], WINDOW, now=NOW)
    assert len(work_logs(db_session)) == 1


def test_reset_clears_status_and_removes_work_logs(db_session, users):
    StatusManager.complete(db_session, "s-1", DAY, users["worker"], WINDOW, roster=[users["worker2"]], now=NOW)
    StatusManager.complete(db_session, "s-2", DAY, users["worker"], WINDOW, now=NOW)

    record = StatusManager.reset(db_session, "s-1", DAY, users["worker"], now=NOW)

    assert record.status == StreetStatus.OPEN
    assert record.assigned_users == []
    assert record.started_at is None
    assert work_logs(db_session) == []
    assert len(work_logs(db_session, "s-2")) == 1


def test_reset_from_open_is_rejected(db_session, users):
    with pytest.raises(InvalidTransition):
        StatusManager.reset(db_session, "s-1", DAY, users["worker"], now=NOW)


def test_set_roster_writes_through_to_round_entry(db_session, users):
    StatusManager.start(db_session, "s-1", DAY, users["worker"], now=NOW)
    StatusManager.set_roster(db_session, "s-1", DAY, users["worker"], [users["worker2"], users["worker"]], now=NOW)

    record = StatusManager.find_record(db_session, "s-1", DAY)
    entry = RoundLedger.get_entry(db_session, "s-1", DAY, 1)
    assert record.assigned_users == sorted([users["worker"], users["worker2"]])
    assert entry.assigned_users == record.assigned_users


def test_new_round_requires_done(db_session, users):
    StatusManager.start(db_session, "s-1", DAY, users["worker"], now=NOW)

    with pytest.raises(InvalidTransition):
        StatusManager.start_new_round(db_session, "s-1", DAY, users["worker"], now=NOW)


def test_rounds_are_monotonic_and_history_is_kept(db_session, users):
    StatusManager.complete(db_session, "s-1", DAY, users["worker"], WINDOW, now=NOW)
    record = StatusManager.start_new_round(db_session, "s-1", DAY, users["worker"], now=NOW)

    assert record.status == StreetStatus.OPEN
    assert record.current_round == 2
    assert record.total_rounds == 2
    assert record.assigned_users == []

    second = TimeWindow(time(11, 0), time(11, 30))
    StatusManager.complete(db_session, "s-1", DAY, users["worker2"], second, now=NOW)

    view = StatusManager.get_status_view(db_session, "s-1", DAY)
    assert [entry.round_number for entry in view.history] == [1, 2]
    assert [entry.round_number for entry in view.completed_rounds] == [1, 2]
    assert view.completed_rounds[0].assigned_users == [users["worker"]]
    assert view.completed_rounds[1].assigned_users == [users["worker2"]]
    assert view.record.finished_at == datetime(2025, 1, 15, 11, 30)


def test_status_is_read_back_unchanged(db_session, users):
    StatusManager.start(db_session, "s-1", DAY, users["worker"], now=NOW)
    db_session.expire_all()

    view = StatusManager.get_status_view(db_session, "s-1", DAY)
    assert view.record.status == StreetStatus.EN_ROUTE
    assert view.record.changed_by == users["worker"]
    assert view.record.updated_at == NOW


def test_propose_window_uses_last_work_end(db_session, users):
    StatusManager.complete(
        db_session, "s-1", DAY, users["worker"], TimeWindow(time(9, 0), time(9, 15)), now=NOW
    )

    window = StatusManager.propose_window(
        db_session, users["worker"], DAY, 20, now=datetime(2025, 1, 15, 9, 20)
    )
    assert window == TimeWindow(time(9, 15), time(9, 35))


def test_propose_window_ignores_history_with_explicit_start(db_session, users):
    StatusManager.complete(
        db_session, "s-1", DAY, users["worker"], TimeWindow(time(9, 0), time(9, 15)), now=NOW
    )

    window = StatusManager.propose_window(
        db_session, users["worker"], DAY, 20, explicit_start=time(7, 0),
        now=datetime(2025, 1, 15, 9, 20)
    )
    assert window == TimeWindow(time(7, 0), time(7, 20))


def test_completion_just_after_midnight_is_anchored_on_previous_evening(db_session, users):
    just_after_midnight = datetime(2025, 1, 15, 0, 5)
    window = StatusManager.propose_window(db_session, users["worker"], DAY, 20, now=just_after_midnight)
    record = StatusManager.complete(db_session, "s-1", DAY, users["worker"], window, now=just_after_midnight)

    assert record.started_at == datetime(2025, 1, 14, 23, 45)
    assert record.finished_at == datetime(2025, 1, 15, 0, 5)
    assert work_logs(db_session)[0].finished_at == datetime(2025, 1, 15, 0, 5)

    afternoon = StatusManager.propose_window(
        db_session, users["worker"], DAY, 30, now=datetime(2025, 1, 15, 14, 0)
    )
    assert afternoon == TimeWindow(time(13, 30), time(14, 0))


def test_start_with_roster_writes_both_together(db_session, users):
    record = StatusManager.start(
        db_session, "s-1", DAY, users["worker"], roster=[users["worker2"]], now=NOW
    )

    assert record.status == StreetStatus.EN_ROUTE
    assert record.assigned_users == [users["worker2"]]
    assert RoundLedger.get_entry(db_session, "s-1", DAY, 1).assigned_users == [users["worker2"]]
