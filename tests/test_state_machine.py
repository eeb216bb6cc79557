from datetime import date, datetime

import pytest

from core.exceptions import InvalidTransition
from core.state_machine import StatusAction, StatusStateMachine
from models import StatusRecord, StreetStatus

NOW = datetime(2025, 1, 15, 9, 0)
STARTED = datetime(2025, 1, 15, 8, 40)
FINISHED = datetime(2025, 1, 15, 9, 0)


def make_record(status=StreetStatus.OPEN, roster=None):
    return StatusRecord(
        street_id="s-1",
        date=date(2025, 1, 15),
        status=status,
        current_round=1,
        total_rounds=1,
        assigned_users=list(roster or []),
    )


@pytest.mark.parametrize("action,status,allowed", [
    (StatusAction.START, StreetStatus.OPEN, True),
    (StatusAction.START, StreetStatus.EN_ROUTE, False),
    (StatusAction.START, StreetStatus.DONE, False),
    (StatusAction.COMPLETE, StreetStatus.OPEN, True),
    (StatusAction.COMPLETE, StreetStatus.EN_ROUTE, True),
    (StatusAction.COMPLETE, StreetStatus.DONE, False),
    (StatusAction.RESET, StreetStatus.OPEN, False),
    (StatusAction.RESET, StreetStatus.EN_ROUTE, True),
    (StatusAction.RESET, StreetStatus.DONE, True),
    (StatusAction.SET_ROSTER, StreetStatus.OPEN, False),
    (StatusAction.NEW_ROUND, StreetStatus.EN_ROUTE, False),
    (StatusAction.NEW_ROUND, StreetStatus.DONE, True),
])
def test_transition_table(action, status, allowed):
    assert StatusStateMachine.can(action, status) is allowed


def test_start_keeps_roster_and_sets_started_at():
    record = StatusStateMachine.start(make_record(), "u-1", NOW)

    assert record.status == StreetStatus.EN_ROUTE
    assert record.started_at == NOW
    assert record.assigned_users == []
    assert record.changed_by == "u-1"


def test_start_twice_is_rejected():
    record = StatusStateMachine.start(make_record(), "u-1", NOW)

    with pytest.raises(InvalidTransition):
        StatusStateMachine.start(record, "u-1", NOW)


def test_complete_from_open_adds_actor():
    record = StatusStateMachine.complete(make_record(), "u-1", NOW, STARTED, FINISHED)

    assert record.status == StreetStatus.DONE
    assert record.roster == {"u-1"}
    assert record.started_at == STARTED
    assert record.finished_at == FINISHED


def test_complete_from_en_route_keeps_existing_roster():
    record = make_record(StreetStatus.EN_ROUTE, roster=["u-2", "u-3"])
    StatusStateMachine.complete(record, "u-1", NOW, STARTED, FINISHED)

    assert record.roster == {"u-2", "u-3"}


def test_complete_with_chosen_roster_always_includes_actor():
    record = make_record(StreetStatus.EN_ROUTE, roster=["u-9"])
    StatusStateMachine.complete(record, "u-1", NOW, STARTED, FINISHED, roster=["u-2", "u-2"])

    assert record.assigned_users == ["u-1", "u-2"]


def test_reset_clears_times_and_roster():
    record = make_record(StreetStatus.DONE, roster=["u-1"])
    record.started_at, record.finished_at = STARTED, FINISHED

    StatusStateMachine.reset(record, "u-1", NOW)

    assert record.status == StreetStatus.OPEN
    assert record.started_at is None
    assert record.finished_at is None
    assert record.assigned_users == []
    assert record.current_round == 1


def test_set_roster_requires_en_route_or_done():
    with pytest.raises(InvalidTransition):
        StatusStateMachine.set_roster(make_record(), "u-1", NOW, ["u-2"])

    record = StatusStateMachine.set_roster(
        make_record(StreetStatus.EN_ROUTE), "u-1", NOW, ["u-3", "u-2", "u-3"]
    )
    assert record.assigned_users == ["u-2", "u-3"]


def test_advance_round_increments_and_clears():
    record = make_record(StreetStatus.DONE, roster=["u-1"])
    StatusStateMachine.advance_round(record, "u-1", NOW)

    assert record.status == StreetStatus.OPEN
    assert record.current_round == 2
    assert record.total_rounds == 2
    assert record.assigned_users == []
