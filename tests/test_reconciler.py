import asyncio
import unittest
from datetime import date, datetime

import pytest

from core.change_feed import (
    ChangeEvent,
    ChangeFeed,
    ChangeType,
    ROUNDS_TABLE,
    STATUS_TABLE,
)
from core.reconciler import RealtimeReconciler, RoundSnapshot, StatusProjection
from models import StreetStatus

DAY = date(2025, 1, 15)
OTHER_DAY = date(2025, 1, 16)


def status_row(status="en_route", on_date=DAY, **overrides):
    row = {
        "id": "rec-1",
        "street_id": "s-1",
        "date": on_date.isoformat(),
        "status": status,
        "current_round": 1,
        "total_rounds": 1,
        "started_at": "2025-01-15T08:40:00",
        "finished_at": None,
        "assigned_users": ["u-1"],
        "changed_by": "u-1",
        "updated_at": "2025-01-15T08:40:00",
    }
    row.update(overrides)
    return row


def round_row(round_number, status="done", on_date=DAY):
    return {
        "id": f"entry-{round_number}",
        "street_id": "s-1",
        "date": on_date,
        "round_number": round_number,
        "status": status,
        "started_at": datetime(2025, 1, 15, 8, 0),
        "finished_at": datetime(2025, 1, 15, 8, 30),
        "assigned_users": ["u-1"],
    }


def upsert(table, row):
    return ChangeEvent(ChangeType.UPSERT, table, "s-1", row)


@pytest.fixture
def reconciler():
    reconciler = RealtimeReconciler(ChangeFeed())
    reconciler.projection = StatusProjection.default("s-1", DAY)
    return reconciler


def test_status_upsert_replaces_projection(reconciler):
    assert reconciler.apply(upsert(STATUS_TABLE, status_row())) is True

    assert reconciler.projection.status == StreetStatus.EN_ROUTE
    assert reconciler.projection.assigned_users == {"u-1"}
    assert reconciler.projection.started_at == datetime(2025, 1, 15, 8, 40)


def test_applying_same_event_twice_is_idempotent(reconciler):
    change = upsert(STATUS_TABLE, status_row())
    reconciler.apply(change)
    first = reconciler.projection

    assert reconciler.apply(change) is False
    assert reconciler.projection == first


def test_event_for_other_date_is_ignored(reconciler):
    assert reconciler.apply(upsert(STATUS_TABLE, status_row(on_date=OTHER_DAY))) is False
    assert reconciler.apply(upsert(ROUNDS_TABLE, round_row(1, on_date=OTHER_DAY))) is False
    assert reconciler.projection == StatusProjection.default("s-1", DAY)


def test_later_event_wins_without_field_merge(reconciler):
    reconciler.apply(upsert(STATUS_TABLE, status_row(notes="x", assigned_users=["u-1", "u-2"])))
    reconciler.apply(upsert(STATUS_TABLE, status_row(status="done", assigned_users=["u-3"])))

    assert reconciler.projection.status == StreetStatus.DONE
    assert reconciler.projection.assigned_users == {"u-3"}


def test_delete_resets_to_default_for_any_date(reconciler):
    reconciler.apply(upsert(STATUS_TABLE, status_row(status="done")))
    reconciler.apply(upsert(ROUNDS_TABLE, round_row(1)))

    deleted = ChangeEvent(ChangeType.DELETE, STATUS_TABLE, "s-1", {"id": "rec-1", "date": OTHER_DAY})
    assert reconciler.apply(deleted) is True

    assert reconciler.projection.status == StreetStatus.OPEN
    assert reconciler.projection.assigned_users == frozenset()
    assert reconciler.projection.current_round == 1
    assert [entry.round_number for entry in reconciler.projection.rounds] == [1]


def test_round_events_merge_by_round_number(reconciler):
    reconciler.apply(upsert(ROUNDS_TABLE, round_row(2, status="open")))
    reconciler.apply(upsert(ROUNDS_TABLE, round_row(1)))
    reconciler.apply(upsert(ROUNDS_TABLE, round_row(2)))

    rounds = reconciler.projection.rounds
    assert [entry.round_number for entry in rounds] == [1, 2]
    assert all(entry.status == StreetStatus.DONE for entry in rounds)
    assert len(reconciler.projection.completed_rounds) == 2


def test_status_upsert_keeps_round_history(reconciler):
    reconciler.apply(upsert(ROUNDS_TABLE, round_row(1)))
    reconciler.apply(upsert(STATUS_TABLE, status_row(status="open", current_round=2, total_rounds=2)))

    assert reconciler.projection.current_round == 2
    assert reconciler.projection.rounds == (RoundSnapshot.from_row(round_row(1)),)


def test_apply_local_is_overwritten_by_feed(reconciler):
    reconciler.apply_local(status=StreetStatus.DONE, assigned_users=["u-9"])
    assert reconciler.projection.status == StreetStatus.DONE

    reconciler.apply(upsert(STATUS_TABLE, status_row()))
    assert reconciler.projection.status == StreetStatus.EN_ROUTE
    assert reconciler.projection.assigned_users == {"u-1"}


def test_listeners_only_see_real_changes(reconciler):
    seen = []
    reconciler.add_listener(seen.append)
    change = upsert(STATUS_TABLE, status_row())

    reconciler.apply(change)
    reconciler.apply(change)

    assert len(seen) == 1


class TestReconcilerSubscription(unittest.IsolatedAsyncioTestCase):
    async def asyncSetUp(self):
        self.feed = ChangeFeed()
        self.reconciler = RealtimeReconciler(self.feed)
        self.seen = []
        self.reconciler.add_listener(self.seen.append)

    async def asyncTearDown(self):
        await self.reconciler.close()

    async def _settle(self):
        for _ in range(5):
            await asyncio.sleep(0)

    async def test_feed_events_reach_projection(self):
        self.reconciler.watch("s-1", DAY)
        self.feed.publish(upsert(STATUS_TABLE, status_row()))
        await self._settle()

        self.assertEqual(self.reconciler.projection.status, StreetStatus.EN_ROUTE)

    async def test_watch_same_key_keeps_subscription(self):
        self.reconciler.watch("s-1", DAY)
        self.feed.publish(upsert(STATUS_TABLE, status_row()))
        await self._settle()

        self.reconciler.watch("s-1", DAY)

        self.assertEqual(self.feed.subscriber_count("s-1"), 1)
        self.assertEqual(self.reconciler.projection.status, StreetStatus.EN_ROUTE)

    async def test_changing_street_resubscribes(self):
        self.reconciler.watch("s-1", DAY)
        self.reconciler.watch("s-2", DAY)

        self.assertEqual(self.feed.subscriber_count("s-1"), 0)
        self.assertEqual(self.feed.subscriber_count("s-2"), 1)

        self.feed.publish(upsert(STATUS_TABLE, status_row()))
        await self._settle()
        self.assertEqual(self.reconciler.projection.street_id, "s-2")
        self.assertEqual(self.reconciler.projection.status, StreetStatus.OPEN)

    async def test_changing_date_resets_projection(self):
        self.reconciler.watch("s-1", DAY)
        self.feed.publish(upsert(STATUS_TABLE, status_row()))
        await self._settle()

        self.reconciler.watch("s-1", OTHER_DAY)

        self.assertEqual(self.reconciler.projection, StatusProjection.default("s-1", OTHER_DAY))

    async def test_no_callbacks_after_close(self):
        self.reconciler.watch("s-1", DAY)
        await self._settle()
        count = len(self.seen)

        await self.reconciler.close()
        self.feed.publish(upsert(STATUS_TABLE, status_row()))
        await self._settle()

        self.assertEqual(len(self.seen), count)
        self.assertEqual(self.feed.subscriber_count("s-1"), 0)
