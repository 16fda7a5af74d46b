"""
Weekly completed hours tests.

Weekly progress is derived from the CompletedWork history of each task:
the value last recorded before the seven-day cutoff is the baseline, and
everything above it counts as this week's work. A failing history read
must only zero the affected task.
"""

import asyncio
import logging
from datetime import timedelta

from devops_gantt.core.aggregator import (
    Aggregator,
    completed_work_this_week,
    weekly_completed_hours,
)
from devops_gantt.core.store import WorkItem

from tests.conftest import FakeDevOps, completed_work_update, record, relation


def iso(dt):
    return dt.isoformat().replace("+00:00", "Z")


class TestCompletedWorkThisWeek:
    """Pure baseline/delta computation."""

    def test_scenario_d_baseline_ten_days_ago(self, now):
        """40h now, 30h recorded ten days ago -> 10h this week."""
        updates = [completed_work_update(iso(now - timedelta(days=10)), new_value=30)]

        assert completed_work_this_week(updates, 40, now) == 10

    def test_changes_inside_the_window_are_ignored(self, now):
        updates = [
            completed_work_update(iso(now - timedelta(days=20)), new_value=10),
            completed_work_update(iso(now - timedelta(days=9)), old_value=10, new_value=25),
            completed_work_update(iso(now - timedelta(days=2)), old_value=25, new_value=38),
        ]

        assert completed_work_this_week(updates, 40, now) == 15

    def test_no_history_before_cutoff_counts_everything(self, now):
        updates = [completed_work_update(iso(now - timedelta(days=1)), new_value=12)]

        assert completed_work_this_week(updates, 12, now) == 12
        assert completed_work_this_week([], 7.5, now) == 7.5

    def test_cutoff_is_strict(self, now):
        updates = [completed_work_update(iso(now - timedelta(days=7)), new_value=5)]

        assert completed_work_this_week(updates, 8, now) == 8

    def test_removed_value_falls_back_to_old_value(self, now):
        updates = [completed_work_update(iso(now - timedelta(days=12)), old_value=6)]

        assert completed_work_this_week(updates, 10, now) == 4

    def test_updates_without_completed_work_are_skipped(self, now):
        updates = [
            {"revisedDate": iso(now - timedelta(days=30)), "fields": {"System.State": {"newValue": "Done"}}},
            {"revisedDate": iso(now - timedelta(days=30))},
        ]

        assert completed_work_this_week(updates, 3, now) == 3

    def test_baseline_with_trimmed_fraction(self, now):
        """revisedDate with a two-digit fraction still sets the baseline."""
        revised = (now - timedelta(days=10)).strftime("%Y-%m-%dT%H:%M:%S") + ".12Z"
        updates = [completed_work_update(revised, new_value=30)]

        assert completed_work_this_week(updates, 40, now) == 10

    def test_malformed_entries_are_skipped(self, now):
        updates = [
            "not an update",
            {"revisedDate": iso(now - timedelta(days=20)), "fields": ["CompletedWork"]},
            completed_work_update(iso(now - timedelta(days=10)), new_value=30),
        ]

        assert completed_work_this_week(updates, 40, now) == 10

    def test_never_negative(self, now):
        """Completed work lowered this week -> 0, not a negative number."""
        updates = [completed_work_update(iso(now - timedelta(days=8)), new_value=50)]

        assert completed_work_this_week(updates, 20, now) == 0

    def test_bounded_by_completed_hours(self, now):
        cases = [
            ([], 0),
            ([completed_work_update(iso(now - timedelta(days=8)), new_value=3)], 3),
            ([completed_work_update(iso(now - timedelta(days=8)), new_value=1)], 9),
        ]
        for updates, total in cases:
            weekly = completed_work_this_week(updates, total, now)
            assert 0 <= weekly <= total


class TestWeeklyCompletedHours:
    """History read wrapper with failure containment."""

    def test_read_failure_degrades_to_zero(self, now, caplog):
        async def broken(work_item_id):
            raise ConnectionError("reset by peer")

        with caplog.at_level(logging.WARNING):
            hours = asyncio.run(weekly_completed_hours(broken, 42, 10, now))

        assert hours == 0
        assert "42" in caplog.text

    def test_timeout_degrades_to_zero(self, now):
        async def slow(work_item_id):
            await asyncio.sleep(1)
            return []

        hours = asyncio.run(weekly_completed_hours(slow, 42, 10, now, timeout=0.01))

        assert hours == 0

    def test_unreadable_value_degrades_to_zero(self, now, caplog):
        async def garbled(work_item_id):
            return [completed_work_update(iso(now - timedelta(days=10)), new_value="n/a")]

        with caplog.at_level(logging.WARNING):
            hours = asyncio.run(weekly_completed_hours(garbled, 42, 10, now))

        assert hours == 0
        assert "42" in caplog.text


class TestAggregatorWeeklyHours:
    """Concurrent history reads across a batch of tasks."""

    def _five_tasks(self, now):
        relations = [relation(None, 1)] + [relation(1, i) for i in range(2, 7)]
        records = [record(1, "Project", "Project")] + [
            record(i, f"Task {i}", completed=40) for i in range(2, 7)
        ]
        history = [completed_work_update(iso(now - timedelta(days=10)), new_value=30)]
        updates = {i: history for i in range(2, 7)}
        return relations, records, updates

    def test_scenario_e_one_failing_history_among_five(self, now):
        relations, records, updates = self._five_tasks(now)
        client = FakeDevOps(relations, records, updates, failing=(4,))
        aggregator = Aggregator(client, history_concurrency=2, clock=lambda: now)

        rows = asyncio.run(aggregator.build_rows(1))
        weekly = {r.id: r.weekly_completed_hours for r in rows}

        assert weekly[4] == 0
        assert [weekly[i] for i in (2, 3, 5, 6)] == [10, 10, 10, 10]
        assert len(rows) == 6

    def test_malformed_history_among_five(self, now):
        """A non-numeric CompletedWork value only zeroes its own task."""
        relations, records, updates = self._five_tasks(now)
        updates[3] = [completed_work_update(iso(now - timedelta(days=10)), new_value="n/a")]
        client = FakeDevOps(relations, records, updates)
        aggregator = Aggregator(client, history_concurrency=2, clock=lambda: now)

        rows = asyncio.run(aggregator.build_rows(1))
        weekly = {r.id: r.weekly_completed_hours for r in rows}

        assert weekly[3] == 0
        assert [weekly[i] for i in (2, 4, 5, 6)] == [10, 10, 10, 10]
        assert len(rows) == 6

    def test_non_task_rows_are_never_read(self, now):
        relations, records, updates = self._five_tasks(now)
        client = FakeDevOps(relations, records, updates)
        aggregator = Aggregator(client, clock=lambda: now)

        weekly = asyncio.run(
            aggregator.compute_weekly_hours(
                [WorkItem.from_devops(r) for r in records],
                now,
            )
        )

        assert 1 not in client.history_reads
        assert set(weekly) == {2, 3, 4, 5, 6}

    def test_concurrency_is_bounded(self, now):
        relations, records, updates = self._five_tasks(now)
        state = {"active": 0, "peak": 0}

        class CountingClient(FakeDevOps):
            async def read_updates(self, work_item_id):
                state["active"] += 1
                state["peak"] = max(state["peak"], state["active"])
                await asyncio.sleep(0.01)
                state["active"] -= 1
                return []

        client = CountingClient(relations, records, updates)
        aggregator = Aggregator(client, history_concurrency=2, clock=lambda: now)

        asyncio.run(aggregator.build_rows(1))

        assert state["peak"] <= 2
