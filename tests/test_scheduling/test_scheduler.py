"""Tests for the schedule runner."""

import asyncio

import pytest

from conftest import RecordingSink, item, utc
from rsched.infrastructure.config import RunnerConfig
from rsched.scheduling.errors import PersistenceError
from rsched.scheduling.scheduler import SchedulerRunner, start_scheduler_loop


def make_runner(db, manager, clock, sink, **kwargs) -> SchedulerRunner:
    kwargs.setdefault("config", RunnerConfig(poll_interval=0.01, submission_timeout=5, max_concurrent=10))
    return SchedulerRunner(manager, db.payload_repo, sink, clock=clock, **kwargs)


@pytest.fixture
def collection_id(db, clock):
    return db.payload_repo.create_collection(
        "alice@example.com", "Paris trip", [item(), item(location="Lyon", website="expedia", pos=["FR"])], clock.now
    )


@pytest.fixture
def sink():
    return RecordingSink()


async def tick(runner: SchedulerRunner) -> int:
    started = await runner.run_once()
    await runner.drain()
    return started


class TestEndToEnd:
    @pytest.mark.asyncio
    async def test_daily_collection_in_user_zone(self, db, manager, clock, sink, collection_id):
        schedule = manager.create("alice@example.com", "Evening", "daily", {"time": "17:00"},
                                  collection_id=collection_id, user_timezone="Asia/Kolkata")
        runner = make_runner(db, manager, clock, sink)

        assert await tick(runner) == 0
        assert sink.calls == []

        clock.set(utc(2024, 3, 15, 11, 31))
        assert await tick(runner) == 1

        [(job_name, items, user_id)] = sink.calls
        assert job_name == "Paris trip_scheduled_alice_example.com_20240315_113100_1"
        assert user_id == "alice@example.com"
        assert [i.location for i in items] == ["Paris", "Lyon"]
        assert items[0].check_in_date == "2024-04-01"
        assert items[0].website.name == "booking"
        assert items[0].website.pos == ["FR", "US"]
        assert items[1].website.pos == ["FR"]

        stored = manager.get(schedule.id)
        assert stored.next_run_at == utc(2024, 3, 16, 11, 30)
        assert stored.last_run_at == utc(2024, 3, 15, 11, 31)
        assert stored.is_active

        [run] = manager.list_runs(schedule.id)
        assert run.status == "completed"
        assert run.error_msg is None

        collection = db.payload_repo.get_collection(collection_id)
        assert collection.status == "running"
        assert collection.last_run_at == utc(2024, 3, 15, 11, 31)

        [tracking] = db.payload_repo.get_scheduled_searches("alice@example.com")
        assert tracking.job_name == job_name
        assert tracking.collection_name == "Paris trip"
        assert tracking.status == "Executing"
        assert len(tracking.items) == 2

    @pytest.mark.asyncio
    async def test_not_due_again_until_next_fire(self, db, manager, clock, sink, collection_id):
        manager.create("alice@example.com", "Noon", "daily", {"time": "12:00"}, collection_id=collection_id)
        runner = make_runner(db, manager, clock, sink)
        clock.set(utc(2024, 3, 15, 12, 0))
        assert await tick(runner) == 1
        clock.advance(hours=23)
        assert await tick(runner) == 0
        clock.advance(hours=1)
        assert await tick(runner) == 1
        assert len(sink.calls) == 2
        assert sink.calls[0][0] != sink.calls[1][0]

    @pytest.mark.asyncio
    async def test_once_search_backed_is_retired(self, db, manager, clock, sink):
        search_id = db.payload_repo.create_search("u1", [item()], clock.now, job_name="manual")
        schedule = manager.create("u1", "Once", "once", {"date_time": "2024-03-15T12:00:00Z"}, search_id=search_id)
        runner = make_runner(db, manager, clock, sink)

        clock.set(utc(2024, 3, 15, 12, 0))
        assert await tick(runner) == 1
        assert sink.calls[0][0] == "manual_scheduled_u1_20240315_120000_1"

        stored = manager.get(schedule.id)
        assert stored.is_active is False
        assert stored.next_run_at is None
        assert db.payload_repo.get_search(search_id).status == "running"
        assert db.payload_repo.get_scheduled_searches("u1") == []

        clock.advance(days=1)
        assert await tick(runner) == 0

    @pytest.mark.asyncio
    async def test_collection_wins_over_search(self, db, manager, clock, sink, collection_id):
        search_id = db.payload_repo.create_search("alice@example.com", [item(location="Nice")], clock.now)
        manager.create("alice@example.com", "Both", "daily", {"time": "12:00"},
                       collection_id=collection_id, search_id=search_id)
        runner = make_runner(db, manager, clock, sink)
        clock.set(utc(2024, 3, 15, 12, 0))
        await tick(runner)
        assert [i.location for i in sink.calls[0][1]] == ["Paris", "Lyon"]
        assert db.payload_repo.get_search(search_id).status == "Starting"


class TestFailures:
    @pytest.mark.asyncio
    async def test_sink_failure_still_advances(self, db, manager, clock, collection_id):
        sink = RecordingSink(fail=RuntimeError("upstream 503"))
        schedule = manager.create("alice@example.com", "Noon", "daily", {"time": "12:00"}, collection_id=collection_id)
        runner = make_runner(db, manager, clock, sink)

        clock.set(utc(2024, 3, 15, 12, 0))
        await tick(runner)

        [run] = manager.list_runs(schedule.id)
        assert run.status == "failed"
        assert "Failed to submit" in run.error_msg
        assert "upstream 503" in run.error_msg
        assert manager.get(schedule.id).next_run_at == utc(2024, 3, 16, 12, 0)

        [tracking] = db.payload_repo.get_scheduled_searches("alice@example.com")
        assert tracking.status == "Failed"
        assert db.payload_repo.get_collection(collection_id).status == "saved"

    @pytest.mark.asyncio
    async def test_failing_sink_advances_on_every_fire(self, db, manager, clock, collection_id):
        sink = RecordingSink(fail=RuntimeError("upstream 503"))
        schedule = manager.create("alice@example.com", "Noon", "daily", {"time": "12:00"}, collection_id=collection_id)
        runner = make_runner(db, manager, clock, sink)

        for day in (15, 16, 17):
            clock.set(utc(2024, 3, day, 12, 0))
            assert await tick(runner) == 1
            assert manager.get(schedule.id).next_run_at == utc(2024, 3, day + 1, 12, 0)

        runs = manager.list_runs(schedule.id)
        assert len(runs) == 3
        assert all(run.status == "failed" for run in runs)
        assert len(sink.calls) == 3
        assert manager.get(schedule.id).is_active

    @pytest.mark.asyncio
    async def test_submission_timeout(self, db, manager, clock, collection_id):
        sink = RecordingSink(delay_s=5)
        config = RunnerConfig(submission_timeout=0.05)
        schedule = manager.create("alice@example.com", "Noon", "daily", {"time": "12:00"}, collection_id=collection_id)
        runner = make_runner(db, manager, clock, sink, config=config)

        clock.set(utc(2024, 3, 15, 12, 0))
        await asyncio.wait_for(tick(runner), timeout=2)

        [run] = manager.list_runs(schedule.id)
        assert run.status == "failed"
        assert run.error_msg == "Submission timed out after 0.05s"
        assert manager.get(schedule.id).next_run_at == utc(2024, 3, 16, 12, 0)

    @pytest.mark.asyncio
    async def test_missing_payload(self, db, manager, clock, sink):
        schedule = manager.create("u1", "Orphan", "daily", {"time": "12:00"}, collection_id=999)
        runner = make_runner(db, manager, clock, sink)

        clock.set(utc(2024, 3, 15, 12, 0))
        await tick(runner)

        assert sink.calls == []
        [run] = manager.list_runs(schedule.id)
        assert run.status == "failed"
        assert run.error_msg == "No collection or search found for schedule"
        assert manager.get(schedule.id).next_run_at == utc(2024, 3, 16, 12, 0)

    @pytest.mark.asyncio
    async def test_one_failure_does_not_affect_others(self, db, manager, clock, sink, collection_id):
        broken = manager.create("u1", "Orphan", "daily", {"time": "12:00"}, collection_id=999)
        healthy = manager.create("alice@example.com", "Noon", "daily", {"time": "12:00"}, collection_id=collection_id)
        runner = make_runner(db, manager, clock, sink)

        clock.set(utc(2024, 3, 15, 12, 0))
        assert await tick(runner) == 2

        assert manager.list_runs(broken.id)[0].status == "failed"
        assert manager.list_runs(healthy.id)[0].status == "completed"
        assert len(sink.calls) == 1

    @pytest.mark.asyncio
    async def test_run_start_failure_leaves_schedule_due(self, db, manager, clock, sink, collection_id):
        schedule = manager.create("alice@example.com", "Noon", "daily", {"time": "12:00"}, collection_id=collection_id)
        runner = make_runner(db, manager, clock, sink)
        db.db.execute("DROP TABLE schedule_runs")

        clock.set(utc(2024, 3, 15, 12, 0))
        assert await tick(runner) == 1

        assert sink.calls == []
        assert manager.get(schedule.id).next_run_at == utc(2024, 3, 15, 12, 0)
        assert [s.id for s in manager.list_due()] == [schedule.id]

    @pytest.mark.asyncio
    async def test_advance_failure_repeats_attempt(self, db, manager, clock, sink, collection_id, monkeypatch):
        schedule = manager.create("alice@example.com", "Noon", "daily", {"time": "12:00"}, collection_id=collection_id)
        runner = make_runner(db, manager, clock, sink)

        def broken_advance(schedule_id):
            raise PersistenceError("Failed to update schedule next run: disk I/O error")

        with monkeypatch.context() as patch:
            patch.setattr(manager, "advance_or_retire", broken_advance)
            clock.set(utc(2024, 3, 15, 12, 0))
            await tick(runner)

        assert manager.get(schedule.id).next_run_at == utc(2024, 3, 15, 12, 0)
        assert manager.list_runs(schedule.id)[0].status == "completed"

        clock.advance(minutes=1)
        await tick(runner)
        assert len(sink.calls) == 2
        assert len(manager.list_runs(schedule.id)) == 2
        assert manager.get(schedule.id).next_run_at == utc(2024, 3, 16, 12, 0)

    @pytest.mark.asyncio
    async def test_deactivated_during_attempt_stays_inactive(self, db, manager, clock, collection_id):
        schedule = manager.create("alice@example.com", "Noon", "daily", {"time": "12:00"}, collection_id=collection_id)

        async def deactivating_sink(job_name, items, user_id):
            manager.deactivate(schedule.id, user_id)

        runner = make_runner(db, manager, clock, deactivating_sink)
        clock.set(utc(2024, 3, 15, 12, 0))
        await tick(runner)

        stored = manager.get(schedule.id)
        assert stored.is_active is False
        assert manager.list_runs(schedule.id)[0].status == "completed"
        clock.advance(days=1)
        assert await tick(runner) == 0


class TestFundReservation:
    @pytest.mark.asyncio
    async def test_reserves_for_tracking_search(self, db, manager, clock, sink, collection_id):
        reserved = []

        async def reserve(user_id, search_id, job_name):
            reserved.append((user_id, search_id, job_name))

        manager.create("alice@example.com", "Noon", "daily", {"time": "12:00"}, collection_id=collection_id)
        runner = make_runner(db, manager, clock, sink, reserve_funds=reserve)
        clock.set(utc(2024, 3, 15, 12, 0))
        await tick(runner)

        [tracking] = db.payload_repo.get_scheduled_searches("alice@example.com")
        assert reserved == [("alice@example.com", tracking.id, sink.calls[0][0])]

    @pytest.mark.asyncio
    async def test_reservation_failure_does_not_fail_attempt(self, db, manager, clock, sink, collection_id):
        async def reserve(user_id, search_id, job_name):
            raise RuntimeError("ledger offline")

        schedule = manager.create("alice@example.com", "Noon", "daily", {"time": "12:00"}, collection_id=collection_id)
        runner = make_runner(db, manager, clock, sink, reserve_funds=reserve)
        clock.set(utc(2024, 3, 15, 12, 0))
        await tick(runner)

        assert manager.list_runs(schedule.id)[0].status == "completed"
        assert len(sink.calls) == 1

    @pytest.mark.asyncio
    async def test_search_backed_attempt_not_reserved(self, db, manager, clock, sink):
        reserved = []

        async def reserve(user_id, search_id, job_name):
            reserved.append(search_id)

        search_id = db.payload_repo.create_search("u1", [item()], clock.now)
        manager.create("u1", "Noon", "daily", {"time": "12:00"}, search_id=search_id)
        runner = make_runner(db, manager, clock, sink, reserve_funds=reserve)
        clock.set(utc(2024, 3, 15, 12, 0))
        await tick(runner)
        assert reserved == []


class TestConcurrency:
    @pytest.mark.asyncio
    async def test_schedule_waiting_for_slot_is_not_dispatched_again(self, db, manager, clock, collection_id):
        gate = asyncio.Event()
        calls = []

        async def gated_sink(job_name, items, user_id):
            calls.append(job_name)
            await gate.wait()

        first = manager.create("alice@example.com", "First", "daily", {"time": "12:00"}, collection_id=collection_id)
        queued = manager.create("alice@example.com", "Queued", "daily", {"time": "12:00"}, collection_id=collection_id)
        runner = make_runner(db, manager, clock, gated_sink,
                             config=RunnerConfig(submission_timeout=5, max_concurrent=1))

        clock.set(utc(2024, 3, 15, 12, 0))
        assert await runner.run_once() == 2
        await asyncio.sleep(0.02)
        assert manager.list_runs(queued.id) == []

        clock.set(utc(2024, 3, 15, 12, 1))
        # The running attempt may overlap; the queued one is skipped.
        assert await runner.run_once() == 1
        assert runner.in_flight == 3

        gate.set()
        await runner.drain()
        assert len(manager.list_runs(queued.id)) == 1
        assert len(manager.list_runs(first.id)) == 2
        assert len(calls) == 3

    @pytest.mark.asyncio
    async def test_queued_schedule_can_be_dispatched_after_it_starts(self, db, manager, clock, collection_id):
        manager.create("alice@example.com", "Noon", "daily", {"time": "12:00"}, collection_id=collection_id)
        runner = make_runner(db, manager, clock, RecordingSink(),
                             config=RunnerConfig(submission_timeout=5, max_concurrent=1))
        clock.set(utc(2024, 3, 15, 12, 0))
        assert await tick(runner) == 1
        clock.set(utc(2024, 3, 16, 12, 0))
        assert await tick(runner) == 1

    @pytest.mark.asyncio
    async def test_dispatch_does_not_wait_and_concurrency_is_bounded(self, db, manager, clock, collection_id):
        gate = asyncio.Event()
        active = 0
        peak = 0
        calls = []

        async def gated_sink(job_name, items, user_id):
            nonlocal active, peak
            active += 1
            peak = max(peak, active)
            calls.append(job_name)
            await gate.wait()
            active -= 1

        for n in range(5):
            manager.create("alice@example.com", f"s{n}", "daily", {"time": "12:00"}, collection_id=collection_id)
        runner = make_runner(db, manager, clock, gated_sink,
                             config=RunnerConfig(submission_timeout=5, max_concurrent=2))

        clock.set(utc(2024, 3, 15, 12, 0))
        assert await runner.run_once() == 5
        await asyncio.sleep(0.05)
        assert runner.in_flight == 5
        assert len(calls) == 2

        gate.set()
        await runner.drain()
        assert runner.in_flight == 0
        assert len(calls) == 5
        assert peak == 2

    @pytest.mark.asyncio
    async def test_slow_attempt_does_not_delay_next_tick(self, db, manager, clock, collection_id):
        gate = asyncio.Event()
        calls = []

        async def gated_sink(job_name, items, user_id):
            calls.append(job_name)
            await gate.wait()

        manager.create("alice@example.com", "Slow", "daily", {"time": "12:00"}, collection_id=collection_id)
        manager.create("alice@example.com", "Later", "daily", {"time": "12:05"}, collection_id=collection_id)
        runner = make_runner(db, manager, clock, gated_sink)

        clock.set(utc(2024, 3, 15, 12, 0))
        assert await runner.run_once() == 1
        await asyncio.sleep(0.01)

        clock.set(utc(2024, 3, 15, 12, 5))
        # The slow attempt has not advanced yet, so it is reported as due again.
        assert await runner.run_once() == 2
        await asyncio.sleep(0.01)
        assert len(calls) == 3

        gate.set()
        await runner.drain()


class TestLifecycle:
    @pytest.mark.asyncio
    async def test_scheduler_loop_dispatches(self, db, manager, clock, sink, collection_id):
        manager.create("alice@example.com", "Noon", "daily", {"time": "12:00"}, collection_id=collection_id)
        runner = make_runner(db, manager, clock, sink)
        clock.set(utc(2024, 3, 15, 12, 0))

        loop = start_scheduler_loop(runner, 0.01)
        try:
            await asyncio.sleep(0.1)
            assert loop.running
            assert loop.ticks >= 2
        finally:
            loop.stop()
        await runner.drain()
        assert len(sink.calls) == 1

    @pytest.mark.asyncio
    async def test_shutdown_waits_and_stops_dispatch(self, db, manager, clock, collection_id):
        sink = RecordingSink(delay_s=0.05)
        manager.create("alice@example.com", "Noon", "daily", {"time": "12:00"}, collection_id=collection_id)
        runner = make_runner(db, manager, clock, sink)
        clock.set(utc(2024, 3, 15, 12, 0))

        assert await runner.run_once() == 1
        await runner.shutdown()
        assert runner.in_flight == 0
        assert len(sink.calls) == 1

        clock.advance(days=1)
        assert await runner.run_once() == 0
        assert len(sink.calls) == 1
