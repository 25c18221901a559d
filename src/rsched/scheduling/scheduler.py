"""Schedule runner: polls for due schedules and executes each one independently."""

from __future__ import annotations

import asyncio
from datetime import datetime
from typing import Awaitable, Callable

from rsched.infrastructure.config import RunnerConfig
from rsched.infrastructure.logger import log_context, logger
from rsched.infrastructure.poll_loop import PollLoop, start_poll_loop
from rsched.payloads.repository import PayloadRepository
from rsched.payloads.sinks import SubmitFn
from rsched.payloads.submission import build_submission_items, generate_job_name, resolve_payload
from rsched.payloads.types import ResolvedPayload
from rsched.scheduling.errors import PersistenceError, SchedulerError, SubmissionFailure
from rsched.scheduling.schedule_service import Clock, ScheduleManager
from rsched.scheduling.timezone import utc_now
from rsched.scheduling.types import Schedule, ScheduleRun

# (user_id, search_id, job_name) -> reservation against the owner's balance.
ReserveFn = Callable[[str, int, str], Awaitable[None]]


class SchedulerRunner:
    """Executes due schedules: run-start, submit, run-end, advance.

    Each due schedule becomes its own asyncio task. A semaphore caps how
    many execute at once; dispatch itself never waits on it.
    """

    def __init__(
        self,
        manager: ScheduleManager,
        payloads: PayloadRepository,
        submit: SubmitFn,
        clock: Clock = utc_now,
        config: RunnerConfig | None = None,
        reserve_funds: ReserveFn | None = None,
    ) -> None:
        self._manager = manager
        self._payloads = payloads
        self._submit = submit
        self._clock = clock
        self._config = config or RunnerConfig()
        self._reserve_funds = reserve_funds
        self._slots = asyncio.Semaphore(self._config.max_concurrent)
        self._in_flight: set[asyncio.Task[None]] = set()
        # Dispatched but still waiting for a slot; not yet run-started.
        self._waiting: set[int] = set()
        self._background: set[asyncio.Task[None]] = set()
        self._shutting_down = False

    @property
    def in_flight(self) -> int:
        return len(self._in_flight)

    # --- Dispatch ---

    async def run_once(self) -> int:
        """One dispatcher tick. Returns how many executions were started."""
        if self._shutting_down:
            return 0

        due = self._manager.list_due(self._clock())
        if due:
            logger.info("Found due schedules", count=len(due))

        started = 0
        for schedule in due:
            if schedule.id in self._waiting:
                logger.debug("Schedule still waiting for a slot", schedule_id=schedule.id)
                continue
            self._waiting.add(schedule.id)
            task = asyncio.create_task(self._guarded_execute(schedule), name=f"schedule-{schedule.id}")
            self._in_flight.add(task)
            task.add_done_callback(self._in_flight.discard)
            started += 1
        return started

    async def drain(self) -> None:
        """Wait for every in-flight execution (and ledger call) to finish."""
        while self._in_flight or self._background:
            await asyncio.gather(*self._in_flight, *self._background, return_exceptions=True)

    async def shutdown(self) -> None:
        self._shutting_down = True
        logger.info("Scheduler runner shutting down", in_flight=self.in_flight)
        await self.drain()

    async def _guarded_execute(self, schedule: Schedule) -> None:
        try:
            await self._slots.acquire()
        finally:
            self._waiting.discard(schedule.id)
        try:
            with log_context(schedule_id=schedule.id):
                try:
                    await self.execute_schedule(schedule)
                except Exception:
                    logger.exception("Unhandled error executing schedule")
        finally:
            self._slots.release()

    # --- Execution ---

    async def execute_schedule(self, schedule: Schedule) -> None:
        """Run one attempt of a due schedule, strictly in order."""
        log = logger.bind(schedule_id=schedule.id, schedule_name=schedule.name)
        log.info("Executing schedule")

        try:
            run = self._manager.record_run_start(schedule.id)
        except PersistenceError as err:
            # next_run_at is untouched, so the next tick retries.
            log.error("Failed to record schedule run start", error=str(err))
            return

        error: str | None = None
        try:
            await self._execute_job(schedule, run)
        except SchedulerError as err:
            error = str(err)
        except Exception as err:
            error = str(err) or type(err).__name__
            log.exception("Unexpected error in scheduled job", run_id=run.id)

        if error is None:
            log.info("Successfully executed schedule", run_id=run.id)
        else:
            log.error("Failed to execute schedule", run_id=run.id, error=error)

        try:
            self._manager.record_run_end(run.id, "failed" if error else "completed", error)
        except PersistenceError as err:
            log.error("Failed to record schedule run end", run_id=run.id, error=str(err))

        try:
            updated = self._manager.advance_or_retire(schedule.id)
        except SchedulerError as err:
            log.error("Failed to update schedule next run", run_id=run.id, error=str(err))
            return
        log.info(
            "Schedule advanced",
            next_run_at=updated.next_run_at.isoformat() if updated.next_run_at else None,
            is_active=updated.is_active,
        )

    async def _execute_job(self, schedule: Schedule, run: ScheduleRun) -> None:
        payload = resolve_payload(self._payloads, schedule.collection_id, schedule.search_id)
        items = build_submission_items(payload.items)
        now = self._clock()
        job_name = generate_job_name(payload.label, schedule.user_id, now, run.id)

        tracking_id = self._track_submission(payload, schedule, job_name, now)

        try:
            await asyncio.wait_for(
                self._submit(job_name, items, schedule.user_id),
                timeout=self._config.submission_timeout,
            )
        except asyncio.TimeoutError as err:
            self._mark_failed(tracking_id)
            raise SubmissionFailure(
                f"Submission timed out after {self._config.submission_timeout:g}s",
                {"job_name": job_name},
            ) from err
        except Exception as err:
            self._mark_failed(tracking_id)
            raise SubmissionFailure(f"Failed to submit {job_name}: {err}", {"job_name": job_name}) from err

        if payload.collection is not None:
            self._payloads.mark_collection_run(payload.collection.id, "running", self._clock())
        elif payload.search is not None:
            self._payloads.update_search_status(payload.search.id, "running")

    def _track_submission(self, payload: ResolvedPayload, schedule: Schedule, job_name: str, now: datetime) -> int | None:
        """Record a scheduled search for collection-backed attempts and reserve funds for it."""
        if payload.collection is None:
            return None
        tracking_id = self._payloads.create_search(
            schedule.user_id,
            payload.items,
            now,
            job_name=job_name,
            collection_name=payload.collection.name,
            status="Executing",
            scheduled=True,
        )
        if self._reserve_funds is not None:
            task = asyncio.create_task(self._reserve(schedule.user_id, tracking_id, job_name))
            self._background.add(task)
            task.add_done_callback(self._background.discard)
        return tracking_id

    async def _reserve(self, user_id: str, search_id: int, job_name: str) -> None:
        try:
            await self._reserve_funds(user_id, search_id, job_name)
        except Exception as err:
            logger.warning("Fund reservation failed", search_id=search_id, job_name=job_name, error=str(err))

    def _mark_failed(self, tracking_id: int | None) -> None:
        if tracking_id is not None:
            self._payloads.update_search_status(tracking_id, "Failed")


def start_scheduler_loop(runner: SchedulerRunner, interval_s: float) -> PollLoop:
    """Start the dispatcher polling loop."""
    return start_poll_loop("Scheduler", interval_s, runner.run_once)
