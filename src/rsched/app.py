"""Orchestrator class: composes services, wires the scheduler."""

from __future__ import annotations

from pathlib import Path

from rsched.infrastructure.config import DB_PATH, SUBMISSION_TIMEOUT, SUBMISSION_TOKEN, SUBMISSION_URL, RunnerConfig
from rsched.infrastructure.database import AppDatabase
from rsched.infrastructure.logger import logger
from rsched.infrastructure.poll_loop import PollLoop
from rsched.payloads.sinks import DryRunSink, HttpSubmissionSink, SubmitFn
from rsched.scheduling.schedule_service import Clock, ScheduleManager
from rsched.scheduling.scheduler import ReserveFn, SchedulerRunner, start_scheduler_loop
from rsched.scheduling.timezone import utc_now


def default_sink() -> SubmitFn:
    if SUBMISSION_URL:
        return HttpSubmissionSink(SUBMISSION_URL, SUBMISSION_TOKEN, timeout_s=SUBMISSION_TIMEOUT)
    logger.warning("SUBMISSION_URL not set, submissions will only be logged")
    return DryRunSink()


class Orchestrator:
    """Composes the store, the schedule manager and the runner, and owns their lifecycle."""

    def __init__(
        self,
        db: AppDatabase | None = None,
        submit: SubmitFn | None = None,
        clock: Clock = utc_now,
        config: RunnerConfig | None = None,
        reserve_funds: ReserveFn | None = None,
    ) -> None:
        self._db = db or AppDatabase()
        self._submit = submit
        self._clock = clock
        self._config = config or RunnerConfig()
        self._reserve_funds = reserve_funds
        self._scheduler_handle: PollLoop | None = None
        self.manager: ScheduleManager | None = None
        self.runner: SchedulerRunner | None = None

    def open(self, db_path: Path = DB_PATH) -> None:
        """Initialize the database (unless already open) and build the services."""
        if not self._db.is_open:
            self._db.init(db_path)
        self.manager = ScheduleManager(self._db.schedule_repo, clock=self._clock)
        self.runner = SchedulerRunner(
            self.manager,
            self._db.payload_repo,
            self._submit or default_sink(),
            clock=self._clock,
            config=self._config,
            reserve_funds=self._reserve_funds,
        )

    async def start(self, db_path: Path = DB_PATH) -> None:
        """Open the store and start the dispatcher loop."""
        logger.info("Starting scheduler...")
        if self.runner is None:
            self.open(db_path)
        self._scheduler_handle = start_scheduler_loop(self.runner, self._config.poll_interval)

    async def shutdown(self) -> None:
        logger.info("Shutting down...")
        if self._scheduler_handle:
            self._scheduler_handle.stop()
            self._scheduler_handle = None
        if self.runner:
            await self.runner.shutdown()
        self._db.close()

    def close(self) -> None:
        self._db.close()
