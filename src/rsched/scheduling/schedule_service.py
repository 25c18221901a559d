"""Schedule manager: centralized schedule lifecycle."""

from __future__ import annotations

import sqlite3
from contextlib import contextmanager
from datetime import datetime
from typing import Any, Callable, Iterator

from pydantic import BaseModel

from rsched.infrastructure.logger import logger
from rsched.scheduling.errors import PersistenceError
from rsched.scheduling.recurrence import next_run
from rsched.scheduling.repository import ScheduleRepository
from rsched.scheduling.timezone import effective_timezone, utc_now
from rsched.scheduling.types import RunStatus, Schedule, ScheduleRun, parse_schedule_data

Clock = Callable[[], datetime]


@contextmanager
def _persistence(operation: str, **details: Any) -> Iterator[None]:
    try:
        yield
    except sqlite3.Error as err:
        raise PersistenceError(f"Failed to {operation}: {err}", details) from err


class ScheduleManager:
    def __init__(self, schedule_repo: ScheduleRepository, clock: Clock = utc_now) -> None:
        self._schedule_repo = schedule_repo
        self._clock = clock

    # --- CRUD ---

    def create(
        self,
        user_id: str,
        name: str,
        schedule_type: str,
        schedule_data: dict[str, Any] | BaseModel,
        collection_id: int | None = None,
        search_id: int | None = None,
        user_timezone: str | None = "UTC",
    ) -> Schedule:
        """Validate the rule, compute its first fire time, and persist it.

        The rule's own `timezone` wins; the creator's zone fills it in when
        absent. Raises InvalidSchedule before anything is written.
        """
        data = parse_schedule_data(schedule_type, schedule_data, effective_timezone(user_timezone))
        now = self._clock()
        next_run_at = next_run(schedule_type, data, data.timezone, now)

        with _persistence("create schedule", user_id=user_id):
            schedule_id = self._schedule_repo.create_schedule(
                user_id, name, data, next_run_at, collection_id, search_id, now
            )
            schedule = self._schedule_repo.get_schedule(schedule_id)
        logger.info(
            "Schedule created",
            schedule_id=schedule_id,
            schedule_type=schedule_type,
            next_run_at=next_run_at.isoformat(),
        )
        return schedule

    def get(self, schedule_id: int) -> Schedule | None:
        with _persistence("load schedule", schedule_id=schedule_id):
            return self._schedule_repo.get_schedule(schedule_id)

    def list_active(self, user_id: str) -> list[Schedule]:
        with _persistence("list schedules", user_id=user_id):
            return self._schedule_repo.get_active_for_user(user_id)

    def deactivate(self, schedule_id: int, user_id: str) -> None:
        """Soft-delete scoped to the owner; someone else's id is a silent no-op."""
        with _persistence("deactivate schedule", schedule_id=schedule_id):
            affected = self._schedule_repo.deactivate(schedule_id, user_id, self._clock())
        logger.info("Schedule deactivated", schedule_id=schedule_id, affected=affected)

    # --- Scheduling ---

    def list_due(self, now: datetime | None = None) -> list[Schedule]:
        with _persistence("get due schedules"):
            return self._schedule_repo.get_due(now or self._clock())

    def record_run_start(self, schedule_id: int) -> ScheduleRun:
        with _persistence("record schedule run start", schedule_id=schedule_id):
            run_id = self._schedule_repo.create_run(schedule_id, self._clock())
            return self._schedule_repo.get_run(run_id)

    def record_run_end(self, run_id: int, status: RunStatus, error: str | None = None) -> None:
        with _persistence("record schedule run end", run_id=run_id):
            self._schedule_repo.finish_run(run_id, status, self._clock(), error if status == "failed" else None)

    def list_runs(self, schedule_id: int) -> list[ScheduleRun]:
        with _persistence("list schedule runs", schedule_id=schedule_id):
            return self._schedule_repo.get_runs_for_schedule(schedule_id)

    def advance_or_retire(self, schedule_id: int) -> Schedule:
        """Move a schedule past the attempt that just ran.

        One-shot rules are retired (inactive, no next run); the rest get
        their next fire time from the zone stored in their data. last_run_at
        is stamped either way.
        """
        now = self._clock()
        with _persistence("load schedule", schedule_id=schedule_id):
            schedule = self._schedule_repo.get_schedule(schedule_id)
        if schedule is None:
            raise PersistenceError(f"Schedule not found: {schedule_id}", {"schedule_id": schedule_id})

        if schedule.schedule_type == "once":
            next_run_at, is_active = None, False
        else:
            tz = effective_timezone(schedule.schedule_data.timezone)
            next_run_at, is_active = next_run(schedule.schedule_type, schedule.schedule_data, tz, now), schedule.is_active

        with _persistence("update schedule next run", schedule_id=schedule_id):
            self._schedule_repo.update_after_run(schedule_id, next_run_at, is_active, now)

        return schedule.model_copy(update={"next_run_at": next_run_at, "is_active": is_active, "last_run_at": now})
