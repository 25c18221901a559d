"""Schedule CRUD, due-query, and run audit persistence."""

from __future__ import annotations

import sqlite3
from datetime import datetime

from rsched.infrastructure.database import from_db_time, to_db_time
from rsched.scheduling.types import Schedule, ScheduleData, ScheduleRun, schedule_data_adapter


class ScheduleRepository:
    def __init__(self, db: sqlite3.Connection) -> None:
        self._db = db

    def create_schedule(
        self,
        user_id: str,
        name: str,
        data: ScheduleData,
        next_run_at: datetime,
        collection_id: int | None,
        search_id: int | None,
        now: datetime,
    ) -> int:
        cursor = self._db.execute(
            """INSERT INTO schedules
               (user_id, name, schedule_type, schedule_data, is_active, next_run_at, collection_id, search_id, created_at, updated_at)
               VALUES (?, ?, ?, ?, 1, ?, ?, ?, ?, ?)""",
            (
                user_id, name, data.schedule_type, data.model_dump_json(),
                to_db_time(next_run_at), collection_id, search_id, to_db_time(now), to_db_time(now),
            ),
        )
        self._db.commit()
        return cursor.lastrowid

    def get_schedule(self, id: int) -> Schedule | None:
        row = self._db.execute("SELECT * FROM schedules WHERE id = ?", (id,)).fetchone()
        if not row:
            return None
        return self._row_to_schedule(row)

    def get_active_for_user(self, user_id: str) -> list[Schedule]:
        rows = self._db.execute(
            "SELECT * FROM schedules WHERE user_id = ? AND is_active = 1 ORDER BY next_run_at ASC, id ASC",
            (user_id,),
        ).fetchall()
        return [self._row_to_schedule(row) for row in rows]

    def get_due(self, now: datetime) -> list[Schedule]:
        rows = self._db.execute(
            """SELECT * FROM schedules
               WHERE is_active = 1 AND next_run_at IS NOT NULL AND next_run_at <= ?
               ORDER BY next_run_at""",
            (to_db_time(now),),
        ).fetchall()
        return [self._row_to_schedule(row) for row in rows]

    def update_after_run(self, id: int, next_run_at: datetime | None, is_active: bool, last_run_at: datetime) -> None:
        self._db.execute(
            """UPDATE schedules
               SET next_run_at = ?, is_active = ?, last_run_at = ?, updated_at = ?
               WHERE id = ?""",
            (to_db_time(next_run_at), int(is_active), to_db_time(last_run_at), to_db_time(last_run_at), id),
        )
        self._db.commit()

    def deactivate(self, id: int, user_id: str, now: datetime) -> int:
        result = self._db.execute(
            "UPDATE schedules SET is_active = 0, updated_at = ? WHERE id = ? AND user_id = ?",
            (to_db_time(now), id, user_id),
        )
        self._db.commit()
        return result.rowcount

    def create_run(self, schedule_id: int, started_at: datetime) -> int:
        cursor = self._db.execute(
            "INSERT INTO schedule_runs (schedule_id, status, started_at) VALUES (?, 'running', ?)",
            (schedule_id, to_db_time(started_at)),
        )
        self._db.commit()
        return cursor.lastrowid

    def finish_run(self, run_id: int, status: str, completed_at: datetime, error_msg: str | None) -> None:
        self._db.execute(
            "UPDATE schedule_runs SET status = ?, completed_at = ?, error_msg = ? WHERE id = ?",
            (status, to_db_time(completed_at), error_msg, run_id),
        )
        self._db.commit()

    def get_run(self, run_id: int) -> ScheduleRun | None:
        row = self._db.execute("SELECT * FROM schedule_runs WHERE id = ?", (run_id,)).fetchone()
        if not row:
            return None
        return self._row_to_run(row)

    def get_runs_for_schedule(self, schedule_id: int) -> list[ScheduleRun]:
        rows = self._db.execute(
            "SELECT * FROM schedule_runs WHERE schedule_id = ? ORDER BY started_at DESC, id DESC",
            (schedule_id,),
        ).fetchall()
        return [self._row_to_run(row) for row in rows]

    def _row_to_schedule(self, row: sqlite3.Row) -> Schedule:
        return Schedule(
            id=row["id"],
            user_id=row["user_id"],
            name=row["name"],
            schedule_type=row["schedule_type"],
            schedule_data=schedule_data_adapter.validate_json(row["schedule_data"]),
            is_active=bool(row["is_active"]),
            next_run_at=from_db_time(row["next_run_at"]),
            last_run_at=from_db_time(row["last_run_at"]),
            collection_id=row["collection_id"],
            search_id=row["search_id"],
            created_at=from_db_time(row["created_at"]),
            updated_at=from_db_time(row["updated_at"]),
        )

    def _row_to_run(self, row: sqlite3.Row) -> ScheduleRun:
        return ScheduleRun(
            id=row["id"],
            schedule_id=row["schedule_id"],
            status=row["status"],
            started_at=from_db_time(row["started_at"]),
            completed_at=from_db_time(row["completed_at"]),
            error_msg=row["error_msg"],
        )
