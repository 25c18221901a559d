"""SQLite database schema and AppDatabase composition root."""

from __future__ import annotations

import sqlite3
from datetime import datetime, timezone
from pathlib import Path

from rsched.infrastructure.config import DB_PATH
from rsched.infrastructure.logger import logger


def to_db_time(moment: datetime | None) -> str | None:
    """Fixed-width UTC ISO string, so text comparison orders instants."""
    if moment is None:
        return None
    if moment.tzinfo is None:
        moment = moment.replace(tzinfo=timezone.utc)
    return moment.astimezone(timezone.utc).isoformat(timespec="microseconds")


def from_db_time(value: str | None) -> datetime | None:
    if not value:
        return None
    parsed = datetime.fromisoformat(value)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def create_schema(db: sqlite3.Connection) -> None:
    """Create all tables and indexes. Safe to call multiple times (IF NOT EXISTS)."""
    db.executescript("""
        CREATE TABLE IF NOT EXISTS collections (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            user_id TEXT NOT NULL,
            name TEXT NOT NULL,
            description TEXT,
            status TEXT NOT NULL DEFAULT 'saved',
            last_run_at TEXT,
            created_at TEXT NOT NULL,
            UNIQUE (user_id, name)
        );
        CREATE INDEX IF NOT EXISTS idx_collections_user ON collections(user_id);

        CREATE TABLE IF NOT EXISTS collection_items (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            collection_id INTEGER NOT NULL,
            location TEXT NOT NULL,
            check_in_date TEXT NOT NULL,
            check_out_date TEXT NOT NULL,
            adults INTEGER NOT NULL,
            star_rating TEXT NOT NULL,
            website TEXT NOT NULL,
            pos TEXT NOT NULL DEFAULT '[]',
            FOREIGN KEY (collection_id) REFERENCES collections(id)
        );
        CREATE INDEX IF NOT EXISTS idx_collection_items ON collection_items(collection_id);

        CREATE TABLE IF NOT EXISTS searches (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            user_id TEXT NOT NULL,
            job_name TEXT,
            collection_name TEXT,
            status TEXT NOT NULL DEFAULT 'Starting',
            scheduled INTEGER NOT NULL DEFAULT 0,
            created_at TEXT NOT NULL
        );
        CREATE INDEX IF NOT EXISTS idx_searches_user ON searches(user_id);

        CREATE TABLE IF NOT EXISTS search_items (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            search_id INTEGER NOT NULL,
            location TEXT NOT NULL,
            check_in_date TEXT NOT NULL,
            check_out_date TEXT NOT NULL,
            adults INTEGER NOT NULL,
            star_rating TEXT NOT NULL,
            website TEXT NOT NULL,
            pos TEXT NOT NULL DEFAULT '[]',
            FOREIGN KEY (search_id) REFERENCES searches(id)
        );
        CREATE INDEX IF NOT EXISTS idx_search_items ON search_items(search_id);

        CREATE TABLE IF NOT EXISTS schedules (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            user_id TEXT NOT NULL,
            name TEXT NOT NULL,
            schedule_type TEXT NOT NULL,
            schedule_data TEXT NOT NULL,
            is_active INTEGER NOT NULL DEFAULT 1,
            next_run_at TEXT,
            last_run_at TEXT,
            collection_id INTEGER,
            search_id INTEGER,
            created_at TEXT NOT NULL,
            updated_at TEXT NOT NULL
        );
        CREATE INDEX IF NOT EXISTS idx_schedules_user ON schedules(user_id);
        CREATE INDEX IF NOT EXISTS idx_schedules_active_next_run ON schedules(next_run_at) WHERE is_active = 1;

        CREATE TABLE IF NOT EXISTS schedule_runs (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            schedule_id INTEGER NOT NULL,
            status TEXT NOT NULL,
            started_at TEXT NOT NULL,
            completed_at TEXT,
            error_msg TEXT,
            FOREIGN KEY (schedule_id) REFERENCES schedules(id)
        );
        CREATE INDEX IF NOT EXISTS idx_schedule_runs ON schedule_runs(schedule_id, started_at);
    """)


class AppDatabase:
    """Composition root that initializes the DB and exposes repositories."""

    def __init__(self) -> None:
        self._db: sqlite3.Connection | None = None
        # Repositories are set after init
        self.schedule_repo: ScheduleRepository | None = None  # type: ignore[name-defined]
        self.payload_repo: PayloadRepository | None = None  # type: ignore[name-defined]

    @property
    def db(self) -> sqlite3.Connection:
        assert self._db is not None, "Database not initialized. Call init() first."
        return self._db

    @property
    def is_open(self) -> bool:
        return self._db is not None

    def init(self, db_path: Path = DB_PATH) -> None:
        """Open (or create) the database file at the configured location."""
        db_path.parent.mkdir(parents=True, exist_ok=True)
        self._db = sqlite3.connect(str(db_path))
        self._db.row_factory = sqlite3.Row
        self._init_repos()
        logger.info("Database ready", path=str(db_path))

    def _init_test(self) -> None:
        """For tests only. Creates a fresh in-memory database."""
        self._db = sqlite3.connect(":memory:")
        self._db.row_factory = sqlite3.Row
        self._init_repos()

    def close(self) -> None:
        if self._db is not None:
            self._db.close()
            self._db = None

    def _init_repos(self) -> None:
        assert self._db is not None
        create_schema(self._db)

        # Import here to avoid circular imports
        from rsched.payloads.repository import PayloadRepository
        from rsched.scheduling.repository import ScheduleRepository

        self.schedule_repo = ScheduleRepository(self._db)
        self.payload_repo = PayloadRepository(self._db)
