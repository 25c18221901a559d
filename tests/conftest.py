from __future__ import annotations

import asyncio
from datetime import date, datetime, timedelta, timezone

import pytest

from rsched.infrastructure.database import AppDatabase
from rsched.payloads.types import PayloadItem, SubmissionItem
from rsched.scheduling.schedule_service import ScheduleManager


class FakeClock:
    """Mutable UTC clock injected wherever the code asks for 'now'."""

    def __init__(self, start: datetime) -> None:
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def set(self, moment: datetime) -> None:
        self.now = moment

    def advance(self, **kwargs: float) -> None:
        self.now = self.now + timedelta(**kwargs)


class RecordingSink:
    """Job sink double: records calls, optionally fails or stalls."""

    def __init__(self, fail: Exception | None = None, delay_s: float = 0.0) -> None:
        self.calls: list[tuple[str, list[SubmissionItem], str]] = []
        self.fail = fail
        self.delay_s = delay_s

    async def __call__(self, job_name: str, items: list[SubmissionItem], user_id: str) -> None:
        self.calls.append((job_name, items, user_id))
        if self.delay_s:
            await asyncio.sleep(self.delay_s)
        if self.fail is not None:
            raise self.fail


def utc(*args: int) -> datetime:
    return datetime(*args, tzinfo=timezone.utc)


def item(location: str = "Paris", website: str = "booking", pos: list[str] | None = None) -> PayloadItem:
    return PayloadItem(
        location=location,
        check_in_date=date(2024, 4, 1),
        check_out_date=date(2024, 4, 3),
        adults=2,
        star_rating="4",
        website=website,
        pos=pos if pos is not None else ["FR", "US"],
    )


@pytest.fixture
def db() -> AppDatabase:
    """Create an in-memory database for testing."""
    app_db = AppDatabase()
    app_db._init_test()
    return app_db


@pytest.fixture
def clock() -> FakeClock:
    # Friday 2024-03-15 11:25 UTC (16:55 in Asia/Kolkata)
    return FakeClock(utc(2024, 3, 15, 11, 25))


@pytest.fixture
def manager(db: AppDatabase, clock: FakeClock) -> ScheduleManager:
    return ScheduleManager(db.schedule_repo, clock=clock)
