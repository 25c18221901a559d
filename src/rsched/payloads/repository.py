"""Collection and search persistence, with their items."""

from __future__ import annotations

import json
import sqlite3
from datetime import date, datetime

from rsched.infrastructure.database import from_db_time, to_db_time
from rsched.payloads.types import Collection, PayloadItem, Search

_ITEM_COLUMNS = "location, check_in_date, check_out_date, adults, star_rating, website, pos"


class PayloadRepository:
    def __init__(self, db: sqlite3.Connection) -> None:
        self._db = db

    # --- Collections ---

    def create_collection(
        self,
        user_id: str,
        name: str,
        items: list[PayloadItem],
        now: datetime,
        description: str | None = None,
    ) -> int:
        cursor = self._db.execute(
            "INSERT INTO collections (user_id, name, description, created_at) VALUES (?, ?, ?, ?)",
            (user_id, name, description, to_db_time(now)),
        )
        collection_id = cursor.lastrowid
        self._insert_items("collection_items", "collection_id", collection_id, items)
        self._db.commit()
        return collection_id

    def get_collection(self, id: int) -> Collection | None:
        row = self._db.execute("SELECT * FROM collections WHERE id = ?", (id,)).fetchone()
        if not row:
            return None
        return Collection(
            id=row["id"],
            user_id=row["user_id"],
            name=row["name"],
            description=row["description"],
            status=row["status"],
            last_run_at=from_db_time(row["last_run_at"]),
            items=self._get_items("collection_items", "collection_id", row["id"]),
        )

    def mark_collection_run(self, id: int, status: str, ran_at: datetime) -> None:
        self._db.execute(
            "UPDATE collections SET status = ?, last_run_at = ? WHERE id = ?",
            (status, to_db_time(ran_at), id),
        )
        self._db.commit()

    # --- Searches ---

    def create_search(
        self,
        user_id: str,
        items: list[PayloadItem],
        now: datetime,
        job_name: str | None = None,
        collection_name: str | None = None,
        status: str = "Starting",
        scheduled: bool = False,
    ) -> int:
        cursor = self._db.execute(
            """INSERT INTO searches (user_id, job_name, collection_name, status, scheduled, created_at)
               VALUES (?, ?, ?, ?, ?, ?)""",
            (user_id, job_name, collection_name, status, int(scheduled), to_db_time(now)),
        )
        search_id = cursor.lastrowid
        self._insert_items("search_items", "search_id", search_id, items)
        self._db.commit()
        return search_id

    def get_search(self, id: int) -> Search | None:
        row = self._db.execute("SELECT * FROM searches WHERE id = ?", (id,)).fetchone()
        if not row:
            return None
        return self._row_to_search(row, self._get_items("search_items", "search_id", row["id"]))

    def _row_to_search(self, row: sqlite3.Row, items: list[PayloadItem]) -> Search:
        return Search(
            id=row["id"],
            user_id=row["user_id"],
            job_name=row["job_name"],
            collection_name=row["collection_name"],
            status=row["status"],
            scheduled=bool(row["scheduled"]),
            items=items,
        )

    def get_scheduled_searches(self, user_id: str) -> list[Search]:
        rows = self._db.execute(
            "SELECT * FROM searches WHERE user_id = ? AND scheduled = 1 ORDER BY id",
            (user_id,),
        ).fetchall()
        item_rows = self._db.execute(
            f"""SELECT si.search_id, {_ITEM_COLUMNS} FROM search_items si
                JOIN searches s ON s.id = si.search_id
                WHERE s.user_id = ? AND s.scheduled = 1
                ORDER BY si.id""",
            (user_id,),
        ).fetchall()
        items: dict[int, list[PayloadItem]] = {}
        for item_row in item_rows:
            items.setdefault(item_row["search_id"], []).append(self._row_to_item(item_row))
        return [self._row_to_search(row, items.get(row["id"], [])) for row in rows]

    def update_search_status(self, id: int, status: str) -> None:
        self._db.execute("UPDATE searches SET status = ? WHERE id = ?", (status, id))
        self._db.commit()

    # --- Items ---

    def _insert_items(self, table: str, owner_column: str, owner_id: int, items: list[PayloadItem]) -> None:
        self._db.executemany(
            f"INSERT INTO {table} ({owner_column}, {_ITEM_COLUMNS}) VALUES (?, ?, ?, ?, ?, ?, ?, ?)",
            [
                (
                    owner_id, item.location, item.check_in_date.isoformat(), item.check_out_date.isoformat(),
                    item.adults, item.star_rating, item.website, json.dumps(item.pos),
                )
                for item in items
            ],
        )

    def _get_items(self, table: str, owner_column: str, owner_id: int) -> list[PayloadItem]:
        rows = self._db.execute(
            f"SELECT {_ITEM_COLUMNS} FROM {table} WHERE {owner_column} = ? ORDER BY id",
            (owner_id,),
        ).fetchall()
        return [self._row_to_item(row) for row in rows]

    def _row_to_item(self, row: sqlite3.Row) -> PayloadItem:
        return PayloadItem(
            location=row["location"],
            check_in_date=date.fromisoformat(row["check_in_date"]),
            check_out_date=date.fromisoformat(row["check_out_date"]),
            adults=row["adults"],
            star_rating=row["star_rating"],
            website=row["website"],
            pos=json.loads(row["pos"]),
        )
