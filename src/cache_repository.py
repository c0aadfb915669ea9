import os

import json
import logging

import aiosqlite
from pydantic import ValidationError

from cache import CacheEntry


class CacheSnapshotRepository:
    """Durable copy of the cache so a participant restarting the local server keeps
    the session definitions that were already downloaded."""

    def __init__(self):
        self.db_path = os.getenv("SQLITE_DB_PATH", None)
        if self.db_path is None or self.db_path == "":
            raise ValueError(
                "[ CacheSnapshotRepository ] The database path was not set in the environment variables"
            )

        self.table_was_created = False

    async def create_table_if_not_exists(self):
        async with aiosqlite.connect(self.db_path) as db:
            await db.execute(
                """
                    CREATE TABLE IF NOT EXISTS cache_entries (
                        key TEXT PRIMARY KEY,
                        data TEXT,
                        expires_at REAL,
                        last_updated TEXT
                    );
                """
            )
            await db.commit()
        self.table_was_created = True
        logging.info(
            "[ CacheSnapshotRepository.create_table_if_not_exists ] Cache table was created"
        )

    async def save_all(self, entries: list[CacheEntry]) -> int:
        """Replaces the whole snapshot in a single transaction. Entries whose data
        cannot be encoded as JSON stay memory-only."""
        if not self.table_was_created:
            await self.create_table_if_not_exists()

        rows = []
        for entry in entries:
            try:
                rows.append(
                    (
                        entry.key,
                        json.dumps(entry.data),
                        entry.expires_at,
                        entry.last_updated.isoformat(),
                    )
                )
            except (TypeError, ValueError):
                logging.warning(
                    f"[ CacheSnapshotRepository.save_all ] Skipping entry {entry.key}, its data is not JSON serializable"
                )

        async with aiosqlite.connect(self.db_path) as db:
            await db.execute("DELETE FROM cache_entries")
            await db.executemany(
                "INSERT INTO cache_entries VALUES (?, ?, ?, ?)",
                rows,
            )
            await db.commit()
        return len(rows)

    async def load_all(self) -> list[CacheEntry]:
        if not self.table_was_created:
            await self.create_table_if_not_exists()

        async with aiosqlite.connect(self.db_path) as db:
            response = await db.execute(
                "SELECT key, data, expires_at, last_updated FROM cache_entries"
            )
            result = await response.fetchall()

        entries = []
        for row in result:
            try:
                entries.append(
                    CacheEntry(
                        key=row[0],
                        data=json.loads(row[1]),
                        expires_at=row[2],
                        last_updated=row[3],
                    )
                )
            except (json.JSONDecodeError, TypeError, ValidationError):
                logging.warning(
                    f"[ CacheSnapshotRepository.load_all ] Discarding corrupt cache row {row[0]!r}"
                )
        return entries
