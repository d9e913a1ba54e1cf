from __future__ import annotations

import logging
import sqlite3
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Optional

from .db import SqliteDatabase
from .utils import StorageError, content_hash, now_iso, parse_iso

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class RawCapture:
    source: str
    local_id: str
    url: str
    text: str
    hash: str
    crawled_at: str
    processed_at: Optional[str]

    @property
    def processed(self) -> bool:
        return self.processed_at is not None

    def is_older_than(self, max_age: timedelta, *, now: Optional[datetime] = None) -> bool:
        crawled = parse_iso(self.crawled_at)
        if crawled is None:
            return True
        now = now or datetime.now(timezone.utc)
        return now - crawled > max_age


@dataclass(frozen=True)
class StoreOutcome:
    hash: str
    is_new: bool
    changed: bool
    processed_at: Optional[str]

    @property
    def should_skip(self) -> bool:
        """Content is unchanged and was already turned into catalog rows."""
        return not self.changed and self.processed_at is not None


def _row_to_capture(row: sqlite3.Row) -> RawCapture:
    return RawCapture(
        source=row["source"],
        local_id=row["local_id"],
        url=row["url"],
        text=row["content"],
        hash=row["hash"],
        crawled_at=row["crawled_at"],
        processed_at=row["processed_at"],
    )


class RawCaptureStore(SqliteDatabase):
    """
    Fetched page text keyed by (source, local_id).

    Storing identical content keeps ``processed_at``; storing different content
    replaces the row and clears it so the capture is picked up again.
    """

    def _init_schema_locked(self) -> None:
        self._conn.execute(
            """
            CREATE TABLE IF NOT EXISTS raw_captures (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                source TEXT NOT NULL,
                local_id TEXT NOT NULL,
                url TEXT NOT NULL,
                content TEXT NOT NULL,
                hash TEXT NOT NULL,
                crawled_at TEXT NOT NULL,
                processed_at TEXT,
                UNIQUE (source, local_id)
            )
            """
        )
        self._conn.execute(
            "CREATE INDEX IF NOT EXISTS idx_raw_captures_unprocessed "
            "ON raw_captures (source) WHERE processed_at IS NULL"
        )
        self._ensure_columns_locked("raw_captures", [("processed_at", "processed_at TEXT")])

    async def lookup(self, source: str, local_id: str) -> Optional[RawCapture]:
        try:
            row = await self._query_one(
                "SELECT * FROM raw_captures WHERE source = ? AND local_id = ?",
                (source, local_id),
            )
        except sqlite3.Error as e:
            raise StorageError(f"raw capture {source}/{local_id} lookup failed: {e}") from e
        return _row_to_capture(row) if row is not None else None

    async def store(self, source: str, local_id: str, url: str, text: str) -> StoreOutcome:
        h = content_hash(text)
        ts = now_iso()

        def _upsert(conn: sqlite3.Connection) -> StoreOutcome:
            row = conn.execute(
                "SELECT hash, processed_at FROM raw_captures WHERE source = ? AND local_id = ?",
                (source, local_id),
            ).fetchone()
            if row is None:
                conn.execute(
                    "INSERT INTO raw_captures (source, local_id, url, content, hash, crawled_at, processed_at) "
                    "VALUES (?, ?, ?, ?, ?, ?, NULL)",
                    (source, local_id, url, text, h, ts),
                )
                return StoreOutcome(hash=h, is_new=True, changed=True, processed_at=None)
            if row["hash"] == h:
                conn.execute(
                    "UPDATE raw_captures SET crawled_at = ?, url = ? WHERE source = ? AND local_id = ?",
                    (ts, url, source, local_id),
                )
                return StoreOutcome(hash=h, is_new=False, changed=False, processed_at=row["processed_at"])
            conn.execute(
                "UPDATE raw_captures SET url = ?, content = ?, hash = ?, crawled_at = ?, processed_at = NULL "
                "WHERE source = ? AND local_id = ?",
                (url, text, h, ts, source, local_id),
            )
            return StoreOutcome(hash=h, is_new=False, changed=True, processed_at=None)

        try:
            outcome = await self._transaction(_upsert)
        except sqlite3.Error as e:
            raise StorageError(f"raw capture {source}/{local_id} not stored: {e}") from e
        logger.debug("raw capture %s/%s stored (new=%s changed=%s)", source, local_id, outcome.is_new, outcome.changed)
        return outcome

    async def mark_processed(self, source: str, local_id: str) -> None:
        try:
            await self._exec(
                "UPDATE raw_captures SET processed_at = ? WHERE source = ? AND local_id = ?",
                (now_iso(), source, local_id),
            )
        except sqlite3.Error as e:
            raise StorageError(f"raw capture {source}/{local_id} not marked processed: {e}") from e

    async def count_unprocessed(self, source: str) -> int:
        row = await self._query_one(
            "SELECT COUNT(*) AS n FROM raw_captures WHERE source = ? AND processed_at IS NULL",
            (source,),
        )
        return int(row["n"]) if row is not None else 0


def open_raw_cache(db_path: Path) -> RawCaptureStore:
    return RawCaptureStore(db_path)
