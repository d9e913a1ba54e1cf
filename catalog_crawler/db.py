from __future__ import annotations

import asyncio
import logging
import sqlite3
import threading
from contextlib import suppress
from pathlib import Path
from typing import Any, Callable, List, Optional, Tuple, TypeVar

from .utils import StorageUnavailable

logger = logging.getLogger(__name__)

T = TypeVar("T")


class SqliteDatabase:
    """
    One sqlite connection guarded by a thread lock.

    All async entry points push the blocking call onto a worker thread with
    ``asyncio.to_thread``; the lock keeps the single connection from being used
    by two threads at once.
    """

    def __init__(self, db_path: Path) -> None:
        self.db_path = Path(db_path)
        self._lock = threading.Lock()
        try:
            if str(self.db_path) != ":memory:":
                self.db_path = self.db_path.resolve()
                self.db_path.parent.mkdir(parents=True, exist_ok=True)
            self._conn = self._connect(self.db_path)
            self._init_schema()
        except (OSError, sqlite3.Error) as e:
            raise StorageUnavailable(f"cannot open database {self.db_path}: {e}") from e

    def _connect(self, path: Path) -> sqlite3.Connection:
        conn = sqlite3.connect(
            str(path),
            check_same_thread=False,
            isolation_level=None,
            timeout=5.0,
        )
        conn.row_factory = sqlite3.Row
        conn.execute("PRAGMA journal_mode=WAL")
        conn.execute("PRAGMA synchronous=NORMAL")
        conn.execute("PRAGMA busy_timeout=5000")
        conn.execute("PRAGMA foreign_keys=ON")
        return conn

    def _init_schema_locked(self) -> None:
        raise NotImplementedError

    def _init_schema(self) -> None:
        with self._lock:
            self._init_schema_locked()

    def _ensure_columns_locked(self, table: str, columns: List[Tuple[str, str]]) -> None:
        rows = self._conn.execute(f"PRAGMA table_info({table})").fetchall()
        cols = {r["name"] for r in rows}
        for col_name, col_ddl in columns:
            if col_name in cols:
                continue
            self._conn.execute(f"ALTER TABLE {table} ADD COLUMN {col_ddl}")

    def close(self) -> None:
        with suppress(Exception):
            with self._lock:
                self._conn.close()

    # ---------- async wrappers ----------

    async def _exec(self, sql: str, args: Tuple[Any, ...]) -> None:
        def _run() -> None:
            with self._lock:
                self._conn.execute(sql, args)

        await asyncio.to_thread(_run)

    async def _query_one(self, sql: str, args: Tuple[Any, ...]) -> Optional[sqlite3.Row]:
        def _run() -> Optional[sqlite3.Row]:
            with self._lock:
                return self._conn.execute(sql, args).fetchone()

        return await asyncio.to_thread(_run)

    async def _query_all(self, sql: str, args: Tuple[Any, ...]) -> List[sqlite3.Row]:
        def _run() -> List[sqlite3.Row]:
            with self._lock:
                return self._conn.execute(sql, args).fetchall()

        return await asyncio.to_thread(_run)

    async def _transaction(
        self,
        fn: Callable[[sqlite3.Connection], T],
        *,
        retrying: Optional[Callable[[Callable[[], T]], Callable[[], T]]] = None,
    ) -> T:
        """
        Run ``fn(conn)`` inside BEGIN IMMEDIATE / COMMIT, rolling back on error.
        ``retrying`` wraps the whole transaction (e.g. a tenacity decorator).
        """
        def _run() -> T:
            with self._lock:
                self._conn.execute("BEGIN IMMEDIATE")
                try:
                    out = fn(self._conn)
                except BaseException:
                    self._conn.execute("ROLLBACK")
                    raise
                self._conn.execute("COMMIT")
                return out

        return await asyncio.to_thread(retrying(_run) if retrying else _run)
