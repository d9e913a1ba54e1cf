from __future__ import annotations

import logging
import sqlite3
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple

from .db import SqliteDatabase
from .extraction import CandidateRecord
from .parsing import ParsedPerformer, normalize_performer_name
from .utils import StorageError, normalize_product_id, now_iso, retry_sync

logger = logging.getLogger(__name__)

# Item columns a re-crawl may fill when they are still NULL. Title is NOT NULL.
FILLABLE_ITEM_FIELDS: Tuple[Tuple[str, str], ...] = (
    ("description", "description"),
    ("release_date", "release_date"),
    ("duration_min", "duration_min"),
    ("thumbnail_url", "default_thumbnail_url"),
)

_COUNTABLE_TABLES = frozenset({
    "catalog_items", "item_sources", "performers", "performer_aliases",
    "item_performers", "tags", "item_tags", "media_assets",
})


@dataclass
class UpsertResult:
    item_id: int
    created: bool
    filled_fields: List[str] = field(default_factory=list)
    performers_linked: int = 0
    tags_linked: int = 0
    media_added: int = 0

    @property
    def changed(self) -> bool:
        return self.created or bool(self.filled_fields)


def natural_key(site_name: str, local_id: str) -> str:
    return normalize_product_id(f"{site_name}-{local_id}")


class CatalogStore(SqliteDatabase):
    """
    Catalog tables keyed by natural keys.

    Every write is insert-if-absent or fill-if-null; nothing a previous crawl
    stored is ever overwritten, so re-crawling the same ids is harmless.
    """

    def __init__(self, db_path: Path, *, retry_attempts: int = 5, retry_delay_ms: int = 200) -> None:
        self._retrying = retry_sync(
            max_attempts=retry_attempts,
            initial_delay_ms=retry_delay_ms,
            max_delay_ms=retry_delay_ms * 20,
            jitter_ms=retry_delay_ms,
        )
        super().__init__(db_path)

    def _init_schema_locked(self) -> None:
        c = self._conn
        c.execute(
            """
            CREATE TABLE IF NOT EXISTS catalog_items (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                normalized_id TEXT NOT NULL UNIQUE,
                source TEXT NOT NULL,
                local_id TEXT NOT NULL,
                title TEXT NOT NULL,
                description TEXT,
                release_date TEXT,
                duration_min INTEGER,
                default_thumbnail_url TEXT,
                created_at TEXT NOT NULL,
                updated_at TEXT NOT NULL
            )
            """
        )
        c.execute(
            """
            CREATE TABLE IF NOT EXISTS item_sources (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                item_id INTEGER NOT NULL REFERENCES catalog_items(id) ON DELETE CASCADE,
                asp_name TEXT NOT NULL,
                original_id TEXT NOT NULL,
                url TEXT,
                price INTEGER,
                data_source TEXT NOT NULL DEFAULT 'CRAWL',
                last_seen_at TEXT,
                UNIQUE (item_id, asp_name)
            )
            """
        )
        c.execute(
            """
            CREATE TABLE IF NOT EXISTS performers (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                name TEXT NOT NULL UNIQUE COLLATE NOCASE,
                name_kana TEXT,
                birth_date TEXT,
                height_cm INTEGER,
                measurements TEXT,
                created_at TEXT NOT NULL
            )
            """
        )
        c.execute(
            """
            CREATE TABLE IF NOT EXISTS performer_aliases (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                performer_id INTEGER NOT NULL REFERENCES performers(id) ON DELETE CASCADE,
                alias_name TEXT NOT NULL COLLATE NOCASE,
                source TEXT,
                is_primary INTEGER NOT NULL DEFAULT 0,
                UNIQUE (performer_id, alias_name)
            )
            """
        )
        c.execute("CREATE INDEX IF NOT EXISTS idx_performer_aliases_name ON performer_aliases (alias_name)")
        c.execute(
            """
            CREATE TABLE IF NOT EXISTS item_performers (
                item_id INTEGER NOT NULL REFERENCES catalog_items(id) ON DELETE CASCADE,
                performer_id INTEGER NOT NULL REFERENCES performers(id) ON DELETE CASCADE,
                PRIMARY KEY (item_id, performer_id)
            )
            """
        )
        c.execute(
            """
            CREATE TABLE IF NOT EXISTS tags (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                name TEXT NOT NULL UNIQUE,
                category TEXT
            )
            """
        )
        c.execute(
            """
            CREATE TABLE IF NOT EXISTS item_tags (
                item_id INTEGER NOT NULL REFERENCES catalog_items(id) ON DELETE CASCADE,
                tag_id INTEGER NOT NULL REFERENCES tags(id) ON DELETE CASCADE,
                PRIMARY KEY (item_id, tag_id)
            )
            """
        )
        c.execute(
            """
            CREATE TABLE IF NOT EXISTS media_assets (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                item_id INTEGER NOT NULL REFERENCES catalog_items(id) ON DELETE CASCADE,
                url TEXT NOT NULL,
                type TEXT NOT NULL,
                display_order INTEGER NOT NULL DEFAULT 0,
                origin TEXT,
                UNIQUE (item_id, url)
            )
            """
        )
        self._ensure_columns_locked("performers", [
            ("birth_date", "birth_date TEXT"),
            ("height_cm", "height_cm INTEGER"),
            ("measurements", "measurements TEXT"),
        ])

    # ---------- performers ----------

    @staticmethod
    def _find_performer(conn: sqlite3.Connection, name: str) -> Optional[sqlite3.Row]:
        row = conn.execute("SELECT * FROM performers WHERE name = ?", (name,)).fetchone()
        if row is not None:
            return row
        return conn.execute(
            "SELECT p.* FROM performer_aliases a JOIN performers p ON p.id = a.performer_id "
            "WHERE a.alias_name = ? COLLATE NOCASE ORDER BY a.is_primary DESC, p.id LIMIT 1",
            (name,),
        ).fetchone()

    def _upsert_performer(self, conn: sqlite3.Connection, p: ParsedPerformer, source: str) -> int:
        name = normalize_performer_name(p.name)
        row = self._find_performer(conn, name)
        if row is None:
            cur = conn.execute(
                "INSERT INTO performers (name, name_kana, created_at) VALUES (?, ?, ?)",
                (name, p.kana, now_iso()),
            )
            pid = int(cur.lastrowid)
            conn.execute(
                "INSERT OR IGNORE INTO performer_aliases (performer_id, alias_name, source, is_primary) "
                "VALUES (?, ?, ?, 1)",
                (pid, name, source),
            )
            logger.debug("performer created: %s (id=%s)", name, pid)
        else:
            pid = int(row["id"])
            if p.kana:
                conn.execute(
                    "UPDATE performers SET name_kana = ? WHERE id = ? AND name_kana IS NULL",
                    (p.kana, pid),
                )
        for alias in p.aliases:
            alias = normalize_performer_name(alias)
            if not alias or alias.casefold() == name.casefold():
                continue
            conn.execute(
                "INSERT OR IGNORE INTO performer_aliases (performer_id, alias_name, source, is_primary) "
                "VALUES (?, ?, ?, 0)",
                (pid, alias, source),
            )
        return pid

    # ---------- tags / media ----------

    @staticmethod
    def _upsert_tag(conn: sqlite3.Connection, name: str, category: str) -> int:
        conn.execute("INSERT OR IGNORE INTO tags (name, category) VALUES (?, ?)", (name, category))
        row = conn.execute("SELECT id FROM tags WHERE name = ?", (name,)).fetchone()
        return int(row["id"])

    @staticmethod
    def _link(conn: sqlite3.Connection, table: str, left: str, right: str, a: int, b: int) -> bool:
        cur = conn.execute(f"INSERT OR IGNORE INTO {table} ({left}, {right}) VALUES (?, ?)", (a, b))
        return cur.rowcount > 0

    @staticmethod
    def _add_media(conn: sqlite3.Connection, item_id: int, url: str, kind: str, order: int, origin: str) -> bool:
        cur = conn.execute(
            "INSERT OR IGNORE INTO media_assets (item_id, url, type, display_order, origin) VALUES (?, ?, ?, ?, ?)",
            (item_id, url, kind, order, origin),
        )
        return cur.rowcount > 0

    # ---------- record ----------

    def _apply_record(
        self,
        conn: sqlite3.Connection,
        *,
        site_name: str,
        asp_name: str,
        local_id: str,
        url: str,
        record: CandidateRecord,
    ) -> UpsertResult:
        key = natural_key(site_name, local_id)
        ts = now_iso()
        row = conn.execute("SELECT * FROM catalog_items WHERE normalized_id = ?", (key,)).fetchone()

        if row is None:
            cur = conn.execute(
                "INSERT INTO catalog_items (normalized_id, source, local_id, title, description, release_date, "
                "duration_min, default_thumbnail_url, created_at, updated_at) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)",
                (key, site_name, local_id, record.title, record.description, record.release_date,
                 record.duration_min, record.thumbnail_url, ts, ts),
            )
            result = UpsertResult(item_id=int(cur.lastrowid), created=True)
        else:
            result = UpsertResult(item_id=int(row["id"]), created=False)
            for attr, col in FILLABLE_ITEM_FIELDS:
                value = getattr(record, attr)
                if value is None or row[col] is not None:
                    continue
                conn.execute(
                    f"UPDATE catalog_items SET {col} = ?, updated_at = ? WHERE id = ? AND {col} IS NULL",
                    (value, ts, result.item_id),
                )
                result.filled_fields.append(attr)

        item_id = result.item_id
        conn.execute(
            "INSERT OR IGNORE INTO item_sources (item_id, asp_name, original_id, url, price, data_source, last_seen_at) "
            "VALUES (?, ?, ?, ?, ?, 'CRAWL', ?)",
            (item_id, asp_name, local_id, url, record.price, ts),
        )
        conn.execute(
            "UPDATE item_sources SET last_seen_at = ?, price = COALESCE(price, ?) WHERE item_id = ? AND asp_name = ?",
            (ts, record.price, item_id, asp_name),
        )

        for p in record.performers:
            pid = self._upsert_performer(conn, p, asp_name)
            if self._link(conn, "item_performers", "item_id", "performer_id", item_id, pid):
                result.performers_linked += 1

        tag_names = [(site_name, "site")] + [(t, "genre") for t in record.tags]
        for name, category in tag_names:
            tid = self._upsert_tag(conn, name, category)
            if self._link(conn, "item_tags", "item_id", "tag_id", item_id, tid):
                result.tags_linked += 1

        if record.thumbnail_url and self._add_media(conn, item_id, record.thumbnail_url, "thumbnail", 0, asp_name):
            result.media_added += 1
        for i, img in enumerate(record.sample_images):
            if self._add_media(conn, item_id, img, "sample", i, asp_name):
                result.media_added += 1
        if record.sample_video_url and self._add_media(conn, item_id, record.sample_video_url, "sample_video", 0, asp_name):
            result.media_added += 1
        return result

    async def upsert_record(
        self,
        *,
        site_name: str,
        asp_name: str,
        local_id: str,
        url: str,
        record: CandidateRecord,
    ) -> UpsertResult:
        try:
            return await self._transaction(
                lambda conn: self._apply_record(
                    conn, site_name=site_name, asp_name=asp_name, local_id=local_id, url=url, record=record,
                ),
                retrying=self._retrying,
            )
        except sqlite3.Error as e:
            raise StorageError(f"upsert {site_name}/{local_id} failed: {e}") from e

    # ---------- reads ----------

    async def get_item(self, site_name: str, local_id: str) -> Optional[Dict[str, Any]]:
        row = await self._query_one(
            "SELECT * FROM catalog_items WHERE normalized_id = ?", (natural_key(site_name, local_id),)
        )
        return dict(row) if row is not None else None

    async def get_item_source(self, item_id: int, asp_name: str) -> Optional[Dict[str, Any]]:
        row = await self._query_one(
            "SELECT * FROM item_sources WHERE item_id = ? AND asp_name = ?", (item_id, asp_name)
        )
        return dict(row) if row is not None else None

    async def get_performer(self, name: str) -> Optional[Dict[str, Any]]:
        row = await self._query_one("SELECT * FROM performers WHERE name = ?", (normalize_performer_name(name),))
        return dict(row) if row is not None else None

    async def performer_aliases(self, performer_id: int) -> List[Dict[str, Any]]:
        rows = await self._query_all(
            "SELECT alias_name, source, is_primary FROM performer_aliases WHERE performer_id = ? ORDER BY id",
            (performer_id,),
        )
        return [dict(r) for r in rows]

    async def item_performers(self, item_id: int) -> List[str]:
        rows = await self._query_all(
            "SELECT p.name FROM item_performers ip JOIN performers p ON p.id = ip.performer_id "
            "WHERE ip.item_id = ? ORDER BY p.id",
            (item_id,),
        )
        return [r["name"] for r in rows]

    async def item_tags(self, item_id: int) -> List[str]:
        rows = await self._query_all(
            "SELECT t.name FROM item_tags it JOIN tags t ON t.id = it.tag_id WHERE it.item_id = ? ORDER BY t.id",
            (item_id,),
        )
        return [r["name"] for r in rows]

    async def item_media(self, item_id: int) -> List[Dict[str, Any]]:
        rows = await self._query_all(
            "SELECT url, type, display_order, origin FROM media_assets WHERE item_id = ? ORDER BY type, display_order",
            (item_id,),
        )
        return [dict(r) for r in rows]

    async def count_rows(self, table: str) -> int:
        if table not in _COUNTABLE_TABLES:
            raise ValueError(f"unknown table {table!r}")
        row = await self._query_one(f"SELECT COUNT(*) AS n FROM {table}", ())
        return int(row["n"]) if row is not None else 0
