from __future__ import annotations
import asyncio
import json
import logging
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, Optional

from catalog_crawler.utils import atomic_write_text
from extensions.output_paths import ensure_site_dirs

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
#  Checkpoint schema and helpers
# ---------------------------------------------------------------------------

def _utcnow() -> str:
    return datetime.now(timezone.utc).isoformat()


class SiteCheckpoint:
    """
    Represents per-site crawl progress.
    Stored at data/sites/{site}/checkpoints/progress.json
    """

    def __init__(self, site_key: str, path: Optional[Path] = None):
        self.site_key = str(site_key)
        self.path = path or ensure_site_dirs(site_key)["checkpoints"] / "progress.json"
        self.data: Dict[str, Any] = {
            "site": self.site_key,
            "started_at": None,
            "finished_at": None,
            "start_id": None,
            "last_id": None,
            "last_success_id": None,
            "termination": None,
            "stats": {},
            "runs": 0,
        }
        self._lock = asyncio.Lock()

    # ---------------------- Core methods ----------------------

    async def load(self) -> None:
        """Load existing checkpoint if exists."""
        async with self._lock:
            if self.path.exists():
                try:
                    text = self.path.read_text(encoding="utf-8")
                    self.data.update(json.loads(text))
                    logger.info(f"[checkpoint] Loaded checkpoint for {self.site_key}")
                except (OSError, ValueError) as e:
                    logger.warning(f"[checkpoint] Failed to load: {e}")

    async def save(self) -> None:
        """Persist current checkpoint to disk."""
        async with self._lock:
            try:
                atomic_write_text(self.path, json.dumps(self.data, indent=2, ensure_ascii=False))
            except OSError as e:
                logger.error(f"[checkpoint] Save failed for {self.site_key}: {e}")

    async def mark_start(self, start_id: str) -> None:
        self.data.update({
            "started_at": _utcnow(),
            "finished_at": None,
            "start_id": start_id,
            "termination": None,
        })
        self.data["runs"] = int(self.data.get("runs") or 0) + 1
        await self.save()

    async def record_progress(self, stats: Dict[str, Any]) -> None:
        self.data["last_id"] = stats.get("last_id")
        if stats.get("last_success_id"):
            self.data["last_success_id"] = stats["last_success_id"]
        self.data["stats"] = stats
        await self.save()

    async def mark_finished(self, stats: Dict[str, Any]) -> None:
        self.data["termination"] = stats.get("termination")
        self.data["finished_at"] = _utcnow()
        await self.record_progress(stats)

    # ---------------------- Convenience accessors ----------------------

    def is_finished(self) -> bool:
        return self.data.get("finished_at") is not None

    def resume_id(self) -> Optional[str]:
        """Where a resumed run should pick up: the last id the previous run reached."""
        return self.data.get("last_id") or None
