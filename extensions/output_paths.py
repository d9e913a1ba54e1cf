from __future__ import annotations
import json
import re
from pathlib import Path
from typing import Any, Dict

# Base directory; run_crawl.py points this at cfg.data_dir.
OUTPUT_ROOT = Path("data")

def set_output_root(path: Path) -> None:
    global OUTPUT_ROOT
    OUTPUT_ROOT = Path(path)

def sanitize_site_key(site_key: str) -> str:
    return re.sub(r"[^A-Za-z0-9_-]+", "_", site_key.strip()) or "site"

def ensure_site_dirs(site_key: str) -> dict[str, Path]:
    """
    Ensure output folders exist for one site.
    Returns a mapping for logs, checkpoints and summaries.
    """
    base = OUTPUT_ROOT / "sites" / sanitize_site_key(site_key)
    dirs = {
        "logs": base / "logs",
        "checkpoints": base / "checkpoints",
        "summaries": base / "summaries",
    }
    for d in dirs.values():
        d.mkdir(parents=True, exist_ok=True)
    return dirs

def save_run_summary(site_key: str, run_stamp: str, summary: Dict[str, Any], encoding: str = "utf-8") -> Path:
    """Write one run's stats to sites/{site}/summaries/{run_stamp}.json."""
    dirs = ensure_site_dirs(site_key)
    fname = re.sub(r"[^0-9A-Za-z_-]+", "-", run_stamp).strip("-") or "run"
    out_path = dirs["summaries"] / f"{fname}.json"
    with open(out_path, "w", encoding=encoding) as f:
        json.dump(summary, f, ensure_ascii=False, indent=2)
    return out_path
