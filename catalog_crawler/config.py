from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path
from typing import Literal
from .utils import getenv_int, getenv_str, getenv_float

# ---------- Project Paths ----------
PROJECT_ROOT: Path = Path(__file__).resolve().parents[1]
DATA_DIR: Path = PROJECT_ROOT / "data"
LOG_DIR: Path = PROJECT_ROOT / "logs"

# Subfolders & files (paths only; no logging init here)
DB_PATH: Path = DATA_DIR / "catalog.sqlite3"
LOG_FILE: Path = LOG_DIR / "crawl.log"


# ---------- Config dataclass ----------
@dataclass(frozen=True)
class Config:
    # Runtime
    env: Literal["dev", "staging", "prod"]
    log_level: str

    # HTTP identity & timeouts
    user_agent: str
    accept_language: str
    request_timeout_ms: int

    # Pacing. 0 means "use the site's own value".
    crawl_delay_ms: int
    crawl_jitter_ms: int
    breaker_threshold: int

    # Penalty on 429 / timeouts (decays on success)
    throttle_penalty_initial_ms: int
    throttle_penalty_max_ms: int
    throttle_penalty_decay_mult: float
    retry_after_max_s: float

    # Raw cache
    cache_max_age_hours: int                    # 0 = cached captures never expire

    # Extraction
    usd_jpy_rate: float
    title_min_length: int
    performer_name_max_length: int

    # Storage
    db_path: Path
    storage_retry_attempts: int
    storage_retry_delay_ms: int

    # Paths
    project_root: Path
    data_dir: Path
    log_dir: Path
    log_file: Path
    checkpoint_every: int                       # persist checkpoint every N processed ids


# ---------- Loader ----------
def load_config() -> Config:

    cfg = Config(
        env=getenv_str("APP_ENV", "dev"),
        log_level=getenv_str("LOG_LEVEL", "INFO").upper(),

        user_agent=getenv_str(
            "SCRAPER_USER_AGENT",
            "Mozilla/5.0 (Windows NT 10.0; Win64; x64) "
            "AppleWebKit/537.36 (KHTML, like Gecko) "
            "Chrome/120.0.0.0 Safari/537.36"
        ),
        accept_language=getenv_str("ACCEPT_LANGUAGE", "ja,en-US;q=0.8,en;q=0.6"),
        request_timeout_ms=getenv_int("REQUEST_TIMEOUT_MS", 30000, 1000, 120000),

        # Sites declare their own delay/breaker; env only overrides when set.
        crawl_delay_ms=getenv_int("CRAWL_DELAY_MS", 0, 0, 60000),
        crawl_jitter_ms=getenv_int("CRAWL_JITTER_MS", 250, 0, 10000),
        breaker_threshold=getenv_int("CRAWL_BREAKER_THRESHOLD", 0, 0, 10000),

        throttle_penalty_initial_ms=getenv_int("THROTTLE_PENALTY_INITIAL_MS", 8000, 0, 120000),
        throttle_penalty_max_ms=getenv_int("THROTTLE_PENALTY_MAX_MS", 60000, 100, 300000),
        throttle_penalty_decay_mult=getenv_float("THROTTLE_PENALTY_DECAY_MULT", 0.66, 0.0, 1.0),
        retry_after_max_s=getenv_float("RETRY_AFTER_MAX_S", 120.0, 1.0, 3600.0),

        cache_max_age_hours=getenv_int("CACHE_MAX_AGE_HOURS", 0, 0, 24 * 365),

        usd_jpy_rate=getenv_float("USD_JPY_RATE", 150.0, 1.0, 1000.0),
        title_min_length=getenv_int("TITLE_MIN_LENGTH", 3, 1, 50),
        performer_name_max_length=getenv_int("PERFORMER_NAME_MAX_LENGTH", 30, 5, 100),

        db_path=Path(getenv_str("CRAWL_DB_PATH", str(DB_PATH))),
        storage_retry_attempts=getenv_int("STORAGE_RETRY_ATTEMPTS", 5, 1, 20),
        storage_retry_delay_ms=getenv_int("STORAGE_RETRY_DELAY_MS", 200, 10, 10000),

        project_root=PROJECT_ROOT,
        data_dir=DATA_DIR,
        log_dir=LOG_DIR,
        log_file=LOG_FILE,
        checkpoint_every=getenv_int("CHECKPOINT_EVERY", 25, 1, 10000),
    )
    return cfg
