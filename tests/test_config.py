import os
from pathlib import Path

import pytest

from catalog_crawler.config import DB_PATH, load_config


def _clear_env(keys):
    for k in keys:
        os.environ.pop(k, None)


_KNOBS = [
    "APP_ENV",
    "LOG_LEVEL",
    "SCRAPER_USER_AGENT",
    "ACCEPT_LANGUAGE",
    "REQUEST_TIMEOUT_MS",
    "CRAWL_DELAY_MS",
    "CRAWL_JITTER_MS",
    "CRAWL_BREAKER_THRESHOLD",
    "THROTTLE_PENALTY_INITIAL_MS",
    "THROTTLE_PENALTY_MAX_MS",
    "THROTTLE_PENALTY_DECAY_MULT",
    "RETRY_AFTER_MAX_S",
    "CACHE_MAX_AGE_HOURS",
    "USD_JPY_RATE",
    "TITLE_MIN_LENGTH",
    "PERFORMER_NAME_MAX_LENGTH",
    "CRAWL_DB_PATH",
    "STORAGE_RETRY_ATTEMPTS",
    "STORAGE_RETRY_DELAY_MS",
    "CHECKPOINT_EVERY",
]


def test_load_config_defaults(monkeypatch):
    _clear_env(_KNOBS)

    cfg = load_config()

    assert cfg.env == "dev"
    assert cfg.log_level == "INFO"
    assert cfg.request_timeout_ms == 30000
    assert "Mozilla" in cfg.user_agent
    assert cfg.accept_language.startswith("ja")

    # 0 means "defer to the site's own pacing"
    assert cfg.crawl_delay_ms == 0
    assert cfg.breaker_threshold == 0
    assert cfg.crawl_jitter_ms == 250

    assert cfg.throttle_penalty_initial_ms == 8000
    assert cfg.throttle_penalty_max_ms == 60000
    assert 0.0 < cfg.throttle_penalty_decay_mult < 1.0

    assert cfg.cache_max_age_hours == 0
    assert cfg.usd_jpy_rate == 150.0
    assert cfg.title_min_length == 3
    assert cfg.performer_name_max_length == 30

    assert cfg.db_path == DB_PATH
    assert cfg.storage_retry_attempts == 5
    assert cfg.checkpoint_every == 25


def test_load_config_env_overrides_and_bounds(monkeypatch, tmp_path: Path):
    _clear_env(_KNOBS)
    # push extremes to test clamping
    monkeypatch.setenv("REQUEST_TIMEOUT_MS", "10")
    monkeypatch.setenv("CRAWL_DELAY_MS", "-5")
    monkeypatch.setenv("CRAWL_BREAKER_THRESHOLD", "7")
    monkeypatch.setenv("THROTTLE_PENALTY_DECAY_MULT", "3.5")
    monkeypatch.setenv("USD_JPY_RATE", "142.5")
    monkeypatch.setenv("STORAGE_RETRY_ATTEMPTS", "999")
    monkeypatch.setenv("LOG_LEVEL", "debug")
    monkeypatch.setenv("CRAWL_DB_PATH", str(tmp_path / "x.sqlite3"))

    cfg = load_config()

    assert cfg.request_timeout_ms == 1000
    assert cfg.crawl_delay_ms == 0
    assert cfg.breaker_threshold == 7
    assert cfg.throttle_penalty_decay_mult == 1.0
    assert cfg.usd_jpy_rate == pytest.approx(142.5)
    assert cfg.storage_retry_attempts == 20
    assert cfg.log_level == "DEBUG"
    assert cfg.db_path == tmp_path / "x.sqlite3"


def test_invalid_numbers_fall_back_to_defaults(monkeypatch):
    _clear_env(_KNOBS)
    monkeypatch.setenv("CRAWL_JITTER_MS", "lots")
    monkeypatch.setenv("USD_JPY_RATE", "n/a")

    cfg = load_config()

    assert cfg.crawl_jitter_ms == 250
    assert cfg.usd_jpy_rate == 150.0
