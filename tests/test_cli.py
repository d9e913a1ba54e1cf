import dataclasses
import json
import logging
from pathlib import Path

import pytest

import run_crawl
from catalog_crawler.config import load_config
from catalog_crawler.fetcher import Fetched, NotFound
from extensions import output_paths

PAGES = {
    str(n).zfill(4): f"<html><head><title>作品{n}の物語 - HEYZO</title></head><body>出演: 佐々木あき</body></html>"
    for n in range(3500, 3510)
}


class CannedFetcher:
    instances = []

    def __init__(self, **kwargs):
        self.kwargs = kwargs
        self.requested = []
        CannedFetcher.instances.append(self)

    async def __aenter__(self):
        return self

    async def __aexit__(self, *exc):
        return None

    async def fetch(self, url, timeout=None):
        self.requested.append(url)
        local_id = url.rstrip("/").split("/")[-2]
        if local_id not in PAGES:
            return NotFound(url=url, status=404)
        return Fetched(url=url, status=200, body=PAGES[local_id].encode("utf-8"),
                       headers={"content-type": "text/html; charset=utf-8"}, final_url=url)

    async def fetch_json(self, url, timeout=None):
        return None


@pytest.fixture
def sandbox(tmp_path: Path, monkeypatch):
    cfg = dataclasses.replace(
        load_config(),
        data_dir=tmp_path / "data",
        log_dir=tmp_path / "logs",
        log_file=tmp_path / "logs" / "crawl.log",
        db_path=tmp_path / "data" / "catalog.sqlite3",
        crawl_delay_ms=0,
        crawl_jitter_ms=0,
        breaker_threshold=0,
    )
    monkeypatch.setattr(run_crawl, "load_config", lambda: cfg)
    monkeypatch.setattr(run_crawl, "Fetcher", CannedFetcher)
    monkeypatch.setattr(output_paths, "OUTPUT_ROOT", output_paths.OUTPUT_ROOT)
    CannedFetcher.instances = []
    yield cfg
    for h in list(logging.getLogger().handlers):
        if isinstance(h, logging.FileHandler):
            logging.getLogger().removeHandler(h)
            h.close()


def test_list_sites(capsys):
    assert run_crawl.main(["--list-sites"]) == 0
    out = capsys.readouterr().out
    for key in ("caribbeancom", "caribbeancompr", "1pondo", "heyzo", "10musume", "pacopacomama", "japanska"):
        assert key in out


def test_site_is_required():
    with pytest.raises(SystemExit):
        run_crawl.main([])


def test_unknown_site_exits_1(sandbox):
    assert run_crawl.main(["--site", "nosuchsite"]) == 1


def test_bad_start_id_exits_1(sandbox):
    assert run_crawl.main(["--site", "heyzo", "--start-id", "abc", "--delay-ms", "0"]) == 1


def test_crawl_writes_catalog_summary_and_checkpoint(sandbox, capsys):
    rc = run_crawl.main(["--site", "heyzo", "--start-id", "3500", "--end-id", "3502", "--delay-ms", "0"])
    assert rc == 0
    assert "[heyzo]" in capsys.readouterr().out

    site_dir = sandbox.data_dir / "sites" / "heyzo"
    progress = json.loads((site_dir / "checkpoints" / "progress.json").read_text(encoding="utf-8"))
    assert progress["last_id"] == "3502"
    assert progress["termination"] == "end_id"
    assert progress["stats"]["imported"] == 3
    assert len(list((site_dir / "summaries").glob("*.json"))) == 1
    assert (site_dir / "logs" / "heyzo.log").exists()
    assert sandbox.db_path.exists()


def test_resume_continues_after_last_id(sandbox):
    assert run_crawl.main(["--site", "heyzo", "--start-id", "3500", "--end-id", "3502", "--delay-ms", "0"]) == 0
    assert run_crawl.main(["--site", "heyzo", "--resume", "--end-id", "3504", "--delay-ms", "0"]) == 0

    second = CannedFetcher.instances[-1]
    assert [u.split("/")[-2] for u in second.requested] == ["3503", "3504"]


def test_breaker_override_from_cli(sandbox):
    assert run_crawl.main(["--site", "heyzo", "--start-id", "3508", "--breaker", "2", "--delay-ms", "0"]) == 0
    fetcher = CannedFetcher.instances[-1]
    # 3508 and 3509 exist, then two misses trip the breaker
    assert [u.split("/")[-2] for u in fetcher.requested] == ["3508", "3509", "3510", "3511"]
