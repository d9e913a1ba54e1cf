import logging
from pathlib import Path

from extensions import output_paths
from extensions.logging import LoggingExtension


def test_site_file_only_gets_records_from_its_own_context(tmp_path: Path, monkeypatch):
    monkeypatch.setattr(output_paths, "OUTPUT_ROOT", tmp_path)
    run_log = tmp_path / "logs" / "crawl.log"
    ext = LoggingExtension(run_log, global_level=logging.INFO)
    try:
        ext.get_site_logger("heyzo")
        ext.get_site_logger("japanska")
        module_logger = logging.getLogger("catalog_crawler.controller")

        token = ext.set_site_context("heyzo")
        module_logger.info("walking heyzo")
        ext.reset_site_context(token)

        token = ext.set_site_context("japanska")
        module_logger.info("walking japanska")
        ext.reset_site_context(token)

        logging.getLogger("site.heyzo").info("named heyzo record")
    finally:
        ext.close()

    heyzo = (tmp_path / "sites" / "heyzo" / "logs" / "heyzo.log").read_text(encoding="utf-8")
    japanska = (tmp_path / "sites" / "japanska" / "logs" / "japanska.log").read_text(encoding="utf-8")
    assert "walking heyzo" in heyzo
    assert "named heyzo record" in heyzo
    assert "walking japanska" not in heyzo
    assert "walking japanska" in japanska
    assert "walking heyzo" not in japanska

    everything = run_log.read_text(encoding="utf-8")
    assert "walking heyzo" in everything and "walking japanska" in everything


def test_close_detaches_file_handlers(tmp_path: Path, monkeypatch):
    monkeypatch.setattr(output_paths, "OUTPUT_ROOT", tmp_path)
    ext = LoggingExtension(tmp_path / "crawl.log")
    ext.get_site_logger("heyzo")
    ext.close()
    assert not any(isinstance(h, logging.FileHandler) for h in logging.getLogger().handlers)
