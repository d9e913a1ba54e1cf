from __future__ import annotations

import argparse
import asyncio
import logging
import sys
from datetime import datetime, timezone
from pathlib import Path
from typing import List, Optional

from catalog_crawler.cache import RawCaptureStore
from catalog_crawler.config import Config, load_config
from catalog_crawler.controller import CrawlController, CrawlStats, RunOptions
from catalog_crawler.extraction import ExtractionOptions
from catalog_crawler.fetcher import Fetcher
from catalog_crawler.sequencer import next_id
from catalog_crawler.sites import SITES, SiteConfig, get_site, site_keys
from catalog_crawler.store import CatalogStore
from catalog_crawler.throttle import RateLimiter
from catalog_crawler.utils import FatalCrawlError

from extensions.checkpoint import SiteCheckpoint
from extensions.logging import LoggingExtension
from extensions.output_paths import save_run_summary, set_output_root

EXIT_OK = 0
EXIT_FATAL = 1
EXIT_INTERRUPTED = 130


# ----------------------------
# CLI parsing
# ----------------------------

def _parse_args(argv: Optional[List[str]] = None) -> argparse.Namespace:
    p = argparse.ArgumentParser(
        description="Walk a site's id space and upsert every valid item page into the catalog"
    )
    p.add_argument(
        "--site", action="append", default=[],
        help="Site key to crawl (repeatable), or 'all'. See --list-sites.",
    )
    p.add_argument("--list-sites", action="store_true", help="Print the known site keys and exit")
    p.add_argument("--start-id", type=str, default=None, help="First id to try (default: the site's start id)")
    p.add_argument("--end-id", type=str, default=None, help="Stop once the walk passes this id")
    p.add_argument("--limit", type=int, default=None, help="Stop after this many imported items")
    p.add_argument("--force", action="store_true", help="Ignore cached captures and re-import unchanged pages")
    p.add_argument("--resume", action="store_true", help="Continue after the last id of the previous run")
    p.add_argument("--breaker", type=int, default=None, help="Consecutive misses before giving up")
    p.add_argument("--delay-ms", type=int, default=None, help="Minimum delay between requests")
    p.add_argument("--db", type=Path, default=None, help="sqlite database path")
    p.add_argument(
        "--log-level", type=str, default=None,
        choices=["DEBUG", "INFO", "WARNING", "ERROR"],
        help="Console/file log level (default: LOG_LEVEL env or INFO)",
    )
    args = p.parse_args(argv)
    if not args.list_sites and not args.site:
        p.error("at least one --site is required (or --list-sites)")
    if args.limit is not None and args.limit < 1:
        p.error("--limit must be >= 1")
    if args.breaker is not None and args.breaker < 1:
        p.error("--breaker must be >= 1")
    if args.delay_ms is not None and args.delay_ms < 0:
        p.error("--delay-ms must be >= 0")
    return args


def _selected_sites(names: List[str]) -> List[SiteConfig]:
    keys: List[str] = []
    for raw in names:
        for name in raw.split(","):
            name = name.strip().lower()
            if not name:
                continue
            if name == "all":
                keys.extend(site_keys())
            else:
                keys.append(get_site(name).key)
    seen = set()
    ordered = [k for k in keys if not (k in seen or seen.add(k))]
    return [SITES[k] for k in ordered]


def _list_sites() -> None:
    for key in site_keys():
        s = SITES[key]
        print(f"{key:<16} {s.site_name:<20} start={s.default_start} "
              f"direction={s.direction.value} breaker={s.breaker_threshold} delay={s.delay_ms}ms")


# ----------------------------
# Per-site run
# ----------------------------

def _run_options(args: argparse.Namespace, cfg: Config, site: SiteConfig, start_id: Optional[str]) -> RunOptions:
    # CLI beats env beats the site's own value; env uses 0 for "unset".
    breaker = args.breaker or cfg.breaker_threshold or None
    if args.delay_ms is not None:
        delay_ms: Optional[int] = args.delay_ms
    else:
        delay_ms = cfg.crawl_delay_ms or None
    return RunOptions(
        start_id=start_id,
        end_id=args.end_id,
        limit=args.limit,
        force=args.force,
        breaker_threshold=breaker,
        delay_ms=delay_ms,
        jitter_ms=cfg.crawl_jitter_ms,
        cache_max_age_hours=cfg.cache_max_age_hours,
    )


def _limiter(cfg: Config, site: SiteConfig, options: RunOptions) -> RateLimiter:
    delay_ms = options.delay_ms if options.delay_ms is not None else site.delay_ms
    return RateLimiter(
        delay_ms,
        options.jitter_ms,
        penalty_initial_ms=cfg.throttle_penalty_initial_ms,
        penalty_max_ms=cfg.throttle_penalty_max_ms,
        penalty_decay_mult=cfg.throttle_penalty_decay_mult,
        retry_after_max_s=cfg.retry_after_max_s,
    )


async def _resume_start(cp: SiteCheckpoint, site: SiteConfig, logger: logging.Logger) -> Optional[str]:
    last = cp.resume_id()
    if not last:
        logger.info("[%s] --resume: no checkpoint yet, starting from the default id", site.key)
        return None
    nxt = next_id(last, site.scheme, site.direction)
    if nxt is None:
        logger.info("[%s] --resume: id space already exhausted after %s", site.key, last)
    else:
        logger.info("[%s] --resume: continuing after %s at %s", site.key, last, nxt)
    return nxt


async def _crawl_site(
    site: SiteConfig,
    *,
    args: argparse.Namespace,
    cfg: Config,
    cache: RawCaptureStore,
    store: CatalogStore,
    log_ext: LoggingExtension,
    run_stamp: str,
) -> Optional[CrawlStats]:
    site_logger = log_ext.get_site_logger(site.key)
    token = log_ext.set_site_context(site.key)
    try:
        cp = SiteCheckpoint(site.key)
        await cp.load()

        start_id = args.start_id
        if args.resume and start_id is None:
            start_id = await _resume_start(cp, site, site_logger)
            if start_id is None and cp.resume_id():
                return None

        options = _run_options(args, cfg, site, start_id)
        extraction_options = ExtractionOptions(
            usd_jpy_rate=cfg.usd_jpy_rate,
            title_min_length=cfg.title_min_length,
            performer_name_max_length=cfg.performer_name_max_length,
        )

        async def _on_progress(stats: CrawlStats) -> None:
            site_logger.info("%s", stats.summary_line())
            await cp.record_progress(stats.as_dict())

        async with Fetcher(
            user_agent=cfg.user_agent,
            accept_language=cfg.accept_language,
            timeout_ms=cfg.request_timeout_ms,
            cookie=site.cookie,
        ) as fetcher:
            controller = CrawlController(
                site, fetcher, cache, store,
                options=options,
                limiter=_limiter(cfg, site, options),
                extraction_options=extraction_options,
                on_progress=_on_progress,
                progress_every=cfg.checkpoint_every,
            )
            await cp.mark_start(controller.start_id)
            try:
                stats = await controller.run()
            except asyncio.CancelledError:
                controller.stats.termination = "interrupted"
                site_logger.warning("Interrupted: %s", controller.stats.summary_line())
                await cp.mark_finished(controller.stats.as_dict())
                raise

        await cp.mark_finished(stats.as_dict())
        save_run_summary(site.key, run_stamp, stats.as_dict())
        print(stats.summary_line())
        return stats
    finally:
        log_ext.reset_site_context(token)


# ----------------------------
# Main async
# ----------------------------

async def main_async(argv: Optional[List[str]] = None) -> int:
    args = _parse_args(argv)
    if args.list_sites:
        _list_sites()
        return EXIT_OK

    cfg = load_config()
    level_name = (args.log_level or cfg.log_level).upper()
    level = getattr(logging, level_name, logging.INFO)
    log_ext = LoggingExtension(cfg.log_file, global_level=level)
    root_logger = logging.getLogger("run_crawl")
    set_output_root(cfg.data_dir)

    cache: Optional[RawCaptureStore] = None
    store: Optional[CatalogStore] = None
    try:
        try:
            sites = _selected_sites(args.site)
        except KeyError as e:
            root_logger.error("%s", e.args[0] if e.args else e)
            return EXIT_FATAL

        db_path = args.db or cfg.db_path
        try:
            cache = RawCaptureStore(db_path)
            store = CatalogStore(
                db_path,
                retry_attempts=cfg.storage_retry_attempts,
                retry_delay_ms=cfg.storage_retry_delay_ms,
            )
        except FatalCrawlError as e:
            root_logger.error("Storage unavailable: %s", e)
            return EXIT_FATAL

        root_logger.info("env=%s sites=%s db=%s", cfg.env, ",".join(s.key for s in sites), db_path)
        run_stamp = datetime.now(timezone.utc).strftime("%Y%m%dT%H%M%SZ")
        totals: List[CrawlStats] = []
        for site in sites:
            try:
                stats = await _crawl_site(
                    site, args=args, cfg=cfg, cache=cache, store=store,
                    log_ext=log_ext, run_stamp=run_stamp,
                )
            except ValueError as e:
                root_logger.error("[%s] %s", site.key, e)
                return EXIT_FATAL
            except FatalCrawlError as e:
                root_logger.error("[%s] fatal: %s", site.key, e)
                return EXIT_FATAL
            if stats is not None:
                totals.append(stats)

        if len(totals) > 1:
            root_logger.info(
                "All sites: found=%d imported=%d skipped=%d not_found=%d",
                sum(s.found for s in totals), sum(s.imported for s in totals),
                sum(s.skipped for s in totals), sum(s.not_found for s in totals),
            )
        return EXIT_OK
    finally:
        if cache is not None:
            cache.close()
        if store is not None:
            store.close()
        log_ext.close()


# ----------------------------
# Entrypoint
# ----------------------------

def main(argv: Optional[List[str]] = None) -> int:
    try:
        return asyncio.run(main_async(argv))
    except KeyboardInterrupt:
        return EXIT_INTERRUPTED


if __name__ == "__main__":
    sys.exit(main())
