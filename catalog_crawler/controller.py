from __future__ import annotations

import logging
import time
from dataclasses import asdict, dataclass, field
from datetime import timedelta
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, Optional, Protocol

from .cache import RawCapture, RawCaptureStore
from .encoding import decode_body
from .extraction import Extraction, ExtractionOptions, extract
from .fetcher import Fetched, FetchResult, NotFound, TransientError
from .sequencer import is_past, is_valid_id, next_id
from .sites import SiteConfig
from .store import CatalogStore
from .throttle import RateLimiter
from .utils import StorageError, now_iso

logger = logging.getLogger(__name__)


class CrawlState(str, Enum):
    SEEKING = "seeking"
    FETCHED = "fetched"
    PARSED_VALID = "parsed_valid"
    PARSED_INVALID = "parsed_invalid"
    PERSISTED = "persisted"
    TERMINATED = "terminated"


class StepOutcome(str, Enum):
    IMPORTED = "imported"
    UNCHANGED = "unchanged"
    NOT_FOUND = "not_found"
    TRANSIENT = "transient"
    INVALID = "invalid"
    STORAGE_ERROR = "storage_error"

    @property
    def feeds_breaker(self) -> bool:
        return self in (StepOutcome.NOT_FOUND, StepOutcome.TRANSIENT, StepOutcome.INVALID)


class PageFetcher(Protocol):
    async def fetch(self, url: str, timeout: Optional[float] = None) -> FetchResult: ...
    async def fetch_json(self, url: str, timeout: Optional[float] = None) -> Optional[Dict[str, Any]]: ...


@dataclass(frozen=True)
class RunOptions:
    start_id: Optional[str] = None
    end_id: Optional[str] = None
    limit: Optional[int] = None
    force: bool = False
    # None means "use the site's value".
    breaker_threshold: Optional[int] = None
    delay_ms: Optional[int] = None
    jitter_ms: int = 0
    cache_max_age_hours: int = 0


@dataclass
class CrawlStats:
    site: str
    found: int = 0
    imported: int = 0
    skipped: int = 0
    not_found: int = 0

    attempts: int = 0
    new_items: int = 0
    updated_items: int = 0
    transient_errors: int = 0
    skipped_invalid: int = 0
    skipped_unchanged: int = 0
    cache_hits: int = 0
    storage_errors: int = 0

    start_id: Optional[str] = None
    last_id: Optional[str] = None
    last_success_id: Optional[str] = None
    termination: Optional[str] = None
    started_at: Optional[str] = None
    finished_at: Optional[str] = None
    duration_ms: int = 0

    def as_dict(self) -> Dict[str, Any]:
        return asdict(self)

    def summary_line(self) -> str:
        return (
            f"[{self.site}] found={self.found} imported={self.imported} skipped={self.skipped} "
            f"not_found={self.not_found} (new={self.new_items} updated={self.updated_items} "
            f"invalid={self.skipped_invalid} unchanged={self.skipped_unchanged} "
            f"transient={self.transient_errors} storage_errors={self.storage_errors}) "
            f"last_id={self.last_id} stop={self.termination} in {self.duration_ms / 1000:.1f}s"
        )


class CrawlController:
    """
    Walks one site's id space, one id at a time.

    SEEKING -> FETCHED -> PARSED_VALID -> PERSISTED -> SEEKING, with NotFound,
    transient errors and invalid pages all feeding a consecutive-failure breaker.
    Nothing raised while handling a single id escapes ``run``; the result is the
    returned ``CrawlStats``.
    """

    def __init__(
        self,
        site: SiteConfig,
        fetcher: PageFetcher,
        cache: RawCaptureStore,
        store: CatalogStore,
        *,
        options: RunOptions = RunOptions(),
        limiter: Optional[RateLimiter] = None,
        extraction_options: ExtractionOptions = ExtractionOptions(),
        on_progress: Optional[Callable[[CrawlStats], Awaitable[None]]] = None,
        progress_every: int = 25,
    ) -> None:
        self.site = site
        self.fetcher = fetcher
        self.cache = cache
        self.store = store
        self.options = options
        self.extraction_options = extraction_options
        self.on_progress = on_progress
        self.progress_every = max(1, progress_every)

        self.breaker_threshold = max(1, options.breaker_threshold or site.breaker_threshold)
        delay_ms = options.delay_ms if options.delay_ms is not None else site.delay_ms
        self.limiter = limiter or RateLimiter(delay_ms, options.jitter_ms)
        self.cache_max_age = (
            timedelta(hours=options.cache_max_age_hours) if options.cache_max_age_hours > 0 else None
        )

        self.start_id = options.start_id or site.default_start
        if not is_valid_id(self.start_id, site.scheme):
            raise ValueError(f"start id {self.start_id!r} is not valid for site {site.key}")
        if options.end_id is not None and not is_valid_id(options.end_id, site.scheme):
            raise ValueError(f"end id {options.end_id!r} is not valid for site {site.key}")

        self.state = CrawlState.SEEKING
        self.consecutive_failures = 0
        self.stats = CrawlStats(site=site.key, start_id=self.start_id)

    # ---------- state ----------

    def _enter(self, state: CrawlState, local_id: Optional[str] = None) -> None:
        if state is not self.state:
            logger.debug("[%s] %s: %s -> %s", self.site.key, local_id or "-", self.state.value, state.value)
        self.state = state

    def _termination_reason(self, current: str) -> Optional[str]:
        if self.options.limit is not None and self.stats.imported >= self.options.limit:
            return "limit"
        if self.options.end_id is not None and is_past(current, self.options.end_id, self.site.scheme, self.site.direction):
            return "end_id"
        return None

    # ---------- run ----------

    async def run(self) -> CrawlStats:
        stats = self.stats
        stats.started_at = now_iso()
        t0 = time.monotonic()
        logger.info(
            "[%s] start=%s end=%s limit=%s breaker=%d delay=%dms force=%s",
            self.site.key, self.start_id, self.options.end_id, self.options.limit,
            self.breaker_threshold, self.limiter.delay_ms, self.options.force,
        )
        current: Optional[str] = self.start_id
        processed = 0
        try:
            while current is not None:
                reason = self._termination_reason(current)
                if reason:
                    stats.termination = reason
                    break
                self._enter(CrawlState.SEEKING, current)
                outcome = await self.step(current)
                stats.last_id = current
                processed += 1

                if outcome.feeds_breaker:
                    self.consecutive_failures += 1
                    if self.consecutive_failures >= self.breaker_threshold:
                        logger.info("[%s] breaker: %d consecutive misses ending at %s",
                                    self.site.key, self.consecutive_failures, current)
                        stats.termination = "breaker"
                        break
                else:
                    self.consecutive_failures = 0
                    if outcome is not StepOutcome.STORAGE_ERROR:
                        stats.last_success_id = current

                if self.on_progress is not None and processed % self.progress_every == 0:
                    await self.on_progress(stats)

                current = next_id(current, self.site.scheme, self.site.direction)
            else:
                stats.termination = "exhausted"
        finally:
            self._enter(CrawlState.TERMINATED)
            stats.finished_at = now_iso()
            stats.duration_ms = int((time.monotonic() - t0) * 1000)
        logger.info("%s", stats.summary_line())
        return stats

    # ---------- one id ----------

    async def _cached(self, local_id: str) -> Optional[RawCapture]:
        if self.options.force:
            return None
        try:
            capture = await self.cache.lookup(self.site.site_name, local_id)
        except StorageError as e:
            self.stats.storage_errors += 1
            logger.error("[%s] %s: raw capture lookup failed, fetching instead: %s", self.site.key, local_id, e)
            return None
        if capture is None:
            return None
        if self.cache_max_age is not None and capture.is_older_than(self.cache_max_age):
            logger.debug("[%s] %s: cached capture expired", self.site.key, local_id)
            return None
        return capture

    def _note_failure(self, local_id: str, result: FetchResult) -> StepOutcome:
        self.stats.not_found += 1
        if isinstance(result, TransientError):
            self.stats.transient_errors += 1
            if result.status == 429 or result.retry_after:
                self.limiter.penalize(result.retry_after, reason=f"HTTP {result.status}")
            elif result.timed_out:
                self.limiter.penalize_timeout()
            logger.debug("[%s] %s: transient (%s)", self.site.key, local_id, result.reason)
            return StepOutcome.TRANSIENT
        logger.debug("[%s] %s: not found (%s)", self.site.key, local_id, getattr(result, "reason", ""))
        return StepOutcome.NOT_FOUND

    async def step(self, local_id: str) -> StepOutcome:
        stats = self.stats
        url = self.site.page_url(local_id)

        capture = await self._cached(local_id)
        if capture is not None:
            stats.cache_hits += 1
            stats.found += 1
            self._enter(CrawlState.FETCHED, local_id)
            if capture.processed:
                stats.skipped += 1
                stats.skipped_unchanged += 1
                return StepOutcome.UNCHANGED
            text = capture.text
        else:
            await self.limiter.wait()
            stats.attempts += 1
            try:
                result = await self.fetcher.fetch(url)
            finally:
                self.limiter.mark_done()
            if not isinstance(result, Fetched):
                return self._note_failure(local_id, result)
            self.limiter.relax()
            stats.found += 1
            self._enter(CrawlState.FETCHED, local_id)
            text = decode_body(result.body, result.content_type, result.final_url or url)
            try:
                stored = await self.cache.store(self.site.site_name, local_id, url, text)
            except StorageError as e:
                stats.storage_errors += 1
                logger.error("[%s] %s: raw capture not stored: %s", self.site.key, local_id, e)
            else:
                if stored.should_skip and not self.options.force:
                    stats.skipped += 1
                    stats.skipped_unchanged += 1
                    return StepOutcome.UNCHANGED

        side_channel = None
        sc_url = self.site.side_channel_url(local_id)
        if sc_url:
            await self.limiter.wait()
            try:
                side_channel = await self.fetcher.fetch_json(sc_url)
            finally:
                self.limiter.mark_done()

        extraction = self._extract(text, local_id, url, side_channel)
        if extraction.record is None:
            self._enter(CrawlState.PARSED_INVALID, local_id)
            stats.skipped += 1
            stats.skipped_invalid += 1
            logger.info("[%s] %s: skipped (%s)", self.site.key, local_id, extraction.reason)
            return StepOutcome.INVALID
        self._enter(CrawlState.PARSED_VALID, local_id)

        try:
            result = await self.store.upsert_record(
                site_name=self.site.site_name,
                asp_name=self.site.asp_name,
                local_id=local_id,
                url=url,
                record=extraction.record,
            )
        except StorageError as e:
            stats.storage_errors += 1
            logger.error("[%s] %s: %s", self.site.key, local_id, e)
            return StepOutcome.STORAGE_ERROR

        self._enter(CrawlState.PERSISTED, local_id)
        stats.imported += 1
        if result.created:
            stats.new_items += 1
        elif result.changed:
            stats.updated_items += 1
        try:
            await self.cache.mark_processed(self.site.site_name, local_id)
        except StorageError as e:
            stats.storage_errors += 1
            logger.error("[%s] %s: could not mark capture processed: %s", self.site.key, local_id, e)
        logger.info("[%s] %s: %s %s", self.site.key, local_id,
                    "new" if result.created else "seen", extraction.record.title[:60])
        return StepOutcome.IMPORTED

    def _extract(self, text: str, local_id: str, url: str, side_channel) -> Extraction:
        try:
            return extract(text, self.site, local_id, side_channel, page_url=url, options=self.extraction_options)
        except Exception as e:
            logger.warning("[%s] %s: extraction crashed: %s", self.site.key, local_id, e)
            return Extraction(None, f"extraction error: {e}")
