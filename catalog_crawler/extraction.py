from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field
from functools import cached_property
from typing import Any, Callable, Dict, Iterable, List, Mapping, Optional, Sequence, Tuple

from bs4 import BeautifulSoup

from .parsing import (
    ParsedPerformer,
    absolutize,
    extract_price,
    extract_price_info,
    is_valid_image_url,
    is_valid_video_url,
    parse_date,
    parse_duration,
    parse_performer_name,
    sanitize_text,
    split_performer_credits,
    strip_html,
)
from .validators import (
    is_plausible_title,
    is_top_page_description,
    is_top_page_html,
    is_valid_performer_name,
)

logger = logging.getLogger(__name__)


# ========== Record ==========

@dataclass
class CandidateRecord:
    title: str
    description: Optional[str] = None
    performers: List[ParsedPerformer] = field(default_factory=list)
    release_date: Optional[str] = None
    duration_min: Optional[int] = None
    thumbnail_url: Optional[str] = None
    sample_images: List[str] = field(default_factory=list)
    sample_video_url: Optional[str] = None
    price: Optional[int] = None
    tags: List[str] = field(default_factory=list)
    # field name -> name of the strategy that produced it
    sources: Dict[str, str] = field(default_factory=dict)


@dataclass(frozen=True)
class Extraction:
    record: Optional[CandidateRecord]
    reason: Optional[str] = None

    @property
    def valid(self) -> bool:
        return self.record is not None


@dataclass(frozen=True)
class ExtractionOptions:
    usd_jpy_rate: float = 150.0
    title_min_length: int = 3
    performer_name_max_length: int = 30


# ========== Context ==========

class ExtractionContext:
    """Everything a strategy may look at. The soup is parsed lazily, once."""

    def __init__(
        self,
        text: str,
        *,
        site: Any,
        local_id: str,
        page_url: str,
        side_channel: Optional[Mapping[str, Any]] = None,
        options: ExtractionOptions = ExtractionOptions(),
    ) -> None:
        self.text = text or ""
        self.site = site
        self.local_id = local_id
        self.page_url = page_url
        self.side_channel = side_channel or {}
        self.options = options

    @cached_property
    def soup(self) -> BeautifulSoup:
        return BeautifulSoup(self.text, "lxml")

    @cached_property
    def raw_title(self) -> Optional[str]:
        try:
            t = self.soup.title.get_text() if self.soup.title else None
        except Exception:
            t = None
        return re.sub(r"\s+", " ", t).strip() if t else None

    def meta(self, *, name: Optional[str] = None, prop: Optional[str] = None) -> Optional[str]:
        attrs = {"name": name} if name else {"property": prop}
        tag = self.soup.find("meta", attrs=attrs)
        if tag is None:
            return None
        content = tag.get("content")
        return content.strip() if isinstance(content, str) and content.strip() else None

    def sc(self, key: str) -> Any:
        v = self.side_channel.get(key)
        if isinstance(v, str):
            v = v.strip()
        return v or None


Strategy = Callable[[ExtractionContext], Any]


def strategy(name: str):
    """Attach a stable name used in ``CandidateRecord.sources``."""
    def _decorator(fn: Strategy) -> Strategy:
        fn.strategy_name = name  # type: ignore[attr-defined]
        return fn
    return _decorator


def _name_of(fn: Strategy) -> str:
    return getattr(fn, "strategy_name", getattr(fn, "__name__", "strategy"))


# ========== Title strategies ==========

@strategy("side_channel.title")
def title_from_side_channel(ctx: ExtractionContext) -> Optional[str]:
    return sanitize_text(ctx.sc("Title"))


def title_from_selector(selector: str) -> Strategy:
    @strategy(f"selector.title[{selector}]")
    def _title(ctx: ExtractionContext) -> Optional[str]:
        el = ctx.soup.select_one(selector)
        return sanitize_text(el.get_text(" ")) if el is not None else None
    return _title


@strategy("meta.og_title")
def title_from_og(ctx: ExtractionContext) -> Optional[str]:
    t = ctx.meta(prop="og:title")
    if not t:
        return None
    markers = [m.lower() for m in getattr(ctx.site, "brand_markers", ())]
    if any(m in t.lower() for m in markers):
        return None
    return sanitize_text(t)


def strip_site_suffixes(title: str, site_names: Iterable[str]) -> str:
    t = title.strip()
    # Longest names first so "カリビアンコムプレミアム" is not cut down to "プレミアム".
    for n in sorted({s for s in site_names if s}, key=len, reverse=True):
        t = re.sub(rf"\s*[|｜\-–]\s*{re.escape(n)}\s*$", "", t).strip()
    return t


@strategy("html.title")
def title_from_page_title(ctx: ExtractionContext) -> Optional[str]:
    t = ctx.raw_title
    if not t:
        return None
    return sanitize_text(strip_site_suffixes(t, ctx.site.all_site_names))


@strategy("html.title_first_segment")
def title_from_page_title_segment(ctx: ExtractionContext) -> Optional[str]:
    t = ctx.raw_title
    if not t or "|" not in t:
        return None
    return sanitize_text(t.split("|", 1)[0])


# ========== Description strategies ==========

@strategy("side_channel.description")
def description_from_side_channel(ctx: ExtractionContext) -> Optional[str]:
    return sanitize_text(ctx.sc("Desc"))


@strategy("meta.description")
def description_from_meta(ctx: ExtractionContext) -> Optional[str]:
    return sanitize_text(ctx.meta(name="description"))


@strategy("meta.og_description")
def description_from_og(ctx: ExtractionContext) -> Optional[str]:
    return sanitize_text(ctx.meta(prop="og:description"))


def description_from_selector(selector: str, max_len: int = 1000) -> Strategy:
    @strategy(f"selector.description[{selector}]")
    def _desc(ctx: ExtractionContext) -> Optional[str]:
        el = ctx.soup.select_one(selector)
        if el is None:
            return None
        text = sanitize_text(el.get_text(" "))
        return text[:max_len] if text else None
    return _desc


# ========== Performer strategies ==========
# Each returns raw credit strings; splitting, parsing and filtering happen in one place.

@strategy("side_channel.performers")
def performers_from_side_channel(ctx: ExtractionContext) -> Optional[List[str]]:
    v = ctx.sc("ActressesJa")
    if isinstance(v, str):
        return split_performer_credits(v)
    if isinstance(v, (list, tuple)):
        return [str(x) for x in v if x]
    return None


_EC_BRAND = re.compile(r"var\s+ec_item_brand\s*=\s*['\"]([^'\"]+)['\"]")

@strategy("script.ec_item_brand")
def performers_from_ec_brand(ctx: ExtractionContext) -> Optional[List[str]]:
    m = _EC_BRAND.search(ctx.text)
    return split_performer_credits(m.group(1)) if m else None


_CAST_LABEL = re.compile(r"^\s*出演(者)?\s*[:：]?\s*$")

@strategy("html.cast_label")
def performers_from_cast_label(ctx: ExtractionContext) -> Optional[List[str]]:
    """``<th>出演</th><td>..</td>`` and ``<span class="spec-title">出演</span>`` layouts."""
    for label in ctx.soup.find_all(string=_CAST_LABEL):
        holder = label.parent
        if holder is None:
            continue
        sibling = holder.find_next_sibling()
        if sibling is None:
            continue
        links = [a.get_text(" ", strip=True) for a in sibling.find_all("a")]
        names = [n for n in links if n] or split_performer_credits(sibling.get_text("、", strip=True))
        if names:
            return names
    return None


_CAST_INLINE = re.compile(r"出演者?\s*[:：]\s*([^<\n]+)")

@strategy("text.cast_inline")
def performers_from_inline_label(ctx: ExtractionContext) -> Optional[List[str]]:
    m = _CAST_INLINE.search(ctx.text)
    return split_performer_credits(strip_html(m.group(1))) if m else None


_TITLE_READING = re.compile(r"^([^\s【]+)\s*【[^】]+】")

@strategy("html.title_reading")
def performers_from_title_reading(ctx: ExtractionContext) -> Optional[List[str]]:
    """HEYZO titles read ``名前 【ふりがな】 作品名``."""
    t = ctx.raw_title
    if not t:
        return None
    m = _TITLE_READING.match(t)
    return [m.group(1)] if m else None


def performers_from_links(href_fragment: str, exclude: Sequence[str] = ()) -> Strategy:
    @strategy(f"links.performers[{href_fragment}]")
    def _links(ctx: ExtractionContext) -> Optional[List[str]]:
        out: List[str] = []
        for a in ctx.soup.select(f'a[href*="{href_fragment}"]'):
            name = a.get_text(" ", strip=True)
            if not name or name in out or any(x in name for x in exclude):
                continue
            out.append(name)
        return out or None
    return _links


# ========== Release date / duration ==========

@strategy("side_channel.release")
def release_from_side_channel(ctx: ExtractionContext) -> Optional[str]:
    return parse_date(ctx.sc("Release"))


_RELEASE_LABEL = re.compile(r"配信日[:：]?\s*(\d{4})[年/\-](\d{1,2})[月/\-](\d{1,2})")

@strategy("text.release_label")
def release_from_label(ctx: ExtractionContext) -> Optional[str]:
    m = _RELEASE_LABEL.search(ctx.text)
    if not m:
        return None
    return parse_date(f"{m.group(1)}-{m.group(2)}-{m.group(3)}")


_DATE_LABELS = re.compile(r"^\s*(配信開始日|配信日|公開日|発売日|更新日)\s*[:：]?\s*$")

@strategy("html.date_cell")
def release_from_date_cell(ctx: ExtractionContext) -> Optional[str]:
    for label in ctx.soup.find_all(string=_DATE_LABELS):
        holder = label.parent
        sibling = holder.find_next_sibling() if holder is not None else None
        if sibling is not None:
            d = parse_date(sibling.get_text(" ", strip=True))
            if d:
                return d
    return None


@strategy("side_channel.duration")
def duration_from_side_channel(ctx: ExtractionContext) -> Optional[int]:
    v = ctx.sc("Duration")
    try:
        seconds = int(v) if v is not None else None
    except (TypeError, ValueError):
        return None
    return round(seconds / 60) if seconds else None


_DURATION_LABEL = re.compile(r"(再生時間|収録時間|時間)\s*[:：]?\s*([0-9:０-９時間分秒\s]+)")

@strategy("text.duration_label")
def duration_from_label(ctx: ExtractionContext) -> Optional[int]:
    m = _DURATION_LABEL.search(strip_html(ctx.text))
    return parse_duration(m.group(2)) if m else None


_MINUTES = re.compile(r"(\d+)分(?:(\d+)秒)?")

@strategy("text.minutes")
def duration_from_minutes(ctx: ExtractionContext) -> Optional[int]:
    m = _MINUTES.search(strip_html(ctx.text))
    if not m:
        return None
    return int(m.group(1)) + (round(int(m.group(2)) / 60) if m.group(2) else 0)


# ========== Media ==========

@strategy("side_channel.thumbnail")
def thumbnail_from_side_channel(ctx: ExtractionContext) -> Optional[str]:
    for key in ("ThumbHigh", "ThumbUltra", "ThumbMed"):
        v = ctx.sc(key)
        if isinstance(v, str):
            return absolutize(v, ctx.page_url)
    return None


@strategy("meta.og_image")
def thumbnail_from_og(ctx: ExtractionContext) -> Optional[str]:
    return absolutize(ctx.meta(prop="og:image"), ctx.page_url)


_SAMPLE_IMAGE_PATTERNS = (
    re.compile(r"<a[^>]*href=[\"']([^\"']*members[^\"']*gallery[^\"']*\.jpg)[\"']", re.I),
    re.compile(r"<img[^>]*src=[\"']([^\"']*moviepages[^\"']*\.jpg)[\"']", re.I),
    re.compile(r"<a[^>]*href=[\"']([^\"']*/posters/[^\"']*\.jpg)[\"']", re.I),
    re.compile(r"<img[^>]*src=[\"']([^\"']*/contents/[^\"']*sample[^\"']*\.jpg)[\"']", re.I),
    re.compile(r"<img[^>]*src=[\"']([^\"']*sample[^\"']*\.jpg)[\"']", re.I),
)

@strategy("html.sample_images")
def sample_images_from_patterns(ctx: ExtractionContext) -> Optional[List[str]]:
    out: List[str] = []
    for pat in _SAMPLE_IMAGE_PATTERNS:
        for m in pat.finditer(ctx.text):
            url = absolutize(m.group(1), ctx.page_url)
            if url and url not in out and is_valid_image_url(url):
                out.append(url)
    return out or None


@strategy("site.sample_video_template")
def sample_video_from_template(ctx: ExtractionContext) -> Optional[str]:
    return ctx.site.sample_video_url(ctx.local_id)


@strategy("html.video_source")
def sample_video_from_source_tag(ctx: ExtractionContext) -> Optional[str]:
    el = ctx.soup.select_one("video source[src], source[src$='.mp4']")
    return absolutize(el.get("src"), ctx.page_url) if el is not None else None


# ========== Price ==========

_EC_PRICE = re.compile(r"var\s+ec_price\s*=\s*parseFloat\s*\(\s*['\"](\d+(?:\.\d+)?)['\"]\s*\)")
_EC_ITEM_PRICE = re.compile(r"ec_item_price\s*=\s*['\"]?(\d+(?:\.\d+)?)['\"]?")
_YEN = re.compile(r"[¥￥]\s*(\d{1,3}(?:,\d{3})+|\d+)|(\d{1,3}(?:,\d{3})+|\d+)\s*円")


@strategy("script.ec_price_usd")
def price_from_ec_price(ctx: ExtractionContext) -> Optional[int]:
    m = _EC_PRICE.search(ctx.text)
    return round(float(m.group(1)) * ctx.options.usd_jpy_rate) if m else None


@strategy("script.ec_item_price_usd")
def price_from_ec_item_price(ctx: ExtractionContext) -> Optional[int]:
    m = _EC_ITEM_PRICE.search(ctx.text)
    return round(float(m.group(1)) * ctx.options.usd_jpy_rate) if m else None


_PRICE_AMOUNT = r"(?:[¥￥]\s*[\d,，]+|[\d,，]+\s*円)"
_PRICE_LABEL = re.compile(
    rf"(?:価格|販売価格|料金)\s*[:：]?\s*({_PRICE_AMOUNT}(?:\s*[→⇒]\s*{_PRICE_AMOUNT})?"
    r"(?:\s*[（(]?\s*\d+\s*%\s*(?:OFF|引き|オフ)\s*[）)]?)?)",
    re.I,
)


@strategy("text.price_label")
def price_from_label(ctx: ExtractionContext) -> Optional[int]:
    """``価格: ¥2,980 → ¥1,980 (33%OFF)`` yields the price actually charged."""
    m = _PRICE_LABEL.search(strip_html(ctx.text))
    if not m:
        return None
    info = extract_price_info(m.group(1))
    return info.price if info else None


@strategy("text.yen")
def price_from_yen(ctx: ExtractionContext) -> Optional[int]:
    m = _YEN.search(strip_html(ctx.text))
    return extract_price(m.group(0)) if m else None


# ========== Tags ==========

@strategy("links.genres")
def tags_from_genre_links(ctx: ExtractionContext) -> Optional[List[str]]:
    out: List[str] = []
    for a in ctx.soup.select('a[href*="/listpages/"], a[itemprop="genre"], a[href*="/genre/"]'):
        t = sanitize_text(a.get_text(" "))
        if t and len(t) <= 30 and t not in out:
            out.append(t)
    return out or None


# ========== Default strategy table ==========

DEFAULT_STRATEGIES: Dict[str, Tuple[Strategy, ...]] = {
    "title": (title_from_side_channel, title_from_page_title),
    "description": (description_from_side_channel, description_from_meta, description_from_og),
    "performers": (
        performers_from_side_channel,
        performers_from_ec_brand,
        performers_from_cast_label,
        performers_from_title_reading,
        performers_from_inline_label,
    ),
    "release_date": (release_from_side_channel, release_from_label, release_from_date_cell),
    "duration_min": (duration_from_side_channel, duration_from_label, duration_from_minutes),
    "thumbnail_url": (thumbnail_from_side_channel, thumbnail_from_og),
    "sample_images": (sample_images_from_patterns,),
    "sample_video_url": (sample_video_from_template, sample_video_from_source_tag),
    "price": (price_from_ec_price, price_from_ec_item_price, price_from_label, price_from_yen),
    "tags": (tags_from_genre_links,),
}


# ========== Plausibility ==========

def _accept_title(ctx: ExtractionContext, value: Any) -> Any:
    if not isinstance(value, str):
        return None
    ok = is_plausible_title(
        value,
        site_names=ctx.site.all_site_names,
        asp_name=ctx.site.asp_name,
        local_id=ctx.local_id,
        min_length=ctx.options.title_min_length,
    )
    return value if ok else None


def _accept_description(ctx: ExtractionContext, value: Any) -> Any:
    if not isinstance(value, str) or is_top_page_description(value):
        return None
    return value


def _accept_performers(ctx: ExtractionContext, value: Any) -> Any:
    if not value:
        return None
    seen: set[str] = set()
    out: List[ParsedPerformer] = []
    for raw in value:
        parsed = parse_performer_name(str(raw))
        if parsed is None:
            continue
        if not is_valid_performer_name(parsed.name, max_length=ctx.options.performer_name_max_length):
            logger.debug("performer candidate rejected: %r", raw)
            continue
        if parsed.name in seen:
            continue
        seen.add(parsed.name)
        parsed.aliases = [
            a for a in parsed.aliases
            if a != parsed.name and is_valid_performer_name(a, max_length=ctx.options.performer_name_max_length)
        ]
        out.append(parsed)
    return out or None


def _accept_positive_int(ctx: ExtractionContext, value: Any) -> Any:
    return value if isinstance(value, int) and value > 0 else None


def _accept_image(ctx: ExtractionContext, value: Any) -> Any:
    return value if is_valid_image_url(value) else None


def _accept_video(ctx: ExtractionContext, value: Any) -> Any:
    return value if is_valid_video_url(value) else None


def _accept_images(ctx: ExtractionContext, value: Any) -> Any:
    if not value:
        return None
    return [u for u in value if is_valid_image_url(u)] or None


def _accept_nonempty(ctx: ExtractionContext, value: Any) -> Any:
    return value or None


ACCEPTORS: Dict[str, Callable[[ExtractionContext, Any], Any]] = {
    "title": _accept_title,
    "description": _accept_description,
    "performers": _accept_performers,
    "release_date": _accept_nonempty,
    "duration_min": _accept_positive_int,
    "thumbnail_url": _accept_image,
    "sample_images": _accept_images,
    "sample_video_url": _accept_video,
    "price": _accept_positive_int,
    "tags": _accept_nonempty,
}


def first_plausible(ctx: ExtractionContext, field_name: str, strategies: Sequence[Strategy]) -> Tuple[Any, Optional[str]]:
    """Run strategies in order; the first value that survives the field's acceptor wins."""
    accept = ACCEPTORS.get(field_name, _accept_nonempty)
    for fn in strategies:
        try:
            value = fn(ctx)
        except Exception as e:
            # Malformed markup must not sink the record; try the next strategy.
            logger.debug("strategy %s failed for %s: %s", _name_of(fn), field_name, e)
            continue
        value = accept(ctx, value)
        if value is not None:
            return value, _name_of(fn)
    return None, None


# ========== Entry point ==========

def extract(
    text: str,
    site: Any,
    local_id: str,
    side_channel: Optional[Mapping[str, Any]] = None,
    *,
    page_url: Optional[str] = None,
    options: ExtractionOptions = ExtractionOptions(),
) -> Extraction:
    """
    Turn page text (plus optional structured data) into a candidate record.

    Pure: no I/O, never raises on malformed input. ``record`` is None when the
    page is a landing/age-gate page or no plausible title survives.
    """
    page_url = page_url or site.page_url(local_id)
    ctx = ExtractionContext(
        text, site=site, local_id=local_id, page_url=page_url,
        side_channel=side_channel, options=options,
    )

    if not side_channel:
        if not ctx.text.strip():
            return Extraction(None, "empty page")
        if any(marker in ctx.text for marker in getattr(site, "top_page_markers", ())):
            return Extraction(None, "top page marker")
        if is_top_page_html(ctx.text):
            return Extraction(None, "age gate / top page")

    table = site.strategy_table() if hasattr(site, "strategy_table") else DEFAULT_STRATEGIES

    title, title_src = first_plausible(ctx, "title", table.get("title", ()))
    if title is None:
        return Extraction(None, "no plausible title")

    record = CandidateRecord(title=title)
    record.sources["title"] = title_src or ""
    for field_name in (
        "description", "performers", "release_date", "duration_min", "thumbnail_url",
        "sample_images", "sample_video_url", "price", "tags",
    ):
        value, src = first_plausible(ctx, field_name, table.get(field_name, ()))
        if value is None:
            continue
        setattr(record, field_name, value)
        record.sources[field_name] = src or ""

    if record.thumbnail_url and record.thumbnail_url in record.sample_images:
        record.sample_images = [u for u in record.sample_images if u != record.thumbnail_url]
    return Extraction(record)
