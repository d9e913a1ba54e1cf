from __future__ import annotations

import re
import unicodedata
from dataclasses import dataclass, field
from typing import List, Optional
from urllib.parse import urljoin, urlparse

from bs4 import BeautifulSoup

from .utils import normalize_text

# ========== Text cleaning ==========

def strip_html(fragment: Optional[str]) -> str:
    """Visible text of an HTML fragment, entities decoded, whitespace collapsed."""
    if not fragment:
        return ""
    if "<" not in fragment and "&" not in fragment:
        return re.sub(r"\s+", " ", fragment).strip()
    try:
        text = BeautifulSoup(fragment, "lxml").get_text(" ")
    except Exception:
        text = re.sub(r"<[^>]*>", " ", fragment)
    return re.sub(r"\s+", " ", text).strip()


_EDGE_BRACKETS = re.compile(r"^[\[【「『]\s*(.*?)\s*[\]】」』]$")

def sanitize_text(value: Optional[str]) -> Optional[str]:
    """Strip markup, collapse whitespace and drop one pair of wrapping brackets."""
    text = strip_html(value)
    if not text:
        return None
    m = _EDGE_BRACKETS.match(text)
    if m and m.group(1):
        text = m.group(1)
    return text or None


# ========== Price ==========

@dataclass
class PriceInfo:
    price: int
    original_price: Optional[int] = None
    discount_percent: Optional[int] = None


def extract_price(text: Optional[str]) -> Optional[int]:
    """
    >>> extract_price("¥1,980")
    1980
    >>> extract_price("1980円")
    1980
    """
    if not text:
        return None
    cleaned = re.sub(r"[¥￥$円,、\s]", "", text)
    m = re.search(r"(\d+)", cleaned)
    return int(m.group(1)) if m else None


def extract_price_info(text: Optional[str]) -> Optional[PriceInfo]:
    """Current and original price from strings like ``¥2,980 → ¥1,980 (33%OFF)``."""
    if not text:
        return None
    discount: Optional[int] = None
    dm = re.search(r"(\d+)\s*%\s*(OFF|引き|オフ)", text, re.I)
    if dm:
        discount = int(dm.group(1))

    without_pct = re.sub(r"\d+\s*%", " ", text)
    prices = []
    for m in re.finditer(r"[¥￥]?\s*(\d{1,3}(?:[,，]\d{3})+|\d+)\s*円?", without_pct):
        val = int(re.sub(r"[,，]", "", m.group(1)))
        if val > 0:
            prices.append(val)
    if not prices:
        return None
    if len(prices) == 1:
        return PriceInfo(price=prices[0], discount_percent=discount)

    prices.sort(reverse=True)
    original, current = prices[0], prices[1]
    if discount is None and original > current:
        discount = round((original - current) / original * 100)
    return PriceInfo(price=current, original_price=original, discount_percent=discount)


# ========== Dates & durations ==========

_EN_MONTHS = {
    "jan": 1, "january": 1, "feb": 2, "february": 2, "mar": 3, "march": 3,
    "apr": 4, "april": 4, "may": 5, "jun": 6, "june": 6, "jul": 7, "july": 7,
    "aug": 8, "august": 8, "sep": 9, "sept": 9, "september": 9, "oct": 10, "october": 10,
    "nov": 11, "november": 11, "dec": 12, "december": 12,
}

def _fmt_date(year: str, month: str, day: str) -> Optional[str]:
    y = f"20{year}" if len(year) == 2 else year
    try:
        yi, mi, di = int(y), int(month), int(day)
    except ValueError:
        return None
    if not (1 <= mi <= 12 and 1 <= di <= 31):
        return None
    return f"{yi:04d}-{mi:02d}-{di:02d}"


def parse_date(text: Optional[str]) -> Optional[str]:
    """
    Normalize a date to ``YYYY-MM-DD``.

    Accepts ``2024年1月15日``, ``2024/01/15``, ``2024-01-15``, ``2024.01.15``,
    US ``01/15/2024`` and ``Jan 15, 2024``.
    """
    if not text:
        return None
    s = normalize_text(text)

    m = re.search(r"(\d{4})年\s*(\d{1,2})月\s*(\d{1,2})日", s)
    if m:
        return _fmt_date(*m.groups())

    m = re.search(r"(\d{2,4})[/\-.](\d{1,2})[/\-.](\d{1,4})", s)
    if m:
        p1, p2, p3 = m.groups()
        if len(p1) == 4 or int(p1) > 12:
            return _fmt_date(p1, p2, p3)
        if len(p3) == 4:
            return _fmt_date(p3, p1, p2)
        return _fmt_date(p1, p2, p3)

    m = re.search(r"([A-Za-z]+)\.?\s+(\d{1,2}),?\s*(\d{4})", s)
    if m:
        month = _EN_MONTHS.get(m.group(1).lower())
        if month:
            return _fmt_date(m.group(3), str(month), m.group(2))
    return None


def parse_duration(text: Optional[str]) -> Optional[int]:
    """
    Minutes from ``120分``, ``2時間``, ``1時間30分``, ``02:30:00`` or ``45:10``.
    """
    if not text:
        return None
    s = normalize_text(text)

    m = re.search(r"(\d+)\s*時間\s*(?:(\d+)\s*分)?", s)
    if m:
        return int(m.group(1)) * 60 + (int(m.group(2)) if m.group(2) else 0)

    m = re.search(r"(\d+)\s*分", s)
    if m:
        return int(m.group(1))

    m = re.search(r"(\d{1,2}):(\d{2})(?::(\d{2}))?", s)
    if m:
        if m.group(3):
            return int(m.group(1)) * 60 + int(m.group(2))
        return int(m.group(1))

    if re.fullmatch(r"\d+", s):
        return int(s)
    return None


# ========== Performer names ==========

@dataclass
class ParsedPerformer:
    name: str
    kana: Optional[str] = None
    aliases: List[str] = field(default_factory=list)


def normalize_performer_name(name: str) -> str:
    """NFKC width folding, single spaces, trailing parenthetical removed."""
    s = unicodedata.normalize("NFKC", name or "")
    s = re.sub(r"\s+", " ", s).strip()
    s = re.sub(r"\s*\([^)]*\)$", "", s)
    return s.strip()


_KANA_READING = re.compile(r"^(.+?)\s*[（(]\s*([ぁ-んァ-ンー\s]+)\s*[）)]$")
_ALIAS_GROUP = re.compile(r"^(.+?)\s*[（(]\s*([^）)]+)\s*[）)]$")
_SLASH_ALIAS = re.compile(r"^(.+?)\s*[/／]\s*(.+)$")


def parse_performer_name(text: Optional[str]) -> Optional[ParsedPerformer]:
    """
    Split one performer credit into name, reading and aliases.

    ``山田花子（やまだはなこ）`` -> reading; ``山田花子 / Hanako`` -> alias;
    ``山田花子(田中花子・花子)`` -> two aliases.
    """
    if not text:
        return None
    s = re.sub(r"\s+", " ", text.replace("　", " ")).strip()
    if not s:
        return None

    m = _KANA_READING.match(s)
    if m:
        return ParsedPerformer(name=normalize_performer_name(m.group(1)), kana=m.group(2).replace(" ", ""))

    m = _ALIAS_GROUP.match(s)
    if m:
        aliases = [a.strip() for a in re.split(r"[・、,/／]", m.group(2)) if a.strip()]
        return ParsedPerformer(name=normalize_performer_name(m.group(1)),
                               aliases=[normalize_performer_name(a) for a in aliases])

    m = _SLASH_ALIAS.match(s)
    if m:
        return ParsedPerformer(name=normalize_performer_name(m.group(1)),
                               aliases=[normalize_performer_name(m.group(2))])

    return ParsedPerformer(name=normalize_performer_name(s))


def split_performer_credits(text: Optional[str], separators: str = r"[,、，\n]+") -> List[str]:
    if not text:
        return []
    return [p.strip() for p in re.split(separators, text) if p and p.strip()]


# ========== URLs ==========

_IMAGE_EXT = re.compile(r"\.(jpe?g|png|gif|webp)(\?.*)?$", re.I)
_VIDEO_EXT = re.compile(r"\.(mp4|m3u8|webm|mov)(\?.*)?$", re.I)
_PLACEHOLDER_IMG = re.compile(r"(noimage|no_image|now_printing|placeholder|spacer|blank)\.", re.I)


def absolutize(url: Optional[str], base: str) -> Optional[str]:
    if not url:
        return None
    url = url.strip()
    if url.startswith("//"):
        url = "https:" + url
    return urljoin(base, url)


def is_valid_image_url(url: Optional[str]) -> bool:
    if not url:
        return False
    p = urlparse(url)
    if p.scheme not in ("http", "https") or not p.netloc:
        return False
    if _PLACEHOLDER_IMG.search(p.path):
        return False
    return bool(_IMAGE_EXT.search(p.path))


def is_valid_video_url(url: Optional[str]) -> bool:
    if not url:
        return False
    p = urlparse(url)
    if p.scheme not in ("http", "https") or not p.netloc:
        return False
    return bool(_VIDEO_EXT.search(p.path))
