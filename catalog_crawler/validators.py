from __future__ import annotations

import re
from typing import Iterable, Optional

# ---------- Performer names ----------

# Whole-name matches: genre words that sites put in the performer slot.
GENERIC_NAME_WORDS = frozenset({
    "素人", "ナンパ", "企画", "熟女", "人妻", "モデル", "他", "-", "---", "N/A", "n/a",
})

# Substrings that never occur in a real stage name.
GENERIC_NAME_SUBSTRINGS = (
    "動画", "サンプル", "無料", "高画質", "カテゴリ", "タグ", "ジャンル",
    "人気", "ランキング", "新着", "特集", "セール", "配信", "企画",
)

# Latin marketing tokens, matched as whole words so that names like "Ava Addams" survive.
GENERIC_NAME_TOKENS = re.compile(r"(?i)(?<![A-Za-z])(AV|HD|4K|VR|page|next|prev)(?![A-Za-z])")

_PURE_DIGITS = re.compile(r"^[0-9０-９]+$")
_ASCII_IDENT = re.compile(r"^[A-Za-z0-9_\-]+$")
_SINGLE_KANA = re.compile(r"^[ぁ-んァ-ンー]$")
_SINGLE_KANJI = re.compile(r"^[一-鿿]$")
_ALLOWED_CHARS = re.compile(r"^[ぁ-んァ-ヶー一-鿿々〆A-Za-z .・'\-]+$")


def is_valid_performer_name(name: Optional[str], *, max_length: int = 30) -> bool:
    """
    Reject strings that naive patterns capture in place of a performer name:
    numbers, ids, single characters, genre words, placeholders and overlong text.
    """
    if not name:
        return False
    s = name.strip()
    if len(s) < 2 or len(s) > max_length:
        return False
    if s in GENERIC_NAME_WORDS:
        return False
    if _PURE_DIGITS.match(s) or _ASCII_IDENT.match(s):
        return False
    if _SINGLE_KANA.match(s) or _SINGLE_KANJI.match(s):
        return False
    if s.startswith("素人") or s.startswith("→"):
        return False
    if any(w in s for w in GENERIC_NAME_SUBSTRINGS):
        return False
    if GENERIC_NAME_TOKENS.search(s):
        return False
    return bool(_ALLOWED_CHARS.match(s))


# ---------- Titles ----------

TOP_PAGE_TITLE_PATTERNS = (
    re.compile(r"^ソクミル-\d+$"),
    re.compile(r"^Japanska-\d+$", re.I),
    re.compile(r"^FC2動画アダルト$"),
    re.compile(r"^MGS動画\s*[(（]成人認証[)）]"),
    re.compile(r"^年齢認証"),
    re.compile(r"^ページが見つかりません"),
    re.compile(r"(?i)^404\b|not found$"),
)

TOP_PAGE_DESCRIPTION_PATTERNS = (
    re.compile(r"18歳未満.*閲覧.*禁止"),
    re.compile(r"年齢確認.*18歳以上"),
    re.compile(r"アダルトサイトです"),
    re.compile(r"無修正アダルト動画.*サイト$"),
)

_AGE_CHECK_HTML = (
    re.compile(r"18歳未満の方"),
    re.compile(r"年齢認証"),
    re.compile(r"(?i)are you (over )?18"),
    re.compile(r"(?i)age[-_ ]?(check|verification)"),
)


def is_placeholder_title(title: str, asp_name: str, local_id: str) -> bool:
    """``{ASP}-{id}`` is what the site prints when it has nothing real to say."""
    pattern = rf"^{re.escape(asp_name)}-{re.escape(local_id)}$"
    return re.match(pattern, title.strip(), re.I) is not None


def is_top_page_title(title: str) -> bool:
    t = title.strip()
    return any(p.search(t) for p in TOP_PAGE_TITLE_PATTERNS)


def is_top_page_description(description: str) -> bool:
    return any(p.search(description) for p in TOP_PAGE_DESCRIPTION_PATTERNS)


def is_plausible_title(
    title: Optional[str],
    *,
    site_names: Iterable[str] = (),
    asp_name: Optional[str] = None,
    local_id: Optional[str] = None,
    min_length: int = 3,
) -> bool:
    if not title:
        return False
    t = title.strip()
    if len(t) < min_length:
        return False
    if any(t == n for n in site_names if n):
        return False
    if asp_name and local_id and is_placeholder_title(t, asp_name, local_id):
        return False
    return not is_top_page_title(t)


def is_top_page_html(html: str) -> bool:
    """
    Age-gate / landing page served in place of a detail page.

    Age-check wording alone is not enough: real detail pages carry the same
    footer. Only pages with no price and no performer label count.
    """
    if not html:
        return True
    if not any(p.search(html) for p in _AGE_CHECK_HTML):
        return False
    has_price = bool(re.search(r"(ec_price|ec_item_price|[¥￥]\s*\d|\d\s*円)", html))
    has_cast = "出演" in html
    return not has_price and not has_cast
