from __future__ import annotations

import codecs
import logging
import re
from typing import Optional, Tuple
from urllib.parse import urlparse

from .utils import get_base_domain

logger = logging.getLogger(__name__)

DEFAULT_ENCODING = "utf-8"
META_SCAN_BYTES = 4096

# Sites that serve EUC-JP but omit or mislabel the charset in their headers.
HOST_ENCODINGS: dict[str, str] = {
    "caribbeancom.com": "euc_jp",
    "caribbeancompr.com": "euc_jp",
    "1pondo.tv": "euc_jp",
    "heyzo.com": "euc_jp",
    "10musume.com": "euc_jp",
    "pacopacomama.com": "euc_jp",
}

_ALIASES: dict[str, str] = {
    "sjis": "shift_jis",
    "shift-jis": "shift_jis",
    "shift_jis": "shift_jis",
    "x-sjis": "shift_jis",
    "ms_kanji": "shift_jis",
    "windows-31j": "cp932",
    "cp932": "cp932",
    "eucjp": "euc_jp",
    "euc-jp": "euc_jp",
    "x-euc-jp": "euc_jp",
    "euc_jp": "euc_jp",
    "utf8": "utf-8",
    "utf-8": "utf-8",
}

_HEADER_CHARSET = re.compile(r"charset\s*=\s*[\"']?([^\s;\"']+)", re.I)
_META_CHARSET = re.compile(r"<meta[^>]+charset\s*=\s*[\"']?\s*([A-Za-z0-9_\-]+)", re.I)


def normalize_encoding_name(name: Optional[str]) -> Optional[str]:
    """Map spelling variants to a Python codec name; None if the label is unknown."""
    if not name:
        return None
    key = name.strip().strip("\"'").lower()
    if not key:
        return None
    if key in _ALIASES:
        return _ALIASES[key]
    try:
        return codecs.lookup(key).name
    except LookupError:
        logger.debug("Unknown charset label %r", name)
        return None


def charset_from_content_type(content_type: Optional[str]) -> Optional[str]:
    if not content_type:
        return None
    m = _HEADER_CHARSET.search(content_type)
    return normalize_encoding_name(m.group(1)) if m else None


def charset_from_host(url: Optional[str]) -> Optional[str]:
    if not url:
        return None
    host = urlparse(url).hostname or ""
    if not host:
        return None
    return HOST_ENCODINGS.get(get_base_domain(host))


def charset_from_meta(body: bytes) -> Optional[str]:
    # latin-1 maps every byte to one char, so the scan never fails on multi-byte content.
    head = body[:META_SCAN_BYTES].decode("latin-1")
    m = _META_CHARSET.search(head)
    return normalize_encoding_name(m.group(1)) if m else None


def resolve_encoding(
    body: bytes,
    content_type: Optional[str] = None,
    url: Optional[str] = None,
) -> Tuple[str, str]:
    """
    Decide which codec to decode ``body`` with.

    Order: explicit header charset, known-host table, in-document meta declaration,
    then UTF-8. Returns ``(encoding, source)`` where source is one of
    ``header``, ``host``, ``meta`` or ``default``.
    """
    enc = charset_from_content_type(content_type)
    if enc:
        return enc, "header"
    enc = charset_from_host(url)
    if enc:
        return enc, "host"
    enc = charset_from_meta(body or b"")
    if enc:
        return enc, "meta"
    return DEFAULT_ENCODING, "default"


def decode_body(
    body: bytes,
    content_type: Optional[str] = None,
    url: Optional[str] = None,
) -> str:
    """Decode raw bytes to text. Never raises."""
    if not body:
        return ""
    enc, source = resolve_encoding(body, content_type, url)
    try:
        return body.decode(enc)
    except (UnicodeDecodeError, LookupError) as e:
        logger.debug("Decode with %s (%s) failed for %s: %s; falling back to %s",
                     enc, source, url or "<bytes>", e, DEFAULT_ENCODING)
    if enc != DEFAULT_ENCODING:
        try:
            return body.decode(DEFAULT_ENCODING)
        except UnicodeDecodeError:
            pass
    return body.decode(DEFAULT_ENCODING, errors="replace")
