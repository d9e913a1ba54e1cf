from __future__ import annotations

import logging
import os
import re
import sqlite3
import time
from datetime import datetime, timezone
from email.utils import parsedate_to_datetime
from hashlib import sha256
from pathlib import Path
from typing import Any, Optional

import tldextract
from tenacity import retry, retry_if_exception, stop_after_attempt, wait_exponential_jitter

logger = logging.getLogger(__name__)

# ========== Environment helpers ==========

def getenv_str(name: str, default: str) -> str:
    v = os.getenv(name)
    return v if v is not None and v.strip() else default

def getenv_int(name: str, default: int, min_val: Optional[int] = None, max_val: Optional[int] = None) -> int:
    raw = os.getenv(name)
    if raw is None:
        return default
    try:
        val = int(raw)
    except ValueError:
        return default
    if min_val is not None:
        val = max(min_val, val)
    if max_val is not None:
        val = min(max_val, val)
    return val

def getenv_float(name: str, default: float, min_val: Optional[float] = None, max_val: Optional[float] = None) -> float:
    raw = os.getenv(name)
    if raw is None:
        return default
    try:
        val = float(raw)
    except ValueError:
        return default
    if min_val is not None:
        val = max(min_val, val)
    if max_val is not None:
        val = min(max_val, val)
    return val

# ========== Exceptions & HTTP status mapping ==========

class TransientHTTPError(Exception):
    """Transient HTTP/Net error (429/5xx/timeouts). Counted like a miss; never retried in-run."""

class NonRetryableHTTPError(Exception):
    """The identifier has no resource behind it (404/410)."""

class StorageError(Exception):
    """A catalog write was rejected. Logged per record; the run continues."""

class FatalCrawlError(Exception):
    """Aborts the run with a non-zero exit code."""

class StorageUnavailable(FatalCrawlError):
    """Cache or catalog database cannot be opened at startup."""

def http_status_to_exc(status: Optional[int]) -> Optional[Exception]:
    if status is None:
        return None
    if status in (404, 410):
        return NonRetryableHTTPError(f"{status} Not Found")
    if status >= 400:
        # 403/429/5xx on these sites are mostly gate-keepers or overload; not proof the id is empty.
        return TransientHTTPError(f"HTTP {status}")
    return None


def parse_retry_after_header(headers: dict[str, str] | Any) -> Optional[float]:
    """
    Parse Retry-After header. Supports:
      - integer seconds
      - HTTP-date
    Returns seconds (float) or None.
    """
    if not headers:
        return None
    try:
        ra = None
        for k, v in headers.items():
            if k.lower() == "retry-after":
                ra = v
                break
        if not ra:
            return None
        ra = ra.strip()
        if not ra:
            return None
        if ra.isdigit():
            return float(int(ra))
        dt = parsedate_to_datetime(ra)
        if not dt:
            return None
        delta = (dt.timestamp() - time.time())
        return float(max(0.0, delta))
    except Exception:
        return None


# ========== Domain helpers ==========

def get_base_domain(host: str) -> str:
    """
    Return registrable domain (eTLD+1); fall back to host if unknown.
    """
    if not host:
        return "unknown-host"
    host = host.strip().lower()
    if host.startswith("www."):
        host = host[4:]
    try:
        ext = tldextract.extract(host)
        td = getattr(ext, "top_domain_under_public_suffix", None)
        if td:
            return td
        if ext.domain and ext.suffix:
            return f"{ext.domain}.{ext.suffix}"
    except Exception:
        pass
    return host


# ========== Hashing ==========

def content_hash(text: str) -> str:
    return sha256((text or "").encode("utf-8")).hexdigest()


# ========== Time helpers ==========

def now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()

def parse_iso(s: Optional[str]) -> Optional[datetime]:
    if not s:
        return None
    try:
        dt = datetime.fromisoformat(s)
    except ValueError:
        return None
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt


# ========== Text helpers ==========

_FULLWIDTH_ALNUM = re.compile(r"[Ａ-Ｚａ-ｚ０-９]")

def normalize_text(text: Optional[str]) -> str:
    """Full-width ASCII letters/digits to half-width, ideographic space to ASCII, collapse runs."""
    if not text:
        return ""
    out = _FULLWIDTH_ALNUM.sub(lambda m: chr(ord(m.group(0)) - 0xFEE0), text)
    out = out.replace("　", " ")
    return re.sub(r"\s+", " ", out).strip()

def normalize_product_id(pid: str) -> str:
    return (pid or "").strip().lower()


# ========== Retry decorators ==========

def _is_lock_contention(exc: BaseException) -> bool:
    return isinstance(exc, sqlite3.OperationalError) and "locked" in str(exc).lower()

def retry_sync(max_attempts: int, initial_delay_ms: int, max_delay_ms: int, jitter_ms: int):
    """Retry a sqlite write while another process holds the database lock."""
    return retry(
        reraise=True,
        stop=stop_after_attempt(max_attempts),
        wait=wait_exponential_jitter(
            initial=initial_delay_ms / 1000.0,
            max=max_delay_ms / 1000.0,
            jitter=jitter_ms / 1000.0,
        ),
        retry=retry_if_exception(_is_lock_contention),
    )


# ========== File I/O ==========

def atomic_write_text(path: Path, data: str, encoding: str = "utf-8") -> None:
    """
    Write text atomically using a NamedTemporaryFile and os.replace on the same filesystem.
    """
    import tempfile
    path.parent.mkdir(parents=True, exist_ok=True)
    with tempfile.NamedTemporaryFile("w", encoding=encoding, dir=str(path.parent), delete=False) as tmp:
        tmp.write(data)
        tmp.flush()
        os.fsync(tmp.fileno())
        tmp_name = tmp.name
    os.replace(tmp_name, path)
