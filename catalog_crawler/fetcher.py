from __future__ import annotations

import asyncio
import json
import logging
from dataclasses import dataclass, field
from typing import Any, Dict, Mapping, Optional, Union
from urllib.parse import urlparse

import httpx
import httpcore

from .utils import (
    NonRetryableHTTPError,
    TransientHTTPError,
    http_status_to_exc,
    parse_retry_after_header,
)

logger = logging.getLogger(__name__)


# ---------- Outcomes ----------

@dataclass(frozen=True)
class Fetched:
    url: str
    status: int
    body: bytes
    headers: Dict[str, str] = field(default_factory=dict)
    final_url: Optional[str] = None

    @property
    def content_type(self) -> Optional[str]:
        return self.headers.get("content-type")


@dataclass(frozen=True)
class NotFound:
    url: str
    status: Optional[int] = None
    reason: str = "not found"


@dataclass(frozen=True)
class TransientError:
    url: str
    reason: str
    status: Optional[int] = None
    retry_after: Optional[float] = None
    timed_out: bool = False


FetchResult = Union[Fetched, NotFound, TransientError]


def _is_top_page_redirect(requested: str, final: str) -> bool:
    """Missing ids on several sites 30x to the home page instead of returning 404."""
    if not final or final == requested:
        return False
    rp, fp = urlparse(requested), urlparse(final)
    if (rp.path or "/") == (fp.path or "/"):
        return False
    return (fp.path or "/") in ("", "/", "/index.html", "/index.php")


def build_client(
    *,
    user_agent: str,
    accept_language: str,
    timeout_s: float,
    transport: Optional[httpx.AsyncBaseTransport] = None,
) -> httpx.AsyncClient:
    headers = {
        "User-Agent": user_agent,
        "Accept": "text/html,application/xhtml+xml,application/xml;q=0.9,*/*;q=0.8",
        "Accept-Language": accept_language,
    }
    limits = httpx.Limits(max_keepalive_connections=4, max_connections=8)
    kwargs: Dict[str, Any] = dict(
        timeout=httpx.Timeout(timeout_s),
        limits=limits,
        headers=headers,
        follow_redirects=True,
        max_redirects=5,
    )
    if transport is not None:
        kwargs["transport"] = transport
    return httpx.AsyncClient(**kwargs)


class Fetcher:
    """
    Single GET per call, classified into Fetched / NotFound / TransientError.

    Never retries: a failed id is the Controller's business (breaker + advance).
    """

    def __init__(
        self,
        *,
        user_agent: str,
        accept_language: str = "ja,en;q=0.8",
        timeout_ms: int = 30000,
        cookie: Optional[str] = None,
        client: Optional[httpx.AsyncClient] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self.timeout_s = max(0.1, timeout_ms / 1000.0)
        self.cookie = cookie
        self._owns_client = client is None
        self._client = client or build_client(
            user_agent=user_agent,
            accept_language=accept_language,
            timeout_s=self.timeout_s,
            transport=transport,
        )

    async def aclose(self) -> None:
        if self._owns_client and not self._client.is_closed:
            await self._client.aclose()

    async def __aenter__(self) -> "Fetcher":
        return self

    async def __aexit__(self, *exc) -> None:
        await self.aclose()

    def _request_headers(self, extra: Optional[Mapping[str, str]] = None) -> Dict[str, str]:
        headers: Dict[str, str] = {}
        if self.cookie:
            headers["Cookie"] = self.cookie
        if extra:
            headers.update(extra)
        return headers

    async def _get(self, url: str, timeout: Optional[float], headers: Dict[str, str]) -> httpx.Response:
        # wait_for cancels the in-flight request, including a body that trickles in slowly.
        return await asyncio.wait_for(
            self._client.get(url, headers=headers),
            timeout=timeout if timeout is not None else self.timeout_s,
        )

    async def fetch(self, url: str, timeout: Optional[float] = None) -> FetchResult:
        try:
            r = await self._get(url, timeout, self._request_headers())
        except asyncio.TimeoutError:
            return TransientError(url=url, reason="timeout", timed_out=True)
        except httpx.TimeoutException as e:
            return TransientError(url=url, reason=f"timeout: {e}", timed_out=True)
        except httpx.TooManyRedirects as e:
            return TransientError(url=url, reason=f"redirect loop: {e}")
        except (httpx.NetworkError, httpx.RemoteProtocolError, httpcore.ProtocolError) as e:
            return TransientError(url=url, reason=f"network: {e}")
        except httpx.HTTPError as e:
            return TransientError(url=url, reason=f"http: {e}")

        s = r.status_code
        exc = http_status_to_exc(s)
        if isinstance(exc, NonRetryableHTTPError):
            return NotFound(url=url, status=s, reason=str(exc))
        if isinstance(exc, TransientHTTPError):
            return TransientError(
                url=url,
                reason=str(exc),
                status=s,
                retry_after=parse_retry_after_header(r.headers) if s in (429, 503) else None,
            )

        final_url = str(r.url)
        if _is_top_page_redirect(url, final_url):
            return NotFound(url=url, status=s, reason=f"redirected to {final_url}")

        headers = {k.lower(): v for k, v in r.headers.items()}
        return Fetched(url=url, status=s, body=r.content, headers=headers, final_url=final_url)

    async def fetch_json(self, url: str, timeout: Optional[float] = None) -> Optional[Dict[str, Any]]:
        """Side-channel lookup. Any failure means 'no structured data'."""
        result = await self.fetch(url, timeout)
        if not isinstance(result, Fetched):
            logger.debug("side-channel %s unavailable: %s", url, getattr(result, "reason", result))
            return None
        try:
            payload = json.loads(result.body.decode("utf-8", errors="replace"))
        except ValueError as e:
            logger.debug("side-channel %s returned invalid JSON: %s", url, e)
            return None
        return payload if isinstance(payload, dict) else None
