import asyncio
import json

import httpx
import pytest

from catalog_crawler.fetcher import Fetched, Fetcher, NotFound, TransientError

PAGE = "https://www.heyzo.com/moviepages/3500/index.html"


def _fetcher(handler, **kw) -> Fetcher:
    return Fetcher(user_agent="test-agent", transport=httpx.MockTransport(handler), **kw)


@pytest.mark.asyncio
async def test_success_returns_body_and_lowercased_headers():
    seen = {}

    def handler(request: httpx.Request) -> httpx.Response:
        seen["ua"] = request.headers.get("user-agent")
        seen["cookie"] = request.headers.get("cookie")
        return httpx.Response(200, content="<html>ok</html>".encode("euc_jp"),
                              headers={"Content-Type": "text/html; charset=EUC-JP"})

    async with _fetcher(handler, cookie="ageCheck=1") as f:
        r = await f.fetch(PAGE)

    assert isinstance(r, Fetched)
    assert r.status == 200
    assert r.body == b"<html>ok</html>"
    assert r.content_type == "text/html; charset=EUC-JP"
    assert r.final_url == PAGE
    assert seen == {"ua": "test-agent", "cookie": "ageCheck=1"}


@pytest.mark.asyncio
@pytest.mark.parametrize("status", [404, 410])
async def test_missing_is_not_found(status):
    async with _fetcher(lambda req: httpx.Response(status)) as f:
        r = await f.fetch(PAGE)
    assert isinstance(r, NotFound)
    assert r.status == status


@pytest.mark.asyncio
@pytest.mark.parametrize("status", [403, 500, 502])
async def test_server_errors_are_transient(status):
    async with _fetcher(lambda req: httpx.Response(status)) as f:
        r = await f.fetch(PAGE)
    assert isinstance(r, TransientError)
    assert r.status == status
    assert r.retry_after is None


@pytest.mark.asyncio
async def test_429_carries_retry_after():
    async with _fetcher(lambda req: httpx.Response(429, headers={"Retry-After": "7"})) as f:
        r = await f.fetch(PAGE)
    assert isinstance(r, TransientError)
    assert r.status == 429
    assert r.retry_after == 7.0


@pytest.mark.asyncio
async def test_transport_errors_are_transient():
    def handler(request):
        raise httpx.ConnectError("refused", request=request)

    async with _fetcher(handler) as f:
        r = await f.fetch(PAGE)
    assert isinstance(r, TransientError)
    assert not r.timed_out


@pytest.mark.asyncio
async def test_httpx_timeout_is_transient_and_flagged():
    def handler(request):
        raise httpx.ReadTimeout("slow", request=request)

    async with _fetcher(handler) as f:
        r = await f.fetch(PAGE)
    assert isinstance(r, TransientError)
    assert r.timed_out


@pytest.mark.asyncio
async def test_overall_deadline_aborts_slow_response():
    async def handler(request):
        await asyncio.sleep(5)
        return httpx.Response(200, content=b"late")

    async with _fetcher(handler) as f:
        r = await f.fetch(PAGE, timeout=0.05)
    assert isinstance(r, TransientError)
    assert r.timed_out


@pytest.mark.asyncio
async def test_redirect_to_home_page_is_not_found():
    def handler(request: httpx.Request) -> httpx.Response:
        if request.url.path == "/":
            return httpx.Response(200, content=b"<html>home</html>")
        return httpx.Response(302, headers={"Location": "https://www.heyzo.com/"})

    async with _fetcher(handler) as f:
        r = await f.fetch(PAGE)
    assert isinstance(r, NotFound)
    assert "redirected" in r.reason


@pytest.mark.asyncio
async def test_fetch_json():
    payload = {"Title": "作品", "ActressesJa": ["佐々木あき"]}

    def handler(request: httpx.Request) -> httpx.Response:
        if request.url.path.endswith("good.json"):
            return httpx.Response(200, content=json.dumps(payload).encode("utf-8"))
        if request.url.path.endswith("bad.json"):
            return httpx.Response(200, content=b"<html>not json</html>")
        if request.url.path.endswith("list.json"):
            return httpx.Response(200, content=b"[1, 2]")
        return httpx.Response(404)

    async with _fetcher(handler) as f:
        assert await f.fetch_json("https://www.1pondo.tv/dyn/good.json") == payload
        assert await f.fetch_json("https://www.1pondo.tv/dyn/bad.json") is None
        assert await f.fetch_json("https://www.1pondo.tv/dyn/list.json") is None
        assert await f.fetch_json("https://www.1pondo.tv/dyn/missing.json") is None
