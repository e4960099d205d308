import asyncio

import httpx
import pytest

from concat_relay.errors import ErrorCode, FetchError
from concat_relay.fetcher import CachingFetcher, HttpFetcher, build_fetcher, parse_cache_control
from concat_relay.schema import CacheMetadata, FetchResponse
from concat_relay.settings import get_settings


def _http_fetcher(handler):
    client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    return HttpFetcher(get_settings(), client=client)


class ScriptedUpstream:
    def __init__(self, *outcomes, delay=0.0):
        self.outcomes = list(outcomes)
        self.calls = 0
        self.delay = delay

    async def fetch(self, url, bypass_cache=False):
        self.calls += 1
        if self.delay:
            await asyncio.sleep(self.delay)
        outcome = self.outcomes.pop(0)
        if isinstance(outcome, Exception):
            raise outcome
        return outcome


class Clock:
    def __init__(self):
        self.now = 1000.0

    def __call__(self):
        return self.now


def test_parse_cache_control():
    assert parse_cache_control(None) == CacheMetadata()
    assert parse_cache_control("public, max-age=600") == CacheMetadata(max_age=600)
    assert parse_cache_control("no-store").no_cache
    assert parse_cache_control("private, max-age=5").no_cache
    assert parse_cache_control("max-age=abc").max_age is None


def test_http_fetcher_returns_response():
    def handler(request):
        assert request.headers["user-agent"] == "concat-relay/0.1"
        return httpx.Response(
            200,
            content=b"A();",
            headers={"Content-Type": "text/javascript", "Cache-Control": "max-age=60"},
        )

    async def go():
        fetcher = _http_fetcher(handler)
        try:
            return await fetcher.fetch("http://a/x.js")
        finally:
            await fetcher.aclose()

    response = asyncio.run(go())
    assert response.ok
    assert response.body == b"A();"
    assert response.content_type == "text/javascript"
    assert response.cache.max_age == 60


def test_http_fetcher_passes_through_error_status():
    async def go():
        fetcher = _http_fetcher(lambda request: httpx.Response(404, content=b"nope"))
        return await fetcher.fetch("http://a/missing.js")

    response = asyncio.run(go())
    assert response.status_code == 404
    assert not response.ok


def test_http_fetcher_sends_no_cache_when_bypassing():
    seen = {}

    def handler(request):
        seen["cache-control"] = request.headers.get("cache-control")
        return httpx.Response(200, content=b"")

    asyncio.run(_http_fetcher(handler).fetch("http://a/x.js", bypass_cache=True))
    assert seen["cache-control"] == "no-cache"


def test_http_fetcher_transport_error_is_soft():
    def handler(request):
        raise httpx.ConnectError("refused", request=request)

    with pytest.raises(FetchError) as exc:
        asyncio.run(_http_fetcher(handler).fetch("http://a/x.js"))
    assert exc.value.soft
    assert exc.value.http_status == 504


def test_http_fetcher_enforces_size_limit(monkeypatch):
    monkeypatch.setenv("CONCAT_MAX_RESPONSE_BYTES", "8")
    fetcher = _http_fetcher(lambda request: httpx.Response(200, content=b"x" * 64))

    with pytest.raises(FetchError) as exc:
        asyncio.run(fetcher.fetch("http://a/big.js"))
    assert exc.value.code is ErrorCode.FAILED_TO_RETRIEVE_CONTENT
    assert exc.value.http_status == 502


def test_cache_serves_fresh_entry():
    upstream = ScriptedUpstream(FetchResponse(body=b"one"), FetchResponse(body=b"two"))
    clock = Clock()
    cache = CachingFetcher(upstream, default_ttl=60, clock=clock)

    async def go():
        first = await cache.fetch("http://a/x.js")
        clock.now += 30
        second = await cache.fetch("http://a/x.js")
        clock.now += 31
        third = await cache.fetch("http://a/x.js")
        return first, second, third

    first, second, third = asyncio.run(go())
    assert (first.body, second.body, third.body) == (b"one", b"one", b"two")
    assert upstream.calls == 2


def test_cache_respects_upstream_max_age_and_no_cache():
    upstream = ScriptedUpstream(
        FetchResponse(body=b"a", cache=CacheMetadata(no_cache=True)),
        FetchResponse(body=b"b", cache=CacheMetadata(max_age=0)),
        FetchResponse(body=b"c"),
    )
    cache = CachingFetcher(upstream, default_ttl=60, clock=Clock())

    async def go():
        return [(await cache.fetch("http://a/x.js")).body for _ in range(3)]

    assert asyncio.run(go()) == [b"a", b"b", b"c"]
    assert len(cache) == 1


def test_bypass_skips_cache_read_but_refreshes_entry():
    upstream = ScriptedUpstream(FetchResponse(body=b"old"), FetchResponse(body=b"new"))
    cache = CachingFetcher(upstream, default_ttl=60, clock=Clock())

    async def go():
        await cache.fetch("http://a/x.js")
        bypassed = await cache.fetch("http://a/x.js", bypass_cache=True)
        cached = await cache.fetch("http://a/x.js")
        return bypassed, cached

    bypassed, cached = asyncio.run(go())
    assert bypassed.body == b"new"
    assert cached.body == b"new"
    assert upstream.calls == 2


def test_stale_entry_served_on_error():
    upstream = ScriptedUpstream(
        FetchResponse(body=b"good"),
        FetchError(ErrorCode.FAILED_TO_RETRIEVE_CONTENT, "down"),
        FetchResponse(status_code=503),
    )
    clock = Clock()
    cache = CachingFetcher(upstream, default_ttl=10, clock=clock)

    async def go():
        await cache.fetch("http://a/x.js")
        clock.now += 100
        after_error = await cache.fetch("http://a/x.js")
        after_503 = await cache.fetch("http://a/x.js")
        return after_error, after_503

    after_error, after_503 = asyncio.run(go())
    assert after_error.body == b"good"
    assert after_503.body == b"good"


def test_error_without_stale_entry_propagates():
    upstream = ScriptedUpstream(FetchError(ErrorCode.INVALID_PARAMETER, "bad"))
    cache = CachingFetcher(upstream)

    with pytest.raises(FetchError) as exc:
        asyncio.run(cache.fetch("http://a/x.js"))
    assert exc.value.code is ErrorCode.INVALID_PARAMETER


def test_concurrent_misses_share_one_upstream_fetch():
    upstream = ScriptedUpstream(FetchResponse(body=b"shared"), delay=0.01)
    cache = CachingFetcher(upstream, clock=Clock())

    async def go():
        return await asyncio.gather(*(cache.fetch("http://a/x.js") for _ in range(5)))

    results = asyncio.run(go())
    assert [r.body for r in results] == [b"shared"] * 5
    assert upstream.calls == 1



class EchoUpstream:
    def __init__(self, max_age=None):
        self.max_age = max_age
        self.calls = 0

    async def fetch(self, url, bypass_cache=False):
        self.calls += 1
        return FetchResponse(body=url.encode(), cache=CacheMetadata(max_age=self.max_age))


def test_expired_entries_are_dropped_when_cache_fills():
    clock = Clock()
    cache = CachingFetcher(EchoUpstream(max_age=1), max_entries=1000, clock=clock)

    async def go():
        for i in range(1000):
            await cache.fetch(f"http://a/{i}.js")
        clock.now = 10000.0
        await cache.fetch("http://a/new.js")

    asyncio.run(go())
    assert len(cache) == 1


def test_oldest_fresh_entry_is_evicted_over_max_entries():
    upstream = EchoUpstream()
    cache = CachingFetcher(upstream, default_ttl=60, max_entries=2, clock=Clock())

    async def go():
        for name in ("a", "b", "c"):
            await cache.fetch(f"http://a/{name}.js")
        await cache.fetch("http://a/c.js")
        await cache.fetch("http://a/b.js")
        await cache.fetch("http://a/a.js")

    asyncio.run(go())
    assert len(cache) == 2
    assert upstream.calls == 4


def test_expired_entry_is_dropped_when_refresh_is_not_cacheable():
    upstream = ScriptedUpstream(
        FetchResponse(body=b"old"),
        FetchResponse(status_code=404),
    )
    clock = Clock()
    cache = CachingFetcher(upstream, default_ttl=10, clock=clock)

    async def go():
        await cache.fetch("http://a/x.js")
        clock.now += 100
        return await cache.fetch("http://a/x.js")

    assert asyncio.run(go()).status_code == 404
    assert len(cache) == 0


def test_expired_entry_is_dropped_after_error_without_stale_use():
    upstream = ScriptedUpstream(
        FetchResponse(body=b"old"),
        FetchError(ErrorCode.FAILED_TO_RETRIEVE_CONTENT, "down"),
    )
    clock = Clock()
    cache = CachingFetcher(upstream, default_ttl=10, clock=clock)

    async def go():
        await cache.fetch("http://a/x.js")
        clock.now += 100
        await cache.fetch("http://a/x.js", bypass_cache=True)

    with pytest.raises(FetchError):
        asyncio.run(go())
    assert len(cache) == 0


def test_bypass_does_not_fall_back_to_cached_entry():
    upstream = ScriptedUpstream(
        FetchResponse(body=b"cached"),
        FetchError(ErrorCode.FAILED_TO_RETRIEVE_CONTENT, "down"),
        FetchResponse(status_code=503),
    )
    cache = CachingFetcher(upstream, default_ttl=60, clock=Clock())

    async def go():
        await cache.fetch("http://a/x.js")
        with pytest.raises(FetchError) as exc:
            await cache.fetch("http://a/x.js", bypass_cache=True)
        assert exc.value.message == "down"
        return await cache.fetch("http://a/x.js", bypass_cache=True)

    assert asyncio.run(go()).status_code == 503


def test_build_fetcher_follows_settings(monkeypatch):
    assert isinstance(build_fetcher(get_settings()), HttpFetcher)
    monkeypatch.setenv("CONCAT_CACHE_ENABLED", "1")
    assert isinstance(build_fetcher(get_settings()), CachingFetcher)
    monkeypatch.setenv("CONCAT_CACHE_MAX_ENTRIES", "5")
    assert build_fetcher(get_settings()).max_entries == 5
