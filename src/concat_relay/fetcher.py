from __future__ import annotations

import asyncio
import logging
import time
from typing import Callable, Optional, Protocol, runtime_checkable

import httpx

from concat_relay.errors import ErrorCode, FetchError
from concat_relay.schema import CacheMetadata, FetchResponse
from concat_relay.settings import Settings, get_settings

logger = logging.getLogger(__name__)


@runtime_checkable
class Fetcher(Protocol):
    async def fetch(self, url: str, bypass_cache: bool = False) -> FetchResponse: ...


def parse_cache_control(value: Optional[str]) -> CacheMetadata:
    if not value:
        return CacheMetadata()
    max_age = None
    no_cache = False
    for directive in value.split(","):
        name, _, arg = directive.strip().partition("=")
        name = name.lower()
        if name in {"no-cache", "no-store", "private"}:
            no_cache = True
        elif name == "max-age":
            try:
                max_age = max(0, int(arg.strip().strip('"')))
            except ValueError:
                pass
    return CacheMetadata(max_age=max_age, no_cache=no_cache)


class HttpFetcher:
    """Plain upstream GET over httpx; never caches."""

    def __init__(
        self,
        settings: Settings | None = None,
        *,
        client: httpx.AsyncClient | None = None,
    ):
        self.settings = settings or get_settings()
        self._client = client or httpx.AsyncClient(
            timeout=httpx.Timeout(self.settings.http_timeout_seconds),
            follow_redirects=True,
        )

    async def fetch(self, url: str, bypass_cache: bool = False) -> FetchResponse:
        limit = self.settings.max_response_bytes
        headers = {"User-Agent": self.settings.user_agent}
        if bypass_cache:
            headers["Cache-Control"] = "no-cache"
        try:
            async with self._client.stream("GET", url, headers=headers) as response:
                body = bytearray()
                async for chunk in response.aiter_bytes():
                    body.extend(chunk)
                    if len(body) > limit:
                        raise FetchError(
                            ErrorCode.FAILED_TO_RETRIEVE_CONTENT,
                            f"Response larger than {limit} bytes",
                            http_status=502,
                        )
        except httpx.HTTPError as e:
            logger.warning(f"Fetch failed for {url}: {e!r}")
            raise FetchError(ErrorCode.FAILED_TO_RETRIEVE_CONTENT, str(e), http_status=504) from e

        return FetchResponse(
            status_code=response.status_code,
            body=bytes(body),
            headers=dict(response.headers),
            cache=parse_cache_control(response.headers.get("cache-control")),
        )

    async def aclose(self) -> None:
        await self._client.aclose()


class _CacheEntry:
    def __init__(self, response: FetchResponse, expires_at: float):
        self.response = response
        self.expires_at = expires_at

    def fresh(self, now: float) -> bool:
        return now < self.expires_at


class CachingFetcher:
    """
    Cache-aside in front of another fetcher.
    - fresh 200 responses are served from memory
    - at most one upstream fetch in flight per url
    - a stale entry is served when the upstream fails or answers 5xx
    Entries expire by ttl. Once more than max_entries are held, expired
    entries are dropped first, then the oldest ones.
    """

    def __init__(
        self,
        upstream: Fetcher,
        *,
        default_ttl: int = 3600,
        max_entries: int = 1000,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.upstream = upstream
        self.default_ttl = default_ttl
        self.max_entries = max_entries
        self.clock = clock
        self._entries: dict[str, _CacheEntry] = {}
        self._inflight: dict[tuple[str, bool], asyncio.Task] = {}

    async def fetch(self, url: str, bypass_cache: bool = False) -> FetchResponse:
        entry = self._entries.get(url)
        if not bypass_cache and entry is not None and entry.fresh(self.clock()):
            return entry.response

        key = (url, bypass_cache)
        task = self._inflight.get(key)
        if task is None:
            stale = None if bypass_cache else entry
            task = asyncio.ensure_future(self._refresh(url, bypass_cache, stale))
            self._inflight[key] = task
            task.add_done_callback(lambda _t: self._inflight.pop(key, None))
        return await asyncio.shield(task)

    async def _refresh(
        self, url: str, bypass_cache: bool, stale: Optional[_CacheEntry]
    ) -> FetchResponse:
        try:
            response = await self.upstream.fetch(url, bypass_cache)
        except FetchError:
            if stale is None:
                self._drop_expired(url)
                raise
            logger.warning(f"Serving stale content for {url} after fetch error")
            return stale.response

        if response.status_code >= 500 and stale is not None:
            logger.warning(f"Serving stale content for {url} after HTTP {response.status_code}")
            return stale.response

        ttl = response.cache.max_age if response.cache.max_age is not None else self.default_ttl
        if response.ok and not response.cache.no_cache and ttl > 0:
            self._store(url, _CacheEntry(response, self.clock() + ttl))
        else:
            self._entries.pop(url, None)
        return response

    def _drop_expired(self, url: str) -> None:
        entry = self._entries.get(url)
        if entry is not None and not entry.fresh(self.clock()):
            del self._entries[url]

    def _store(self, url: str, entry: _CacheEntry) -> None:
        self._entries.pop(url, None)
        self._entries[url] = entry
        if len(self._entries) <= self.max_entries:
            return
        now = self.clock()
        for key in [k for k, e in self._entries.items() if not e.fresh(now)]:
            del self._entries[key]
        while len(self._entries) > self.max_entries:
            oldest = next(iter(self._entries))
            logger.debug(f"Cache full, dropping {oldest}")
            del self._entries[oldest]

    def __len__(self) -> int:
        return len(self._entries)

    async def aclose(self) -> None:
        close = getattr(self.upstream, "aclose", None)
        if close is not None:
            await close()


def build_fetcher(settings: Settings | None = None) -> HttpFetcher | CachingFetcher:
    settings = settings or get_settings()
    fetcher: HttpFetcher | CachingFetcher = HttpFetcher(settings)
    if settings.cache_enabled:
        fetcher = CachingFetcher(
            fetcher,
            default_ttl=settings.cache_default_ttl_seconds,
            max_entries=settings.cache_max_entries,
        )
    return fetcher
