from __future__ import annotations

import logging
import re
from urllib.parse import urlsplit, urlunsplit

from concat_relay.envelope import Envelope
from concat_relay.errors import ErrorCode, FetchError
from concat_relay.fetcher import Fetcher
from concat_relay.http_util import set_caching_headers, set_content_disposition, set_no_cache
from concat_relay.schema import FetchResponse, ItemRequest

logger = logging.getLogger(__name__)

MIN_CACHE_TTL = 60 * 60

# unreserved, reserved and percent-encoded octets
URL_CHARS = re.compile(r"(?:[A-Za-z0-9\-._~:/?#\[\]@!$&'()*+,;=]|%[0-9A-Fa-f]{2})*")

INVALID_URL = "url parameter is not a valid url."


def validate_url(url: str | None) -> str:
    """Accept only absolute http(s) urls; an empty path becomes "/"."""
    if url is None:
        raise FetchError(ErrorCode.INVALID_PARAMETER, "url parameter is missing.")
    # the url is echoed into a JSON key and a comment delimiter
    if not URL_CHARS.fullmatch(url) or "*/" in url:
        raise FetchError(ErrorCode.INVALID_PARAMETER, INVALID_URL)
    try:
        parts = urlsplit(url)
        parts.port  # raises on a malformed port
    except ValueError as e:
        raise FetchError(ErrorCode.INVALID_PARAMETER, INVALID_URL) from e

    if parts.scheme not in ("http", "https"):
        raise FetchError(
            ErrorCode.INVALID_PARAMETER,
            'Invalid request url scheme; only "http" and "https" supported.',
        )
    if not parts.netloc:
        raise FetchError(ErrorCode.INVALID_PARAMETER, INVALID_URL)
    if not parts.path:
        parts = parts._replace(path="/")
    return urlunsplit(parts)


class ProxyHandler:
    """Fetches one url and renders it onto an envelope, like a single-url proxy."""

    def __init__(self, fetcher: Fetcher):
        self.fetcher = fetcher

    async def do_fetch(self, request: ItemRequest, envelope: Envelope) -> None:
        url = validate_url(request.url)
        response = await self.fetcher.fetch(url, request.ignore_cache)

        self.set_response_headers(request, envelope, response)

        if not response.ok:
            envelope.send_error(response.status_code)
            return

        stream = await envelope.output_stream()
        await stream.write(response.body)

    def set_response_headers(
        self, request: ItemRequest, envelope: Envelope, response: FetchResponse
    ) -> None:
        if request.ignore_cache or response.cache.no_cache:
            set_no_cache(envelope)
        elif request.refresh is not None:
            set_caching_headers(envelope, request.refresh)
        else:
            set_caching_headers(envelope, max(MIN_CACHE_TTL, response.cache.max_age or 0))

        content_type = request.rewrite_mime or response.content_type
        if content_type:
            envelope.set_content_type(content_type)
        set_content_disposition(envelope)
