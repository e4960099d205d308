import asyncio

import pytest

from concat_relay.concat import ConcatRelay
from concat_relay.envelope import ResponseEnvelope
from concat_relay.errors import ClientDisconnectedError
from concat_relay.proxy import ProxyHandler
from concat_relay.schema import FetchResponse


@pytest.fixture(autouse=True)
def pin_settings(monkeypatch):
    monkeypatch.setenv("CONCAT_CACHE_ENABLED", "0")
    monkeypatch.delenv("CONCAT_USER_AGENT", raising=False)
    monkeypatch.delenv("CONCAT_MAX_RESPONSE_BYTES", raising=False)
    monkeypatch.setenv("CONCAT_LOG_LEVEL", "DEBUG")
    monkeypatch.setenv("CONCAT_DEFAULT_CONTENT_TYPE", "text/javascript; charset=UTF-8")


class FakeFetcher:
    """Serves canned bodies, FetchResponses or FetchErrors keyed by url."""

    def __init__(self, responses):
        self.responses = responses
        self.calls = []

    async def fetch(self, url, bypass_cache=False):
        self.calls.append((url, bypass_cache))
        outcome = self.responses[url]
        if isinstance(outcome, Exception):
            raise outcome
        if isinstance(outcome, FetchResponse):
            return outcome
        if isinstance(outcome, str):
            outcome = outcome.encode("utf-8")
        return FetchResponse(status_code=200, body=outcome)


class MemoryStream:
    def __init__(self, fail_after=None):
        self.data = bytearray()
        self.writes = 0
        self.fail_after = fail_after

    async def write(self, data):
        if self.fail_after is not None and self.writes >= self.fail_after:
            raise ClientDisconnectedError("gone")
        self.writes += 1
        self.data.extend(data)

    def text(self):
        return self.data.decode("utf-8")


class Harness:
    def __init__(self, responses, fail_after=None):
        self.fetcher = FakeFetcher(responses)
        self.relay = ConcatRelay(ProxyHandler(self.fetcher))
        self.stream = MemoryStream(fail_after=fail_after)
        self.envelope = ResponseEnvelope(self.stream)

    def run(self, spec):
        return asyncio.run(self.relay.run(spec, self.envelope))

    @property
    def output(self):
        return self.stream.text()

    @property
    def fetched(self):
        return [url for url, _ in self.fetcher.calls]


@pytest.fixture
def harness():
    return Harness
