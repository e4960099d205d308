from __future__ import annotations

import logging
from typing import Optional

from concat_relay.sink import DiscardSink, ItemSink, OutputStream, open_sink

logger = logging.getLogger(__name__)

SC_OK = 200


class Envelope:
    """HTTP-level metadata of a response plus access to its body stream."""

    def set_status(self, code: int) -> None:
        raise NotImplementedError

    def send_error(self, code: int, message: Optional[str] = None) -> None:
        raise NotImplementedError

    def send_redirect(self, location: str) -> None:
        raise NotImplementedError

    def set_header(self, name: str, value: str) -> None:
        raise NotImplementedError

    def add_header(self, name: str, value: str) -> None:
        raise NotImplementedError

    def add_cookie(self, name: str, value: str) -> None:
        raise NotImplementedError

    def set_content_type(self, content_type: str) -> None:
        self.set_header("Content-Type", content_type)

    def set_content_length(self, length: int) -> None:
        self.set_header("Content-Length", str(length))

    def set_character_encoding(self, encoding: str) -> None:
        raise NotImplementedError

    def set_locale(self, locale: str) -> None:
        self.set_header("Content-Language", locale)

    def flush_buffer(self) -> None:
        raise NotImplementedError

    def reset_buffer(self) -> None:
        raise NotImplementedError

    async def output_stream(self) -> OutputStream:
        raise NotImplementedError


class ResponseEnvelope(Envelope):
    """
    The aggregate response.
    - collects status/headers until commit(); later mutations are ignored
    - body bytes go straight to the wrapped stream
    """

    def __init__(self, stream: OutputStream):
        self.stream = stream
        self.status = SC_OK
        self.error_message: Optional[str] = None
        self.headers: dict[str, str] = {}
        self.cookies: dict[str, str] = {}
        self.committed = False

    def _mutable(self, what: str) -> bool:
        if self.committed:
            logger.warning(f"Ignoring {what} on committed response")
            return False
        return True

    def commit(self) -> None:
        self.committed = True

    def set_status(self, code: int) -> None:
        if self._mutable("status"):
            self.status = code

    def send_error(self, code: int, message: Optional[str] = None) -> None:
        if self._mutable("error"):
            self.status = code
            self.error_message = message

    def send_redirect(self, location: str) -> None:
        if self._mutable("redirect"):
            self.status = 302
            self.headers["Location"] = location

    def set_header(self, name: str, value: str) -> None:
        if self._mutable(f"header {name}"):
            self.headers[name] = value

    def add_header(self, name: str, value: str) -> None:
        if self._mutable(f"header {name}"):
            prev = self.headers.get(name)
            self.headers[name] = value if prev is None else f"{prev}, {value}"

    def add_cookie(self, name: str, value: str) -> None:
        if self._mutable(f"cookie {name}"):
            self.cookies[name] = value

    def set_character_encoding(self, encoding: str) -> None:
        content_type = self.headers.get("Content-Type", "text/plain").split(";")[0]
        self.set_header("Content-Type", f"{content_type}; charset={encoding}")

    def flush_buffer(self) -> None:
        self.commit()

    def reset_buffer(self) -> None:
        # body bytes are already on the wire
        pass

    async def output_stream(self) -> OutputStream:
        return self.stream


class GuardedEnvelope(Envelope):
    """
    Stands in for the aggregate response while one item is rendered.

    Every envelope mutation is dropped. send_error() only records a synthetic
    (status, message) pair for this item. The body stream is the item sink,
    opened on first use, or a discard sink once an error is recorded.
    """

    def __init__(self, real: ResponseEnvelope, *, json_mode: bool):
        self.real = real
        self.json_mode = json_mode
        self.url: Optional[str] = None
        self.status = SC_OK
        self.error_message: Optional[str] = None
        self.sink: Optional[ItemSink] = None

    def reset(self, url: str) -> None:
        if self.sink is not None and not self.sink.closed:
            raise RuntimeError(f"Sink for {self.sink.url} still open")
        self.url = url
        self.status = SC_OK
        self.error_message = None
        self.sink = None

    @property
    def failed(self) -> bool:
        return self.status != SC_OK

    def _swallow(self, what: str, *args) -> None:
        logger.debug(f"Suppressed {what}{args!r} while rendering {self.url}")

    def set_status(self, code: int) -> None:
        self._swallow("set_status", code)

    def send_error(self, code: int, message: Optional[str] = None) -> None:
        self.status = code
        self.error_message = message

    def send_redirect(self, location: str) -> None:
        self._swallow("send_redirect", location)

    def set_header(self, name: str, value: str) -> None:
        self._swallow("set_header", name, value)

    def add_header(self, name: str, value: str) -> None:
        self._swallow("add_header", name, value)

    def add_cookie(self, name: str, value: str) -> None:
        self._swallow("add_cookie", name)

    def set_character_encoding(self, encoding: str) -> None:
        self._swallow("set_character_encoding", encoding)

    def flush_buffer(self) -> None:
        self._swallow("flush_buffer")

    def reset_buffer(self) -> None:
        self._swallow("reset_buffer")

    async def output_stream(self) -> OutputStream:
        if self.url is None:
            raise RuntimeError("output_stream() before reset()")
        if self.failed:
            # no partial body from a failing fetch
            await self.finish()
            return DiscardSink(self.url)
        if self.sink is None:
            self.sink = open_sink(self.real.stream, self.url, json_mode=self.json_mode)
            await self.sink.begin()
        return self.sink

    async def finish(self) -> None:
        if self.sink is not None:
            await self.sink.end()

    def release(self) -> None:
        if self.sink is not None:
            self.sink.release()
