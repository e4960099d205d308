from __future__ import annotations

import logging
from typing import Optional, Protocol

from concat_relay.errors import ErrorCode, FetchError

logger = logging.getLogger(__name__)

ENCODING = "utf-8"

_SIMPLE_ESCAPES = {
    "\\": "\\\\",
    '"': '\\"',
    "'": "\\'",
    "/": "\\/",
    "\b": "\\b",
    "\t": "\\t",
    "\n": "\\n",
    "\f": "\\f",
    "\r": "\\r",
}


class OutputStream(Protocol):
    async def write(self, data: bytes) -> None: ...


def start_marker(url: str) -> str:
    return f"/* ---- Start {url} ---- */\n"


def end_marker(url: str) -> str:
    return f"/* ---- End {url} ---- */\n"


def format_http_error(status: int, message: Optional[str] = None) -> str:
    err = f"/* ---- Error {status}"
    if message is not None:
        err += f", {message}"
    return err + " ---- */"


def escape_javascript(text: str) -> str:
    """
    Escape text for a double-quoted JavaScript (and JSON) string literal.
    - quotes, backslash and forward slash are backslash-escaped
    - control characters and everything above 0x7F become \\uXXXX
    - astral characters are written as a UTF-16 surrogate pair
    """
    out: list[str] = []
    for ch in text:
        simple = _SIMPLE_ESCAPES.get(ch)
        if simple is not None:
            out.append(simple)
            continue
        cp = ord(ch)
        if 0x20 <= cp <= 0x7F:
            out.append(ch)
        elif cp > 0xFFFF:
            cp -= 0x10000
            out.append(f"\\u{0xD800 + (cp >> 10):04X}\\u{0xDC00 + (cp & 0x3FF):04X}")
        else:
            out.append(f"\\u{cp:04X}")
    return "".join(out)


class ItemSink:
    """Per-item capture over the real outbound stream."""

    def __init__(self, stream: OutputStream, url: str):
        self.stream = stream
        self.url = url
        self.closed = False

    async def begin(self) -> None:
        pass

    async def write(self, data: bytes) -> None:
        raise NotImplementedError

    async def end(self) -> None:
        self.closed = True

    def release(self) -> None:
        self.closed = True


class PassthroughSink(ItemSink):
    async def begin(self) -> None:
        await self.stream.write(start_marker(self.url).encode(ENCODING))

    async def write(self, data: bytes) -> None:
        if data:
            await self.stream.write(data)

    async def end(self) -> None:
        if self.closed:
            return
        self.closed = True
        await self.stream.write(("\n" + end_marker(self.url)).encode(ENCODING))


class EscapingSink(ItemSink):
    def __init__(self, stream: OutputStream, url: str):
        super().__init__(stream, url)
        self._buffer: Optional[bytearray] = None

    async def begin(self) -> None:
        self._buffer = bytearray()

    async def write(self, data: bytes) -> None:
        if self._buffer is None:
            raise RuntimeError("write() before begin()")
        self._buffer.extend(data)

    def escaped(self) -> str:
        data = bytes(self._buffer or b"")
        try:
            text = data.decode(ENCODING)
        except UnicodeDecodeError as e:
            raise FetchError(
                ErrorCode.MALFORMED_RESPONSE,
                f"Unsupported encoding in data: {e.reason} at byte {e.start}",
            ) from e
        return escape_javascript(text)

    async def end(self) -> None:
        if self.closed:
            return
        self.closed = True
        try:
            escaped = self.escaped()
        finally:
            self._buffer = None
        entry = f'"{self.url}":"{escaped}",\n'
        await self.stream.write(entry.encode(ENCODING))

    def release(self) -> None:
        super().release()
        self._buffer = None


class DiscardSink(ItemSink):
    """Swallows a failing fetch's body so nothing partial reaches the client."""

    def __init__(self, url: str = ""):
        super().__init__(stream=None, url=url)  # type: ignore[arg-type]

    async def write(self, data: bytes) -> None:
        logger.debug(f"Discarding {len(data)} bytes for {self.url}")


def open_sink(stream: OutputStream, url: str, *, json_mode: bool) -> ItemSink:
    if json_mode:
        return EscapingSink(stream, url)
    return PassthroughSink(stream, url)
