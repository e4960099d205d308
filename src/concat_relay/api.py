from __future__ import annotations

from contextlib import asynccontextmanager
from functools import lru_cache

from fastapi import Depends, FastAPI, Request
from fastapi.responses import PlainTextResponse, Response

from concat_relay.concat import SC_BAD_REQUEST, ConcatRelay
from concat_relay.envelope import ResponseEnvelope
from concat_relay.errors import ClientDisconnectedError, MalformedRequestError
from concat_relay.fetcher import build_fetcher
from concat_relay.proxy import ProxyHandler
from concat_relay.schema import parse_request
from concat_relay.settings import get_settings
from concat_relay.sink import format_http_error


@asynccontextmanager
async def lifespan(_app: FastAPI):
    yield
    # only close a relay that was actually built
    if get_relay.cache_info().currsize:
        await get_relay().proxy.fetcher.aclose()
        get_relay.cache_clear()


app = FastAPI(
    title="Concat Relay",
    version="0.1.0",
    description="Fetches several urls and returns their bodies as one plain or JSON response.",
    lifespan=lifespan,
)


class DisconnectAwareBuffer:
    """Collects the aggregate body; a write after the client left fails."""

    def __init__(self, request: Request):
        self.request = request
        self._chunks: list[bytes] = []

    async def write(self, data: bytes) -> None:
        if await self.request.is_disconnected():
            raise ClientDisconnectedError("client disconnected")
        self._chunks.append(data)

    def getvalue(self) -> bytes:
        return b"".join(self._chunks)


@lru_cache(maxsize=1)
def get_relay() -> ConcatRelay:
    s = get_settings()
    return ConcatRelay(
        ProxyHandler(build_fetcher(s)),
        default_content_type=s.default_content_type,
    )


@app.get("/health")
def health() -> dict:
    return {"status": "ok"}


@app.get("/concat")
async def concat(request: Request, relay: ConcatRelay = Depends(get_relay)) -> Response:
    if request.headers.get("If-Modified-Since") is not None:
        return Response(status_code=304)

    try:
        spec = parse_request(request.query_params)
    except MalformedRequestError as e:
        return PlainTextResponse(
            format_http_error(SC_BAD_REQUEST, str(e)) + "\n", status_code=SC_BAD_REQUEST
        )

    body = DisconnectAwareBuffer(request)
    envelope = ResponseEnvelope(body)
    await relay.run(spec, envelope)
    envelope.commit()

    headers = dict(envelope.headers)
    media_type = headers.pop("Content-Type", None)
    return Response(
        content=body.getvalue(),
        status_code=envelope.status,
        headers=headers,
        media_type=media_type,
    )
