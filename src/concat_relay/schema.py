from collections.abc import Mapping
from typing import Optional, Tuple

from pydantic import BaseModel, ConfigDict, Field

from concat_relay.errors import MalformedRequestError

JSON_PARAM = "json"
REFRESH_PARAM = "refresh"
NOCACHE_PARAM = "nocache"
REWRITE_MIME_TYPE_PARAM = "rewriteMime"

TRUE_VALUES = {"1", "true"}


class RequestSpec(BaseModel):
    model_config = ConfigDict(frozen=True)

    urls: Tuple[str, ...] = ()
    json_var: Optional[str] = None
    ignore_cache: bool = False
    rewrite_mime: Optional[str] = None
    refresh: Optional[int] = None

    @property
    def json_mode(self) -> bool:
        # "json=" with an empty name keeps plain output
        return bool(self.json_var)

    def item(self, url: str) -> "ItemRequest":
        return ItemRequest(
            url=url,
            ignore_cache=self.ignore_cache,
            rewrite_mime=self.rewrite_mime,
            refresh=self.refresh,
        )


class ItemRequest(BaseModel):
    """The inbound request with the url parameter pinned to a single item."""

    model_config = ConfigDict(frozen=True)

    url: str
    ignore_cache: bool = False
    rewrite_mime: Optional[str] = None
    refresh: Optional[int] = None


class CacheMetadata(BaseModel):
    model_config = ConfigDict(frozen=True)

    max_age: Optional[int] = Field(default=None, ge=0)
    no_cache: bool = False


class FetchResponse(BaseModel):
    model_config = ConfigDict(frozen=True)

    status_code: int = 200
    body: bytes = b""
    headers: dict[str, str] = Field(default_factory=dict)
    cache: CacheMetadata = Field(default_factory=CacheMetadata)

    @property
    def ok(self) -> bool:
        return self.status_code == 200

    @property
    def content_type(self) -> Optional[str]:
        for name, value in self.headers.items():
            if name.lower() == "content-type":
                return value
        return None


def collect_urls(params: Mapping[str, str]) -> list[str]:
    urls: list[str] = []
    i = 1
    while True:
        url = params.get(str(i))
        if url is None:
            break
        urls.append(url)
        i += 1
    return urls


def parse_request(params: Mapping[str, str]) -> RequestSpec:
    refresh_raw = params.get(REFRESH_PARAM)
    refresh = None
    if refresh_raw is not None:
        try:
            refresh = int(refresh_raw)
        except ValueError as e:
            raise MalformedRequestError(f"Bad refresh value {refresh_raw}") from e

    nocache = (params.get(NOCACHE_PARAM) or "").strip().lower()

    try:
        return RequestSpec(
            urls=tuple(collect_urls(params)),
            json_var=params.get(JSON_PARAM),
            ignore_cache=nocache in TRUE_VALUES,
            rewrite_mime=params.get(REWRITE_MIME_TYPE_PARAM),
            refresh=refresh,
        )
    except ValueError as e:
        raise MalformedRequestError(str(e)) from e
