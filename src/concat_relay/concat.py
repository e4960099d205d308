from __future__ import annotations

import logging
import re
from typing import Optional

from concat_relay.envelope import GuardedEnvelope, ResponseEnvelope
from concat_relay.errors import ClientDisconnectedError, ErrorCode, FetchError
from concat_relay.http_util import set_caching_headers, set_content_disposition, set_no_cache
from concat_relay.proxy import ProxyHandler
from concat_relay.results import ConcatResult, ItemResult
from concat_relay.schema import RequestSpec
from concat_relay.sink import ENCODING, format_http_error

logger = logging.getLogger(__name__)

JSON_VAR_PATTERN = re.compile(r"\w*", re.ASCII)

SC_OK = 200
SC_BAD_REQUEST = 400
SC_NOT_FOUND = 404

DEFAULT_CONTENT_TYPE = "text/javascript; charset=UTF-8"


def is_header_safe(value: str) -> bool:
    return "\r" not in value and "\n" not in value


def format_concat_error(error: FetchError, url: str) -> str:
    return f"{error.code} concat({url}) {error.message}"


class ConcatRelay:
    """
    Concatenates several proxied responses into one.

    Each url is rendered by the proxy handler through a GuardedEnvelope, so
    nothing it does to status or headers reaches the aggregate response. Soft
    failures become inline error comments; any other FetchError aborts the
    run with a 400.
    """

    def __init__(self, proxy: ProxyHandler, *, default_content_type: str = DEFAULT_CONTENT_TYPE):
        self.proxy = proxy
        self.default_content_type = default_content_type

    def validate(self, spec: RequestSpec) -> Optional[str]:
        if spec.json_var is not None and not JSON_VAR_PATTERN.fullmatch(spec.json_var):
            return f"Bad json variable name {spec.json_var}"
        if spec.rewrite_mime is not None and not is_header_safe(spec.rewrite_mime):
            return "Bad content type override"
        return None

    def prepare_envelope(self, spec: RequestSpec, envelope: ResponseEnvelope) -> None:
        content_type = self.default_content_type
        if spec.rewrite_mime and is_header_safe(spec.rewrite_mime):
            content_type = spec.rewrite_mime
        envelope.set_content_type(content_type)

        if not spec.ignore_cache and spec.refresh is not None:
            set_caching_headers(envelope, spec.refresh)
        else:
            set_no_cache(envelope)
        set_content_disposition(envelope)

    async def run(self, spec: RequestSpec, envelope: ResponseEnvelope) -> ConcatResult:
        result = ConcatResult(status="ok")
        guard: Optional[GuardedEnvelope] = None

        self.prepare_envelope(spec, envelope)
        try:
            error = self.validate(spec)
            if error is not None:
                await self._print(envelope, format_http_error(SC_BAD_REQUEST, error))
                envelope.set_status(SC_BAD_REQUEST)
                logger.info(f"Rejected concat request: {error}")
                return result.model_copy(
                    update={"status": "rejected", "http_status": SC_BAD_REQUEST, "error_message": error}
                )

            if spec.json_mode:
                await self._print(envelope, f"{spec.json_var}={{")

            for url in spec.urls:
                guard = GuardedEnvelope(envelope, json_mode=spec.json_mode)
                guard.reset(url)
                item = await self._process(spec, url, guard, envelope)
                result.items.append(item)

                if item.state == "hard_failed":
                    envelope.send_error(SC_BAD_REQUEST, item.error_message)
                    result.status = "aborted"
                    result.http_status = SC_BAD_REQUEST
                    result.error_code = item.error_code
                    result.error_message = item.error_message
                    result.failed_url = url
                    return result

            if spec.json_mode:
                await self._print(envelope, "};")
            envelope.set_status(SC_OK)
            return result

        except ClientDisconnectedError as e:
            if guard is not None:
                guard.release()
            logger.info(f"Client went away after {len(result.items)} item(s): {e}")
            result.status = "disconnected"
            return result

    async def _process(
        self, spec: RequestSpec, url: str, guard: GuardedEnvelope, envelope: ResponseEnvelope
    ) -> ItemResult:
        try:
            await self.proxy.do_fetch(spec.item(url), guard)
            await guard.finish()
        except FetchError as e:
            if e.soft:
                await self._finalize(guard)
                status = e.http_status or SC_NOT_FOUND
                logger.warning(f"Could not retrieve {url}: {status} {e.message}")
                await self._print(envelope, format_http_error(status, e.message))
                return ItemResult(
                    url=url,
                    state="soft_failed",
                    http_status=status,
                    error_code=str(e.code),
                    error_message=e.message,
                )
            return await self._abort(url, e, guard, envelope)
        except ClientDisconnectedError:
            raise
        except Exception as e:
            logger.exception(f"Unexpected error while fetching {url}")
            error = FetchError(ErrorCode.INTERNAL_SERVER_ERROR, str(e))
            return await self._abort(url, error, guard, envelope)

        if guard.failed:
            await self._print(envelope, format_http_error(guard.status, guard.error_message))
            return ItemResult(
                url=url,
                state="soft_failed",
                http_status=guard.status,
                error_message=guard.error_message,
            )
        return ItemResult(url=url, state="succeeded")

    async def _abort(
        self, url: str, error: FetchError, guard: GuardedEnvelope, envelope: ResponseEnvelope
    ) -> ItemResult:
        await self._finalize(guard)
        err = format_concat_error(error, url)
        logger.info(f"Concat proxy request failed: {err}")
        await envelope.stream.write(err.encode(ENCODING))
        return ItemResult(
            url=url,
            state="hard_failed",
            http_status=SC_BAD_REQUEST,
            error_code=str(error.code),
            error_message=err,
        )

    async def _finalize(self, guard: GuardedEnvelope) -> None:
        try:
            await guard.finish()
        except FetchError as e:
            # an undecodable partial body is dropped
            logger.warning(f"Dropping buffered content for {guard.url}: {e.message}")
            guard.release()

    async def _print(self, envelope: ResponseEnvelope, line: str) -> None:
        await envelope.stream.write((line + "\n").encode(ENCODING))
