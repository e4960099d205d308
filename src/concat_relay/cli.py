import argparse
import asyncio
import logging
import sys
from typing import List, Optional

from concat_relay.concat import ConcatRelay
from concat_relay.envelope import ResponseEnvelope
from concat_relay.errors import ClientDisconnectedError
from concat_relay.fetcher import build_fetcher
from concat_relay.proxy import ProxyHandler
from concat_relay.results import ConcatResult
from concat_relay.schema import RequestSpec
from concat_relay.settings import get_settings


class StdoutStream:
    def __init__(self, out=None):
        self.out = out

    async def write(self, data: bytes) -> None:
        out = self.out or sys.stdout.buffer
        try:
            out.write(data)
            out.flush()
        except BrokenPipeError as e:
            raise ClientDisconnectedError("stdout closed") from e


def print_summary(result: ConcatResult, out=None) -> None:
    out = out or sys.stderr
    ok = sum(1 for r in result.items if r.state == "succeeded")
    failed = len(result.items) - ok

    print("\nConcat Summary", file=out)
    print("=" * 40, file=out)
    print(f"Status  : {result.status} ({result.http_status})", file=out)
    print(f"Items   : {len(result.items)}", file=out)
    print(f"Success : {ok}", file=out)
    print(f"Failed  : {failed}", file=out)
    print(f"Soft    : {len(result.soft_failures)}", file=out)

    if failed:
        print("Failures:", file=out)
        for i, r in enumerate(result.items, 1):
            if r.state != "succeeded":
                print(f"- #{i} {r.url} [{r.state}] {r.http_status} {r.error_message or ''}", file=out)


async def run_concat(spec: RequestSpec, stream) -> ConcatResult:
    s = get_settings()
    fetcher = build_fetcher(s)
    relay = ConcatRelay(ProxyHandler(fetcher), default_content_type=s.default_content_type)
    try:
        return await relay.run(spec, ResponseEnvelope(stream))
    finally:
        await fetcher.aclose()


def main(argv: Optional[List[str]] = None) -> int:
    parser = argparse.ArgumentParser(
        description="Fetch several urls and write them out as one concatenated response"
    )
    parser.add_argument("urls", nargs="+", help="urls to concatenate, in order")
    parser.add_argument("--json", dest="json_var", default=None, help="emit NAME={...} keyed by url")
    parser.add_argument("--nocache", action="store_true", help="bypass the fetch cache")
    parser.add_argument("--refresh", type=int, default=None, help="cache ttl in seconds")
    parser.add_argument("--rewrite-mime", default=None, help="content type override")
    parser.add_argument("--quiet", action="store_true", help="skip the summary on stderr")

    args = parser.parse_args(argv)
    logging.basicConfig(level=get_settings().log_level, stream=sys.stderr)

    spec = RequestSpec(
        urls=tuple(args.urls),
        json_var=args.json_var,
        ignore_cache=args.nocache,
        rewrite_mime=args.rewrite_mime,
        refresh=args.refresh,
    )
    result = asyncio.run(run_concat(spec, StdoutStream()))

    if not args.quiet:
        print_summary(result)
    return 0 if result.status == "ok" else 1


if __name__ == "__main__":
    sys.exit(main())
