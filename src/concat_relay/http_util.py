import time
from email.utils import formatdate

EPOCH_HTTP_DATE = "Thu, 01 Jan 1970 00:00:00 GMT"

CONTENT_DISPOSITION = "attachment;filename=p.txt"


def set_no_cache(envelope) -> None:
    envelope.set_header("Cache-Control", "no-cache")
    envelope.set_header("Pragma", "no-cache")
    envelope.set_header("Expires", EPOCH_HTTP_DATE)


def set_caching_headers(envelope, ttl_seconds: int, *, now: float | None = None) -> None:
    """
    Advertise a public cache lifetime of ttl_seconds.
    A non-positive ttl is the same as no-cache.
    """
    if ttl_seconds <= 0:
        set_no_cache(envelope)
        return
    now = time.time() if now is None else now
    envelope.set_header("Cache-Control", f"public,max-age={ttl_seconds}")
    envelope.set_header("Expires", formatdate(now + ttl_seconds, usegmt=True))


def set_content_disposition(envelope) -> None:
    # keeps browsers from rendering the concatenation inline
    envelope.set_header("Content-Disposition", CONTENT_DISPOSITION)
