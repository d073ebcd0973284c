from __future__ import annotations

from apify_client.errors import ApifyApiError


def _extract_status_code(exc: BaseException) -> int | None:
    for attr in ("status_code", "statusCode", "status", "http_status"):
        val = getattr(exc, attr, None)
        if val is None:
            continue
        try:
            return int(val)
        except (TypeError, ValueError):
            continue
    return None


def _looks_like_timeout_or_connection(exc: BaseException) -> bool:
    # httpx/urllib3 errors surface through the client; match them by name.
    name = type(exc).__name__.casefold()
    mod = type(exc).__module__.casefold()
    return any(token in name or token in mod for token in ("timeout", "connect"))


def is_retryable_apify_exception(exc: BaseException) -> tuple[bool, float | None, str | None]:
    """
    Dataset read retry policy:
    - network/connection errors
    - HTTP 429 and 5xx
    Other HTTP errors (404 for an unknown dataset id, 401 for a bad token) are final.
    """
    if isinstance(exc, ApifyApiError):
        code = _extract_status_code(exc)
        if code == 429 or (code is not None and code >= 500):
            return True, None, f"http_{code}"
        return False, None, f"http_{code}" if code is not None else "http_status"

    if isinstance(exc, (ConnectionError, TimeoutError)):
        return True, None, "network_error"

    if _looks_like_timeout_or_connection(exc):
        return True, None, "network_error"

    return False, None, None
