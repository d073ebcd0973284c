from __future__ import annotations

from typing import Any, Mapping

import openai

from .errors import LLMError, RateLimitError, TransportError


def _extract_headers(obj: Any) -> Mapping[str, Any]:
    headers = getattr(obj, "headers", None)
    if headers is None:
        return {}

    if isinstance(headers, Mapping):
        return headers

    # httpx.Headers is iterable over items; try coercion.
    try:
        return dict(headers)
    except (TypeError, ValueError):
        return {}


def _parse_retry_after(headers: Mapping[str, Any]) -> float | None:
    val: Any = None
    for key in ("retry-after", "Retry-After", "RETRY-AFTER"):
        val = headers.get(key)
        if val is not None:
            break

    if val is None:
        return None

    try:
        return float(str(val).strip())
    except ValueError:
        return None


def _extract_retry_after_seconds(exc: BaseException) -> float | None:
    direct = getattr(exc, "retry_after", None)
    if direct is not None:
        try:
            return float(direct)
        except (TypeError, ValueError):
            pass

    response = getattr(exc, "response", None)
    return _parse_retry_after(_extract_headers(response))


def _extract_status_code(exc: BaseException) -> int | None:
    for attr in ("status_code", "http_status"):
        val = getattr(exc, attr, None)
        if val is None:
            continue
        try:
            return int(val)
        except (TypeError, ValueError):
            continue
    return None


def translate_openai_exception(exc: BaseException, *, model: str) -> LLMError:
    """
    Map an SDK failure onto the project taxonomy.

    Only HTTP 429 counts as rate limiting; everything else is a transport failure.
    """
    if isinstance(exc, LLMError):
        return exc

    if isinstance(exc, openai.RateLimitError) or _extract_status_code(exc) == 429:
        return RateLimitError(
            f"Completion rate limited ({model}): {exc}",
            retry_after=_extract_retry_after_seconds(exc),
        )

    if isinstance(exc, openai.APIStatusError):
        return TransportError(f"Completion API error ({model}): HTTP {exc.status_code}: {exc}")

    if isinstance(exc, openai.APITimeoutError):
        return TransportError(f"Completion request timed out ({model}): {exc}")

    if isinstance(exc, openai.APIConnectionError):
        return TransportError(f"Completion connection failed ({model}): {exc}")

    return TransportError(f"Completion call failed ({model}): {exc}")


def is_retryable_rate_limit(exc: BaseException) -> tuple[bool, float | None, str | None]:
    """
    Extraction retry policy: rate limits are retried, every other failure is final.
    """
    if isinstance(exc, RateLimitError):
        return True, exc.retry_after, "rate_limited"
    return False, None, None
