from __future__ import annotations

import time
from dataclasses import dataclass
from typing import Callable, TypeVar

T = TypeVar("T")


@dataclass(frozen=True)
class RetryConfig:
    """
    Exponential backoff retry policy.

    - max_retries counts retries after the first attempt (max_retries=3 => up to 4 calls).
    - The n-th retry (0-based) waits base_delay_seconds * 2**n, capped at max_delay_seconds.
    - A Retry-After hint can lengthen a delay, never beyond retry_after_cap_seconds (0 disables the cap).
    """

    max_retries: int = 3
    base_delay_seconds: float = 2.0
    max_delay_seconds: float = 60.0
    retry_after_cap_seconds: float = 60.0

    def __post_init__(self) -> None:
        if self.max_retries < 0:
            raise ValueError("max_retries must be >= 0")
        if self.base_delay_seconds < 0:
            raise ValueError("base_delay_seconds must be >= 0")
        if self.max_delay_seconds < self.base_delay_seconds:
            raise ValueError("max_delay_seconds must be >= base_delay_seconds")
        if self.retry_after_cap_seconds < 0:
            raise ValueError("retry_after_cap_seconds must be >= 0")

    @property
    def max_attempts(self) -> int:
        return self.max_retries + 1


@dataclass(frozen=True)
class RetryEvent:
    operation: str
    retry_number: int
    max_retries: int

    delay_seconds: float
    retry_after_seconds: float | None
    reason: str | None

    error_type: str
    error_message: str

    post_id: str | None


IsRetryableFn = Callable[[BaseException], tuple[bool, float | None, str | None]]
OnRetryFn = Callable[[RetryEvent], None]
SleepFn = Callable[[float], None]


def backoff_seconds(retry_index: int, cfg: RetryConfig) -> float:
    # retry_index=0 => base delay.
    delay = cfg.base_delay_seconds * (2 ** max(0, int(retry_index)))
    return min(cfg.max_delay_seconds, max(0.0, float(delay)))


def _capped_retry_after(value: float | None, cfg: RetryConfig) -> float | None:
    if value is None or value < 0:
        return None
    if cfg.retry_after_cap_seconds > 0:
        return min(float(value), cfg.retry_after_cap_seconds)
    return float(value)


def call_with_retries(
    fn: Callable[[], T],
    *,
    cfg: RetryConfig,
    is_retryable: IsRetryableFn,
    operation: str,
    on_retry: OnRetryFn | None = None,
    sleep_fn: SleepFn | None = None,
    post_id: str | None = None,
) -> T:
    """
    Call fn() and retry it while is_retryable(exc) says so and retries remain.

    The last exception is re-raised once the retry budget is spent, or immediately
    for non-retryable failures.
    """
    op = (operation or "").strip() or "operation"
    sleeper = sleep_fn or time.sleep

    for attempt in range(cfg.max_attempts):
        try:
            return fn()
        except Exception as exc:
            retryable, retry_after, reason = is_retryable(exc)

            if not retryable or attempt >= cfg.max_retries:
                raise

            ra = _capped_retry_after(retry_after, cfg)
            delay = backoff_seconds(attempt, cfg) if ra is None else max(backoff_seconds(attempt, cfg), ra)

            if on_retry is not None:
                on_retry(
                    RetryEvent(
                        operation=op,
                        retry_number=attempt + 1,
                        max_retries=cfg.max_retries,
                        delay_seconds=float(delay),
                        retry_after_seconds=ra,
                        reason=reason,
                        error_type=type(exc).__name__,
                        error_message=(str(exc) or "").strip(),
                        post_id=post_id,
                    )
                )

            if delay > 0:
                sleeper(float(delay))

    # Unreachable, but keeps typing happy.
    raise RuntimeError(f"Retry loop exited unexpectedly for operation={op}")
