from __future__ import annotations

import time
from concurrent.futures import ThreadPoolExecutor
from typing import Callable, Iterator, Protocol, Sequence, TypeVar

from .config_schema import BatchConfig
from .outcome import UNKNOWN_POST_ID, ExtractionOutcome, Rejected
from .post import RawPost
from .retry import SleepFn
from .run_log import RunLogger

T = TypeVar("T")

ClockFn = Callable[[], float]


class Extractor(Protocol):
    def extract(self, post: RawPost) -> ExtractionOutcome: ...


def chunked(values: Sequence[T], size: int) -> Iterator[list[T]]:
    if size <= 0:
        raise ValueError("chunk size must be positive")

    batch: list[T] = []
    for item in values:
        batch.append(item)
        if len(batch) >= size:
            yield batch
            batch = []
    if batch:
        yield batch


class BatchOrchestrator:
    """
    Runs extraction over a list of unique posts in fixed-size chunks.

    Posts in a chunk are extracted concurrently (fan-out = chunk size); the next chunk
    starts only after the whole chunk settled and the inter-chunk delay elapsed.
    Every post yields exactly one outcome, whatever happens to its task.
    """

    def __init__(
        self,
        extractor: Extractor,
        *,
        batch_cfg: BatchConfig,
        sleep_fn: SleepFn | None = None,
        clock: ClockFn | None = None,
        logger: RunLogger | None = None,
    ) -> None:
        self._extractor = extractor
        self._cfg = batch_cfg
        self._sleep = sleep_fn or time.sleep
        self._clock = clock or time.monotonic
        self._logger = logger

    def _extract_one(self, post: RawPost) -> ExtractionOutcome:
        post_id = post.legacy_id or UNKNOWN_POST_ID
        try:
            return self._extractor.extract(post)
        except Exception as e:
            if self._logger is not None:
                self._logger.exception("extraction_crashed", exc=e, post_id=post_id)
            return Rejected(post_id=post_id, reason=str(e) or type(e).__name__)

    def _log_outcomes(self, outcomes: Sequence[ExtractionOutcome]) -> None:
        if self._logger is None:
            return
        for outcome in outcomes:
            if isinstance(outcome, Rejected):
                self._logger.warning("extraction_rejected", post_id=outcome.post_id, reason=outcome.reason)

    def run(self, posts: Sequence[RawPost]) -> list[ExtractionOutcome]:
        """
        Extract every post and return one outcome per post, in chunk order.

        Order inside a chunk is not part of the contract. When the configured deadline
        has passed, chunks that have not started resolve to Rejected("deadline exceeded");
        a chunk already in flight is allowed to finish.
        """
        outcomes: list[ExtractionOutcome] = []
        if not posts:
            return outcomes

        size = int(self._cfg.size)
        deadline = None
        if self._cfg.deadline_seconds is not None:
            deadline = self._clock() + float(self._cfg.deadline_seconds)

        chunks = list(chunked(list(posts), size))
        with ThreadPoolExecutor(max_workers=size, thread_name_prefix="extract") as pool:
            for index, chunk in enumerate(chunks):
                if deadline is not None and self._clock() >= deadline:
                    remaining = [p for c in chunks[index:] for p in c]
                    if self._logger is not None:
                        self._logger.warning(
                            "extraction_deadline_reached",
                            chunk=index,
                            remaining_posts=len(remaining),
                        )
                    outcomes.extend(
                        Rejected(post_id=p.legacy_id or UNKNOWN_POST_ID, reason="deadline exceeded")
                        for p in remaining
                    )
                    break

                if self._logger is not None:
                    self._logger.info(
                        "extraction_chunk_started",
                        chunk=index,
                        chunks=len(chunks),
                        posts=len(chunk),
                    )

                chunk_outcomes = list(pool.map(self._extract_one, chunk))
                self._log_outcomes(chunk_outcomes)
                outcomes.extend(chunk_outcomes)

                if index < len(chunks) - 1 and self._cfg.delay_seconds > 0:
                    self._sleep(float(self._cfg.delay_seconds))

        return outcomes
