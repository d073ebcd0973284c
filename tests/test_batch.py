from __future__ import annotations

import threading
import unittest

from room_ingest.batch import BatchOrchestrator, chunked
from room_ingest.config_schema import BatchConfig
from room_ingest.listing import ListingDraft
from room_ingest.outcome import Accepted, ExtractionOutcome, Rejected
from room_ingest.post import RawPost


def _posts(n: int) -> list[RawPost]:
    return [RawPost(legacy_id=f"p{i}", text=f"post {i}") for i in range(1, n + 1)]


class _RecordingExtractor:
    def __init__(self, *, fail_ids: set[str] | None = None, barrier: threading.Barrier | None = None) -> None:
        self._fail_ids = set(fail_ids or ())
        self._barrier = barrier
        self._lock = threading.Lock()
        self.calls: list[str] = []
        self.active = 0
        self.max_active = 0

    def extract(self, post: RawPost) -> ExtractionOutcome:
        pid = post.legacy_id or "unknown"
        with self._lock:
            self.calls.append(pid)
            self.active += 1
            self.max_active = max(self.max_active, self.active)
        try:
            if self._barrier is not None:
                self._barrier.wait(timeout=5)
            if pid in self._fail_ids:
                raise RuntimeError(f"extraction blew up for {pid}")
            return Accepted(post_id=pid, draft=ListingDraft(post_id=pid, title=f"Listing {pid}"))
        finally:
            with self._lock:
                self.active -= 1


class TestChunked(unittest.TestCase):
    def test_partitions_in_order(self) -> None:
        self.assertEqual(list(chunked(list(range(7)), 3)), [[0, 1, 2], [3, 4, 5], [6]])

    def test_empty_input(self) -> None:
        self.assertEqual(list(chunked([], 3)), [])

    def test_rejects_non_positive_size(self) -> None:
        with self.assertRaises(ValueError):
            list(chunked([1, 2], 0))


class TestBatchOrchestrator(unittest.TestCase):
    def test_one_outcome_per_post_and_delay_between_chunks_only(self) -> None:
        sleeps: list[float] = []
        extractor = _RecordingExtractor()
        orchestrator = BatchOrchestrator(
            extractor,
            batch_cfg=BatchConfig(size=3, delay_seconds=2.0),
            sleep_fn=sleeps.append,
        )

        outcomes = orchestrator.run(_posts(7))

        self.assertEqual(len(outcomes), 7)
        self.assertEqual({o.post_id for o in outcomes}, {f"p{i}" for i in range(1, 8)})
        self.assertTrue(all(isinstance(o, Accepted) for o in outcomes))
        self.assertEqual(sleeps, [2.0, 2.0])
        self.assertLessEqual(extractor.max_active, 3)

    def test_chunks_keep_delivery_order(self) -> None:
        outcomes = BatchOrchestrator(
            _RecordingExtractor(),
            batch_cfg=BatchConfig(size=2, delay_seconds=0),
        ).run(_posts(5))

        # pool.map preserves input order inside each chunk.
        self.assertEqual([o.post_id for o in outcomes], ["p1", "p2", "p3", "p4", "p5"])

    def test_posts_of_a_chunk_run_concurrently(self) -> None:
        extractor = _RecordingExtractor(barrier=threading.Barrier(3))
        outcomes = BatchOrchestrator(
            extractor,
            batch_cfg=BatchConfig(size=3, delay_seconds=0),
        ).run(_posts(6))

        self.assertTrue(all(isinstance(o, Accepted) for o in outcomes))
        self.assertEqual(extractor.max_active, 3)

    def test_failure_in_one_task_does_not_affect_siblings(self) -> None:
        outcomes = BatchOrchestrator(
            _RecordingExtractor(fail_ids={"p2"}),
            batch_cfg=BatchConfig(size=3, delay_seconds=0),
        ).run(_posts(3))

        by_id = {o.post_id: o for o in outcomes}
        self.assertIsInstance(by_id["p1"], Accepted)
        self.assertIsInstance(by_id["p3"], Accepted)
        failed = by_id["p2"]
        assert isinstance(failed, Rejected)
        self.assertIn("blew up", failed.reason)

    def test_chunks_after_deadline_are_rejected_without_extraction(self) -> None:
        ticks = iter([0.0, 1.0, 11.0])
        extractor = _RecordingExtractor()
        orchestrator = BatchOrchestrator(
            extractor,
            batch_cfg=BatchConfig(size=3, delay_seconds=0, deadline_seconds=10),
            clock=lambda: next(ticks),
        )

        outcomes = orchestrator.run(_posts(6))

        self.assertEqual(len(outcomes), 6)
        self.assertEqual(sorted(extractor.calls), ["p1", "p2", "p3"])
        late = [o for o in outcomes if isinstance(o, Rejected)]
        self.assertEqual(sorted(o.post_id for o in late), ["p4", "p5", "p6"])
        self.assertTrue(all(o.reason == "deadline exceeded" for o in late))

    def test_empty_input_returns_no_outcomes(self) -> None:
        extractor = _RecordingExtractor()
        outcomes = BatchOrchestrator(extractor, batch_cfg=BatchConfig()).run([])
        self.assertEqual(outcomes, [])
        self.assertEqual(extractor.calls, [])


if __name__ == "__main__":
    unittest.main()
