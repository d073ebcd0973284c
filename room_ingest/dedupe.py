from __future__ import annotations

from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Callable, Literal, Sequence

from .fingerprint import (
    CONTENT_FIELD,
    DEFAULT_SIMILARITY_EXTRACTOR,
    SIMILARITY_FIELD,
    PostFingerprints,
    SimilarityKeyExtractor,
    fingerprint_post,
)
from .post import RawPost
from .storage import ListingStore

DuplicateKind = Literal["exact", "similar", "none"]


@dataclass(frozen=True)
class DuplicateCheck:
    is_duplicate: bool
    kind: DuplicateKind
    matched_id: str | None = None
    reason: str | None = None
    # "store" when matched against persisted listings, "batch" for earlier posts of the same delivery.
    source: Literal["store", "batch"] | None = None
    by_id: bool = False

    @property
    def is_stored_redelivery(self) -> bool:
        """The post's own legacy id is already a stored listing."""
        return self.kind == "exact" and self.source == "store" and self.by_id


NOT_DUPLICATE = DuplicateCheck(is_duplicate=False, kind="none")


@dataclass(frozen=True)
class DedupeOptions:
    skip_exact: bool = True
    skip_similar: bool = False

    def should_skip(self, check: DuplicateCheck) -> bool:
        if not check.is_duplicate:
            return False
        if check.kind == "exact":
            return self.skip_exact
        if check.kind == "similar":
            return self.skip_similar
        return False


@dataclass
class DuplicateFilterResult:
    unique_posts: list[RawPost] = field(default_factory=list)
    duplicates: list[tuple[RawPost, DuplicateCheck]] = field(default_factory=list)
    checks: dict[str, DuplicateCheck] = field(default_factory=dict)


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


class DuplicateClassifier:
    """
    Decides whether a post repeats a stored listing.

    Checks run in order and stop at the first hit:
    1. the post's legacy id is already stored (exact)
    2. a stored provenance payload carries the same content fingerprint (exact)
    3. a listing created inside the similarity window carries the same
       similarity fingerprint, and that fingerprint has a phone or address behind it (similar)
    """

    def __init__(
        self,
        store: ListingStore,
        *,
        similarity_window_days: int = 30,
        extractor: SimilarityKeyExtractor = DEFAULT_SIMILARITY_EXTRACTOR,
        now_fn: Callable[[], datetime] | None = None,
    ) -> None:
        if similarity_window_days <= 0:
            raise ValueError("similarity_window_days must be positive")
        self._store = store
        self._window = timedelta(days=int(similarity_window_days))
        self._extractor = extractor
        self._now = now_fn or _utc_now

    def fingerprints(self, post: RawPost) -> PostFingerprints:
        return fingerprint_post(post, extractor=self._extractor)

    def classify(self, post: RawPost) -> DuplicateCheck:
        if not post.legacy_id:
            return DuplicateCheck(is_duplicate=False, kind="none", reason="missing identifier")

        existing = self._store.find_by_key(post.legacy_id)
        if existing is not None:
            return DuplicateCheck(
                is_duplicate=True,
                kind="exact",
                matched_id=existing.id,
                reason=f"Post already exists with id {post.legacy_id}",
                source="store",
                by_id=True,
            )

        fps = self.fingerprints(post)

        by_content = self._store.find_by_provenance_field(CONTENT_FIELD, fps.content)
        if by_content is not None:
            return DuplicateCheck(
                is_duplicate=True,
                kind="exact",
                matched_id=by_content.id,
                reason="Duplicate content (same text, author, group and first image)",
                source="store",
            )

        if fps.has_similarity_signal:
            window_start = (self._now() - self._window).isoformat()
            by_similarity = self._store.find_by_provenance_field(
                SIMILARITY_FIELD,
                fps.similarity,
                created_after=window_start,
            )
            if by_similarity is not None:
                return DuplicateCheck(
                    is_duplicate=True,
                    kind="similar",
                    matched_id=by_similarity.id,
                    reason=f"Similar listing found (same phone, address and group): {by_similarity.title}",
                    source="store",
                )

        return NOT_DUPLICATE


def _in_batch_check(
    post: RawPost,
    fps: PostFingerprints,
    *,
    seen_ids: set[str],
    seen_content: dict[str, str],
    seen_similarity: dict[str, str],
) -> DuplicateCheck:
    pid = post.legacy_id or ""
    if pid in seen_ids:
        return DuplicateCheck(
            is_duplicate=True,
            kind="exact",
            matched_id=pid,
            reason=f"Post {pid} appears more than once in this batch",
            source="batch",
            by_id=True,
        )

    first = seen_content.get(fps.content)
    if first is not None:
        return DuplicateCheck(
            is_duplicate=True,
            kind="exact",
            matched_id=first,
            reason="Duplicate content within this batch",
            source="batch",
        )

    if fps.has_similarity_signal:
        first = seen_similarity.get(fps.similarity)
        if first is not None:
            return DuplicateCheck(
                is_duplicate=True,
                kind="similar",
                matched_id=first,
                reason="Similar listing within this batch (same phone, address and group)",
                source="batch",
            )

    return NOT_DUPLICATE


def filter_duplicates(
    posts: Sequence[RawPost],
    classifier: DuplicateClassifier,
    *,
    options: DedupeOptions | None = None,
    max_workers: int = 8,
) -> DuplicateFilterResult:
    """
    Classify every post and split the batch into unique posts and skipped duplicates.

    Store checks run in parallel and read-only. Posts that pass them are then compared,
    in delivery order, with the earlier posts of the same batch.
    """
    opts = options or DedupeOptions()
    result = DuplicateFilterResult()
    if not posts:
        return result

    workers = max(1, min(int(max_workers), len(posts)))
    with ThreadPoolExecutor(max_workers=workers, thread_name_prefix="dedupe") as pool:
        store_checks = list(pool.map(classifier.classify, posts))

    seen_ids: set[str] = set()
    seen_content: dict[str, str] = {}
    seen_similarity: dict[str, str] = {}

    for post, check in zip(posts, store_checks):
        fps = classifier.fingerprints(post)

        if not check.is_duplicate:
            check = _in_batch_check(
                post,
                fps,
                seen_ids=seen_ids,
                seen_content=seen_content,
                seen_similarity=seen_similarity,
            )

        pid = post.legacy_id or ""
        if pid:
            seen_ids.add(pid)
            seen_content.setdefault(fps.content, pid)
            if fps.has_similarity_signal:
                seen_similarity.setdefault(fps.similarity, pid)
            # First classification wins for the report.
            result.checks.setdefault(pid, check)

        if opts.should_skip(check):
            result.duplicates.append((post, check))
        else:
            result.unique_posts.append(post)

    return result
