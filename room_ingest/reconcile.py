from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Callable, Collection, Literal, Mapping, Sequence

from .config_schema import ListingDefaultsConfig, ValidationMode
from .errors import ConflictError, StorageError, ValidationError
from .fingerprint import PostFingerprints, fingerprint_post, provenance_payload
from .listing import MUTABLE_FIELDS, ListingDraft, PostedBy
from .llm import validation_failure
from .outcome import UNKNOWN_POST_ID, Accepted, ExtractionOutcome
from .post import RawPost
from .run_log import RunLogger
from .storage import ListingStore

SaveStatus = Literal["created", "updated", "skipped", "failed"]


@dataclass(frozen=True)
class SaveRecord:
    post_id: str
    status: SaveStatus
    reason: str | None = None


@dataclass
class SaveSummary:
    records: list[SaveRecord] = field(default_factory=list)

    def _count(self, *statuses: SaveStatus) -> int:
        return sum(1 for r in self.records if r.status in statuses)

    @property
    def created(self) -> int:
        return self._count("created")

    @property
    def updated(self) -> int:
        return self._count("updated")

    @property
    def successful(self) -> int:
        return self._count("created", "updated")

    @property
    def skipped(self) -> int:
        return self._count("skipped")

    @property
    def failed(self) -> int:
        return self._count("failed")

    def with_status(self, status: SaveStatus) -> list[SaveRecord]:
        return [r for r in self.records if r.status == status]


def _utc_now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def listing_fields(
    draft: ListingDraft,
    *,
    provenance: Mapping[str, Any],
    defaults: ListingDefaultsConfig,
    now_iso: str,
) -> dict[str, Any]:
    """Full column set for a new listing, with defaults for missing optional values."""
    title = (draft.title or "").strip() or f"Phòng trọ {draft.district or defaults.default_city}"

    return {
        "title": title,
        "description": draft.description or "",
        "thumbnail": draft.thumbnail,
        "address": draft.address or "",
        "district": draft.district or "",
        "ward": draft.ward,
        "price": draft.price or 0,
        "area": draft.area or 0.0,
        "posted_by": draft.posted_by or PostedBy(name="Anonymous", fb_id="unknown"),
        "posted_at": draft.posted_at or now_iso,
        "permalink": draft.permalink or "",
        "group_name": draft.group_name or defaults.default_group_name,
        "coordinates": None,
        "amenities": list(draft.amenities),
        "rules": list(draft.rules),
        "images": list(draft.images),
        "contact_phone": draft.contact_phone,
        "deposit_required": draft.deposit_required,
        "utilities": draft.utilities,
        "room_type": draft.room_type,
        "available": True,
        "raw_provenance": dict(provenance),
    }


def listing_update_fields(
    draft: ListingDraft,
    *,
    provenance: Mapping[str, Any],
) -> dict[str, Any]:
    """
    Mutable columns a redelivery rewrites.

    Only values the extraction actually produced are included; a field the reply
    left out keeps its stored value instead of falling back to a default.
    """
    fields: dict[str, Any] = {"available": True}

    title = (draft.title or "").strip()
    if title:
        fields["title"] = title
    if draft.description:
        fields["description"] = draft.description
    if draft.has_price:
        fields["price"] = draft.price
    if draft.images:
        fields["images"] = list(draft.images)
        fields["thumbnail"] = draft.thumbnail
    if provenance:
        fields["raw_provenance"] = dict(provenance)

    return {k: v for k, v in fields.items() if k in MUTABLE_FIELDS}


class ListingReconciler:
    """
    Writes accepted extraction outcomes to the store, one row at a time.

    Rows are written sequentially in outcome order. An identifier seen earlier in the
    same run, or already stored without being marked for refresh, is skipped rather
    than written twice.
    """

    def __init__(
        self,
        store: ListingStore,
        *,
        defaults: ListingDefaultsConfig | None = None,
        validation_mode: ValidationMode = "lenient",
        fingerprint_fn: Callable[[RawPost], PostFingerprints] = fingerprint_post,
        now_fn: Callable[[], str] | None = None,
        logger: RunLogger | None = None,
    ) -> None:
        self._store = store
        self._defaults = defaults or ListingDefaultsConfig()
        self._mode = validation_mode
        self._fingerprint = fingerprint_fn
        self._now = now_fn or _utc_now_iso
        self._logger = logger

    def _check_writable(
        self,
        post_id: str,
        *,
        written: Collection[str],
        refresh_ids: Collection[str],
    ) -> None:
        if post_id in written:
            raise ConflictError(f"Listing {post_id} was already written in this batch")

        if post_id in refresh_ids:
            return

        if self._store.find_by_key(post_id) is not None:
            raise ConflictError(f"Listing {post_id} already exists")

    def _write(self, outcome: Accepted, post: RawPost | None) -> str:
        draft = outcome.draft

        failure = validation_failure(draft, self._mode)
        if failure is not None:
            raise ValidationError(failure)

        provenance: Mapping[str, Any] = {}
        if post is not None:
            provenance = provenance_payload(post, self._fingerprint(post))

        create_fields = listing_fields(
            draft,
            provenance=provenance,
            defaults=self._defaults,
            now_iso=self._now(),
        )
        update_fields = listing_update_fields(draft, provenance=provenance)

        return self._store.create_or_update(outcome.post_id, create_fields, update_fields)

    def persist(
        self,
        outcomes: Sequence[ExtractionOutcome],
        posts_by_id: Mapping[str, RawPost],
        *,
        refresh_ids: Collection[str] = (),
    ) -> SaveSummary:
        """
        Persist every Accepted outcome; Rejected outcomes are ignored here.

        `refresh_ids` are identifiers known to be stored already whose redelivery
        should update the restricted field set instead of being skipped.
        """
        summary = SaveSummary()
        written: set[str] = set()

        for outcome in outcomes:
            if not isinstance(outcome, Accepted):
                continue

            post_id = (outcome.post_id or "").strip()
            if not post_id or post_id == UNKNOWN_POST_ID:
                summary.records.append(SaveRecord(UNKNOWN_POST_ID, "skipped", "missing identifier"))
                continue

            try:
                self._check_writable(post_id, written=written, refresh_ids=refresh_ids)
                status = self._write(outcome, posts_by_id.get(post_id))
            except (ConflictError, ValidationError) as e:
                summary.records.append(SaveRecord(post_id, "skipped", str(e)))
                if self._logger is not None:
                    self._logger.info("listing_skipped", post_id=post_id, reason=str(e))
                continue
            except (StorageError, ValueError) as e:
                summary.records.append(SaveRecord(post_id, "failed", str(e)))
                if self._logger is not None:
                    self._logger.exception("listing_save_failed", exc=e, post_id=post_id)
                continue

            written.add(post_id)
            summary.records.append(SaveRecord(post_id, "created" if status == "created" else "updated"))
            if self._logger is not None:
                self._logger.info("listing_saved", post_id=post_id, status=status)

        return summary
