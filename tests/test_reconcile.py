from __future__ import annotations

import unittest
from typing import Any, Mapping

from room_ingest.errors import StorageError
from room_ingest.fingerprint import fingerprint_post
from room_ingest.listing import Listing, ListingDraft, PostedBy
from room_ingest.outcome import Accepted, Rejected
from room_ingest.post import Attachment, Author, RawPost
from room_ingest.reconcile import ListingReconciler
from room_ingest.storage import SQLiteListingStore


def _post(legacy_id: str, text: str = "Cho thuê phòng") -> RawPost:
    return RawPost(
        legacy_id=legacy_id,
        text=text,
        attachments=(Attachment(image_uri=f"https://img/{legacy_id}.jpg"),),
        author=Author(id="u1", name="Lan"),
        group_id="g1",
        raw={"legacyId": legacy_id, "text": text},
    )


def _accepted(post_id: str, **fields: Any) -> Accepted:
    fields.setdefault("title", f"Listing {post_id}")
    fields.setdefault("posted_by", PostedBy(name="Lan", fb_id="u1"))
    fields.setdefault("posted_at", "2025-01-01T08:00:00.000Z")
    return Accepted(post_id=post_id, draft=ListingDraft(post_id=post_id, **fields))


class _BrokenStore:
    def find_by_key(self, listing_id: str) -> Listing | None:
        return None

    def find_by_provenance_field(self, field_path: str, value: str, *, created_after: str | None = None) -> Listing | None:
        return None

    def create_or_update(self, listing_id: str, create_fields: Mapping[str, Any], update_fields: Mapping[str, Any]) -> str:
        raise StorageError("disk full")


class TestListingReconciler(unittest.TestCase):
    def setUp(self) -> None:
        self.store = SQLiteListingStore.open(":memory:")
        self.reconciler = ListingReconciler(self.store, now_fn=lambda: "2025-06-01T00:00:00+00:00")

    def tearDown(self) -> None:
        self.store.close()

    def test_creates_listing_with_provenance_and_defaults(self) -> None:
        post = _post("p1")
        outcome = Accepted(
            post_id="p1",
            draft=ListingDraft(post_id="p1", price=2_500_000, images=("https://img/p1.jpg",)),
        )

        summary = self.reconciler.persist([outcome], {"p1": post})

        self.assertEqual(summary.created, 1)
        listing = self.store.find_by_key("p1")
        assert listing is not None
        self.assertEqual(listing.title, "Phòng trọ Hà Nội")
        self.assertEqual(listing.group_name, "Unknown Group")
        self.assertEqual(listing.posted_by, PostedBy(name="Anonymous", fb_id="unknown"))
        self.assertEqual(listing.posted_at, "2025-06-01T00:00:00+00:00")
        self.assertEqual(listing.thumbnail, "https://img/p1.jpg")
        self.assertTrue(listing.available)
        self.assertEqual(listing.raw_provenance["raw"], {"legacyId": "p1", "text": "Cho thuê phòng"})
        self.assertEqual(listing.raw_provenance["content_fingerprint"], fingerprint_post(post).content)

    def test_placeholder_title_uses_extracted_district(self) -> None:
        outcome = Accepted(post_id="p1", draft=ListingDraft(post_id="p1", price=1, district="Đống Đa"))
        self.reconciler.persist([outcome], {"p1": _post("p1")})

        listing = self.store.find_by_key("p1")
        assert listing is not None
        self.assertEqual(listing.title, "Phòng trọ Đống Đa")

    def test_rejected_outcomes_are_not_written(self) -> None:
        summary = self.reconciler.persist([Rejected(post_id="p1", reason="empty text")], {"p1": _post("p1")})

        self.assertEqual(summary.records, [])
        self.assertIsNone(self.store.find_by_key("p1"))

    def test_second_write_of_same_identifier_in_one_run_is_skipped(self) -> None:
        summary = self.reconciler.persist(
            [_accepted("p1"), _accepted("p1", title="Changed")],
            {"p1": _post("p1")},
        )

        self.assertEqual(summary.created, 1)
        self.assertEqual(summary.skipped, 1)
        self.assertIn("already written", summary.with_status("skipped")[0].reason or "")
        listing = self.store.find_by_key("p1")
        assert listing is not None
        self.assertEqual(listing.title, "Listing p1")

    def test_existing_identifier_is_skipped_unless_marked_for_refresh(self) -> None:
        self.reconciler.persist([_accepted("p1", district="Cầu Giấy")], {"p1": _post("p1")})

        skipped = self.reconciler.persist([_accepted("p1", title="Again")], {"p1": _post("p1")})
        self.assertEqual(skipped.skipped, 1)
        self.assertIn("already exists", skipped.with_status("skipped")[0].reason or "")

        refreshed = self.reconciler.persist(
            [_accepted("p1", title="Giảm giá", price=2_000_000, district="Ba Đình")],
            {"p1": _post("p1")},
            refresh_ids={"p1"},
        )
        self.assertEqual(refreshed.updated, 1)

        listing = self.store.find_by_key("p1")
        assert listing is not None
        self.assertEqual(listing.title, "Giảm giá")
        self.assertEqual(listing.price, 2_000_000)
        self.assertEqual(listing.district, "Cầu Giấy")

    def test_refresh_without_price_keeps_stored_price(self) -> None:
        self.reconciler.persist([_accepted("p1", price=3_000_000)], {"p1": _post("p1")})

        refreshed = self.reconciler.persist(
            [_accepted("p1", title="Phòng mới sơn", price=None)],
            {"p1": _post("p1")},
            refresh_ids={"p1"},
        )

        self.assertEqual(refreshed.updated, 1)
        listing = self.store.find_by_key("p1")
        assert listing is not None
        self.assertEqual(listing.title, "Phòng mới sơn")
        self.assertEqual(listing.price, 3_000_000)

    def test_refresh_without_title_keeps_stored_title(self) -> None:
        self.reconciler.persist(
            [_accepted("p1", title="Phòng đẹp Cầu Giấy", description="Phòng rộng", price=3_000_000)],
            {"p1": _post("p1")},
        )

        self.reconciler.persist(
            [_accepted("p1", title=None, price=2_800_000)],
            {"p1": _post("p1")},
            refresh_ids={"p1"},
        )

        listing = self.store.find_by_key("p1")
        assert listing is not None
        self.assertEqual(listing.title, "Phòng đẹp Cầu Giấy")
        self.assertEqual(listing.description, "Phòng rộng")
        self.assertEqual(listing.price, 2_800_000)

    def test_refresh_without_images_keeps_stored_thumbnail(self) -> None:
        self.reconciler.persist(
            [_accepted("p1", price=1_000_000, images=("https://img/p1.jpg",))],
            {"p1": _post("p1")},
        )

        self.reconciler.persist([_accepted("p1", price=1_200_000)], {"p1": _post("p1")}, refresh_ids={"p1"})

        listing = self.store.find_by_key("p1")
        assert listing is not None
        self.assertEqual(listing.images, ("https://img/p1.jpg",))
        self.assertEqual(listing.thumbnail, "https://img/p1.jpg")

    def test_validation_mode_is_rechecked_before_writing(self) -> None:
        strict = ListingReconciler(self.store, validation_mode="strict")

        summary = strict.persist([_accepted("p1")], {"p1": _post("p1")})

        self.assertEqual(summary.skipped, 1)
        self.assertIsNone(self.store.find_by_key("p1"))

    def test_store_failures_are_reported_per_listing(self) -> None:
        reconciler = ListingReconciler(_BrokenStore())

        summary = reconciler.persist([_accepted("p1"), _accepted("p2")], {})

        self.assertEqual(summary.failed, 2)
        self.assertEqual(summary.with_status("failed")[0].reason, "disk full")


if __name__ == "__main__":
    unittest.main()
