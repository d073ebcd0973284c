from __future__ import annotations

import tempfile
import unittest
from pathlib import Path
from typing import Any

from room_ingest.errors import ValidationError
from room_ingest.listing import PostedBy, Utilities
from room_ingest.storage import SQLiteListingStore


def _fields(**overrides: Any) -> dict[str, Any]:
    fields: dict[str, Any] = {
        "title": "Phòng trọ Cầu Giấy",
        "description": "Phòng 20m2",
        "thumbnail": "https://img/1.jpg",
        "address": "12 Trần Thái Tông",
        "district": "Cầu Giấy",
        "ward": None,
        "price": 3_000_000,
        "area": 20.0,
        "posted_by": PostedBy(name="Lan", fb_id="u1"),
        "posted_at": "2025-01-01T08:00:00.000Z",
        "permalink": "https://fb/p1",
        "group_name": "Phòng trọ Hà Nội",
        "coordinates": None,
        "amenities": ["wifi"],
        "rules": [],
        "images": ["https://img/1.jpg"],
        "contact_phone": "0912345678",
        "deposit_required": None,
        "utilities": Utilities(internet=True),
        "room_type": "single",
        "available": True,
        "raw_provenance": {"raw": {"legacyId": "p1"}, "content_fingerprint": "c1", "similarity_fingerprint": "s1"},
    }
    fields.update(overrides)
    return fields


class TestSQLiteListingStore(unittest.TestCase):
    def test_creates_then_updates_only_the_given_fields(self) -> None:
        with tempfile.TemporaryDirectory() as td:
            db_path = Path(td) / "listings.sqlite"

            with SQLiteListingStore.open(db_path) as store:
                status = store.create_or_update("p1", _fields(), {}, timestamp="2025-01-01T00:00:00+00:00")
                self.assertEqual(status, "created")

                status = store.create_or_update(
                    "p1",
                    _fields(district="Đống Đa", price=9),
                    {"title": "Phòng trọ mới", "price": 3_500_000},
                    timestamp="2025-02-01T00:00:00+00:00",
                )
                self.assertEqual(status, "updated")

                listing = store.find_by_key("p1")
                assert listing is not None
                self.assertEqual(listing.title, "Phòng trọ mới")
                self.assertEqual(listing.price, 3_500_000)
                self.assertEqual(listing.district, "Cầu Giấy")
                self.assertEqual(listing.created_at, "2025-01-01T00:00:00+00:00")
                self.assertEqual(listing.updated_at, "2025-02-01T00:00:00+00:00")
                self.assertEqual(store.listing_count(), 1)

    def test_round_trips_structured_fields(self) -> None:
        with SQLiteListingStore.open(":memory:") as store:
            store.create_or_update("p1", _fields(), {})
            listing = store.find_by_key("p1")

        assert listing is not None
        self.assertEqual(listing.posted_by, PostedBy(name="Lan", fb_id="u1"))
        self.assertEqual(listing.amenities, ("wifi",))
        self.assertEqual(listing.images, ("https://img/1.jpg",))
        self.assertTrue(listing.utilities.internet)
        self.assertEqual(listing.room_type, "single")
        self.assertTrue(listing.available)
        self.assertEqual(listing.raw_provenance["content_fingerprint"], "c1")
        self.assertNotIn("raw_provenance", listing.public_view())

    def test_unknown_key_returns_none(self) -> None:
        with SQLiteListingStore.open(":memory:") as store:
            self.assertIsNone(store.find_by_key("missing"))

    def test_rejects_listing_without_title_and_price(self) -> None:
        with SQLiteListingStore.open(":memory:") as store:
            with self.assertRaises(ValidationError):
                store.create_or_update("p1", _fields(title="", price=0), {})
            self.assertEqual(store.listing_count(), 0)

    def test_rejects_missing_required_and_unknown_fields(self) -> None:
        with SQLiteListingStore.open(":memory:") as store:
            fields = _fields()
            del fields["posted_at"]
            with self.assertRaises(ValueError):
                store.create_or_update("p1", fields, {})
            with self.assertRaises(ValueError):
                store.create_or_update("p1", _fields(colour="blue"), {})

    def test_finds_oldest_listing_by_provenance_field(self) -> None:
        with SQLiteListingStore.open(":memory:") as store:
            store.create_or_update("p2", _fields(), {}, timestamp="2025-03-01T00:00:00+00:00")
            store.create_or_update("p1", _fields(), {}, timestamp="2025-01-01T00:00:00+00:00")

            match = store.find_by_provenance_field("content_fingerprint", "c1")
            assert match is not None
            self.assertEqual(match.id, "p1")

            recent = store.find_by_provenance_field(
                "similarity_fingerprint",
                "s1",
                created_after="2025-02-01T00:00:00+00:00",
            )
            assert recent is not None
            self.assertEqual(recent.id, "p2")

            self.assertIsNone(store.find_by_provenance_field("content_fingerprint", "nope"))

    def test_rejects_unsafe_provenance_path(self) -> None:
        with SQLiteListingStore.open(":memory:") as store:
            with self.assertRaises(ValueError):
                store.find_by_provenance_field("x') OR 1=1 --", "v")

    def test_mark_unavailable_soft_deletes(self) -> None:
        with SQLiteListingStore.open(":memory:") as store:
            store.create_or_update("p1", _fields(), {})

            self.assertTrue(store.mark_unavailable("p1"))
            self.assertFalse(store.mark_unavailable("missing"))

            listing = store.find_by_key("p1")
            assert listing is not None
            self.assertFalse(listing.available)
            self.assertEqual(listing.title, "Phòng trọ Cầu Giấy")
            self.assertEqual(store.listing_count(), 1)
            self.assertEqual(store.listing_count(available_only=True), 0)

    def test_reopening_keeps_schema_and_rows(self) -> None:
        with tempfile.TemporaryDirectory() as td:
            db_path = Path(td) / "listings.sqlite"
            with SQLiteListingStore.open(db_path) as store:
                store.create_or_update("p1", _fields(), {})
            with SQLiteListingStore.open(db_path) as store:
                self.assertIsNotNone(store.find_by_key("p1"))
                versions = store.conn.execute("SELECT version FROM schema_migrations").fetchall()
                self.assertEqual([int(r[0]) for r in versions], [1])


if __name__ == "__main__":
    unittest.main()
