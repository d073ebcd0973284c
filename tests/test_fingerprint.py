from __future__ import annotations

import hashlib
import unittest

from room_ingest.fingerprint import (
    EMPTY_SIMILARITY_FINGERPRINT,
    RegexSimilarityKeyExtractor,
    content_fingerprint,
    fingerprint_post,
    normalize_text,
    provenance_payload,
    similarity_fingerprint,
)
from room_ingest.post import Attachment, Author, RawPost


def _post(
    text: str | None,
    *,
    legacy_id: str = "p1",
    author_id: str | None = "u1",
    group_id: str | None = "g1",
    image: str | None = None,
) -> RawPost:
    attachments = (Attachment(image_uri=image),) if image else ()
    return RawPost(
        legacy_id=legacy_id,
        text=text,
        attachments=attachments,
        author=Author(id=author_id, name="Someone"),
        group_id=group_id,
        raw={"legacyId": legacy_id, "text": text},
    )


class TestNormalizeText(unittest.TestCase):
    def test_lowercases_collapses_whitespace_and_strips_punctuation(self) -> None:
        self.assertEqual(normalize_text("  Cho THUÊ   phòng!!! "), "cho thuê phòng")

    def test_none_is_empty(self) -> None:
        self.assertEqual(normalize_text(None), "")

    def test_keeps_vietnamese_letters(self) -> None:
        self.assertEqual(normalize_text("Phòng Trọ Đẹp"), "phòng trọ đẹp")


class TestContentFingerprint(unittest.TestCase):
    def test_stable_under_case_whitespace_and_punctuation(self) -> None:
        a = _post("Cho thuê phòng, giá 3tr!")
        b = _post("cho   THUÊ phòng giá 3tr")
        self.assertEqual(content_fingerprint(a), content_fingerprint(b))

    def test_identifier_is_not_part_of_the_fingerprint(self) -> None:
        a = _post("Cho thuê phòng", legacy_id="p1")
        b = _post("Cho thuê phòng", legacy_id="p2")
        self.assertEqual(content_fingerprint(a), content_fingerprint(b))

    def test_author_group_and_first_image_change_the_fingerprint(self) -> None:
        base = _post("Cho thuê phòng", image="https://img/1.jpg")
        self.assertNotEqual(
            content_fingerprint(base),
            content_fingerprint(_post("Cho thuê phòng", author_id="u2", image="https://img/1.jpg")),
        )
        self.assertNotEqual(
            content_fingerprint(base),
            content_fingerprint(_post("Cho thuê phòng", group_id="g2", image="https://img/1.jpg")),
        )
        self.assertNotEqual(
            content_fingerprint(base),
            content_fingerprint(_post("Cho thuê phòng", image="https://img/2.jpg")),
        )

    def test_missing_author_and_group_use_unknown_placeholder(self) -> None:
        a = _post("Cho thuê phòng", author_id=None, group_id=None)
        b = _post("Cho thuê phòng", author_id="unknown", group_id="unknown")
        self.assertEqual(content_fingerprint(a), content_fingerprint(b))


class TestSimilarityFingerprint(unittest.TestCase):
    def test_extracts_phone_and_address(self) -> None:
        key = RegexSimilarityKeyExtractor().extract_similarity_key(
            "Phòng 12 Nguyễn Trãi, LH 0912345678"
        )
        self.assertEqual(key.phone, "0912345678")
        self.assertEqual(key.address, "12 nguyễn trãi")
        self.assertFalse(key.is_empty)

    def test_same_phone_address_and_group_match_across_wording(self) -> None:
        a = _post("Phòng 12 Nguyễn Trãi, LH 0912345678", legacy_id="p1")
        b = _post("Còn phòng! 12 Nguyễn Trãi, gọi 0912345678", legacy_id="p2")
        self.assertEqual(similarity_fingerprint(a), similarity_fingerprint(b))
        self.assertNotEqual(content_fingerprint(a), content_fingerprint(b))

    def test_group_is_part_of_the_similarity_key(self) -> None:
        a = _post("LH 0912345678", group_id="g1")
        b = _post("LH 0912345678", group_id="g2")
        self.assertNotEqual(similarity_fingerprint(a), similarity_fingerprint(b))

    def test_only_all_empty_fields_have_no_signal(self) -> None:
        fps = fingerprint_post(_post("Cần tìm phòng gấp", group_id=None))
        self.assertEqual(fps.similarity, EMPTY_SIMILARITY_FINGERPRINT)
        self.assertFalse(fps.has_similarity_signal)

        with_group = fingerprint_post(_post("Cần tìm phòng gấp", group_id="g1"))
        self.assertEqual(with_group.similarity, hashlib.md5(b"||g1").hexdigest())
        self.assertTrue(with_group.has_similarity_signal)

    def test_empty_fingerprint_is_digest_of_separators(self) -> None:
        self.assertEqual(EMPTY_SIMILARITY_FINGERPRINT, hashlib.md5(b"||").hexdigest())


class TestProvenancePayload(unittest.TestCase):
    def test_carries_raw_item_and_both_fingerprints(self) -> None:
        post = _post("LH 0912345678")
        fps = fingerprint_post(post)
        payload = provenance_payload(post, fps)

        self.assertEqual(payload["raw"], {"legacyId": "p1", "text": "LH 0912345678"})
        self.assertEqual(payload["content_fingerprint"], fps.content)
        self.assertEqual(payload["similarity_fingerprint"], fps.similarity)


if __name__ == "__main__":
    unittest.main()
