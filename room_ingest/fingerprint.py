from __future__ import annotations

import hashlib
import re
import unicodedata
from dataclasses import dataclass
from typing import Any, Protocol

from .post import RawPost

_WHITESPACE_RE = re.compile(r"\s+")
_NON_ALNUM_RE = re.compile(r"[^\w\s]|_")
_PHONE_RE = re.compile(r"\d{10,11}")
_ADDRESS_RE = re.compile(r"\d+\s+[^\n,]+")

CONTENT_FIELD = "content_fingerprint"
SIMILARITY_FIELD = "similarity_fingerprint"


def _digest(value: str) -> str:
    return hashlib.md5(value.encode("utf-8"), usedforsecurity=False).hexdigest()


@dataclass(frozen=True)
class SimilarityKey:
    phone: str = ""
    address: str = ""

    @property
    def is_empty(self) -> bool:
        return not self.phone and not self.address


class SimilarityKeyExtractor(Protocol):
    def extract_similarity_key(self, text: str) -> SimilarityKey: ...


class RegexSimilarityKeyExtractor:
    """
    First 10-11 digit run as the phone, first "number + street" run as the address.
    """

    def extract_similarity_key(self, text: str) -> SimilarityKey:
        lowered = (text or "").lower()

        phone_match = _PHONE_RE.search(lowered)
        address_match = _ADDRESS_RE.search(lowered)

        return SimilarityKey(
            phone=phone_match.group(0) if phone_match else "",
            address=address_match.group(0) if address_match else "",
        )


DEFAULT_SIMILARITY_EXTRACTOR = RegexSimilarityKeyExtractor()

# Digest of a post with no phone, no address and no group.
EMPTY_SIMILARITY_FINGERPRINT = _digest("||")


def normalize_text(text: str | None) -> str:
    value = unicodedata.normalize("NFC", text or "").lower()
    value = _WHITESPACE_RE.sub(" ", value)
    value = _NON_ALNUM_RE.sub("", value)
    return value.strip()


def content_fingerprint(post: RawPost) -> str:
    author_id = post.author.id or "unknown"
    group_id = post.group_id or "unknown"
    first_image = post.first_image_uri or ""
    return _digest(f"{normalize_text(post.text)}|{author_id}|{group_id}|{first_image}")


def similarity_fingerprint(
    post: RawPost,
    *,
    extractor: SimilarityKeyExtractor = DEFAULT_SIMILARITY_EXTRACTOR,
) -> str:
    key = extractor.extract_similarity_key(post.text or "")
    return _similarity_digest(key, post.group_id)


def _similarity_digest(key: SimilarityKey, group_id: str | None) -> str:
    return _digest(f"{key.phone}|{key.address}|{group_id or ''}")


@dataclass(frozen=True)
class PostFingerprints:
    content: str
    similarity: str
    similarity_key: SimilarityKey

    @property
    def has_similarity_signal(self) -> bool:
        """False only for the digest of three empty fields."""
        return self.similarity != EMPTY_SIMILARITY_FINGERPRINT


def fingerprint_post(
    post: RawPost,
    *,
    extractor: SimilarityKeyExtractor = DEFAULT_SIMILARITY_EXTRACTOR,
) -> PostFingerprints:
    key = extractor.extract_similarity_key(post.text or "")
    return PostFingerprints(
        content=content_fingerprint(post),
        similarity=_similarity_digest(key, post.group_id),
        similarity_key=key,
    )


def provenance_payload(post: RawPost, fingerprints: PostFingerprints) -> dict[str, Any]:
    """
    The stored provenance record: the raw dataset item plus both fingerprints.

    Fingerprint keys sit at the top level so the store can index them.
    """
    return {
        "raw": dict(post.raw),
        CONTENT_FIELD: fingerprints.content,
        SIMILARITY_FIELD: fingerprints.similarity,
    }
