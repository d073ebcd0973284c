from __future__ import annotations

import json
import re
from dataclasses import dataclass
from typing import Any, Sequence

from .fingerprint import DEFAULT_SIMILARITY_EXTRACTOR


_OFFLINE_TEXT_1 = (
    "Cho thuê phòng trọ khép kín 25m2 tại 12 Nguyễn Trãi, Thanh Xuân. "
    "Giá 3tr5/tháng, điện 3.5k, nước 100k/người. Có wifi, chỗ để xe. "
    "Liên hệ 0912345678"
)
_OFFLINE_TEXT_2 = (
    "Phòng studio full đồ 30m2 ngõ 68 Cầu Giấy, giá 5tr. "
    "Không chung chủ, giờ giấc tự do. LH 0987654321"
)
_OFFLINE_TEXT_3 = (
    "Tìm bạn nữ ở ghép chung cư mini, 1tr8/người, "
    "khu Đống Đa, gần ĐH Thủy Lợi."
)

_GROUP = {"facebookId": "100200300", "groupTitle": "Phòng trọ Hà Nội"}

_DEFAULT_OFFLINE_ITEMS: list[dict[str, Any]] = [
    {
        "legacyId": "offline-1",
        "text": _OFFLINE_TEXT_1,
        "user": {"id": "u-1", "name": "Lan Nguyen"},
        "attachments": [{"image": {"uri": "https://example.com/img/1.jpg"}}],
        "time": "2025-01-01T08:00:00.000Z",
        "url": "https://www.facebook.com/groups/100200300/posts/1",
        **_GROUP,
    },
    {
        "legacyId": "offline-2",
        "text": _OFFLINE_TEXT_2,
        "user": {"id": "u-2", "name": "Minh Tran"},
        "attachments": [],
        "time": "2025-01-02T08:00:00.000Z",
        "url": "https://www.facebook.com/groups/100200300/posts/2",
        **_GROUP,
    },
    {
        # Same author, text and image as offline-1: an exact duplicate by content.
        "legacyId": "offline-3",
        "text": _OFFLINE_TEXT_1,
        "user": {"id": "u-1", "name": "Lan Nguyen"},
        "attachments": [{"image": {"uri": "https://example.com/img/1.jpg"}}],
        "time": "2025-01-03T08:00:00.000Z",
        "url": "https://www.facebook.com/groups/100200300/posts/3",
        **_GROUP,
    },
    {
        "legacyId": "offline-4",
        "text": _OFFLINE_TEXT_3,
        "user": {"id": "u-3", "name": "Hoa Le"},
        "time": "2025-01-04T08:00:00.000Z",
        "url": "https://www.facebook.com/groups/100200300/posts/4",
        **_GROUP,
    },
    {
        # No text: dropped by the prechecks.
        "legacyId": "offline-5",
        "user": {"id": "u-4", "name": "Anonymous"},
        "attachments": [{"image": {"uri": "https://example.com/img/5.jpg"}}],
        "time": "2025-01-05T08:00:00.000Z",
        **_GROUP,
    },
]

_TEXT_LINE_RE = re.compile(r"^- Text: (.*)$", re.MULTILINE)
_MILLIONS_RE = re.compile(r"(\d+)\s*tr(\d)?\b")
_AREA_RE = re.compile(r"(\d+(?:[.,]\d+)?)\s*m2", re.IGNORECASE)


def _offline_price(text: str) -> int | None:
    m = _MILLIONS_RE.search(text)
    if m is None:
        return None
    price = int(m.group(1)) * 1_000_000
    if m.group(2):
        price += int(m.group(2)) * 100_000
    return price


def _offline_area(text: str) -> float | None:
    m = _AREA_RE.search(text)
    if m is None:
        return None
    return float(m.group(1).replace(",", "."))


def _offline_room_type(text: str) -> str | None:
    lowered = text.casefold()
    if "studio" in lowered:
        return "studio"
    if "ở ghép" in lowered:
        return "shared"
    if "chung cư" in lowered:
        return "apartment"
    return "single"


@dataclass
class OfflineDatasetReader:
    """
    Network-free dataset reader for smoke runs.

    Returns the same small set of Facebook group posts for any dataset id; the set
    covers a content duplicate and a post without text.
    """

    items: Sequence[dict[str, Any]] = tuple(_DEFAULT_OFFLINE_ITEMS)

    def fetch_items(self, dataset_id: str) -> list[dict[str, Any]]:
        _ = dataset_id
        return [dict(item) for item in self.items]


class OfflineCompletionClient:
    """
    Deterministic completion stub for offline runs.

    Reads the post text back out of the prompt and fills the listing fields with
    simple pattern matches, so the reply always parses as a listing object.
    """

    def complete(
        self,
        system_prompt: str,
        user_prompt: str,
        *,
        temperature: float,
        json_mode: bool,
    ) -> str:
        _ = (system_prompt, temperature, json_mode)

        m = _TEXT_LINE_RE.search(user_prompt or "")
        text = m.group(1).strip() if m else ""
        key = DEFAULT_SIMILARITY_EXTRACTOR.extract_similarity_key(text)

        first_sentence = text.split(".")[0].strip()
        payload = {
            "title": first_sentence[:80] or None,
            "description": text,
            "address": key.address or None,
            "district": None,
            "ward": None,
            "price": _offline_price(text),
            "area": _offline_area(text),
            "amenities": [],
            "rules": [],
            "contactPhone": key.phone or None,
            "depositRequired": None,
            "utilities": {"electricity": None, "water": None, "internet": None, "parking": None},
            "roomType": _offline_room_type(text),
        }
        return json.dumps(payload, ensure_ascii=False)
