from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Mapping, Sequence


@dataclass(frozen=True)
class Author:
    id: str | None = None
    name: str | None = None


@dataclass(frozen=True)
class Attachment:
    image_uri: str | None = None
    url: str | None = None
    ocr_text: str | None = None


@dataclass(frozen=True)
class RawPost:
    """A Facebook group post as delivered by the dataset, normalized at the ingestion boundary."""

    legacy_id: str | None
    text: str | None = None
    attachments: Sequence[Attachment] = ()
    author: Author = field(default_factory=Author)
    group_id: str | None = None
    group_title: str | None = None
    time: str | None = None
    url: str | None = None

    # Original dataset item, kept for the provenance payload.
    raw: Mapping[str, Any] = field(default_factory=dict, compare=False, repr=False)

    @property
    def image_uris(self) -> list[str]:
        return [a.image_uri for a in self.attachments if a.image_uri]

    @property
    def first_image_uri(self) -> str | None:
        images = self.image_uris
        return images[0] if images else None
