from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Literal, Mapping, Sequence

RoomType = Literal["single", "shared", "apartment", "studio"]

ROOM_TYPES: tuple[str, ...] = ("single", "shared", "apartment", "studio")

# Columns a later delivery of the same post may rewrite. Everything else is set once.
MUTABLE_FIELDS: tuple[str, ...] = (
    "title",
    "description",
    "price",
    "available",
    "images",
    "thumbnail",
    "raw_provenance",
)


@dataclass(frozen=True)
class PostedBy:
    name: str
    fb_id: str


@dataclass(frozen=True)
class Utilities:
    electricity: str | None = None
    water: str | None = None
    internet: bool | None = None
    parking: bool | None = None

    def as_dict(self) -> dict[str, Any]:
        return {
            "electricity": self.electricity,
            "water": self.water,
            "internet": self.internet,
            "parking": self.parking,
        }

    @classmethod
    def from_mapping(cls, value: Mapping[str, Any] | None) -> "Utilities":
        data = value or {}
        electricity = data.get("electricity")
        water = data.get("water")
        internet = data.get("internet")
        parking = data.get("parking")
        return cls(
            electricity=electricity if isinstance(electricity, str) else None,
            water=water if isinstance(water, str) else None,
            internet=internet if isinstance(internet, bool) else None,
            parking=parking if isinstance(parking, bool) else None,
        )


@dataclass(frozen=True)
class ListingDraft:
    """
    Extracted fields merged with post metadata, before defaults are applied.

    Produced by the extraction client for accepted posts.
    """

    post_id: str
    title: str | None = None
    description: str | None = None
    address: str | None = None
    district: str | None = None
    ward: str | None = None
    price: int | None = None
    area: float | None = None
    amenities: Sequence[str] = ()
    rules: Sequence[str] = ()
    contact_phone: str | None = None
    deposit_required: int | None = None
    utilities: Utilities = field(default_factory=Utilities)
    room_type: RoomType | None = None

    images: Sequence[str] = ()
    posted_by: PostedBy | None = None
    posted_at: str | None = None
    permalink: str | None = None
    group_name: str | None = None

    @property
    def thumbnail(self) -> str:
        return self.images[0] if self.images else ""

    @property
    def has_title(self) -> bool:
        return bool((self.title or "").strip())

    @property
    def has_price(self) -> bool:
        return bool(self.price)


@dataclass(frozen=True)
class Listing:
    """A persisted room listing, keyed by the source post's legacy id."""

    id: str
    title: str
    description: str
    thumbnail: str
    address: str
    district: str
    ward: str | None
    price: int
    area: float
    posted_by: PostedBy
    posted_at: str
    permalink: str
    group_name: str
    coordinates: tuple[float, float] | None
    amenities: tuple[str, ...]
    rules: tuple[str, ...]
    images: tuple[str, ...]
    contact_phone: str | None
    deposit_required: int | None
    utilities: Utilities
    room_type: RoomType | None
    available: bool
    raw_provenance: Mapping[str, Any] = field(compare=False, repr=False)
    created_at: str = ""
    updated_at: str = ""

    def public_view(self) -> dict[str, Any]:
        """Listing as a JSON-ready mapping, without the provenance payload."""
        return {
            "id": self.id,
            "title": self.title,
            "description": self.description,
            "thumbnail": self.thumbnail,
            "address": self.address,
            "district": self.district,
            "ward": self.ward,
            "price": self.price,
            "area": self.area,
            "posted_by": {"name": self.posted_by.name, "fb_id": self.posted_by.fb_id},
            "posted_at": self.posted_at,
            "permalink": self.permalink,
            "group_name": self.group_name,
            "coordinates": (
                {"lat": self.coordinates[0], "lng": self.coordinates[1]}
                if self.coordinates is not None
                else None
            ),
            "amenities": list(self.amenities),
            "rules": list(self.rules),
            "images": list(self.images),
            "contact_phone": self.contact_phone,
            "deposit_required": self.deposit_required,
            "utilities": self.utilities.as_dict(),
            "room_type": self.room_type,
            "available": self.available,
            "created_at": self.created_at,
            "updated_at": self.updated_at,
        }
