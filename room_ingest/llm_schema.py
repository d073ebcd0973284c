from __future__ import annotations

import math
import re
import unicodedata
from decimal import Decimal
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, field_validator

from .listing import ROOM_TYPES, RoomType

_NON_DIGIT_RE = re.compile(r"[^\d]")
_CURRENCY_SUFFIX_RE = re.compile(r"\s*(vnđ|vnd|đồng|dong|đ)$")
_GROUPED_RE = re.compile(r"^\d{1,3}([.,])\d{3}(?:\1\d{3})*$")
_SHORTHAND_RE = re.compile(r"^(\d+)(?:[.,](\d+))?\s*(triệu|trieu|tr|nghìn|ngàn|k)\s*(\d+)?$")
_AMOUNT_UNITS = {
    "triệu": 1_000_000,
    "trieu": 1_000_000,
    "tr": 1_000_000,
    "nghìn": 1_000,
    "ngàn": 1_000,
    "k": 1_000,
}

# Shape requested from the model. JSON mode does not enforce a schema, so the
# template is embedded in the prompt and the reply is coerced by ExtractedListing.
LISTING_JSON_TEMPLATE: dict[str, Any] = {
    "title": "short listing title",
    "description": "detailed description",
    "address": "street address",
    "district": "district",
    "ward": "ward or null",
    "price": "monthly rent as an integer in VND",
    "area": "floor area in m2 as a number, 0 if unknown",
    "amenities": ["amenity"],
    "rules": ["house rule"],
    "contactPhone": "phone number or null",
    "depositRequired": "deposit as an integer in VND or null",
    "utilities": {
        "electricity": "electricity price text or null",
        "water": "water price text or null",
        "internet": "true/false or null",
        "parking": "true/false or null",
    },
    "roomType": "one of: single | shared | apartment | studio, or null",
}


def _clean_str(value: Any) -> str | None:
    if isinstance(value, str):
        s = value.strip()
        return s or None
    if isinstance(value, (int, float)) and not isinstance(value, bool):
        return str(value)
    return None


def _parse_amount_text(value: str) -> int | None:
    """
    VND amount written as text: plain or grouped digits ("2.500.000đ") or
    shorthand ("2tr5", "3.5 triệu", "2,5tr", "500k"). Anything else is None.
    """
    s = unicodedata.normalize("NFC", value).strip().casefold()
    s = s.split("/", 1)[0].strip()
    s = _CURRENCY_SUFFIX_RE.sub("", s).strip()
    if not s:
        return None

    if s.isdecimal():
        return int(s)
    if _GROUPED_RE.match(s):
        return int(_NON_DIGIT_RE.sub("", s))

    m = _SHORTHAND_RE.match(s)
    if m is None:
        return None
    whole, decimals, unit, tail = m.groups()
    if decimals and tail:
        return None
    return int(Decimal(f"{whole}.{decimals or tail or 0}") * _AMOUNT_UNITS[unit])


def _clean_amount(value: Any) -> int | None:
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        if isinstance(value, float) and not math.isfinite(value):
            return None
        amount = int(round(value))
        return amount if amount >= 0 else None
    if isinstance(value, str):
        return _parse_amount_text(value)
    return None


def _clean_bool(value: Any) -> bool | None:
    if isinstance(value, bool):
        return value
    if isinstance(value, str):
        v = value.strip().casefold()
        if v in ("true", "yes", "co", "có"):
            return True
        if v in ("false", "no", "khong", "không"):
            return False
    return None


class ExtractedUtilities(BaseModel):
    model_config = ConfigDict(extra="ignore", frozen=True)

    electricity: str | None = None
    water: str | None = None
    internet: bool | None = None
    parking: bool | None = None

    @field_validator("electricity", "water", mode="before")
    @classmethod
    def _text_or_none(cls, v: Any) -> str | None:
        return _clean_str(v)

    @field_validator("internet", "parking", mode="before")
    @classmethod
    def _bool_or_none(cls, v: Any) -> bool | None:
        return _clean_bool(v)


class ExtractedListing(BaseModel):
    """
    The JSON object returned by the completion call, coerced leniently.

    Unparseable values become None/empty rather than failing the whole post.
    """

    model_config = ConfigDict(extra="ignore", frozen=True, populate_by_name=True)

    title: str | None = None
    description: str | None = None
    address: str | None = None
    district: str | None = None
    ward: str | None = None
    price: int | None = None
    area: float | None = None
    amenities: list[str] = Field(default_factory=list)
    rules: list[str] = Field(default_factory=list)
    contact_phone: str | None = Field(None, alias="contactPhone")
    deposit_required: int | None = Field(None, alias="depositRequired")
    utilities: ExtractedUtilities = Field(default_factory=ExtractedUtilities)
    room_type: RoomType | None = Field(None, alias="roomType")

    @field_validator("title", "description", "address", "district", "ward", "contact_phone", mode="before")
    @classmethod
    def _text_or_none(cls, v: Any) -> str | None:
        return _clean_str(v)

    @field_validator("price", "deposit_required", mode="before")
    @classmethod
    def _amount_or_none(cls, v: Any) -> int | None:
        return _clean_amount(v)

    @field_validator("area", mode="before")
    @classmethod
    def _area_or_none(cls, v: Any) -> float | None:
        if v is None or isinstance(v, bool):
            return None
        if isinstance(v, (int, float)):
            return float(v) if math.isfinite(float(v)) and v >= 0 else None
        if isinstance(v, str):
            try:
                area = float(v.strip().replace(",", "."))
            except ValueError:
                return None
            return area if math.isfinite(area) and area >= 0 else None
        return None

    @field_validator("amenities", "rules", mode="before")
    @classmethod
    def _str_list(cls, v: Any) -> list[str]:
        if isinstance(v, str):
            v = [v]
        if not isinstance(v, list):
            return []
        out: list[str] = []
        for item in v:
            s = _clean_str(item)
            if s:
                out.append(s)
        return out

    @field_validator("utilities", mode="before")
    @classmethod
    def _utilities_mapping(cls, v: Any) -> Any:
        return v if isinstance(v, dict) else {}

    @field_validator("room_type", mode="before")
    @classmethod
    def _room_type_enum(cls, v: Any) -> str | None:
        if not isinstance(v, str):
            return None
        value = v.strip().casefold()
        return value if value in ROOM_TYPES else None
