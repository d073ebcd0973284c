from __future__ import annotations

from dataclasses import dataclass
from typing import Union

from .listing import ListingDraft


@dataclass(frozen=True)
class Accepted:
    post_id: str
    draft: ListingDraft

    @property
    def success(self) -> bool:
        return True


@dataclass(frozen=True)
class Rejected:
    post_id: str
    reason: str

    @property
    def success(self) -> bool:
        return False


ExtractionOutcome = Union[Accepted, Rejected]

UNKNOWN_POST_ID = "unknown"
