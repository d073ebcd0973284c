from __future__ import annotations

from dataclasses import dataclass, field
from typing import Sequence

from .post import RawPost


@dataclass(frozen=True)
class PrecheckResult:
    passed: bool
    reasons: Sequence[str]


def run_prechecks(post: RawPost) -> PrecheckResult:
    """
    Cheap checks that drop posts before any store query or completion call.
    """
    reasons: list[str] = []

    if not post.legacy_id:
        reasons.append("missing_identifier")

    if not (post.text or "").strip():
        reasons.append("empty_text")

    return PrecheckResult(passed=not reasons, reasons=reasons)


@dataclass
class PrecheckSplit:
    valid: list[RawPost] = field(default_factory=list)
    invalid: list[tuple[RawPost, PrecheckResult]] = field(default_factory=list)


def split_valid_posts(posts: Sequence[RawPost]) -> PrecheckSplit:
    split = PrecheckSplit()
    for post in posts:
        checks = run_prechecks(post)
        if checks.passed:
            split.valid.append(post)
        else:
            split.invalid.append((post, checks))
    return split
