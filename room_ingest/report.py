from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Mapping, Sequence

from .dedupe import DuplicateCheck
from .outcome import ExtractionOutcome, Rejected
from .post import RawPost
from .prechecks import PrecheckResult
from .reconcile import SaveSummary


@dataclass
class IngestReport:
    """Counts and per-post details of one ingestion run."""

    message: str
    total_posts: int = 0
    invalid: Sequence[tuple[RawPost, PrecheckResult]] = ()
    valid_posts: int = 0
    duplicates: Sequence[tuple[RawPost, DuplicateCheck]] = ()
    unique_posts: int = 0
    outcomes: Sequence[ExtractionOutcome] = ()
    saves: SaveSummary = field(default_factory=SaveSummary)

    @property
    def exact_duplicates(self) -> int:
        return sum(1 for _, c in self.duplicates if c.kind == "exact")

    @property
    def similar_duplicates(self) -> int:
        return sum(1 for _, c in self.duplicates if c.kind == "similar")

    @property
    def extraction_successes(self) -> int:
        return sum(1 for o in self.outcomes if o.success)

    @property
    def extraction_failures(self) -> int:
        return sum(1 for o in self.outcomes if not o.success)

    def to_dict(self) -> dict[str, Any]:
        return {
            "success": True,
            "message": self.message,
            "stats": {
                "total_posts": int(self.total_posts),
                "valid_posts": int(self.valid_posts),
                "invalid_posts": len(self.invalid),
                "duplicates": {
                    "total": len(self.duplicates),
                    "exact": self.exact_duplicates,
                    "similar": self.similar_duplicates,
                },
                "unique_posts": int(self.unique_posts),
                "extraction": {
                    "successful": self.extraction_successes,
                    "failed": self.extraction_failures,
                },
                "save": {
                    "successful": self.saves.successful,
                    "created": self.saves.created,
                    "updated": self.saves.updated,
                    "failed": self.saves.failed,
                    "skipped": self.saves.skipped,
                },
            },
            "duplicate_details": [
                {
                    "source_id": post.legacy_id,
                    "kind": check.kind,
                    "reason": check.reason,
                    "matched_id": check.matched_id,
                }
                for post, check in self.duplicates
            ],
            "invalid_details": [
                {"source_id": post.legacy_id or "unknown", "reasons": list(result.reasons)}
                for post, result in self.invalid
            ],
            "skipped_details": [
                {"source_id": r.post_id, "reason": r.reason}
                for r in self.saves.with_status("skipped")
            ],
            "save_errors": [
                {"source_id": r.post_id, "reason": r.reason}
                for r in self.saves.with_status("failed")
            ],
            "errors": [
                {"source_id": o.post_id, "reason": o.reason}
                for o in self.outcomes
                if isinstance(o, Rejected)
            ],
        }


def failure_report(message: str) -> dict[str, Any]:
    """Report for a batch that could not start (bad payload, unreadable dataset)."""
    msg = (message or "").strip() or "Unknown error"
    return {"success": False, "error": msg}


def format_report(report: Mapping[str, Any]) -> str:
    """One-line human summary for CLI output and logs."""
    if not report.get("success"):
        return f"failed: {report.get('error') or 'unknown error'}"

    stats = report.get("stats") or {}
    dup = stats.get("duplicates") or {}
    ext = stats.get("extraction") or {}
    save = stats.get("save") or {}
    return (
        f"{save.get('successful', 0)}/{stats.get('total_posts', 0)} saved, "
        f"{dup.get('total', 0)} duplicates, "
        f"{save.get('skipped', 0)} skipped, "
        f"{int(ext.get('failed', 0)) + int(save.get('failed', 0))} errors"
    )
