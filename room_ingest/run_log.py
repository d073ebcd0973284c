from __future__ import annotations

import copy
import json
import traceback
import uuid
from datetime import datetime, timezone
from pathlib import Path
from threading import Lock
from typing import Any, TextIO


def _utc_now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def _truncate(text: str, *, limit: int) -> str:
    s = str(text or "")
    if limit <= 0:
        return ""
    if len(s) <= limit:
        return s
    return s[: max(0, limit - 1)] + "…"


class _JsonlSink:
    """Append-only JSONL file; one lock serializes every line."""

    def __init__(self, path: Path, *, overwrite: bool) -> None:
        self.path = path
        self._overwrite = overwrite
        self._fp: TextIO | None = None
        self._lock = Lock()
        self._opened = False

    def open(self) -> None:
        with self._lock:
            if self._fp is not None:
                return
            self.path.parent.mkdir(parents=True, exist_ok=True)
            mode = "w" if self._overwrite and not self._opened else "a"
            self._fp = self.path.open(mode, encoding="utf-8", newline="\n")
            self._opened = True

    def write(self, line: str) -> None:
        if self._fp is None:
            self.open()
        with self._lock:
            if self._fp is None:
                return
            self._fp.write(line + "\n")
            self._fp.flush()

    def close(self) -> None:
        with self._lock:
            if self._fp is None:
                return
            try:
                self._fp.flush()
            finally:
                self._fp.close()
            self._fp = None


class RunLogger:
    """
    JSONL event logger for ingestion runs.

    Each line is one JSON object: ts, level, event, session_id, optional run_id and
    post_id, bound context, and event data. Loggers returned by `bind` write through
    the same file and lock as their parent, so extraction and classification workers
    can log concurrently. Close the root logger only.
    """

    def __init__(
        self,
        path: str | Path,
        *,
        overwrite: bool = False,
        run_id: str | None = None,
        session_id: str | None = None,
    ) -> None:
        self._sink = _JsonlSink(Path(path), overwrite=bool(overwrite))
        self._run_id = (run_id or "").strip() or None
        self._session_id = (session_id or "").strip() or uuid.uuid4().hex
        self._context: dict[str, Any] = {}

    @classmethod
    def open(
        cls,
        path: str | Path,
        *,
        overwrite: bool = False,
        run_id: str | None = None,
        session_id: str | None = None,
    ) -> "RunLogger":
        logger = cls(path, overwrite=overwrite, run_id=run_id, session_id=session_id)
        logger._sink.open()
        return logger

    def close(self) -> None:
        self._sink.close()

    def __enter__(self) -> "RunLogger":
        self._sink.open()
        return self

    def __exit__(self, exc_type: object, exc: object, tb: object) -> None:
        self.close()

    @property
    def path(self) -> Path:
        return self._sink.path

    @property
    def run_id(self) -> str | None:
        return self._run_id

    @property
    def context(self) -> dict[str, Any]:
        return dict(self._context)

    def set_run_id(self, run_id: str) -> None:
        rid = (run_id or "").strip()
        if rid:
            self._run_id = rid

    def bind(self, **context: Any) -> "RunLogger":
        """Child logger that adds `context` (None values dropped) to every record."""
        child = copy.copy(self)
        child._context = {**self._context, **{k: v for k, v in context.items() if v is not None}}
        return child

    def info(self, event: str, *, post_id: str | None = None, **data: Any) -> None:
        self.log("INFO", event, post_id=post_id, **data)

    def warning(self, event: str, *, post_id: str | None = None, **data: Any) -> None:
        self.log("WARN", event, post_id=post_id, **data)

    def error(self, event: str, *, post_id: str | None = None, **data: Any) -> None:
        self.log("ERROR", event, post_id=post_id, **data)

    def exception(
        self,
        event: str,
        *,
        exc: BaseException,
        post_id: str | None = None,
        **data: Any,
    ) -> None:
        err = {
            "type": type(exc).__name__,
            "message": _truncate(str(exc), limit=2000),
            "traceback": _truncate(
                "".join(traceback.format_exception(type(exc), exc, exc.__traceback__)),
                limit=12000,
            ),
        }
        self.log("ERROR", event, post_id=post_id, error=err, **data)

    def log(self, level: str, event: str, *, post_id: str | None = None, **data: Any) -> None:
        record: dict[str, Any] = {
            "ts": _utc_now_iso(),
            "level": (level or "").strip().upper() or "INFO",
            "event": (event or "").strip() or "event",
            "session_id": self._session_id,
        }

        if self._run_id:
            record["run_id"] = self._run_id

        pid = (post_id or "").strip()
        if pid:
            record["post_id"] = pid

        if self._context:
            record["context"] = dict(self._context)

        if data:
            record["data"] = data

        self._sink.write(
            json.dumps(
                record,
                ensure_ascii=False,
                sort_keys=True,
                separators=(",", ":"),
                default=str,
            )
        )
