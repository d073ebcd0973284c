from __future__ import annotations

import json
import re
import sqlite3
import threading
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Callable, Literal, Mapping, Protocol

from .errors import StorageError, ValidationError
from .listing import Listing, PostedBy, Utilities
from .storage_schema import initialize_sqlite

WriteResult = Literal["created", "updated"]

_FIELD_PATH_RE = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*(\.[A-Za-z_][A-Za-z0-9_]*)*$")

# Logical field name -> column name.
_COLUMNS: dict[str, str] = {
    "title": "title",
    "description": "description",
    "thumbnail": "thumbnail",
    "address": "address",
    "district": "district",
    "ward": "ward",
    "price": "price",
    "area": "area",
    "posted_by": "posted_by_json",
    "posted_at": "posted_at",
    "permalink": "permalink",
    "group_name": "group_name",
    "coordinates": "coordinates_json",
    "amenities": "amenities_json",
    "rules": "rules_json",
    "images": "images_json",
    "contact_phone": "contact_phone",
    "deposit_required": "deposit_required",
    "utilities": "utilities_json",
    "room_type": "room_type",
    "available": "available",
    "raw_provenance": "raw_provenance_json",
}

_REQUIRED_ON_CREATE = ("title", "posted_by", "posted_at")


def _utc_now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def _json_dumps(value: Any) -> str:
    return json.dumps(
        value,
        ensure_ascii=False,
        sort_keys=True,
        separators=(",", ":"),
        default=str,
    )


def _json_loads(raw: Any, default: Any) -> Any:
    text = (raw or "").strip() if isinstance(raw, str) else ""
    if not text:
        return default
    try:
        return json.loads(text)
    except ValueError:
        return default


def _encode(field: str, value: Any) -> Any:
    if field == "posted_by":
        if isinstance(value, PostedBy):
            return _json_dumps({"name": value.name, "fb_id": value.fb_id})
        return _json_dumps(dict(value or {}))
    if field == "utilities":
        if isinstance(value, Utilities):
            return _json_dumps(value.as_dict())
        return _json_dumps(dict(value or {}))
    if field == "coordinates":
        if value is None:
            return None
        lat, lng = value
        return _json_dumps({"lat": float(lat), "lng": float(lng)})
    if field in ("amenities", "rules", "images"):
        return _json_dumps([str(v) for v in (value or [])])
    if field == "raw_provenance":
        return _json_dumps(dict(value or {}))
    if field == "available":
        return 1 if value else 0
    if field == "price":
        return int(value or 0)
    if field == "area":
        return float(value or 0)
    return value


def _columns_for(fields: Mapping[str, Any]) -> list[tuple[str, Any]]:
    out: list[tuple[str, Any]] = []
    for name, value in fields.items():
        column = _COLUMNS.get(name)
        if column is None:
            raise ValueError(f"Unknown listing field: {name}")
        out.append((column, _encode(name, value)))
    return out


def _row_to_listing(row: sqlite3.Row) -> Listing:
    posted_by_raw = _json_loads(row["posted_by_json"], {})
    if not isinstance(posted_by_raw, dict):
        posted_by_raw = {}

    coords_raw = _json_loads(row["coordinates_json"], None)
    coordinates: tuple[float, float] | None = None
    if isinstance(coords_raw, dict) and "lat" in coords_raw and "lng" in coords_raw:
        coordinates = (float(coords_raw["lat"]), float(coords_raw["lng"]))

    utilities_raw = _json_loads(row["utilities_json"], {})
    provenance = _json_loads(row["raw_provenance_json"], {})

    def _str_tuple(raw: Any) -> tuple[str, ...]:
        values = _json_loads(raw, [])
        if not isinstance(values, list):
            return ()
        return tuple(str(v) for v in values)

    return Listing(
        id=str(row["id"]),
        title=str(row["title"]),
        description=str(row["description"] or ""),
        thumbnail=str(row["thumbnail"] or ""),
        address=str(row["address"] or ""),
        district=str(row["district"] or ""),
        ward=str(row["ward"]) if row["ward"] is not None else None,
        price=int(row["price"] or 0),
        area=float(row["area"] or 0),
        posted_by=PostedBy(
            name=str(posted_by_raw.get("name") or "Anonymous"),
            fb_id=str(posted_by_raw.get("fb_id") or "unknown"),
        ),
        posted_at=str(row["posted_at"]),
        permalink=str(row["permalink"] or ""),
        group_name=str(row["group_name"] or ""),
        coordinates=coordinates,
        amenities=_str_tuple(row["amenities_json"]),
        rules=_str_tuple(row["rules_json"]),
        images=_str_tuple(row["images_json"]),
        contact_phone=str(row["contact_phone"]) if row["contact_phone"] is not None else None,
        deposit_required=int(row["deposit_required"]) if row["deposit_required"] is not None else None,
        utilities=Utilities.from_mapping(utilities_raw if isinstance(utilities_raw, dict) else None),
        room_type=row["room_type"],
        available=bool(row["available"]),
        raw_provenance=provenance if isinstance(provenance, dict) else {},
        created_at=str(row["created_at"]),
        updated_at=str(row["updated_at"]),
    )


class ListingStore(Protocol):
    """The two store capabilities the pipeline consumes: key lookup and key-based upsert."""

    def find_by_key(self, listing_id: str) -> Listing | None: ...

    def find_by_provenance_field(
        self,
        field_path: str,
        value: str,
        *,
        created_after: str | None = None,
    ) -> Listing | None: ...

    def create_or_update(
        self,
        listing_id: str,
        create_fields: Mapping[str, Any],
        update_fields: Mapping[str, Any],
    ) -> WriteResult: ...


class SQLiteListingStore:
    """
    SQLite-backed listing store.

    A single connection is shared between worker threads; every statement runs under
    one lock, so each call is atomic for a single row.
    """

    def __init__(
        self,
        conn: sqlite3.Connection,
        *,
        now_fn: Callable[[], str] | None = None,
    ) -> None:
        self._conn = conn
        self._conn.row_factory = sqlite3.Row
        self._lock = threading.RLock()
        self._now = now_fn or _utc_now_iso

    @classmethod
    def open(
        cls,
        path: str | Path,
        *,
        now_fn: Callable[[], str] | None = None,
    ) -> "SQLiteListingStore":
        db_path = str(path)
        if db_path != ":memory:":
            Path(db_path).parent.mkdir(parents=True, exist_ok=True)

        try:
            conn = sqlite3.connect(db_path, check_same_thread=False)
        except sqlite3.DatabaseError as e:
            raise StorageError(f"Failed to open sqlite database: {db_path}: {e}") from e

        try:
            initialize_sqlite(conn)
        except Exception as e:
            conn.close()
            raise StorageError(f"Failed to initialize sqlite schema: {e}") from e

        return cls(conn, now_fn=now_fn)

    def close(self) -> None:
        with self._lock:
            self._conn.close()

    def __enter__(self) -> "SQLiteListingStore":
        return self

    def __exit__(self, exc_type: object, exc: object, tb: object) -> None:
        self.close()

    @property
    def conn(self) -> sqlite3.Connection:
        return self._conn

    def find_by_key(self, listing_id: str) -> Listing | None:
        lid = (listing_id or "").strip()
        if not lid:
            raise ValueError("listing_id must be non-empty")

        try:
            with self._lock:
                row = self._conn.execute("SELECT * FROM listings WHERE id = ?", (lid,)).fetchone()
        except sqlite3.DatabaseError as e:
            raise StorageError(f"Failed to read listing {lid}: {e}") from e

        return _row_to_listing(row) if row is not None else None

    def find_by_provenance_field(
        self,
        field_path: str,
        value: str,
        *,
        created_after: str | None = None,
    ) -> Listing | None:
        """
        Return the oldest listing whose provenance payload has `value` at `field_path`.

        `field_path` is a dotted key path (e.g. "content_fingerprint").
        """
        path = (field_path or "").strip()
        if not _FIELD_PATH_RE.fullmatch(path):
            raise ValueError(f"Invalid provenance field path: {field_path!r}")

        # Inlined (not bound) so SQLite can match the expression indexes.
        sql = f"SELECT * FROM listings WHERE json_extract(raw_provenance_json, '$.{path}') = ?"
        params: list[Any] = [value]
        if created_after is not None:
            sql += " AND created_at >= ?"
            params.append(created_after)
        sql += " ORDER BY created_at ASC, id ASC LIMIT 1"

        try:
            with self._lock:
                row = self._conn.execute(sql, tuple(params)).fetchone()
        except sqlite3.DatabaseError as e:
            raise StorageError(f"Failed to query provenance field {path}: {e}") from e

        return _row_to_listing(row) if row is not None else None

    def create_or_update(
        self,
        listing_id: str,
        create_fields: Mapping[str, Any],
        update_fields: Mapping[str, Any],
        *,
        timestamp: str | None = None,
    ) -> WriteResult:
        """
        Insert the listing if its id is new, otherwise rewrite only `update_fields`.

        Returns "created" or "updated".
        """
        lid = (listing_id or "").strip()
        if not lid:
            raise ValueError("listing_id must be non-empty")

        missing = [f for f in _REQUIRED_ON_CREATE if f not in create_fields]
        if missing:
            raise ValueError(f"create_fields missing required fields: {', '.join(missing)}")

        title = str(create_fields.get("title") or "").strip()
        if not title and not create_fields.get("price"):
            raise ValidationError(f"Listing {lid} needs a non-empty title or a non-zero price")

        ts = (timestamp or self._now()).strip()
        insert_cols = _columns_for(create_fields)
        update_cols = _columns_for(update_fields)

        col_names = ["id"] + [c for c, _ in insert_cols] + ["created_at", "updated_at"]
        placeholders = ", ".join("?" for _ in col_names)
        insert_sql = (
            f"INSERT INTO listings({', '.join(col_names)}) VALUES ({placeholders}) "
            "ON CONFLICT(id) DO NOTHING"
        )
        insert_params = (lid, *[v for _, v in insert_cols], ts, ts)

        try:
            with self._lock, self._conn:
                cur = self._conn.execute(insert_sql, insert_params)
                if cur.rowcount == 1:
                    return "created"

                assignments = [f"{c} = ?" for c, _ in update_cols] + ["updated_at = ?"]
                self._conn.execute(
                    f"UPDATE listings SET {', '.join(assignments)} WHERE id = ?",
                    (*[v for _, v in update_cols], ts, lid),
                )
                return "updated"
        except sqlite3.DatabaseError as e:
            raise StorageError(f"Failed to write listing {lid}: {e}") from e

    def mark_unavailable(self, listing_id: str) -> bool:
        """Soft delete: flip `available` to false. Returns False when the id is unknown."""
        lid = (listing_id or "").strip()
        if not lid:
            raise ValueError("listing_id must be non-empty")

        try:
            with self._lock, self._conn:
                cur = self._conn.execute(
                    "UPDATE listings SET available = 0, updated_at = ? WHERE id = ?",
                    (self._now(), lid),
                )
        except sqlite3.DatabaseError as e:
            raise StorageError(f"Failed to soft-delete listing {lid}: {e}") from e

        return cur.rowcount > 0

    def listing_count(self, *, available_only: bool = False) -> int:
        sql = "SELECT COUNT(1) AS n FROM available_listings" if available_only else "SELECT COUNT(1) AS n FROM listings"
        with self._lock:
            row = self._conn.execute(sql).fetchone()
        return int(row["n"]) if row is not None else 0
