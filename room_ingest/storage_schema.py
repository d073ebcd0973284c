from __future__ import annotations

import sqlite3
from datetime import datetime, timezone

SCHEMA_VERSION = 1


def _utc_now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def initialize_sqlite(conn: sqlite3.Connection) -> None:
    """
    Initialize the SQLite database with a small migration system.

    This function is idempotent: it can be called on every startup.
    """
    _configure_connection(conn)
    _apply_migrations(conn)


def _configure_connection(conn: sqlite3.Connection) -> None:
    conn.execute("PRAGMA busy_timeout = 5000")

    # WAL is best-effort (e.g., in-memory DBs won't use it).
    try:
        conn.execute("PRAGMA journal_mode = WAL")
        conn.execute("PRAGMA synchronous = NORMAL")
    except sqlite3.DatabaseError:
        pass


_MIGRATIONS: dict[int, str] = {
    1: """
CREATE TABLE IF NOT EXISTS listings (
  id TEXT PRIMARY KEY,
  title TEXT NOT NULL,
  description TEXT NOT NULL DEFAULT '',
  thumbnail TEXT NOT NULL DEFAULT '',
  address TEXT NOT NULL DEFAULT '',
  district TEXT NOT NULL DEFAULT '',
  ward TEXT,
  price INTEGER NOT NULL DEFAULT 0,
  area REAL NOT NULL DEFAULT 0,
  posted_by_json TEXT NOT NULL,
  posted_at TEXT NOT NULL,
  permalink TEXT NOT NULL DEFAULT '',
  group_name TEXT NOT NULL DEFAULT '',
  coordinates_json TEXT,
  amenities_json TEXT NOT NULL DEFAULT '[]',
  rules_json TEXT NOT NULL DEFAULT '[]',
  images_json TEXT NOT NULL DEFAULT '[]',
  contact_phone TEXT,
  deposit_required INTEGER,
  utilities_json TEXT NOT NULL DEFAULT '{}',
  room_type TEXT CHECK (room_type IS NULL OR room_type IN ('single', 'shared', 'apartment', 'studio')),
  available INTEGER NOT NULL DEFAULT 1,
  raw_provenance_json TEXT NOT NULL DEFAULT '{}',
  created_at TEXT NOT NULL,
  updated_at TEXT NOT NULL
);

CREATE INDEX IF NOT EXISTS idx_listings_created_at
  ON listings(created_at);

CREATE INDEX IF NOT EXISTS idx_listings_district
  ON listings(district);

CREATE INDEX IF NOT EXISTS idx_listings_content_fingerprint
  ON listings(json_extract(raw_provenance_json, '$.content_fingerprint'));

CREATE INDEX IF NOT EXISTS idx_listings_similarity_fingerprint
  ON listings(json_extract(raw_provenance_json, '$.similarity_fingerprint'));

CREATE VIEW IF NOT EXISTS available_listings AS
SELECT *
FROM listings
WHERE available = 1;
""".strip()
}


def _apply_migrations(conn: sqlite3.Connection) -> None:
    with conn:
        conn.execute(
            "CREATE TABLE IF NOT EXISTS schema_migrations (version INTEGER PRIMARY KEY, applied_at TEXT NOT NULL)"
        )

    rows = conn.execute("SELECT version FROM schema_migrations").fetchall()
    applied: set[int] = {int(r[0]) for r in rows}

    for version in range(1, SCHEMA_VERSION + 1):
        if version in applied:
            continue

        script = _MIGRATIONS.get(version)
        if not script:
            raise RuntimeError(f"Missing migration script for version={version}")

        with conn:
            conn.executescript(script)
            conn.execute(
                "INSERT INTO schema_migrations(version, applied_at) VALUES (?, ?)",
                (version, _utc_now_iso()),
            )
