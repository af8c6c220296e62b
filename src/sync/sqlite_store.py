"""SQLite-backed connection store.

Busy blocks of a connection are replaced inside a single ``BEGIN IMMEDIATE``
transaction, so readers see either the previous set or the new one.
"""

from __future__ import annotations

import json
import logging
import sqlite3
import threading
from datetime import datetime
from pathlib import Path
from typing import List, Optional, Sequence

from ..availability.models import (
    BusyBlock,
    Connection,
    FeedConnection,
    OAuthConnection,
    StoredBusyBlock,
    SyncStatus,
)
from ..availability.projector import format_ranges, parse_ranges
from .store import DEFAULT_TIMEZONE, apply_status, build_rows

logger = logging.getLogger(__name__)

_SCHEMA = """
CREATE TABLE IF NOT EXISTS calendar_connections (
    id TEXT PRIMARY KEY,
    owner_id TEXT NOT NULL,
    provider TEXT NOT NULL CHECK (provider IN ('oauth', 'feed')),
    access_token_encrypted BLOB,
    refresh_token_encrypted BLOB,
    token_expires_at TEXT,
    feed_url TEXT,
    last_synced_at TEXT,
    sync_status TEXT NOT NULL DEFAULT 'pending',
    sync_error TEXT,
    created_at TEXT
);

CREATE TABLE IF NOT EXISTS calendar_busy_blocks (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    connection_id TEXT NOT NULL REFERENCES calendar_connections(id) ON DELETE CASCADE,
    owner_id TEXT NOT NULL,
    start_time TEXT NOT NULL,
    end_time TEXT NOT NULL,
    canonical_ranges TEXT
);

CREATE INDEX IF NOT EXISTS idx_busy_blocks_connection ON calendar_busy_blocks(connection_id);
CREATE INDEX IF NOT EXISTS idx_busy_blocks_owner ON calendar_busy_blocks(owner_id);

CREATE TABLE IF NOT EXISTS owner_timezones (
    owner_id TEXT PRIMARY KEY,
    timezone TEXT NOT NULL
);
"""


class SqliteConnectionStore:
    def __init__(self, path: str | Path = ":memory:") -> None:
        if str(path) != ":memory:":
            Path(path).parent.mkdir(parents=True, exist_ok=True)
        self._lock = threading.RLock()
        self._conn = sqlite3.connect(str(path), check_same_thread=False)
        self._conn.row_factory = sqlite3.Row
        self._conn.execute("PRAGMA foreign_keys = ON")
        self._conn.executescript(_SCHEMA)
        self._conn.commit()

    def close(self) -> None:
        with self._lock:
            self._conn.close()

    # Connections -------------------------------------------------------------------
    def get(self, connection_id: str) -> Optional[Connection]:
        with self._lock:
            row = self._conn.execute(
                "SELECT * FROM calendar_connections WHERE id = ?", (connection_id,)
            ).fetchone()
        return _row_to_connection(row) if row else None

    def list_connections(self, owner_id: str | None = None) -> List[Connection]:
        with self._lock:
            if owner_id is None:
                rows = self._conn.execute("SELECT * FROM calendar_connections ORDER BY id").fetchall()
            else:
                rows = self._conn.execute(
                    "SELECT * FROM calendar_connections WHERE owner_id = ? ORDER BY id", (owner_id,)
                ).fetchall()
        return [_row_to_connection(row) for row in rows]

    def add(self, connection: Connection) -> None:
        access = refresh = expires = feed_url = None
        if isinstance(connection, OAuthConnection):
            access = connection.access_token_encrypted
            refresh = connection.refresh_token_encrypted
            expires = _iso(connection.token_expires_at)
        elif isinstance(connection, FeedConnection):
            feed_url = connection.feed_url
        else:
            raise TypeError(f"Unsupported connection type: {type(connection)!r}")

        with self._lock, self._conn:
            try:
                self._conn.execute(
                    """
                    INSERT INTO calendar_connections (
                        id, owner_id, provider, access_token_encrypted, refresh_token_encrypted,
                        token_expires_at, feed_url, last_synced_at, sync_status, sync_error, created_at
                    ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                    """,
                    (
                        connection.id,
                        connection.owner_id,
                        connection.provider,
                        access,
                        refresh,
                        expires,
                        feed_url,
                        _iso(connection.last_synced_at),
                        connection.sync_status.value,
                        connection.sync_error,
                        _iso(connection.created_at),
                    ),
                )
            except sqlite3.IntegrityError as exc:
                raise ValueError(f"Connection '{connection.id}' already exists.") from exc

    def delete(self, connection_id: str) -> None:
        with self._lock, self._conn:
            self._conn.execute("DELETE FROM calendar_busy_blocks WHERE connection_id = ?", (connection_id,))
            self._conn.execute("DELETE FROM calendar_connections WHERE id = ?", (connection_id,))

    def update_status(
        self,
        connection_id: str,
        status: SyncStatus,
        *,
        error: str | None = None,
        synced_at: datetime | None = None,
    ) -> None:
        with self._lock:
            connection = self._require(connection_id)
            updated = apply_status(connection, status, error=error, synced_at=synced_at)
            with self._conn:
                self._conn.execute(
                    """
                    UPDATE calendar_connections
                    SET sync_status = ?, sync_error = ?, last_synced_at = ?
                    WHERE id = ?
                    """,
                    (
                        updated.sync_status.value,
                        updated.sync_error,
                        _iso(updated.last_synced_at),
                        connection_id,
                    ),
                )

    def update_credentials(
        self,
        connection_id: str,
        access_token_encrypted: bytes,
        expires_at: datetime,
    ) -> None:
        with self._lock:
            connection = self._require(connection_id)
            if not isinstance(connection, OAuthConnection):
                raise TypeError(f"Connection '{connection_id}' does not hold OAuth credentials")
            with self._conn:
                self._conn.execute(
                    """
                    UPDATE calendar_connections
                    SET access_token_encrypted = ?, token_expires_at = ?
                    WHERE id = ?
                    """,
                    (access_token_encrypted, _iso(expires_at), connection_id),
                )

    # Busy blocks -------------------------------------------------------------------
    def replace_busy_blocks(
        self,
        connection_id: str,
        owner_id: str,
        blocks: Sequence[BusyBlock],
        canonical_ranges: Sequence[str],
    ) -> None:
        rows = build_rows(connection_id, owner_id, blocks, canonical_ranges)
        with self._lock:
            self._require(connection_id)
            cursor = self._conn.cursor()
            try:
                cursor.execute("BEGIN IMMEDIATE")
                cursor.execute("DELETE FROM calendar_busy_blocks WHERE connection_id = ?", (connection_id,))
                cursor.executemany(
                    """
                    INSERT INTO calendar_busy_blocks
                        (connection_id, owner_id, start_time, end_time, canonical_ranges)
                    VALUES (?, ?, ?, ?, ?)
                    """,
                    [
                        (
                            row.connection_id,
                            row.owner_id,
                            _iso(row.start_time),
                            _iso(row.end_time),
                            json.dumps(list(row.canonical_ranges)) if row.canonical_ranges else None,
                        )
                        for row in rows
                    ],
                )
                self._conn.commit()
            except Exception:
                self._conn.rollback()
                logger.error("Replacing busy blocks for %s failed, rolled back", connection_id)
                raise
        logger.debug("Stored %s busy blocks for connection %s", len(rows), connection_id)

    def get_busy_blocks(self, connection_id: str) -> List[StoredBusyBlock]:
        with self._lock:
            rows = self._conn.execute(
                "SELECT * FROM calendar_busy_blocks WHERE connection_id = ? ORDER BY start_time, id",
                (connection_id,),
            ).fetchall()
        return [_row_to_busy_block(row) for row in rows]

    def get_canonical_ranges(self, owner_id: str) -> List[str]:
        with self._lock:
            rows = self._conn.execute(
                """
                SELECT DISTINCT canonical_ranges FROM calendar_busy_blocks
                WHERE owner_id = ? AND canonical_ranges IS NOT NULL
                """,
                (owner_id,),
            ).fetchall()
        ranges: set[str] = set()
        for row in rows:
            ranges.update(json.loads(row["canonical_ranges"]))
        return format_ranges(parse_ranges(ranges))

    # Owners ------------------------------------------------------------------------
    def get_owner_timezone(self, owner_id: str) -> str:
        with self._lock:
            row = self._conn.execute(
                "SELECT timezone FROM owner_timezones WHERE owner_id = ?", (owner_id,)
            ).fetchone()
        return row["timezone"] if row else DEFAULT_TIMEZONE

    def set_owner_timezone(self, owner_id: str, timezone_name: str) -> None:
        with self._lock, self._conn:
            self._conn.execute(
                """
                INSERT INTO owner_timezones (owner_id, timezone) VALUES (?, ?)
                ON CONFLICT(owner_id) DO UPDATE SET timezone = excluded.timezone
                """,
                (owner_id, timezone_name),
            )

    def _require(self, connection_id: str) -> Connection:
        connection = self.get(connection_id)
        if connection is None:
            raise KeyError(connection_id)
        return connection


def _iso(value: datetime | None) -> str | None:
    return value.isoformat() if value is not None else None


def _from_iso(value: str | None) -> datetime | None:
    return datetime.fromisoformat(value) if value else None


def _row_to_connection(row: sqlite3.Row) -> Connection:
    common = {
        "id": row["id"],
        "owner_id": row["owner_id"],
        "sync_status": SyncStatus(row["sync_status"]),
        "last_synced_at": _from_iso(row["last_synced_at"]),
        "sync_error": row["sync_error"],
        "created_at": _from_iso(row["created_at"]),
    }
    if row["provider"] == "oauth":
        return OAuthConnection(
            access_token_encrypted=bytes(row["access_token_encrypted"]),
            refresh_token_encrypted=bytes(row["refresh_token_encrypted"]),
            token_expires_at=_from_iso(row["token_expires_at"]),
            **common,
        )
    return FeedConnection(feed_url=row["feed_url"], **common)


def _row_to_busy_block(row: sqlite3.Row) -> StoredBusyBlock:
    raw_ranges = row["canonical_ranges"]
    return StoredBusyBlock(
        connection_id=row["connection_id"],
        owner_id=row["owner_id"],
        start_time=datetime.fromisoformat(row["start_time"]),
        end_time=datetime.fromisoformat(row["end_time"]),
        canonical_ranges=tuple(json.loads(raw_ranges)) if raw_ranges else None,
    )
