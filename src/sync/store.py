"""Persistence contract for calendar connections and their derived busy data."""

from __future__ import annotations

import threading
from dataclasses import replace
from datetime import datetime
from typing import Dict, List, Optional, Protocol, Sequence

from ..availability.models import (
    BusyBlock,
    Connection,
    OAuthConnection,
    StoredBusyBlock,
    SyncStatus,
)
from ..availability.projector import format_ranges, parse_ranges

DEFAULT_TIMEZONE = "UTC"


class ConnectionStore(Protocol):
    def get(self, connection_id: str) -> Optional[Connection]:
        ...

    def list_connections(self, owner_id: str | None = None) -> List[Connection]:
        ...

    def add(self, connection: Connection) -> None:
        ...

    def delete(self, connection_id: str) -> None:
        """Remove the connection together with its busy blocks."""

    def update_status(
        self,
        connection_id: str,
        status: SyncStatus,
        *,
        error: str | None = None,
        synced_at: datetime | None = None,
    ) -> None:
        ...

    def update_credentials(
        self,
        connection_id: str,
        access_token_encrypted: bytes,
        expires_at: datetime,
    ) -> None:
        ...

    def replace_busy_blocks(
        self,
        connection_id: str,
        owner_id: str,
        blocks: Sequence[BusyBlock],
        canonical_ranges: Sequence[str],
    ) -> None:
        """Atomically swap every stored block of the connection for ``blocks``."""

    def get_busy_blocks(self, connection_id: str) -> List[StoredBusyBlock]:
        ...

    def get_canonical_ranges(self, owner_id: str) -> List[str]:
        ...

    def get_owner_timezone(self, owner_id: str) -> str:
        ...

    def set_owner_timezone(self, owner_id: str, timezone_name: str) -> None:
        ...


def apply_status(
    connection: Connection,
    status: SyncStatus,
    *,
    error: str | None,
    synced_at: datetime | None,
) -> Connection:
    """Return ``connection`` with the bookkeeping for ``status`` applied."""

    changes: dict[str, object] = {"sync_status": status}
    if status is SyncStatus.SYNCED:
        changes["sync_error"] = None
        if synced_at is not None:
            changes["last_synced_at"] = synced_at
    elif status is SyncStatus.ERROR:
        changes["sync_error"] = error
    return replace(connection, **changes)


def build_rows(
    connection_id: str,
    owner_id: str,
    blocks: Sequence[BusyBlock],
    canonical_ranges: Sequence[str],
) -> List[StoredBusyBlock]:
    ranges = tuple(canonical_ranges) or None
    return [
        StoredBusyBlock(
            connection_id=connection_id,
            owner_id=owner_id,
            start_time=block.start,
            end_time=block.end,
            canonical_ranges=ranges,
        )
        for block in blocks
    ]


class InMemoryConnectionStore:
    """Thread-safe store keeping everything in process memory."""

    def __init__(self) -> None:
        self._lock = threading.RLock()
        self._connections: Dict[str, Connection] = {}
        self._blocks: Dict[str, List[StoredBusyBlock]] = {}
        self._timezones: Dict[str, str] = {}

    def get(self, connection_id: str) -> Optional[Connection]:
        with self._lock:
            return self._connections.get(connection_id)

    def list_connections(self, owner_id: str | None = None) -> List[Connection]:
        with self._lock:
            return [
                connection
                for connection in self._connections.values()
                if owner_id is None or connection.owner_id == owner_id
            ]

    def add(self, connection: Connection) -> None:
        with self._lock:
            if connection.id in self._connections:
                raise ValueError(f"Connection '{connection.id}' already exists.")
            self._connections[connection.id] = connection

    def delete(self, connection_id: str) -> None:
        with self._lock:
            self._connections.pop(connection_id, None)
            self._blocks.pop(connection_id, None)

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
            self._connections[connection_id] = apply_status(
                connection, status, error=error, synced_at=synced_at
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
            self._connections[connection_id] = replace(
                connection,
                access_token_encrypted=access_token_encrypted,
                token_expires_at=expires_at,
            )

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
            self._blocks[connection_id] = rows

    def get_busy_blocks(self, connection_id: str) -> List[StoredBusyBlock]:
        with self._lock:
            return list(self._blocks.get(connection_id, []))

    def get_canonical_ranges(self, owner_id: str) -> List[str]:
        with self._lock:
            ranges: set[str] = set()
            for rows in self._blocks.values():
                for row in rows:
                    if row.owner_id == owner_id and row.canonical_ranges:
                        ranges.update(row.canonical_ranges)
        return format_ranges(parse_ranges(ranges))

    def get_owner_timezone(self, owner_id: str) -> str:
        with self._lock:
            return self._timezones.get(owner_id, DEFAULT_TIMEZONE)

    def set_owner_timezone(self, owner_id: str, timezone_name: str) -> None:
        with self._lock:
            self._timezones[owner_id] = timezone_name

    def _require(self, connection_id: str) -> Connection:
        connection = self._connections.get(connection_id)
        if connection is None:
            raise KeyError(connection_id)
        return connection
