from __future__ import annotations

import re
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Literal, Optional

from .errors import MalformedInputError

MINUTES_PER_DAY = 1440
DAYS_PER_WEEK = 7
MINUTES_PER_WEEK = DAYS_PER_WEEK * MINUTES_PER_DAY

_RANGE_PATTERN = re.compile(r"^\[(\d+),(\d+)\)$")


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(frozen=True)
class BusyBlock:
    """A concrete, dated interval during which a person is unavailable."""

    start: datetime
    end: datetime

    def __post_init__(self) -> None:  # pragma: no cover - validation logic
        if self.start.tzinfo is None or self.end.tzinfo is None:
            raise ValueError("Busy block instants must be timezone-aware")
        if self.end <= self.start:
            raise ValueError("Busy block must have positive duration")

    @property
    def duration(self) -> timedelta:
        return self.end - self.start


@dataclass(frozen=True, order=True)
class CanonicalRange:
    """Half-open ``[start, end)`` range of minutes since canonical Monday 00:00."""

    start: int
    end: int

    def __post_init__(self) -> None:
        if not 0 <= self.start < self.end <= MINUTES_PER_WEEK:
            raise ValueError(f"Canonical range [{self.start},{self.end}) is out of bounds")
        if self.start // MINUTES_PER_DAY != (self.end - 1) // MINUTES_PER_DAY:
            raise ValueError(f"Canonical range [{self.start},{self.end}) crosses a day boundary")

    @property
    def day(self) -> int:
        return self.start // MINUTES_PER_DAY

    @classmethod
    def parse(cls, text: str) -> "CanonicalRange":
        match = _RANGE_PATTERN.match(text.strip())
        if not match:
            raise MalformedInputError(f"Not a canonical range: {text!r}")
        try:
            return cls(int(match.group(1)), int(match.group(2)))
        except ValueError as exc:
            raise MalformedInputError(str(exc)) from exc

    def __str__(self) -> str:
        return f"[{self.start},{self.end})"


@dataclass(frozen=True)
class TimeWindow:
    """Query window handed to the calendar provider."""

    start: datetime
    end: datetime

    def __post_init__(self) -> None:  # pragma: no cover - validation logic
        if self.end <= self.start:
            raise ValueError("Time window end must be after its start")

    @classmethod
    def upcoming(cls, now: datetime, weeks: int) -> "TimeWindow":
        return cls(start=now, end=now + timedelta(weeks=weeks))


class SyncStatus(str, Enum):
    PENDING = "pending"
    SYNCING = "syncing"
    SYNCED = "synced"
    ERROR = "error"


ProviderKind = Literal["oauth", "feed"]


@dataclass(frozen=True, kw_only=True)
class Connection:
    """Base record for a calendar linked by a user.

    Concrete records are :class:`OAuthConnection` and :class:`FeedConnection`;
    the sync service dispatches on the record type.
    """

    id: str
    owner_id: str
    sync_status: SyncStatus = SyncStatus.PENDING
    last_synced_at: Optional[datetime] = None
    sync_error: Optional[str] = None
    created_at: Optional[datetime] = None

    @property
    def provider(self) -> ProviderKind:  # pragma: no cover - overridden
        raise NotImplementedError


@dataclass(frozen=True, kw_only=True)
class OAuthConnection(Connection):
    access_token_encrypted: bytes
    refresh_token_encrypted: bytes
    token_expires_at: Optional[datetime] = None

    @property
    def provider(self) -> ProviderKind:
        return "oauth"


@dataclass(frozen=True, kw_only=True)
class FeedConnection(Connection):
    feed_url: str

    @property
    def provider(self) -> ProviderKind:
        return "feed"


@dataclass(frozen=True)
class ConnectionSummary:
    """Public view of a connection, without credentials."""

    id: str
    provider: ProviderKind
    sync_status: SyncStatus
    last_synced_at: Optional[datetime]
    sync_error: Optional[str]
    feed_url: Optional[str]
    created_at: Optional[datetime]


def summarize(connection: Connection) -> ConnectionSummary:
    return ConnectionSummary(
        id=connection.id,
        provider=connection.provider,
        sync_status=connection.sync_status,
        last_synced_at=connection.last_synced_at,
        sync_error=connection.sync_error,
        feed_url=connection.feed_url if isinstance(connection, FeedConnection) else None,
        created_at=connection.created_at,
    )


@dataclass(frozen=True)
class StoredBusyBlock:
    """Persisted row: one raw interval plus the connection's canonical ranges."""

    connection_id: str
    owner_id: str
    start_time: datetime
    end_time: datetime
    canonical_ranges: Optional[tuple[str, ...]] = None


@dataclass(frozen=True)
class SyncResult:
    connection_id: str
    status: SyncStatus
    block_count: int = 0
    canonical_ranges: tuple[str, ...] = field(default_factory=tuple)
    error: Optional[str] = None
