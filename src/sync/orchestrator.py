"""Calendar sync orchestration.

One sync of a connection is a sequential pipeline: refresh credentials, fetch
raw busy intervals, project them onto the canonical week, and replace what was
stored before. Connection status moves ``pending -> syncing -> synced | error``
and back to ``syncing`` on every later attempt.
"""

from __future__ import annotations

import logging
import threading
import uuid
from concurrent.futures import ThreadPoolExecutor
from datetime import datetime, timedelta
from typing import Callable, List, Optional

from ..availability.errors import (
    AuthError,
    CalendarSyncError,
    ConfigurationError,
    ConnectionNotFoundError,
    SyncCancelledError,
    SyncInProgressError,
)
from ..availability.models import (
    BusyBlock,
    Connection,
    ConnectionSummary,
    FeedConnection,
    OAuthConnection,
    SyncResult,
    SyncStatus,
    TimeWindow,
    summarize,
    utc_now,
)
from ..availability.projector import format_ranges, project_to_canonical_week
from ..integrations.google_calendar import GoogleCalendarClient, GoogleCalendarConfig
from ..integrations.ical_feed import IcalFeedClient, validate_feed_url
from ..integrations.token_vault import TokenVault
from .settings import SyncSettings
from .store import ConnectionStore

logger = logging.getLogger(__name__)

Clock = Callable[[], datetime]


class CalendarSyncService:
    """Keeps the canonical-week busy ranges of linked calendars up to date."""

    def __init__(
        self,
        store: ConnectionStore,
        vault: TokenVault,
        *,
        provider_client: GoogleCalendarClient | None = None,
        feed_client: IcalFeedClient | None = None,
        settings: SyncSettings | None = None,
        clock: Clock | None = None,
        id_factory: Callable[[], str] | None = None,
        logger_instance: logging.Logger | None = None,
    ) -> None:
        self._store = store
        self._vault = vault
        self._provider_client = provider_client
        self._settings = settings or SyncSettings()
        self._feed_client = feed_client or IcalFeedClient(timeout=self._settings.request_timeout_seconds)
        self._clock = clock or utc_now
        self._id_factory = id_factory or (lambda: str(uuid.uuid4()))
        self._logger = logger_instance or logger
        self._locks: dict[str, threading.Lock] = {}
        self._locks_guard = threading.Lock()

    # Connection lifecycle ----------------------------------------------------------
    def connect_feed(self, owner_id: str, url: str, *, initial_sync: bool = True) -> SyncResult:
        connection = FeedConnection(
            id=self._id_factory(),
            owner_id=owner_id,
            feed_url=validate_feed_url(url),
            created_at=self._clock(),
        )
        self._store.add(connection)
        self._logger.info("Linked iCal feed %s for owner %s", connection.id, owner_id)
        if not initial_sync:
            return SyncResult(connection.id, SyncStatus.PENDING)
        return self.sync_connection(connection.id)

    def connect_oauth(
        self,
        owner_id: str,
        access_token: str,
        refresh_token: str,
        expires_at: datetime,
        *,
        initial_sync: bool = False,
    ) -> SyncResult:
        connection = OAuthConnection(
            id=self._id_factory(),
            owner_id=owner_id,
            access_token_encrypted=self._vault.encrypt(access_token),
            refresh_token_encrypted=self._vault.encrypt(refresh_token),
            token_expires_at=expires_at,
            created_at=self._clock(),
        )
        self._store.add(connection)
        self._logger.info("Linked OAuth calendar %s for owner %s", connection.id, owner_id)
        if not initial_sync:
            return SyncResult(connection.id, SyncStatus.PENDING)
        return self.sync_connection(connection.id)

    def disconnect(self, connection_id: str) -> None:
        lock = self._lock_for(connection_id)
        if not lock.acquire(blocking=False):
            raise SyncInProgressError(f"Connection '{connection_id}' is syncing")
        try:
            self._store.delete(connection_id)
        finally:
            lock.release()
        with self._locks_guard:
            self._locks.pop(connection_id, None)
        self._logger.info("Unlinked calendar connection %s", connection_id)

    def list_connections(self, owner_id: str) -> List[ConnectionSummary]:
        return [summarize(connection) for connection in self._store.list_connections(owner_id)]

    # Sync --------------------------------------------------------------------------
    def sync_connection(
        self,
        connection_id: str,
        *,
        cancel_event: threading.Event | None = None,
    ) -> SyncResult:
        """Run one sync attempt; a concurrent attempt for the same connection is rejected."""

        lock = self._lock_for(connection_id)
        if not lock.acquire(blocking=False):
            raise SyncInProgressError(f"Connection '{connection_id}' is already syncing")
        try:
            return self._run_sync(connection_id, cancel_event)
        finally:
            lock.release()

    def sync_all(self, *, max_workers: int | None = None) -> List[SyncResult]:
        connections = self._store.list_connections()
        if not connections:
            return []

        workers = max_workers or self._settings.max_parallel_syncs
        results: List[SyncResult] = []
        with ThreadPoolExecutor(max_workers=workers) as executor:
            futures = {
                connection.id: executor.submit(self.sync_connection, connection.id)
                for connection in connections
            }
            for connection_id, future in futures.items():
                try:
                    results.append(future.result())
                except SyncInProgressError:
                    self._logger.info("Skipping %s, a sync is already in flight", connection_id)
                except ConnectionNotFoundError:
                    self._logger.info("Skipping %s, it was disconnected", connection_id)
                except ConfigurationError:
                    raise
                except Exception as exc:
                    message = str(exc) or type(exc).__name__
                    self._logger.error("Sync of %s aborted: %s", connection_id, message)
                    results.append(SyncResult(connection_id, SyncStatus.ERROR, error=message))
        synced = sum(1 for result in results if result.status is SyncStatus.SYNCED)
        self._logger.info("Synced %s of %s calendar connections", synced, len(connections))
        return results

    def _run_sync(self, connection_id: str, cancel_event: threading.Event | None) -> SyncResult:
        connection = self._store.get(connection_id)
        if connection is None:
            raise ConnectionNotFoundError(f"Connection '{connection_id}' does not exist")

        self._store.update_status(connection_id, SyncStatus.SYNCING)
        try:
            blocks = self._fetch_blocks(connection, cancel_event)
            timezone_name = self._store.get_owner_timezone(connection.owner_id)
            ranges = format_ranges(
                project_to_canonical_week(
                    blocks,
                    timezone_name,
                    min_weeks=self._settings.canonical_min_weeks_busy,
                )
            )
            _check_cancelled(cancel_event)
            self._store.replace_busy_blocks(connection.id, connection.owner_id, blocks, ranges)
        except ConfigurationError as exc:
            self._record_failure(connection, str(exc))
            raise
        except CalendarSyncError as exc:
            self._record_failure(connection, str(exc))
            return SyncResult(connection.id, SyncStatus.ERROR, error=str(exc))
        except Exception as exc:
            self._logger.exception("Unexpected failure syncing %s", connection.id)
            self._record_failure(connection, str(exc) or type(exc).__name__)
            raise

        self._store.update_status(connection.id, SyncStatus.SYNCED, synced_at=self._clock())
        self._logger.info(
            "Synced %s connection %s: %s busy blocks, %s canonical ranges",
            connection.provider,
            connection.id,
            len(blocks),
            len(ranges),
        )
        return SyncResult(
            connection.id,
            SyncStatus.SYNCED,
            block_count=len(blocks),
            canonical_ranges=tuple(ranges),
        )

    def _record_failure(self, connection: Connection, message: str) -> None:
        self._logger.warning("Sync of %s failed: %s", connection.id, message)
        self._store.update_status(connection.id, SyncStatus.ERROR, error=message)

    # Fetching ----------------------------------------------------------------------
    def _fetch_blocks(
        self,
        connection: Connection,
        cancel_event: threading.Event | None,
    ) -> List[BusyBlock]:
        if isinstance(connection, OAuthConnection):
            return self._fetch_oauth_blocks(connection, cancel_event)
        if isinstance(connection, FeedConnection):
            _check_cancelled(cancel_event)
            return self._feed_client.fetch_busy_blocks(connection.feed_url)
        raise TypeError(f"Unsupported connection type: {type(connection)!r}")

    def _fetch_oauth_blocks(
        self,
        connection: OAuthConnection,
        cancel_event: threading.Event | None,
    ) -> List[BusyBlock]:
        client = self._require_provider_client()
        if self._needs_refresh(connection.token_expires_at):
            access_token = self._refresh(client, connection, cancel_event)
        else:
            access_token = self._vault.decrypt(connection.access_token_encrypted)

        window = TimeWindow.upcoming(self._clock(), self._settings.freebusy_horizon_weeks)
        try:
            return self._query_calendars(client, access_token, window, cancel_event)
        except AuthError:
            self._logger.info("Access token for %s was rejected, refreshing once", connection.id)
            access_token = self._refresh(client, connection, cancel_event)
            return self._query_calendars(client, access_token, window, cancel_event)

    def _refresh(
        self,
        client: GoogleCalendarClient,
        connection: OAuthConnection,
        cancel_event: threading.Event | None,
    ) -> str:
        _check_cancelled(cancel_event)
        refreshed = client.refresh_access_token(connection.refresh_token_encrypted)
        self._store.update_credentials(
            connection.id,
            refreshed.access_token_encrypted,
            refreshed.expires_at,
        )
        return self._vault.decrypt(refreshed.access_token_encrypted)

    def _query_calendars(
        self,
        client: GoogleCalendarClient,
        access_token: str,
        window: TimeWindow,
        cancel_event: threading.Event | None,
    ) -> List[BusyBlock]:
        _check_cancelled(cancel_event)
        calendar_ids = self._settings.calendar_ids
        if len(calendar_ids) == 1:
            return client.query_busy_intervals(access_token, window, calendar_ids[0])

        with ThreadPoolExecutor(max_workers=len(calendar_ids)) as executor:
            futures = [
                executor.submit(client.query_busy_intervals, access_token, window, calendar_id)
                for calendar_id in calendar_ids
            ]
            per_calendar = [future.result() for future in futures]
        return [block for blocks in per_calendar for block in blocks]

    def _needs_refresh(self, expires_at: Optional[datetime]) -> bool:
        if expires_at is None:
            return True
        margin = timedelta(seconds=self._settings.token_refresh_margin_seconds)
        return expires_at <= self._clock() + margin

    def _require_provider_client(self) -> GoogleCalendarClient:
        if self._provider_client is None:
            raise ConfigurationError("No calendar provider client is configured for OAuth connections")
        return self._provider_client

    def _lock_for(self, connection_id: str) -> threading.Lock:
        with self._locks_guard:
            return self._locks.setdefault(connection_id, threading.Lock())


def _check_cancelled(cancel_event: threading.Event | None) -> None:
    if cancel_event is not None and cancel_event.is_set():
        raise SyncCancelledError("Sync was cancelled")


def create_sync_service(
    store: ConnectionStore,
    settings: SyncSettings | None = None,
    *,
    logger_instance: logging.Logger | None = None,
) -> CalendarSyncService:
    """Build a sync service wired with the default HTTP collaborators."""

    settings = settings or SyncSettings.from_env()
    vault = TokenVault.from_hex(settings.token_encryption_key)

    provider_client = None
    if settings.google_client_id and settings.google_client_secret:
        provider_client = GoogleCalendarClient(
            GoogleCalendarConfig(
                client_id=settings.google_client_id,
                client_secret=settings.google_client_secret,
                timeout=settings.request_timeout_seconds,
            ),
            vault,
        )

    return CalendarSyncService(
        store,
        vault,
        provider_client=provider_client,
        feed_client=IcalFeedClient(timeout=settings.request_timeout_seconds),
        settings=settings,
        logger_instance=logger_instance,
    )
