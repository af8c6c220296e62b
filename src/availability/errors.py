"""Error taxonomy shared by the vault, the feed parser and the sync pipeline."""

from __future__ import annotations


class CalendarSyncError(Exception):
    """Base error for calendar availability sync issues."""


class ConfigurationError(CalendarSyncError):
    """Raised when required configuration, such as the token key, is missing or invalid."""


class IntegrityError(CalendarSyncError):
    """Raised when an encrypted credential fails authentication."""


class MalformedInputError(CalendarSyncError):
    """Raised when input bytes or text cannot be interpreted."""


class ProviderError(CalendarSyncError):
    """Raised when an external collaborator call fails."""


class AuthError(ProviderError):
    """Raised when the calendar provider rejects the access credential."""


class SyncInProgressError(CalendarSyncError):
    """Raised when a sync is requested for a connection that is already syncing."""


class SyncCancelledError(CalendarSyncError):
    """Raised when a sync is cancelled between collaborator calls."""


class ConnectionNotFoundError(CalendarSyncError):
    """Raised when a sync targets a connection that no longer exists."""
