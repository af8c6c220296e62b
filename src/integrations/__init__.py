"""Integration layer for external calendar sources and credential storage."""

from .google_calendar import (
    GoogleCalendarClient,
    GoogleCalendarConfig,
    RefreshedCredential,
)
from .ical_feed import IcalFeedClient, parse_ical, validate_feed_url
from .token_vault import TokenVault, decode_credential, encode_credential

__all__ = [
    "GoogleCalendarClient",
    "GoogleCalendarConfig",
    "IcalFeedClient",
    "RefreshedCredential",
    "TokenVault",
    "decode_credential",
    "encode_credential",
    "parse_ical",
    "validate_feed_url",
]
