from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, List

import requests

from ..availability.errors import AuthError, ProviderError
from ..availability.models import BusyBlock, TimeWindow, utc_now
from .token_vault import TokenVault

logger = logging.getLogger(__name__)

DEFAULT_TOKEN_LIFETIME = timedelta(hours=1)


@dataclass(slots=True)
class GoogleCalendarConfig:
    """Configuration required to refresh tokens and query free/busy data."""

    client_id: str
    client_secret: str
    token_endpoint: str = "https://oauth2.googleapis.com/token"
    api_base_url: str = "https://www.googleapis.com/calendar/v3"
    timeout: float = 15.0


@dataclass(slots=True)
class RefreshedCredential:
    """A freshly issued access token, already encrypted for storage."""

    access_token_encrypted: bytes
    expires_at: datetime


TokenFetcher = Callable[[GoogleCalendarConfig, dict[str, Any]], dict[str, Any]]
FreeBusyPoster = Callable[[GoogleCalendarConfig, str, dict[str, Any]], tuple[int, dict[str, Any]]]
Clock = Callable[[], datetime]


class GoogleCalendarClient:
    """Client for the identity-provider token endpoint and the free/busy API."""

    def __init__(
        self,
        config: GoogleCalendarConfig,
        vault: TokenVault,
        *,
        token_fetcher: TokenFetcher | None = None,
        freebusy_poster: FreeBusyPoster | None = None,
        clock: Clock | None = None,
        logger_instance: logging.Logger | None = None,
    ) -> None:
        self.config = config
        self._vault = vault
        self._token_fetcher = token_fetcher or _default_token_fetcher
        self._freebusy_poster = freebusy_poster or _default_freebusy_poster
        self._clock = clock or utc_now
        self._logger = logger_instance or logger

    # Authorization -----------------------------------------------------------------
    def refresh_access_token(self, refresh_token_encrypted: bytes) -> RefreshedCredential:
        refresh_token = self._vault.decrypt(refresh_token_encrypted)
        payload = {
            "grant_type": "refresh_token",
            "refresh_token": refresh_token,
            "client_id": self.config.client_id,
            "client_secret": self.config.client_secret,
        }
        try:
            token_payload = self._token_fetcher(self.config, payload)
        except ProviderError:
            raise
        except Exception as exc:  # pragma: no cover - network failure path
            self._logger.exception("Token refresh failed: %s", exc)
            raise ProviderError("Failed to refresh access token") from exc

        access_token = token_payload.get("access_token")
        if not access_token:
            raise ProviderError("Token response did not contain an access token")

        expires_in = token_payload.get("expires_in")
        if isinstance(expires_in, (int, float)) and not isinstance(expires_in, bool):
            expires_at = self._clock() + timedelta(seconds=float(expires_in))
        else:
            expires_at = self._clock() + DEFAULT_TOKEN_LIFETIME

        self._logger.debug("Refreshed access token expiring at %s", expires_at)
        return RefreshedCredential(
            access_token_encrypted=self._vault.encrypt(access_token),
            expires_at=expires_at,
        )

    # Calendar operations -----------------------------------------------------------
    def query_busy_intervals(
        self,
        access_token: str,
        window: TimeWindow,
        calendar_id: str = "primary",
    ) -> List[BusyBlock]:
        body = {
            "timeMin": _rfc3339(window.start),
            "timeMax": _rfc3339(window.end),
            "items": [{"id": calendar_id}],
        }
        try:
            status_code, payload = self._freebusy_poster(self.config, access_token, body)
        except ProviderError:
            raise
        except Exception as exc:  # pragma: no cover - network failure path
            self._logger.exception("Free/busy query failed: %s", exc)
            raise ProviderError("Failed to query free/busy data") from exc

        if status_code in (401, 403):
            raise AuthError(f"Calendar provider rejected the access token ({status_code})")
        if not 200 <= status_code < 300:
            raise ProviderError(f"Free/busy query failed with HTTP {status_code}")

        blocks = _extract_busy_blocks(payload, calendar_id)
        self._logger.info("Loaded %s busy blocks from calendar %s", len(blocks), calendar_id)
        return blocks


def _extract_busy_blocks(payload: dict[str, Any], calendar_id: str) -> List[BusyBlock]:
    calendars = payload.get("calendars")
    if not isinstance(calendars, dict):
        raise ProviderError("Free/busy response missing calendars object")

    entry = calendars.get(calendar_id)
    if not isinstance(entry, dict):
        if len(calendars) != 1:
            raise ProviderError(f"Free/busy response missing calendar {calendar_id!r}")
        entry = next(iter(calendars.values()))
        if not isinstance(entry, dict):
            raise ProviderError("Free/busy response calendar entry is invalid")

    errors = entry.get("errors")
    if errors:
        reasons = ", ".join(str(error.get("reason", "unknown")) for error in errors if isinstance(error, dict))
        raise ProviderError(f"Calendar {calendar_id!r} could not be queried: {reasons or 'unknown'}")

    blocks: List[BusyBlock] = []
    for period in entry.get("busy") or []:
        if not isinstance(period, dict):
            continue
        start_raw = period.get("start")
        end_raw = period.get("end")
        if not isinstance(start_raw, str) or not isinstance(end_raw, str):
            continue
        try:
            start = _parse_rfc3339(start_raw)
            end = _parse_rfc3339(end_raw)
        except ValueError:
            logger.debug("Skipping busy period with unparseable bounds %r - %r", start_raw, end_raw)
            continue
        if end <= start:
            continue
        blocks.append(BusyBlock(start=start, end=end))
    return blocks


def _parse_rfc3339(value: str) -> datetime:
    parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def _rfc3339(value: datetime) -> str:
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ")


def _default_token_fetcher(config: GoogleCalendarConfig, payload: dict[str, Any]) -> dict[str, Any]:  # pragma: no cover - network
    try:
        response = requests.post(config.token_endpoint, data=payload, timeout=config.timeout)
    except requests.Timeout as exc:
        raise ProviderError(f"Token refresh timed out after {config.timeout:g}s") from exc
    except requests.RequestException as exc:
        raise ProviderError(f"Token refresh failed: {exc}") from exc

    if response.status_code in (400, 401):
        raise ProviderError("Refresh token is invalid or has been revoked")
    if not response.ok:
        raise ProviderError(f"Token endpoint returned HTTP {response.status_code}")
    return response.json()


def _default_freebusy_poster(
    config: GoogleCalendarConfig,
    access_token: str,
    body: dict[str, Any],
) -> tuple[int, dict[str, Any]]:  # pragma: no cover - network
    try:
        response = requests.post(
            f"{config.api_base_url}/freeBusy",
            json=body,
            headers={"Authorization": f"Bearer {access_token}"},
            timeout=config.timeout,
        )
    except requests.Timeout as exc:
        raise ProviderError(f"Free/busy query timed out after {config.timeout:g}s") from exc
    except requests.RequestException as exc:
        raise ProviderError(f"Free/busy query failed: {exc}") from exc

    if not response.ok:
        return response.status_code, {}
    return response.status_code, response.json()
