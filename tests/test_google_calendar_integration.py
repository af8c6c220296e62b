from __future__ import annotations

from datetime import datetime, timedelta, timezone
from typing import Any

import pytest

from src.availability.errors import AuthError, IntegrityError, ProviderError
from src.availability.models import TimeWindow
from src.integrations.google_calendar import GoogleCalendarClient, GoogleCalendarConfig
from src.integrations.token_vault import TokenVault

NOW = datetime(2026, 2, 16, 8, 0, tzinfo=timezone.utc)
VAULT = TokenVault(bytes(range(32)))


class FakeFreeBusy:
    def __init__(self, status_code: int = 200, payload: dict[str, Any] | None = None) -> None:
        self.status_code = status_code
        self.payload = payload if payload is not None else {"calendars": {"primary": {"busy": []}}}
        self.calls: list[tuple[str, dict[str, Any]]] = []

    def __call__(
        self,
        config: GoogleCalendarConfig,
        access_token: str,
        body: dict[str, Any],
    ) -> tuple[int, dict[str, Any]]:
        self.calls.append((access_token, body))
        return self.status_code, self.payload


def _make_client(
    *,
    token_payload: dict[str, Any] | None = None,
    freebusy: FakeFreeBusy | None = None,
    token_calls: list[dict[str, Any]] | None = None,
) -> GoogleCalendarClient:
    def token_fetcher(config: GoogleCalendarConfig, payload: dict[str, Any]) -> dict[str, Any]:
        if token_calls is not None:
            token_calls.append(payload)
        return token_payload if token_payload is not None else {"access_token": "fresh", "expires_in": 3600}

    return GoogleCalendarClient(
        GoogleCalendarConfig(client_id="client", client_secret="secret"),
        VAULT,
        token_fetcher=token_fetcher,
        freebusy_poster=freebusy or FakeFreeBusy(),
        clock=lambda: NOW,
    )


def _window() -> TimeWindow:
    return TimeWindow.upcoming(NOW, weeks=8)


def test_refresh_decrypts_refresh_token_and_encrypts_result() -> None:
    calls: list[dict[str, Any]] = []
    client = _make_client(token_calls=calls)

    refreshed = client.refresh_access_token(VAULT.encrypt("refresh-me"))

    assert VAULT.decrypt(refreshed.access_token_encrypted) == "fresh"
    assert refreshed.expires_at == NOW + timedelta(seconds=3600)
    assert calls[0]["grant_type"] == "refresh_token"
    assert calls[0]["refresh_token"] == "refresh-me"
    assert calls[0]["client_id"] == "client"


def test_refresh_without_expiry_defaults_to_one_hour() -> None:
    client = _make_client(token_payload={"access_token": "fresh"})

    refreshed = client.refresh_access_token(VAULT.encrypt("refresh-me"))

    assert refreshed.expires_at == NOW + timedelta(hours=1)


def test_refresh_without_access_token_fails() -> None:
    client = _make_client(token_payload={"error": "invalid_grant"})

    with pytest.raises(ProviderError):
        client.refresh_access_token(VAULT.encrypt("revoked"))


def test_refresh_with_tampered_credential_fails_integrity() -> None:
    tampered = bytearray(VAULT.encrypt("refresh-me"))
    tampered[-1] ^= 0xFF

    with pytest.raises(IntegrityError):
        _make_client().refresh_access_token(bytes(tampered))


def test_query_parses_busy_periods() -> None:
    freebusy = FakeFreeBusy(
        payload={
            "calendars": {
                "primary": {
                    "busy": [
                        {"start": "2026-02-16T09:00:00Z", "end": "2026-02-16T10:00:00Z"},
                        {"start": "2026-02-17T10:00:00+01:00", "end": "2026-02-17T11:30:00+01:00"},
                        {"start": "2026-02-18T10:00:00Z"},
                        {"start": "2026-02-18T10:00:00Z", "end": "2026-02-18T10:00:00Z"},
                        {"start": "yesterday", "end": "today"},
                    ]
                }
            }
        }
    )
    client = _make_client(freebusy=freebusy)

    blocks = client.query_busy_intervals("access", _window())

    assert [(block.start, block.end) for block in blocks] == [
        (datetime(2026, 2, 16, 9, tzinfo=timezone.utc), datetime(2026, 2, 16, 10, tzinfo=timezone.utc)),
        (datetime(2026, 2, 17, 9, tzinfo=timezone.utc), datetime(2026, 2, 17, 10, 30, tzinfo=timezone.utc)),
    ]
    access_token, body = freebusy.calls[0]
    assert access_token == "access"
    assert body["timeMin"] == "2026-02-16T08:00:00Z"
    assert body["timeMax"] == "2026-04-13T08:00:00Z"
    assert body["items"] == [{"id": "primary"}]


def test_query_unauthorized_raises_auth_error() -> None:
    client = _make_client(freebusy=FakeFreeBusy(status_code=401, payload={}))

    with pytest.raises(AuthError):
        client.query_busy_intervals("expired", _window())


def test_query_server_error_is_not_an_auth_error() -> None:
    client = _make_client(freebusy=FakeFreeBusy(status_code=503, payload={}))

    with pytest.raises(ProviderError) as excinfo:
        client.query_busy_intervals("access", _window())

    assert not isinstance(excinfo.value, AuthError)
    assert "503" in str(excinfo.value)


def test_query_calendar_errors_are_surfaced() -> None:
    freebusy = FakeFreeBusy(
        payload={"calendars": {"work": {"errors": [{"domain": "global", "reason": "notFound"}]}}}
    )
    client = _make_client(freebusy=freebusy)

    with pytest.raises(ProviderError, match="notFound"):
        client.query_busy_intervals("access", _window(), calendar_id="work")


def test_query_missing_calendars_object_fails() -> None:
    client = _make_client(freebusy=FakeFreeBusy(payload={"kind": "calendar#freeBusy"}))

    with pytest.raises(ProviderError):
        client.query_busy_intervals("access", _window())
