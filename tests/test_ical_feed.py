from __future__ import annotations

import logging
from datetime import datetime, timezone

import pytest

from src.availability.errors import MalformedInputError, ProviderError
from src.integrations.ical_feed import IcalFeedClient, parse_ical, validate_feed_url


def _utc(year: int, month: int, day: int, hour: int, minute: int = 0) -> datetime:
    return datetime(year, month, day, hour, minute, tzinfo=timezone.utc)


def _feed(*events: str, newline: str = "\r\n") -> str:
    lines = ["BEGIN:VCALENDAR", "VERSION:2.0", "PRODID:-//test//EN"]
    for event in events:
        lines.extend(event.strip().splitlines())
    lines.append("END:VCALENDAR")
    return newline.join(lines) + newline


WELL_FORMED = """
BEGIN:VEVENT
UID:1
SUMMARY:Standup
DTSTART:20260216T090000Z
DTEND:20260216T100000Z
END:VEVENT
"""

MISSING_END = """
BEGIN:VEVENT
UID:2
DTSTART:20260217T090000Z
END:VEVENT
"""


def test_empty_input_yields_nothing() -> None:
    assert parse_ical("") == []


def test_event_missing_dtend_is_dropped() -> None:
    blocks = parse_ical(_feed(WELL_FORMED, MISSING_END))

    assert len(blocks) == 1
    assert blocks[0].start == _utc(2026, 2, 16, 9)
    assert blocks[0].end == _utc(2026, 2, 16, 10)


def test_all_day_events_never_contribute() -> None:
    all_day = """
BEGIN:VEVENT
DTSTART;VALUE=DATE:20260216
DTEND;VALUE=DATE:20260217
END:VEVENT
"""
    bare_date = """
BEGIN:VEVENT
DTSTART:20260218
DTEND:20260219
END:VEVENT
"""
    assert parse_ical(_feed(all_day, bare_date)) == []


def test_end_not_after_start_is_dropped() -> None:
    inverted = """
BEGIN:VEVENT
DTSTART:20260216T100000Z
DTEND:20260216T090000Z
END:VEVENT
"""
    empty = """
BEGIN:VEVENT
DTSTART:20260216T100000Z
DTEND:20260216T100000Z
END:VEVENT
"""
    assert parse_ical(_feed(inverted, empty)) == []


def test_crlf_and_lf_are_equivalent() -> None:
    assert parse_ical(_feed(WELL_FORMED, newline="\r\n")) == parse_ical(_feed(WELL_FORMED, newline="\n"))
    assert len(parse_ical(_feed(WELL_FORMED, newline="\n"))) == 1


def test_folded_lines_are_unfolded() -> None:
    text = (
        "BEGIN:VEVENT\r\n"
        "DTSTART:20260216T09\r\n"
        " 0000Z\r\n"
        "DTEND:20260216T\r\n"
        "\t100000Z\r\n"
        "END:VEVENT\r\n"
    )

    blocks = parse_ical(text)

    assert [(block.start, block.end) for block in blocks] == [(_utc(2026, 2, 16, 9), _utc(2026, 2, 16, 10))]


def test_malformed_value_drops_only_that_event() -> None:
    broken = """
BEGIN:VEVENT
DTSTART:not-a-date
DTEND:20260216T100000Z
END:VEVENT
"""
    blocks = parse_ical(_feed(broken, WELL_FORMED))

    assert len(blocks) == 1
    assert blocks[0].start == _utc(2026, 2, 16, 9)


def test_properties_outside_events_are_ignored() -> None:
    timezone_block = """
BEGIN:VTIMEZONE
TZID:Europe/Berlin
BEGIN:STANDARD
DTSTART:19701025T030000
END:STANDARD
END:VTIMEZONE
"""
    assert len(parse_ical(_feed(timezone_block, WELL_FORMED))) == 1


def test_nested_alarm_does_not_end_the_event() -> None:
    with_alarm = """
BEGIN:VEVENT
DTSTART:20260216T090000Z
BEGIN:VALARM
TRIGGER:-PT15M
ACTION:DISPLAY
END:VALARM
DTEND:20260216T100000Z
END:VEVENT
"""
    blocks = parse_ical(_feed(with_alarm))

    assert len(blocks) == 1
    assert blocks[0].end == _utc(2026, 2, 16, 10)


def test_floating_and_unknown_tzid_values_are_read_as_utc() -> None:
    floating = """
BEGIN:VEVENT
DTSTART:20260216T090000
DTEND:20260216T100000
END:VEVENT
"""
    unknown_zone = """
BEGIN:VEVENT
DTSTART;TZID=Pacific Standard Time:20260217T090000
DTEND;TZID=Pacific Standard Time:20260217T100000
END:VEVENT
"""
    blocks = parse_ical(_feed(floating, unknown_zone))

    assert [block.start for block in blocks] == [_utc(2026, 2, 16, 9), _utc(2026, 2, 17, 9)]


def test_known_tzid_is_resolved() -> None:
    berlin = """
BEGIN:VEVENT
DTSTART;TZID=Europe/Berlin:20260216T100000
DTEND;TZID="Europe/Berlin":20260216T110000
END:VEVENT
"""
    blocks = parse_ical(_feed(berlin))

    assert blocks[0].start == _utc(2026, 2, 16, 9)
    assert blocks[0].end == _utc(2026, 2, 16, 10)


def test_fetch_busy_blocks_requests_feed() -> None:
    calls: list[tuple[str, float]] = []

    def fetcher(url: str, timeout: float) -> tuple[int, str]:
        calls.append((url, timeout))
        return 200, _feed(WELL_FORMED)

    client = IcalFeedClient(timeout=5.0, fetcher=fetcher)

    blocks = client.fetch_busy_blocks("webcal://calendar.example.com/feed.ics")

    assert len(blocks) == 1
    assert calls == [("https://calendar.example.com/feed.ics", 5.0)]


def test_fetch_non_2xx_is_a_provider_error() -> None:
    client = IcalFeedClient(fetcher=lambda url, timeout: (404, "Not Found"))

    with pytest.raises(ProviderError, match="404"):
        client.fetch_busy_blocks("https://calendar.example.com/feed.ics")


@pytest.mark.parametrize("url", ["", "ftp://example.com/feed.ics", "calendar.example.com/feed.ics"])
def test_validate_feed_url_rejects_non_http(url: str) -> None:
    with pytest.raises(MalformedInputError):
        validate_feed_url(url)


def test_validate_feed_url_strips_whitespace() -> None:
    assert validate_feed_url("  https://example.com/a.ics ") == "https://example.com/a.ics"


def test_unclosed_alarm_does_not_swallow_the_event() -> None:
    unclosed_alarm = """
BEGIN:VEVENT
DTSTART:20260216T090000Z
DTEND:20260216T100000Z
BEGIN:VALARM
TRIGGER:-PT15M
END:VEVENT
"""
    blocks = parse_ical(_feed(unclosed_alarm, WELL_FORMED.replace("20260216", "20260217")))

    assert [(block.start, block.end) for block in blocks] == [
        (_utc(2026, 2, 16, 9), _utc(2026, 2, 16, 10)),
        (_utc(2026, 2, 17, 9), _utc(2026, 2, 17, 10)),
    ]


def test_unknown_tzid_is_logged(caplog: pytest.LogCaptureFixture) -> None:
    unknown_zone = """
BEGIN:VEVENT
DTSTART;TZID=Pacific Standard Time:20260217T090000
DTEND;TZID=Pacific Standard Time:20260217T100000
END:VEVENT
"""
    with caplog.at_level(logging.WARNING):
        parse_ical(_feed(unknown_zone))

    assert any("Pacific Standard Time" in record.message for record in caplog.records)
